"""In-cluster build of module images."""

import logging

from kubernetes.client.rest import ApiException

from . import crd
from .api import should_be_built
from .errors import TemplateError
from .templates import create_build_job_manifest

logger = logging.getLogger(__name__)


def image_exists(auth_factory, registry, mld, image):
    """Check the registry for the image using the module's pull secret."""
    auth_getter = auth_factory.from_module_loader_data(mld)
    return registry.image_exists(image, mld.registry_tls, auth_getter)


class BuildStage:
    """Builds the module image for a kernel version with a kaniko job."""

    def __init__(self, job_manager, core_v1, registry, auth_factory, builder_image):
        self.job_manager = job_manager
        self.core_v1 = core_v1
        self.registry = registry
        self.auth_factory = auth_factory
        self.builder_image = builder_image

    def should_sync(self, mld):
        """A build is needed when one is declared and the image is not pushed yet."""
        if not should_be_built(mld):
            return False

        exists = image_exists(self.auth_factory, self.registry, mld, mld.container_image)
        if exists:
            logger.debug(f"Image {mld.container_image} already exists, no build needed")
        return not exists

    def _dockerfile(self, mld):
        name = mld.build["dockerfileConfigMap"]["name"]
        try:
            cm = self.core_v1.read_namespaced_config_map(name=name, namespace=mld.namespace)
        except ApiException as e:
            if e.status == 404:
                raise TemplateError(f"dockerfile ConfigMap {mld.namespace}/{name} not found")
            raise

        dockerfile = (cm.data or {}).get(crd.DOCKERFILE_CONFIGMAP_KEY)
        if dockerfile is None:
            raise TemplateError(
                f"invalid ConfigMap {mld.namespace}/{name}: {crd.DOCKERFILE_CONFIGMAP_KEY} key is missing"
            )
        return dockerfile

    def make_job_template(self, mld, push_image=True):
        labels = self.job_manager.job_labels(mld.name, mld.kernel_version, crd.JOB_TYPE_BUILD)
        job = create_build_job_manifest(mld, labels, self.builder_image, push_image)
        return job, {"dockerfile": self._dockerfile(mld)}

    def sync(self, mld, push_image=True):
        """Return the lifecycle status of the build job for mld."""
        job, hash_data = self.make_job_template(mld, push_image)
        return self.job_manager.sync(
            mld.kernel_version, crd.JOB_TYPE_BUILD, job, mld.owner, hash_data
        )

    def garbage_collect(self, module_name, namespace, owner):
        return self.job_manager.garbage_collect(module_name, namespace, crd.JOB_TYPE_BUILD, owner)
