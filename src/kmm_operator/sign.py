"""In-cluster signing of module images."""

import logging

from kubernetes.client.rest import ApiException

from . import crd
from .api import should_be_signed
from .build import image_exists
from .errors import TemplateError
from .templates import create_sign_job_manifest

logger = logging.getLogger(__name__)


class SignStage:
    """Signs the kernel modules of an image with a one-shot job."""

    def __init__(self, job_manager, core_v1, registry, auth_factory, signer_image):
        self.job_manager = job_manager
        self.core_v1 = core_v1
        self.registry = registry
        self.auth_factory = auth_factory
        self.signer_image = signer_image

    def should_sync(self, mld):
        """Signing is needed when declared and the signed image does not exist yet."""
        if not should_be_signed(mld):
            return False

        exists = image_exists(self.auth_factory, self.registry, mld, mld.container_image)
        if exists:
            logger.debug(f"Image {mld.container_image} already exists, no signing needed")
        return not exists

    def _secret_data(self, secret_name, key, namespace):
        try:
            secret = self.core_v1.read_namespaced_secret(name=secret_name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                raise TemplateError(f"failed to get Secret {namespace}/{secret_name}")
            raise

        data = (secret.data or {}).get(key)
        if data is None:
            raise TemplateError(f"invalid Secret {namespace}/{secret_name} format, {key} key is missing")
        return data

    def make_job_template(self, mld, image_to_sign, push_image=True):
        labels = self.job_manager.job_labels(mld.name, mld.kernel_version, crd.JOB_TYPE_SIGN)
        job = create_sign_job_manifest(mld, labels, image_to_sign, self.signer_image, push_image)

        # Key material is hashed so that a rotated key yields a new job
        hash_data = {
            "privateKeyData": self._secret_data(
                mld.sign["keySecret"]["name"], crd.PRIVATE_SIGN_DATA_KEY, mld.namespace
            ),
            "publicKeyData": self._secret_data(
                mld.sign["certSecret"]["name"], crd.PUBLIC_SIGN_DATA_KEY, mld.namespace
            ),
        }
        return job, hash_data

    def sync(self, mld, image_to_sign="", push_image=True):
        """Return the lifecycle status of the sign job for mld."""
        job, hash_data = self.make_job_template(mld, image_to_sign, push_image)
        return self.job_manager.sync(
            mld.kernel_version, crd.JOB_TYPE_SIGN, job, mld.owner, hash_data
        )

    def garbage_collect(self, module_name, namespace, owner):
        return self.job_manager.garbage_collect(module_name, namespace, crd.JOB_TYPE_SIGN, owner)
