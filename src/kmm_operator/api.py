"""Resolved per-kernel module data and image naming helpers."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from kubernetes import client

from . import crd


@dataclass(frozen=True)
class Owner:
    """Identity of the Module that owns the jobs and DaemonSets we create."""

    name: str
    namespace: str
    uid: str
    api_version: str = crd.API_VERSION
    kind: str = crd.KIND

    @classmethod
    def from_module(cls, module):
        meta = module.get("metadata", {})
        return cls(
            name=meta.get("name"),
            namespace=meta.get("namespace"),
            uid=meta.get("uid"),
            api_version=module.get("apiVersion", crd.API_VERSION),
            kind=module.get("kind", crd.KIND),
        )

    def reference(self):
        """Controller owner reference pointing at this Module."""
        return client.V1OwnerReference(
            api_version=self.api_version,
            kind=self.kind,
            name=self.name,
            uid=self.uid,
            controller=True,
            block_owner_deletion=True,
        )


@dataclass
class ModuleLoaderData:
    """Everything needed to build, sign and load a module for one kernel version.

    Produced by the kernel mapper at the start of every reconcile pass from the
    Module spec and the matching kernel mapping. It is never persisted. From that
    point on it is the only input the stages need; ``build`` and ``sign`` keep
    the Module's camelCase field names.
    """

    name: str
    namespace: str
    kernel_version: str
    container_image: str
    owner: Owner
    selector: Dict[str, str] = field(default_factory=dict)
    build: Optional[dict] = None
    sign: Optional[dict] = None
    image_repo_secret: Optional[str] = None
    image_pull_policy: Optional[str] = None
    service_account_name: Optional[str] = None
    registry_tls: dict = field(default_factory=dict)
    modprobe: dict = field(default_factory=dict)


def should_be_built(mld):
    return mld.build is not None


def should_be_signed(mld):
    return mld.sign is not None


def append_to_tag(name, tag):
    """Append tag to the image name, extending an existing tag with '_'."""
    last_component = name.rsplit("/", 1)[-1]
    separator = "_" if ":" in last_component else ":"
    return name + separator + tag


def intermediate_image_name(name, namespace, target_image):
    """Name of the unsigned image a build pushes before it is signed."""
    return append_to_tag(target_image, f"{namespace}_{name}_kmm_unsigned")


def trim_kernel_version(kernel_version):
    """Strip the build metadata suffix some kernels report."""
    return kernel_version[:-1] if kernel_version.endswith("+") else kernel_version


def secret_names(refs: Optional[List[dict]]):
    return [r["name"] for r in refs or [] if r.get("name")]
