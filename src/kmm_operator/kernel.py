"""Kernel mapping resolution.

Turns a Module spec and a node's kernel version into the ModuleLoaderData the
build, sign and DaemonSet stages work from. Mappings are tried in order; the
first one whose ``literal`` equals the kernel version, or whose ``regexp``
matches it, is merged over the container-level defaults.
"""

import copy
import logging
import re

from .api import ModuleLoaderData, Owner
from .errors import KernelMappingError

logger = logging.getLogger(__name__)

_KERNEL_XYZ = re.compile(r"^(\d+)\.(\d+)\.(\d+)")


def apply_build_arg_overrides(args, overrides):
    """Replace build args by name; overrides with no match are appended sorted by name."""
    overrides_by_name = {o["name"]: o for o in overrides or []}
    unused = set(overrides_by_name)
    result = []

    for arg in args or []:
        name = arg["name"]
        if name in overrides_by_name:
            result.append(copy.deepcopy(overrides_by_name[name]))
            unused.discard(name)
        else:
            result.append(copy.deepcopy(arg))

    for name in sorted(unused):
        result.append(copy.deepcopy(overrides_by_name[name]))

    return result


def get_relevant_build(module_build, mapping_build):
    """Merge the mapping's build section over the container-level one."""
    if module_build is None:
        return copy.deepcopy(mapping_build)
    if mapping_build is None:
        return copy.deepcopy(module_build)

    build = copy.deepcopy(module_build)
    if mapping_build.get("dockerfileConfigMap"):
        build["dockerfileConfigMap"] = copy.deepcopy(mapping_build["dockerfileConfigMap"])

    build["buildArgs"] = apply_build_arg_overrides(
        build.get("buildArgs"), mapping_build.get("buildArgs")
    )
    build["secrets"] = list(build.get("secrets") or []) + list(mapping_build.get("secrets") or [])
    return build


def get_relevant_sign(module_sign, mapping_sign):
    """Merge the mapping's sign section over the container-level one, field by field."""
    if module_sign is None:
        return copy.deepcopy(mapping_sign)
    if mapping_sign is None:
        return copy.deepcopy(module_sign)

    sign = copy.deepcopy(module_sign)
    for key in ("unsignedImage", "keySecret", "certSecret", "filesToSign", "unsignedImageRegistryTLS"):
        if mapping_sign.get(key):
            sign[key] = copy.deepcopy(mapping_sign[key])
    return sign


def template_variables(kernel_version, name, namespace):
    """Values for the ${...} placeholders allowed in images and build args."""
    variables = {
        "KERNEL_FULL_VERSION": kernel_version,
        "KERNEL_VERSION": kernel_version,
        "MOD_NAME": name,
        "MOD_NAMESPACE": namespace,
    }
    m = _KERNEL_XYZ.match(kernel_version)
    if m:
        x, y, z = m.groups()
        variables.update(
            {
                "KERNEL_XYZ": f"{x}.{y}.{z}",
                "KERNEL_X": x,
                "KERNEL_Y": y,
                "KERNEL_Z": z,
            }
        )
    return variables


def replace_variables(value, variables):
    if not value:
        return value
    for key, replacement in variables.items():
        value = value.replace("${" + key + "}", replacement)
    return value


def find_mapping(mappings, kernel_version):
    """Return the first mapping matching the kernel version."""
    for mapping in mappings or []:
        literal = mapping.get("literal")
        regexp = mapping.get("regexp")
        if literal:
            if literal == kernel_version:
                return mapping
        elif regexp:
            try:
                if re.search(regexp, kernel_version):
                    return mapping
            except re.error as e:
                raise KernelMappingError(f"invalid regexp {regexp!r} in kernel mapping: {e}")
        else:
            logger.warning(f"Skipping kernel mapping with neither literal nor regexp: {mapping}")
    raise KernelMappingError(f"no kernel mapping matches kernel version {kernel_version}")


class KernelMapper:
    """Resolves a Module and kernel version to ModuleLoaderData."""

    def get_module_loader_data_for_kernel(self, module, kernel_version):
        spec = module.get("spec", {})
        meta = module.get("metadata", {})
        name = meta.get("name")
        namespace = meta.get("namespace")

        module_loader = spec.get("moduleLoader", {})
        container = module_loader.get("container", {})

        mapping = find_mapping(container.get("kernelMappings"), kernel_version)
        logger.debug(f"Kernel {kernel_version} matched mapping {mapping} for module {namespace}/{name}")

        variables = template_variables(kernel_version, name, namespace)

        image = mapping.get("containerImage") or container.get("containerImage")
        if not image:
            raise KernelMappingError(
                f"no container image for kernel version {kernel_version} in module {namespace}/{name}"
            )

        build = get_relevant_build(container.get("build"), mapping.get("build"))
        if build is not None:
            for arg in build.get("buildArgs") or []:
                arg["value"] = replace_variables(arg.get("value"), variables)

        sign = get_relevant_sign(container.get("sign"), mapping.get("sign"))
        if sign is not None and sign.get("unsignedImage"):
            sign["unsignedImage"] = replace_variables(sign["unsignedImage"], variables)

        image_repo_secret = (spec.get("imageRepoSecret") or {}).get("name")

        return ModuleLoaderData(
            name=name,
            namespace=namespace,
            kernel_version=kernel_version,
            container_image=replace_variables(image, variables),
            owner=Owner.from_module(module),
            selector=dict(spec.get("selector") or {}),
            build=build,
            sign=sign,
            image_repo_secret=image_repo_secret,
            image_pull_policy=container.get("imagePullPolicy"),
            service_account_name=module_loader.get("serviceAccountName"),
            registry_tls=copy.deepcopy(
                mapping.get("registryTLS") or container.get("registryTLS") or {}
            ),
            modprobe=copy.deepcopy(container.get("modprobe") or {}),
        )
