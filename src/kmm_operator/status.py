"""Module status aggregation."""

import copy
import logging

from . import crd
from .daemonset import is_device_plugin_kernel_version
from .k8s import MERGE_PATCH_CONTENT_TYPE, create_merge_patch

logger = logging.getLogger(__name__)


def compute_module_status(module, kernel_mapping_nodes, targeted_nodes, ds_by_kernel_version):
    """Recompute the Module's status counters from this pass's observations."""
    nodes_matching = len(targeted_nodes)
    desired = len(kernel_mapping_nodes)

    available_module_loader = 0
    available_device_plugin = 0
    for kernel_version, ds in ds_by_kernel_version.items():
        available = (ds.status.number_available or 0) if ds.status else 0
        if is_device_plugin_kernel_version(kernel_version):
            available_device_plugin += available
        else:
            available_module_loader += available

    status = copy.deepcopy(module.get("status") or {})
    status["moduleLoader"] = {
        "nodesMatchingSelectorNumber": nodes_matching,
        "desiredNumber": desired,
        "availableNumber": available_module_loader,
    }
    if module.get("spec", {}).get("devicePlugin"):
        status["devicePlugin"] = {
            "nodesMatchingSelectorNumber": nodes_matching,
            "desiredNumber": desired,
            "availableNumber": available_device_plugin,
        }
    return status


class StatusAggregator:
    """Persists recomputed Module status with a merge patch."""

    def __init__(self, custom_api):
        self.custom_api = custom_api

    def update_status(self, module, kernel_mapping_nodes, targeted_nodes, ds_by_kernel_version):
        """Patch only the status fields that changed since the module was read."""
        original = module.get("status") or {}
        status = compute_module_status(module, kernel_mapping_nodes, targeted_nodes, ds_by_kernel_version)

        patch = create_merge_patch(original, status)
        if not patch:
            logger.debug("Module status unchanged")
            return status

        meta = module["metadata"]
        self.custom_api.patch_namespaced_custom_object_status(
            group=crd.GROUP,
            version=crd.VERSION,
            namespace=meta["namespace"],
            plural=crd.PLURAL,
            name=meta["name"],
            body={"status": patch},
            _content_type=MERGE_PATCH_CONTENT_TYPE,
        )
        logger.info(f"Updated status of module {meta['namespace']}/{meta['name']}: {status['moduleLoader']}")
        return status
