"""Node kernel version labelling."""

import logging

from .api import trim_kernel_version
from .filter import node_info, node_labels
from .k8s import MERGE_PATCH_CONTENT_TYPE

logger = logging.getLogger(__name__)


class NodeKernelLabeler:
    """Keeps the kernel version label of a node in line with what it reports."""

    def __init__(self, core_v1, kernel_label):
        self.core_v1 = core_v1
        self.kernel_label = kernel_label

    def reconcile(self, node):
        name = node["metadata"]["name"]
        kernel_version = trim_kernel_version(node_info(node).get("kernelVersion", ""))
        if not kernel_version:
            logger.warning(f"Node {name} does not report a kernel version")
            return None

        if node_labels(node).get(self.kernel_label) == kernel_version:
            return kernel_version

        self.core_v1.patch_node(
            name=name,
            body={"metadata": {"labels": {self.kernel_label: kernel_version}}},
            _content_type=MERGE_PATCH_CONTENT_TYPE,
        )
        logger.info(f"Labelled node {name} with {self.kernel_label}={kernel_version}")
        return kernel_version
