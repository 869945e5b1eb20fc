"""Node event filtering and node-to-module mapping."""

import enum
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from . import crd
from .api import trim_kernel_version

logger = logging.getLogger(__name__)


class NodeEventType(enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class NodeEvent:
    """A change to a Node, with the object before and after it."""

    type: NodeEventType
    new: Optional[Mapping] = None
    old: Optional[Mapping] = None


def node_labels(node):
    return dict(((node or {}).get("metadata") or {}).get("labels") or {})


def node_info(node):
    return ((node or {}).get("status") or {}).get("nodeInfo") or {}


def module_reconciler_node_predicate(event, kernel_label):
    """Should this node event trigger a reconcile of the modules targeting it?"""
    if event.type is NodeEventType.DELETED:
        return False
    if not node_labels(event.new).get(kernel_label):
        return False
    if event.type is NodeEventType.CREATED:
        return True
    if event.type is NodeEventType.UPDATED:
        return node_labels(event.old) != node_labels(event.new)
    raise ValueError(f"unknown node event type: {event.type}")


def node_kernel_predicate(event, kernel_label):
    """Should this node event refresh the node's kernel version label?"""
    if event.type is NodeEventType.CREATED:
        return True
    if event.type is NodeEventType.UPDATED:
        kernel_version = trim_kernel_version(node_info(event.new).get("kernelVersion", ""))
        kernel_changed = node_labels(event.new).get(kernel_label) != kernel_version
        os_image_changed = node_info(event.new).get("osImage") != node_info(event.old).get("osImage")
        return kernel_changed or os_image_changed
    if event.type is NodeEventType.DELETED:
        return False
    raise ValueError(f"unknown node event type: {event.type}")


def selector_matches(selector, labels):
    return all(labels.get(k) == v for k, v in (selector or {}).items())


def find_modules_for_node(custom_api, node):
    """Return (namespace, name) of every Module whose selector matches the node."""
    node_name = ((node or {}).get("metadata") or {}).get("name")
    labels = node_labels(node)

    try:
        modules = custom_api.list_cluster_custom_object(
            group=crd.GROUP, version=crd.VERSION, plural=crd.PLURAL
        )
    except Exception as e:
        logger.error(f"Could not list modules for node {node_name}: {e}")
        return []

    items = modules.get("items", [])
    logger.info(f"Listed {len(items)} modules for node {node_name}")

    requests = []
    for module in items:
        meta = module.get("metadata", {})
        if not selector_matches(module.get("spec", {}).get("selector"), labels):
            logger.debug(f"Node {node_name} labels do not match module {meta.get('name')} selector; skipping")
            continue
        requests.append((meta.get("namespace"), meta.get("name")))

    logger.info(f"Adding {len(requests)} reconciliation requests for node {node_name}")
    return requests
