"""Kubernetes client helpers."""

import copy
import logging

from kubernetes import client, config

logger = logging.getLogger(__name__)

# Initialize clients
_core_v1 = None
_apps_v1 = None
_batch_v1 = None
_custom_api = None

_serializer = client.ApiClient()


def load_config():
    """Load in-cluster config, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig")


def init_clients():
    """Initialize Kubernetes clients."""
    global _core_v1, _apps_v1, _batch_v1, _custom_api

    load_config()

    _core_v1 = client.CoreV1Api()
    _apps_v1 = client.AppsV1Api()
    _batch_v1 = client.BatchV1Api()
    _custom_api = client.CustomObjectsApi()

    return _core_v1, _apps_v1, _batch_v1, _custom_api


def get_clients():
    """Get initialized Kubernetes clients."""
    if _core_v1 is None or _custom_api is None:
        init_clients()
    return _core_v1, _apps_v1, _batch_v1, _custom_api


def to_dict(obj):
    """Serialize a kubernetes model (or plain dict) to its camelCase JSON form."""
    return _serializer.sanitize_for_serialization(obj)


def get_controller_uid(obj):
    """UID of the controlling owner reference, if any."""
    if isinstance(obj, dict):
        refs = obj.get("metadata", {}).get("ownerReferences") or []
        for ref in refs:
            if ref.get("controller"):
                return ref.get("uid")
        return None

    for ref in obj.metadata.owner_references or []:
        if ref.controller:
            return ref.uid
    return None


def is_controlled_by(obj, owner_uid):
    """Return True if the object's controller reference points at owner_uid."""
    return owner_uid is not None and get_controller_uid(obj) == owner_uid


def is_node_schedulable(node):
    """A node is schedulable unless it carries a NoSchedule taint."""
    taints = node.spec.taints if node.spec else None
    for taint in taints or []:
        if taint.effect == "NoSchedule":
            return False
    return True


def selector_string(selector):
    """Render a label dict as a label selector string."""
    return ",".join(f"{k}={v}" for k, v in sorted((selector or {}).items()))


def create_merge_patch(original, modified):
    """Compute a JSON merge patch turning original into modified."""
    patch = {}
    for key, value in modified.items():
        old = original.get(key)
        if isinstance(value, dict) and isinstance(old, dict):
            nested = create_merge_patch(old, value)
            if nested:
                patch[key] = nested
        elif value != old:
            patch[key] = copy.deepcopy(value)
    for key in original:
        if key not in modified:
            patch[key] = None
    return patch


# Label maps are owned as a whole; the API server never defaults keys in them
ATOMIC_MAP_KEYS = frozenset({"labels", "matchLabels", "nodeSelector"})

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"


def overlay(existing, desired, atomic_keys=ATOMIC_MAP_KEYS):
    """Overlay desired fields onto a copy of existing.

    Lists of equal length are merged element by element so that values the API
    server defaulted on the existing object do not register as a change. Maps
    under atomic_keys replace the existing map instead of being merged into it.
    """
    if isinstance(existing, dict) and isinstance(desired, dict):
        merged = copy.deepcopy(existing)
        for key, value in desired.items():
            if key in atomic_keys:
                merged[key] = copy.deepcopy(value)
            else:
                merged[key] = overlay(existing.get(key), value, atomic_keys)
        return merged
    if (
        isinstance(existing, list)
        and isinstance(desired, list)
        and len(existing) == len(desired)
    ):
        return [overlay(e, d, atomic_keys) for e, d in zip(existing, desired)]
    return copy.deepcopy(desired)


def drop_removed(merged, last_applied, desired):
    """Remove from merged the fields that were last applied but are no longer desired."""
    if isinstance(merged, dict) and isinstance(last_applied, dict) and isinstance(desired, dict):
        for key, value in last_applied.items():
            if key not in desired:
                merged.pop(key, None)
            elif key in merged:
                merged[key] = drop_removed(merged[key], value, desired[key])
        return merged
    if (
        isinstance(merged, list)
        and isinstance(last_applied, list)
        and isinstance(desired, list)
        and len(merged) == len(last_applied) == len(desired)
    ):
        return [drop_removed(m, a, d) for m, a, d in zip(merged, last_applied, desired)]
    return merged
