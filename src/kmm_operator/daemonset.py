"""Module-loader and device plugin DaemonSets."""

import copy
import json
import logging

from kubernetes.client.rest import ApiException

from . import crd
from .k8s import (
    MERGE_PATCH_CONTENT_TYPE,
    create_merge_patch,
    drop_removed,
    overlay,
    selector_string,
    to_dict,
)
from .templates import (
    create_device_plugin_manifest,
    create_driver_container_manifest,
    device_plugin_name,
)

logger = logging.getLogger(__name__)

# Results of create_or_patch
OP_CREATED = "created"
OP_UPDATED = "updated"
OP_UNCHANGED = "unchanged"


def is_device_plugin_kernel_version(kernel_version):
    return kernel_version == crd.DEVICE_PLUGIN_KERNEL_VERSION


class WorkloadReconciler:
    """Creates, patches and garbage-collects the module's DaemonSets."""

    def __init__(self, apps_v1, kernel_label):
        self.apps_v1 = apps_v1
        self.kernel_label = kernel_label

    def module_daemonsets_by_kernel_version(self, name, namespace):
        """Index the module's DaemonSets by their kernel version label."""
        daemonsets = self.apps_v1.list_namespaced_daemon_set(
            namespace=namespace,
            label_selector=selector_string({crd.MODULE_NAME_LABEL: name}),
        )

        by_kernel = {}
        for ds in daemonsets.items or []:
            kernel_version = (ds.metadata.labels or {}).get(
                self.kernel_label, crd.DEVICE_PLUGIN_KERNEL_VERSION
            )
            by_kernel[kernel_version] = ds
        return by_kernel

    def _last_applied(self, current):
        raw = (current.get("metadata", {}).get("annotations") or {}).get(crd.LAST_APPLIED_ANNOTATION)
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Ignoring unreadable {crd.LAST_APPLIED_ANNOTATION} annotation")
            return {}

    def create_or_patch(self, existing, desired):
        """Create desired, or patch existing with the fields that differ.

        The owned fields of the desired object are recorded in an annotation.
        On update, fields recorded there but no longer desired are removed,
        while fields only the API server set are left alone.
        """
        namespace = desired.metadata.namespace

        wanted = to_dict(desired)
        owned = {
            "metadata": {
                "labels": wanted["metadata"].get("labels", {}),
                "ownerReferences": wanted["metadata"].get("ownerReferences", []),
            },
            "spec": wanted["spec"],
        }
        applied = json.dumps(owned, sort_keys=True)
        annotations = dict(desired.metadata.annotations or {})
        annotations[crd.LAST_APPLIED_ANNOTATION] = applied
        desired.metadata.annotations = annotations

        if existing is None:
            created = self.apps_v1.create_namespaced_daemon_set(namespace=namespace, body=desired)
            name = created.metadata.name if created is not None else desired.metadata.generate_name
            logger.info(f"Created DaemonSet {namespace}/{name}")
            return OP_CREATED

        current = to_dict(existing)
        last_applied = self._last_applied(current)

        desired_view = copy.deepcopy(owned)
        desired_view["metadata"]["annotations"] = {crd.LAST_APPLIED_ANNOTATION: applied}

        merged = drop_removed(overlay(current, desired_view), last_applied, owned)
        if merged == current:
            return OP_UNCHANGED

        patch = create_merge_patch(current, merged)
        self.apps_v1.patch_namespaced_daemon_set(
            name=existing.metadata.name,
            namespace=namespace,
            body=patch,
            _content_type=MERGE_PATCH_CONTENT_TYPE,
        )
        logger.info(f"Patched DaemonSet {namespace}/{existing.metadata.name}")
        return OP_UPDATED

    def set_driver_container(self, mld, ds_by_kernel_version):
        """Reconcile the module-loader DaemonSet for mld's kernel version."""
        existing = ds_by_kernel_version.get(mld.kernel_version)
        if existing is not None:
            logger.info(
                f"Updating driver container DaemonSet {existing.metadata.name} "
                f"(kernel {mld.kernel_version}, image {mld.container_image})"
            )
        else:
            logger.info(
                f"Creating driver container DaemonSet (kernel {mld.kernel_version}, image {mld.container_image})"
            )

        desired = create_driver_container_manifest(mld, self.kernel_label)
        return self.create_or_patch(existing, desired)

    def set_device_plugin(self, module, owner):
        """Reconcile the device plugin DaemonSet; no-op when none is declared."""
        if not module.get("spec", {}).get("devicePlugin"):
            return None

        name = device_plugin_name(owner.name)
        try:
            existing = self.apps_v1.read_namespaced_daemon_set(name=name, namespace=owner.namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            existing = None

        desired = create_device_plugin_manifest(module, owner)
        return self.create_or_patch(existing, desired)

    def garbage_collect(self, existing_ds, valid_kernels):
        """Delete module-loader DaemonSets whose kernel version is no longer targeted."""
        deleted = []
        for kernel_version, ds in existing_ds.items():
            if is_device_plugin_kernel_version(kernel_version) or kernel_version in valid_kernels:
                continue

            try:
                self.apps_v1.delete_namespaced_daemon_set(
                    name=ds.metadata.name, namespace=ds.metadata.namespace
                )
            except ApiException as e:
                if e.status != 404:
                    raise
            deleted.append(ds.metadata.name)

        return deleted
