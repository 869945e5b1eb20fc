"""Core reconciliation logic.

One pass over a Module: select the schedulable nodes it targets, resolve a
ModuleLoaderData once per distinct kernel version, and for each kernel version
run build, then sign, then the module-loader DaemonSet, stopping at the first
stage that is not complete. Afterwards the device plugin is reconciled, stale
objects are garbage-collected and the status counters are recomputed.

Nothing is remembered between passes; every pass starts from what the cluster
reports and is safe to repeat.
"""

import logging
from dataclasses import dataclass, field

from kubernetes.client.rest import ApiException

from . import crd
from .api import Owner, intermediate_image_name, should_be_built, trim_kernel_version
from .errors import ReconcileError, StageError
from .k8s import is_node_schedulable, selector_string

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """What one reconcile pass did."""

    failed_stages: list = field(default_factory=list)
    garbage_collected: dict = field(default_factory=dict)
    status: dict = field(default_factory=dict)


class ModuleReconciler:
    """Drives a Module towards its desired state, one pass at a time."""

    def __init__(
        self,
        core_v1,
        custom_api,
        kernel_mapper,
        build_stage,
        sign_stage,
        workload_reconciler,
        garbage_collector,
        status_aggregator,
        metrics=None,
    ):
        self.core_v1 = core_v1
        self.custom_api = custom_api
        self.kernel_mapper = kernel_mapper
        self.build_stage = build_stage
        self.sign_stage = sign_stage
        self.workload_reconciler = workload_reconciler
        self.garbage_collector = garbage_collector
        self.status_aggregator = status_aggregator
        self.metrics = metrics

    def get_requested_module(self, name, namespace):
        return self.custom_api.get_namespaced_custom_object(
            group=crd.GROUP,
            version=crd.VERSION,
            namespace=namespace,
            plural=crd.PLURAL,
            name=name,
        )

    def set_kmmo_metrics(self):
        if self.metrics is None:
            return
        try:
            modules = self.custom_api.list_cluster_custom_object(
                group=crd.GROUP, version=crd.VERSION, plural=crd.PLURAL
            )
        except ApiException as e:
            logger.debug(f"Failed to list modules for metrics: {e}")
            return
        self.metrics.set_module_metrics(modules.get("items", []))

    def get_nodes_list_by_selector(self, module):
        """List the schedulable nodes matching the module's selector."""
        selector = module.get("spec", {}).get("selector") or {}
        logger.debug(f"Listing nodes with selector {selector}")

        nodes = self.core_v1.list_node(label_selector=selector_string(selector))
        return [n for n in nodes.items or [] if is_node_schedulable(n)]

    def get_relevant_kernel_mappings_and_nodes(self, module, targeted_nodes):
        """Resolve each distinct kernel version once and keep the nodes that resolved."""
        mappings = {}
        unresolved = set()
        nodes = []

        for node in targeted_nodes:
            node_name = node.metadata.name
            if not node.status or not node.status.node_info:
                logger.warning(f"Node {node_name} reports no node info; skipping")
                continue
            kernel_version = trim_kernel_version(node.status.node_info.kernel_version)

            if kernel_version in mappings:
                logger.debug(f"Using cached mapping for node {node_name}, kernel {kernel_version}")
                nodes.append(node)
                continue
            if kernel_version in unresolved:
                continue

            try:
                mld = self.kernel_mapper.get_module_loader_data_for_kernel(module, kernel_version)
            except Exception as e:
                logger.error(
                    f"Failed to get and process kernel mapping for node {node_name}, kernel {kernel_version}: {e}"
                )
                unresolved.add(kernel_version)
                continue

            logger.debug(
                f"Found a valid mapping for node {node_name}, kernel {kernel_version}: "
                f"image {mld.container_image}, build {mld.build is not None}"
            )
            mappings[kernel_version] = mld
            nodes.append(node)

        return mappings, nodes

    def handle_build(self, mld):
        """Return the build status; completed when no build is needed."""
        if not self.build_stage.should_sync(mld):
            return crd.JOB_STATUS_COMPLETED

        status = self.build_stage.sync(mld, push_image=True)
        if status == crd.JOB_STATUS_FAILED:
            logger.warning(
                f"Build job has failed for kernel {mld.kernel_version} (image {mld.container_image}). "
                "If the fix is not in the Module, delete the job after the fix in order to restart it"
            )
        return status

    def handle_signing(self, mld):
        """Return the sign status; completed when no signing is needed."""
        if not self.sign_stage.should_sync(mld):
            return crd.JOB_STATUS_COMPLETED

        # A build that is followed by signing pushes to the intermediate image
        previous_image = ""
        if should_be_built(mld):
            previous_image = intermediate_image_name(mld.name, mld.namespace, mld.container_image)

        status = self.sign_stage.sync(mld, previous_image, push_image=True)
        if status == crd.JOB_STATUS_FAILED:
            logger.warning(
                f"Sign job has failed for kernel {mld.kernel_version} (image {mld.container_image}). "
                "If the fix is not in the Module, delete the job after the fix in order to restart it"
            )
        return status

    def handle_driver_container(self, mld, ds_by_kernel_version):
        return self.workload_reconciler.set_driver_container(mld, ds_by_kernel_version)

    def _run_kernel_pipeline(self, kernel_version, mld, ds_by_kernel_version, result):
        try:
            status = self.handle_build(mld)
        except Exception as e:
            raise StageError(kernel_version, "build", e) from e
        if status != crd.JOB_STATUS_COMPLETED:
            if status == crd.JOB_STATUS_FAILED:
                result.failed_stages.append((kernel_version, crd.JOB_TYPE_BUILD))
            logger.info(
                f"Build has not finished successfully yet for kernel {kernel_version}; "
                "skipping signing and driver container for now"
            )
            return

        try:
            status = self.handle_signing(mld)
        except Exception as e:
            raise StageError(kernel_version, "signing", e) from e
        if status != crd.JOB_STATUS_COMPLETED:
            if status == crd.JOB_STATUS_FAILED:
                result.failed_stages.append((kernel_version, crd.JOB_TYPE_SIGN))
            logger.info(
                f"Signing has not finished successfully yet for kernel {kernel_version}; "
                "skipping driver container for now"
            )
            return

        try:
            self.handle_driver_container(mld, ds_by_kernel_version)
        except Exception as e:
            raise StageError(kernel_version, "driver container", e) from e

    def reconcile(self, name, namespace):
        """Run one reconcile pass; returns None if the Module no longer exists."""
        try:
            module = self.get_requested_module(name, namespace)
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Module {namespace}/{name} deleted")
                return None
            raise

        self.set_kmmo_metrics()

        owner = Owner.from_module(module)
        result = ReconcileResult()

        targeted_nodes = self.get_nodes_list_by_selector(module)
        mappings, nodes_with_mapping = self.get_relevant_kernel_mappings_and_nodes(module, targeted_nodes)
        ds_by_kernel_version = self.workload_reconciler.module_daemonsets_by_kernel_version(name, namespace)

        errors = []
        for kernel_version, mld in mappings.items():
            try:
                self._run_kernel_pipeline(kernel_version, mld, ds_by_kernel_version, result)
            except StageError as e:
                logger.error(str(e))
                errors.append(e)

        if errors:
            raise ReconcileError(errors, failed_stages=result.failed_stages)

        logger.info("Handle device plugin")
        op = self.workload_reconciler.set_device_plugin(module, owner)
        if op is not None:
            logger.info(f"Reconciled device plugin of module {namespace}/{name}: {op}")

        logger.info("Run garbage collection")
        result.garbage_collected = self.garbage_collector.collect(
            owner, set(mappings), ds_by_kernel_version
        )

        result.status = self.status_aggregator.update_status(
            module, nodes_with_mapping, targeted_nodes, ds_by_kernel_version
        )

        logger.info(f"Reconcile loop finished successfully for module {namespace}/{name}")
        return result
