"""Main operator entrypoint using Kopf."""

import logging
import threading
from collections import defaultdict

import kopf

from . import crd
from .build import BuildStage
from .config import config
from .daemonset import WorkloadReconciler
from .errors import KernelMappingError, ReconcileError
from .filter import (
    NodeEvent,
    NodeEventType,
    find_modules_for_node,
    module_reconciler_node_predicate,
    node_kernel_predicate,
)
from .gc import GarbageCollector
from .jobs import JobLifecycleManager
from .k8s import get_clients
from .kernel import KernelMapper
from .metrics import Metrics, start_metrics_server
from .nodekernel import NodeKernelLabeler
from .reconcile import ModuleReconciler
from .registry import Registry, RegistryAuthGetterFactory
from .sign import SignStage
from .status import StatusAggregator

# Configure logging
logging.basicConfig(
    level=config.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_reconciler = None
_node_labeler = None

# Reconciles of the same Module are serialized
_module_locks = defaultdict(threading.Lock)
_module_locks_guard = threading.Lock()

_EVENT_TYPES = {
    None: NodeEventType.CREATED,
    "ADDED": NodeEventType.CREATED,
    "MODIFIED": NodeEventType.UPDATED,
    "DELETED": NodeEventType.DELETED,
}


def build_reconciler():
    """Wire the reconciler and its collaborators."""
    core_v1, apps_v1, batch_v1, custom_api = get_clients()

    registry = Registry()
    auth_factory = RegistryAuthGetterFactory(core_v1)
    job_manager = JobLifecycleManager(batch_v1)

    build_stage = BuildStage(job_manager, core_v1, registry, auth_factory, config.build_image)
    sign_stage = SignStage(job_manager, core_v1, registry, auth_factory, config.sign_image)
    workload_reconciler = WorkloadReconciler(apps_v1, config.kernel_label)

    return ModuleReconciler(
        core_v1=core_v1,
        custom_api=custom_api,
        kernel_mapper=KernelMapper(),
        build_stage=build_stage,
        sign_stage=sign_stage,
        workload_reconciler=workload_reconciler,
        garbage_collector=GarbageCollector(workload_reconciler, build_stage, sign_stage),
        status_aggregator=StatusAggregator(custom_api),
        metrics=Metrics(),
    )


def get_reconciler():
    global _reconciler
    if _reconciler is None:
        _reconciler = build_reconciler()
    return _reconciler


def get_node_labeler():
    global _node_labeler
    if _node_labeler is None:
        core_v1, _, _, _ = get_clients()
        _node_labeler = NodeKernelLabeler(core_v1, config.kernel_label)
    return _node_labeler


def module_lock(namespace, name):
    with _module_locks_guard:
        return _module_locks[(namespace, name)]


def warn_failed_stages(body, failed_stages):
    """Post a Warning event on the Module for every failed job."""
    for kernel_version, stage in failed_stages:
        kopf.warn(
            body,
            reason=f"{stage.capitalize()}Failed",
            message=(
                f"The {stage} job for kernel {kernel_version} has failed; "
                "delete it after fixing the cause to retry"
            ),
        )


def run_reconcile(name, namespace, body=None):
    """Reconcile one Module and surface failed jobs as Warning events."""
    try:
        with module_lock(namespace, name):
            result = get_reconciler().reconcile(name, namespace)
    except ReconcileError as e:
        if body is not None:
            warn_failed_stages(body, e.failed_stages)
        raise

    if result is not None and body is not None:
        warn_failed_stages(body, result.failed_stages)
    return result


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **kwargs):
    """Set up clients, metrics and operator settings."""
    settings.posting.level = logging.WARNING
    get_clients()
    start_metrics_server(config.metrics_port)
    logger.info(f"KMM operator started (kernel label {config.kernel_label})")


@kopf.on.create(crd.GROUP, crd.VERSION, crd.PLURAL)
@kopf.on.update(crd.GROUP, crd.VERSION, crd.PLURAL)
@kopf.on.resume(crd.GROUP, crd.VERSION, crd.PLURAL)
def module_handler(name, namespace, body, **kwargs):
    """Handle Module create/update/resume events."""
    logger.info(f"Handling Module {name} in namespace {namespace}")

    try:
        run_reconcile(name, namespace, body)
    except (ValueError, KernelMappingError) as e:
        logger.error(f"Validation error: {e}")
        raise kopf.PermanentError(str(e))
    except Exception as e:
        logger.error(f"Reconciliation error: {e}", exc_info=True)
        raise kopf.TemporaryError(f"Reconciliation failed: {e}", delay=config.retry_delay)


@kopf.timer(crd.GROUP, crd.VERSION, crd.PLURAL, interval=config.reconcile_interval)
def module_timer(name, namespace, body, **kwargs):
    """Periodic reconciliation timer."""
    logger.debug(f"Timer reconciliation for Module {namespace}/{name}")
    try:
        run_reconcile(name, namespace, body)
    except Exception as e:
        logger.error(f"Timer reconciliation error: {e}", exc_info=True)


@kopf.on.delete(crd.GROUP, crd.VERSION, crd.PLURAL, optional=True)
def module_delete(name, namespace, **kwargs):
    """Handle Module deletion."""
    # Jobs and DaemonSets carry owner references, Kubernetes garbage-collects them
    logger.info(f"Module {namespace}/{name} deleted")
    with _module_locks_guard:
        _module_locks.pop((namespace, name), None)


def _node_snapshot(body):
    metadata = body.get("metadata", {})
    status = body.get("status", {})
    return {
        "metadata": {"name": metadata.get("name"), "labels": dict(metadata.get("labels") or {})},
        "status": {"nodeInfo": dict(status.get("nodeInfo") or {})},
    }


@kopf.on.event("nodes")
def node_event(event, body, memo, **kwargs):
    """Keep node kernel labels current and requeue Modules targeting changed nodes."""
    event_type = _EVENT_TYPES.get(event.get("type"))
    if event_type is None:
        return

    old = memo.get("last_node")
    new = _node_snapshot(body)
    if event_type is NodeEventType.UPDATED and old is None:
        event_type = NodeEventType.CREATED
    memo["last_node"] = None if event_type is NodeEventType.DELETED else new

    node_event = NodeEvent(type=event_type, new=new, old=old)

    if node_kernel_predicate(node_event, config.kernel_label):
        get_node_labeler().reconcile(new)

    if not module_reconciler_node_predicate(node_event, config.kernel_label):
        return

    _, _, _, custom_api = get_clients()
    for namespace, name in find_modules_for_node(custom_api, new):
        try:
            run_reconcile(name, namespace)
        except Exception as e:
            logger.error(f"Reconciliation of module {namespace}/{name} for node event failed: {e}", exc_info=True)


if __name__ == "__main__":
    kopf.run()
