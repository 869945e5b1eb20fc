"""Garbage collection of stale DaemonSets and finished jobs."""

import logging

from .errors import GarbageCollectionError

logger = logging.getLogger(__name__)


class GarbageCollector:
    """Runs the DaemonSet, build job and sign job sweeps.

    The sweeps are independent: a failing sweep does not stop the others, and
    whatever a sweep already deleted stays deleted. Failures are raised
    together once every sweep has run.
    """

    def __init__(self, workload_reconciler, build_stage, sign_stage):
        self.workload_reconciler = workload_reconciler
        self.build_stage = build_stage
        self.sign_stage = sign_stage

    def collect(self, owner, valid_kernels, existing_ds):
        """Run all sweeps; return the deleted names keyed by sweep."""
        passes = [
            ("DaemonSets", lambda: self.workload_reconciler.garbage_collect(existing_ds, valid_kernels)),
            ("build jobs", lambda: self.build_stage.garbage_collect(owner.name, owner.namespace, owner)),
            ("sign jobs", lambda: self.sign_stage.garbage_collect(owner.name, owner.namespace, owner)),
        ]

        results = {}
        errors = []
        for kind, sweep in passes:
            try:
                deleted = sweep()
            except Exception as e:
                logger.error(f"Could not garbage collect {kind} of module {owner.namespace}/{owner.name}: {e}")
                errors.append(e)
                continue

            logger.info(f"Garbage-collected {kind}: {deleted}")
            results[kind] = deleted

        if errors:
            raise GarbageCollectionError(errors)

        return results
