"""Exception types raised by the reconciler."""


class KMMError(Exception):
    """Base class for reconciler errors."""

    def __init__(self, message, code="kmm_error"):
        super().__init__(message)
        self.code = code


class KernelMappingError(KMMError):
    """Raised when no usable kernel mapping exists for a kernel version."""

    def __init__(self, message, code="kernel_mapping_error"):
        super().__init__(message, code)


class NoMatchingJobError(KMMError):
    """Raised when no owned job matches the lookup labels."""

    def __init__(self, message, code="no_matching_job"):
        super().__init__(message, code)


class DuplicateJobError(KMMError):
    """Raised when more than one owned job matches the lookup labels."""

    def __init__(self, message, code="duplicate_job"):
        super().__init__(message, code)


class JobStatusError(KMMError):
    """Raised when a job's status or hash annotation cannot be interpreted."""

    def __init__(self, message, code="job_status_error"):
        super().__init__(message, code)


class TemplateError(KMMError):
    """Raised when a desired job template cannot be built."""

    def __init__(self, message, code="template_error"):
        super().__init__(message, code)


class RegistryError(KMMError):
    """Raised when the registry answers with something unexpected."""

    def __init__(self, message, code="registry_error"):
        super().__init__(message, code)


class StageError(KMMError):
    """Raised when a build, sign or workload stage fails for one kernel version."""

    def __init__(self, kernel_version, stage, cause):
        super().__init__(
            f"failed to handle {stage} for kernel version {kernel_version}: {cause}",
            code="stage_error",
        )
        self.kernel_version = kernel_version
        self.stage = stage
        self.cause = cause


class ReconcileError(KMMError):
    """Aggregates the per-kernel-version failures of one reconcile pass."""

    def __init__(self, errors, failed_stages=None):
        super().__init__("; ".join(str(e) for e in errors), code="reconcile_error")
        self.errors = list(errors)
        self.failed_stages = list(failed_stages or [])


class GarbageCollectionError(KMMError):
    """Aggregates the failures of the garbage collection passes."""

    def __init__(self, errors):
        super().__init__("; ".join(str(e) for e in errors), code="gc_error")
        self.errors = list(errors)
