"""CRD schema constants and helpers."""

# CRD Group, Version, and Kind
GROUP = "kmm.sigs.x-k8s.io"
VERSION = "v1beta1"
PLURAL = "modules"
KIND = "Module"

# API version string
API_VERSION = f"{GROUP}/{VERSION}"

# Labels and annotations set on owned objects
LABEL_PREFIX = "kmm.node.kubernetes.io"
MODULE_NAME_LABEL = f"{LABEL_PREFIX}/module.name"
TARGET_KERNEL_LABEL = f"{LABEL_PREFIX}/target-kernel"
JOB_TYPE_LABEL = f"{LABEL_PREFIX}/job-type"
JOB_HASH_ANNOTATION = f"{LABEL_PREFIX}/last-hash"
LAST_APPLIED_ANNOTATION = f"{LABEL_PREFIX}/last-applied"
DEFAULT_KERNEL_LABEL = f"{LABEL_PREFIX}/kernel-version.full"

# Job types
JOB_TYPE_BUILD = "build"
JOB_TYPE_SIGN = "sign"

# Job lifecycle statuses
JOB_STATUS_CREATED = "created"
JOB_STATUS_IN_PROGRESS = "in progress"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

# Keys holding the signing material in the key and cert secrets
PRIVATE_SIGN_DATA_KEY = "key"
PUBLIC_SIGN_DATA_KEY = "cert"

# Key holding the Dockerfile in the build ConfigMap
DOCKERFILE_CONFIGMAP_KEY = "dockerfile"

# The device plugin DaemonSet carries no kernel version label
DEVICE_PLUGIN_KERNEL_VERSION = ""
