"""Operator configuration loaded from the environment."""

import os
from dataclasses import dataclass

from . import crd

OPERATOR_NAMESPACE = os.environ.get("OPERATOR_NAMESPACE", "kmm-operator-system")
BUILD_IMAGE = os.environ.get("RELATED_IMAGES_BUILD", "gcr.io/kaniko-project/executor:latest")
SIGN_IMAGE = os.environ.get(
    "RELATED_IMAGES_SIGN",
    "quay.io/edge-infrastructure/kernel-module-management-signimage:latest",
)
KERNEL_LABEL = os.environ.get("KERNEL_LABEL", crd.DEFAULT_KERNEL_LABEL)
RECONCILE_INTERVAL = int(os.environ.get("RECONCILE_INTERVAL", "30"))
RETRY_DELAY = int(os.environ.get("RETRY_DELAY", "30"))
METRICS_PORT = int(os.environ.get("METRICS_PORT", "8080"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


@dataclass(frozen=True)
class OperatorConfig:
    """Settings shared by the reconciler components."""

    operator_namespace: str = OPERATOR_NAMESPACE
    build_image: str = BUILD_IMAGE
    sign_image: str = SIGN_IMAGE
    kernel_label: str = KERNEL_LABEL
    reconcile_interval: int = RECONCILE_INTERVAL
    retry_delay: int = RETRY_DELAY
    metrics_port: int = METRICS_PORT
    log_level: str = LOG_LEVEL


config = OperatorConfig()
