"""Prometheus metrics for the operator."""

import logging

from prometheus_client import Gauge, start_http_server

logger = logging.getLogger(__name__)

MODULES_NUM = Gauge("kmm_module_num", "Number of existing KMM modules")
IN_CLUSTER_BUILD_NUM = Gauge(
    "kmm_in_cluster_build_num", "Number of KMM modules with in-cluster build defined"
)
IN_CLUSTER_SIGN_NUM = Gauge(
    "kmm_in_cluster_sign_num", "Number of KMM modules with in-cluster sign defined"
)
DEVICE_PLUGIN_NUM = Gauge(
    "kmm_device_plugin_num", "Number of KMM modules with a device plugin defined"
)
MODPROBE_ARGS = Gauge(
    "kmm_modprobe_args",
    "Modprobe load args of a module",
    ["name", "namespace", "modprobe_args"],
)
MODPROBE_RAW_ARGS = Gauge(
    "kmm_modprobe_raw_args",
    "Modprobe raw load args of a module",
    ["name", "namespace", "modprobe_raw_args"],
)


def start_metrics_server(port):
    if port:
        start_http_server(port)
        logger.info(f"Serving metrics on :{port}")


def is_build_and_sign_capable(module):
    """Return (build capable, sign capable) looking at container and mappings."""
    container = module.get("spec", {}).get("moduleLoader", {}).get("container", {})
    build_capable = container.get("build") is not None
    sign_capable = container.get("sign") is not None

    for mapping in container.get("kernelMappings") or []:
        if mapping.get("build") is not None:
            build_capable = True
        if mapping.get("sign") is not None:
            sign_capable = True

    return build_capable, sign_capable


class Metrics:
    """Fire-and-forget gauge updates describing all modules."""

    def set_module_metrics(self, modules):
        # Labelled series of deleted or edited modules must not linger
        MODPROBE_ARGS.clear()
        MODPROBE_RAW_ARGS.clear()

        with_build = 0
        with_sign = 0
        with_device_plugin = 0

        for module in modules:
            meta = module.get("metadata", {})
            spec = module.get("spec", {})
            if spec.get("devicePlugin"):
                with_device_plugin += 1

            build_capable, sign_capable = is_build_and_sign_capable(module)
            with_build += int(build_capable)
            with_sign += int(sign_capable)

            modprobe = spec.get("moduleLoader", {}).get("container", {}).get("modprobe", {})
            load_args = (modprobe.get("args") or {}).get("load")
            if load_args:
                MODPROBE_ARGS.labels(meta.get("name"), meta.get("namespace"), ",".join(load_args)).set(1)
            raw_args = (modprobe.get("rawArgs") or {}).get("load")
            if raw_args:
                MODPROBE_RAW_ARGS.labels(meta.get("name"), meta.get("namespace"), ",".join(raw_args)).set(1)

        MODULES_NUM.set(len(modules))
        IN_CLUSTER_BUILD_NUM.set(with_build)
        IN_CLUSTER_SIGN_NUM.set(with_sign)
        DEVICE_PLUGIN_NUM.set(with_device_plugin)
