"""Shared fixtures for the operator tests."""

from unittest.mock import MagicMock

import pytest
from kubernetes import client

from kmm_operator import crd
from kmm_operator.api import ModuleLoaderData, Owner

MODULE_NAME = "kmm-ci"
NAMESPACE = "default"
MODULE_UID = "module-uid"
KERNEL_VERSION = "5.14.0-1"
SELECTOR = {"feature.kmm/enabled": "true"}


@pytest.fixture
def owner():
    return Owner(name=MODULE_NAME, namespace=NAMESPACE, uid=MODULE_UID)


@pytest.fixture
def make_mld(owner):
    def _make(**overrides):
        values = dict(
            name=MODULE_NAME,
            namespace=NAMESPACE,
            kernel_version=KERNEL_VERSION,
            container_image=f"quay.io/org/kmm-ci:{KERNEL_VERSION}",
            owner=owner,
            selector=dict(SELECTOR),
            modprobe={"moduleName": "kmm_ci_a"},
        )
        values.update(overrides)
        return ModuleLoaderData(**values)

    return _make


@pytest.fixture
def make_module():
    def _make(container=None, spec=None, status=None):
        module_container = {
            "modprobe": {"moduleName": "kmm_ci_a"},
            "kernelMappings": [
                {"literal": KERNEL_VERSION, "containerImage": "quay.io/org/kmm-ci:${KERNEL_FULL_VERSION}"}
            ],
        }
        module_container.update(container or {})

        module_spec = {
            "selector": dict(SELECTOR),
            "moduleLoader": {"container": module_container},
        }
        module_spec.update(spec or {})

        module = {
            "apiVersion": crd.API_VERSION,
            "kind": crd.KIND,
            "metadata": {"name": MODULE_NAME, "namespace": NAMESPACE, "uid": MODULE_UID},
            "spec": module_spec,
        }
        if status is not None:
            module["status"] = status
        return module

    return _make


@pytest.fixture
def make_job():
    def _make(
        name,
        kernel_version=KERNEL_VERSION,
        job_type=crd.JOB_TYPE_BUILD,
        owner_uid=MODULE_UID,
        job_hash=None,
        active=None,
        succeeded=None,
        failed=None,
    ):
        annotations = {crd.JOB_HASH_ANNOTATION: job_hash} if job_hash is not None else {}
        return client.V1Job(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=NAMESPACE,
                labels={
                    crd.MODULE_NAME_LABEL: MODULE_NAME,
                    crd.TARGET_KERNEL_LABEL: kernel_version,
                    crd.JOB_TYPE_LABEL: job_type,
                },
                annotations=annotations,
                owner_references=[
                    client.V1OwnerReference(
                        api_version=crd.API_VERSION,
                        kind=crd.KIND,
                        name=MODULE_NAME,
                        uid=owner_uid,
                        controller=True,
                    )
                ],
            ),
            status=client.V1JobStatus(active=active, succeeded=succeeded, failed=failed),
        )

    return _make


@pytest.fixture
def make_node():
    def _make(name, kernel_version=KERNEL_VERSION, no_schedule=False):
        node = MagicMock()
        node.metadata.name = name
        node.spec.taints = [MagicMock(effect="NoSchedule")] if no_schedule else None
        node.status.node_info.kernel_version = kernel_version
        return node

    return _make


@pytest.fixture
def make_ds():
    def _make(name, kernel_version=None, available=0):
        ds = MagicMock()
        ds.metadata.name = name
        ds.metadata.namespace = NAMESPACE
        labels = {crd.MODULE_NAME_LABEL: MODULE_NAME}
        if kernel_version is not None:
            labels[crd.DEFAULT_KERNEL_LABEL] = kernel_version
        ds.metadata.labels = labels
        ds.status.number_available = available
        return ds

    return _make
