"""Idempotent lifecycle of the one-shot build and sign jobs.

There is at most one owned job per (module, kernel version, job type). Each
desired job carries a hash of its pod template plus any material the template
only references (Dockerfile contents, signing keys) so that a change to any of
them is detected. A changed job is deleted, never mutated; the replacement is
created by a later pass once the deletion has gone through.
"""

import hashlib
import json
import logging

from kubernetes import client
from kubernetes.client.rest import ApiException

from . import crd
from .errors import DuplicateJobError, JobStatusError, NoMatchingJobError
from .k8s import is_controlled_by, selector_string, to_dict

logger = logging.getLogger(__name__)


def compute_job_hash(job, hash_data=None):
    """SHA-256 over the job's pod template and the extra hashed material."""
    payload = {
        "podTemplate": to_dict(job.spec.template),
        "data": hash_data or {},
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


class JobLifecycleManager:
    """Create, look up, delete and interpret the module's batch jobs."""

    def __init__(self, batch_v1):
        self.batch_v1 = batch_v1

    def job_labels(self, module_name, kernel_version, job_type):
        return {
            crd.MODULE_NAME_LABEL: module_name,
            crd.TARGET_KERNEL_LABEL: kernel_version,
            crd.JOB_TYPE_LABEL: job_type,
        }

    def _list_owned(self, namespace, labels, owner):
        jobs = self.batch_v1.list_namespaced_job(
            namespace=namespace, label_selector=selector_string(labels)
        )
        return [j for j in jobs.items or [] if is_controlled_by(j, owner.uid)]

    def get_module_job_by_kernel(self, module_name, namespace, kernel_version, job_type, owner):
        """Return the single owned job for this kernel version and job type."""
        labels = self.job_labels(module_name, kernel_version, job_type)
        owned = self._list_owned(namespace, labels, owner)

        if not owned:
            raise NoMatchingJobError(
                f"no {job_type} job for module {namespace}/{module_name} and kernel {kernel_version}"
            )
        if len(owned) > 1:
            names = [j.metadata.name for j in owned]
            raise DuplicateJobError(
                f"expected 1 {job_type} job for module {namespace}/{module_name} "
                f"and kernel {kernel_version}, found {len(owned)}: {names}"
            )
        return owned[0]

    def get_module_jobs(self, module_name, namespace, job_type, owner):
        """Return every owned job of the given type, across kernel versions."""
        labels = {crd.MODULE_NAME_LABEL: module_name, crd.JOB_TYPE_LABEL: job_type}
        return self._list_owned(namespace, labels, owner)

    def create_job(self, job):
        return self.batch_v1.create_namespaced_job(namespace=job.metadata.namespace, body=job)

    def delete_job(self, job):
        try:
            self.batch_v1.delete_namespaced_job(
                name=job.metadata.name,
                namespace=job.metadata.namespace,
                body=client.V1DeleteOptions(propagation_policy="Background"),
            )
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Job {job.metadata.name} already deleted")
                return
            raise

    def get_job_status(self, job):
        """Map the job's completion counters to a lifecycle status."""
        status = job.status
        active = (status.active or 0) if status else 0
        succeeded = (status.succeeded or 0) if status else 0
        failed = (status.failed or 0) if status else 0

        if failed > 0 and active == 0 and succeeded == 0:
            return crd.JOB_STATUS_FAILED
        if active > 0:
            return crd.JOB_STATUS_IN_PROGRESS
        if succeeded > 0:
            return crd.JOB_STATUS_COMPLETED

        raise JobStatusError(
            f"unknown status of job {job.metadata.name}: active={active} succeeded={succeeded} failed={failed}"
        )

    def is_job_changed(self, existing, desired):
        existing_hash = (existing.metadata.annotations or {}).get(crd.JOB_HASH_ANNOTATION)
        if existing_hash is None:
            raise JobStatusError(f"job {existing.metadata.name} has no hash annotation")
        return existing_hash != desired.metadata.annotations[crd.JOB_HASH_ANNOTATION]

    def sync(self, kernel_version, job_type, job, owner, hash_data=None):
        """Drive the job for one kernel version towards the desired template.

        Performs at most one write: a create when no owned job exists, or a
        delete when the existing job's hash differs from the desired one.
        """
        annotations = dict(job.metadata.annotations or {})
        annotations[crd.JOB_HASH_ANNOTATION] = compute_job_hash(job, hash_data)
        job.metadata.annotations = annotations

        module_name = owner.name
        namespace = job.metadata.namespace

        try:
            existing = self.get_module_job_by_kernel(
                module_name, namespace, kernel_version, job_type, owner
            )
        except NoMatchingJobError:
            logger.info(f"Creating {job_type} job for module {namespace}/{module_name}, kernel {kernel_version}")
            self.create_job(job)
            return crd.JOB_STATUS_CREATED

        if self.is_job_changed(existing, job):
            logger.info(
                f"The {job_type} job {existing.metadata.name} template has changed, deleting it "
                f"(kernel {kernel_version})"
            )
            self.delete_job(existing)
            return crd.JOB_STATUS_IN_PROGRESS

        return self.get_job_status(existing)

    def garbage_collect(self, module_name, namespace, job_type, owner):
        """Delete the completed jobs of a type and return their names.

        Failed and running jobs are kept: a failed job stays until an operator
        deletes it.
        """
        jobs = self.get_module_jobs(module_name, namespace, job_type, owner)

        deleted = []
        for job in jobs:
            if job.status and (job.status.succeeded or 0) >= 1:
                self.delete_job(job)
                deleted.append(job.metadata.name)

        return deleted
