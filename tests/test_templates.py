"""Tests for the job and DaemonSet manifests."""

import pytest

from kmm_operator import crd
from kmm_operator.errors import TemplateError
from kmm_operator.templates import (
    create_build_job_manifest,
    create_device_plugin_manifest,
    create_driver_container_manifest,
    create_sign_job_manifest,
    device_plugin_name,
)

KERNEL_LABEL = crd.DEFAULT_KERNEL_LABEL
LABELS = {crd.MODULE_NAME_LABEL: "kmm-ci", crd.JOB_TYPE_LABEL: crd.JOB_TYPE_BUILD}
BUILD = {"dockerfileConfigMap": {"name": "kmm-ci-dockerfile"}}
SIGN = {"keySecret": {"name": "signing-key"}, "certSecret": {"name": "signing-cert"}}


def container_args(job):
    return job.spec.template.spec.containers[0].args


class TestBuildJobManifest:
    """Tests for create_build_job_manifest."""

    def test_job_metadata(self, make_mld):
        """Should create an owned one-shot job."""
        job = create_build_job_manifest(make_mld(build=BUILD), LABELS, "kaniko:latest")

        assert job.metadata.generate_name == "kmm-ci-build-"
        assert job.metadata.labels == LABELS
        assert job.metadata.owner_references[0].uid == "module-uid"
        assert job.spec.backoff_limit == 0
        assert job.spec.completions == 1
        assert job.spec.template.spec.restart_policy == "Never"
        assert job.spec.template.spec.containers[0].image == "kaniko:latest"

    def test_destination_without_signing(self, make_mld):
        """Should push the final image when no signing follows."""
        mld = make_mld(build=BUILD)

        args = container_args(create_build_job_manifest(mld, LABELS, "kaniko:latest"))

        assert f"--destination={mld.container_image}" in args

    def test_destination_with_signing(self, make_mld):
        """Should push the intermediate image when signing follows."""
        mld = make_mld(build=BUILD, sign=SIGN)

        args = container_args(create_build_job_manifest(mld, LABELS, "kaniko:latest"))

        assert "--destination=quay.io/org/kmm-ci:5.14.0-1_default_kmm-ci_kmm_unsigned" in args

    def test_build_args(self, make_mld):
        """Should pass default build args with user overrides applied."""
        build = dict(BUILD, buildArgs=[{"name": "KERNEL_VERSION", "value": "custom"}, {"name": "EXTRA", "value": "1"}])

        args = container_args(create_build_job_manifest(make_mld(build=build), LABELS, "kaniko:latest"))

        assert "--build-arg=KERNEL_VERSION=custom" in args
        assert "--build-arg=KERNEL_VERSION=5.14.0-1" not in args
        assert "--build-arg=MOD_NAME=kmm-ci" in args
        assert "--build-arg=MOD_NAMESPACE=default" in args
        assert "--build-arg=EXTRA=1" in args

    def test_no_push_and_tls(self, make_mld):
        """Should honour push and base image TLS options."""
        build = dict(BUILD, baseImageRegistryTLS={"insecure": True})

        args = container_args(create_build_job_manifest(make_mld(build=build), LABELS, "kaniko:latest", push_image=False))

        assert "--no-push" in args
        assert "--insecure-pull" in args
        assert not any(a.startswith("--destination") for a in args)

    def test_mounts(self, make_mld):
        """Should mount the Dockerfile, build secrets and the pull secret."""
        build = dict(BUILD, secrets=[{"name": "token"}])
        mld = make_mld(build=build, image_repo_secret="pull-secret")

        job = create_build_job_manifest(mld, LABELS, "kaniko:latest")

        mounts = {m.mount_path for m in job.spec.template.spec.containers[0].volume_mounts}
        assert mounts == {"/workspace", "/run/secrets/token", "/kaniko/.docker"}

    def test_no_dockerfile(self, make_mld):
        """Should raise without a Dockerfile ConfigMap."""
        with pytest.raises(TemplateError):
            create_build_job_manifest(make_mld(build={}), LABELS, "kaniko:latest")


class TestSignJobManifest:
    """Tests for create_sign_job_manifest."""

    def test_sign_args(self, make_mld):
        """Should sign the given image into the target image."""
        sign = dict(SIGN, filesToSign=["/a.ko", "/b.ko"])
        mld = make_mld(sign=sign)

        job = create_sign_job_manifest(mld, LABELS, "img:unsigned", "signimage:latest")

        args = container_args(job)
        assert args[args.index("-signedimage") + 1] == mld.container_image
        assert args[args.index("-unsignedimage") + 1] == "img:unsigned"
        assert args[args.index("-filestosign") + 1] == "/a.ko:/b.ko"
        assert job.metadata.generate_name == "kmm-ci-sign-"

    def test_unsigned_image_fallback(self, make_mld):
        """Should fall back to the declared unsigned image."""
        mld = make_mld(sign=dict(SIGN, unsignedImage="quay.io/org/prebuilt:1"))

        args = container_args(create_sign_job_manifest(mld, LABELS, "", "signimage:latest"))

        assert args[args.index("-unsignedimage") + 1] == "quay.io/org/prebuilt:1"

    def test_no_image_to_sign(self, make_mld):
        """Should raise when there is nothing to sign."""
        with pytest.raises(TemplateError, match="no image to sign"):
            create_sign_job_manifest(make_mld(sign=SIGN), LABELS, "", "signimage:latest")

    def test_missing_key_secret(self, make_mld):
        """Should raise when the key secret is not declared."""
        with pytest.raises(TemplateError):
            create_sign_job_manifest(make_mld(sign={"certSecret": {"name": "c"}}), LABELS, "img", "signimage:latest")


class TestDriverContainerManifest:
    """Tests for create_driver_container_manifest."""

    def test_targets_kernel(self, make_mld):
        """Should pin the DaemonSet to nodes running the kernel version."""
        ds = create_driver_container_manifest(make_mld(), KERNEL_LABEL)

        pod_spec = ds.spec.template.spec
        assert pod_spec.node_selector == {"feature.kmm/enabled": "true", KERNEL_LABEL: "5.14.0-1"}
        assert ds.metadata.labels[KERNEL_LABEL] == "5.14.0-1"
        assert ds.metadata.generate_name == "kmm-ci-"
        assert ds.metadata.owner_references[0].uid == "module-uid"

    def test_modprobe_hooks(self, make_mld):
        """Should load on start and unload on stop."""
        ds = create_driver_container_manifest(make_mld(), KERNEL_LABEL)

        lifecycle = ds.spec.template.spec.containers[0].lifecycle
        assert lifecycle.post_start._exec.command == ["modprobe", "-v", "-d", "/opt", "kmm_ci_a"]
        assert lifecycle.pre_stop._exec.command == ["modprobe", "-rv", "-d", "/opt", "kmm_ci_a"]

    def test_raw_args(self, make_mld):
        """Should use raw modprobe args verbatim."""
        mld = make_mld(modprobe={"rawArgs": {"load": ["-v", "kmm_ci_a"], "unload": ["-r", "kmm_ci_a"]}})

        lifecycle = create_driver_container_manifest(mld, KERNEL_LABEL).spec.template.spec.containers[0].lifecycle

        assert lifecycle.post_start._exec.command == ["modprobe", "-v", "kmm_ci_a"]
        assert lifecycle.pre_stop._exec.command == ["modprobe", "-r", "kmm_ci_a"]

    def test_firmware(self, make_mld):
        """Should copy firmware to the host before loading."""
        mld = make_mld(modprobe={"moduleName": "kmm_ci_a", "firmwarePath": "/firmware"})

        container = create_driver_container_manifest(mld, KERNEL_LABEL).spec.template.spec.containers[0]

        assert container.lifecycle.post_start._exec.command[:2] == ["/bin/sh", "-c"]
        assert "cp -r /firmware/*" in container.lifecycle.post_start._exec.command[2]
        assert "/var/lib/firmware" in {m.mount_path for m in container.volume_mounts}

    def test_missing_module_name(self, make_mld):
        """Should raise without a module name or raw args."""
        with pytest.raises(TemplateError):
            create_driver_container_manifest(make_mld(modprobe={}), KERNEL_LABEL)


class TestDevicePluginManifest:
    """Tests for create_device_plugin_manifest."""

    def test_device_plugin(self, make_module, owner):
        """Should create a named DaemonSet without a kernel label."""
        module = make_module(spec={"devicePlugin": {"container": {"image": "quay.io/org/plugin:1"}}})

        ds = create_device_plugin_manifest(module, owner)

        assert ds.metadata.name == device_plugin_name("kmm-ci") == "kmm-ci-device-plugin"
        assert KERNEL_LABEL not in ds.metadata.labels
        assert ds.spec.template.spec.containers[0].image == "quay.io/org/plugin:1"
        assert ds.spec.template.spec.node_selector == {"feature.kmm/enabled": "true"}

    def test_missing_image(self, make_module, owner):
        """Should raise without a container image."""
        with pytest.raises(TemplateError):
            create_device_plugin_manifest(make_module(spec={"devicePlugin": {"container": {}}}), owner)
