"""Kubernetes resource templates."""

from kubernetes import client

from . import crd
from .api import intermediate_image_name, secret_names, should_be_signed
from .errors import TemplateError
from .kernel import apply_build_arg_overrides

DEVICE_PLUGIN_ROLE_LABEL = f"{crd.LABEL_PREFIX}/role"
DEVICE_PLUGINS_PATH = "/var/lib/kubelet/device-plugins"
FIRMWARE_HOST_PATH = "/var/lib/firmware"


def secret_volume_name(secret_name):
    return f"secret-{secret_name}"


def make_secret_volume(secret_name, key=None, path=None):
    """Secret volume, optionally projecting a single key to path."""
    items = [client.V1KeyToPath(key=key, path=path)] if key else None
    return client.V1Volume(
        name=secret_volume_name(secret_name),
        secret=client.V1SecretVolumeSource(secret_name=secret_name, items=items),
    )


def make_secret_volume_mount(secret_name, mount_path):
    return client.V1VolumeMount(
        name=secret_volume_name(secret_name),
        mount_path=mount_path,
        read_only=True,
    )


def _job_manifest(mld, labels, job_type, pod_spec):
    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            generate_name=f"{mld.name}-{job_type}-",
            namespace=mld.namespace,
            labels=dict(labels),
            annotations={},
            owner_references=[mld.owner.reference()],
        ),
        spec=client.V1JobSpec(
            completions=1,
            backoff_limit=0,
            template=client.V1PodTemplateSpec(spec=pod_spec),
        ),
    )


def create_build_job_manifest(mld, labels, builder_image, push_image=True):
    """Create the kaniko build job for one kernel version."""
    build = mld.build or {}

    dockerfile_cm = (build.get("dockerfileConfigMap") or {}).get("name")
    if not dockerfile_cm:
        raise TemplateError(f"module {mld.namespace}/{mld.name} has no dockerfileConfigMap")

    # Signing takes the unsigned image from the intermediate tag
    destination = mld.container_image
    if should_be_signed(mld):
        destination = intermediate_image_name(mld.name, mld.namespace, mld.container_image)

    args = ["--dockerfile=/workspace/Dockerfile", "--context=dir:///workspace"]

    if push_image:
        args.append(f"--destination={destination}")
        if mld.registry_tls.get("insecure"):
            args.append("--insecure")
        if mld.registry_tls.get("insecureSkipTLSVerify"):
            args.append("--skip-tls-verify")
    else:
        args.append("--no-push")

    default_args = [
        {"name": "KERNEL_VERSION", "value": mld.kernel_version},
        {"name": "MOD_NAME", "value": mld.name},
        {"name": "MOD_NAMESPACE", "value": mld.namespace},
    ]
    for arg in apply_build_arg_overrides(default_args, build.get("buildArgs")):
        args.append(f"--build-arg={arg['name']}={arg.get('value', '')}")

    base_tls = build.get("baseImageRegistryTLS") or {}
    if base_tls.get("insecure"):
        args.append("--insecure-pull")
    if base_tls.get("insecureSkipTLSVerify"):
        args.append("--skip-tls-verify-pull")

    volumes = [
        client.V1Volume(
            name="dockerfile",
            config_map=client.V1ConfigMapVolumeSource(
                name=dockerfile_cm,
                items=[client.V1KeyToPath(key=crd.DOCKERFILE_CONFIGMAP_KEY, path="Dockerfile")],
            ),
        )
    ]
    volume_mounts = [client.V1VolumeMount(name="dockerfile", mount_path="/workspace", read_only=True)]

    for secret in secret_names(build.get("secrets")):
        volumes.append(make_secret_volume(secret))
        volume_mounts.append(make_secret_volume_mount(secret, f"/run/secrets/{secret}"))

    if mld.image_repo_secret:
        volumes.append(make_secret_volume(mld.image_repo_secret, ".dockerconfigjson", "config.json"))
        volume_mounts.append(make_secret_volume_mount(mld.image_repo_secret, "/kaniko/.docker"))

    pod_spec = client.V1PodSpec(
        restart_policy="Never",
        containers=[
            client.V1Container(
                name="kaniko",
                image=builder_image,
                args=args,
                volume_mounts=volume_mounts,
            )
        ],
        volumes=volumes,
        node_selector=dict(mld.selector) or None,
    )

    return _job_manifest(mld, labels, crd.JOB_TYPE_BUILD, pod_spec)


def create_sign_job_manifest(mld, labels, image_to_sign, signer_image, push_image=True):
    """Create the signing job for one kernel version."""
    sign = mld.sign or {}

    key_secret = (sign.get("keySecret") or {}).get("name")
    cert_secret = (sign.get("certSecret") or {}).get("name")
    if not key_secret or not cert_secret:
        raise TemplateError(f"module {mld.namespace}/{mld.name} sign section needs keySecret and certSecret")

    args = []

    if push_image:
        args += ["-signedimage", mld.container_image]
        if mld.registry_tls.get("insecure"):
            args.append("--insecure")
        if mld.registry_tls.get("insecureSkipTLSVerify"):
            args.append("--skip-tls-verify")
    else:
        args.append("-no-push")

    if image_to_sign:
        args += ["-unsignedimage", image_to_sign]
    elif sign.get("unsignedImage"):
        args += ["-unsignedimage", sign["unsignedImage"]]
    else:
        raise TemplateError("no image to sign given")

    args += ["-key", "/signingkey/key.priv", "-cert", "/signingcert/public.der"]

    if sign.get("filesToSign"):
        args += ["-filestosign", ":".join(sign["filesToSign"])]

    unsigned_tls = sign.get("unsignedImageRegistryTLS") or {}
    if unsigned_tls.get("insecure"):
        args.append("--insecure-pull")
    if unsigned_tls.get("insecureSkipTLSVerify"):
        args.append("--skip-tls-verify-pull")

    volumes = [
        make_secret_volume(key_secret, crd.PRIVATE_SIGN_DATA_KEY, "key.priv"),
        make_secret_volume(cert_secret, crd.PUBLIC_SIGN_DATA_KEY, "public.der"),
    ]
    volume_mounts = [
        make_secret_volume_mount(cert_secret, "/signingcert"),
        make_secret_volume_mount(key_secret, "/signingkey"),
    ]

    args += ["-secretdir", "/docker_config/"]
    if mld.image_repo_secret:
        volumes.append(make_secret_volume(mld.image_repo_secret))
        volume_mounts.append(
            make_secret_volume_mount(mld.image_repo_secret, f"/docker_config/{mld.image_repo_secret}")
        )

    pod_spec = client.V1PodSpec(
        restart_policy="Never",
        containers=[
            client.V1Container(
                name="signimage",
                image=signer_image,
                args=args,
                volume_mounts=volume_mounts,
            )
        ],
        volumes=volumes,
        node_selector=dict(mld.selector) or None,
    )

    return _job_manifest(mld, labels, crd.JOB_TYPE_SIGN, pod_spec)


def modprobe_load_command(modprobe):
    raw = (modprobe.get("rawArgs") or {}).get("load")
    if raw:
        return ["modprobe"] + list(raw)

    module_name = modprobe.get("moduleName")
    if not module_name:
        raise TemplateError("modprobe.moduleName is required unless rawArgs are set")

    command = ["modprobe"] + list((modprobe.get("args") or {}).get("load") or ["-v"])
    command += ["-d", modprobe.get("dirName") or "/opt", module_name]
    command += list(modprobe.get("parameters") or [])
    return command


def modprobe_unload_command(modprobe):
    raw = (modprobe.get("rawArgs") or {}).get("unload")
    if raw:
        return ["modprobe"] + list(raw)

    module_name = modprobe.get("moduleName")
    if not module_name:
        raise TemplateError("modprobe.moduleName is required unless rawArgs are set")

    command = ["modprobe"] + list((modprobe.get("args") or {}).get("unload") or ["-rv"])
    command += ["-d", modprobe.get("dirName") or "/opt", module_name]
    return command


def driver_container_labels(mld, kernel_label):
    return {crd.MODULE_NAME_LABEL: mld.name, kernel_label: mld.kernel_version}


def create_driver_container_manifest(mld, kernel_label):
    """Create the module-loader DaemonSet for one kernel version."""
    labels = driver_container_labels(mld, kernel_label)
    node_selector = dict(mld.selector)
    node_selector[kernel_label] = mld.kernel_version

    load = modprobe_load_command(mld.modprobe)
    unload = modprobe_unload_command(mld.modprobe)

    volumes = [
        client.V1Volume(
            name="node-lib-modules",
            host_path=client.V1HostPathVolumeSource(path="/lib/modules"),
        )
    ]
    volume_mounts = [
        client.V1VolumeMount(name="node-lib-modules", mount_path="/lib/modules", read_only=True)
    ]

    firmware_path = mld.modprobe.get("firmwarePath")
    if firmware_path:
        volumes.append(
            client.V1Volume(
                name="node-var-lib-firmware",
                host_path=client.V1HostPathVolumeSource(path=FIRMWARE_HOST_PATH),
            )
        )
        volume_mounts.append(
            client.V1VolumeMount(name="node-var-lib-firmware", mount_path=FIRMWARE_HOST_PATH)
        )
        load = ["/bin/sh", "-c", f"cp -r {firmware_path}/* {FIRMWARE_HOST_PATH} && " + " ".join(load)]

    image_pull_secrets = None
    if mld.image_repo_secret:
        image_pull_secrets = [client.V1LocalObjectReference(name=mld.image_repo_secret)]

    container = client.V1Container(
        name="module-loader",
        image=mld.container_image,
        image_pull_policy=mld.image_pull_policy,
        command=["sleep", "infinity"],
        lifecycle=client.V1Lifecycle(
            post_start=client.V1LifecycleHandler(_exec=client.V1ExecAction(command=load)),
            pre_stop=client.V1LifecycleHandler(_exec=client.V1ExecAction(command=unload)),
        ),
        security_context=client.V1SecurityContext(
            allow_privilege_escalation=False,
            capabilities=client.V1Capabilities(add=["SYS_MODULE"]),
            run_as_user=0,
            se_linux_options=client.V1SELinuxOptions(type="spc_t"),
        ),
        volume_mounts=volume_mounts,
    )

    return client.V1DaemonSet(
        api_version="apps/v1",
        kind="DaemonSet",
        metadata=client.V1ObjectMeta(
            generate_name=f"{mld.name}-",
            namespace=mld.namespace,
            labels=labels,
            owner_references=[mld.owner.reference()],
        ),
        spec=client.V1DaemonSetSpec(
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(
                    containers=[container],
                    image_pull_secrets=image_pull_secrets,
                    node_selector=node_selector,
                    priority_class_name="system-node-critical",
                    service_account_name=mld.service_account_name,
                    volumes=volumes,
                ),
            ),
        ),
    )


def device_plugin_name(module_name):
    return f"{module_name}-device-plugin"


def create_device_plugin_manifest(module, owner):
    """Create the device plugin DaemonSet of a Module."""
    spec = module.get("spec", {})
    device_plugin = spec.get("devicePlugin") or {}
    container_spec = device_plugin.get("container") or {}

    if not container_spec.get("image"):
        raise TemplateError(f"module {owner.namespace}/{owner.name} devicePlugin has no container image")

    labels = {crd.MODULE_NAME_LABEL: owner.name, DEVICE_PLUGIN_ROLE_LABEL: "device-plugin"}

    volume_mounts = [client.V1VolumeMount(name="kubelet-device-plugins", mount_path=DEVICE_PLUGINS_PATH)]
    volume_mounts += list(container_spec.get("volumeMounts") or [])

    volumes = [
        client.V1Volume(
            name="kubelet-device-plugins",
            host_path=client.V1HostPathVolumeSource(path=DEVICE_PLUGINS_PATH),
        )
    ]
    volumes += list(device_plugin.get("volumes") or [])

    image_pull_secrets = None
    repo_secret = (spec.get("imageRepoSecret") or {}).get("name")
    if repo_secret:
        image_pull_secrets = [client.V1LocalObjectReference(name=repo_secret)]

    return client.V1DaemonSet(
        api_version="apps/v1",
        kind="DaemonSet",
        metadata=client.V1ObjectMeta(
            name=device_plugin_name(owner.name),
            namespace=owner.namespace,
            labels=labels,
            owner_references=[owner.reference()],
        ),
        spec=client.V1DaemonSetSpec(
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(
                    containers=[
                        client.V1Container(
                            name="device-plugin",
                            image=container_spec["image"],
                            image_pull_policy=container_spec.get("imagePullPolicy"),
                            args=container_spec.get("args"),
                            env=container_spec.get("env"),
                            security_context=client.V1SecurityContext(privileged=True),
                            volume_mounts=volume_mounts,
                        )
                    ],
                    image_pull_secrets=image_pull_secrets,
                    node_selector=dict(spec.get("selector") or {}),
                    priority_class_name="system-node-critical",
                    service_account_name=device_plugin.get("serviceAccountName"),
                    volumes=volumes,
                ),
            ),
        ),
    )
