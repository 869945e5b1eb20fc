"""Container registry introspection."""

import base64
import json
import logging
import re

import httpx
from kubernetes.client.rest import ApiException

from .errors import RegistryError

logger = logging.getLogger(__name__)

DOCKER_HUB_HOST = "registry-1.docker.io"
DOCKER_HUB_ALIASES = ("docker.io", "index.docker.io")

# Timeout for registry requests (seconds)
REQUEST_TIMEOUT = 30

MANIFEST_MEDIA_TYPES = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def parse_image(image):
    """Split an image reference into (registry host, repository, tag or digest)."""
    name, digest = image, None
    if "@" in name:
        name, digest = name.split("@", 1)

    host, _, rest = name.partition("/")
    if not rest or ("." not in host and ":" not in host and host != "localhost"):
        host, rest = DOCKER_HUB_HOST, name
        if "/" not in rest:
            rest = f"library/{rest}"
    elif host in DOCKER_HUB_ALIASES:
        host = DOCKER_HUB_HOST

    repository, tag = rest, "latest"
    last = rest.rsplit("/", 1)[-1]
    if ":" in last:
        repository, tag = rest.rsplit(":", 1)

    return host, repository, digest or tag


class RegistryAuthGetter:
    """Credentials for a registry host, read from a dockerconfigjson pull secret."""

    def __init__(self, core_v1, secret_name=None, namespace=None):
        self.core_v1 = core_v1
        self.secret_name = secret_name
        self.namespace = namespace

    def _auths(self):
        if not self.secret_name:
            return {}
        try:
            secret = self.core_v1.read_namespaced_secret(
                name=self.secret_name, namespace=self.namespace
            )
        except ApiException as e:
            if e.status == 404:
                logger.warning(f"Pull secret {self.namespace}/{self.secret_name} not found")
                return {}
            raise

        raw = (secret.data or {}).get(".dockerconfigjson")
        if not raw:
            return {}
        return json.loads(base64.b64decode(raw)).get("auths", {})

    def credentials(self, host):
        """Return (username, password) for the host, or None."""
        auths = self._auths()
        candidates = [host]
        if host == DOCKER_HUB_HOST:
            candidates += list(DOCKER_HUB_ALIASES) + ["https://index.docker.io/v1/"]

        for key, entry in auths.items():
            bare = key.replace("https://", "").replace("http://", "").rstrip("/")
            if key in candidates or bare in candidates:
                if entry.get("username"):
                    return entry["username"], entry.get("password", "")
                if entry.get("auth"):
                    user, _, password = base64.b64decode(entry["auth"]).decode().partition(":")
                    return user, password
        return None


class RegistryAuthGetterFactory:
    """Builds auth getters for the pull secret of a ModuleLoaderData."""

    def __init__(self, core_v1):
        self.core_v1 = core_v1

    def from_module_loader_data(self, mld):
        return RegistryAuthGetter(self.core_v1, mld.image_repo_secret, mld.namespace)


class Registry:
    """Checks images in an OCI distribution registry."""

    def __init__(self, timeout=REQUEST_TIMEOUT):
        self.timeout = timeout

    def image_exists(self, image, tls_options=None, auth_getter=None):
        """Return True if the registry has a manifest for the image."""
        tls_options = tls_options or {}
        host, repository, reference = parse_image(image)
        scheme = "http" if tls_options.get("insecure") else "https"
        url = f"{scheme}://{host}/v2/{repository}/manifests/{reference}"
        creds = auth_getter.credentials(host) if auth_getter else None

        with httpx.Client(
            verify=not tls_options.get("insecureSkipTLSVerify"),
            timeout=self.timeout,
            follow_redirects=True,
        ) as http:
            headers = {"Accept": MANIFEST_MEDIA_TYPES}
            try:
                response = http.head(url, headers=headers)
                if response.status_code == 401:
                    token = self._fetch_token(http, response, creds)
                    if token:
                        headers["Authorization"] = f"Bearer {token}"
                        response = http.head(url, headers=headers)
                    elif creds:
                        response = http.head(url, headers=headers, auth=creds)
            except httpx.HTTPError as e:
                raise RegistryError(f"could not get image {image}: {e}")

        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False
        raise RegistryError(
            f"could not get image {image}: registry returned {response.status_code}"
        )

    def _fetch_token(self, http, response, creds):
        challenge = response.headers.get("www-authenticate", "")
        if not challenge.lower().startswith("bearer"):
            return None

        params = dict(_CHALLENGE_PARAM.findall(challenge))
        realm = params.pop("realm", None)
        if not realm:
            return None

        token_response = http.get(realm, params=params, auth=creds)
        if token_response.status_code != 200:
            raise RegistryError(
                f"token request to {realm} failed with {token_response.status_code}"
            )
        body = token_response.json()
        return body.get("token") or body.get("access_token")
