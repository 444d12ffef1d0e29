from __future__ import annotations

import base64
import binascii
import fnmatch
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, assert_never

from autorollout.src.secret_string import SecretString

if TYPE_CHECKING:
    from autorollout.src.config import RegistryTable

LOGGER = logging.getLogger(__name__)

DOCKER_HUB_HOSTNAME = "docker.io"
DOCKER_HUB_HOSTNAME_PATTERN = "*.docker.io"


class CredentialError(RuntimeError):
    """Raised when no usable credential can be determined for a registry."""


class NoMatchingCredential(CredentialError):
    def __init__(self, hostname: str) -> None:
        super().__init__(
            f"No image pull secret or configured registry matches hostname {hostname}"
        )
        self.hostname = hostname


class InvalidPullSecret(CredentialError):
    """Raised when a docker config payload cannot be parsed."""


@dataclass(frozen=True)
class DockerAuth:
    """One ``auths`` entry of a docker config; ``auth`` is base64 ``user:password``."""

    username: str
    password: SecretString
    auth: SecretString
    email: str | None = None


@dataclass(frozen=True)
class DockerConfig:
    """Parsed ``.dockerconfigjson`` (or legacy ``.dockercfg``) payload.

    ``auths`` keeps the document's key order, which decides both pull secret
    matching order and which entry feeds the Basic authorization header.
    """

    source: str
    auths: Mapping[str, DockerAuth] = field(default_factory=dict)

    def first_auth(self) -> DockerAuth:
        for entry in self.auths.values():
            return entry
        raise InvalidPullSecret(f"Docker config from {self.source} has no auth entries")


@dataclass(frozen=True)
class NoCredential:
    """Anonymous access."""


@dataclass(frozen=True)
class StaticToken:
    token: SecretString
    username: str | None = None


@dataclass(frozen=True)
class PullSecret:
    docker_config: DockerConfig


Credential = NoCredential | StaticToken | PullSecret


def authorization_header(credential: Credential) -> str | None:
    """Return the ``Authorization`` header value for *credential*, or ``None``.

    A pull secret always contributes its first auth entry, even when it
    carries several registry hostnames.
    """
    if isinstance(credential, NoCredential):
        return None
    if isinstance(credential, StaticToken):
        return f"Bearer {credential.token.get_secret_value()}"
    if isinstance(credential, PullSecret):
        return f"Basic {credential.docker_config.first_auth().auth.get_secret_value()}"
    assert_never(credential)


def _parse_auth_entry(key: str, entry: Any, source: str) -> DockerAuth:
    if not isinstance(entry, dict):
        raise InvalidPullSecret(f"Auth entry {key} in {source} is not an object")

    username = entry.get("username") or ""
    password = entry.get("password") or ""
    auth = entry.get("auth")
    if not auth:
        if not username or not password:
            raise InvalidPullSecret(
                f"Auth entry {key} in {source} has neither auth nor username/password"
            )
        auth = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")

    email = entry.get("email")
    return DockerAuth(
        username=str(username),
        password=SecretString(str(password)),
        auth=SecretString(str(auth)),
        email=str(email) if email is not None else None,
    )


def parse_docker_config(payload: str | bytes, source: str) -> DockerConfig:
    """Parse a docker config JSON document into a :class:`DockerConfig`.

    Accepts the ``{"auths": {...}}`` shape of ``kubernetes.io/dockerconfigjson``
    secrets as well as the bare host map of legacy ``kubernetes.io/dockercfg``.
    """
    try:
        document = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidPullSecret(f"Docker config from {source} is not valid JSON") from exc

    if not isinstance(document, dict):
        raise InvalidPullSecret(f"Docker config from {source} is not a JSON object")

    raw_auths = document.get("auths", document)
    if not isinstance(raw_auths, dict) or not raw_auths:
        raise InvalidPullSecret(f"Docker config from {source} has no auth entries")

    auths = {
        str(key): _parse_auth_entry(str(key), entry, source)
        for key, entry in raw_auths.items()
    }
    return DockerConfig(source=source, auths=auths)


def decode_secret_data(data: Mapping[str, str] | None, source: str) -> DockerConfig:
    """Decode the base64 ``data`` map of a pull secret read from the API server."""
    data = data or {}
    for key in (".dockerconfigjson", ".dockercfg"):
        encoded = data.get(key)
        if encoded is None:
            continue
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidPullSecret(f"Secret {source} key {key} is not valid base64") from exc
        return parse_docker_config(payload, source)
    raise InvalidPullSecret(
        f"Secret {source} has neither .dockerconfigjson nor .dockercfg data"
    )


def normalize_registry_hostname(hostname: str) -> str:
    """Normalize a registry host for pull secret matching.

    Lowercases, strips an ``http(s)://`` scheme and any path, and rewrites bare
    ``docker.io`` to ``*.docker.io`` since Docker Hub's alias differs from
    the hostnames stored in pull secrets (``index.docker.io``,
    ``registry-1.docker.io``).
    """
    value = hostname.strip().lower()
    for scheme in ("https://", "http://"):
        if value.startswith(scheme):
            value = value[len(scheme) :]
            break
    value = value.split("/", 1)[0]
    if value == DOCKER_HUB_HOSTNAME:
        return DOCKER_HUB_HOSTNAME_PATTERN
    return value


def _hostname_matches(key: str, hostname: str) -> bool:
    if fnmatch.fnmatchcase(hostname, key):
        return True
    # The Docker Hub alias turns the container hostname into a pattern itself.
    return _has_wildcard(hostname) and fnmatch.fnmatchcase(key, hostname)


def _has_wildcard(value: str) -> bool:
    return any(ch in value for ch in "*?[")


class RegistrySecretResolver:
    """Map a container registry hostname to the credential used to query it.

    Precedence: the workload's attached pull secrets, then the statically
    configured registries, then :class:`NoMatchingCredential`. Performs no
    network I/O; pull secret payloads are fetched by the caller.
    """

    def __init__(
        self,
        registries: RegistryTable,
        logger: logging.Logger | None = None,
    ) -> None:
        self.registries = registries
        self.logger = logger or LOGGER

    def match_pull_secret(
        self, hostname: str, pull_secrets: Sequence[DockerConfig]
    ) -> DockerConfig | None:
        normalized_host = normalize_registry_hostname(hostname)
        for docker_config in pull_secrets:
            for key in docker_config.auths:
                if _hostname_matches(normalize_registry_hostname(key), normalized_host):
                    self.logger.debug(
                        "Registry %s matched auth entry %s of %s",
                        hostname,
                        key,
                        docker_config.source,
                    )
                    return docker_config
        return None

    def resolve(
        self, hostname: str, pull_secrets: Sequence[DockerConfig] = ()
    ) -> Credential:
        docker_config = self.match_pull_secret(hostname, pull_secrets)
        if docker_config is not None:
            return PullSecret(docker_config=docker_config)

        entry = self.registries.find(hostname)
        if entry is not None:
            self.logger.debug(
                "Registry %s matched configured pattern %s", hostname, entry.hostname_pattern
            )
            return entry.secret

        raise NoMatchingCredential(hostname)
