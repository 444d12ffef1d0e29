from __future__ import annotations

import logging
import re
import tempfile
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import certifi
import requests

from autorollout.src.config import ConfigError
from autorollout.src.credentials import Credential, StaticToken, authorization_header
from autorollout.src.image_reference import ImageReference
from autorollout.src.metrics import METRICS
from autorollout.src.secret_string import SecretString

LOGGER = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPES = (
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
)
DIGEST_HEADER = "Docker-Content-Digest"
ARTIFACTORY_HEADERS = ("x-jfrog-version", "x-artifactory-id", "x-artifactory-node-id")

_CHALLENGE_PARAM = re.compile(r'\s*([A-Za-z_][A-Za-z0-9_-]*)\s*=\s*("[^"]*"|[^,]*)\s*,?')


class RegistryError(RuntimeError):
    """Raised when a registry does not yield a digest for an image tag."""


class RegistryStatusError(RegistryError):
    def __init__(self, url: str, status: int, detail: str = "") -> None:
        message = f"Registry returned HTTP {status} for {url}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.url = url
        self.status = status


class MissingDigestHeader(RegistryError):
    def __init__(self, url: str) -> None:
        super().__init__(f"Response from {url} does not contain HTTP header {DIGEST_HEADER}")
        self.url = url


class MalformedChallenge(RegistryError):
    """Raised when a ``WWW-Authenticate`` Bearer challenge cannot be used."""


class TokenExchangeFailed(RegistryError):
    """Raised when the challenge realm does not hand out a bearer token."""


@dataclass(frozen=True)
class BearerChallenge:
    realm: str
    service: str
    scope: str


def parse_bearer_challenge(header: str) -> BearerChallenge:
    """Parse an RFC 6750 ``WWW-Authenticate: Bearer realm=..,service=..,scope=..`` value.

    Values are trimmed of whitespace and surrounding quotes. ``realm``,
    ``service`` and ``scope`` are all required.
    """
    scheme, _, params_text = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        raise MalformedChallenge(f"Unsupported authentication scheme in challenge: {scheme!r}")

    params: dict[str, str] = {}
    for match in _CHALLENGE_PARAM.finditer(params_text):
        params[match.group(1).lower()] = match.group(2).strip().strip('"').strip()

    missing = [name for name in ("realm", "service", "scope") if not params.get(name)]
    if missing:
        raise MalformedChallenge(
            f"Bearer challenge is missing {', '.join(missing)}: {header!r}"
        )
    return BearerChallenge(realm=params["realm"], service=params["service"], scope=params["scope"])


def rewrite_docker_io_registry(registry: str) -> str:
    """Map the ``docker.io`` alias to the host containerd actually talks to."""
    if registry == "docker.io":
        return "registry-1.docker.io"
    return registry


def manifest_url(image_reference: ImageReference) -> str:
    registry = rewrite_docker_io_registry(image_reference.registry)
    return f"https://{registry}/v2/{image_reference.repository}/manifests/{image_reference.tag}"


def artifactory_fallback_url(image_reference: ImageReference) -> str:
    """Manifest URL for JFrog Artifactory's repository path method.

    The first repository segment is the Artifactory repository key.
    """
    registry = rewrite_docker_io_registry(image_reference.registry)
    repo_key = image_reference.repository.split("/", 1)[0]
    return (
        f"https://{registry}/artifactory/api/docker/{repo_key}"
        f"/v2/{image_reference.repository}/manifests/{image_reference.tag}"
    )


def is_artifactory_response(headers: Mapping[str, Any]) -> bool:
    return any(name in headers for name in ARTIFACTORY_HEADERS)


def write_ca_bundle(ca_certificate_paths: Sequence[Path]) -> Path | None:
    """Write the certifi bundle plus extra CA certificates to a private file.

    Returns ``None`` when there are no extra certificates. The caller owns
    the file and removes it on shutdown; the system-wide trust store stays
    untouched.
    """
    if not ca_certificate_paths:
        return None

    parts = [Path(certifi.where()).read_text(encoding="utf-8")]
    for path in ca_certificate_paths:
        try:
            content = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Failed to read CA certificate file {path}") from exc
        if "-----BEGIN CERTIFICATE-----" not in content:
            raise ConfigError(f"File {path} does not contain a PEM certificate")
        parts.append(content)
        LOGGER.info("Trusting additional CA certificates from %s", path)

    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        prefix="kube-autorollout-ca-",
        suffix=".pem",
        delete=False,
    ) as bundle:
        bundle.write("\n".join(parts))
    return Path(bundle.name)


def build_registry_session(
    ca_bundle: Path | None = None,
    user_agent: str = "kube-autorollout",
) -> requests.Session:
    """Return a :class:`requests.Session` for registry calls."""
    session = requests.Session()
    session.headers["User-Agent"] = user_agent
    if ca_bundle is not None:
        session.verify = str(ca_bundle)
    return session


class OCIDigestClient:
    """Resolve the current manifest digest of an image tag on its registry.

    Fetch strategy:

    1. ``GET /v2/<repository>/manifests/<tag>`` with the credential's
       ``Authorization`` header.
    2. On ``401`` with a Bearer challenge, exchange the credential for a token
       at the challenge realm and retry the manifest request once.
    3. On ``404`` from an Artifactory instance (and only when the fallback is
       enabled), retry against the repository path URL layout with the
       original credential.

    Any other outcome raises a :class:`RegistryError` subclass.
    """

    def __init__(
        self,
        session_factory: Callable[[], requests.Session] = build_registry_session,
        timeout: float = 30,
        enable_artifactory_fallback: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.timeout = timeout
        self.enable_artifactory_fallback = enable_artifactory_fallback
        self.logger = logger or LOGGER
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        """The calling thread's session; sessions are never shared across threads."""
        session = getattr(self._local, "session", None)
        if session is None:
            session = self.session_factory()
            self._local.session = session
        return session

    def _get(
        self,
        url: str,
        tier: str,
        authorization: str | None,
        accept: str | None = None,
        params: Mapping[str, str] | None = None,
    ) -> requests.Response:
        headers: dict[str, str] = {}
        if accept:
            headers["Accept"] = accept
        if authorization:
            headers["Authorization"] = authorization
        try:
            response = self.session.get(
                url, headers=headers, params=params, timeout=self.timeout
            )
        except requests.RequestException as exc:
            METRICS.registry_requests_total.labels(tier=tier, status="error").inc()
            raise RegistryError(f"Request to {url} failed: {exc}") from exc
        METRICS.registry_requests_total.labels(tier=tier, status=str(response.status_code)).inc()
        return response

    def _fetch_manifest(self, url: str, credential: Credential, tier: str) -> requests.Response:
        self.logger.info("Fetching image manifest from %s", url)
        return self._get(
            url,
            tier=tier,
            authorization=authorization_header(credential),
            accept=", ".join(MANIFEST_MEDIA_TYPES),
        )

    @staticmethod
    def _digest_from_response(url: str, response: requests.Response) -> str:
        digest = response.headers.get(DIGEST_HEADER)
        if not digest:
            raise MissingDigestHeader(url)
        return digest.strip()

    def exchange_token(self, challenge: BearerChallenge, credential: Credential) -> StaticToken:
        """Obtain a bearer token from the challenge realm using *credential*."""
        self.logger.info(
            "Requesting bearer token from %s for service %s and scope %s",
            challenge.realm,
            challenge.service,
            challenge.scope,
        )
        response = self._get(
            challenge.realm,
            tier="token",
            authorization=authorization_header(credential),
            params={"service": challenge.service, "scope": challenge.scope},
        )
        if response.status_code != 200:
            raise TokenExchangeFailed(
                f"Token endpoint {challenge.realm} returned HTTP {response.status_code}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise TokenExchangeFailed(
                f"Token endpoint {challenge.realm} returned a non-JSON body"
            ) from exc
        token = body.get("token") if isinstance(body, dict) else None
        if not isinstance(token, str) or not token:
            raise TokenExchangeFailed(
                f"Token endpoint {challenge.realm} response has no token field"
            )
        return StaticToken(token=SecretString(token))

    def _fetch_artifactory_fallback(
        self, image_reference: ImageReference, credential: Credential, status: int
    ) -> str:
        url = artifactory_fallback_url(image_reference)
        self.logger.info(
            "Received HTTP %s from Artifactory, fetching digest from fallback URL %s",
            status,
            url,
        )
        response = self._fetch_manifest(url, credential, tier="artifactory")
        if response.status_code != 200:
            raise RegistryStatusError(url, response.status_code, "Artifactory fallback failed")
        return self._digest_from_response(url, response)

    def fetch_digest(self, image_reference: ImageReference, credential: Credential) -> str:
        url = manifest_url(image_reference)
        response = self._fetch_manifest(url, credential, tier="direct")
        challenged = False

        if response.status_code == 401 and response.headers.get("WWW-Authenticate"):
            challenge = parse_bearer_challenge(response.headers["WWW-Authenticate"])
            token = self.exchange_token(challenge, credential)
            response = self._fetch_manifest(url, token, tier="challenge")
            challenged = True

        if response.status_code == 200:
            return self._digest_from_response(url, response)

        if response.status_code == 404 and self.enable_artifactory_fallback:
            if is_artifactory_response(response.headers):
                # The fallback always uses the caller's credential, never an exchanged token.
                return self._fetch_artifactory_fallback(
                    image_reference, credential, response.status_code
                )
            raise RegistryStatusError(
                url,
                404,
                "Artifactory fallback is enabled but no Artifactory headers were returned",
            )

        detail = "after bearer token exchange" if challenged else ""
        raise RegistryStatusError(url, response.status_code, detail)
