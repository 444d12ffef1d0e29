from __future__ import annotations

import fnmatch
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from autorollout.src.credentials import (
    Credential,
    InvalidPullSecret,
    NoCredential,
    PullSecret,
    StaticToken,
    parse_docker_config,
)
from autorollout.src.schedule import build_cron_trigger
from autorollout.src.secret_string import SecretString

LOGGER = logging.getLogger(__name__)

DEFAULT_CRON_SCHEDULE = "*/45 * * * * *"
DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_MAX_WORKLOADS = 8

_ENV_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def expand_env_vars(text: str, env: Mapping[str, str] | None = None) -> str:
    """Replace ``${VAR}`` placeholders with environment values.

    Every placeholder must resolve; the error names all missing variables.
    """
    values = env if env is not None else os.environ
    missing = sorted(
        {name for name in _ENV_PLACEHOLDER.findall(text) if name not in values}
    )
    if missing:
        raise ConfigError(f"Missing environment variable(s): {', '.join(missing)}")
    return _ENV_PLACEHOLDER.sub(lambda match: values[match.group(1)], text)


def compile_hostname_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a hostname glob (``*``, ``?``, ``[...]``) into a case-insensitive regex."""
    if not pattern or not pattern.strip():
        raise ConfigError("Hostname pattern must be a non-empty string")

    depth_open = False
    for ch in pattern:
        if ch == "[":
            if depth_open:
                raise ConfigError(f"Invalid hostname pattern {pattern!r}: nested '['")
            depth_open = True
        elif ch == "]" and depth_open:
            depth_open = False
    if depth_open:
        raise ConfigError(f"Invalid hostname pattern {pattern!r}: unclosed '['")

    try:
        return re.compile(fnmatch.translate(pattern.lower()), re.IGNORECASE)
    except re.error as exc:
        raise ConfigError(f"Invalid hostname pattern {pattern!r}: {exc}") from exc


@dataclass(frozen=True)
class RegistryConfigEntry:
    hostname_pattern: str
    secret: Credential


@dataclass(frozen=True)
class RegistryTable:
    """Ordered registry entries plus their compiled hostname matchers.

    The matchers are derived from ``entries`` when the table is built, so the
    two sequences are always index-aligned; the table is immutable.
    """

    entries: tuple[RegistryConfigEntry, ...] = ()
    _matchers: tuple[re.Pattern[str], ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        matchers = tuple(compile_hostname_pattern(e.hostname_pattern) for e in self.entries)
        object.__setattr__(self, "_matchers", matchers)

    def __len__(self) -> int:
        return len(self.entries)

    def find_index(self, hostname: str) -> int | None:
        for index, matcher in enumerate(self._matchers):
            if matcher.match(hostname):
                return index
        return None

    def find(self, hostname: str) -> RegistryConfigEntry | None:
        index = self.find_index(hostname)
        return None if index is None else self.entries[index]


@dataclass(frozen=True)
class WebserverConfig:
    port: int = 8080


@dataclass(frozen=True)
class TlsConfig:
    ca_certificate_paths: tuple[Path, ...] = ()


@dataclass(frozen=True)
class FeatureFlags:
    enable_jfrog_artifactory_fallback: bool = False
    enable_kubectl_annotation: bool = False


@dataclass(frozen=True)
class Timeouts:
    registry_seconds: float = DEFAULT_TIMEOUT_SECONDS
    kubernetes_seconds: float = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded once at startup.

    Attributes:
        cron_schedule: Cron expression (seconds first) driving reconciliation cycles.
        webserver:     Health/metrics server settings.
        registries:    Ordered hostname pattern to credential table.
        tls:           Extra CA certificates trusted by the registry HTTP client.
        feature_flags: Artifactory fallback and kubectl annotation compatibility.
        timeouts:      Per-call timeouts for registry and Kubernetes requests.
        max_workloads: Worker threads reconciling workloads of one kind.
    """

    webserver: WebserverConfig
    registries: RegistryTable
    cron_schedule: str = DEFAULT_CRON_SCHEDULE
    tls: TlsConfig = TlsConfig()
    feature_flags: FeatureFlags = FeatureFlags()
    timeouts: Timeouts = Timeouts()
    max_workloads: int = DEFAULT_MAX_WORKLOADS

    def redacted_summary(self) -> dict[str, Any]:
        """Return a loggable view of the configuration with secrets masked."""
        return {
            "cronSchedule": self.cron_schedule,
            "webserver": {"port": self.webserver.port},
            "registries": [
                {
                    "hostnamePattern": entry.hostname_pattern,
                    "secret": _describe_secret(entry.secret),
                }
                for entry in self.registries.entries
            ],
            "tls": {"caCertificatePaths": [str(p) for p in self.tls.ca_certificate_paths]},
            "featureFlags": {
                "enableJfrogArtifactoryFallback": self.feature_flags.enable_jfrog_artifactory_fallback,
                "enableKubectlAnnotation": self.feature_flags.enable_kubectl_annotation,
            },
            "timeouts": {
                "registrySeconds": self.timeouts.registry_seconds,
                "kubernetesSeconds": self.timeouts.kubernetes_seconds,
            },
            "concurrency": {"maxWorkloads": self.max_workloads},
        }


def _describe_secret(secret: Credential) -> dict[str, Any]:
    if isinstance(secret, StaticToken):
        return {"type": "Opaque", "username": secret.username, "token": str(secret.token)}
    if isinstance(secret, PullSecret):
        return {
            "type": "ImagePullSecret",
            "source": secret.docker_config.source,
            "auths": list(secret.docker_config.auths),
        }
    return {"type": "None"}


def _section(document: Mapping[str, Any], key: str, required: bool = False) -> Mapping[str, Any]:
    value = document.get(key)
    if value is None:
        if required:
            raise ConfigError(f"{key} is required")
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{key} must be a mapping")
    return value


def _bool_field(section: Mapping[str, Any], key: str, path: str) -> bool:
    value = section.get(key, False)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return parse_bool(value)
    raise ConfigError(f"{path}.{key} must be a boolean")


def _number_field(
    section: Mapping[str, Any],
    key: str,
    default: float,
    path: str,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
    integer: bool = False,
) -> Any:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"{path}.{key} must be a number")
    try:
        value = int(raw) if integer else float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{path}.{key} must be a number, got: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{path}.{key} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{path}.{key} must be <= {maximum}, got: {value}")
    return value


def _parse_secret(raw: Any, path: str) -> Credential:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{path} must be a mapping with a type field")

    if "type" not in raw:
        raise ConfigError(f"{path}.type is required")

    # A bare YAML null is accepted as an alias of the None type.
    secret_type = raw.get("type")
    if secret_type is None or secret_type == "None":
        return NoCredential()

    if secret_type == "Opaque":
        token = raw.get("token")
        if token is None or str(token) == "":
            raise ConfigError(f"{path}.token is required for Opaque secrets")
        username = raw.get("username")
        return StaticToken(
            token=SecretString(str(token)),
            username=str(username) if username is not None else None,
        )

    if secret_type == "ImagePullSecret":
        mount_path = raw.get("mountPath")
        if not mount_path:
            raise ConfigError(f"{path}.mountPath is required for ImagePullSecret secrets")
        file_path = Path(str(mount_path)) / ".dockerconfigjson"
        try:
            content = file_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(
                f"Could not read ImagePullSecret content from file {file_path}"
            ) from exc
        try:
            docker_config = parse_docker_config(content, str(file_path))
        except InvalidPullSecret as exc:
            raise ConfigError(str(exc)) from exc
        LOGGER.info(
            "Parsed ImagePullSecret %s with registries %s",
            file_path,
            ", ".join(docker_config.auths),
        )
        return PullSecret(docker_config=docker_config)

    raise ConfigError(
        f"{path}.type must be one of None, Opaque, ImagePullSecret, got: {secret_type!r}"
    )


def _parse_registries(raw: Any) -> RegistryTable:
    if raw is None:
        raw = []
    if not isinstance(raw, list):
        raise ConfigError("registries must be a list")

    entries = []
    for index, item in enumerate(raw):
        path = f"registries[{index}]"
        if not isinstance(item, Mapping):
            raise ConfigError(f"{path} must be a mapping")
        pattern = item.get("hostnamePattern")
        if not isinstance(pattern, str):
            raise ConfigError(f"{path}.hostnamePattern must be a string")
        compile_hostname_pattern(pattern)
        entries.append(
            RegistryConfigEntry(
                hostname_pattern=pattern,
                secret=_parse_secret(item.get("secret"), f"{path}.secret"),
            )
        )
    return RegistryTable(entries=tuple(entries))


def _parse_tls(section: Mapping[str, Any]) -> TlsConfig:
    raw_paths = section.get("caCertificatePaths") or []
    if not isinstance(raw_paths, list):
        raise ConfigError("tls.caCertificatePaths must be a list")

    paths = []
    for raw_path in raw_paths:
        path = Path(str(raw_path))
        if not path.is_file() or not os.access(path, os.R_OK):
            raise ConfigError(f"File {path} does not exist or can not be accessed")
        paths.append(path)
    return TlsConfig(ca_certificate_paths=tuple(paths))


def parse_config(document: Any) -> ControllerConfig:
    """Validate a parsed YAML document and build a :class:`ControllerConfig`."""
    if not isinstance(document, Mapping):
        raise ConfigError("Configuration document must be a mapping")

    cron_schedule = str(document.get("cronSchedule") or DEFAULT_CRON_SCHEDULE)
    try:
        build_cron_trigger(cron_schedule)
    except ValueError as exc:
        raise ConfigError(f"Invalid cronSchedule {cron_schedule!r}: {exc}") from exc

    webserver = _section(document, "webserver", required=True)
    port = _number_field(
        webserver, "port", 8080, "webserver", minimum=1, maximum=65535, integer=True
    )

    flags = _section(document, "featureFlags")
    timeouts = _section(document, "timeouts")
    concurrency = _section(document, "concurrency")

    return ControllerConfig(
        cron_schedule=cron_schedule,
        webserver=WebserverConfig(port=port),
        registries=_parse_registries(document.get("registries")),
        tls=_parse_tls(_section(document, "tls")),
        feature_flags=FeatureFlags(
            enable_jfrog_artifactory_fallback=_bool_field(
                flags, "enableJfrogArtifactoryFallback", "featureFlags"
            ),
            enable_kubectl_annotation=_bool_field(
                flags, "enableKubectlAnnotation", "featureFlags"
            ),
        ),
        timeouts=Timeouts(
            registry_seconds=_number_field(
                timeouts, "registrySeconds", DEFAULT_TIMEOUT_SECONDS, "timeouts", minimum=0.1
            ),
            kubernetes_seconds=_number_field(
                timeouts, "kubernetesSeconds", DEFAULT_TIMEOUT_SECONDS, "timeouts", minimum=0.1
            ),
        ),
        max_workloads=_number_field(
            concurrency,
            "maxWorkloads",
            DEFAULT_MAX_WORKLOADS,
            "concurrency",
            minimum=1,
            integer=True,
        ),
    )


def load_config(path: str | Path, env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load the controller configuration file.

    Steps:
    1. Read the YAML file.
    2. Expand ``${VAR}`` placeholders from *env* (defaults to ``os.environ``).
    3. Parse and validate, compiling hostname globs, checking CA paths and the
       cron expression, and reading mounted ImagePullSecret docker configs.

    Raises :class:`ConfigError` on any problem so startup fails before the
    first reconciliation cycle.
    """
    config_path = Path(path)
    LOGGER.info("Loading config from file %s", config_path)
    try:
        raw = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read config file: {config_path}") from exc

    expanded = expand_env_vars(raw, env)
    try:
        document = yaml.safe_load(expanded)
    except yaml.YAMLError as exc:
        raise ConfigError(
            "Failed to parse YAML config after environment variable expansion"
        ) from exc

    config = parse_config(document)
    LOGGER.info(
        "Parsed valid controller config: %s",
        yaml.safe_dump(config.redacted_summary(), sort_keys=False).strip(),
    )
    return config
