from __future__ import annotations

import json
from pathlib import Path

import pytest

from autorollout.src.config import (
    DEFAULT_CRON_SCHEDULE,
    ConfigError,
    RegistryConfigEntry,
    RegistryTable,
    compile_hostname_pattern,
    expand_env_vars,
    load_config,
    parse_bool,
    parse_config,
)
from autorollout.src.credentials import NoCredential, PullSecret, StaticToken
from autorollout.src.secret_string import SecretString


def _write(tmp_path: Path, content: str, name: str = "config.yaml") -> Path:
    path = tmp_path / name
    path.write_text(content)
    return path


def _token(value: str) -> StaticToken:
    return StaticToken(token=SecretString(value))


# ---------------------------------------------------------------------------
# Environment expansion
# ---------------------------------------------------------------------------


def test_expand_env_vars_replaces_placeholders() -> None:
    assert expand_env_vars("a ${VAR1} and ${VAR2}", {"VAR1": "foo", "VAR2": "bar"}) == (
        "a foo and bar"
    )


def test_expand_env_vars_without_placeholders_is_identity() -> None:
    assert expand_env_vars("No variables here", {}) == "No variables here"


def test_expand_env_vars_names_every_missing_variable() -> None:
    with pytest.raises(ConfigError, match="MISSING_A, MISSING_B"):
        expand_env_vars("${MISSING_B} ${MISSING_A} ${PRESENT}", {"PRESENT": "x"})


def test_expand_env_vars_reads_process_environment_by_default(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AUTOROLLOUT_TEST_VAR", "value123")
    assert expand_env_vars("This is a test: ${AUTOROLLOUT_TEST_VAR}") == (
        "This is a test: value123"
    )


# ---------------------------------------------------------------------------
# Hostname globs
# ---------------------------------------------------------------------------


def test_registry_table_matches_in_declaration_order() -> None:
    table = RegistryTable(
        entries=(
            RegistryConfigEntry(hostname_pattern="*.example.com", secret=_token("token1")),
            RegistryConfigEntry(hostname_pattern="registry.*.com", secret=_token("token2")),
            RegistryConfigEntry(hostname_pattern="registry-exact.com", secret=_token("token3")),
        )
    )

    assert table.find_index("test.example.com") == 0
    assert table.find_index("registry.foo.com") == 1
    assert table.find_index("registry-exact.com") == 2
    assert table.find_index("nomatch.com") is None
    assert table.find("nomatch.com") is None

    entry = table.find("registry.foo.com")
    assert entry is not None
    assert isinstance(entry.secret, StaticToken)
    assert entry.secret.token.get_secret_value() == "token2"


def test_first_declared_pattern_wins_on_overlap() -> None:
    table = RegistryTable(
        entries=(
            RegistryConfigEntry(hostname_pattern="*", secret=NoCredential()),
            RegistryConfigEntry(hostname_pattern="ghcr.io", secret=_token("t")),
        )
    )

    assert table.find_index("ghcr.io") == 0


def test_hostname_patterns_are_case_insensitive() -> None:
    assert compile_hostname_pattern("*.Example.com").match("REGISTRY.example.COM")


@pytest.mark.parametrize("pattern", ["[invalid", "", "   ", "a[[b]"])
def test_invalid_hostname_patterns_are_rejected(pattern: str) -> None:
    with pytest.raises(ConfigError):
        compile_hostname_pattern(pattern)


def test_registry_table_rejects_invalid_pattern_on_construction() -> None:
    with pytest.raises(ConfigError):
        RegistryTable(
            entries=(RegistryConfigEntry(hostname_pattern="[invalid", secret=_token("t")),)
        )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def test_load_config_file(tmp_path: Path) -> None:
    secret_dir = tmp_path / "ips"
    secret_dir.mkdir()
    (secret_dir / ".dockerconfigjson").write_text(
        json.dumps(
            {
                "auths": {
                    "your.private.registry.example.com": {
                        "username": "janedoe",
                        "password": "xxxxxxxxxxx",
                        "email": "jdoe@example.com",
                        "auth": "c3R...zE2",
                    }
                }
            }
        )
    )
    path = _write(
        tmp_path,
        f"""
webserver:
  port: 8080
registries:
  - hostnamePattern: "*.example.com"
    secret:
      type: Opaque
      username: user
      token: secret_token
  - hostnamePattern: "*.whatever.com"
    secret:
      type: ImagePullSecret
      mountPath: {secret_dir}
  - hostnamePattern: "docker.io"
    secret:
      type: None
tls:
  caCertificatePaths: []
featureFlags:
  enableJfrogArtifactoryFallback: true
""",
    )

    config = load_config(path, env={})

    assert config.webserver.port == 8080
    assert config.cron_schedule == DEFAULT_CRON_SCHEDULE
    assert len(config.registries) == 3

    opaque = config.registries.entries[0].secret
    assert isinstance(opaque, StaticToken)
    assert opaque.username == "user"
    assert opaque.token.get_secret_value() == "secret_token"

    pull_secret = config.registries.entries[1].secret
    assert isinstance(pull_secret, PullSecret)
    first = pull_secret.docker_config.first_auth()
    assert first.username == "janedoe"
    assert first.password.get_secret_value() == "xxxxxxxxxxx"
    assert first.auth.get_secret_value() == "c3R...zE2"

    assert config.registries.entries[2].secret == NoCredential()
    assert config.feature_flags.enable_jfrog_artifactory_fallback is True
    assert config.feature_flags.enable_kubectl_annotation is False
    assert config.timeouts.registry_seconds == 30
    assert config.max_workloads == 8


def test_load_config_with_env_vars(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
cronSchedule: "0 */5 * * * *"
webserver:
  port: ${PORT}
registries:
  - hostnamePattern: "*.env.com"
    secret:
      type: Opaque
      username: envuser
      token: ${TOKEN}
timeouts:
  registrySeconds: 5
  kubernetesSeconds: 10
concurrency:
  maxWorkloads: 2
""",
    )

    config = load_config(path, env={"PORT": "9090", "TOKEN": "envtoken"})

    assert config.webserver.port == 9090
    assert config.cron_schedule == "0 */5 * * * *"
    secret = config.registries.entries[0].secret
    assert isinstance(secret, StaticToken)
    assert secret.username == "envuser"
    assert secret.token.get_secret_value() == "envtoken"
    assert config.timeouts.registry_seconds == 5
    assert config.timeouts.kubernetes_seconds == 10
    assert config.max_workloads == 2


def test_load_config_fails_on_unresolved_placeholder(tmp_path: Path) -> None:
    path = _write(tmp_path, "webserver:\n  port: ${MISSING_PORT}\n")

    with pytest.raises(ConfigError, match="MISSING_PORT"):
        load_config(path, env={})


def test_load_config_fails_on_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Failed to read config file"):
        load_config(tmp_path / "absent.yaml", env={})


def test_load_config_fails_on_invalid_yaml(tmp_path: Path) -> None:
    path = _write(tmp_path, "webserver: [unclosed\n")

    with pytest.raises(ConfigError, match="Failed to parse YAML"):
        load_config(path, env={})


def test_load_config_fails_on_missing_mounted_pull_secret(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        f"""
webserver:
  port: 8080
registries:
  - hostnamePattern: ghcr.io
    secret:
      type: ImagePullSecret
      mountPath: {tmp_path / "nowhere"}
""",
    )

    with pytest.raises(ConfigError, match="Could not read ImagePullSecret"):
        load_config(path, env={})


def test_load_config_fails_on_invalid_mounted_pull_secret(tmp_path: Path) -> None:
    secret_dir = tmp_path / "ips"
    secret_dir.mkdir()
    (secret_dir / ".dockerconfigjson").write_text("{not json")
    path = _write(
        tmp_path,
        f"""
webserver:
  port: 8080
registries:
  - hostnamePattern: ghcr.io
    secret:
      type: ImagePullSecret
      mountPath: {secret_dir}
""",
    )

    with pytest.raises(ConfigError, match="not valid JSON"):
        load_config(path, env={})


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _document(**overrides: object) -> dict[str, object]:
    document: dict[str, object] = {"webserver": {"port": 8080}, "registries": []}
    document.update(overrides)
    return document


def test_parse_config_requires_webserver_section() -> None:
    with pytest.raises(ConfigError, match="webserver is required"):
        parse_config({"registries": []})


@pytest.mark.parametrize("port", [0, 70000, "http"])
def test_parse_config_rejects_invalid_ports(port: object) -> None:
    with pytest.raises(ConfigError, match="webserver.port"):
        parse_config(_document(webserver={"port": port}))


def test_parse_config_rejects_invalid_cron_schedule() -> None:
    with pytest.raises(ConfigError, match="Invalid cronSchedule"):
        parse_config(_document(cronSchedule="every five minutes"))


def test_parse_config_rejects_missing_ca_certificate(tmp_path: Path) -> None:
    missing = tmp_path / "missing-ca.pem"

    with pytest.raises(ConfigError, match="does not exist or can not be accessed"):
        parse_config(_document(tls={"caCertificatePaths": [str(missing)]}))


def test_parse_config_keeps_existing_ca_certificates(tmp_path: Path) -> None:
    ca = tmp_path / "ca.pem"
    ca.write_text("-----BEGIN CERTIFICATE-----\n")

    config = parse_config(_document(tls={"caCertificatePaths": [str(ca)]}))

    assert config.tls.ca_certificate_paths == (ca,)


@pytest.mark.parametrize(
    ("secret", "message"),
    [
        ({"username": "x"}, "type is required"),
        ({"type": "Opaque"}, "token is required"),
        ({"type": "ImagePullSecret"}, "mountPath is required"),
        ({"type": "Kerberos"}, "must be one of"),
    ],
)
def test_parse_config_rejects_invalid_secrets(secret: dict[str, str], message: str) -> None:
    registries = [{"hostnamePattern": "ghcr.io", "secret": secret}]

    with pytest.raises(ConfigError, match=message):
        parse_config(_document(registries=registries))


def test_parse_config_rejects_invalid_hostname_pattern() -> None:
    registries = [{"hostnamePattern": "[invalid", "secret": {"type": "None"}}]

    with pytest.raises(ConfigError, match="Invalid hostname pattern"):
        parse_config(_document(registries=registries))


def test_parse_config_rejects_non_boolean_feature_flag() -> None:
    with pytest.raises(ConfigError, match="featureFlags.enableKubectlAnnotation"):
        parse_config(_document(featureFlags={"enableKubectlAnnotation": 3}))


def test_feature_flags_accept_string_booleans() -> None:
    config = parse_config(_document(featureFlags={"enableKubectlAnnotation": "true"}))

    assert config.feature_flags.enable_kubectl_annotation is True


def test_redacted_summary_masks_tokens() -> None:
    registries = [
        {"hostnamePattern": "ghcr.io", "secret": {"type": "Opaque", "token": "supersecret"}}
    ]
    config = parse_config(_document(registries=registries))

    summary = config.redacted_summary()

    assert "supersecret" not in repr(summary)
    assert summary["registries"][0]["secret"]["token"] == "<REDACTED, length 11>"


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, False), ("true", True), (" YES ", True), ("0", False), ("off", False)],
)
def test_parse_bool(value: str | None, expected: bool) -> None:
    assert parse_bool(value) is expected
