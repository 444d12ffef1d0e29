from __future__ import annotations

import functools
import json
import logging
import os
import re
import signal
import threading
from pathlib import Path

from autorollout.src.config import ControllerConfig, load_config
from autorollout.src.controller import ControllerContext, ReconciliationEngine
from autorollout.src.health import start_health_server
from autorollout.src.kube import build_clients, current_namespace, load_kube_configuration
from autorollout.src.metrics import METRICS
from autorollout.src.registry import OCIDigestClient, build_registry_session, write_ca_bundle
from autorollout.src.schedule import build_cron_trigger, run_forever

RUNTIME_VERSION = "0.3.0"
DEFAULT_CONFIG_PATH = "/etc/kube-autorollout/config.yaml"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)((?:bearer|basic)\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def build_context(
    config: ControllerConfig,
    core_api: object,
    apps_api: object,
    namespace: str,
    ca_bundle: Path | None = None,
) -> ControllerContext:
    """Assemble the shared, read-only collaborators for reconciliation."""
    session_factory = functools.partial(
        build_registry_session,
        ca_bundle,
        user_agent=f"kube-autorollout/{os.getenv('APP_VERSION', RUNTIME_VERSION)}",
    )
    digest_client = OCIDigestClient(
        session_factory,
        timeout=config.timeouts.registry_seconds,
        enable_artifactory_fallback=config.feature_flags.enable_jfrog_artifactory_fallback,
    )
    return ControllerContext(
        core_api=core_api,  # type: ignore[arg-type]
        apps_api=apps_api,  # type: ignore[arg-type]
        namespace=namespace,
        config=config,
        digest_client=digest_client,
    )


def main() -> None:
    """Controller entrypoint: configure logging, load config, and run cycles on the cron schedule."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))
    logger = logging.getLogger(__name__)

    version = os.getenv("APP_VERSION", RUNTIME_VERSION)
    METRICS.build_info.info(
        {
            "version": version,
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    logger.info("Starting kube-autorollout %s", version)

    config = load_config(os.getenv("CONFIG_PATH", DEFAULT_CONFIG_PATH))
    trigger = build_cron_trigger(config.cron_schedule)

    load_kube_configuration()
    core_api, apps_api = build_clients()
    namespace = current_namespace()
    ca_bundle = write_ca_bundle(config.tls.ca_certificate_paths)
    context = build_context(config, core_api, apps_api, namespace, ca_bundle)
    engine = ReconciliationEngine(context)

    ready = threading.Event()
    health_server = start_health_server(ready=ready, port=config.webserver.port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        engine.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Reconciling namespace %s on cron schedule %s", namespace, config.cron_schedule
    )
    ready.set()
    try:
        run_forever(trigger, engine.run_cycle, shutdown_event)
    finally:
        ready.clear()
        health_server.shutdown()
        if ca_bundle is not None:
            ca_bundle.unlink(missing_ok=True)
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
