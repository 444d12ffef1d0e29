from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from autorollout.src.credentials import DockerConfig, decode_secret_data

LOGGER = logging.getLogger(__name__)

FIELD_MANAGER = "kube-autorollout"
SERVICE_ACCOUNT_NAMESPACE_FILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def current_namespace(
    env: Mapping[str, str] | None = None,
    namespace_file: Path = SERVICE_ACCOUNT_NAMESPACE_FILE,
) -> str:
    """Return the namespace to reconcile.

    ``WATCH_NAMESPACE`` wins, then the pod's service account namespace, then
    ``default`` for local development.
    """
    values = env if env is not None else os.environ
    namespace = (values.get("WATCH_NAMESPACE") or "").strip()
    if namespace:
        return namespace
    try:
        namespace = namespace_file.read_text(encoding="utf-8").strip()
    except OSError:
        namespace = ""
    return namespace or "default"


def read_pull_secret(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    request_timeout: float | None = None,
) -> DockerConfig:
    """Read an image pull secret and parse its docker config payload."""
    secret = core_api.read_namespaced_secret(
        name=name,
        namespace=namespace,
        _request_timeout=request_timeout,
    )
    return decode_secret_data(getattr(secret, "data", None), f"secret/{namespace}/{name}")


def patch_rollout_annotation(
    apps_api: AppsV1Api,
    api_kind: str,
    namespace: str,
    name: str,
    annotation_key: str,
    timestamp: str,
    request_timeout: float | None = None,
) -> None:
    """Patch a workload's pod template annotation to trigger a rolling restart.

    This is the same mechanism used by ``kubectl rollout restart``: changing a
    pod template annotation makes the workload controller roll new pods,
    which pull the tag again and pick up its new digest. ``api_kind`` is the
    snake_case kind used by the client methods (``deployment``,
    ``stateful_set``, ``daemon_set``).
    """
    body = {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": {annotation_key: timestamp}
                }
            }
        }
    }

    patch = getattr(apps_api, f"patch_namespaced_{api_kind}")
    patch(
        name=name,
        namespace=namespace,
        body=body,
        field_manager=FIELD_MANAGER,
        _request_timeout=request_timeout,
    )
