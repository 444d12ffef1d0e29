from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes.client import AppsV1Api

from autorollout.src.kube import patch_rollout_annotation

SELECTION_LABEL = "kube-autorollout/enabled=true"
ROLLOUT_ANNOTATION = "kube-autorollout/restartedAt"
KUBECTL_ROLLOUT_ANNOTATION = "kubectl.kubernetes.io/restartedAt"


class ReconcileError(RuntimeError):
    """Raised when a single workload cannot be reconciled this cycle."""


class MissingWorkloadField(ReconcileError):
    def __init__(self, kind: str, name: str, field_path: str) -> None:
        super().__init__(f"{kind} {name} has no {field_path}")
        self.field_path = field_path


def rollout_annotation_key(use_kubectl_annotation: bool) -> str:
    return KUBECTL_ROLLOUT_ANNOTATION if use_kubectl_annotation else ROLLOUT_ANNOTATION


class Workload(Protocol):
    """What the reconciliation engine needs from a workload resource."""

    resource: Any

    @property
    def kind(self) -> WorkloadKind: ...

    @property
    def name(self) -> str: ...

    def selector(self) -> dict[str, str]: ...

    def desired_replicas(self) -> int: ...

    def actual_replicas(self) -> int: ...

    def pod_spec(self) -> Any | None: ...

    def image_pull_secrets(self) -> list[str]: ...

    def patch_rollout_annotation(
        self,
        apps_api: AppsV1Api,
        namespace: str,
        use_kubectl_annotation: bool,
        timestamp: str,
        request_timeout: float | None = None,
    ) -> None: ...


@dataclass(frozen=True)
class WorkloadKind:
    """A workload kind: display name, client method suffix and adapter."""

    name: str
    api_kind: str
    adapter: Callable[[Any], Workload]

    def list(
        self,
        apps_api: AppsV1Api,
        namespace: str,
        label_selector: str = SELECTION_LABEL,
        request_timeout: float | None = None,
    ) -> list[Workload]:
        list_fn = getattr(apps_api, f"list_namespaced_{self.api_kind}")
        result = list_fn(
            namespace=namespace,
            label_selector=label_selector,
            _request_timeout=request_timeout,
        )
        return [self.adapter(item) for item in getattr(result, "items", None) or []]


def _resource_name(resource: Any) -> str:
    return getattr(getattr(resource, "metadata", None), "name", None) or "<unknown>"


def _match_labels(kind: str, resource: Any) -> dict[str, str]:
    selector = getattr(getattr(resource, "spec", None), "selector", None)
    labels = getattr(selector, "match_labels", None)
    if not labels:
        raise MissingWorkloadField(kind, _resource_name(resource), "spec.selector.matchLabels")
    return dict(labels)


def _template_spec(resource: Any) -> Any | None:
    template = getattr(getattr(resource, "spec", None), "template", None)
    return getattr(template, "spec", None)


def _pull_secret_names(pod_spec: Any | None) -> list[str]:
    refs = getattr(pod_spec, "image_pull_secrets", None) or []
    return [ref.name for ref in refs if getattr(ref, "name", None)]


def _required_int(kind: str, resource: Any, section: str, attribute: str, field_path: str) -> int:
    value = getattr(getattr(resource, section, None), attribute, None)
    if value is None:
        raise MissingWorkloadField(kind, _resource_name(resource), field_path)
    return int(value)


def _patch(
    workload: Workload,
    apps_api: AppsV1Api,
    namespace: str,
    use_kubectl_annotation: bool,
    timestamp: str,
    request_timeout: float | None,
) -> None:
    patch_rollout_annotation(
        apps_api=apps_api,
        api_kind=workload.kind.api_kind,
        namespace=namespace,
        name=workload.name,
        annotation_key=rollout_annotation_key(use_kubectl_annotation),
        timestamp=timestamp,
        request_timeout=request_timeout,
    )


@dataclass(frozen=True)
class DeploymentWorkload:
    resource: Any

    @property
    def kind(self) -> WorkloadKind:
        return DEPLOYMENT

    @property
    def name(self) -> str:
        return _resource_name(self.resource)

    def selector(self) -> dict[str, str]:
        return _match_labels("Deployment", self.resource)

    def desired_replicas(self) -> int:
        return _required_int("Deployment", self.resource, "spec", "replicas", "spec.replicas")

    def actual_replicas(self) -> int:
        # status.replicas is omitted by the API server when zero.
        status = getattr(self.resource, "status", None)
        if status is None:
            raise MissingWorkloadField("Deployment", self.name, "status")
        return int(getattr(status, "replicas", None) or 0)

    def pod_spec(self) -> Any | None:
        return _template_spec(self.resource)

    def image_pull_secrets(self) -> list[str]:
        return _pull_secret_names(self.pod_spec())

    def patch_rollout_annotation(
        self,
        apps_api: AppsV1Api,
        namespace: str,
        use_kubectl_annotation: bool,
        timestamp: str,
        request_timeout: float | None = None,
    ) -> None:
        _patch(self, apps_api, namespace, use_kubectl_annotation, timestamp, request_timeout)


@dataclass(frozen=True)
class StatefulSetWorkload:
    resource: Any

    @property
    def kind(self) -> WorkloadKind:
        return STATEFUL_SET

    @property
    def name(self) -> str:
        return _resource_name(self.resource)

    def selector(self) -> dict[str, str]:
        return _match_labels("StatefulSet", self.resource)

    def desired_replicas(self) -> int:
        return _required_int("StatefulSet", self.resource, "spec", "replicas", "spec.replicas")

    def actual_replicas(self) -> int:
        return _required_int("StatefulSet", self.resource, "status", "replicas", "status.replicas")

    def pod_spec(self) -> Any | None:
        return _template_spec(self.resource)

    def image_pull_secrets(self) -> list[str]:
        return _pull_secret_names(self.pod_spec())

    def patch_rollout_annotation(
        self,
        apps_api: AppsV1Api,
        namespace: str,
        use_kubectl_annotation: bool,
        timestamp: str,
        request_timeout: float | None = None,
    ) -> None:
        _patch(self, apps_api, namespace, use_kubectl_annotation, timestamp, request_timeout)


@dataclass(frozen=True)
class DaemonSetWorkload:
    resource: Any

    @property
    def kind(self) -> WorkloadKind:
        return DAEMON_SET

    @property
    def name(self) -> str:
        return _resource_name(self.resource)

    def selector(self) -> dict[str, str]:
        return _match_labels("DaemonSet", self.resource)

    def desired_replicas(self) -> int:
        return _required_int(
            "DaemonSet",
            self.resource,
            "status",
            "desired_number_scheduled",
            "status.desiredNumberScheduled",
        )

    def actual_replicas(self) -> int:
        return _required_int(
            "DaemonSet", self.resource, "status", "number_ready", "status.numberReady"
        )

    def pod_spec(self) -> Any | None:
        return _template_spec(self.resource)

    def image_pull_secrets(self) -> list[str]:
        return _pull_secret_names(self.pod_spec())

    def patch_rollout_annotation(
        self,
        apps_api: AppsV1Api,
        namespace: str,
        use_kubectl_annotation: bool,
        timestamp: str,
        request_timeout: float | None = None,
    ) -> None:
        _patch(self, apps_api, namespace, use_kubectl_annotation, timestamp, request_timeout)


DEPLOYMENT = WorkloadKind(name="Deployment", api_kind="deployment", adapter=DeploymentWorkload)
STATEFUL_SET = WorkloadKind(name="StatefulSet", api_kind="stateful_set", adapter=StatefulSetWorkload)
DAEMON_SET = WorkloadKind(name="DaemonSet", api_kind="daemon_set", adapter=DaemonSetWorkload)

WORKLOAD_KINDS: tuple[WorkloadKind, ...] = (DEPLOYMENT, STATEFUL_SET, DAEMON_SET)
