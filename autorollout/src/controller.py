from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api

from autorollout.src.config import ControllerConfig
from autorollout.src.credentials import CredentialError, DockerConfig, RegistrySecretResolver
from autorollout.src.image_reference import ImageReference, ImageReferenceError
from autorollout.src.kube import read_pull_secret
from autorollout.src.metrics import METRICS
from autorollout.src.registry import OCIDigestClient, RegistryError
from autorollout.src.workloads import (
    SELECTION_LABEL,
    WORKLOAD_KINDS,
    ReconcileError,
    Workload,
    WorkloadKind,
)

_OLDEST = datetime.min.replace(tzinfo=UTC)


class NoEligiblePod(ReconcileError):
    def __init__(self, kind: str, name: str, selector: str) -> None:
        super().__init__(
            f"No running pod with started containers found for {kind} {name} "
            f"(selector={selector})"
        )


class MalformedImageId(ReconcileError):
    def __init__(self, container_name: str, image_id: str) -> None:
        super().__init__(
            f"Container {container_name} reports image id {image_id!r} without a digest"
        )


@dataclass(frozen=True)
class ControllerContext:
    """Long-lived collaborators shared read-only by every reconciliation thread."""

    core_api: CoreV1Api
    apps_api: AppsV1Api
    namespace: str
    config: ControllerConfig
    digest_client: OCIDigestClient


@dataclass(frozen=True)
class ContainerImageSnapshot:
    """The image a container is running right now, as reported by its status."""

    container_name: str
    image_reference: ImageReference
    current_digest: str


@dataclass(frozen=True)
class WorkloadResult:
    kind: str
    name: str
    outcome: str
    patches: int = 0


@dataclass(frozen=True)
class KindResult:
    """Immutable summary of one kind's pass within a cycle.

    ``restarted`` counts workloads that received at least one rollout patch;
    ``failed`` includes a failed listing of the kind itself.
    """

    kind: str
    matched: int = 0
    skipped: int = 0
    unchanged: int = 0
    restarted: int = 0
    failed: int = 0
    cancelled: int = 0


@dataclass(frozen=True)
class CycleResult:
    kinds: tuple[KindResult, ...]

    @property
    def restarted(self) -> int:
        return sum(k.restarted for k in self.kinds)

    @property
    def failed(self) -> int:
        return sum(k.failed for k in self.kinds)

    @property
    def cancelled(self) -> int:
        return sum(k.cancelled for k in self.kinds)


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``).

    Used as the restart annotation value so Kubernetes sees a template change
    and triggers a rolling update.
    """
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def format_selector(labels: dict[str, str]) -> str:
    """Render ``matchLabels`` as a ``k=v,k2=v2`` label selector string."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def container_digest(container_name: str, image_id: str | None) -> str:
    """Return the digest part of a runtime image id such as ``docker.io/x@sha256:...``."""
    _, at, digest = (image_id or "").partition("@")
    if not at or not digest:
        raise MalformedImageId(container_name, image_id or "")
    return digest


def snapshot_container(status: Any) -> ContainerImageSnapshot:
    name = getattr(status, "name", None) or "<unknown>"
    return ContainerImageSnapshot(
        container_name=name,
        image_reference=ImageReference.parse(getattr(status, "image", None) or ""),
        current_digest=container_digest(name, getattr(status, "image_id", None)),
    )


def _pod_is_started(pod: Any) -> bool:
    statuses = getattr(getattr(pod, "status", None), "container_statuses", None)
    if not statuses:
        return False
    return all(getattr(status, "image_id", None) for status in statuses)


def _creation_timestamp(pod: Any) -> datetime:
    return getattr(getattr(pod, "metadata", None), "creation_timestamp", None) or _OLDEST


def select_pod(pods: Sequence[Any]) -> Any | None:
    """Pick the newest pod whose containers have all reported an image id.

    Pods still pulling or creating containers report an empty ``imageID`` and
    cannot tell us which digest is running, so they are ignored.
    """
    eligible = [pod for pod in pods if _pod_is_started(pod)]
    if not eligible:
        return None
    return max(eligible, key=_creation_timestamp)


def _error_stage(exc: BaseException) -> str:
    if isinstance(exc, (ImageReferenceError, MalformedImageId)):
        return "parse"
    if isinstance(exc, CredentialError):
        return "credential"
    if isinstance(exc, RegistryError):
        return "registry"
    if isinstance(exc, ApiException):
        return "kubernetes"
    if isinstance(exc, ReconcileError):
        return "workload"
    return "unexpected"


class ReconciliationEngine:
    """Restart labelled workloads whose image tags moved to a new digest.

    One cycle walks Deployments, StatefulSets and DaemonSets concurrently.
    For each workload carrying ``kube-autorollout/enabled=true`` it:

    1. Skips the workload when no replicas are desired or running.
    2. Picks the newest pod whose containers all report an image id.
    3. For every container, parses the running image and digest, resolves a
       registry credential (workload pull secrets first, then configuration)
       and asks the registry for the tag's current digest.
    4. Patches the pod template ``restartedAt`` annotation when the digests
       differ, leaving the actual rollout to the workload controller.

    Failures are contained: a broken container aborts its workload for this
    cycle, a failed listing aborts its kind, and nothing aborts the cycle.
    The next scheduled cycle is the retry.
    """

    def __init__(
        self,
        context: ControllerContext,
        resolver: RegistrySecretResolver | None = None,
        kinds: Sequence[WorkloadKind] = WORKLOAD_KINDS,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.context = context
        self.resolver = resolver or RegistrySecretResolver(context.config.registries)
        self.kinds = tuple(kinds)
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn
        self._stop = threading.Event()

    @property
    def _request_timeout(self) -> float:
        return self.context.config.timeouts.kubernetes_seconds

    def request_stop(self) -> None:
        """Ask in-flight cycles to stop before their next workload or container."""
        self._stop.set()

    def stopping(self) -> bool:
        return self._stop.is_set()

    def _select_pod(self, workload: Workload) -> Any:
        selector = format_selector(workload.selector())
        pods = self.context.core_api.list_namespaced_pod(
            namespace=self.context.namespace,
            label_selector=selector,
            _request_timeout=self._request_timeout,
        )
        pod = select_pod(getattr(pods, "items", None) or [])
        if pod is None:
            raise NoEligiblePod(workload.kind.name, workload.name, selector)
        self.logger.debug(
            "Selected pod %s for %s %s",
            getattr(getattr(pod, "metadata", None), "name", "<unknown>"),
            workload.kind.name,
            workload.name,
        )
        return pod

    def _load_pull_secrets(self, workload: Workload) -> list[DockerConfig]:
        """Read all image pull secrets attached to the workload, concurrently."""
        names = workload.image_pull_secrets()
        if not names:
            return []

        def _read(name: str) -> DockerConfig:
            return read_pull_secret(
                self.context.core_api,
                self.context.namespace,
                name,
                request_timeout=self._request_timeout,
            )

        if len(names) == 1:
            return [_read(names[0])]
        with ThreadPoolExecutor(
            max_workers=len(names), thread_name_prefix="pull-secret"
        ) as pool:
            return list(pool.map(_read, names))

    def reconcile_workload(self, workload: Workload) -> WorkloadResult:
        """Compare one workload's running digests with its registries and patch on drift.

        Raises on the first failing container; patches already issued for
        earlier containers stand.
        """
        kind = workload.kind.name
        name = workload.name
        if self.stopping():
            return WorkloadResult(kind=kind, name=name, outcome="cancelled")

        desired = workload.desired_replicas()
        actual = workload.actual_replicas()
        if desired <= 0 or actual <= 0:
            self.logger.info(
                "Skipping %s %s: desired replicas %d, actual replicas %d",
                kind,
                name,
                desired,
                actual,
            )
            return WorkloadResult(kind=kind, name=name, outcome="skipped")

        pod = self._select_pod(workload)
        pull_secrets = self._load_pull_secrets(workload)
        statuses = getattr(getattr(pod, "status", None), "container_statuses", None) or []
        flags = self.context.config.feature_flags

        patches = 0
        for status in statuses:
            if self.stopping():
                return WorkloadResult(kind=kind, name=name, outcome="cancelled", patches=patches)

            snapshot = snapshot_container(status)
            image_reference = snapshot.image_reference
            credential = self.resolver.resolve(image_reference.registry, pull_secrets)
            digest = self.context.digest_client.fetch_digest(image_reference, credential)

            if digest == snapshot.current_digest:
                self.logger.info(
                    "Container %s of %s %s is up to date (%s @ %s)",
                    snapshot.container_name,
                    kind,
                    name,
                    image_reference,
                    digest,
                )
                continue

            self.logger.info(
                "Digest of %s changed for container %s of %s %s (%s -> %s); "
                "triggering rolling restart",
                image_reference,
                snapshot.container_name,
                kind,
                name,
                snapshot.current_digest,
                digest,
            )
            workload.patch_rollout_annotation(
                apps_api=self.context.apps_api,
                namespace=self.context.namespace,
                use_kubectl_annotation=flags.enable_kubectl_annotation,
                timestamp=self.now_fn(),
                request_timeout=self._request_timeout,
            )
            patches += 1
            METRICS.rollouts_total.labels(kind=kind).inc()

        outcome = "patched" if patches else "unchanged"
        return WorkloadResult(kind=kind, name=name, outcome=outcome, patches=patches)

    def _reconcile_workload_safely(self, workload: Workload) -> WorkloadResult:
        kind = workload.kind.name
        try:
            return self.reconcile_workload(workload)
        except (ReconcileError, ImageReferenceError, CredentialError, RegistryError) as exc:
            self.logger.error("Failed to reconcile %s %s: %s", kind, workload.name, exc)
            METRICS.errors_total.labels(kind=kind, stage=_error_stage(exc)).inc()
        except ApiException as exc:
            self.logger.exception(
                "Kubernetes API error while reconciling %s %s in namespace %s",
                kind,
                workload.name,
                self.context.namespace,
            )
            METRICS.errors_total.labels(kind=kind, stage=_error_stage(exc)).inc()
        except Exception:
            self.logger.exception("Unexpected error while reconciling %s %s", kind, workload.name)
            METRICS.errors_total.labels(kind=kind, stage="unexpected").inc()
        return WorkloadResult(kind=kind, name=workload.name, outcome="failed")

    def reconcile_kind(self, kind: WorkloadKind) -> KindResult:
        """List one kind's labelled workloads and reconcile them concurrently."""
        if self.stopping():
            return KindResult(kind=kind.name)

        try:
            workloads = kind.list(
                self.context.apps_api,
                self.context.namespace,
                label_selector=SELECTION_LABEL,
                request_timeout=self._request_timeout,
            )
        except ApiException:
            self.logger.exception(
                "Failed to list %s workloads with label %s", kind.name, SELECTION_LABEL
            )
            METRICS.errors_total.labels(kind=kind.name, stage="kubernetes").inc()
            return KindResult(kind=kind.name, failed=1)

        METRICS.workloads_scanned_total.labels(kind=kind.name).inc(len(workloads))
        self.logger.info(
            "Scanning for digest changes in %d %s workloads with label %s",
            len(workloads),
            kind.name,
            SELECTION_LABEL,
        )
        if not workloads:
            return KindResult(kind=kind.name)

        max_workers = min(self.context.config.max_workloads, len(workloads))
        with ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"reconcile-{kind.api_kind}"
        ) as pool:
            results = list(pool.map(self._reconcile_workload_safely, workloads))

        outcomes = [result.outcome for result in results]
        return KindResult(
            kind=kind.name,
            matched=len(results),
            skipped=outcomes.count("skipped"),
            unchanged=outcomes.count("unchanged"),
            restarted=outcomes.count("patched"),
            failed=outcomes.count("failed"),
            cancelled=outcomes.count("cancelled"),
        )

    def _reconcile_kind_safely(self, kind: WorkloadKind) -> KindResult:
        try:
            return self.reconcile_kind(kind)
        except Exception:
            self.logger.exception("Unexpected error while reconciling %s workloads", kind.name)
            METRICS.errors_total.labels(kind=kind.name, stage="unexpected").inc()
            return KindResult(kind=kind.name, failed=1)

    def run_cycle(self) -> CycleResult:
        """Run one reconciliation cycle over every workload kind."""
        self.logger.info("Starting reconciliation cycle in namespace %s", self.context.namespace)
        with METRICS.cycle_duration_seconds.time():
            with ThreadPoolExecutor(
                max_workers=max(1, len(self.kinds)), thread_name_prefix="reconcile-kind"
            ) as pool:
                kinds = tuple(pool.map(self._reconcile_kind_safely, self.kinds))

        result = CycleResult(kinds=kinds)
        if result.cancelled or self.stopping():
            outcome = "cancelled"
        elif result.failed:
            outcome = "partial"
        else:
            outcome = "success"
        METRICS.cycles_total.labels(outcome=outcome).inc()

        self.logger.info(
            "Finished reconciliation cycle (%s): %s",
            outcome,
            ", ".join(
                f"{k.kind} matched={k.matched} restarted={k.restarted} "
                f"skipped={k.skipped} failed={k.failed}"
                for k in kinds
            ),
        )
        return result
