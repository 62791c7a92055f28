"""Version lifecycle orchestration for the single managed backend service.

The orchestrator owns every runtime state transition. Operation requests are
validated on the caller's thread, registered with the
:class:`~backendctl.operations.OperationTracker` (at most one runs at a time),
and executed on a single worker thread. Version switches follow one
transition protocol: demote the active instance to a retained name, bring the
new instance up under the active name, wait for its UI, then prune retained
instances. Every destructive step registers a compensating action that is
unwound, newest first, when a later step fails.
"""
from __future__ import annotations

import logging
import re
import shutil
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from typing import Any

from .cancellation import CancellationToken, OperationCanceled
from .config import AppConfig
from .derived import (
    VersionInputs,
    build_version_rows,
    estimate_after_update,
    image_stats,
    index_local_images,
    probe_candidates,
    trim_dead_releases,
)
from .errors import (
    ContainerRuntimeError,
    ErrorCode,
    RegistryError,
    RegistryRateLimitError,
    RuntimeUnavailableError,
    ServiceVersionsError,
    ValidationError,
    error_code_of,
    user_message,
)
from .health import HealthPoller, is_http_reachable, parse_local_url, ui_url_from_inspect
from .installability import Installability, InstallabilityCache, InstallabilityEntry
from .logging import OperationScope, StructuredLogger
from .models import (
    RetainedInstance,
    ServiceState,
    StorageSummary,
    validate_container_id,
    validate_data_loss_ack,
    validate_op_id,
)
from .operations import (
    CompensationStack,
    EventBus,
    OperationSnapshot,
    OperationStatus,
    OperationTracker,
    OperationType,
)
from .ports import PortPreferences, PortPreferencesStore
from .progress import PullProgressAggregator
from .providers.docker import DockerRuntime
from .providers.registry import Platform, RegistryClient
from .providers.releases import ReleaseCatalog, ReleaseCatalogClient
from .providers.runtime import ContainerInfo, ContainerRuntime, ContainerSpec
from .retention import (
    RetentionPolicy,
    RetentionPolicyStore,
    active_container_name,
    collect_retained,
    enforce_retention,
    parse_retained_container_name,
    unused_retained_container_name,
)
from .state import StateRegistry, StateRegistryError
from .tags import (
    PREVIEW_TAG,
    assert_tag_allowed_for_activate,
    assert_tag_allowed_for_install,
    image_ref,
)

LOGGER = logging.getLogger(__name__)

UI_PROBE_TIMEOUT = 0.35
WARMUP_TAG_LIMIT = 25
WARMUP_DELAY = 0.15
WARMUP_REPEAT_AFTER = 10 * 60.0
CANCEL_MESSAGE = (
    "Download canceled. The container runtime may keep downloading in the background."
)

_NOT_RUNNING_RE = re.compile(r"is not running", re.IGNORECASE)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class _OperationContext:
    """Per-operation handles passed to operation bodies."""

    op_id: str
    token: CancellationToken
    scope: OperationScope
    tracker: OperationTracker
    compensations: CompensationStack = field(default_factory=CompensationStack)

    def report(self, message: str | None = None, **changes: object) -> None:
        if message is not None:
            changes["message"] = message
        self.tracker.update(self.op_id, **changes)

    def step(self, name: str, message: str) -> None:
        self.scope.add_step(name)
        self.report(message, progress=None)


OperationBody = Callable[[_OperationContext], str]


class ServiceVersionsOrchestrator:
    """Single-flight orchestrator for install, start/stop, and version switches."""

    def __init__(
        self,
        config: AppConfig,
        *,
        runtime: ContainerRuntime,
        registry_client: RegistryClient,
        releases: ReleaseCatalogClient,
        state: StateRegistry,
        logger: StructuredLogger | None = None,
        health: HealthPoller | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
        warmup: bool = True,
    ) -> None:
        self._config = config
        self._runtime = runtime
        self._registry_client = registry_client
        self._releases = releases
        self._state = state
        self._logger = logger or StructuredLogger(config.logs_dir)
        self._health = health or HealthPoller(
            timeout=config.health.timeout,
            interval=config.health.interval,
            attempt_timeout=config.health.attempt_timeout,
        )
        self._clock = clock
        self._sleep = sleep
        self._warmup_enabled = warmup

        self.events = EventBus()
        self._tracker = OperationTracker(self.events)
        self._retention = RetentionPolicyStore(state)
        self._ports = PortPreferencesStore(
            state,
            PortPreferences(ui=config.ports.ui, ssh=config.ports.ssh),
        )
        self._installability = InstallabilityCache(state, clock=clock)

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="backendctl-op")
        self._future: Future[None] | None = None
        self._state_lock = threading.Lock()
        self._cached_state: ServiceState | None = None

        self._warmup_lock = threading.Lock()
        self._warmup_running = False
        self._warmup_repo = ""
        self._warmup_started: float | None = None
        self._warmup_thread: threading.Thread | None = None

        self._closers: list[Callable[[], None]] = []

    @classmethod
    def from_config(cls, config: AppConfig, **kwargs: Any) -> ServiceVersionsOrchestrator:
        """Build an orchestrator wired to the Docker daemon, registry, and catalog."""
        state = StateRegistry(config.state_dir)
        state.ensure_root()
        runtime = DockerRuntime(config.runtime.docker_host)
        registry_client = RegistryClient(config.registry)
        releases = ReleaseCatalogClient(
            state,
            config.releases,
            user_agent=config.registry.user_agent,
            timeout=config.registry.request_timeout,
        )
        orchestrator = cls(
            config,
            runtime=runtime,
            registry_client=registry_client,
            releases=releases,
            state=state,
            **kwargs,
        )
        orchestrator._closers.extend([runtime.close, registry_client.close, releases.close])
        return orchestrator

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def close(self) -> None:
        """Abort the running operation, drain the worker, and release clients."""
        self._tracker.abort()
        self._executor.shutdown(wait=True)
        for closer in self._closers:
            try:
                closer()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to close orchestrator resource")
        self._closers.clear()

    def __enter__(self) -> ServiceVersionsOrchestrator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def image_repo(self) -> str:
        return self._config.image_repo

    def current_operation(self) -> OperationSnapshot | None:
        """Return the current (or most recent) operation snapshot."""
        return self._tracker.current()

    def wait_for_operation(self, timeout: float | None = None) -> OperationSnapshot | None:
        """Block until the most recently launched operation has finished."""
        future = self._future
        if future is not None:
            future.result(timeout=timeout)
        return self._tracker.current()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def get_state(self) -> ServiceState:
        """Return the last derived state, building it on first use."""
        with self._state_lock:
            cached = self._cached_state
        if cached is not None:
            return cached
        return self.refresh(force_refresh=False)

    def refresh(self, force_refresh: bool = False) -> ServiceState:
        """Rebuild the derived state and publish it on the ``state`` stream."""
        state = self._build_state(force_refresh)
        with self._state_lock:
            self._cached_state = state
        self.events.emit("state", state.to_dict())
        return state

    def _refresh_quietly(self) -> None:
        try:
            self.refresh(force_refresh=False)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("State refresh failed: %s", exc)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def set_retention_policy(self, keep_count: object) -> RetentionPolicy:
        """Persist a new keep count (refused while an operation runs)."""
        with self._tracker.exclusive():
            self._tracker.require_idle()
            policy = self._retention.write(keep_count)
        self._refresh_quietly()
        return policy

    def set_port_preferences(self, payload: object) -> PortPreferences:
        """Persist new host ports (refused while an operation runs)."""
        with self._tracker.exclusive():
            self._tracker.require_idle()
            prefs = self._ports.write(payload)
        self._refresh_quietly()
        return prefs

    def get_retention_policy(self) -> RetentionPolicy:
        return self._retention.read()

    def get_port_preferences(self) -> PortPreferences:
        return self._ports.read()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def install(self, tag: object) -> str:
        """Probe and pull *tag*; return the operation id."""
        value = assert_tag_allowed_for_install(tag)
        return self._launch(
            OperationType.INSTALL,
            value,
            partial(self._do_install, value),
            failure_message="Install failed",
            args={"tag": value},
        )

    def start_active(self) -> str:
        """Start the active instance and wait for its UI."""
        return self._launch(
            OperationType.START,
            None,
            self._do_start,
            failure_message="Start failed",
        )

    def stop_active(self) -> str:
        """Stop the active instance if it is running."""
        return self._launch(
            OperationType.STOP,
            None,
            self._do_stop,
            failure_message="Stop failed",
        )

    def delete_retained_instance(self, container_id: object) -> str:
        """Delete one retained instance."""
        value = validate_container_id(container_id)
        return self._launch(
            OperationType.DELETE_INSTANCE,
            None,
            partial(self._do_delete_retained, value),
            failure_message="Delete failed",
            args={"container_id": value},
        )

    def update_to_latest(self, ack: object) -> str:
        """Switch the active instance to the newest official release."""
        acknowledgement = validate_data_loss_ack(ack)
        return self._launch(
            OperationType.UPDATE,
            None,
            self._do_update,
            failure_message="Update failed",
            args={"ack": acknowledgement.value},
        )

    def activate_version(self, tag: object, ack: object) -> str:
        """Switch the active instance to an installed *tag*."""
        value = assert_tag_allowed_for_activate(tag)
        acknowledgement = validate_data_loss_ack(ack)
        return self._launch(
            OperationType.ACTIVATE,
            value,
            partial(self._do_activate, value),
            failure_message="Switch failed",
            args={"tag": value, "ack": acknowledgement.value},
        )

    def activate_retained_instance(self, container_id: object, ack: object) -> str:
        """Roll back to a retained instance."""
        acknowledgement = validate_data_loss_ack(ack)
        value = validate_container_id(container_id)
        return self._launch(
            OperationType.ROLLBACK,
            None,
            partial(self._do_rollback, value),
            failure_message="Rollback failed",
            args={"container_id": value, "ack": acknowledgement.value},
        )

    def cancel_operation(self, op_id: object) -> dict[str, object]:
        """Request cancellation of the running pull-bearing operation."""
        value = validate_op_id(op_id)
        canceled = self._tracker.cancel(value)
        return {"canceled": canceled, "message": CANCEL_MESSAGE if canceled else None}

    def _launch(
        self,
        op_type: OperationType,
        target: str | None,
        body: OperationBody,
        *,
        failure_message: str,
        args: Mapping[str, object] | None = None,
    ) -> str:
        snapshot, token = self._tracker.begin(op_type, target)
        try:
            self._future = self._executor.submit(
                self._run_operation,
                snapshot.op_id,
                token,
                op_type,
                body,
                failure_message,
                dict(args or {}),
            )
        except RuntimeError:
            self._tracker.finish(snapshot.op_id, OperationStatus.FAILED, error=failure_message)
            raise
        return snapshot.op_id

    def _run_operation(
        self,
        op_id: str,
        token: CancellationToken,
        op_type: OperationType,
        body: OperationBody,
        failure_message: str,
        args: dict[str, object],
    ) -> None:
        command = f"service {op_type.value}"
        target = {"kind": "service", "image_repo": self._config.image_repo, "op_id": op_id}
        with self._logger.operation(command, args=args, target=target) as scope:
            ctx = _OperationContext(op_id=op_id, token=token, scope=scope, tracker=self._tracker)
            try:
                final_message = body(ctx)
            except OperationCanceled:
                ctx.compensations.unwind()
                self._tracker.finish(op_id, OperationStatus.CANCELED, message="Canceled", error="Canceled")
                scope.warning("Operation canceled.", context={"op_id": op_id})
            except Exception as exc:  # noqa: BLE001
                failed = ctx.compensations.unwind()
                message = user_message(exc) or failure_message
                code = error_code_of(exc)
                if isinstance(exc, ServiceVersionsError):
                    LOGGER.warning("%s failed (%s): %s", command, exc.code.value, exc.message)
                else:
                    LOGGER.exception("%s failed unexpectedly", command)
                self._tracker.finish(
                    op_id,
                    OperationStatus.FAILED,
                    error=message,
                    error_code=code.value if code else None,
                )
                scope.error(
                    message,
                    errors=[str(exc) or type(exc).__name__],
                    context={
                        "code": code.value if code else None,
                        "compensation_failures": failed,
                    },
                )
            else:
                self._tracker.finish(op_id, OperationStatus.COMPLETED, message=final_message, progress=100)
                scope.success(final_message, context={"op_id": op_id})
            finally:
                self._refresh_quietly()

    # ------------------------------------------------------------------
    # Operation bodies
    # ------------------------------------------------------------------
    def _do_install(self, tag: str, ctx: _OperationContext) -> str:
        ctx.step("installability", "Checking availability")
        self._ensure_installable(ctx, tag)
        self._pull_with_progress(ctx, tag)
        ctx.report("Completed", progress=100, download_progress=100, extract_progress=100)
        return "Completed"

    def _do_stop(self, ctx: _OperationContext) -> str:
        ctx.step("stop", "Stopping")
        active = self._require_active()
        if (active.state or "").lower() == "running":
            self._runtime.stop_container(active.container_id, timeout=self._config.runtime.stop_timeout)
        return "Stopped"

    def _do_start(self, ctx: _OperationContext) -> str:
        ctx.step("start", "Starting")
        active = self._require_active()
        if (active.state or "").lower() != "running":
            self._runtime.start_container(active.container_id)
        self._wait_for_ui(
            ctx,
            active.container_id,
            label="Starting",
            failure="The service is not reachable yet. Please wait and try Refresh.",
        )
        return "Started"

    def _do_delete_retained(self, container_id: str, ctx: _OperationContext) -> str:
        ctx.step("delete", "Deleting")
        containers = self._runtime.list_containers(self._config.image_repo)
        active = self._find_active(containers)
        resolved = _match_container(containers, container_id)
        if active is not None and resolved is not None and resolved.container_id == active.container_id:
            raise ServiceVersionsError(
                ErrorCode.CANNOT_DELETE_ACTIVE,
                "Cannot delete active instance",
                details={"container_id": container_id},
            )
        target = self._require_retained(resolved, container_id)
        self._runtime.delete_container(target.container_id, force=True)
        return "Deleted"

    def _do_update(self, ctx: _OperationContext) -> str:
        policy = self._retention.read()
        prefs = self._ports.read()

        ctx.step("releases", "Checking for updates")
        catalog = self._releases.list_official_releases(self._config.release_repo)
        latest = catalog.latest
        if latest is None:
            raise ServiceVersionsError(ErrorCode.NO_RELEASES, "No official versions available")
        tag = latest.tag
        ctx.report(target_version_tag=tag)

        ctx.step("verify", "Verifying availability")
        remote = self._registry_client.get_digest(self._config.image_repo, tag)
        if not remote.exists:
            raise ServiceVersionsError(
                ErrorCode.NOT_YET_AVAILABLE,
                "Newest version is not available yet",
                details={"tag": tag},
            )

        self._pull_with_progress(ctx, tag)

        ctx.step("switch", "Switching versions")
        active = self._find_active(self._runtime.list_containers(self._config.image_repo))
        if active is not None:
            self._demote_active(ctx, active)

        ctx.step("create", "Starting new version")
        container_id = self._create_and_start(ctx, tag, prefs)
        self._wait_for_ui(
            ctx,
            container_id,
            label="Starting new version",
            failure="The service is not reachable yet after switching versions.",
        )
        self._finish_switch(ctx, policy)
        return "Completed"

    def _do_activate(self, tag: str, ctx: _OperationContext) -> str:
        policy = self._retention.read()
        prefs = self._ports.read()

        ctx.step("prepare", "Preparing switch")
        local_tags = {image.tag for image in self._runtime.list_local_images(self._config.image_repo)}
        if tag not in local_tags:
            raise ServiceVersionsError(
                ErrorCode.NOT_INSTALLED,
                "Version is not installed",
                details={"tag": tag},
            )

        active = self._find_active(self._runtime.list_containers(self._config.image_repo))
        if active is not None:
            self._demote_active(ctx, active)

        ctx.step("create", "Starting selected version")
        container_id = self._create_and_start(ctx, tag, prefs)
        self._wait_for_ui(
            ctx,
            container_id,
            label="Starting selected version",
            failure="The service is not reachable yet after switching versions.",
        )
        self._finish_switch(ctx, policy)
        return "Completed"

    def _do_rollback(self, container_id: str, ctx: _OperationContext) -> str:
        policy = self._retention.read()

        ctx.step("prepare", "Preparing rollback")
        containers = self._runtime.list_containers(self._config.image_repo)
        target = self._find_retained(containers, container_id)
        retained_name = target.name or ""
        ctx.report(target_version_tag=target.tag or None)

        active = self._find_active(containers)
        if active is not None:
            self._demote_active(ctx, active)

        ctx.step("promote", "Starting selected version")
        self._runtime.rename_container(target.container_id, active_container_name(self._config.image_repo))
        ctx.compensations.push(
            "return rollback target",
            partial(self._return_to_retained, target.container_id, retained_name),
        )
        self._runtime.start_container(target.container_id)
        self._wait_for_ui(
            ctx,
            target.container_id,
            label="Starting selected version",
            failure="The service is not reachable yet after starting this version.",
        )
        self._finish_switch(ctx, policy)
        return "Completed"

    # ------------------------------------------------------------------
    # Transition steps
    # ------------------------------------------------------------------
    def _ensure_installable(self, ctx: _OperationContext, tag: str) -> None:
        now = self._installability.now()
        cached = self._installability.fresh_entry(tag)
        if cached is not None:
            if cached.status is Installability.NOT_YET_AVAILABLE:
                raise ServiceVersionsError(
                    ErrorCode.NOT_YET_AVAILABLE,
                    "Not yet available",
                    details={"tag": tag, "recheck_after": cached.to_dict()["recheck_after"]},
                )
            if cached.status is Installability.INSTALLABLE:
                ctx.scope.add_step("installability.cache", detail="installable")
                return

        remote = self._registry_client.get_digest(self._config.image_repo, tag, cancel=ctx.token)
        if not remote.exists:
            self._installability.record(tag, InstallabilityEntry.not_yet_available(now))
            raise ServiceVersionsError(
                ErrorCode.NOT_YET_AVAILABLE,
                "Not yet available",
                details={"tag": tag},
            )
        self._installability.record(
            tag,
            InstallabilityEntry.installable(now, digest=remote.digest, content_type=remote.content_type),
        )
        ctx.scope.add_step("installability.probe", detail="installable")

    def _pull_with_progress(self, ctx: _OperationContext, tag: str) -> None:
        repo = self._config.image_repo
        ctx.scope.add_step("pull", detail=image_ref(repo, tag))
        ctx.report("Downloading", progress=None, download_progress=0, extract_progress=0)
        self._tracker.set_cancellable(ctx.op_id, True)
        try:
            layers, total = self._prefetch_layer_sizes(repo, tag, ctx.token)
            aggregator = PullProgressAggregator(
                layers,
                total,
                freeze_delay=self._config.progress.freeze_delay,
            )

            def _on_event(event: Mapping[str, Any]) -> None:
                snapshot = aggregator.apply(event)
                download = snapshot.download_progress
                extract = snapshot.extract_progress
                if download is not None and download < 100:
                    message = "Downloading"
                elif extract is not None and extract < 100:
                    message = "Extracting"
                else:
                    message = "Downloading"
                ctx.report(
                    message,
                    progress=download,
                    download_progress=download,
                    extract_progress=extract,
                )

            result = self._runtime.pull_image(image_ref(repo, tag), on_event=_on_event, cancel=ctx.token)
        finally:
            self._tracker.set_cancellable(ctx.op_id, False)
        if result.aborted:
            raise OperationCanceled("Canceled")

    def _prefetch_layer_sizes(
        self,
        repo: str,
        tag: str,
        cancel: CancellationToken,
    ) -> tuple[dict[str, int], int]:
        try:
            sizes = self._registry_client.get_layer_sizes(repo, tag, Platform(os="linux"), cancel=cancel)
        except ServiceVersionsError as exc:
            LOGGER.debug("Layer size prefetch failed for %s:%s: %s", repo, tag, exc)
            return {}, 0
        if not sizes.exists:
            return {}, 0
        return dict(sizes.layers), sizes.total_bytes

    def _demote_active(self, ctx: _OperationContext, active: ContainerInfo) -> None:
        ctx.step("demote", "Stopping current version")
        repo = self._config.image_repo
        state = (active.state or "").lower()
        if not state or state == "running":
            try:
                self._runtime.stop_container(active.container_id, timeout=self._config.runtime.stop_timeout)
            except ServiceVersionsError as exc:
                if not _NOT_RUNNING_RE.search(exc.message):
                    raise
            else:
                ctx.compensations.push(
                    "restart previous active",
                    partial(self._runtime.start_container, active.container_id),
                )
        taken = {item.name for item in self._runtime.list_containers(repo) if item.name}
        retained_name = unused_retained_container_name(repo, active.tag or "unknown", self._clock(), taken)
        self._runtime.rename_container(active.container_id, retained_name)
        ctx.compensations.discard("restart previous active")
        ctx.compensations.push(
            "restore previous active",
            partial(self._restore_previous_active, active.container_id),
        )

    def _create_and_start(self, ctx: _OperationContext, tag: str, prefs: PortPreferences) -> str:
        repo = self._config.image_repo
        spec = ContainerSpec(
            name=active_container_name(repo),
            image_ref=image_ref(repo, tag),
            version_tag=tag,
            ui_port=prefs.ui,
            ssh_port=prefs.ssh,
        )
        container_id = self._runtime.create_container(spec)
        if not container_id:
            raise ContainerRuntimeError(ErrorCode.CREATE_FAILED, "Failed to create container")
        ctx.compensations.push(
            "delete new instance",
            partial(self._runtime.delete_container, container_id, force=True),
        )
        self._runtime.start_container(container_id)
        return container_id

    def _wait_for_ui(
        self,
        ctx: _OperationContext,
        container_id: str,
        *,
        label: str,
        failure: str,
    ) -> None:
        ctx.report(f"{label} (waiting for UI)", progress=None)
        try:
            inspect = self._runtime.inspect_container(container_id)
        except ServiceVersionsError as exc:
            LOGGER.debug("Inspect failed for %s: %s", container_id, exc)
            inspect = None
        endpoint = parse_local_url(ui_url_from_inspect(inspect))

        def _tick(seconds: int) -> None:
            suffix = f" - {seconds}s" if seconds > 0 else ""
            ctx.report(f"{label} (waiting for UI{suffix})", progress=None)

        ready = endpoint is not None and self._health.wait_for_http_port(
            endpoint.host,
            endpoint.port,
            on_tick=_tick,
            cancel=ctx.token,
        )
        if not ready:
            ctx.token.raise_if_cancelled()
            raise ServiceVersionsError(ErrorCode.UI_NOT_READY, failure, details={"container_id": container_id})
        ctx.scope.add_step("ui.ready", detail=f"{endpoint.host}:{endpoint.port}" if endpoint else None)

    def _finish_switch(self, ctx: _OperationContext, policy: RetentionPolicy) -> None:
        ctx.compensations.clear()
        deleted = enforce_retention(self._runtime, self._config.image_repo, policy)
        ctx.scope.add_step("retention", detail=f"pruned={len(deleted)}")

    # Compensations ------------------------------------------------------
    def _restore_previous_active(self, container_id: str) -> None:
        self._runtime.rename_container(container_id, active_container_name(self._config.image_repo))
        self._runtime.start_container(container_id)

    def _return_to_retained(self, container_id: str, retained_name: str) -> None:
        try:
            self._runtime.stop_container(container_id, timeout=self._config.runtime.stop_timeout)
        except ServiceVersionsError as exc:
            LOGGER.warning("Failed to stop rollback target %s: %s", container_id, exc)
        self._runtime.rename_container(container_id, retained_name)

    # Lookups ------------------------------------------------------------
    def _find_active(self, containers: Iterable[ContainerInfo]) -> ContainerInfo | None:
        name = active_container_name(self._config.image_repo)
        for container in containers:
            if container.name == name and container.container_id:
                return container
        return None

    def _require_active(self) -> ContainerInfo:
        active = self._find_active(self._runtime.list_containers(self._config.image_repo))
        if active is None:
            raise ServiceVersionsError(ErrorCode.NO_ACTIVE_INSTANCE, "No active instance")
        return active

    def _find_retained(self, containers: Iterable[ContainerInfo], container_id: str) -> ContainerInfo:
        return self._require_retained(_match_container(containers, container_id), container_id)

    def _require_retained(self, target: ContainerInfo | None, container_id: str) -> ContainerInfo:
        if target is None or parse_retained_container_name(target.name) is None:
            raise ServiceVersionsError(
                ErrorCode.INSTANCE_NOT_FOUND,
                "Instance not found",
                details={"container_id": container_id},
            )
        return target

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------
    def _build_state(self, force: bool) -> ServiceState:
        environment = self._runtime.detect_environment()
        if not environment.available:
            raise RuntimeUnavailableError(
                _runtime_code(environment.diagnostic_code),
                environment.diagnostic_message or "Required runtime is not available",
                details={"environment": environment.to_dict()},
            )

        repo = self._config.image_repo
        policy = self._retention.read()
        prefs = self._ports.read()
        catalog = self._load_catalog(force)
        local_images = self._runtime.list_local_images(repo)
        containers = self._runtime.list_containers(repo)
        free_bytes = self._free_bytes()
        remote_tags = self._remote_tags(repo)

        releases = trim_dead_releases(catalog.releases, remote_tags)
        latest = releases[0].tag if releases else None
        active = self._find_active(containers)
        active_tag = (active.tag or None) if active else None
        active_state = active.state if active else None
        retained = collect_retained(containers)
        local_by_tag = index_local_images(local_images)

        entries = self._refresh_installability(
            repo,
            probe_candidates(
                latest_release=latest,
                active_tag=active_tag,
                retained=retained,
                local_tags=local_by_tag.keys(),
            ),
            offline=catalog.offline,
            force=force,
        )

        current = self._tracker.current()
        installing = current.target_version_tag if current is not None and current.running else None
        rows = build_version_rows(
            VersionInputs(
                releases=releases,
                local_by_tag=local_by_tag,
                entries=entries,
                active_tag=active_tag,
                active_state=active_state,
                installing_tag=installing,
            )
        )

        if not catalog.offline and releases:
            self._schedule_warmup(repo, [PREVIEW_TAG, latest or "", *(release.tag for release in releases)])

        stats = image_stats(local_images)
        states_by_id = {container.container_id: container.state for container in containers}
        return ServiceState(
            versions=tuple(rows),
            retained_instances=tuple(
                RetainedInstance(
                    container_id=item.container_id,
                    container_name=item.container_name,
                    version_tag=item.version_tag,
                    retained_at=item.retained_at.isoformat(),
                    state=states_by_id.get(item.container_id),
                )
                for item in retained
            ),
            retention_policy=policy.to_dict(),
            port_preferences=prefs.to_dict(),
            ui_url=self._reachable_ui_url(active),
            last_synced_at=catalog.last_synced_at,
            offline=catalog.offline,
            storage=StorageSummary(
                free_bytes=free_bytes,
                used_bytes=stats.used_bytes,
                estimate_after_update_bytes=estimate_after_update(free_bytes, latest, local_by_tag, stats),
            ),
            active_version_tag=active_tag,
        )

    def _load_catalog(self, force: bool) -> ReleaseCatalog:
        try:
            return self._releases.list_official_releases(self._config.release_repo, force_refresh=force)
        except RegistryError as exc:
            LOGGER.warning("Release catalog unavailable: %s", exc)
            return ReleaseCatalog(releases=(), offline=True)

    def _remote_tags(self, repo: str) -> list[str] | None:
        try:
            return self._registry_client.list_tags(repo)
        except ServiceVersionsError as exc:
            LOGGER.debug("Remote tag listing failed for %s: %s", repo, exc)
            return None

    def _free_bytes(self) -> int | None:
        try:
            return max(0, int(shutil.disk_usage(self._state.root).free))
        except OSError as exc:
            LOGGER.debug("Disk usage unavailable for %s: %s", self._state.root, exc)
            return None

    def _reachable_ui_url(self, active: ContainerInfo | None) -> str | None:
        if active is None or (active.state or "").lower() != "running":
            return None
        try:
            inspect = self._runtime.inspect_container(active.container_id)
        except ServiceVersionsError:
            return None
        candidate = ui_url_from_inspect(inspect)
        endpoint = parse_local_url(candidate)
        if endpoint is None:
            return None
        reachable = is_http_reachable(
            endpoint.host,
            endpoint.port,
            timeout=UI_PROBE_TIMEOUT,
            transport=self._health.transport,
        )
        return candidate if reachable else None

    def _refresh_installability(
        self,
        repo: str,
        candidates: list[str],
        *,
        offline: bool,
        force: bool,
    ) -> dict[str, InstallabilityEntry]:
        entries = self._installability.load()
        if offline and not force:
            return entries
        now = self._installability.now()
        probed: dict[str, InstallabilityEntry] = {}
        for tag in self._installability.stale_tags(candidates, force=force):
            try:
                remote = self._registry_client.get_digest(repo, tag)
            except RegistryRateLimitError:
                LOGGER.info("Registry rate limit reached; skipping remaining installability probes")
                break
            except ServiceVersionsError as exc:
                LOGGER.debug("Installability probe failed for %s:%s: %s", repo, tag, exc)
                continue
            if remote.exists:
                probed[tag] = InstallabilityEntry.installable(
                    now,
                    digest=remote.digest,
                    content_type=remote.content_type,
                )
            else:
                probed[tag] = InstallabilityEntry.not_yet_available(now)
        if not probed:
            return entries
        try:
            return self._installability.merge(probed)
        except StateRegistryError as exc:
            LOGGER.warning("Failed to persist installability cache: %s", exc)
            entries.update(probed)
            return entries

    # ------------------------------------------------------------------
    # Layer-size warm-up
    # ------------------------------------------------------------------
    def _schedule_warmup(self, repo: str, tags: Iterable[str]) -> None:
        if not self._warmup_enabled or not repo:
            return
        now = time.monotonic()
        with self._warmup_lock:
            if self._warmup_running:
                return
            if (
                self._warmup_repo == repo
                and self._warmup_started is not None
                and now - self._warmup_started < WARMUP_REPEAT_AFTER
            ):
                return
            self._warmup_running = True
            self._warmup_repo = repo
            self._warmup_started = now
            thread = threading.Thread(
                target=self._warm_layer_sizes,
                args=(repo, list(tags)),
                name="backendctl-warmup",
                daemon=True,
            )
            self._warmup_thread = thread
        thread.start()

    def _warm_layer_sizes(self, repo: str, tags: list[str]) -> None:
        try:
            if self._tracker.is_running():
                return
            ordered = list(dict.fromkeys(tag.strip() for tag in tags if tag and tag.strip()))
            for tag in ordered[:WARMUP_TAG_LIMIT]:
                try:
                    self._registry_client.get_layer_sizes(repo, tag, Platform(os="linux"))
                except RegistryRateLimitError:
                    LOGGER.info("Registry rate limit reached; stopping layer-size warm-up")
                    break
                except ServiceVersionsError as exc:
                    LOGGER.debug("Layer-size warm-up failed for %s:%s: %s", repo, tag, exc)
                self._sleep(WARMUP_DELAY)
        finally:
            with self._warmup_lock:
                self._warmup_running = False

    # ------------------------------------------------------------------
    # Inventory and volumes
    # ------------------------------------------------------------------
    def get_inventory(self) -> dict[str, object]:
        """Return local images, managed containers, and volumes."""
        repo = self._config.image_repo
        return {
            "image_repo": repo,
            "images": [image.to_dict() for image in self._runtime.list_local_images(repo)],
            "containers": [container.to_dict() for container in self._runtime.list_containers(repo)],
            "volumes": [volume.to_dict() for volume in self._runtime.list_volumes()],
        }

    def remove_image(self, tag: object) -> str:
        """Remove the local image for *tag*; return the removed reference.

        Images still used by the active or a retained instance, or targeted
        by the running operation, are refused with ``IMAGE_IN_USE``.
        """
        value = assert_tag_allowed_for_activate(tag)
        repo = self._config.image_repo
        ref = image_ref(repo, value)
        if not any(image.tag == value for image in self._runtime.list_local_images(repo)):
            raise ServiceVersionsError(
                ErrorCode.NOT_INSTALLED,
                "Version is not installed",
                details={"tag": value},
            )
        users = [
            item.name or item.container_id
            for item in self._runtime.list_containers(repo)
            if item.tag == value
        ]
        current = self._tracker.current()
        if current is not None and current.running and current.target_version_tag == value:
            users.append(current.op_id)
        if users:
            raise ServiceVersionsError(
                ErrorCode.IMAGE_IN_USE,
                "Image is in use",
                details={"tag": value, "used_by": users},
            )
        self._runtime.remove_local_image(ref)
        return ref

    def remove_volume(self, name: object) -> None:
        """Remove a named volume."""
        value = name.strip() if isinstance(name, str) else ""
        if not value:
            raise ValidationError(ErrorCode.INVALID_INPUT, "Volume name is required")
        self._runtime.remove_volume(value)

    def prune_volumes(self) -> dict[str, Any]:
        """Prune unused volumes."""
        return self._runtime.prune_volumes()


def _runtime_code(value: str | None) -> ErrorCode:
    try:
        return ErrorCode(value) if value else ErrorCode.RUNTIME_UNAVAILABLE
    except ValueError:
        return ErrorCode.RUNTIME_UNAVAILABLE


def _match_container(containers: Iterable[ContainerInfo], container_id: str) -> ContainerInfo | None:
    """Return the container with id *container_id*, or the only one it prefixes."""
    wanted = container_id.lower()
    candidates = [item for item in containers if item.container_id]
    for item in candidates:
        if item.container_id.lower() == wanted:
            return item
    prefixed = [item for item in candidates if item.container_id.lower().startswith(wanted)]
    return prefixed[0] if len(prefixed) == 1 else None


__all__ = [
    "CANCEL_MESSAGE",
    "ServiceVersionsOrchestrator",
]
