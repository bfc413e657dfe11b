"""Wire recording sessions, watchdogs and storage maintenance together."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

from .camera import BaseCamera, create_camera
from .config import CAMERA_IDS, ConfigStore, PipelineConfig
from .event_log import EventLog
from .events import EventBus, NoticeCode, Notification
from .extraction import ClipExtractor
from .recorder.capture import DEFAULT_CAPTURE_MODULES, CaptureModuleSpec, SnapshotMetadata
from .recorder.chunk_writer import RecorderFactory, default_recorder_factory
from .recorder.session import RecordingSession
from .scheduler import SerialScheduler
from .storage.index import ChunkIndex
from .storage.trimmer import StorageTrimmer, TrimResult
from .watchdog import DEFAULT_DAEMON_NAMES, Watchdog, kill_processes

logger = logging.getLogger(__name__)

COMMANDS: tuple[str, ...] = ("start", "cut_off", "snapshot", "pause", "resume", "stop")
RESTART_BACKOFF_S = 2.0
CAMERA_START_DELAYS_MS: dict[int, int] = {0: 1000}


@dataclass(slots=True)
class CameraContext:
    """Everything owned by one camera."""

    camera_id: int
    scheduler: SerialScheduler
    session: RecordingSession
    watchdog: Watchdog
    enabled: bool = False


class UnknownCameraError(KeyError):
    """Raised when a command targets a camera that is not configured."""


class _SupervisorRecovery:
    """Recovery actions the watchdogs invoke on the supervisor."""

    def __init__(self, supervisor: "Supervisor") -> None:
        self._supervisor = supervisor

    def is_enabled(self, camera_id: int) -> bool:
        return self._supervisor.camera(camera_id).enabled

    def is_session_active(self, camera_id: int) -> bool:
        return self._supervisor.camera(camera_id).session.is_active

    def start(self, camera_id: int) -> None:
        self._supervisor.camera(camera_id).session.start()

    def restart(self, camera_id: int) -> None:
        self._supervisor.restart_camera(camera_id)

    def reboot(self, camera_id: int) -> None:
        self._supervisor.reboot_camera(camera_id)


class Supervisor:
    """Own the per-camera contexts and route commands to them.

    Each camera gets its own :class:`SerialScheduler`, shared by its session
    and watchdog, so recovery never races the session it acts upon.
    """

    def __init__(
        self,
        media_root: Path | str,
        *,
        cameras: Sequence[int] = CAMERA_IDS,
        events: EventBus | None = None,
        index: ChunkIndex | None = None,
        config_store: ConfigStore | None = None,
        event_log: EventLog | None = None,
        camera_choice: str | None = None,
        camera_factory: Callable[[int, PipelineConfig], BaseCamera] | None = None,
        recorder_factory: RecorderFactory = default_recorder_factory,
        capture_modules: Sequence[CaptureModuleSpec] = DEFAULT_CAPTURE_MODULES,
        scheduler_factory: Callable[[str], SerialScheduler] | None = None,
        start_delays_ms: Mapping[int, int] = CAMERA_START_DELAYS_MS,
        daemon_names: Iterable[str] = DEFAULT_DAEMON_NAMES,
        process_killer: Callable[[Iterable[str]], list[str]] = kill_processes,
        session_options: Mapping[str, Any] | None = None,
        watchdog_options: Mapping[str, Any] | None = None,
    ) -> None:
        self._media_root = Path(media_root)
        self.events = events or EventBus()
        self.index = index or ChunkIndex(self._media_root)
        self.config_store = config_store or ConfigStore(self._media_root / "config.json")
        self.event_log = event_log or EventLog(self._media_root / "events.jsonl")
        self.trimmer = StorageTrimmer(self.index, events=self.events)
        self.extractor = ClipExtractor(self.index)
        self._daemon_names = tuple(daemon_names)
        self._process_killer = process_killer
        self._unsubscribers: list[Callable[[], None]] = [
            self.events.subscribe(self.event_log.record)
        ]

        if camera_factory is None:

            def camera_factory(camera_id: int, config: PipelineConfig) -> BaseCamera:
                return create_camera(
                    camera_choice,
                    camera_id=camera_id,
                    resolution=(config.width, config.height),
                    fps=config.frame_rate,
                )

        make_scheduler = scheduler_factory or (lambda name: SerialScheduler(name))
        self._contexts: dict[int, CameraContext] = {}
        for camera_id in cameras:
            scheduler = make_scheduler(f"camera-{camera_id}")
            session = RecordingSession(
                camera_id,
                index=self.index,
                events=self.events,
                scheduler=scheduler,
                camera_factory=camera_factory,
                recorder_factory=recorder_factory,
                trimmer=self.trimmer,
                config_store=self.config_store,
                capture_modules=capture_modules,
                start_delay_ms=start_delays_ms.get(int(camera_id), 0),
                **dict(session_options or {}),
            )
            watchdog = Watchdog(
                camera_id,
                scheduler=scheduler,
                actions=_SupervisorRecovery(self),
                **dict(watchdog_options or {}),
            )
            scheduler.set_error_handler(session.report_unhandled)
            self._unsubscribers.append(self.events.subscribe(watchdog.on_notification))
            self._contexts[int(camera_id)] = CameraContext(
                camera_id=int(camera_id),
                scheduler=scheduler,
                session=session,
                watchdog=watchdog,
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def media_root(self) -> Path:
        return self._media_root

    @property
    def camera_ids(self) -> list[int]:
        return sorted(self._contexts)

    def camera(self, camera_id: int) -> CameraContext:
        try:
            return self._contexts[int(camera_id)]
        except (KeyError, TypeError, ValueError):
            raise UnknownCameraError(camera_id) from None

    def start(self) -> None:
        """Start the worker threads and watchdogs without recording yet."""

        for context in self._contexts.values():
            context.scheduler.start()
            context.watchdog.start()
        removed = self.trimmer.remove_dead_index_entries()
        if removed:
            logger.info("Dropped %d stale index entries at startup", removed)

    def close(self, *, timeout: float = 5.0) -> None:
        """Stop every session, waiting up to *timeout* for the chunks to close."""

        stopped: dict[int, threading.Event] = {}
        for context in self._contexts.values():
            context.enabled = False
            if context.session.is_active:
                stopped[context.camera_id] = threading.Event()

        def _on_stopped(notification: Notification) -> None:
            if notification.notice_code == NoticeCode.SERVICE_STOPPED:
                waiter = stopped.get(notification.camera_id)
                if waiter is not None:
                    waiter.set()

        unsubscribe = self.events.subscribe(_on_stopped)
        try:
            for context in self._contexts.values():
                context.scheduler.submit(context.watchdog.stop)
                context.session.stop()
            deadline = time.monotonic() + timeout
            for camera_id, waiter in stopped.items():
                if not waiter.wait(max(0.0, deadline - time.monotonic())):
                    logger.warning("Camera %s did not stop within %.1fs", camera_id, timeout)
        finally:
            unsubscribe()
        for context in self._contexts.values():
            context.scheduler.shutdown(wait=True)
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.index.close()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def dispatch(self, command: str, camera_id: int | None = None, **params: Any) -> list[int]:
        """Deliver *command* to one camera, or every camera when unspecified.

        Returns the ids of the cameras the command was sent to.
        """

        verb = command.strip().lower().replace("-", "_")
        if verb == "cutoff":
            verb = "cut_off"
        if verb not in COMMANDS:
            raise ValueError(f"Unknown command: {command}")
        targets = self.camera_ids if camera_id is None else [self.camera(camera_id).camera_id]
        for target in targets:
            self._dispatch_one(verb, self._contexts[target], params)
        return targets

    def _dispatch_one(self, verb: str, context: CameraContext, params: Mapping[str, Any]) -> None:
        session = context.session
        logger.info("Camera %s command %s %s", context.camera_id, verb, dict(params) or "")
        if verb == "start":
            context.enabled = True
            config = None
            if params:
                base = (
                    session.config
                    or self.config_store.load_config(context.camera_id)
                    or PipelineConfig.default_for(context.camera_id)
                )
                config = PipelineConfig.from_params(params, base=base)
            session.start(config)
        elif verb == "stop":
            context.enabled = False
            session.stop()
        elif verb == "cut_off":
            session.cut_off(int(params.get("delay_ms", 0) or 0))
        elif verb == "snapshot":
            filename = params.get("filename")
            session.snapshot(
                SnapshotMetadata(
                    camera_id=context.camera_id,
                    filename=str(filename) if filename else None,
                )
            )
        elif verb == "pause":
            session.pause()
        elif verb == "resume":
            session.resume()

    def on_storage_mounted(self) -> None:
        for context in self._contexts.values():
            context.scheduler.submit(context.watchdog.on_storage_mounted)
            if context.enabled:
                context.session.start()

    def on_storage_unmounted(self) -> None:
        for context in self._contexts.values():
            context.session.stop()

    def enable_all(self) -> None:
        """Mark every camera enabled and start it with its saved configuration."""

        for context in self._contexts.values():
            context.enabled = True
            context.session.start()

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    def restart_camera(self, camera_id: int) -> None:
        """Stop the session, then start it again with its previous configuration."""

        context = self.camera(camera_id)
        previous = context.session.config
        context.session.stop()
        logger.info("Restarting camera %s in %.1fs", camera_id, RESTART_BACKOFF_S)
        context.scheduler.call_later(
            RESTART_BACKOFF_S,
            lambda: context.session.start(previous, delay_ms=0),
            name=f"restart-{camera_id}",
        )

    def reboot_camera(self, camera_id: int) -> None:
        logger.warning("Rebooting camera services for camera %s", camera_id)
        self._process_killer(self._daemon_names)
        self.restart_camera(camera_id)

    # ------------------------------------------------------------------
    # Storage and status
    # ------------------------------------------------------------------
    def trim(self) -> TrimResult:
        return self.trimmer.trim_if_short()

    def status(self) -> dict[str, object]:
        cameras: dict[str, object] = {}
        for camera_id, context in sorted(self._contexts.items()):
            latest = self.index.latest(camera_id)
            entry = context.session.status()
            entry["enabled"] = context.enabled
            entry["watchdog"] = context.watchdog.status()
            entry["latest_chunk"] = latest.to_dict() if latest is not None else None
            cameras[str(camera_id)] = entry
        try:
            available = self.trimmer.available_bytes()
        except OSError:
            available = None
        return {
            "media_root": str(self._media_root),
            "available_bytes": available,
            "indexed_files": self.index.count(),
            "cameras": cameras,
        }


__all__ = [
    "CAMERA_START_DELAYS_MS",
    "COMMANDS",
    "RESTART_BACKOFF_S",
    "CameraContext",
    "Supervisor",
    "UnknownCameraError",
]
