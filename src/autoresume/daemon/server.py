from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import socket
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Dict, Optional, Set, Tuple

from pydantic import ValidationError

from .. import __version__
from ..contracts.v1 import DAEMON_OPS, DaemonRequest, DaemonResponse, DetectionEvent
from ..kernel.analytics import AnalyticsCollector
from ..kernel.queue import EventQueue, parse_detection
from ..kernel.settings import Settings, load_settings
from ..kernel.staleness import is_stale
from ..paths import ensure_home, queue_path
from ..util.fs import atomic_write_text
from ..util.time import iso, utc_now_iso
from .coordinator import ResumeCoordinator, session_label
from .notify import Notifier
from .plugins import PluginRegistry
from .retry import RetryPolicy
from .scheduler import ResumeScheduler
from .status import StatusBridge

logger = logging.getLogger("autoresume.daemon")

_MAX_REQUEST_BYTES = 1_000_000
# Queue writes from the event loop give up quickly; the next poll retries.
_LOOP_LOCK_TIMEOUT_S = 1.0


@dataclass
class DaemonPaths:
    home: Path

    @property
    def daemon_dir(self) -> Path:
        return self.home / "daemon"

    @property
    def sock_path(self) -> Path:
        return self.daemon_dir / "autoresumed.sock"

    @property
    def pid_path(self) -> Path:
        return self.daemon_dir / "autoresumed.pid"

    @property
    def log_path(self) -> Path:
        return self.daemon_dir / "autoresumed.log"

    @property
    def stderr_path(self) -> Path:
        return self.daemon_dir / "autoresumed.stderr"


def default_paths() -> DaemonPaths:
    return DaemonPaths(home=ensure_home())


def _is_socket_alive(sock_path: Path) -> bool:
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(0.2)
            s.connect(str(sock_path))
            s.sendall(b'{"op":"ping"}\n')
            _ = s.recv(1024)
            return True
    except OSError:
        return False


def _write_pid(pid_path: Path) -> None:
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_text(pid_path, str(os.getpid()) + "\n")


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except OSError:
        return False


def _unlink_quiet(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"could not remove {path}: {e}")


class ResumeDaemon:
    """Wires queue, scheduler, coordinator and collaborators into one loop."""

    def __init__(
        self,
        paths: DaemonPaths,
        *,
        settings: Optional[Settings] = None,
        queue: Optional[EventQueue] = None,
        coordinator: Optional[ResumeCoordinator] = None,
        notifier: Optional[Notifier] = None,
        analytics: Optional[AnalyticsCollector] = None,
        plugins: Optional[PluginRegistry] = None,
        status: Optional[StatusBridge] = None,
    ) -> None:
        self.paths = paths
        self.settings = settings or load_settings(paths.home)
        s = self.settings
        self.queue = queue or EventQueue(queue_path(paths.home), lock_timeout_s=_LOOP_LOCK_TIMEOUT_S)
        self.status = status or StatusBridge(home=paths.home)
        self.notifier = notifier or Notifier(enabled=s.notifications.enabled, timeout_s=s.notifications.timeout_seconds)
        if analytics is None and s.analytics.enabled:
            analytics = AnalyticsCollector(paths.home / "analytics.json", retention_days=s.analytics.retention_days)
        self.analytics = analytics
        if plugins is None and s.plugins.enabled:
            plugins = PluginRegistry(s.plugins.plugin_dir(paths.home), hook_timeout_s=s.plugins.hook_timeout_seconds)
        self.plugins = plugins

        self.coordinator = coordinator or ResumeCoordinator(
            self.queue,
            settings=s,
            retry=RetryPolicy(
                max_retries=s.resume.max_retries,
                base_delay_s=s.resume.retry_base_delay_sec,
                max_delay_s=s.resume.retry_max_delay_sec,
            ),
            notifier=self.notifier,
            analytics=self.analytics,
            status=self.status,
            plugins=self.plugins,
        )
        self.scheduler = ResumeScheduler(self.queue, self.coordinator, settings=s, status=self.status)
        self.coordinator.on_idle = self.scheduler.reschedule

        self._seen: Set[str] = set()
        self._stop = asyncio.Event()
        self._background: Set[asyncio.Task] = set()
        self._server: Optional[asyncio.AbstractServer] = None
        self._started_at = utc_now_iso()
        self._next_cleanup = 0.0

        if self.plugins is not None:
            self.status.add_listener(self._on_status_change)

    # -- helpers -------------------------------------------------------------

    def _spawn(self, coro: Awaitable[Any], what: str) -> None:
        async def _guard() -> None:
            try:
                await coro
            except Exception as e:
                logger.warning(f"{what} failed: {type(e).__name__}: {e}")

        task = asyncio.get_running_loop().create_task(_guard())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _on_status_change(self, kind: str, data: Dict[str, Any]) -> None:
        if kind != "status" or self.plugins is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._spawn(self.plugins.call_hook("onStatusChange", data), "onStatusChange hook")

    def request_stop(self) -> None:
        self._stop.set()

    # -- detections ----------------------------------------------------------

    def _on_new_entry(self, entry: DetectionEvent) -> None:
        """Side effects of a first-seen detection; scheduling is separate."""
        if is_stale(entry.reset_time, self.settings.resume.stale_threshold_ms):
            logger.info(f"stale detection ignored reset_time={entry.reset_time}", extra={"event_id": entry.id})
            return
        logger.info(f"rate limit detected; resets at {entry.reset_time}", extra={"event_id": entry.id})
        self.status.set_rate_limited(entry)
        if self.analytics is not None:
            try:
                self.analytics.record_rate_limit(entry.reset_time, session=session_label(entry))
            except OSError as e:
                logger.warning(f"analytics write failed: {e}", extra={"event_id": entry.id})
        self._spawn(self.notifier.notify_rate_limit(entry.reset_time), "rate limit notification")
        if self.plugins is not None:
            payload = entry.model_dump(mode="json")
            self._spawn(self.plugins.call_hook("onRateLimitDetected", payload), "onRateLimitDetected hook")

    def poll_queue(self) -> int:
        """Pick up entries other processes appended; returns how many were new."""
        new = [e for e in self.queue.entries() if e.id not in self._seen]
        for entry in new:
            self._seen.add(entry.id)
            if entry.is_live:
                self._on_new_entry(entry)
        self.scheduler.reschedule()
        return len(new)

    def _maybe_cleanup(self) -> None:
        now = time.monotonic()
        if self.analytics is None or now < self._next_cleanup:
            return
        self._next_cleanup = now + 3600.0
        try:
            self.analytics.cleanup()
        except OSError as e:
            logger.warning(f"analytics cleanup failed: {e}")

    # -- requests ------------------------------------------------------------

    def status_doc(self) -> Dict[str, Any]:
        fire_at = self.scheduler.fire_at
        return {
            "version": __version__,
            "pid": os.getpid(),
            "started_at": self._started_at,
            "state": self.coordinator.state,
            "resume_in_progress": self.coordinator.is_resume_in_progress(),
            "current_event_id": self.coordinator.current_event_id,
            "armed_event_id": self.scheduler.armed_event_id,
            "fire_at": iso(fire_at) if fire_at is not None else None,
            "status": self.status.snapshot(),
            "queue": self.queue.summary(),
        }

    async def handle_request(self, req: DaemonRequest) -> Tuple[DaemonResponse, bool]:
        op = req.op
        args = req.args or {}
        if op not in DAEMON_OPS:
            return DaemonResponse.failure("unknown_op", f"unknown op: {op}"), False

        if op == "ping":
            return DaemonResponse.success(version=__version__, pid=os.getpid(), ts=utc_now_iso()), False

        if op == "shutdown":
            return DaemonResponse.success(message="shutting down"), True

        if op == "status":
            return DaemonResponse.success(**self.status_doc()), False

        if op == "queue":
            entries = [e.model_dump(mode="json") for e in self.queue.entries()]
            return DaemonResponse.success(entries=entries), False

        if op == "enqueue":
            try:
                detection = parse_detection(args)
            except ValueError as e:
                return DaemonResponse.failure("invalid_detection", str(e)), False
            entry = self.queue.add_detection(detection)
            if entry is None:
                return DaemonResponse.success(queued=False, reason="duplicate"), False
            self._seen.add(entry.id)
            self._on_new_entry(entry)
            self.scheduler.reschedule()
            return DaemonResponse.success(queued=True, entry=entry.model_dump(mode="json")), False

        if op == "trigger":
            event_id = str(args.get("event_id") or "").strip()
            entry = self.queue.get_entry(event_id) if event_id else self.queue.get_next_pending()
            if entry is None:
                return DaemonResponse.failure("no_pending", "no pending entry to resume"), False
            if not args.get("force") and is_stale(entry.reset_time, self.settings.resume.stale_threshold_ms):
                return DaemonResponse.failure("stale", f"entry is stale (reset_time={entry.reset_time}); pass force to override"), False
            started = self.scheduler.trigger_now(entry)
            if not started:
                return DaemonResponse.failure("busy", "a resume attempt is already in progress"), False
            return DaemonResponse.success(started=True, event_id=entry.id), False

        if op == "reset":
            if args.get("all"):
                reset = self.queue.reset_entries(all_live=True)
            else:
                reset = self.queue.reset_entries(stale_threshold_ms=self.settings.resume.stale_threshold_ms)
            self.scheduler.reschedule()
            return DaemonResponse.success(reset=reset), False

        raise AssertionError(f"op listed but not handled: {op}")

    async def _handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        should_exit = False
        try:
            try:
                line = await asyncio.wait_for(reader.readline(), timeout=10.0)
                raw = json.loads(line[:_MAX_REQUEST_BYTES].decode("utf-8", errors="replace") or "{}")
                req = DaemonRequest.model_validate(raw)
            except (asyncio.TimeoutError, ValueError, ValidationError) as e:
                resp = DaemonResponse.failure("invalid_request", "invalid request", error=str(e))
            else:
                try:
                    resp, should_exit = await self.handle_request(req)
                except Exception as e:
                    logger.exception(f"op {req.op} failed")
                    resp = DaemonResponse.failure("internal_error", f"{type(e).__name__}: {e}")
            writer.write((json.dumps(resp.model_dump(), ensure_ascii=False) + "\n").encode("utf-8"))
            await writer.drain()
        except (BrokenPipeError, ConnectionResetError):
            # Client went away before the reply.
            pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
        if should_exit:
            self.request_stop()

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        try:
            recovered = self.queue.recover_interrupted()
        except OSError as e:
            # Entries stay `active` and are recovered on the next start.
            logger.warning(f"crash recovery skipped: {e}")
            recovered = 0
        if recovered:
            logger.info(f"{recovered} interrupted entr{'y' if recovered == 1 else 'ies'} back to pending")
        self._seen = {e.id for e in self.queue.entries()}

        if self.plugins is not None:
            self.plugins.load_all()
            await self.plugins.call_hook("onDaemonStart", {"pid": os.getpid(), "version": __version__})

        self.status.broadcast_status({"state": "IDLE", "daemon": "running"})
        try:
            self.scheduler.reschedule()
        except OSError as e:
            # The first poll arms it instead.
            logger.warning(f"initial reschedule failed: {type(e).__name__}: {e}")

    async def stop(self) -> None:
        self.scheduler.cancel()
        self.coordinator.stop()
        await self.scheduler.wait_idle()
        await self.coordinator.drain_background()
        if self.plugins is not None:
            await self.plugins.call_hook("onDaemonStop", {"pid": os.getpid()})
        self.status.broadcast_status({"daemon": "stopped"})
        await self.drain_background()

    async def run(self) -> int:
        p = self.paths
        p.daemon_dir.mkdir(parents=True, exist_ok=True)
        if p.sock_path.exists():
            if _is_socket_alive(p.sock_path):
                logger.info("daemon already running")
                return 0
            _unlink_quiet(p.sock_path)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                pass

        self._server = await asyncio.start_unix_server(self._handle_conn, path=str(p.sock_path))
        _write_pid(p.pid_path)
        logger.info(f"autoresumed {__version__} listening on {p.sock_path}")
        try:
            await self.start()
            interval = float(self.settings.check_interval_seconds)
            while not self._stop.is_set():
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
                if self._stop.is_set():
                    break
                try:
                    self.poll_queue()
                    self._maybe_cleanup()
                except OSError as e:
                    # Includes LockUnavailableError while a detector holds the queue.
                    logger.warning(f"queue poll failed: {type(e).__name__}: {e}")
        finally:
            self._server.close()
            await self._server.wait_closed()
            await self.stop()
            _unlink_quiet(p.sock_path)
            _unlink_quiet(p.pid_path)
            logger.info("autoresumed stopped")
        return 0


def serve_forever(paths: Optional[DaemonPaths] = None, *, settings: Optional[Settings] = None) -> int:
    daemon = ResumeDaemon(paths or default_paths(), settings=settings)
    return asyncio.run(daemon.run())


def call_daemon(req: Dict[str, Any], *, paths: Optional[DaemonPaths] = None, timeout_s: float = 30.0) -> Dict[str, Any]:
    p = paths or default_paths()
    try:
        request = DaemonRequest.model_validate(req)
    except ValidationError as e:
        return DaemonResponse.failure("invalid_request", "invalid request", error=str(e)).model_dump()
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(timeout_s)
            s.connect(str(p.sock_path))
            s.sendall((json.dumps(request.model_dump(), ensure_ascii=False) + "\n").encode("utf-8"))
            buf = b""
            while b"\n" not in buf:
                chunk = s.recv(65536)
                if not chunk:
                    break
                buf += chunk
        obj = json.loads(buf.split(b"\n", 1)[0].decode("utf-8", errors="replace"))
        return DaemonResponse.model_validate(obj).model_dump()
    except (OSError, ValueError, ValidationError):
        return DaemonResponse.failure("daemon_unavailable", "daemon unavailable").model_dump()


def read_pid(paths: Optional[DaemonPaths] = None) -> int:
    p = paths or default_paths()
    try:
        txt = p.pid_path.read_text(encoding="utf-8").strip()
    except OSError:
        return 0
    return int(txt) if txt.isdigit() else 0
