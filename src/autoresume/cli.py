from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict

from . import __version__
from .daemon.coordinator import ResumeCoordinator
from .daemon.notify import Notifier
from .daemon.plugins import PluginRegistry
from .daemon.server import call_daemon
from .kernel.analytics import AnalyticsCollector
from .kernel.events import tail_events
from .kernel.queue import EventQueue, parse_detection
from .kernel.settings import Settings, load_settings
from .kernel.staleness import is_stale
from .paths import ensure_home, queue_path


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _local_queue() -> EventQueue:
    return EventQueue(queue_path(ensure_home()))


def _daemon_result(req: Dict[str, Any]) -> Dict[str, Any] | None:
    """Daemon response when it is reachable; None means fall back to local files."""
    resp = call_daemon(req)
    err = resp.get("error") or {}
    if not resp.get("ok") and err.get("code") == "daemon_unavailable":
        return None
    return resp


def cmd_status(_: argparse.Namespace) -> int:
    resp = _daemon_result({"op": "status"})
    if resp is not None:
        _print_json(resp)
        return 0 if resp.get("ok") else 1
    # Fallback: local read-only view
    _print_json({"ok": True, "result": {"daemon": "not running", "queue": _local_queue().summary()}})
    return 0


def cmd_queue(args: argparse.Namespace) -> int:
    resp = _daemon_result({"op": "queue"})
    if resp is not None and resp.get("ok"):
        entries = (resp.get("result") or {}).get("entries") or []
    elif resp is not None:
        _print_json(resp)
        return 1
    else:
        entries = [e.model_dump(mode="json") for e in _local_queue().entries()]
    if not args.all:
        entries = [e for e in entries if e.get("status") in ("pending", "waiting", "active")]
    _print_json({"ok": True, "result": {"entries": entries}})
    return 0


def _detection_args(args: argparse.Namespace) -> Dict[str, Any]:
    if args.stdin:
        raw = sys.stdin.read()
        try:
            doc = json.loads(raw or "{}")
        except ValueError as e:
            raise ValueError(f"stdin is not JSON: {e}") from e
        if not isinstance(doc, dict):
            raise ValueError("stdin JSON must be an object")
        return doc
    doc: Dict[str, Any] = {"reset_time": args.reset_time or ""}
    if args.timezone:
        doc["timezone"] = args.timezone
    if args.message:
        doc["message"] = args.message
    if args.pid:
        doc["source_pid"] = args.pid
    if args.transcript:
        doc["transcript_path"] = args.transcript
    return doc


def cmd_enqueue(args: argparse.Namespace) -> int:
    try:
        detection = parse_detection(_detection_args(args))
    except ValueError as e:
        _print_json({"ok": False, "error": {"code": "invalid_detection", "message": str(e)}})
        return 2

    resp = _daemon_result({"op": "enqueue", "args": detection.model_dump(mode="json", exclude_none=True)})
    if resp is not None:
        _print_json(resp)
        return 0 if resp.get("ok") else 1

    # Fallback: write straight to the queue; the daemon picks it up on its next poll.
    entry = _local_queue().add_detection(detection)
    if entry is None:
        _print_json({"ok": True, "result": {"queued": False, "reason": "duplicate"}})
    else:
        _print_json({"ok": True, "result": {"queued": True, "entry": entry.model_dump(mode="json")}})
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    resp = _daemon_result({"op": "reset", "args": {"all": bool(args.all)}})
    if resp is not None:
        _print_json(resp)
        return 0 if resp.get("ok") else 1
    settings = load_settings()
    q = _local_queue()
    if args.all:
        reset = q.reset_entries(all_live=True)
    else:
        reset = q.reset_entries(stale_threshold_ms=settings.resume.stale_threshold_ms)
    _print_json({"ok": True, "result": {"reset": reset}})
    return 0


async def _local_trigger(q: EventQueue, settings: Settings, event_id: str) -> Dict[str, Any]:
    entry = q.get_entry(event_id)
    if entry is None:
        return {"ok": False, "error": {"code": "no_pending", "message": f"entry not found: {event_id}"}}
    home = ensure_home()
    coordinator = ResumeCoordinator(
        q,
        settings=settings,
        notifier=Notifier(enabled=settings.notifications.enabled, timeout_s=settings.notifications.timeout_seconds),
        analytics=(
            AnalyticsCollector(home / "analytics.json", retention_days=settings.analytics.retention_days)
            if settings.analytics.enabled
            else None
        ),
    )
    outcome = await coordinator.attempt_resume(entry)
    await coordinator.drain_background()
    if outcome is None:
        return {"ok": False, "error": {"code": "busy", "message": "a resume attempt is already in progress"}}
    return {"ok": True, "result": outcome.model_dump(mode="json")}


def cmd_trigger(args: argparse.Namespace) -> int:
    req_args: Dict[str, Any] = {"force": bool(args.force)}
    if args.event_id:
        req_args["event_id"] = args.event_id
    resp = _daemon_result({"op": "trigger", "args": req_args})
    if resp is not None:
        _print_json(resp)
        return 0 if resp.get("ok") else 1

    # Fallback: run one attempt in this process.
    settings = load_settings()
    q = _local_queue()
    entry = q.get_entry(args.event_id) if args.event_id else q.get_next_pending()
    if entry is None:
        _print_json({"ok": False, "error": {"code": "no_pending", "message": "no pending entry to resume"}})
        return 1
    if not args.force and is_stale(entry.reset_time, settings.resume.stale_threshold_ms):
        _print_json({"ok": False, "error": {"code": "stale", "message": f"entry is stale (reset_time={entry.reset_time})"}})
        return 1
    result = asyncio.run(_local_trigger(q, settings, entry.id))
    _print_json(result)
    return 0 if result.get("ok") else 1


def cmd_stats(args: argparse.Namespace) -> int:
    settings = load_settings()
    collector = AnalyticsCollector(ensure_home() / "analytics.json", retention_days=settings.analytics.retention_days)
    if args.cleanup:
        _print_json({"ok": True, "result": collector.cleanup()})
        return 0
    if args.export:
        _print_json({"ok": True, "result": collector.export()})
        return 0
    _print_json({"ok": True, "result": {"statistics": collector.statistics(), "prediction": collector.prediction()}})
    return 0


def cmd_plugins(_: argparse.Namespace) -> int:
    home = ensure_home()
    settings = load_settings(home)
    registry = PluginRegistry(settings.plugins.plugin_dir(home), hook_timeout_s=settings.plugins.hook_timeout_seconds)
    summary = registry.load_all()
    _print_json(
        {
            "ok": True,
            "result": {
                "enabled": settings.plugins.enabled,
                "directory": str(registry.directory),
                "loaded": summary["loaded"],
                "failed": summary["failed"],
                "plugins": registry.list_plugins(),
            },
        }
    )
    return 0


def cmd_events(args: argparse.Namespace) -> int:
    for ev in tail_events(int(args.limit)):
        print(json.dumps(ev, ensure_ascii=False))
    return 0


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="autoresume", description="Resume rate-limited Claude Code sessions automatically")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_status = sub.add_parser("status", help="Show daemon state and queue summary")
    p_status.set_defaults(func=cmd_status)

    p_queue = sub.add_parser("queue", help="List queued rate-limit events")
    p_queue.add_argument("--all", action="store_true", help="Include completed and failed entries")
    p_queue.set_defaults(func=cmd_queue)

    p_enqueue = sub.add_parser("enqueue", help="Record a detected rate limit")
    p_enqueue.add_argument("--reset-time", default="", help="When the limit resets (ISO-8601 or epoch ms)")
    p_enqueue.add_argument("--timezone", default="", help="Timezone the message was shown in (advisory)")
    p_enqueue.add_argument("--message", default="", help="Raw rate-limit message")
    p_enqueue.add_argument("--pid", type=int, default=0, help="PID of the rate-limited claude process")
    p_enqueue.add_argument("--transcript", default="", help="Transcript file the detection came from")
    p_enqueue.add_argument("--stdin", action="store_true", help="Read the detection as a JSON object from stdin")
    p_enqueue.set_defaults(func=cmd_enqueue)

    p_reset = sub.add_parser("reset", help="Mark stale queued entries failed")
    p_reset.add_argument("--all", action="store_true", help="Reset every live entry, not only stale ones")
    p_reset.set_defaults(func=cmd_reset)

    p_trigger = sub.add_parser("trigger", help="Resume now instead of waiting for the countdown")
    p_trigger.add_argument("--event-id", default="", help="Entry to resume (default: next pending)")
    p_trigger.add_argument("--force", action="store_true", help="Resume even if the entry is stale")
    p_trigger.set_defaults(func=cmd_trigger)

    p_stats = sub.add_parser("stats", help="Rate-limit statistics and prediction")
    p_stats.add_argument("--export", action="store_true", help="Dump all analytics data")
    p_stats.add_argument("--cleanup", action="store_true", help="Drop records past the retention window")
    p_stats.set_defaults(func=cmd_stats)

    p_plugins = sub.add_parser("plugins", help="List plugins in the plugin directory")
    p_plugins.set_defaults(func=cmd_plugins)

    p_events = sub.add_parser("events", help="Print the latest daemon status events (JSONL)")
    p_events.add_argument("--limit", type=int, default=50, help="How many events to show")
    p_events.set_defaults(func=cmd_events)

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
