from __future__ import annotations

import argparse
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Optional

from .daemon.server import DaemonPaths, call_daemon, default_paths, pid_alive, read_pid, serve_forever
from .kernel.settings import load_settings
from .util.obslog import setup_root_json_logging


def _spawn_daemon(paths: DaemonPaths) -> int:
    paths.daemon_dir.mkdir(parents=True, exist_ok=True)
    env = os.environ.copy()
    env["AUTORESUME_HOME"] = str(paths.home)
    # Records go to the rotating log; the stderr file only catches interpreter crashes.
    with paths.stderr_path.open("a", encoding="utf-8") as err_f:
        p = subprocess.Popen(
            [sys.executable, "-m", "autoresume.daemon_main", "run", "--log-file", str(paths.log_path)],
            stdout=err_f,
            stderr=err_f,
            stdin=subprocess.DEVNULL,
            env=env,
            start_new_session=True,
            cwd=str(Path.home()),
        )
    return int(p.pid)


def _is_running(paths: DaemonPaths) -> bool:
    return bool(call_daemon({"op": "ping"}, paths=paths, timeout_s=2.0).get("ok"))


def _wait_stopped(paths: DaemonPaths, pid: int, timeout_s: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if not pid_alive(pid) and not _is_running(paths):
            return True
        time.sleep(0.1)
    return False


def cmd_run(paths: DaemonPaths, args: argparse.Namespace) -> int:
    settings = load_settings(paths.home)
    setup_root_json_logging(
        component="autoresumed",
        level=settings.log_level,
        log_file=Path(args.log_file).expanduser() if args.log_file else None,
    )
    return int(serve_forever(paths, settings=settings))


def cmd_start(paths: DaemonPaths, args: argparse.Namespace) -> int:
    if _is_running(paths):
        print("autoresumed: already running")
        return 0
    pid = _spawn_daemon(paths)
    print(f"autoresumed: started pid={pid} log={paths.log_path}")
    return 0


def cmd_stop(paths: DaemonPaths, args: argparse.Namespace) -> int:
    pid = read_pid(paths)
    if call_daemon({"op": "shutdown"}, paths=paths).get("ok"):
        print("autoresumed: shutdown requested")
    elif pid_alive(pid):
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError as e:
            print(f"autoresumed: could not signal pid={pid}: {e}")
            return 1
        print("autoresumed: SIGTERM sent")
    else:
        print("autoresumed: not running")
        return 0
    if args.wait and not _wait_stopped(paths, pid):
        print("autoresumed: still running after 10s")
        return 1
    return 0


def cmd_restart(paths: DaemonPaths, args: argparse.Namespace) -> int:
    args.wait = True
    rc = cmd_stop(paths, args)
    if rc != 0:
        return rc
    return cmd_start(paths, args)


def cmd_status(paths: DaemonPaths, args: argparse.Namespace) -> int:
    resp = call_daemon({"op": "ping"}, paths=paths, timeout_s=2.0)
    if resp.get("ok"):
        r = resp.get("result") if isinstance(resp.get("result"), dict) else {}
        print(f"autoresumed: running pid={r.get('pid')} version={r.get('version')}")
        return 0
    pid = read_pid(paths)
    if pid_alive(pid):
        print(f"autoresumed: pid={pid} alive but not answering on {paths.sock_path}")
        return 1
    print("autoresumed: not running")
    return 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="autoresumed", description="Claude Code auto-resume daemon")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run daemon in foreground")
    p_run.add_argument("--log-file", default="", help="Write JSONL logs to a rotating file instead of stderr")
    p_run.set_defaults(func=cmd_run)

    p_start = sub.add_parser("start", help="Start daemon in background")
    p_start.set_defaults(func=cmd_start)

    p_stop = sub.add_parser("stop", help="Stop daemon")
    p_stop.add_argument("--wait", action="store_true", help="Block until the daemon has exited")
    p_stop.set_defaults(func=cmd_stop)

    p_restart = sub.add_parser("restart", help="Stop (waiting for exit) and start again")
    p_restart.set_defaults(func=cmd_restart)

    p_status = sub.add_parser("status", help="Daemon status")
    p_status.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)
    return int(args.func(default_paths(), args))


if __name__ == "__main__":
    raise SystemExit(main())
