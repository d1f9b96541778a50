from __future__ import annotations

import os
from pathlib import Path


def autoresume_home() -> Path:
    env = os.environ.get("AUTORESUME_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".claude" / "auto-resume").resolve()


def ensure_home() -> Path:
    home = autoresume_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def queue_path(home: Path | None = None) -> Path:
    return (home or autoresume_home()) / "status.json"
