from __future__ import annotations

import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator, Optional


class LockUnavailableError(TimeoutError):
    """Raised when a lock cannot be taken before the deadline.

    A TimeoutError, so it is an OSError: callers that tolerate failed file
    writes tolerate a busy lock the same way.
    """


def _try_lock(f: IO[bytes]) -> bool:
    try:
        if os.name == "nt":
            import msvcrt  # Windows only

            f.seek(0)
            msvcrt.locking(f.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            import fcntl  # POSIX only

            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (BlockingIOError, PermissionError):
        return False
    except OSError as e:
        # msvcrt reports contention as EACCES/EDEADLK rather than BlockingIOError.
        if os.name == "nt":
            return False
        raise LockUnavailableError(str(e)) from e
    return True


def _unlock(f: IO[bytes]) -> None:
    if os.name == "nt":
        import msvcrt  # Windows only

        f.seek(0)
        msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        import fcntl  # POSIX only

        fcntl.flock(f.fileno(), fcntl.LOCK_UN)


def acquire_lockfile(path: Path, *, timeout_s: Optional[float] = None, poll_s: float = 0.02) -> IO[bytes]:
    """Open and lock `path`. The returned handle holds the lock until released.

    Both the daemon and the detection hook write the same files, so waiting is
    bounded: with `timeout_s` set, LockUnavailableError is raised once it passes.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    f = path.open("r+b") if path.exists() else path.open("w+b")
    if os.name == "nt" and os.fstat(f.fileno()).st_size == 0:
        # Region locks need at least one byte.
        f.write(b"\0")
        f.flush()
    deadline = None if timeout_s is None else time.monotonic() + max(0.0, float(timeout_s))
    try:
        while not _try_lock(f):
            if deadline is not None and time.monotonic() >= deadline:
                raise LockUnavailableError(f"timed out waiting for {path}")
            time.sleep(poll_s)
    except BaseException:
        f.close()
        raise
    return f


def release_lockfile(f: IO[bytes]) -> None:
    try:
        _unlock(f)
    except OSError:
        pass
    f.close()


@contextmanager
def locked(path: Path, *, timeout_s: Optional[float] = 10.0) -> Iterator[None]:
    lk = acquire_lockfile(path, timeout_s=timeout_s)
    try:
        yield
    finally:
        release_lockfile(lk)
