"""Advisory per-path locks with owner metadata.

A lock is a file created atomically (hard-link of a fully written temp file,
so readers never see a half-written owner). The owner record carries pid, host,
token and acquisition time; a lock whose owner is gone or which outlived
`stale_after_s` is reclaimed. Reclamation runs under a short OS-level guard
lock so two reclaimers can never remove a lock that was just re-created.
"""
from __future__ import annotations

import errno
import json
import logging
import os
import socket
import tempfile
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, Optional, Tuple

from ..contracts.v1 import LockOwner
from .process import pid_alive
from .time import age_seconds, utc_now_iso

logger = logging.getLogger("claude_shim.lock")

_NO_LINK_ERRNOS = {
    getattr(errno, name) for name in ("EPERM", "ENOTSUP", "EOPNOTSUPP", "EXDEV", "EMLINK", "ENOSYS") if hasattr(errno, name)
}


class LockUnavailableError(RuntimeError):
    """Raised when a lock cannot be acquired before its deadline."""


def _ensure_lock_region(f: IO[bytes]) -> None:
    """Ensure the lock file has at least 1 byte so region locks work on Windows."""
    try:
        f.seek(0, os.SEEK_END)
        if f.tell() <= 0:
            f.write(b"\0")
            f.flush()
        f.seek(0)
    except Exception:
        # Best-effort: even if this fails, locking may still work depending on platform.
        pass


def _lock_posix(fd: int) -> None:
    import fcntl  # POSIX only

    fcntl.flock(fd, fcntl.LOCK_EX)


def _unlock_posix(fd: int) -> None:
    import fcntl  # POSIX only

    fcntl.flock(fd, fcntl.LOCK_UN)


def _lock_windows(fd: int) -> None:
    import msvcrt  # Windows only

    msvcrt.locking(fd, msvcrt.LK_LOCK, 1)


def _unlock_windows(fd: int) -> None:
    import msvcrt  # Windows only

    msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)


def acquire_lockfile(path: Path) -> IO[bytes]:
    """Open + flock a guard file (blocking). Keep the handle open to hold it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    f = path.open("r+b") if path.exists() else path.open("w+b")
    _ensure_lock_region(f)
    try:
        if os.name == "nt":
            _lock_windows(f.fileno())
        else:
            _lock_posix(f.fileno())
    except Exception:
        try:
            f.close()
        except Exception:
            pass
        raise
    return f


def release_lockfile(f: IO[bytes]) -> None:
    """Release a guard acquired via acquire_lockfile (best-effort)."""
    try:
        if os.name == "nt":
            _unlock_windows(f.fileno())
        else:
            _unlock_posix(f.fileno())
    except Exception:
        pass
    try:
        f.close()
    except Exception:
        pass


@contextmanager
def _guard(path: Path) -> Iterator[None]:
    f = acquire_lockfile(path.with_name(path.name + ".guard"))
    try:
        yield
    finally:
        release_lockfile(f)


@dataclass
class LockHandle:
    path: Path
    owner: LockOwner


def _new_owner() -> LockOwner:
    return LockOwner(pid=os.getpid(), host=socket.gethostname(), token=uuid.uuid4().hex, acquired_at=utc_now_iso())


def _inspect(path: Path) -> Tuple[bool, Optional[LockOwner]]:
    """(exists, owner). owner is None when the file is unreadable or malformed."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return False, None
    except OSError:
        return True, None
    try:
        return True, LockOwner.model_validate(json.loads(raw))
    except Exception:
        return True, None


def _mtime_age(path: Path) -> Optional[float]:
    try:
        return time.time() - path.stat().st_mtime
    except OSError:
        return None


def is_stale(path: Path, owner: Optional[LockOwner], *, stale_after_s: float) -> bool:
    if owner is None:
        age = _mtime_age(path)
        return age is not None and age > stale_after_s
    if owner.host == socket.gethostname() and not pid_alive(owner.pid):
        return True
    age = age_seconds(owner.acquired_at)
    if age is None:
        age = _mtime_age(path)
    return age is not None and age > stale_after_s


def _try_create(path: Path, owner: LockOwner) -> bool:
    payload = json.dumps(owner.model_dump(), ensure_ascii=False) + "\n"
    fd, tmp = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        try:
            os.link(tmp, path)
            return True
        except FileExistsError:
            return False
        except OSError as e:
            if e.errno not in _NO_LINK_ERRNOS:
                raise
        # No hard links on this filesystem: fall back to O_EXCL.
        try:
            xfd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(xfd, "w", encoding="utf-8") as f:
            f.write(payload)
        return True
    finally:
        try:
            os.unlink(tmp)
        except OSError:
            pass


def _same_owner(a: Optional[LockOwner], b: Optional[LockOwner]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a.token == b.token


def _reclaim(path: Path, seen: Optional[LockOwner], *, stale_after_s: float) -> bool:
    with _guard(path):
        exists, current = _inspect(path)
        if not exists:
            return True
        if not _same_owner(seen, current):
            return False
        if not is_stale(path, current, stale_after_s=stale_after_s):
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            pass
    holder = f"pid={current.pid} host={current.host}" if current is not None else "unreadable owner"
    logger.info("reclaimed stale lock %s (%s)", path, holder)
    return True


def acquire_lock(
    path: Path,
    *,
    timeout_s: float = 10.0,
    stale_after_s: float = 120.0,
    poll_s: float = 0.05,
    max_poll_s: float = 0.5,
) -> LockHandle:
    """Acquire `path` with exponential backoff; raise LockUnavailableError on timeout."""
    path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + max(0.0, timeout_s)
    delay = max(0.001, poll_s)
    while True:
        owner = _new_owner()
        if _try_create(path, owner):
            return LockHandle(path=path, owner=owner)
        exists, current = _inspect(path)
        if not exists:
            retry = True
        elif is_stale(path, current, stale_after_s=stale_after_s):
            retry = _reclaim(path, current, stale_after_s=stale_after_s)
        else:
            retry = False
        remaining = deadline - time.monotonic()
        if retry and remaining > 0:
            continue
        if remaining <= 0:
            if retry and _try_create(path, owner):
                return LockHandle(path=path, owner=owner)
            holder = f"pid {current.pid}" if current is not None else "unknown owner"
            raise LockUnavailableError(f"lock busy: {path} (held by {holder})")
        time.sleep(min(delay, remaining))
        delay = min(delay * 2, max(max_poll_s, poll_s))


def release_lock(handle: LockHandle) -> None:
    """Remove the lock if we still own it (best-effort)."""
    try:
        with _guard(handle.path):
            exists, current = _inspect(handle.path)
            if exists and current is not None and current.token == handle.owner.token:
                handle.path.unlink()
            elif exists:
                logger.debug("lock %s no longer ours; leaving it", handle.path)
    except FileNotFoundError:
        pass
    except Exception as e:
        logger.warning("failed to release lock %s: %s", handle.path, e)


@contextmanager
def best_effort_lock(
    path: Path,
    *,
    timeout_s: float = 10.0,
    stale_after_s: float = 120.0,
    poll_s: float = 0.05,
    max_poll_s: float = 0.5,
) -> Iterator[Optional[LockHandle]]:
    """Hold `path` for the block; on timeout log a warning and yield None."""
    handle: Optional[LockHandle]
    try:
        handle = acquire_lock(path, timeout_s=timeout_s, stale_after_s=stale_after_s, poll_s=poll_s, max_poll_s=max_poll_s)
    except LockUnavailableError as e:
        logger.warning("continuing without lock after %.1fs: %s", timeout_s, e)
        handle = None
    try:
        yield handle
    finally:
        if handle is not None:
            release_lock(handle)
