from __future__ import annotations

import os
import signal
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Sequence

from ..errors import ServiceStartError
from ..util.process import best_effort_killpg, leads_own_group, pid_alive


class HelperProcess(Protocol):
    pid: int

    def poll(self) -> Optional[int]: ...


def render_command(template: Sequence[str], **values: object) -> List[str]:
    try:
        return [str(part).format(**values) for part in template]
    except (KeyError, IndexError, ValueError) as e:
        raise ServiceStartError(f"bad command template {list(template)!r}: {e}") from e


def spawn_detached(cmd: Sequence[str], *, cwd: Path, env: Mapping[str, str], log_path: Path) -> subprocess.Popen:
    """Start `cmd` in its own session so it outlives the invoking command.

    Terminal signals sent to the caller's process group never reach it.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_f = log_path.open("a", encoding="utf-8")
    kwargs: Dict[str, object] = {}
    if os.name == "nt":
        kwargs["creationflags"] = getattr(subprocess, "DETACHED_PROCESS", 0) | getattr(
            subprocess, "CREATE_NEW_PROCESS_GROUP", 0
        )
    else:
        kwargs["start_new_session"] = True
    try:
        return subprocess.Popen(
            list(cmd),
            stdout=log_f,
            stderr=log_f,
            stdin=subprocess.DEVNULL,
            env=dict(env),
            cwd=str(cwd),
            close_fds=True,
            **kwargs,  # type: ignore[arg-type]
        )
    except OSError as e:
        raise ServiceStartError(f"cannot start {cmd[0] if cmd else '(empty command)'}: {e}") from e
    finally:
        log_f.close()


def terminate_helper(pid: int) -> None:
    """Stop a helper we started; never touches our own process or group."""
    if pid <= 0 or pid == os.getpid() or not pid_alive(pid):
        return
    if os.name != "nt":
        try:
            if os.getpgid(pid) == os.getpgid(0):
                return
        except Exception:
            return
        if not leads_own_group(pid):
            return
    best_effort_killpg(pid, signal.SIGTERM)
