from __future__ import annotations

import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Mapping, NoReturn, Sequence, Union


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        try:
            p = subprocess.run(
                ["tasklist", "/FI", f"PID eq {int(pid)}", "/NH"],
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                check=False,
            )
        except Exception:
            return False
        return str(int(pid)) in (p.stdout or "")
    try:
        os.kill(pid, 0)
        return True
    except PermissionError:
        # Exists but owned by someone else.
        return True
    except Exception:
        return False


def leads_own_group(pid: int) -> bool:
    """True if pid is a session/group leader, i.e. something we spawned detached."""
    if pid <= 0 or os.name == "nt":
        return False
    try:
        return os.getpgid(pid) == pid
    except Exception:
        return False


def best_effort_killpg(pid: int, sig: signal.Signals = signal.SIGTERM) -> None:
    if pid <= 0:
        return
    if os.name == "nt":
        try:
            os.kill(pid, signal.SIGTERM)
        except Exception:
            pass
        return
    try:
        os.killpg(pid, sig)
    except Exception:
        try:
            os.kill(pid, sig)
        except Exception:
            pass


def exec_replace(path: Union[str, Path], argv: Sequence[str], env: Mapping[str, str]) -> NoReturn:
    """Replace the current process with `path`.

    Exit status and standard streams belong to the new image. Windows has no
    real exec, so the child runs to completion and its exit code is ours.
    """
    sys.stdout.flush()
    sys.stderr.flush()
    if os.name == "nt":
        p = subprocess.run([str(path), *list(argv)[1:]], env=dict(env), check=False)
        raise SystemExit(int(p.returncode))
    os.execve(str(path), list(argv), dict(env))
