from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _run_git(args: list[str], *, cwd: Path, timeout_s: float = 5.0) -> tuple[int, str]:
    try:
        p = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            stdin=subprocess.DEVNULL,
            text=True,
            check=False,
            timeout=timeout_s,
        )
        return int(p.returncode), (p.stdout or "").strip()
    except Exception:
        return 1, ""


def git_root(path: Path) -> Optional[Path]:
    code, out = _run_git(["rev-parse", "--show-toplevel"], cwd=path)
    if code != 0 or not out:
        return None
    try:
        return Path(out).resolve()
    except Exception:
        return None
