"""Real-binary resolution against a search path stripped of our own dirs."""
from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from ..errors import RealBinaryNotFound
from ..util.fs import is_executable_file


def _norm(p: str) -> str:
    return os.path.normcase(os.path.realpath(os.path.expanduser(p)))


def filtered_search_dirs(path_value: str, excluded: Sequence[Path]) -> List[str]:
    """PATH entries minus excluded dirs, empty entries and duplicates, order kept."""
    skip = {_norm(str(p)) for p in excluded}
    out: List[str] = []
    seen = set()
    for entry in (path_value or "").split(os.pathsep):
        entry = entry.strip()
        if not entry:
            continue
        key = _norm(entry)
        if key in skip or key in seen:
            continue
        seen.add(key)
        out.append(entry)
    return out


def _inside_excluded(candidate: str, excluded: Sequence[Path]) -> bool:
    parent = os.path.dirname(_norm(candidate))
    return parent in {_norm(str(p)) for p in excluded}


def which_filtered(command: str, *, env: Mapping[str, str], excluded: Sequence[Path]) -> Optional[Path]:
    """First executable `command` on the filtered PATH that does not lead back into our dirs."""
    for d in filtered_search_dirs(env.get("PATH", ""), excluded):
        found = shutil.which(command, path=d)
        if not found:
            continue
        if _inside_excluded(found, excluded):
            # e.g. a symlink in /usr/local/bin pointing at our own shim
            continue
        return Path(found).absolute()
    return None


def resolve_real_binary(
    command: str,
    *,
    env: Mapping[str, str],
    excluded: Sequence[Path],
    inherited: str = "",
) -> Path:
    """Reuse an inherited resolution when still valid, else resolve once."""
    if inherited:
        p = Path(inherited)
        if p.is_absolute() and is_executable_file(p) and not _inside_excluded(str(p), excluded):
            return p
    found = which_filtered(command, env=env, excluded=excluded)
    if found is None:
        raise RealBinaryNotFound(f"Real {command} binary not found in system PATH")
    return found
