from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .git import git_root


@dataclass(frozen=True)
class ProjectIdentity:
    """Which project a service instance belongs to.

    Keyed on the working tree path (not the remote), so two clones of the same
    repository get separate helpers.
    """
    root: Path
    key: str
    label: str
    vcs: str = ""


def project_key(root: Path) -> str:
    h = hashlib.sha256(str(root).encode("utf-8")).hexdigest()
    return "p_" + h[:12]


def detect_project(path: Optional[Path] = None) -> ProjectIdentity:
    p = (path or Path.cwd()).resolve()
    repo_root = git_root(p)
    root = repo_root or p
    label = root.name if root.name else "project"
    return ProjectIdentity(root=root, key=project_key(root), label=label, vcs="git" if repo_root else "")
