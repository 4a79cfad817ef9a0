from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

DISPATCHER_NAME = "claude-dispatcher"


def shim_home() -> Path:
    env = os.environ.get("CLAUDE_SHIM_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".config" / "claude").resolve()


@dataclass(frozen=True)
class ShimPaths:
    home: Path

    @property
    def shims_dir(self) -> Path:
        return self.home / "shims"

    @property
    def libexec_dir(self) -> Path:
        return self.home / "libexec"

    @property
    def dispatcher_path(self) -> Path:
        return self.libexec_dir / DISPATCHER_NAME

    @property
    def wrappers_dir(self) -> Path:
        return self.home / "wrappers.d"

    @property
    def cache_dir(self) -> Path:
        return self.home / "cache"

    @property
    def log_path(self) -> Path:
        return self.home / "logs" / "shim.log"

    @property
    def settings_path(self) -> Path:
        return self.home / "settings.yaml"

    def stage_dir(self, stage: str) -> Path:
        return self.wrappers_dir / stage

    def service_dir(self, service: str, project_key: str) -> Path:
        return self.cache_dir / "services" / service / project_key

    def managed_dirs(self, stages: Optional[List[str]] = None) -> List[Path]:
        """Directories that host interceptors or stage executables.

        These must never take part in resolving the real binary.
        """
        dirs = [self.shims_dir, self.libexec_dir, self.wrappers_dir]
        names = set(stages or [])
        try:
            if self.wrappers_dir.is_dir():
                names.update(p.name for p in self.wrappers_dir.iterdir() if p.is_dir())
        except OSError:
            pass
        dirs.extend(self.stage_dir(n) for n in sorted(names))
        return dirs


def default_paths() -> ShimPaths:
    return ShimPaths(home=shim_home())
