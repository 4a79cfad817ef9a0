from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from ..contracts.v1 import ServiceRecord
from ..paths import ShimPaths
from ..util.fs import atomic_write_json, read_json

logger = logging.getLogger("claude_shim.services.store")


class ServiceStore:
    """Per-project state for one service under cache/services/<service>/<project_key>/."""

    def __init__(self, paths: ShimPaths, service: str) -> None:
        self.paths = paths
        self.service = service

    @property
    def root(self) -> Path:
        return self.paths.cache_dir / "services" / self.service

    def project_dir(self, project_key: str) -> Path:
        return self.paths.service_dir(self.service, project_key)

    def record_path(self, project_key: str) -> Path:
        return self.project_dir(project_key) / "record.json"

    def lock_path(self, project_key: str) -> Path:
        return self.project_dir(project_key) / "service.lock"

    def log_path(self, project_key: str) -> Path:
        return self.project_dir(project_key) / "helper.log"

    def mcp_config_path(self, project_key: str) -> Path:
        return self.project_dir(project_key) / "mcp.json"

    def read(self, project_key: str) -> Optional[ServiceRecord]:
        doc = read_json(self.record_path(project_key))
        if not doc:
            return None
        try:
            rec = ServiceRecord.model_validate(doc)
        except ValidationError:
            logger.debug("ignoring malformed record for %s", project_key, extra={"project_key": project_key})
            return None
        if rec.project_key != project_key or rec.service != self.service:
            return None
        return rec

    def write(self, record: ServiceRecord) -> None:
        atomic_write_json(self.record_path(record.project_key), record.model_dump())

    def remove(self, project_key: str) -> None:
        try:
            self.record_path(project_key).unlink()
        except FileNotFoundError:
            pass

    def list_records(self) -> List[ServiceRecord]:
        out: List[ServiceRecord] = []
        if not self.root.is_dir():
            return out
        for d in sorted(self.root.iterdir()):
            if not d.is_dir():
                continue
            rec = self.read(d.name)
            if rec is not None:
                out.append(rec)
        return out
