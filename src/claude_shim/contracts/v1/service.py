from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso


class LockOwner(BaseModel):
    """Ownership marker stored inside a lock file."""
    v: int = 1
    pid: int
    host: str = ""
    token: str
    # None when a foreign or older writer left it out; staleness then uses the file mtime.
    acquired_at: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class ServiceRecord(BaseModel):
    """Last known healthy helper for one (service, project) pair."""
    v: int = 1
    service: str
    project_key: str
    project_root: str = ""
    host: str = "127.0.0.1"
    port: int = Field(ge=1, le=65535)
    pid: int = Field(gt=0)
    started_at: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="ignore")
