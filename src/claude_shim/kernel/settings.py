"""Global settings for the shim pipeline.

Settings are stored in <home>/settings.yaml and include:
- stage_order: configured stage sequence (position = pipeline index)
- bypass_flag / bypass_stages: the control flag and the stages it keeps
- disabled_stages: installed stages that should not run (opt-out)
- lock / services: ServiceSupervisor tuning
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml  # type: ignore
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..paths import default_paths
from ..util.fs import atomic_write_text

logger = logging.getLogger("claude_shim.settings")

DEFAULT_STAGE_ORDER: List[str] = ["ccr", "serena"]

SERENA_COMMAND: List[str] = [
    "uvx",
    "--from",
    "git+https://github.com/oraios/serena",
    "serena",
    "start-mcp-server",
    "--context",
    "ide-assistant",
    "--project",
    "{project_root}",
    "--transport",
    "sse",
    "--host",
    "{host}",
    "--port",
    "{port}",
]


class LockSettings(BaseModel):
    timeout_s: float = Field(default=10.0, ge=0)
    stale_after_s: float = Field(default=120.0, gt=0)
    poll_s: float = Field(default=0.05, gt=0)
    max_poll_s: float = Field(default=0.5, gt=0)

    model_config = ConfigDict(extra="ignore")


class ServiceSettings(BaseModel):
    """How to start and probe one per-project background helper.

    `command` items are formatted with {port}, {host}, {project_root} and
    {project_key}.
    """
    command: List[str] = Field(default_factory=list)
    host: str = "127.0.0.1"
    port_min: int = Field(default=9121, ge=1, le=65535)
    port_max: int = Field(default=9220, ge=1, le=65535)
    probe_timeout_s: float = Field(default=0.25, gt=0)
    start_timeout_s: float = Field(default=20.0, gt=0)
    poll_interval_s: float = Field(default=0.25, gt=0)
    mcp_url: str = "http://{host}:{port}/sse"
    mcp_transport: str = "sse"
    inject_mcp_config: bool = True

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="after")
    def _check_range(self) -> "ServiceSettings":
        if self.port_max < self.port_min:
            raise ValueError(f"port_max ({self.port_max}) < port_min ({self.port_min})")
        return self


def _default_services() -> Dict[str, ServiceSettings]:
    return {"serena": ServiceSettings(command=list(SERENA_COMMAND))}


class ShimSettings(BaseModel):
    v: int = 1
    stage_order: List[str] = Field(default_factory=lambda: list(DEFAULT_STAGE_ORDER))
    bypass_flag: str = "--native"
    bypass_stages: List[str] = Field(default_factory=lambda: ["serena"])
    disabled_stages: List[str] = Field(default_factory=list)
    summary: bool = True
    log_level: str = "INFO"
    lock: LockSettings = Field(default_factory=LockSettings)
    services: Dict[str, ServiceSettings] = Field(default_factory=_default_services)

    model_config = ConfigDict(extra="ignore")

    @field_validator("stage_order", "bypass_stages", "disabled_stages")
    @classmethod
    def _clean_names(cls, v: List[str]) -> List[str]:
        out: List[str] = []
        for name in v:
            s = str(name or "").strip()
            if not s or "/" in s or s in (".", ".."):
                raise ValueError(f"invalid stage name: {name!r}")
            if s not in out:
                out.append(s)
        return out

    @field_validator("bypass_flag")
    @classmethod
    def _check_flag(cls, v: str) -> str:
        s = str(v or "").strip()
        if not s.startswith("-"):
            raise ValueError(f"bypass_flag must look like a flag: {v!r}")
        return s

    def service(self, name: str) -> ServiceSettings:
        svc = self.services.get(name)
        if svc is None:
            return ServiceSettings()
        return svc


def _settings_path(home: Optional[Path] = None) -> Path:
    if home is not None:
        return home / "settings.yaml"
    return default_paths().settings_path


def load_settings_doc(home: Optional[Path] = None) -> Dict[str, Any]:
    """Load the raw settings mapping; missing or unparsable files read as {}."""
    p = _settings_path(home)
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except Exception as e:
        logger.warning("ignoring unreadable settings file %s: %s", p, e)
        return {}
    if not isinstance(doc, dict):
        logger.warning("ignoring settings file %s: top level is not a mapping", p)
        return {}
    return doc


def load_settings(home: Optional[Path] = None) -> ShimSettings:
    """Load and validate settings; invalid content falls back to defaults."""
    doc = load_settings_doc(home)
    try:
        settings = ShimSettings.model_validate(doc)
    except ValidationError as e:
        logger.warning("invalid settings, using defaults: %s", e.errors()[0].get("msg", str(e)) if e.errors() else e)
        settings = ShimSettings()
    env_level = os.environ.get("CLAUDE_SHIM_LOG_LEVEL", "").strip()
    if env_level:
        settings = settings.model_copy(update={"log_level": env_level})
    return settings


def save_settings(settings: ShimSettings, home: Optional[Path] = None) -> Path:
    p = _settings_path(home)
    p.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_text(p, yaml.safe_dump(settings.model_dump(), allow_unicode=True, sort_keys=False))
    return p
