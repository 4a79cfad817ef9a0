from __future__ import annotations

from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.conv import coerce_bool, coerce_int

# Process-boundary protocol between interceptor, dispatcher and stages.
ENV_STAGE = "CLAUDE_PIPELINE_STAGE"
ENV_BYPASS = "CLAUDE_PIPELINE_BYPASS"
ENV_REAL_BINARY = "CLAUDE_REAL_BINARY"

# Removed before the real binary runs so nested invocations start fresh.
PIPELINE_POSITION_KEYS = (ENV_STAGE, ENV_BYPASS)


class Invocation(BaseModel):
    v: int = 1
    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid", frozen=True)


class PipelineContext(BaseModel):
    """Pipeline position as inherited through the environment.

    `top_level` is True when no stage index was inherited, i.e. this is the
    first dispatcher of a user invocation.
    """

    v: int = 1
    stage_index: int = Field(default=0, ge=0)
    bypass: bool = False
    real_binary: str = ""
    top_level: bool = True

    model_config = ConfigDict(extra="forbid", frozen=True)

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "PipelineContext":
        raw: Optional[str] = env.get(ENV_STAGE)
        idx = coerce_int(raw, default=0)
        return cls(
            stage_index=max(0, idx),
            bypass=coerce_bool(env.get(ENV_BYPASS), default=False),
            real_binary=str(env.get(ENV_REAL_BINARY) or "").strip(),
            top_level=raw is None or not str(raw).strip(),
        )

    def to_env(self, base: Mapping[str, str]) -> Dict[str, str]:
        env = dict(base)
        env[ENV_STAGE] = str(self.stage_index)
        if self.bypass:
            env[ENV_BYPASS] = "1"
        else:
            env.pop(ENV_BYPASS, None)
        if self.real_binary:
            env[ENV_REAL_BINARY] = self.real_binary
        return env


def strip_pipeline_position(env: Mapping[str, str]) -> Dict[str, str]:
    out = dict(env)
    for k in PIPELINE_POSITION_KEYS:
        out.pop(k, None)
    return out
