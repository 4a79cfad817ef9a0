from __future__ import annotations

from .pipeline import (
    ENV_BYPASS,
    ENV_REAL_BINARY,
    ENV_STAGE,
    PIPELINE_POSITION_KEYS,
    Invocation,
    PipelineContext,
    strip_pipeline_position,
)
from .service import LockOwner, ServiceRecord

__all__ = [
    "ENV_BYPASS",
    "ENV_REAL_BINARY",
    "ENV_STAGE",
    "Invocation",
    "LockOwner",
    "PIPELINE_POSITION_KEYS",
    "PipelineContext",
    "ServiceRecord",
    "strip_pipeline_position",
]
