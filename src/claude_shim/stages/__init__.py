from __future__ import annotations

from typing import Dict

from . import ccr, serena
from .base import StageContext, StageSetup, forward, forward_to_real_binary, run_stage

BUILTIN_STAGES: Dict[str, StageSetup] = {
    "ccr": ccr.setup,
    "serena": serena.setup,
}

__all__ = [
    "BUILTIN_STAGES",
    "StageContext",
    "StageSetup",
    "forward",
    "forward_to_real_binary",
    "run_stage",
]
