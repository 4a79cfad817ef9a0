"""Stage discovery.

A stage is available for a command iff `wrappers.d/<stage>/<command>` is an
executable file. Descriptors are rebuilt on every call; stage installation can
change between runs, so nothing is cached.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ..util.fs import is_executable_file


class Availability(str, Enum):
    AVAILABLE = "available"
    ABSENT = "absent"
    DISABLED = "disabled"


@dataclass(frozen=True)
class StageDescriptor:
    name: str
    order: int
    executable_path: Optional[Path]
    disabled: bool = False

    @property
    def availability(self) -> Availability:
        if self.disabled:
            return Availability.DISABLED
        if self.executable_path is None:
            return Availability.ABSENT
        return Availability.AVAILABLE

    @property
    def available(self) -> bool:
        return self.availability is Availability.AVAILABLE


class StageRegistry:
    def __init__(self, order: Sequence[str], wrappers_dir: Path, *, disabled: Iterable[str] = ()) -> None:
        self.order: List[str] = list(order)
        self.wrappers_dir = wrappers_dir
        self.disabled = frozenset(disabled)

    def __len__(self) -> int:
        return len(self.order)

    def executable_for(self, name: str, command: str) -> Optional[Path]:
        if not command or "/" in command or "\\" in command:
            return None
        candidate = self.wrappers_dir / name / command
        return candidate if is_executable_file(candidate) else None

    def descriptor(self, name: str, command: str) -> StageDescriptor:
        try:
            order = self.order.index(name)
        except ValueError:
            order = -1
        return StageDescriptor(
            name=name,
            order=order,
            executable_path=self.executable_for(name, command),
            disabled=name in self.disabled,
        )

    def descriptors(self, command: str) -> List[StageDescriptor]:
        return [self.descriptor(name, command) for name in self.order]

    def available(self, command: str) -> List[StageDescriptor]:
        return [d for d in self.descriptors(command) if d.available]
