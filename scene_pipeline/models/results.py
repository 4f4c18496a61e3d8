"""Tagged outcome variants for calls that can be blocked or overloaded."""

from dataclasses import dataclass
from typing import Any, Union

from scene_pipeline.models.schemas import OverloadKind


@dataclass(frozen=True)
class Ok:
    value: Any


@dataclass(frozen=True)
class ContentBlocked:
    reason: str


@dataclass(frozen=True)
class Overloaded:
    kind: OverloadKind
    message: str = ""


GenerationResult = Union[Ok, ContentBlocked, Overloaded]
