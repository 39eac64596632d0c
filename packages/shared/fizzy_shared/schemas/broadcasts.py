"""Real-time view-patch instructions pushed to stream subscribers."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, model_validator

from .common import InstructionType


class Instruction(BaseModel):
    type: InstructionType
    target: Optional[str] = None
    content: Optional[str] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "Instruction":
        if self.type in (InstructionType.REPLACE, InstructionType.PREPEND):
            if not self.target or self.content is None:
                raise ValueError(f"{self.type.value} needs a target and content")
        elif self.type == InstructionType.REMOVE:
            if not self.target:
                raise ValueError("remove needs a target")
            if self.content is not None:
                raise ValueError("remove takes no content")
        elif self.target is not None or self.content is not None:
            raise ValueError("refresh takes no target or content")
        return self


def refresh() -> Instruction:
    return Instruction(type=InstructionType.REFRESH)


def replace(target: str, content: str) -> Instruction:
    return Instruction(type=InstructionType.REPLACE, target=target, content=content)


def prepend(target: str, content: str) -> Instruction:
    return Instruction(type=InstructionType.PREPEND, target=target, content=content)


def remove(target: str) -> Instruction:
    return Instruction(type=InstructionType.REMOVE, target=target)


class BroadcastMessage(BaseModel):
    """Wire shape of a broadcast frame."""
    stream_key: str
    instruction_type: InstructionType
    target: Optional[str] = None
    content: Optional[str] = None
