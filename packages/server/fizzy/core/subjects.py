"""
Event subjects: tagged references plus the capability interfaces the fan-out
subsystem depends on.

An event's subject can be any registered entity type. It is stored as a
(subject_type, subject_id) pair and resolved through a lookup table of
registered classes. Notification, webhook and broadcast code only ever talks
to the protocols below, never to a concrete model.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from sqlalchemy.ext.asyncio import AsyncSession

from fizzy.core.errors import ValidationError


@dataclass(frozen=True)
class SubjectRef:
    type: str
    id: uuid.UUID


@runtime_checkable
class EventSource(Protocol):
    """Anything events can be recorded about."""

    id: uuid.UUID
    account_id: uuid.UUID

    def subject_ref(self) -> SubjectRef: ...

    def snapshot(self) -> dict[str, Any]: ...


@runtime_checkable
class Watchable(Protocol):
    async def watcher_ids(self, session: AsyncSession) -> set[uuid.UUID]: ...


@runtime_checkable
class Assignable(Protocol):
    async def assignee_ids(self, session: AsyncSession) -> set[uuid.UUID]: ...


@runtime_checkable
class Broadcastable(Protocol):
    def broadcast_stream(self) -> tuple[str, ...]: ...

    def dom_id(self) -> str: ...


_SUBJECT_TYPES: dict[str, type] = {}


def register_subject(cls: type) -> type:
    """Class decorator adding a model to the subject lookup table."""
    _SUBJECT_TYPES[cls.SUBJECT_TYPE] = cls
    return cls


def subject_class(subject_type: str) -> type:
    try:
        return _SUBJECT_TYPES[subject_type]
    except KeyError:
        raise ValidationError(f"Unknown subject type: {subject_type}") from None


async def resolve_subject(session: AsyncSession, ref: SubjectRef) -> Optional[EventSource]:
    """Load the current state of a subject, or None if it no longer exists."""
    return await session.get(subject_class(ref.type), ref.id)
