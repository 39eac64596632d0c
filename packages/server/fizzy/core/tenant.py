"""
Explicit tenant context.

There is no process-wide "current account": every EventStore, TaskQueue and
BroadcastDispatcher call receives a TenantContext, and enqueued tasks carry it
serialized in their payload.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Optional

from fizzy.core.errors import TenantMismatchError, ValidationError


@dataclass(frozen=True)
class TenantContext:
    account_id: uuid.UUID
    user_id: Optional[uuid.UUID] = None

    def check(self, account_id: uuid.UUID, what: str = "resource") -> None:
        """Raise TenantMismatchError unless `account_id` is this tenant's."""
        if account_id != self.account_id:
            raise TenantMismatchError(f"{what} does not belong to account {self.account_id}")

    def to_payload(self) -> dict[str, Any]:
        return {
            "account_id": str(self.account_id),
            "user_id": str(self.user_id) if self.user_id else None,
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "TenantContext":
        try:
            account_id = uuid.UUID(str(data["account_id"]))
            user_id = data.get("user_id")
            return cls(account_id, uuid.UUID(str(user_id)) if user_id else None)
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed tenant context: {data!r}") from exc
