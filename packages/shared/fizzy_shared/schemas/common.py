from enum import Enum
from typing import Optional

class EventAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    PUBLISHED = "published"
    CLOSED = "closed"
    REOPENED = "reopened"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    MOVED = "moved"
    COMMENTED = "commented"

class ActorType(str, Enum):
    USER = "user"
    SYSTEM = "system"

class Role(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"
    SYSTEM = "system"

class CardStatus(str, Enum):
    DRAFTED = "drafted"
    PUBLISHED = "published"

class TaskKind(str, Enum):
    GENERATE_NOTIFICATIONS = "notifications.generate"
    RELAY_WEBHOOKS = "webhooks.relay"
    DELIVER_WEBHOOK = "webhooks.deliver"
    BROADCAST = "broadcasts.dispatch"

class TaskStatus(str, Enum):
    PENDING = "pending"
    ENQUEUED = "enqueued"
    COMPLETED = "completed"
    DEAD = "dead"

# Rows in these states are never picked up again
TERMINAL_TASK_STATUSES = {TaskStatus.COMPLETED.value, TaskStatus.DEAD.value}

class DeliveryState(str, Enum):
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    FAILED = "failed"

class InstructionType(str, Enum):
    REFRESH = "refresh"
    REPLACE = "replace"
    PREPEND = "prepend"
    REMOVE = "remove"

# Choices offered for a board's auto-close period, in days (None = never)
AUTO_CLOSE_PERIOD_OPTIONS: list[Optional[int]] = [30, 60, 90, 180, 365, None]
