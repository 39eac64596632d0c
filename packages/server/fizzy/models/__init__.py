# SQLModel definitions, imported here to ensure metadata is populated for create_all.
from .base import UUIDMixin, TimestampMixin  # noqa: F401
from .account import Account  # noqa: F401
from .user import User  # noqa: F401
from .board import Board  # noqa: F401
from .assignments import CardAssignment, CardWatch  # noqa: F401
from .card import Card, Closure  # noqa: F401
from .comment import Comment  # noqa: F401
from .event import Event  # noqa: F401
from .notification import Notification  # noqa: F401
from .webhook import Webhook, WebhookDelivery  # noqa: F401
from .outbox import TaskOutbox  # noqa: F401
