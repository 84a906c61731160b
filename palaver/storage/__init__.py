"""Storage module -- durable conversation event log.

Public API: EventLog + the event schema types from schemas.py.
"""

from palaver.storage.event_log import EventLog, conversation_key
from palaver.storage.schemas import (
    ROUND_LIMIT,
    Event,
    EventKind,
    Role,
    ToolInvocation,
    ToolOutcome,
)

__all__ = [
    "EventLog",
    "conversation_key",
    "ROUND_LIMIT",
    "Event",
    "EventKind",
    "Role",
    "ToolInvocation",
    "ToolOutcome",
]
