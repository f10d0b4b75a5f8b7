"""Agent event log and delivery bridge."""

from .bridge import (
    ConfidenceAccumulator,
    DeliveredEvents,
    EventBroadcaster,
    EventStream,
    Subscription,
    SubscriptionDropped,
    to_sse,
)
from .log import EventLog, parse_cursor

__all__ = [
    "ConfidenceAccumulator",
    "DeliveredEvents",
    "EventBroadcaster",
    "EventLog",
    "EventStream",
    "Subscription",
    "SubscriptionDropped",
    "parse_cursor",
    "to_sse",
]
