"""
Post-commit notification fan-out.

Engines collect events in an ``Outbox`` while they mutate state and hand
the outbox to a ``Notifier`` only after the authoritative change has been
committed. Delivery is best-effort: a failing sink is logged and never
propagates into the core operation.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

BID_ACCEPTED = "bid_accepted"
OUTBID = "outbid"
AUCTION_ENDED = "auction_ended"
BALANCE_UPDATED = "balance_updated"


@dataclass
class NotificationEvent:
    kind: str
    account_id: Optional[int]
    auction_id: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


class Outbox:
    """Events buffered during one unit of work."""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    def add(self, kind: str, account_id: Optional[int], auction_id: Optional[int] = None, **payload):
        self.events.append(NotificationEvent(kind, account_id, auction_id, payload))

    def extend(self, other: "Outbox"):
        self.events.extend(other.events)

    def clear(self):
        self.events = []

    def __len__(self):
        return len(self.events)


class NotificationSink:
    """Transport for notifications (socket room, email, ...)."""

    def send(self, event: NotificationEvent):
        raise NotImplementedError


class LoggingNotificationSink(NotificationSink):
    """Default sink: records what would have been delivered."""

    def send(self, event: NotificationEvent):
        logger.info(
            f"Notification {event.kind} -> account {event.account_id} "
            f"(auction {event.auction_id}): {event.payload}"
        )


class Notifier:
    def __init__(self, sink: Optional[NotificationSink] = None):
        self.sink = sink or LoggingNotificationSink()

    def publish(self, outbox: Outbox) -> int:
        """Deliver every buffered event; returns how many were delivered."""
        delivered = 0
        for event in outbox.events:
            try:
                self.sink.send(event)
                delivered += 1
            except Exception as e:
                logger.warning(f"Notification {event.kind} for account {event.account_id} failed: {e}")
        outbox.clear()
        return delivered
