"""
billing/events.py

Domain events for external consumers (notifications, analytics).

Flow:
1) A service calls record_event(...) inside its unit of work. This adds a DomainEvent
   outbox row to the session and queues the event in session.info.
2) After a successful commit, publish_pending_events() sends each queued event through
   its blinker signal. After a rollback, discard_pending_events() drops the queue
   (the outbox row rolled back with it).
3) replay_events(...) re-sends stored events. Delivery is therefore at-least-once:
   consumers must be idempotent on (entity_id, state).

Subscribing:

    from billing import events

    @events.signal(events.INVOICE_PAID).connect
    def on_paid(sender, event):
        ...
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from blinker import Namespace
from flask import current_app

from .extensions import db
from .models import DomainEvent

logger = logging.getLogger(__name__)

QUOTE_ACCEPTED = "QuoteAccepted"
QUOTE_REJECTED = "QuoteRejected"
QUOTE_EXPIRED = "QuoteExpired"
DISCOUNT_APPROVED = "DiscountApproved"
DISCOUNT_REJECTED = "DiscountRejected"
INVOICE_GENERATED = "InvoiceGenerated"
INVOICE_PAID = "InvoicePaid"
INVOICE_OVERDUE = "InvoiceOverdue"
BALANCE_EXHAUSTED = "BalanceExhausted"
SUBSCRIPTION_ACTIVATED = "SubscriptionActivated"
SUBSCRIPTION_RENEWED = "SubscriptionRenewed"
SUBSCRIPTION_EXPIRED = "SubscriptionExpired"

EVENT_NAMES = (
    QUOTE_ACCEPTED,
    QUOTE_REJECTED,
    QUOTE_EXPIRED,
    DISCOUNT_APPROVED,
    DISCOUNT_REJECTED,
    INVOICE_GENERATED,
    INVOICE_PAID,
    INVOICE_OVERDUE,
    BALANCE_EXHAUSTED,
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_RENEWED,
    SUBSCRIPTION_EXPIRED,
)

_signals = Namespace()
_PENDING_KEY = "billing.pending_events"


def signal(name: str):
    """Return the blinker signal for an event name."""
    if name not in EVENT_NAMES:
        raise KeyError(f"Unknown domain event: {name}")
    return _signals.signal(name)


def record_event(name: str, entity: Any, state: Any, **payload: Any) -> DomainEvent:
    """
    Add an outbox row for `entity` reaching `state` and queue it for publishing.

    The entity must already have an id (flush first for new rows).
    """
    if name not in EVENT_NAMES:
        raise KeyError(f"Unknown domain event: {name}")

    event = DomainEvent(
        name=name,
        entity_type=entity.__class__.__name__,
        entity_id=int(entity.id),
        state=str(getattr(state, "value", state)),
        payload=payload,
    )
    db.session.add(event)
    db.session.info.setdefault(_PENDING_KEY, []).append(event)
    return event


def discard_pending_events() -> None:
    db.session.info.pop(_PENDING_KEY, None)


def _send(event: DomainEvent) -> int:
    """Deliver one event to every receiver. A failing receiver does not block the others."""
    sig = _signals.signal(event.name)
    sender = current_app._get_current_object()
    data = event.to_dict()
    delivered = 0
    for receiver in sig.receivers_for(sender):
        try:
            receiver(sender, event=data)
            delivered += 1
        except Exception:
            logger.exception("Receiver %r failed for %s #%s", receiver, event.name, event.id)
    return delivered


def publish_pending_events() -> int:
    """Publish events queued in this session. Call only after a successful commit."""
    pending = db.session.info.pop(_PENDING_KEY, [])
    for event in pending:
        logger.info("Event %s %s#%s -> %s", event.name, event.entity_type, event.entity_id, event.state)
        _send(event)
    return len(pending)


def replay_events(since: Optional[datetime] = None, names: Optional[Iterable[str]] = None) -> int:
    """Re-send stored events (oldest first). Returns the number of events replayed."""
    q = DomainEvent.query
    if since is not None:
        q = q.filter(DomainEvent.occurred_at >= since)
    if names:
        q = q.filter(DomainEvent.name.in_(list(names)))

    count = 0
    for event in q.order_by(DomainEvent.occurred_at.asc(), DomainEvent.id.asc()).all():
        _send(event)
        count += 1
    logger.info("Replayed %d domain events", count)
    return count
