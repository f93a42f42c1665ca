"""
TokenBalanceLedger - per-subscription token balance.

- consume(): version-gated decrement. The caller passes the version it read; the UPDATE
  is a compare-and-swap on that version, so two consumers racing on one balance can never
  both succeed. Balance never goes negative (checked here and by a CHECK constraint).
- replenish(): reset-to-allotment at period rollover. System-internal, no caller version,
  still CAS-protected against concurrent consumes by version_id_col.

Usage:
    balance = TokenBalanceLedger.get(subscription_id)
    TokenBalanceLedger.consume(subscription_id, 10, balance.version, actor=SYSTEM_ACTOR)
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from ..audit import log_action, serialize_model
from ..errors import Conflict, InsufficientBalance, NotFound, ValidationError
from ..events import BALANCE_EXHAUSTED, record_event
from ..extensions import db
from ..models import SubscriptionStatus, TokenBalance, TokenUsage, clean_text
from ..security import require
from .base import check_version, unit_of_work

logger = logging.getLogger(__name__)


class TokenBalanceLedger:

    @classmethod
    def get(cls, subscription_id: int) -> TokenBalance:
        balance = TokenBalance.query.filter_by(subscription_id=subscription_id).first()
        if balance is None:
            raise NotFound(f"No token balance for subscription {subscription_id}.")
        return balance

    @classmethod
    def consume(
        cls,
        subscription_id: int,
        amount: int,
        expected_version: int,
        *,
        actor: Any,
        description: str = "usage",
    ) -> TokenBalance:
        """
        Deduct `amount` tokens.

        Fails:
            ValidationError      amount not a positive integer
            NotFound             no balance for the subscription
            Forbidden            actor may not consume tokens
            Conflict             expected_version stale, or lost the write race
                                 subscription no longer active
            InsufficientBalance  balance - amount < 0 (also emits BalanceExhausted)
        """
        require(actor, "consume_tokens")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer.")
        description = clean_text(description, "description", 255) or "usage"

        balance = cls.get(subscription_id)
        check_version(balance, expected_version, "TokenBalance")
        if balance.subscription.status != SubscriptionStatus.ACTIVE:
            raise Conflict(
                f"Subscription {subscription_id} is {balance.subscription.status.value}; its tokens cannot be spent."
            )

        if balance.balance - amount < 0:
            available = balance.balance
            with unit_of_work("record balance exhausted"):
                record_event(
                    BALANCE_EXHAUSTED,
                    balance.subscription,
                    "exhausted",
                    subscription_id=subscription_id,
                    requested=amount,
                    available=available,
                )
            logger.info(
                "Insufficient balance on subscription %s: requested %s, available %s",
                subscription_id, amount, available,
            )
            raise InsufficientBalance(
                f"Subscription {subscription_id} has {available} tokens; {amount} requested.",
                details={"available": available, "requested": amount},
            )

        with unit_of_work("consume tokens"):
            before = serialize_model(balance)
            balance.balance = balance.balance - amount
            db.session.add(
                TokenUsage(
                    subscription_id=subscription_id,
                    amount=amount,
                    balance_after=balance.balance,
                    description=description,
                )
            )
            db.session.flush()
            log_action(balance, "CONSUME", actor=actor, before=before, after=serialize_model(balance))

        return balance

    @classmethod
    def stage_replenish(cls, subscription_id: int, amount: int, *, actor: Any) -> TokenBalance:
        """
        Reset the balance to `amount` (create the row if missing) inside the caller's unit of work.

        Used by SubscriptionManager on activation and renewal.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValidationError("replenish amount must be a non-negative integer.")

        balance = TokenBalance.query.filter_by(subscription_id=subscription_id).first()
        if balance is None:
            balance = TokenBalance(subscription_id=subscription_id, balance=amount)
            db.session.add(balance)
            db.session.flush()
            log_action(balance, "CREATE", actor=actor, after=serialize_model(balance))
            return balance

        before = serialize_model(balance)
        balance.balance = amount
        db.session.flush()
        log_action(balance, "REPLENISH", actor=actor, before=before, after=serialize_model(balance))
        return balance

    @classmethod
    def replenish(cls, subscription_id: int, amount: int, *, actor: Any) -> TokenBalance:
        """Standalone reset-to-allotment (own unit of work)."""
        require(actor, "renew_subscription")
        with unit_of_work("replenish tokens"):
            balance = cls.stage_replenish(subscription_id, amount, actor=actor)
        return balance

    @classmethod
    def usage_history(cls, subscription_id: int, limit: Optional[int] = None) -> List[TokenUsage]:
        q = TokenUsage.query.filter_by(subscription_id=subscription_id).order_by(
            TokenUsage.used_at.desc(), TokenUsage.id.desc()
        )
        if limit:
            q = q.limit(limit)
        return q.all()
