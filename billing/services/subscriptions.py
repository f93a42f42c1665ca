"""
SubscriptionManager and PlanCatalog.

SubscriptionManager:
- activate(): supersedes the customer's current active subscription (-> expired) and
  creates the new active one in the same unit of work, then resets the token balance
  to the plan's allotment.
- renew(): at or after period end, advance one billing cycle and replenish tokens
  (auto_renew), or expire the subscription (no auto_renew).

IMPORTANT:
- "At most one active subscription per customer" is guaranteed by a partial unique
  index. Two concurrent activations for one customer cannot both commit: the loser
  fails Conflict.
- The billing cycle length is BILLING_CYCLE_DAYS.

PlanCatalog:
- Admin-only. A plan referenced by an active subscription cannot be edited; retire it
  (is_active=False) and create a new one instead.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app

from ..audit import log_action, serialize_model
from ..errors import Conflict, ValidationError
from ..events import (
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_RENEWED,
    record_event,
)
from ..extensions import db
from ..models import (
    Plan,
    Role,
    Subscription,
    SubscriptionStatus,
    User,
    can_transition,
    clean_text,
    validate_amount,
)
from ..security import SYSTEM_ACTOR, require
from ..utils import utcnow
from .base import get_or_404, unit_of_work
from .tokens import TokenBalanceLedger

logger = logging.getLogger(__name__)


def _cycle() -> timedelta:
    return timedelta(days=int(current_app.config.get("BILLING_CYCLE_DAYS", 30)))


class SubscriptionManager:

    # =========================================================================
    # READS
    # =========================================================================

    @classmethod
    def get(cls, subscription_id: int) -> Subscription:
        return get_or_404(Subscription, subscription_id, label="Subscription")

    @classmethod
    def get_for_actor(cls, subscription_id: int, *, actor: Any) -> Subscription:
        subscription = cls.get(subscription_id)
        require(actor, "view_subscription", owner_id=subscription.customer_id)
        return subscription

    @classmethod
    def active_for_customer(cls, customer_id: int) -> Optional[Subscription]:
        return Subscription.query.filter(
            Subscription.customer_id == customer_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        ).first()

    @classmethod
    def list_for_customer(cls, customer_id: int) -> List[Subscription]:
        return (
            Subscription.query.filter_by(customer_id=customer_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .all()
        )

    # =========================================================================
    # ACTIVATION
    # =========================================================================

    @classmethod
    def _stage_expire(cls, subscription: Subscription, *, actor: Any, now: datetime, reason: str) -> None:
        if not can_transition(subscription.status, SubscriptionStatus.EXPIRED):
            raise Conflict(f"Subscription {subscription.id} is already {subscription.status.value}.")

        before = serialize_model(subscription)
        subscription.status = SubscriptionStatus.EXPIRED
        subscription.ended_at = now
        db.session.flush()
        log_action(subscription, "EXPIRE", actor=actor, before=before, after=serialize_model(subscription))
        record_event(
            SUBSCRIPTION_EXPIRED,
            subscription,
            subscription.status,
            customer_id=subscription.customer_id,
            plan_id=subscription.plan_id,
            reason=reason,
        )

    @classmethod
    def activate(
        cls,
        customer_id: int,
        plan_id: int,
        *,
        actor: Any,
        auto_renew: bool = True,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Start a subscription on `plan_id` for `customer_id`.

        An existing active subscription is expired first, in the same transaction.
        """
        require(actor, "activate_subscription", owner_id=customer_id)

        customer = get_or_404(User, customer_id, label="Customer")
        if customer.role != Role.CUSTOMER:
            raise ValidationError(f"User {customer_id} is not a customer.")

        plan = get_or_404(Plan, plan_id, label="Plan")
        if not plan.is_active:
            raise ValidationError(f"Plan '{plan.name}' is retired.")

        now = now or utcnow()
        with unit_of_work("activate subscription"):
            previous = cls.active_for_customer(customer_id)
            if previous is not None:
                cls._stage_expire(previous, actor=actor, now=now, reason="superseded")

            subscription = Subscription(
                customer_id=customer_id,
                plan_id=plan.id,
                status=SubscriptionStatus.ACTIVE,
                current_period_start=now,
                current_period_end=now + _cycle(),
                auto_renew=bool(auto_renew),
                created_at=now,
            )
            db.session.add(subscription)
            db.session.flush()
            log_action(subscription, "ACTIVATE", actor=actor, after=serialize_model(subscription))

            TokenBalanceLedger.stage_replenish(subscription.id, plan.token_amount, actor=actor)
            record_event(
                SUBSCRIPTION_ACTIVATED,
                subscription,
                subscription.status,
                customer_id=customer_id,
                plan_id=plan.id,
                superseded_id=previous.id if previous is not None else None,
            )

        logger.info(
            "Subscription %s active for customer %s on plan %s%s",
            subscription.id, customer_id, plan.name,
            f" (superseded {previous.id})" if previous is not None else "",
        )
        return subscription

    # =========================================================================
    # RENEWAL
    # =========================================================================

    @classmethod
    def _stage_renew(cls, subscription: Subscription, *, actor: Any, now: datetime) -> None:
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise Conflict(f"Subscription {subscription.id} is {subscription.status.value}, not active.")
        if now < subscription.current_period_end:
            raise Conflict(
                f"Subscription {subscription.id} is not due for renewal until "
                f"{subscription.current_period_end.isoformat()}."
            )

        if not subscription.auto_renew:
            cls._stage_expire(subscription, actor=actor, now=now, reason="not_renewed")
            return

        before = serialize_model(subscription)
        cycle = _cycle()
        start = subscription.current_period_end
        end = start + cycle
        # A subscription that missed several cycles lands on the period containing `now`.
        while end <= now:
            start, end = end, end + cycle
        subscription.current_period_start = start
        subscription.current_period_end = end
        db.session.flush()
        log_action(subscription, "RENEW", actor=actor, before=before, after=serialize_model(subscription))

        TokenBalanceLedger.stage_replenish(subscription.id, subscription.plan.token_amount, actor=actor)
        record_event(
            SUBSCRIPTION_RENEWED,
            subscription,
            subscription.status,
            current_period_start=start.isoformat(),
            current_period_end=end.isoformat(),
            token_amount=subscription.plan.token_amount,
        )

    @classmethod
    def renew(cls, subscription_id: int, *, actor: Any = SYSTEM_ACTOR, now: Optional[datetime] = None) -> Subscription:
        """
        Renew a due subscription.

        Fails Conflict if it is not active or its period has not ended yet.
        """
        require(actor, "renew_subscription")
        subscription = cls.get(subscription_id)
        now = now or utcnow()

        with unit_of_work("renew subscription"):
            cls._stage_renew(subscription, actor=actor, now=now)

        logger.info("Subscription %s renewal processed -> %s", subscription.id, subscription.status.value)
        return subscription

    @classmethod
    def renewal_sweep(cls, now: Optional[datetime] = None, *, actor: Any = SYSTEM_ACTOR) -> int:
        """Renew (or expire) every active subscription whose period has ended. Skips conflicts."""
        require(actor, "run_sweeps")
        now = now or utcnow()

        candidate_ids = [
            row.id
            for row in Subscription.query.with_entities(Subscription.id)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.current_period_end <= now,
            )
            .order_by(Subscription.id.asc())
            .all()
        ]
        db.session.rollback()

        processed = 0
        for subscription_id in candidate_ids:
            try:
                with unit_of_work("renewal sweep"):
                    subscription = db.session.get(Subscription, subscription_id)
                    if (
                        subscription is None
                        or subscription.status != SubscriptionStatus.ACTIVE
                        or now < subscription.current_period_end
                    ):
                        continue
                    cls._stage_renew(subscription, actor=actor, now=now)
                processed += 1
            except Conflict:
                logger.warning("Renewal sweep skipped subscription %s (concurrent update)", subscription_id)

        logger.info("Renewal sweep: %d subscription(s) processed", processed)
        return processed


class PlanCatalog:

    @classmethod
    def list_active_plans(cls) -> List[Plan]:
        return Plan.query.filter_by(is_active=True).order_by(Plan.price.asc(), Plan.name.asc()).all()

    @classmethod
    def _clean(cls, data: Dict[str, Any], *, partial: bool) -> Dict[str, Any]:
        cleaned: Dict[str, Any] = {}
        if "name" in data or not partial:
            name = clean_text(data.get("name"), "name")
            if not name:
                raise ValidationError("Plan name is required.")
            cleaned["name"] = name[:120]
        if "description" in data:
            cleaned["description"] = clean_text(data.get("description"), "description") or None
        if "price" in data or not partial:
            cleaned["price"] = validate_amount(data.get("price"), "price")
        if "token_amount" in data or not partial:
            cleaned["token_amount"] = validate_amount(data.get("token_amount"), "token_amount")
        return cleaned

    @classmethod
    def create_plan(cls, data: Dict[str, Any], *, actor: Any) -> Plan:
        require(actor, "manage_plans")
        cleaned = cls._clean(data, partial=False)
        if Plan.query.filter_by(name=cleaned["name"]).first():
            raise Conflict(f"A plan named '{cleaned['name']}' already exists.")

        with unit_of_work("create plan"):
            plan = Plan(is_active=True, **cleaned)
            db.session.add(plan)
            db.session.flush()
            log_action(plan, "CREATE", actor=actor, after=serialize_model(plan))
        return plan

    @classmethod
    def update_plan(cls, plan_id: int, data: Dict[str, Any], *, actor: Any) -> Plan:
        """Edit a plan. Refused with Conflict while any active subscription uses it."""
        require(actor, "manage_plans")
        plan = get_or_404(Plan, plan_id, label="Plan")

        in_use = Subscription.query.filter(
            Subscription.plan_id == plan.id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        ).count()
        if in_use:
            raise Conflict(
                f"Plan '{plan.name}' has {in_use} active subscription(s); retire it and create a new plan.",
                details={"active_subscriptions": in_use},
            )

        cleaned = cls._clean(data, partial=True)
        with unit_of_work("update plan"):
            before = serialize_model(plan)
            for key, value in cleaned.items():
                setattr(plan, key, value)
            db.session.flush()
            log_action(plan, "UPDATE", actor=actor, before=before, after=serialize_model(plan))
        return plan

    @classmethod
    def retire_plan(cls, plan_id: int, *, actor: Any) -> Plan:
        """Hide a plan from new activations. Existing subscriptions keep it."""
        require(actor, "manage_plans")
        plan = get_or_404(Plan, plan_id, label="Plan")
        if not plan.is_active:
            return plan

        with unit_of_work("retire plan"):
            before = serialize_model(plan)
            plan.is_active = False
            db.session.flush()
            log_action(plan, "RETIRE", actor=actor, before=before, after=serialize_model(plan))
        return plan
