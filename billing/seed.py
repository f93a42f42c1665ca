"""
billing/seed.py

Seed the default plan catalog.

Rules:
- Safe to run multiple times (idempotent, matched by plan name).
- Existing plans are not edited here: a plan with active subscribers is immutable
  (see PlanCatalog.update_plan). Missing plans are created.
"""

from __future__ import annotations

from .audit import log_action, serialize_model
from .extensions import db
from .models import Plan
from .security import SYSTEM_ACTOR


DEFAULT_PLANS = [
    # name, description, price (cents), tokens per period
    ("Starter", "Entry plan for small teams.", 1900, 1000),
    ("Professional", "Higher allotment for growing teams.", 4900, 5000),
    ("Enterprise", "Large allotment with priority support.", 19900, 25000),
]


def seed_default_plans() -> int:
    """Create DEFAULT_PLANS rows that don't exist yet. Returns the number created."""
    created = 0
    for name, description, price, tokens in DEFAULT_PLANS:
        if Plan.query.filter_by(name=name).first():
            continue

        plan = Plan(name=name, description=description, price=price, token_amount=tokens, is_active=True)
        db.session.add(plan)
        db.session.flush()
        log_action(plan, "CREATE", actor=SYSTEM_ACTOR, after=serialize_model(plan))
        created += 1

    db.session.commit()
    return created
