"""
Billing Back Office - Domain Models

Entities:
- User (actor with a role: admin / sales / customer / finance)
- Plan, Subscription, TokenBalance, TokenUsage
- Quote, DiscountRequest, Invoice
- AuditLog, DomainEvent (written in the same transaction as the change they describe)

IMPORTANT:
- All money is integer minor units (cents). Percentages are integers 0-100.
- Statuses are closed Enum types; legal transitions live next to each Enum.
- Versioned entities map `version` as SQLAlchemy version_id_col, so every UPDATE is
  a compare-and-swap on the version the session read. A lost race raises StaleDataError.
- Records are never hard-deleted.
"""

from __future__ import annotations

import enum
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from .errors import ValidationError
from .extensions import db
from .utils import utcnow, to_iso


# ---------------------------------------------------------------------
# Money helpers
# ---------------------------------------------------------------------
def round_half_up(value: Decimal) -> int:
    """Round a Decimal to a whole minor unit, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def normalize_items(items: Any) -> List[Dict[str, Any]]:
    """
    Validate line items and return them as plain dicts {name, unit_price, quantity}.

    Rules:
    - at least one item
    - name is a non-empty string
    - unit_price and quantity are integers >= 0
    """
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError("At least one line item is required.")

    normalized = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"Line item {index} must be an object.")

        name = str(item.get("name") or "").strip()
        unit_price = item.get("unit_price")
        quantity = item.get("quantity")

        if not name:
            raise ValidationError(f"Line item {index} requires a name.")
        if not _is_int(unit_price) or unit_price < 0:
            raise ValidationError(f"Line item {index}: unit_price must be a non-negative integer.")
        if not _is_int(quantity) or quantity < 0:
            raise ValidationError(f"Line item {index}: quantity must be a non-negative integer.")

        normalized.append({"name": name, "unit_price": unit_price, "quantity": quantity})
    return normalized


def validate_percent(value: Any) -> int:
    if not _is_int(value) or not 0 <= value <= 100:
        raise ValidationError("discount_percent must be an integer between 0 and 100.")
    return value


def validate_amount(value: Any, field: str) -> int:
    if not _is_int(value) or value < 0:
        raise ValidationError(f"{field} must be a non-negative integer.")
    return value


def clean_text(value: Any, field: str, max_length: Optional[int] = None) -> str:
    """Stripped string, "" for None. Anything that is not a string is a ValidationError."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string.")
    value = value.strip()
    return value[:max_length] if max_length else value


def compute_totals(items: Iterable[Dict[str, Any]], discount_percent: int, tax: int) -> Dict[str, int]:
    """
    Arithmetic shared by quotes and invoices:
      subtotal        = sum(unit_price * quantity)
      discount_amount = round_half_up(subtotal * discount_percent / 100)
      total           = subtotal - discount_amount + tax
    """
    subtotal = sum(item["unit_price"] * item["quantity"] for item in items)
    discount_amount = round_half_up(Decimal(subtotal) * Decimal(discount_percent) / Decimal(100))
    return {
        "subtotal": subtotal,
        "discount_amount": discount_amount,
        "total": subtotal - discount_amount + tax,
    }


def _enum_column(enum_cls, name: str, default):
    return db.Column(
        db.Enum(enum_cls, name=name, native_enum=False, length=20,
                values_callable=lambda members: [m.value for m in members]),
        nullable=False,
        default=default,
        index=True,
    )


# ---------------------------------------------------------------------
# Statuses and their transitions
# ---------------------------------------------------------------------
class Role(str, enum.Enum):
    ADMIN = "admin"
    SALES = "sales"
    CUSTOMER = "customer"
    FINANCE = "finance"
    SYSTEM = "system"


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"


class QuoteStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class DiscountStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class InvoiceStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


TRANSITIONS = {
    SubscriptionStatus: {
        SubscriptionStatus.PENDING: {SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED},
        SubscriptionStatus.ACTIVE: {SubscriptionStatus.EXPIRED},
        SubscriptionStatus.EXPIRED: set(),
    },
    QuoteStatus: {
        QuoteStatus.PENDING: {QuoteStatus.ACCEPTED, QuoteStatus.REJECTED, QuoteStatus.EXPIRED},
        QuoteStatus.ACCEPTED: set(),
        QuoteStatus.REJECTED: set(),
        QuoteStatus.EXPIRED: set(),
    },
    DiscountStatus: {
        DiscountStatus.PENDING: {DiscountStatus.APPROVED, DiscountStatus.REJECTED},
        DiscountStatus.APPROVED: set(),
        DiscountStatus.REJECTED: set(),
    },
    InvoiceStatus: {
        InvoiceStatus.PENDING: {InvoiceStatus.PAID, InvoiceStatus.OVERDUE},
        InvoiceStatus.OVERDUE: {InvoiceStatus.PAID},
        InvoiceStatus.PAID: set(),
    },
}


def can_transition(current: enum.Enum, target: enum.Enum) -> bool:
    return target in TRANSITIONS[type(current)][current]


def is_terminal(status: enum.Enum) -> bool:
    return not TRANSITIONS[type(status)][status]


# ---------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------
class User(UserMixin, db.Model):
    """System login user. `role` decides what the AuthorizationGate allows."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(255), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)

    role = _enum_column(Role, "user_role", Role.CUSTOMER)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    company = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "company": self.company,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.username} ({self.role.value})>"


# ---------------------------------------------------------------------
# Plans, subscriptions, tokens
# ---------------------------------------------------------------------
class Plan(db.Model):
    """Subscription plan. Price in cents; token_amount is the per-period allotment."""

    __tablename__ = "plans"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Integer, nullable=False)
    token_amount = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.CheckConstraint("price >= 0", name="ck_plans_price_non_negative"),
        db.CheckConstraint("token_amount >= 0", name="ck_plans_tokens_non_negative"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "token_amount": self.token_amount,
            "is_active": self.is_active,
        }


class Subscription(db.Model):
    """
    One customer bound to one plan for a billing period.

    The partial unique index guarantees at most one ACTIVE subscription per customer.
    """

    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)

    customer_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id = db.Column(db.Integer, db.ForeignKey("plans.id"), nullable=False, index=True)

    status = _enum_column(SubscriptionStatus, "subscription_status", SubscriptionStatus.PENDING)

    current_period_start = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True)
    auto_renew = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow)
    ended_at = db.Column(db.DateTime, nullable=True)

    version = db.Column(db.Integer, nullable=False)

    plan = db.relationship("Plan", backref=db.backref("subscriptions", lazy=True))
    customer = db.relationship("User", backref=db.backref("subscriptions", lazy=True))

    __table_args__ = (
        db.Index(
            "uq_subscriptions_one_active_per_customer",
            "customer_id",
            unique=True,
            sqlite_where=db.text("status = 'active'"),
            postgresql_where=db.text("status = 'active'"),
        ),
    )
    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "plan_id": self.plan_id,
            "status": self.status.value,
            "current_period_start": to_iso(self.current_period_start),
            "current_period_end": to_iso(self.current_period_end),
            "auto_renew": self.auto_renew,
            "version": self.version,
        }


class TokenBalance(db.Model):
    """Per-subscription token balance. Only TokenBalanceLedger mutates it."""

    __tablename__ = "token_balances"

    id = db.Column(db.Integer, primary_key=True)

    subscription_id = db.Column(
        db.Integer,
        db.ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    balance = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    version = db.Column(db.Integer, nullable=False)

    subscription = db.relationship(
        "Subscription",
        backref=db.backref("token_balance", uselist=False, lazy=True),
    )

    __table_args__ = (
        db.CheckConstraint("balance >= 0", name="ck_token_balances_non_negative"),
    )
    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "subscription_id": self.subscription_id,
            "balance": self.balance,
            "version": self.version,
        }


class TokenUsage(db.Model):
    """History of successful consumes."""

    __tablename__ = "token_usage"

    id = db.Column(db.Integer, primary_key=True)

    subscription_id = db.Column(
        db.Integer,
        db.ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255), nullable=False)
    used_at = db.Column(db.DateTime, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "amount": self.amount,
            "balance_after": self.balance_after,
            "description": self.description,
            "used_at": to_iso(self.used_at),
        }


# ---------------------------------------------------------------------
# Quotes, discounts, invoices
# ---------------------------------------------------------------------
class Quote(db.Model):
    __tablename__ = "quotes"

    id = db.Column(db.Integer, primary_key=True)

    quote_number = db.Column(db.String(40), unique=True, nullable=False, index=True)

    customer_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    items = db.Column(db.JSON, nullable=False, default=list)

    subtotal = db.Column(db.Integer, nullable=False, default=0)
    discount_percent = db.Column(db.Integer, nullable=False, default=0)
    discount_amount = db.Column(db.Integer, nullable=False, default=0)
    tax = db.Column(db.Integer, nullable=False, default=0)
    total = db.Column(db.Integer, nullable=False, default=0)

    status = _enum_column(QuoteStatus, "quote_status", QuoteStatus.PENDING)
    expiry_date = db.Column(db.DateTime, nullable=False, index=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    decided_at = db.Column(db.DateTime, nullable=True)

    version = db.Column(db.Integer, nullable=False)

    customer = db.relationship("User", foreign_keys=[customer_id])

    __table_args__ = (
        db.CheckConstraint("discount_percent BETWEEN 0 AND 100", name="ck_quotes_discount_percent"),
        db.CheckConstraint("total = subtotal - discount_amount + tax", name="ck_quotes_total"),
    )
    __mapper_args__ = {"version_id_col": version}

    def recalc_totals(self):
        """Recompute subtotal / discount_amount / total together."""
        totals = compute_totals(self.items or [], self.discount_percent or 0, self.tax or 0)
        self.subtotal = totals["subtotal"]
        self.discount_amount = totals["discount_amount"]
        self.total = totals["total"]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quote_number": self.quote_number,
            "customer_id": self.customer_id,
            "created_by": self.created_by,
            "items": list(self.items or []),
            "subtotal": self.subtotal,
            "discount_percent": self.discount_percent,
            "discount_amount": self.discount_amount,
            "tax": self.tax,
            "total": self.total,
            "status": self.status.value,
            "expiry_date": to_iso(self.expiry_date),
            "notes": self.notes,
            "created_at": to_iso(self.created_at),
            "decided_at": to_iso(self.decided_at),
            "version": self.version,
        }


class DiscountRequest(db.Model):
    """Sales-initiated discount, optionally tied to a quote. Terminal once decided."""

    __tablename__ = "discount_requests"

    id = db.Column(db.Integer, primary_key=True)

    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id"), nullable=True, index=True)
    requested_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    discount_percent = db.Column(db.Integer, nullable=False)
    justification = db.Column(db.Text, nullable=False)

    status = _enum_column(DiscountStatus, "discount_status", DiscountStatus.PENDING)
    notes = db.Column(db.Text, nullable=True)

    requested_at = db.Column(db.DateTime, default=utcnow, index=True)
    decided_at = db.Column(db.DateTime, nullable=True)

    version = db.Column(db.Integer, nullable=False)

    quote = db.relationship("Quote", backref=db.backref("discount_requests", lazy=True))

    __table_args__ = (
        db.CheckConstraint("discount_percent BETWEEN 0 AND 100", name="ck_discount_requests_percent"),
    )
    __mapper_args__ = {"version_id_col": version}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quote_id": self.quote_id,
            "requested_by": self.requested_by,
            "approved_by": self.approved_by,
            "discount_percent": self.discount_percent,
            "justification": self.justification,
            "status": self.status.value,
            "notes": self.notes,
            "requested_at": to_iso(self.requested_at),
            "decided_at": to_iso(self.decided_at),
            "version": self.version,
        }


class Invoice(db.Model):
    """
    Invoice, standalone or generated from an accepted quote.

    quote_id is a non-owning back-reference; the unique constraint makes generation idempotent.
    """

    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)

    invoice_number = db.Column(db.String(40), unique=True, nullable=False, index=True)

    quote_id = db.Column(db.Integer, db.ForeignKey("quotes.id"), nullable=True, unique=True)
    customer_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    items = db.Column(db.JSON, nullable=False, default=list)

    subtotal = db.Column(db.Integer, nullable=False, default=0)
    discount_percent = db.Column(db.Integer, nullable=False, default=0)
    discount_amount = db.Column(db.Integer, nullable=False, default=0)
    tax = db.Column(db.Integer, nullable=False, default=0)
    total = db.Column(db.Integer, nullable=False, default=0)

    status = _enum_column(InvoiceStatus, "invoice_status", InvoiceStatus.PENDING)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    due_date = db.Column(db.DateTime, nullable=False, index=True)

    paid_at = db.Column(db.DateTime, nullable=True)
    payment_reference = db.Column(db.String(255), nullable=True)
    payment_method = db.Column(db.String(50), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    version = db.Column(db.Integer, nullable=False)

    quote = db.relationship("Quote", backref=db.backref("invoice", uselist=False, lazy=True))

    __table_args__ = (
        db.CheckConstraint("due_date >= created_at", name="ck_invoices_due_after_created"),
        db.CheckConstraint("total = subtotal - discount_amount + tax", name="ck_invoices_total"),
    )
    __mapper_args__ = {"version_id_col": version}

    def recalc_totals(self):
        totals = compute_totals(self.items or [], self.discount_percent or 0, self.tax or 0)
        self.subtotal = totals["subtotal"]
        self.discount_amount = totals["discount_amount"]
        self.total = totals["total"]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "quote_id": self.quote_id,
            "customer_id": self.customer_id,
            "items": list(self.items or []),
            "subtotal": self.subtotal,
            "discount_percent": self.discount_percent,
            "discount_amount": self.discount_amount,
            "tax": self.tax,
            "total": self.total,
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "due_date": to_iso(self.due_date),
            "paid_at": to_iso(self.paid_at),
            "payment_reference": self.payment_reference,
            "payment_method": self.payment_method,
            "version": self.version,
        }


# ---------------------------------------------------------------------
# Audit and outbox
# ---------------------------------------------------------------------
class AuditLog(db.Model):
    """Who did what to which entity, with before/after snapshots."""

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)

    actor_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    actor_role = db.Column(db.String(20), nullable=True)

    entity_type = db.Column(db.String(50), nullable=False, index=True)
    entity_id = db.Column(db.Integer, nullable=False, index=True)

    action = db.Column(db.String(30), nullable=False, index=True)

    before_data = db.Column(db.Text, nullable=True)
    after_data = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)


class DomainEvent(db.Model):
    """Outbox row for an emitted domain event (at-least-once delivery)."""

    __tablename__ = "domain_events"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(50), nullable=False, index=True)
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False, index=True)
    state = db.Column(db.String(20), nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)

    occurred_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "state": self.state,
            "payload": dict(self.payload or {}),
            "occurred_at": to_iso(self.occurred_at),
        }
