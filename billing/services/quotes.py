"""
QuoteLedger - quote creation, status state machine, discount application, conversion to invoice.

State machine: pending -> {accepted, rejected, expired}; all three are terminal.

IMPORTANT:
- subtotal / discount_amount / total are always recomputed together (Quote.recalc_totals).
- accept / reject require the version the caller read. Two concurrent decisions on one
  quote cannot both win: the loser fails Conflict.
- Accepting a quote generates its invoice in the same transaction when
  AUTO_INVOICE_ON_ACCEPT is set (acceptance and invoice are all-or-nothing).
- apply_discount participates in the DiscountApprovalWorkflow's transaction; it never commits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

from flask import current_app

from ..audit import log_action, serialize_model
from ..errors import Conflict, Expired, ValidationError
from ..events import QUOTE_ACCEPTED, QUOTE_EXPIRED, QUOTE_REJECTED, record_event
from ..extensions import db
from ..models import (
    Invoice,
    Quote,
    QuoteStatus,
    Role,
    User,
    can_transition,
    clean_text,
    normalize_items,
    validate_amount,
    validate_percent,
)
from ..security import SYSTEM_ACTOR, require
from ..utils import as_naive_utc, next_document_number, utcnow
from .base import check_version, get_or_404, unit_of_work
from .invoices import InvoiceLedger

logger = logging.getLogger(__name__)


class QuoteLedger:

    # =========================================================================
    # READS
    # =========================================================================

    @classmethod
    def get(cls, quote_id: int) -> Quote:
        return get_or_404(Quote, quote_id, label="Quote")

    @classmethod
    def get_for_actor(cls, quote_id: int, *, actor: Any) -> Quote:
        quote = cls.get(quote_id)
        require(actor, "view_quote", owner_id=quote.customer_id)
        return quote

    @classmethod
    def list_for_customer(cls, customer_id: int, status: Optional[QuoteStatus] = None) -> List[Quote]:
        q = Quote.query.filter_by(customer_id=customer_id)
        if status is not None:
            q = q.filter(Quote.status == status)
        return q.order_by(Quote.created_at.desc(), Quote.id.desc()).all()

    # =========================================================================
    # CREATE
    # =========================================================================

    @classmethod
    def create(
        cls,
        customer_id: int,
        items: Any,
        expiry_date: Optional[datetime] = None,
        *,
        actor: Any,
        tax: int = 0,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Quote:
        """
        Create a pending quote.

        Fails ValidationError on empty items, negative unit_price / quantity / tax,
        or an expiry_date that is not in the future. Without expiry_date the quote is
        valid for QUOTE_VALIDITY_DAYS.
        """
        require(actor, "create_quote")

        customer = get_or_404(User, customer_id, label="Customer")
        if customer.role != Role.CUSTOMER:
            raise ValidationError(f"User {customer_id} is not a customer.")

        normalized = normalize_items(items)
        tax = validate_amount(tax, "tax")

        now = as_naive_utc(now) or utcnow()
        if expiry_date is None:
            expiry_date = now + timedelta(days=int(current_app.config.get("QUOTE_VALIDITY_DAYS", 30)))
        elif not isinstance(expiry_date, datetime):
            raise ValidationError("expiry_date must be a datetime.")
        else:
            expiry_date = as_naive_utc(expiry_date)
            if expiry_date <= now:
                raise ValidationError("expiry_date must be in the future.")

        with unit_of_work("create quote"):
            quote = Quote(
                quote_number=next_document_number("Q", now),
                customer_id=customer_id,
                created_by=getattr(actor, "id", None),
                items=normalized,
                discount_percent=0,
                tax=tax,
                status=QuoteStatus.PENDING,
                expiry_date=expiry_date,
                notes=clean_text(notes, "notes") or None,
                created_at=now,
            )
            quote.recalc_totals()
            db.session.add(quote)
            db.session.flush()
            log_action(quote, "CREATE", actor=actor, after=serialize_model(quote))

        logger.info("Quote %s created for customer %s (total %s)", quote.quote_number, customer_id, quote.total)
        return quote

    # =========================================================================
    # DECISIONS
    # =========================================================================

    @classmethod
    def _decide(
        cls,
        quote_id: int,
        target: QuoteStatus,
        expected_version: int,
        *,
        actor: Any,
        action: str,
        now: Optional[datetime],
    ) -> Quote:
        quote = cls.get(quote_id)
        require(actor, action, owner_id=quote.customer_id)
        check_version(quote, expected_version, "Quote")

        if not can_transition(quote.status, target):
            raise Conflict(f"Quote {quote.id} is already {quote.status.value}.")

        now = as_naive_utc(now) or utcnow()
        if now >= quote.expiry_date:
            raise Expired(f"Quote {quote.id} expired on {quote.expiry_date.isoformat()}.")

        invoice: Optional[Invoice] = None
        with unit_of_work(action.replace("_", " ")):
            before = serialize_model(quote)
            quote.status = target
            quote.decided_at = now
            db.session.flush()
            log_action(quote, target.value.upper(), actor=actor, before=before, after=serialize_model(quote))
            record_event(
                QUOTE_ACCEPTED if target == QuoteStatus.ACCEPTED else QUOTE_REJECTED,
                quote,
                quote.status,
                quote_number=quote.quote_number,
                customer_id=quote.customer_id,
                total=quote.total,
            )

            if target == QuoteStatus.ACCEPTED and current_app.config.get("AUTO_INVOICE_ON_ACCEPT", True):
                invoice = InvoiceLedger.stage_from_quote(quote, actor=SYSTEM_ACTOR, now=now)

        if invoice is not None:
            logger.info("Quote %s accepted; invoice %s generated", quote.quote_number, invoice.invoice_number)
        return quote

    @classmethod
    def accept(cls, quote_id: int, expected_version: int, *, actor: Any, now: Optional[datetime] = None) -> Quote:
        """Accept a pending, unexpired quote (customer who owns it, or admin)."""
        return cls._decide(
            quote_id, QuoteStatus.ACCEPTED, expected_version, actor=actor, action="accept_quote", now=now
        )

    @classmethod
    def reject(cls, quote_id: int, expected_version: int, *, actor: Any, now: Optional[datetime] = None) -> Quote:
        """Reject a pending, unexpired quote (customer who owns it, or admin)."""
        return cls._decide(
            quote_id, QuoteStatus.REJECTED, expected_version, actor=actor, action="reject_quote", now=now
        )

    # =========================================================================
    # DISCOUNT (called by DiscountApprovalWorkflow only)
    # =========================================================================

    @classmethod
    def apply_discount(
        cls,
        quote_id: int,
        discount_percent: int,
        expected_version: int,
        *,
        actor: Any,
    ) -> Quote:
        """
        Stage a new discount_percent on a pending quote and recompute its totals.

        Does not commit: the approval that triggered it owns the transaction.
        Fails Conflict if the quote is no longer pending or its version moved.
        """
        discount_percent = validate_percent(discount_percent)
        quote = cls.get(quote_id)
        check_version(quote, expected_version, "Quote")

        if quote.status != QuoteStatus.PENDING:
            raise Conflict(f"Quote {quote.id} is {quote.status.value}; a finalized quote cannot be discounted.")

        before = serialize_model(quote)
        quote.discount_percent = discount_percent
        quote.recalc_totals()
        db.session.flush()
        log_action(quote, "DISCOUNT", actor=actor, before=before, after=serialize_model(quote))
        return quote

    # =========================================================================
    # CONVERSION
    # =========================================================================

    @classmethod
    def to_invoice(cls, quote_id: int, *, actor: Any, now: Optional[datetime] = None) -> Invoice:
        """
        Convert an accepted quote into its invoice. Idempotent by quote_id:
        every call returns the same invoice.
        """
        require(actor, "generate_invoice")
        quote = cls.get(quote_id)
        if quote.status != QuoteStatus.ACCEPTED:
            raise Conflict(f"Quote {quote.id} is {quote.status.value}; only accepted quotes can be invoiced.")

        existing = InvoiceLedger.for_quote(quote.id)
        if existing is not None:
            return existing
        return InvoiceLedger.generate_from_quote(quote, actor=actor, now=now)

    # =========================================================================
    # SWEEP
    # =========================================================================

    @classmethod
    def expire_sweep(cls, now: Optional[datetime] = None, *, actor: Any = SYSTEM_ACTOR) -> int:
        """
        Move every pending quote with expiry_date < now to expired.

        Idempotent; never touches accepted / rejected / expired quotes.
        A row that conflicts with a live request is skipped until the next pass.
        """
        require(actor, "run_sweeps")
        now = as_naive_utc(now) or utcnow()

        candidate_ids = [
            row.id
            for row in Quote.query.with_entities(Quote.id)
            .filter(Quote.status == QuoteStatus.PENDING, Quote.expiry_date < now)
            .order_by(Quote.id.asc())
            .all()
        ]
        db.session.rollback()

        changed = 0
        for quote_id in candidate_ids:
            try:
                with unit_of_work("expire sweep"):
                    quote = db.session.get(Quote, quote_id)
                    if quote is None or quote.status != QuoteStatus.PENDING or quote.expiry_date >= now:
                        continue
                    before = serialize_model(quote)
                    quote.status = QuoteStatus.EXPIRED
                    quote.decided_at = now
                    db.session.flush()
                    log_action(quote, "EXPIRE", actor=actor, before=before, after=serialize_model(quote))
                    record_event(QUOTE_EXPIRED, quote, quote.status, quote_number=quote.quote_number)
                changed += 1
            except Conflict:
                logger.warning("Expire sweep skipped quote %s (concurrent update)", quote_id)

        logger.info("Expire sweep: %d quote(s) expired", changed)
        return changed
