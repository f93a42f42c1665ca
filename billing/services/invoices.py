"""
InvoiceLedger - invoice creation, payment recording, overdue sweep.

State machine: pending -> {paid, overdue}; overdue -> {paid}; paid is terminal.

IMPORTANT:
- Exactly one invoice per accepted quote. quote_id is UNIQUE, and generation first
  looks for the existing invoice (AlreadyProcessed internally, the existing row is returned).
- Invoice arithmetic is the quote arithmetic (subtotal / discount / tax / total).
- due_date = created_at + INVOICE_DUE_DAYS.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

from flask import current_app

from ..audit import log_action, serialize_model
from ..errors import AlreadyProcessed, Conflict, ValidationError
from ..events import INVOICE_GENERATED, INVOICE_OVERDUE, INVOICE_PAID, record_event
from ..extensions import db
from ..models import (
    Invoice,
    InvoiceStatus,
    Quote,
    QuoteStatus,
    User,
    can_transition,
    clean_text,
    normalize_items,
    validate_amount,
    validate_percent,
)
from ..security import SYSTEM_ACTOR, require
from ..utils import next_document_number, utcnow
from .base import check_version, get_or_404, unit_of_work

logger = logging.getLogger(__name__)


def _due_date(created_at: datetime) -> datetime:
    return created_at + timedelta(days=int(current_app.config.get("INVOICE_DUE_DAYS", 30)))


class InvoiceLedger:

    # =========================================================================
    # READS
    # =========================================================================

    @classmethod
    def get(cls, invoice_id: int) -> Invoice:
        return get_or_404(Invoice, invoice_id, label="Invoice")

    @classmethod
    def get_for_actor(cls, invoice_id: int, *, actor: Any) -> Invoice:
        invoice = cls.get(invoice_id)
        require(actor, "view_invoice", owner_id=invoice.customer_id)
        return invoice

    @classmethod
    def for_quote(cls, quote_id: int) -> Optional[Invoice]:
        return Invoice.query.filter_by(quote_id=quote_id).first()

    @classmethod
    def list_for_customer(cls, customer_id: int, status: Optional[InvoiceStatus] = None) -> List[Invoice]:
        q = Invoice.query.filter_by(customer_id=customer_id)
        if status is not None:
            q = q.filter(Invoice.status == status)
        return q.order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()

    # =========================================================================
    # GENERATION
    # =========================================================================

    @classmethod
    def stage_from_quote(cls, quote: Quote, *, actor: Any, now: Optional[datetime] = None) -> Invoice:
        """
        Stage an invoice copied from an accepted quote inside the caller's unit of work.

        Raises AlreadyProcessed (carrying the existing invoice) if the quote already has one.
        """
        if quote.status != QuoteStatus.ACCEPTED:
            raise Conflict(
                f"Quote {quote.id} is {quote.status.value}; only accepted quotes can be invoiced."
            )

        existing = cls.for_quote(quote.id)
        if existing is not None:
            raise AlreadyProcessed(f"Quote {quote.id} already has invoice {existing.id}.", invoice=existing)

        created_at = now or utcnow()
        invoice = Invoice(
            invoice_number=next_document_number("INV", created_at),
            quote_id=quote.id,
            customer_id=quote.customer_id,
            items=[dict(item) for item in quote.items or []],
            subtotal=quote.subtotal,
            discount_percent=quote.discount_percent,
            discount_amount=quote.discount_amount,
            tax=quote.tax,
            total=quote.total,
            status=InvoiceStatus.PENDING,
            created_at=created_at,
            due_date=_due_date(created_at),
        )
        db.session.add(invoice)
        db.session.flush()

        log_action(invoice, "CREATE", actor=actor, after=serialize_model(invoice))
        record_event(
            INVOICE_GENERATED,
            invoice,
            invoice.status,
            invoice_number=invoice.invoice_number,
            quote_id=quote.id,
            customer_id=invoice.customer_id,
            total=invoice.total,
        )
        return invoice

    @classmethod
    def generate_from_quote(cls, quote: Quote, *, actor: Any, now: Optional[datetime] = None) -> Invoice:
        """
        Generate the invoice for an accepted quote. Idempotent per quote_id:
        a second call returns the existing invoice.
        """
        require(actor, "generate_invoice")
        try:
            with unit_of_work("generate invoice"):
                invoice = cls.stage_from_quote(quote, actor=actor, now=now)
        except AlreadyProcessed as exc:
            return exc.invoice
        except Conflict:
            # Lost the race on the unique quote_id: the other writer's invoice is the answer.
            existing = cls.for_quote(quote.id)
            if existing is None:
                raise
            return existing
        return invoice

    @classmethod
    def generate_standalone(
        cls,
        customer_id: int,
        items: Any,
        tax: int = 0,
        *,
        actor: Any,
        discount_percent: int = 0,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """Invoice not tied to a quote. Same arithmetic invariants as quotes."""
        require(actor, "generate_standalone_invoice")

        get_or_404(User, customer_id, label="Customer")
        normalized = normalize_items(items)
        tax = validate_amount(tax, "tax")
        discount_percent = validate_percent(discount_percent)

        created_at = now or utcnow()
        with unit_of_work("generate standalone invoice"):
            invoice = Invoice(
                invoice_number=next_document_number("INV", created_at),
                quote_id=None,
                customer_id=customer_id,
                items=normalized,
                discount_percent=discount_percent,
                tax=tax,
                status=InvoiceStatus.PENDING,
                created_at=created_at,
                due_date=_due_date(created_at),
                notes=clean_text(notes, "notes") or None,
            )
            invoice.recalc_totals()
            db.session.add(invoice)
            db.session.flush()

            log_action(invoice, "CREATE", actor=actor, after=serialize_model(invoice))
            record_event(
                INVOICE_GENERATED,
                invoice,
                invoice.status,
                invoice_number=invoice.invoice_number,
                quote_id=None,
                customer_id=customer_id,
                total=invoice.total,
            )
        return invoice

    # =========================================================================
    # PAYMENT
    # =========================================================================

    @classmethod
    def mark_paid(
        cls,
        invoice_id: int,
        payment_reference: str,
        expected_version: int,
        *,
        actor: Any,
        payment_method: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """
        Record a payment. Allowed from pending or overdue; paid is terminal.

        The engine does not process payments; it only records the reference.
        """
        require(actor, "mark_invoice_paid")

        reference = clean_text(payment_reference, "payment_reference")
        if not reference:
            raise ValidationError("payment_reference is required.")
        payment_method = clean_text(payment_method, "payment_method", 50) or None

        invoice = cls.get(invoice_id)
        check_version(invoice, expected_version, "Invoice")
        if not can_transition(invoice.status, InvoiceStatus.PAID):
            raise Conflict(f"Invoice {invoice.id} is already {invoice.status.value}.")

        with unit_of_work("mark invoice paid"):
            before = serialize_model(invoice)
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = now or utcnow()
            invoice.payment_reference = reference[:255]
            invoice.payment_method = payment_method
            db.session.flush()

            log_action(invoice, "PAY", actor=actor, before=before, after=serialize_model(invoice))
            record_event(
                INVOICE_PAID,
                invoice,
                invoice.status,
                invoice_number=invoice.invoice_number,
                payment_reference=invoice.payment_reference,
                total=invoice.total,
            )

        logger.info("Invoice %s paid (ref %s)", invoice.invoice_number, invoice.payment_reference)
        return invoice

    # =========================================================================
    # SWEEP
    # =========================================================================

    @classmethod
    def overdue_sweep(cls, now: Optional[datetime] = None, *, actor: Any = SYSTEM_ACTOR) -> int:
        """
        Mark every pending invoice with due_date < now as overdue.

        Idempotent. Paid and already-overdue invoices are never touched.
        A row that conflicts is skipped and retried on the next pass.
        """
        require(actor, "run_sweeps")
        now = now or utcnow()

        candidate_ids = [
            row.id
            for row in Invoice.query.with_entities(Invoice.id)
            .filter(Invoice.status == InvoiceStatus.PENDING, Invoice.due_date < now)
            .order_by(Invoice.id.asc())
            .all()
        ]
        db.session.rollback()

        changed = 0
        for invoice_id in candidate_ids:
            try:
                with unit_of_work("overdue sweep"):
                    invoice = db.session.get(Invoice, invoice_id)
                    if invoice is None or invoice.status != InvoiceStatus.PENDING or invoice.due_date >= now:
                        continue
                    before = serialize_model(invoice)
                    invoice.status = InvoiceStatus.OVERDUE
                    db.session.flush()
                    log_action(invoice, "OVERDUE", actor=actor, before=before, after=serialize_model(invoice))
                    record_event(
                        INVOICE_OVERDUE,
                        invoice,
                        invoice.status,
                        invoice_number=invoice.invoice_number,
                        due_date=invoice.due_date.isoformat(),
                    )
                changed += 1
            except Conflict:
                logger.warning("Overdue sweep skipped invoice %s (concurrent update)", invoice_id)

        logger.info("Overdue sweep: %d invoice(s) marked overdue", changed)
        return changed
