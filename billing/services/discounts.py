"""
DiscountApprovalWorkflow - sales requests a discount, an admin approves or rejects it.

State machine: pending -> {approved, rejected}; both terminal.

IMPORTANT:
- Approval and the quote mutation are ONE unit of work. If the linked quote cannot take
  the discount (no longer pending, or moved under us) the approval fails Conflict,
  nothing is written, and the request stays pending.
- A quote may collect several requests over time (a rejected request does not block
  a new one).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

from ..audit import log_action, serialize_model
from ..errors import Conflict, ValidationError
from ..events import DISCOUNT_APPROVED, DISCOUNT_REJECTED, record_event
from ..extensions import db
from ..models import DiscountRequest, DiscountStatus, Quote, clean_text, validate_percent
from ..security import require
from ..utils import utcnow
from .base import check_version, get_or_404, unit_of_work
from .quotes import QuoteLedger

logger = logging.getLogger(__name__)


class DiscountApprovalWorkflow:

    @classmethod
    def get(cls, request_id: int) -> DiscountRequest:
        return get_or_404(DiscountRequest, request_id, label="Discount request")

    @classmethod
    def list_pending(cls, *, actor: Any) -> List[DiscountRequest]:
        require(actor, "list_discount_requests")
        return (
            DiscountRequest.query.filter(DiscountRequest.status == DiscountStatus.PENDING)
            .order_by(DiscountRequest.requested_at.asc(), DiscountRequest.id.asc())
            .all()
        )

    @classmethod
    def request(
        cls,
        quote_id: Optional[int],
        discount_percent: int,
        justification: str,
        *,
        actor: Any,
        now: Optional[datetime] = None,
    ) -> DiscountRequest:
        """File a pending request. quote_id may be None (a general discount request)."""
        require(actor, "request_discount")

        discount_percent = validate_percent(discount_percent)
        justification = clean_text(justification, "justification")
        if not justification:
            raise ValidationError("justification is required.")

        if quote_id is not None:
            get_or_404(Quote, quote_id, label="Quote")

        with unit_of_work("request discount"):
            discount = DiscountRequest(
                quote_id=quote_id,
                requested_by=actor.id,
                discount_percent=discount_percent,
                justification=justification,
                status=DiscountStatus.PENDING,
                requested_at=now or utcnow(),
            )
            db.session.add(discount)
            db.session.flush()
            log_action(discount, "CREATE", actor=actor, after=serialize_model(discount))

        logger.info("Discount request %s filed: %s%% on quote %s", discount.id, discount_percent, quote_id)
        return discount

    @classmethod
    def _pending(cls, request_id: int, expected_version: Optional[int], *, required: bool) -> DiscountRequest:
        discount = cls.get(request_id)
        check_version(discount, expected_version, "Discount request", required=required)
        if discount.status != DiscountStatus.PENDING:
            raise Conflict(f"Discount request {discount.id} is already {discount.status.value}.")
        return discount

    @classmethod
    def approve(
        cls,
        request_id: int,
        expected_version: int,
        *,
        actor: Any,
        notes: Optional[str] = None,
        quote_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> DiscountRequest:
        """
        Approve a pending request and apply its percent to the linked quote atomically.

        quote_version is the quote version the approver reviewed. When omitted, the quote
        write is still guarded by its version column against concurrent updates.

        Fails Conflict on a stale request version, a stale quote_version, a decided request,
        or a quote that is no longer pending (the request then stays pending).
        """
        require(actor, "approve_discount")
        notes = clean_text(notes, "notes") or None
        discount = cls._pending(request_id, expected_version, required=True)

        with unit_of_work("approve discount"):
            if discount.quote_id is not None:
                quote = QuoteLedger.get(discount.quote_id)
                seen = quote.version if quote_version is None else quote_version
                QuoteLedger.apply_discount(quote.id, discount.discount_percent, seen, actor=actor)

            before = serialize_model(discount)
            discount.status = DiscountStatus.APPROVED
            discount.approved_by = actor.id
            discount.notes = notes
            discount.decided_at = now or utcnow()
            db.session.flush()

            log_action(discount, "APPROVE", actor=actor, before=before, after=serialize_model(discount))
            record_event(
                DISCOUNT_APPROVED,
                discount,
                discount.status,
                quote_id=discount.quote_id,
                discount_percent=discount.discount_percent,
                approved_by=discount.approved_by,
            )

        logger.info("Discount request %s approved by user %s", discount.id, actor.id)
        return discount

    @classmethod
    def reject(
        cls,
        request_id: int,
        *,
        actor: Any,
        notes: Optional[str],
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> DiscountRequest:
        """Reject a pending request with notes. The linked quote is not touched."""
        require(actor, "reject_discount")
        notes = clean_text(notes, "notes") or None
        discount = cls._pending(request_id, expected_version, required=False)

        with unit_of_work("reject discount"):
            before = serialize_model(discount)
            discount.status = DiscountStatus.REJECTED
            discount.approved_by = actor.id
            discount.notes = notes
            discount.decided_at = now or utcnow()
            db.session.flush()

            log_action(discount, "REJECT", actor=actor, before=before, after=serialize_model(discount))
            record_event(
                DISCOUNT_REJECTED,
                discount,
                discount.status,
                quote_id=discount.quote_id,
                notes=discount.notes,
            )

        logger.info("Discount request %s rejected by user %s", discount.id, actor.id)
        return discount
