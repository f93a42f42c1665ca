"""
Tests for QuoteLedger.

Verifies:
- Totals arithmetic (half-up rounding, total = subtotal - discount + tax)
- Input validation
- accept / reject: ownership, version gate, expiry, terminal states
- Auto-generated invoice on accept and to_invoice idempotence
- expire_sweep
"""

from datetime import timedelta, timezone

import pytest

from billing.errors import Conflict, Expired, Forbidden, NotFound, ValidationError
from billing.extensions import db
from billing.models import Invoice, Quote, QuoteStatus, compute_totals
from billing.services import QuoteLedger


class TestTotals:

    def test_rounding_is_half_up(self):
        totals = compute_totals([{"name": "x", "unit_price": 5, "quantity": 1}], 10, 0)
        # 5 * 10% = 0.5 -> 1
        assert totals["discount_amount"] == 1
        assert totals["total"] == 4

    def test_create_computes_totals(self, make_quote):
        quote = make_quote(tax=50)
        assert quote.subtotal == 2000
        assert quote.discount_amount == 0
        assert quote.total == 2050
        assert quote.status == QuoteStatus.PENDING
        assert quote.version == 1
        assert quote.quote_number.startswith("Q-20260301-")


class TestCreate:

    def test_empty_items_rejected(self, sales, customer, now):
        with pytest.raises(ValidationError):
            QuoteLedger.create(customer.id, [], now + timedelta(days=1), actor=sales, now=now)

    @pytest.mark.parametrize(
        "item",
        [
            {"name": "x", "unit_price": -1, "quantity": 1},
            {"name": "x", "unit_price": 1, "quantity": -1},
            {"name": "x", "unit_price": "10", "quantity": 1},
            {"name": "", "unit_price": 1, "quantity": 1},
        ],
    )
    def test_bad_items_rejected(self, sales, customer, now, item):
        with pytest.raises(ValidationError):
            QuoteLedger.create(customer.id, [item], now + timedelta(days=1), actor=sales, now=now)

    def test_negative_tax_rejected(self, make_quote):
        with pytest.raises(ValidationError):
            make_quote(tax=-5)

    def test_expiry_in_past_rejected(self, sales, customer, now):
        items = [{"name": "x", "unit_price": 1, "quantity": 1}]
        with pytest.raises(ValidationError):
            QuoteLedger.create(customer.id, items, now - timedelta(days=1), actor=sales, now=now)

    def test_aware_expiry_is_stored_as_naive_utc(self, sales, customer, now):
        items = [{"name": "x", "unit_price": 1, "quantity": 1}]
        aware = (now + timedelta(days=3)).replace(tzinfo=timezone.utc).astimezone(timezone(timedelta(hours=2)))
        quote = QuoteLedger.create(customer.id, items, aware, actor=sales, now=now)
        assert quote.expiry_date == now + timedelta(days=3)
        assert quote.expiry_date.tzinfo is None

    def test_aware_expiry_in_past_rejected(self, sales, customer, now):
        items = [{"name": "x", "unit_price": 1, "quantity": 1}]
        aware = (now - timedelta(hours=1)).replace(tzinfo=timezone.utc)
        with pytest.raises(ValidationError):
            QuoteLedger.create(customer.id, items, aware, actor=sales, now=now)

    def test_default_expiry_uses_validity_days(self, app, sales, customer, now):
        items = [{"name": "x", "unit_price": 1, "quantity": 1}]
        quote = QuoteLedger.create(customer.id, items, actor=sales, now=now)
        assert quote.expiry_date == now + timedelta(days=app.config["QUOTE_VALIDITY_DAYS"])

    def test_customer_cannot_create(self, customer, now):
        items = [{"name": "x", "unit_price": 1, "quantity": 1}]
        with pytest.raises(Forbidden):
            QuoteLedger.create(customer.id, items, now + timedelta(days=1), actor=customer, now=now)

    def test_quote_must_target_a_customer(self, sales, finance, now):
        items = [{"name": "x", "unit_price": 1, "quantity": 1}]
        with pytest.raises(ValidationError):
            QuoteLedger.create(finance.id, items, now + timedelta(days=1), actor=sales, now=now)

    def test_unknown_customer(self, sales, now):
        items = [{"name": "x", "unit_price": 1, "quantity": 1}]
        with pytest.raises(NotFound):
            QuoteLedger.create(9999, items, now + timedelta(days=1), actor=sales, now=now)


class TestDecisions:

    def test_accept_transitions_and_bumps_version(self, make_quote, customer, now):
        quote = make_quote()
        accepted = QuoteLedger.accept(quote.id, 1, actor=customer, now=now)
        assert accepted.status == QuoteStatus.ACCEPTED
        assert accepted.version == 2
        assert accepted.decided_at == now

    def test_reject(self, make_quote, customer, now):
        quote = make_quote()
        rejected = QuoteLedger.reject(quote.id, quote.version, actor=customer, now=now)
        assert rejected.status == QuoteStatus.REJECTED

    def test_other_customer_forbidden(self, make_quote, other_customer, now):
        quote = make_quote()
        with pytest.raises(Forbidden):
            QuoteLedger.accept(quote.id, quote.version, actor=other_customer, now=now)

    def test_sales_cannot_accept(self, make_quote, sales, now):
        quote = make_quote()
        with pytest.raises(Forbidden):
            QuoteLedger.accept(quote.id, quote.version, actor=sales, now=now)

    def test_admin_may_accept_for_customer(self, make_quote, admin, now):
        quote = make_quote()
        assert QuoteLedger.accept(quote.id, quote.version, actor=admin, now=now).status == QuoteStatus.ACCEPTED

    def test_stale_version_conflicts(self, make_quote, customer, now):
        quote = make_quote()
        with pytest.raises(Conflict) as excinfo:
            QuoteLedger.accept(quote.id, 5, actor=customer, now=now)
        assert excinfo.value.details["current_version"] == 1

    def test_missing_version_is_validation_error(self, make_quote, customer, now):
        quote = make_quote()
        with pytest.raises(ValidationError):
            QuoteLedger.accept(quote.id, None, actor=customer, now=now)

    def test_unknown_quote(self, customer, now):
        with pytest.raises(NotFound):
            QuoteLedger.accept(4242, 1, actor=customer, now=now)

    def test_concurrent_decisions_only_one_wins(self, make_quote, customer, now):
        quote = make_quote()
        read_version = quote.version
        QuoteLedger.accept(quote.id, read_version, actor=customer, now=now)
        with pytest.raises(Conflict):
            QuoteLedger.reject(quote.id, read_version, actor=customer, now=now)
        assert QuoteLedger.get(quote.id).status == QuoteStatus.ACCEPTED

    @pytest.mark.parametrize("first", ["accept", "reject"])
    def test_terminal_states_are_final(self, make_quote, customer, now, first):
        quote = make_quote()
        decided = getattr(QuoteLedger, first)(quote.id, quote.version, actor=customer, now=now)
        for op in (QuoteLedger.accept, QuoteLedger.reject):
            with pytest.raises(Conflict):
                op(decided.id, decided.version, actor=customer, now=now)

    def test_accept_after_expiry_fails_and_stays_pending(self, make_quote, customer, now):
        quote = make_quote(expiry_days=1)
        with pytest.raises(Expired):
            QuoteLedger.accept(quote.id, quote.version, actor=customer, now=now + timedelta(days=2))

        db.session.expire_all()
        reloaded = QuoteLedger.get(quote.id)
        assert reloaded.status == QuoteStatus.PENDING
        assert reloaded.version == 1

    def test_accept_exactly_at_expiry_is_expired(self, make_quote, customer, now):
        quote = make_quote(expiry_days=1)
        with pytest.raises(Expired):
            QuoteLedger.reject(quote.id, quote.version, actor=customer, now=quote.expiry_date)

    def test_aware_clock_is_compared_as_utc(self, make_quote, customer, now):
        quote = make_quote(expiry_days=1)
        aware_now = (now + timedelta(days=2)).replace(tzinfo=timezone.utc)
        with pytest.raises(Expired):
            QuoteLedger.accept(quote.id, quote.version, actor=customer, now=aware_now)


class TestInvoiceConversion:

    def test_accept_generates_invoice(self, make_quote, customer, now, app):
        quote = make_quote(tax=50)
        QuoteLedger.accept(quote.id, quote.version, actor=customer, now=now)

        invoice = Invoice.query.filter_by(quote_id=quote.id).one()
        assert invoice.total == quote.total == 2050
        assert invoice.items == quote.items
        assert invoice.due_date == now + timedelta(days=app.config["INVOICE_DUE_DAYS"])

    def test_to_invoice_is_idempotent(self, make_quote, customer, finance, now):
        quote = make_quote()
        QuoteLedger.accept(quote.id, quote.version, actor=customer, now=now)

        first = QuoteLedger.to_invoice(quote.id, actor=finance)
        second = QuoteLedger.to_invoice(quote.id, actor=finance)
        assert first.id == second.id
        assert Invoice.query.filter_by(quote_id=quote.id).count() == 1

    def test_to_invoice_without_auto_invoice(self, app, make_quote, customer, finance, now):
        app.config["AUTO_INVOICE_ON_ACCEPT"] = False
        quote = make_quote()
        QuoteLedger.accept(quote.id, quote.version, actor=customer, now=now)
        assert Invoice.query.count() == 0

        first = QuoteLedger.to_invoice(quote.id, actor=finance, now=now)
        second = QuoteLedger.to_invoice(quote.id, actor=finance, now=now)
        assert first.id == second.id
        assert Invoice.query.count() == 1

    def test_to_invoice_requires_accepted(self, make_quote, finance):
        quote = make_quote()
        with pytest.raises(Conflict):
            QuoteLedger.to_invoice(quote.id, actor=finance)

    def test_to_invoice_forbidden_for_sales(self, make_quote, customer, sales, now):
        quote = make_quote()
        QuoteLedger.accept(quote.id, quote.version, actor=customer, now=now)
        with pytest.raises(Forbidden):
            QuoteLedger.to_invoice(quote.id, actor=sales)


class TestExpireSweep:

    def test_expires_only_overdue_pending(self, make_quote, customer, system, now):
        stale = make_quote(expiry_days=1)
        fresh = make_quote(expiry_days=30)
        decided = make_quote(expiry_days=1)
        QuoteLedger.reject(decided.id, decided.version, actor=customer, now=now)

        changed = QuoteLedger.expire_sweep(now + timedelta(days=2), actor=system)

        assert changed == 1
        assert db.session.get(Quote, stale.id).status == QuoteStatus.EXPIRED
        assert db.session.get(Quote, fresh.id).status == QuoteStatus.PENDING
        assert db.session.get(Quote, decided.id).status == QuoteStatus.REJECTED

    def test_is_idempotent(self, make_quote, system, now):
        make_quote(expiry_days=1)
        later = now + timedelta(days=2)
        assert QuoteLedger.expire_sweep(later, actor=system) == 1
        assert QuoteLedger.expire_sweep(later, actor=system) == 0

    def test_expired_quote_cannot_be_accepted(self, make_quote, customer, system, now):
        quote = make_quote(expiry_days=1)
        QuoteLedger.expire_sweep(now + timedelta(days=2), actor=system)
        reloaded = QuoteLedger.get(quote.id)
        with pytest.raises(Conflict):
            QuoteLedger.accept(quote.id, reloaded.version, actor=customer, now=now)

    def test_sweep_requires_permission(self, sales, app):
        with pytest.raises(Forbidden):
            QuoteLedger.expire_sweep(actor=sales)
