"""
Quote Routes

Provides:
- POST /quotes/                 create (sales, admin)
- GET  /quotes/                 list for a customer (customers: their own)
- GET  /quotes/<id>             read
- POST /quotes/<id>/accept      {"version"}
- POST /quotes/<id>/reject      {"version"}
- POST /quotes/<id>/invoice     convert accepted quote (idempotent)

Ownership and state rules are enforced by QuoteLedger, not here.
"""

from flask import Blueprint, jsonify, request
from flask_login import login_required

from ...errors import ValidationError
from ...models import QuoteStatus, Role
from ...security import action_required, current_actor, require
from ...services import QuoteLedger
from ...utils import json_body, parse_datetime, parse_int


quotes_bp = Blueprint("quotes", __name__, url_prefix="/quotes")


@quotes_bp.route("/", methods=["POST"])
@login_required
@action_required("create_quote")
def create_quote():
    data = json_body()

    expiry_date = None
    if data.get("expiry_date") not in (None, ""):
        expiry_date = parse_datetime(data.get("expiry_date"))
        if expiry_date is None:
            raise ValidationError("expiry_date must be an ISO-8601 timestamp.")

    quote = QuoteLedger.create(
        parse_int(data.get("customer_id")),
        data.get("items"),
        expiry_date,
        actor=current_actor(),
        tax=data.get("tax", 0),
        notes=data.get("notes"),
    )
    return jsonify(quote.to_dict()), 201


@quotes_bp.route("/", methods=["GET"])
@login_required
def list_quotes():
    actor = current_actor()
    if actor.role == Role.CUSTOMER:
        customer_id = actor.id
    else:
        customer_id = parse_int(request.args.get("customer_id"))
        if customer_id is None:
            raise ValidationError("customer_id is required.")
    require(actor, "view_quote", owner_id=customer_id)

    status = None
    raw_status = (request.args.get("status") or "").strip()
    if raw_status:
        try:
            status = QuoteStatus(raw_status)
        except ValueError:
            raise ValidationError(f"Unknown quote status '{raw_status}'.")

    return jsonify([q.to_dict() for q in QuoteLedger.list_for_customer(customer_id, status)])


@quotes_bp.route("/<int:quote_id>", methods=["GET"])
@login_required
def get_quote(quote_id: int):
    return jsonify(QuoteLedger.get_for_actor(quote_id, actor=current_actor()).to_dict())


@quotes_bp.route("/<int:quote_id>/accept", methods=["POST"])
@login_required
def accept_quote(quote_id: int):
    data = json_body()
    quote = QuoteLedger.accept(quote_id, parse_int(data.get("version")), actor=current_actor())
    payload = quote.to_dict()
    if quote.invoice is not None:
        payload["invoice"] = quote.invoice.to_dict()
    return jsonify(payload)


@quotes_bp.route("/<int:quote_id>/reject", methods=["POST"])
@login_required
def reject_quote(quote_id: int):
    data = json_body()
    quote = QuoteLedger.reject(quote_id, parse_int(data.get("version")), actor=current_actor())
    return jsonify(quote.to_dict())


@quotes_bp.route("/<int:quote_id>/invoice", methods=["POST"])
@login_required
@action_required("generate_invoice")
def quote_to_invoice(quote_id: int):
    invoice = QuoteLedger.to_invoice(quote_id, actor=current_actor())
    return jsonify(invoice.to_dict())
