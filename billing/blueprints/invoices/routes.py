"""
Invoice Routes

Provides:
- POST /invoices/              standalone invoice (finance, admin)
- GET  /invoices/              list for a customer (customers: their own)
- GET  /invoices/<id>          read
- POST /invoices/<id>/pay      {"payment_reference", "version", "payment_method"?}
"""

from flask import Blueprint, jsonify, request
from flask_login import login_required

from ...errors import ValidationError
from ...models import InvoiceStatus, Role
from ...security import action_required, current_actor, require
from ...services import InvoiceLedger
from ...utils import json_body, parse_int


invoices_bp = Blueprint("invoices", __name__, url_prefix="/invoices")


@invoices_bp.route("/", methods=["POST"])
@login_required
@action_required("generate_standalone_invoice")
def create_invoice():
    data = json_body()
    invoice = InvoiceLedger.generate_standalone(
        parse_int(data.get("customer_id")),
        data.get("items"),
        data.get("tax", 0),
        actor=current_actor(),
        discount_percent=data.get("discount_percent", 0),
        notes=data.get("notes"),
    )
    return jsonify(invoice.to_dict()), 201


@invoices_bp.route("/", methods=["GET"])
@login_required
def list_invoices():
    actor = current_actor()
    if actor.role == Role.CUSTOMER:
        customer_id = actor.id
    else:
        customer_id = parse_int(request.args.get("customer_id"))
        if customer_id is None:
            raise ValidationError("customer_id is required.")
    require(actor, "view_invoice", owner_id=customer_id)

    status = None
    raw_status = (request.args.get("status") or "").strip()
    if raw_status:
        try:
            status = InvoiceStatus(raw_status)
        except ValueError:
            raise ValidationError(f"Unknown invoice status '{raw_status}'.")

    return jsonify([i.to_dict() for i in InvoiceLedger.list_for_customer(customer_id, status)])


@invoices_bp.route("/<int:invoice_id>", methods=["GET"])
@login_required
def get_invoice(invoice_id: int):
    return jsonify(InvoiceLedger.get_for_actor(invoice_id, actor=current_actor()).to_dict())


@invoices_bp.route("/<int:invoice_id>/pay", methods=["POST"])
@login_required
@action_required("mark_invoice_paid")
def pay_invoice(invoice_id: int):
    data = json_body()
    invoice = InvoiceLedger.mark_paid(
        invoice_id,
        data.get("payment_reference"),
        parse_int(data.get("version")),
        actor=current_actor(),
        payment_method=data.get("payment_method"),
    )
    return jsonify(invoice.to_dict())
