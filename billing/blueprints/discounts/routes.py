"""
Discount Routes

Provides:
- POST /discounts/                  request (sales, admin)
- GET  /discounts/pending           pending queue (admin)
- POST /discounts/<id>/approve      {"version", "notes"?, "quote_version"?}
- POST /discounts/<id>/reject       {"notes", "version"?}
"""

from flask import Blueprint, jsonify
from flask_login import login_required

from ...security import action_required, current_actor
from ...services import DiscountApprovalWorkflow
from ...utils import json_body, parse_int


discounts_bp = Blueprint("discounts", __name__, url_prefix="/discounts")


@discounts_bp.route("/", methods=["POST"])
@login_required
@action_required("request_discount")
def request_discount():
    data = json_body()
    discount = DiscountApprovalWorkflow.request(
        parse_int(data.get("quote_id")),
        data.get("discount_percent"),
        data.get("justification"),
        actor=current_actor(),
    )
    return jsonify(discount.to_dict()), 201


@discounts_bp.route("/pending", methods=["GET"])
@login_required
def pending_discounts():
    requests_ = DiscountApprovalWorkflow.list_pending(actor=current_actor())
    return jsonify([d.to_dict() for d in requests_])


@discounts_bp.route("/<int:request_id>/approve", methods=["POST"])
@login_required
@action_required("approve_discount")
def approve_discount(request_id: int):
    data = json_body()
    discount = DiscountApprovalWorkflow.approve(
        request_id,
        parse_int(data.get("version")),
        actor=current_actor(),
        notes=data.get("notes"),
        quote_version=parse_int(data.get("quote_version")),
    )
    return jsonify(discount.to_dict())


@discounts_bp.route("/<int:request_id>/reject", methods=["POST"])
@login_required
@action_required("reject_discount")
def reject_discount(request_id: int):
    data = json_body()
    discount = DiscountApprovalWorkflow.reject(
        request_id,
        actor=current_actor(),
        notes=data.get("notes"),
        expected_version=parse_int(data.get("version")),
    )
    return jsonify(discount.to_dict())
