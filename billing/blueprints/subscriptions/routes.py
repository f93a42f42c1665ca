"""
Subscription Routes

Provides:
- GET   /subscriptions/plans                 active plan catalog
- POST  /subscriptions/plans                 create plan (admin)
- PATCH /subscriptions/plans/<id>            edit plan (admin; refused while in use)
- POST  /subscriptions/plans/<id>/retire     retire plan (admin)
- POST  /subscriptions/                      activate {"plan_id", "customer_id"?, "auto_renew"?}
- GET   /subscriptions/                      list for a customer (customers: their own)
- GET   /subscriptions/<id>                  read, with token balance
- POST  /subscriptions/<id>/renew            renew now (admin)
- POST  /subscriptions/<id>/consume          {"amount", "version", "description"?} (admin)
- GET   /subscriptions/<id>/usage            token usage history
"""

from flask import Blueprint, jsonify, request
from flask_login import login_required

from ...errors import NotFound, ValidationError
from ...models import Role
from ...security import action_required, current_actor, require
from ...services import PlanCatalog, SubscriptionManager, TokenBalanceLedger
from ...utils import json_body, parse_int


subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/subscriptions")


def _subscription_payload(subscription) -> dict:
    payload = subscription.to_dict()
    payload["plan"] = subscription.plan.to_dict()
    balance = subscription.token_balance
    payload["token_balance"] = balance.to_dict() if balance is not None else None
    return payload


# ============================================================
# PLANS
# ============================================================

@subscriptions_bp.route("/plans", methods=["GET"])
@login_required
def list_plans():
    return jsonify([p.to_dict() for p in PlanCatalog.list_active_plans()])


@subscriptions_bp.route("/plans", methods=["POST"])
@login_required
@action_required("manage_plans")
def create_plan():
    plan = PlanCatalog.create_plan(json_body(), actor=current_actor())
    return jsonify(plan.to_dict()), 201


@subscriptions_bp.route("/plans/<int:plan_id>", methods=["PATCH"])
@login_required
@action_required("manage_plans")
def update_plan(plan_id: int):
    plan = PlanCatalog.update_plan(plan_id, json_body(), actor=current_actor())
    return jsonify(plan.to_dict())


@subscriptions_bp.route("/plans/<int:plan_id>/retire", methods=["POST"])
@login_required
@action_required("manage_plans")
def retire_plan(plan_id: int):
    plan = PlanCatalog.retire_plan(plan_id, actor=current_actor())
    return jsonify(plan.to_dict())


# ============================================================
# SUBSCRIPTIONS
# ============================================================

@subscriptions_bp.route("/", methods=["POST"])
@login_required
@action_required("activate_subscription")
def activate_subscription():
    actor = current_actor()
    data = json_body()

    customer_id = parse_int(data.get("customer_id"))
    if customer_id is None and actor.role == Role.CUSTOMER:
        customer_id = actor.id
    if customer_id is None:
        raise ValidationError("customer_id is required.")

    plan_id = parse_int(data.get("plan_id"))
    if plan_id is None:
        raise ValidationError("plan_id is required.")

    auto_renew = data.get("auto_renew", True)
    if not isinstance(auto_renew, bool):
        raise ValidationError("auto_renew must be true or false.")

    subscription = SubscriptionManager.activate(
        customer_id,
        plan_id,
        actor=actor,
        auto_renew=auto_renew,
    )
    return jsonify(_subscription_payload(subscription)), 201


@subscriptions_bp.route("/", methods=["GET"])
@login_required
def list_subscriptions():
    actor = current_actor()
    if actor.role == Role.CUSTOMER:
        customer_id = actor.id
    else:
        customer_id = parse_int(request.args.get("customer_id"))
        if customer_id is None:
            raise ValidationError("customer_id is required.")
    require(actor, "view_subscription", owner_id=customer_id)
    return jsonify([s.to_dict() for s in SubscriptionManager.list_for_customer(customer_id)])


@subscriptions_bp.route("/<int:subscription_id>", methods=["GET"])
@login_required
def get_subscription(subscription_id: int):
    subscription = SubscriptionManager.get_for_actor(subscription_id, actor=current_actor())
    return jsonify(_subscription_payload(subscription))


@subscriptions_bp.route("/<int:subscription_id>/renew", methods=["POST"])
@login_required
@action_required("renew_subscription")
def renew_subscription(subscription_id: int):
    subscription = SubscriptionManager.renew(subscription_id, actor=current_actor())
    return jsonify(_subscription_payload(subscription))


# ============================================================
# TOKENS
# ============================================================

@subscriptions_bp.route("/<int:subscription_id>/consume", methods=["POST"])
@login_required
@action_required("consume_tokens")
def consume_tokens(subscription_id: int):
    data = json_body()
    balance = TokenBalanceLedger.consume(
        subscription_id,
        data.get("amount"),
        parse_int(data.get("version")),
        actor=current_actor(),
        description=data.get("description") or "usage",
    )
    return jsonify(balance.to_dict())


@subscriptions_bp.route("/<int:subscription_id>/usage", methods=["GET"])
@login_required
def token_usage(subscription_id: int):
    subscription = SubscriptionManager.get_for_actor(subscription_id, actor=current_actor())
    if subscription.token_balance is None:
        raise NotFound(f"No token balance for subscription {subscription.id}.")
    limit = parse_int(request.args.get("limit"))
    usage = TokenBalanceLedger.usage_history(subscription.id, limit=limit if limit and limit > 0 else None)
    return jsonify(
        {
            "balance": subscription.token_balance.to_dict(),
            "usage": [u.to_dict() for u in usage],
        }
    )
