"""
billing/security.py

AuthorizationGate and access-control helpers for the billing engine.

Key rules:
- UI is never trusted; every mutating engine call passes through `require()`.
- `can(role, action)` is a pure table lookup. Unknown role or action => deny.
- Ownership ("customer may accept their OWN quote") is checked on top of the table
  by `require(..., owner_id=...)`; admins and staff roles are not owner-restricted.
- `allowed_actions(role)` exposes the same table so a UI can filter navigation
  from the rules the engine enforces.

Actors:
- Any object with `.id` and `.role` (a User row, or SYSTEM_ACTOR for sweeps,
  scheduled renewals and usage events).
"""

from __future__ import annotations

from functools import wraps
from typing import Any, Callable, FrozenSet, Optional

from flask_login import current_user

from .errors import Forbidden
from .models import Role


# ---------------------------------------------------------------------
# Permission table
# ---------------------------------------------------------------------
ADMIN = Role.ADMIN.value
SALES = Role.SALES.value
CUSTOMER = Role.CUSTOMER.value
FINANCE = Role.FINANCE.value
SYSTEM = Role.SYSTEM.value

PERMISSIONS: dict[str, FrozenSet[str]] = {
    "create_quote": frozenset({SALES, ADMIN}),
    "accept_quote": frozenset({CUSTOMER, ADMIN}),
    "reject_quote": frozenset({CUSTOMER, ADMIN}),
    "view_quote": frozenset({CUSTOMER, SALES, FINANCE, ADMIN}),
    "request_discount": frozenset({SALES, ADMIN}),
    "approve_discount": frozenset({ADMIN}),
    "reject_discount": frozenset({ADMIN}),
    "list_discount_requests": frozenset({ADMIN}),
    "generate_invoice": frozenset({SYSTEM, FINANCE, ADMIN}),
    "generate_standalone_invoice": frozenset({FINANCE, ADMIN}),
    "view_invoice": frozenset({CUSTOMER, SALES, FINANCE, ADMIN}),
    "mark_invoice_paid": frozenset({FINANCE, ADMIN}),
    "consume_tokens": frozenset({SYSTEM, ADMIN}),
    "activate_subscription": frozenset({CUSTOMER, ADMIN}),
    "renew_subscription": frozenset({SYSTEM, ADMIN}),
    "view_subscription": frozenset({CUSTOMER, FINANCE, ADMIN}),
    "manage_plans": frozenset({ADMIN}),
    "run_sweeps": frozenset({SYSTEM, ADMIN}),
}

# Roles restricted to records they own, per action.
OWNER_RESTRICTED: dict[str, FrozenSet[str]] = {
    "accept_quote": frozenset({CUSTOMER}),
    "reject_quote": frozenset({CUSTOMER}),
    "view_quote": frozenset({CUSTOMER}),
    "view_invoice": frozenset({CUSTOMER}),
    "activate_subscription": frozenset({CUSTOMER}),
    "view_subscription": frozenset({CUSTOMER}),
}


def _role_value(role: Any) -> Optional[str]:
    if role is None:
        return None
    return getattr(role, "value", role)


def can(role: Any, action: str) -> bool:
    """Pure policy lookup: may `role` perform `action`?"""
    allowed = PERMISSIONS.get(action)
    if not allowed:
        return False
    return _role_value(role) in allowed


def allowed_actions(role: Any) -> list[str]:
    """All actions permitted to `role`, sorted (for UI filtering)."""
    value = _role_value(role)
    return sorted(action for action, roles in PERMISSIONS.items() if value in roles)


def require(actor: Any, action: str, *, owner_id: Optional[int] = None) -> None:
    """
    Raise Forbidden unless `actor` may perform `action`.

    If the actor's role is owner-restricted for this action, `owner_id` must equal actor.id.
    """
    role = _role_value(getattr(actor, "role", None))
    if actor is None or not can(role, action):
        raise Forbidden(f"Role '{role}' may not {action.replace('_', ' ')}.")

    if role in OWNER_RESTRICTED.get(action, frozenset()):
        if owner_id is None or owner_id != getattr(actor, "id", None):
            raise Forbidden(f"Role '{role}' may only {action.replace('_', ' ')} on its own records.")


# ---------------------------------------------------------------------
# System actor
# ---------------------------------------------------------------------
class SystemActor:
    """Process-level actor for sweeps, scheduled renewals and usage events."""

    id = None
    role = Role.SYSTEM
    username = "system"

    def __repr__(self):
        return "<SystemActor>"


SYSTEM_ACTOR = SystemActor()


# ---------------------------------------------------------------------
# Route decorator
# ---------------------------------------------------------------------
def action_required(action: str) -> Callable[..., Any]:
    """
    Decorator factory: role-level gate for a view.

    This only checks the role table. Ownership is enforced by the engine call itself.
    Must be placed after @login_required.
    """
    def decorator(view_func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(view_func)
        def wrapper(*args: Any, **kwargs: Any):
            if not can(getattr(current_user, "role", None), action):
                raise Forbidden(f"Role may not {action.replace('_', ' ')}.")
            return view_func(*args, **kwargs)

        return wrapper

    return decorator


def current_actor() -> Any:
    """The logged-in User row (not the proxy), for passing into engine calls."""
    return current_user._get_current_object()
