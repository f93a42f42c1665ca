"""
Tests for the AuthorizationGate.

Verifies:
- Role table lookups (including deny-by-default)
- Ownership restriction for customers
- allowed_actions for UI filtering
"""

import pytest

from billing.errors import Forbidden
from billing.models import Role
from billing.security import SYSTEM_ACTOR, allowed_actions, can, require


class _Actor:
    def __init__(self, id, role):
        self.id = id
        self.role = role


class TestCan:
    """Pure table lookups."""

    @pytest.mark.parametrize(
        "role, action",
        [
            ("sales", "create_quote"),
            ("admin", "create_quote"),
            ("customer", "accept_quote"),
            ("customer", "reject_quote"),
            ("sales", "request_discount"),
            ("admin", "approve_discount"),
            ("admin", "reject_discount"),
            ("system", "generate_invoice"),
            ("finance", "generate_invoice"),
            ("finance", "mark_invoice_paid"),
            ("system", "consume_tokens"),
            ("admin", "consume_tokens"),
        ],
    )
    def test_allowed(self, role, action):
        assert can(role, action) is True

    @pytest.mark.parametrize(
        "role, action",
        [
            ("customer", "create_quote"),
            ("finance", "create_quote"),
            ("sales", "accept_quote"),
            ("sales", "approve_discount"),
            ("customer", "request_discount"),
            ("sales", "mark_invoice_paid"),
            ("customer", "consume_tokens"),
            ("finance", "consume_tokens"),
        ],
    )
    def test_denied(self, role, action):
        assert can(role, action) is False

    def test_unknown_action_is_denied(self):
        assert can("admin", "launch_rockets") is False

    def test_unknown_role_is_denied(self):
        assert can("intern", "create_quote") is False
        assert can(None, "create_quote") is False

    def test_accepts_enum_roles(self):
        assert can(Role.SALES, "create_quote") is True


class TestRequire:
    """Gate with ownership checks."""

    def test_customer_may_act_on_own_record(self):
        require(_Actor(7, Role.CUSTOMER), "accept_quote", owner_id=7)

    def test_customer_may_not_act_on_someone_elses_record(self):
        with pytest.raises(Forbidden):
            require(_Actor(7, Role.CUSTOMER), "accept_quote", owner_id=8)

    def test_admin_is_not_owner_restricted(self):
        require(_Actor(1, Role.ADMIN), "accept_quote", owner_id=8)

    def test_role_denial_raises_forbidden(self):
        with pytest.raises(Forbidden):
            require(_Actor(2, Role.SALES), "approve_discount")

    def test_missing_actor_is_forbidden(self):
        with pytest.raises(Forbidden):
            require(None, "create_quote")

    def test_system_actor_drives_sweeps(self):
        require(SYSTEM_ACTOR, "run_sweeps")
        require(SYSTEM_ACTOR, "consume_tokens")
        with pytest.raises(Forbidden):
            require(SYSTEM_ACTOR, "approve_discount")


class TestAllowedActions:

    def test_matches_table(self):
        actions = allowed_actions(Role.FINANCE)
        assert "mark_invoice_paid" in actions
        assert "create_quote" not in actions
        assert actions == sorted(actions)

    def test_unknown_role_gets_nothing(self):
        assert allowed_actions("intern") == []
