"""
Engine services. Each class owns one entity and its state machine.

Routes and CLI commands call these; they never write models directly.
"""

from .discounts import DiscountApprovalWorkflow  # noqa: F401
from .invoices import InvoiceLedger  # noqa: F401
from .quotes import QuoteLedger  # noqa: F401
from .subscriptions import PlanCatalog, SubscriptionManager  # noqa: F401
from .tokens import TokenBalanceLedger  # noqa: F401
