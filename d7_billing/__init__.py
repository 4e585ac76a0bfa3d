"""
D7 Billing - PayU payments and subscriptions

Signs checkout orders, verifies and reconciles gateway callbacks into
exactly-once subscription activation, and sends invoices after the gateway
has been acknowledged.
"""

from .deferred_tasks import DeferredTask, DeferredTaskRunner, InvoiceEmailTask
from .gateway_config import GatewayConfig, PlanConfig
from .identifiers import IdentifierFactory
from .models import PaymentRecord, PaymentStatus, Subscription, SubscriptionStatus, UsageTier, User, UserSubscriptionStatus
from .orders import Order, OrderIssuer
from .payment_store import PaymentStore
from .reconciler import CallbackReconciler, EntryPoint, ReconcileOutcome, ReconcileResult
from .subscription_ledger import SubscriptionLedger

__all__ = [
    # Models
    "User",
    "Subscription",
    "PaymentRecord",
    "UsageTier",
    "UserSubscriptionStatus",
    "SubscriptionStatus",
    "PaymentStatus",
    # Configuration
    "GatewayConfig",
    "PlanConfig",
    # Components
    "IdentifierFactory",
    "PaymentStore",
    "SubscriptionLedger",
    "CallbackReconciler",
    "EntryPoint",
    "ReconcileOutcome",
    "ReconcileResult",
    "DeferredTask",
    "DeferredTaskRunner",
    "InvoiceEmailTask",
    "Order",
    "OrderIssuer",
]
