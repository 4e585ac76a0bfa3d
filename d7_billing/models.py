"""
D7 Billing Models

Accounts, subscriptions and payment records for PayU checkout.

Payment records are an append-only audit trail keyed by the gateway's
transaction id; the UNIQUE constraint on that column is what makes
callback processing idempotent. A partial UNIQUE index on the merchant
txnid of successful rows closes replays that alter the unsigned mihpayid.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (JSON, Boolean, CheckConstraint, Column, DateTime,
                        ForeignKey, Index, Numeric, String, Text, text)
from sqlalchemy.orm import relationship

from database.base import Base, DatabaseAgnosticEnum


def generate_uuid():
    """Generate a new UUID"""
    return str(uuid.uuid4())


class UsageTier(str, enum.Enum):
    """Feature tier used for quota decisions"""

    FREE = "free"
    PRO = "pro"
    AGENCY = "agency"
    ENTERPRISE = "enterprise"

    @classmethod
    def for_plan_tier(cls, plan_tier: str) -> "UsageTier":
        """Plan tiers map onto usage tiers; professional is sold as pro"""
        if plan_tier == "professional":
            return cls.PRO
        return cls(plan_tier)


class UserSubscriptionStatus(str, enum.Enum):
    """Denormalized subscription status kept on the account"""

    NONE = "none"
    ACTIVE = "active"
    CANCELLED = "cancelled"  # Paid through end_date, will not renew
    EXPIRED = "expired"


class SubscriptionStatus(str, enum.Enum):
    """Subscription lifecycle"""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentStatus(str, enum.Enum):
    """Outcome recorded for a gateway transaction"""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class User(Base):
    """Account row; created by the auth layer, billing fields owned by the ledger"""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255))

    usage_tier = Column(DatabaseAgnosticEnum(UsageTier), default=UsageTier.FREE, nullable=False)
    subscription_status = Column(
        DatabaseAgnosticEnum(UserSubscriptionStatus),
        default=UserSubscriptionStatus.NONE,
        nullable=False,
    )
    current_subscription_id = Column(String)  # Plain pointer, subscriptions already reference users
    subscription_end_date = Column(DateTime)
    has_used_trial = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    subscriptions = relationship("Subscription", back_populates="user", order_by="Subscription.start_date")

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, tier={self.usage_tier}, status={self.subscription_status})>"


class Subscription(Base):
    """
    One paid period of access.

    end_date is fixed at creation; cancellation only stops renewal, so access
    continues until end_date.
    """

    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)

    tier = Column(String(50), nullable=False)
    plan_name = Column(String(50), nullable=False)
    gateway_order_id = Column(String(255))
    gateway_transaction_id = Column(String(255))
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="INR", nullable=False)

    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    status = Column(
        DatabaseAgnosticEnum(SubscriptionStatus),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    cancelled_at = Column(DateTime)
    cancellation_reason = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="subscriptions")
    payments = relationship("PaymentRecord", back_populates="subscription")

    __table_args__ = (
        Index("idx_subscriptions_user_status", "user_id", "status"),
        Index("idx_subscriptions_status_end_date", "status", "end_date"),
        CheckConstraint("amount >= 0", name="check_subscription_amount_non_negative"),
        CheckConstraint("end_date > start_date", name="check_subscription_period"),
    )

    def __repr__(self):
        return f"<Subscription(id={self.id}, user={self.user_id}, plan={self.plan_name}, status={self.status}, end={self.end_date})>"

    def is_in_paid_period(self, now: datetime) -> bool:
        """Active or cancelled subscriptions keep access until end_date"""
        return (
            self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED)
            and now < self.end_date
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tier": self.tier,
            "plan": self.plan_name,
            "status": self.status.value if self.status else None,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
            "cancelledAt": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }


class PaymentRecord(Base):
    """
    Audit row for one gateway transaction.

    Written once per gateway transaction id; afterwards only subscription_id
    may be backfilled. Never deleted.
    """

    __tablename__ = "payment_records"

    id = Column(String, primary_key=True, default=generate_uuid)
    # No foreign key: the audit trail outlives account cleanup
    user_id = Column(String, nullable=False, index=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"), nullable=True)

    gateway_order_id = Column(String(255))
    merchant_transaction_id = Column(String(255), nullable=False, index=True)
    gateway_transaction_id = Column(String(255), unique=True, nullable=False)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="INR", nullable=False)
    status = Column(DatabaseAgnosticEnum(PaymentStatus), nullable=False)
    payment_method = Column(String(50))
    plan_name = Column(String(50))
    product_info = Column(String(255))

    invoice_number = Column(String(32), unique=True, nullable=True)
    payment_date = Column(DateTime, nullable=False)
    failure_reason = Column(Text)
    error_code = Column(String(100))
    raw_payload = Column(JSON)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    subscription = relationship("Subscription", back_populates="payments")

    __table_args__ = (
        # One successful payment per merchant txnid; mihpayid is not covered by the response hash
        Index(
            "uq_payment_records_success_txnid",
            "merchant_transaction_id",
            unique=True,
            sqlite_where=text("status = 'success'"),
            postgresql_where=text("status = 'success'"),
        ),
        Index("idx_payment_records_user_created", "user_id", "created_at"),
        Index("idx_payment_records_status", "status"),
        CheckConstraint("amount >= 0", name="check_payment_amount_non_negative"),
    )

    def __repr__(self):
        return f"<PaymentRecord(id={self.id}, gtid={self.gateway_transaction_id}, status={self.status}, invoice={self.invoice_number})>"

    @property
    def is_success(self) -> bool:
        return self.status == PaymentStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        amount = self.amount if isinstance(self.amount, Decimal) else Decimal(str(self.amount))
        return {
            "id": self.id,
            "txnid": self.merchant_transaction_id,
            "gatewayTransactionId": self.gateway_transaction_id,
            "orderId": self.gateway_order_id,
            "amount": str(amount),
            "currency": self.currency,
            "status": self.status.value,
            "paymentMethod": self.payment_method,
            "plan": self.plan_name,
            "invoiceNumber": self.invoice_number,
            "paymentDate": self.payment_date.isoformat() if self.payment_date else None,
            "failureReason": self.failure_reason,
        }
