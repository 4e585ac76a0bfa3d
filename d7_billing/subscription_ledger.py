"""
D7 Billing Subscription Ledger

The only writer of subscription status. Every change goes through a named
transition checked against the lifecycle:

    none -> active -> cancelled -> expired
                   -> expired

The account row mirrors the current subscription (status, end date, tier).
The ledger flushes but never commits; callers own the transaction.
"""

import calendar
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import NotFoundError, PersistenceFailureError, SubscriptionStateError, ValidationError
from core.logging import get_logger

from .models import Subscription, SubscriptionStatus, UsageTier, User, UserSubscriptionStatus

logger = get_logger("d7_billing.subscription_ledger")

ALLOWED_TRANSITIONS = {
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED},
    SubscriptionStatus.CANCELLED: {SubscriptionStatus.EXPIRED},
    SubscriptionStatus.EXPIRED: set(),
}

PAID_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED)


def add_months(start: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of shorter months"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class SubscriptionLedger:
    """State machine over a user's subscriptions"""

    def __init__(
        self,
        db: Session,
        period_months: int = 1,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.period_months = period_months
        self.clock = clock or datetime.utcnow

    # Reads

    def get_user(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        return self.db.query(User).filter(User.id == user_id).first()

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.id == subscription_id).first()

    def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status == SubscriptionStatus.ACTIVE)
            .order_by(desc(Subscription.start_date))
            .first()
        )

    def current_subscription(self, user_id: str) -> Optional[Subscription]:
        """Most recent subscription in any state"""
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(desc(Subscription.start_date), desc(Subscription.created_at))
            .first()
        )

    def has_access(self, user_id: str, now: Optional[datetime] = None) -> bool:
        """True while an active or cancelled subscription is inside its paid period"""
        now = now or self.clock()
        return (
            self.db.query(Subscription.id)
            .filter(
                Subscription.user_id == user_id,
                Subscription.status.in_(PAID_STATUSES),
                Subscription.end_date > now,
            )
            .first()
            is not None
        )

    # Transitions

    def _transition(self, subscription: Subscription, target: SubscriptionStatus) -> None:
        current = subscription.status
        if target not in ALLOWED_TRANSITIONS[current]:
            raise SubscriptionStateError(subscription.id, current.value, target.value)
        subscription.status = target

    def activate(
        self,
        user: User,
        tier: str,
        plan_name: str,
        start: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        amount: Decimal = Decimal("0"),
        currency: str = "INR",
        gateway_order_id: Optional[str] = None,
        gateway_transaction_id: Optional[str] = None,
    ) -> Subscription:
        """
        Start a new paid period for the user.

        A still-active subscription is superseded (moved to expired with its
        end date untouched) rather than extended.
        """
        try:
            usage_tier = UsageTier.for_plan_tier(tier)
        except ValueError:
            raise ValidationError(f"Unknown subscription tier: {tier}", field="tier")

        start = start or self.clock()
        end_date = end_date or add_months(start, self.period_months)
        if end_date <= start:
            raise ValidationError("Subscription must end after it starts", field="end_date")

        try:
            previous = self.get_active_subscription(user.id)
            if previous is not None:
                self._transition(previous, SubscriptionStatus.EXPIRED)
                logger.info(f"Subscription {previous.id} superseded for user {user.id}")

            subscription = Subscription(
                user_id=user.id,
                tier=tier,
                plan_name=plan_name,
                gateway_order_id=gateway_order_id,
                gateway_transaction_id=gateway_transaction_id,
                amount=amount,
                currency=currency,
                start_date=start,
                end_date=end_date,
                status=SubscriptionStatus.ACTIVE,
            )
            self.db.add(subscription)
            self.db.flush()

            user.current_subscription_id = subscription.id
            user.subscription_status = UserSubscriptionStatus.ACTIVE
            user.subscription_end_date = end_date
            user.usage_tier = usage_tier
            user.has_used_trial = True
            self.db.flush()
        except SQLAlchemyError as e:
            logger.error(f"Database error activating subscription for user {user.id}: {e}")
            raise PersistenceFailureError("Failed to activate subscription", operation="activate_subscription")

        logger.info(
            f"Activated {plan_name} subscription {subscription.id} for user {user.id} "
            f"until {end_date.isoformat()}"
        )
        return subscription

    def cancel(
        self, subscription_id: str, reason: Optional[str] = None, now: Optional[datetime] = None
    ) -> Subscription:
        """Stop renewal; access continues until the unchanged end date"""
        subscription = self.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)

        self._transition(subscription, SubscriptionStatus.CANCELLED)
        subscription.cancelled_at = now or self.clock()
        subscription.cancellation_reason = reason

        user = self.get_user(subscription.user_id)
        if user is not None and user.current_subscription_id == subscription.id:
            user.subscription_status = UserSubscriptionStatus.CANCELLED

        try:
            self.db.flush()
        except SQLAlchemyError as e:
            logger.error(f"Database error cancelling subscription {subscription_id}: {e}")
            raise PersistenceFailureError("Failed to cancel subscription", operation="cancel_subscription")

        logger.info(f"Cancelled subscription {subscription_id}, access until {subscription.end_date.isoformat()}")
        return subscription

    def cancel_active_for_user(self, user_id: str, reason: Optional[str] = None) -> Subscription:
        active = self.get_active_subscription(user_id)
        if active is None:
            raise NotFoundError("Active subscription", user_id)
        return self.cancel(active.id, reason=reason)

    def expire(self, subscription: Subscription) -> Subscription:
        self._transition(subscription, SubscriptionStatus.EXPIRED)

        user = self.get_user(subscription.user_id)
        if user is not None and user.current_subscription_id == subscription.id:
            user.subscription_status = UserSubscriptionStatus.EXPIRED
            user.usage_tier = UsageTier.FREE
        return subscription

    def expire_due(self, now: Optional[datetime] = None) -> List[Subscription]:
        """Expire every paid subscription whose end date has passed (scheduled sweep)"""
        now = now or self.clock()
        due = (
            self.db.query(Subscription)
            .filter(Subscription.status.in_(PAID_STATUSES), Subscription.end_date <= now)
            .all()
        )
        for subscription in due:
            self.expire(subscription)

        try:
            self.db.flush()
        except SQLAlchemyError as e:
            logger.error(f"Database error expiring subscriptions: {e}")
            raise PersistenceFailureError("Failed to expire subscriptions", operation="expire_due")

        if due:
            logger.info(f"Expired {len(due)} subscriptions due before {now.isoformat()}")
        return due
