"""
Repository for payment records.

The gateway transaction id is the idempotency anchor: a record is claimed by
inserting it under the UNIQUE constraint, so concurrent deliveries of the same
callback race on the database rather than on application state.

Callers own the transaction. Every write here runs inside a SAVEPOINT so a
failed claim leaves the surrounding transaction usable.
"""

from typing import List, Optional

from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import DuplicateError, DuplicateTransactionError, PersistenceFailureError
from core.logging import get_logger

from .models import PaymentRecord, PaymentStatus

logger = get_logger("d7_billing.payment_store")


class PaymentStore:
    """Repository for PaymentRecord reads and idempotent writes"""

    def __init__(self, db: Session):
        self.db = db

    def find_by_gateway_transaction_id(self, gateway_transaction_id: str) -> Optional[PaymentRecord]:
        """Get the record claimed for a gateway transaction, if any"""
        try:
            return (
                self.db.query(PaymentRecord)
                .filter(PaymentRecord.gateway_transaction_id == gateway_transaction_id)
                .first()
            )
        except SQLAlchemyError as e:
            logger.error(f"Database error reading payment {gateway_transaction_id}: {e}")
            raise PersistenceFailureError(
                "Failed to read payment record",
                operation="find_payment",
                gateway_transaction_id=gateway_transaction_id,
            )

    def find_success_by_merchant_transaction_id(self, merchant_transaction_id: str) -> Optional[PaymentRecord]:
        """Get the successful record for a merchant txnid, if any"""
        try:
            return (
                self.db.query(PaymentRecord)
                .filter(
                    PaymentRecord.merchant_transaction_id == merchant_transaction_id,
                    PaymentRecord.status == PaymentStatus.SUCCESS,
                )
                .first()
            )
        except SQLAlchemyError as e:
            logger.error(f"Database error reading payment for txnid {merchant_transaction_id}: {e}")
            raise PersistenceFailureError(
                "Failed to read payment record",
                operation="find_payment",
                merchant_transaction_id=merchant_transaction_id,
            )

    def find_claim(self, gateway_transaction_id: str, merchant_transaction_id: str) -> Optional[PaymentRecord]:
        """Record already holding the claim: same gateway id, else a success for the same txnid"""
        record = self.find_by_gateway_transaction_id(gateway_transaction_id)
        if record is None:
            record = self.find_success_by_merchant_transaction_id(merchant_transaction_id)
        return record

    def claim(self, record: PaymentRecord) -> PaymentRecord:
        """
        Atomically insert a record for its gateway transaction id.

        A successful record is also exclusive on its merchant txnid.

        Raises:
            DuplicateTransactionError: another delivery already holds the claim
            PersistenceFailureError: the insert failed for any other reason
        """
        gateway_transaction_id = record.gateway_transaction_id
        try:
            with self.db.begin_nested():
                self.db.add(record)
                self.db.flush()
        except IntegrityError as e:
            existing = self.find_by_gateway_transaction_id(gateway_transaction_id)
            if existing is None and record.status == PaymentStatus.SUCCESS:
                existing = self.find_success_by_merchant_transaction_id(record.merchant_transaction_id)
            if existing is not None:
                gateway_transaction_id = existing.gateway_transaction_id
                logger.info(f"Payment {gateway_transaction_id} already claimed by record {existing.id}")
                raise DuplicateTransactionError(gateway_transaction_id)
            # Constraint violation that is not the idempotency key
            logger.error(f"Integrity error claiming payment {gateway_transaction_id}: {e}")
            raise PersistenceFailureError(
                "Failed to record payment",
                operation="claim_payment",
                gateway_transaction_id=gateway_transaction_id,
            )
        except SQLAlchemyError as e:
            logger.error(f"Database error claiming payment {gateway_transaction_id}: {e}")
            raise PersistenceFailureError(
                "Failed to record payment",
                operation="claim_payment",
                gateway_transaction_id=gateway_transaction_id,
            )

        logger.info(
            f"Claimed payment {gateway_transaction_id} - status: {record.status.value}, "
            f"user: {record.user_id}, amount: {record.amount}"
        )
        return record

    def highest_invoice_number(self, prefix: str) -> Optional[str]:
        """Largest invoice number starting with prefix (fixed width, so MAX sorts correctly)"""
        try:
            return (
                self.db.query(func.max(PaymentRecord.invoice_number))
                .filter(PaymentRecord.invoice_number.like(f"{prefix}%"))
                .scalar()
            )
        except SQLAlchemyError as e:
            logger.error(f"Database error reading invoice sequence {prefix}: {e}")
            raise PersistenceFailureError("Failed to read invoice sequence", operation="highest_invoice_number")

    def assign_invoice_number(self, record: PaymentRecord, invoice_number: str) -> PaymentRecord:
        """
        Write an invoice number onto a freshly claimed record.

        Raises:
            DuplicateError: the number is already taken
            PersistenceFailureError: the update failed for any other reason
        """
        try:
            with self.db.begin_nested():
                record.invoice_number = invoice_number
                self.db.flush()
        except IntegrityError:
            logger.warning(f"Invoice number {invoice_number} already taken")
            raise DuplicateError("Invoice number", invoice_number)
        except SQLAlchemyError as e:
            logger.error(f"Database error assigning invoice {invoice_number}: {e}")
            raise PersistenceFailureError("Failed to assign invoice number", operation="assign_invoice_number")
        return record

    def backfill_subscription(self, record: PaymentRecord, subscription_id: str) -> PaymentRecord:
        """Link a record to the subscription it paid for; the link is written once"""
        if record.subscription_id is not None:
            if record.subscription_id != subscription_id:
                logger.warning(
                    f"Payment {record.gateway_transaction_id} already linked to "
                    f"{record.subscription_id}, ignoring {subscription_id}"
                )
            return record
        try:
            with self.db.begin_nested():
                record.subscription_id = subscription_id
                self.db.flush()
        except SQLAlchemyError as e:
            logger.error(f"Database error linking payment {record.gateway_transaction_id}: {e}")
            raise PersistenceFailureError("Failed to link payment to subscription", operation="backfill_subscription")
        return record

    def get_by_invoice_number(self, invoice_number: str) -> Optional[PaymentRecord]:
        return self.db.query(PaymentRecord).filter(PaymentRecord.invoice_number == invoice_number).first()

    def list_for_user(self, user_id: str, limit: int = 50) -> List[PaymentRecord]:
        """Payment history, newest first"""
        return (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.user_id == user_id)
            .order_by(desc(PaymentRecord.payment_date), desc(PaymentRecord.created_at))
            .limit(limit)
            .all()
        )
