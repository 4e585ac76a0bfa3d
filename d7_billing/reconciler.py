"""
D7 Billing Callback Reconciler

Turns PayU callbacks into exactly-once bookkeeping. The same payment can be
reported up to three times (webhook, success redirect, failure redirect) in
any order and concurrently; all three entry points run the same
reconciliation and differ only in how the API layer acknowledges them.

First sighting of a successful payment commits, in one transaction:
claim record -> invoice number -> subscription -> record/subscription link.
The invoice email is queued only after that commit, so a gateway retry after
a failure finds nothing half-written.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import (DuplicateTransactionError, MissingFieldError, PersistenceFailureError,
                             SignatureInvalidError, UserOrPlanNotFoundError, ValidationError)
from core.logging import get_logger

from . import hash_codec
from .deferred_tasks import DeferredTaskRunner, InvoiceEmailTask
from .email_client import EmailSender, LoggingEmailSender
from .gateway_config import GatewayConfig, PlanConfig
from .identifiers import IdentifierFactory
from .invoice import HtmlInvoiceRenderer, InvoiceDocument, InvoiceRenderer
from .models import PaymentRecord, PaymentStatus, User
from .payment_store import PaymentStore
from .subscription_ledger import SubscriptionLedger

logger = get_logger("d7_billing.reconciler")

REQUIRED_FIELDS = (
    "key",
    "txnid",
    "amount",
    "productinfo",
    "firstname",
    "email",
    "status",
    "udf1",
    "udf2",
    "udf3",
    "udf4",
    "hash",
)

OPTIONAL_FIELDS = (
    "udf5",
    "mode",
    "bankcode",
    "cardnum",
    "name_on_card",
    "error",
    "error_Message",
    "field9",
    "mihpayid",
)

SUCCESS_STATUS = "success"
DEFAULT_FAILURE_REASON = "Payment failed"


class EntryPoint(str, enum.Enum):
    """Channel a callback arrived on"""

    WEBHOOK = "webhook"
    SUCCESS_REDIRECT = "success"
    FAILURE_REDIRECT = "failure"


class ReconcileOutcome(str, enum.Enum):
    ACTIVATED = "activated"  # First sighting of a successful payment
    ALREADY_PROCESSED = "already_processed"
    PAYMENT_FAILED = "payment_failed"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    txnid: str
    gateway_transaction_id: str
    plan_name: Optional[str] = None
    invoice_number: Optional[str] = None
    subscription_id: Optional[str] = None
    error_message: Optional[str] = None
    task_enqueued: bool = False

    @property
    def is_success(self) -> bool:
        return self.outcome in (ReconcileOutcome.ACTIVATED, ReconcileOutcome.ALREADY_PROCESSED)

    @property
    def message(self) -> str:
        if self.outcome == ReconcileOutcome.ACTIVATED:
            return "Payment processed successfully"
        if self.outcome == ReconcileOutcome.ALREADY_PROCESSED:
            return "Already processed"
        return "Webhook processed (payment failed)"

    def to_ack(self) -> Dict[str, Any]:
        """Webhook acknowledgment body"""
        return {
            "status": "success",
            "message": self.message,
            "txnid": self.txnid,
            "gatewayTransactionId": self.gateway_transaction_id,
            "invoiceNumber": self.invoice_number,
        }


def missing_fields(data: Mapping[str, Any]) -> List[str]:
    missing = []
    for name in REQUIRED_FIELDS:
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def gateway_transaction_id(data: Mapping[str, Any]) -> str:
    """PayU's own payment id when present, else the merchant txnid (mihpayid is unsigned)"""
    mihpayid = data.get("mihpayid")
    if mihpayid is not None and str(mihpayid).strip():
        return str(mihpayid).strip()
    return str(data["txnid"]).strip()


def parse_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be numeric", field="amount", value=str(value))
    if not amount.is_finite() or amount < 0:
        raise ValidationError("Amount must be a non-negative number", field="amount", value=str(value))
    return amount


def audit_payload(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Callback fields kept for audit; the hash is not stored"""
    return {
        name: value if isinstance(value, (str, int, float, bool)) or value is None else str(value)
        for name, value in data.items()
        if name != "hash"
    }


def _text(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    return "" if value is None else str(value).strip()


class CallbackReconciler:
    """Validates callbacks, claims them once, drives the ledger, queues follow-up work"""

    def __init__(
        self,
        config: GatewayConfig,
        session_factory: Callable[[], Session],
        task_runner: Optional[DeferredTaskRunner] = None,
        renderer: Optional[InvoiceRenderer] = None,
        email_sender: Optional[EmailSender] = None,
        identifiers: Optional[IdentifierFactory] = None,
        clock: Optional[Callable[[], datetime]] = None,
        company_name: str = "One Client Report",
    ):
        self.config = config
        self.session_factory = session_factory
        self.task_runner = task_runner
        self.renderer = renderer or HtmlInvoiceRenderer(company_name=company_name)
        self.email_sender = email_sender or LoggingEmailSender()
        self.clock = clock or datetime.utcnow
        self.identifiers = identifiers or IdentifierFactory(clock=self.clock)
        self.company_name = company_name

    def reconcile(self, data: Mapping[str, Any], entry_point: EntryPoint) -> ReconcileResult:
        """
        Process one callback delivery.

        Raises:
            MissingFieldError: required gateway fields absent
            SignatureInvalidError: hash does not verify; nothing is written
            UserOrPlanNotFoundError: paid callback for an unknown account or plan
            PersistenceFailureError: store failure, nothing committed, safe to retry
        """
        log = logger.with_context(entry_point=entry_point.value, txnid=_text(data, "txnid"))

        missing = missing_fields(data)
        if missing:
            log.warning(f"Callback missing required fields: {missing}")
            raise MissingFieldError(missing)

        txnid = _text(data, "txnid")
        if not hash_codec.verify(data, self.config.merchant_salt, data.get("hash")):
            log.error("Callback hash verification failed")
            raise SignatureInvalidError(txnid)

        gtid = gateway_transaction_id(data)
        log = log.with_context(gateway_transaction_id=gtid)
        log.info(f"Verified {entry_point.value} callback with status {_text(data, 'status')}")

        if _text(data, "status") != SUCCESS_STATUS:
            return self._record_failure(data, txnid, gtid, log)

        existing = self._find_existing(gtid, txnid)
        if existing is not None:
            return self._already_processed(existing, txnid, log)

        return self._activate(data, txnid, gtid, log)

    def _find_existing(self, gtid: str, txnid: str) -> Optional[Dict[str, Any]]:
        """Snapshot of the record holding the claim for this gateway id or txnid, if any"""
        try:
            with self.session_factory() as db:
                record = PaymentStore(db).find_claim(gtid, txnid)
                if record is None:
                    return None
                return {
                    "gateway_transaction_id": record.gateway_transaction_id,
                    "status": record.status,
                    "plan_name": record.plan_name,
                    "invoice_number": record.invoice_number,
                    "subscription_id": record.subscription_id,
                }
        except SQLAlchemyError as e:
            raise PersistenceFailureError("Failed to read payment record", operation="find_payment", error=str(e))

    def _already_processed(self, existing: Dict[str, Any], txnid: str, log) -> ReconcileResult:
        if existing["status"] != PaymentStatus.SUCCESS:
            log.warning(
                f"Success callback for transaction already recorded as {existing['status'].value}; "
                "leaving the record unchanged"
            )
        else:
            log.info(f"Transaction already processed, invoice {existing['invoice_number']}")
        return ReconcileResult(
            outcome=ReconcileOutcome.ALREADY_PROCESSED,
            txnid=txnid,
            gateway_transaction_id=existing["gateway_transaction_id"],
            plan_name=existing["plan_name"],
            invoice_number=existing["invoice_number"],
            subscription_id=existing["subscription_id"],
        )

    def _record_failure(self, data: Mapping[str, Any], txnid: str, gtid: str, log) -> ReconcileResult:
        gateway_message = _text(data, "error_Message") or _text(data, "error")
        reason = gateway_message or DEFAULT_FAILURE_REASON
        try:
            amount = parse_amount(data.get("amount"))
        except ValidationError:
            amount = Decimal("0")

        result = ReconcileResult(
            outcome=ReconcileOutcome.PAYMENT_FAILED,
            txnid=txnid,
            gateway_transaction_id=gtid,
            plan_name=_text(data, "udf2") or None,
            error_message=gateway_message or None,
        )

        record = PaymentRecord(
            user_id=_text(data, "udf1"),
            gateway_order_id=_text(data, "udf3") or None,
            merchant_transaction_id=txnid,
            gateway_transaction_id=gtid,
            amount=amount,
            status=PaymentStatus.FAILED,
            payment_method=_text(data, "mode") or None,
            plan_name=_text(data, "udf2") or None,
            product_info=_text(data, "productinfo")[:255] or None,
            payment_date=self.clock(),
            failure_reason=reason,
            error_code=_text(data, "error") or None,
            raw_payload=audit_payload(data),
        )
        try:
            with self.session_factory() as db:
                with db.begin():
                    PaymentStore(db).claim(record)
        except DuplicateTransactionError:
            log.info("Failed payment already recorded")
            return result
        except SQLAlchemyError as e:
            log.error(f"Database error recording failed payment: {e}")
            raise PersistenceFailureError("Failed to record payment", operation="record_failure")

        log.info(f"Recorded failed payment: {reason}")
        return result

    def _resolve_user_and_plan(
        self, ledger: SubscriptionLedger, data: Mapping[str, Any], txnid: str
    ) -> Tuple[User, PlanConfig]:
        user_id = _text(data, "udf1")
        user = ledger.get_user(user_id)
        if user is None:
            raise UserOrPlanNotFoundError("User", user_id, txnid=txnid)

        plan_name = _text(data, "udf2")
        plan = self.config.get_plan(plan_name)
        if plan is None or not plan.purchasable or plan.tier != _text(data, "udf4").lower():
            raise UserOrPlanNotFoundError("Plan", plan_name, txnid=txnid)
        return user, plan

    def _activate(self, data: Mapping[str, Any], txnid: str, gtid: str, log) -> ReconcileResult:
        now = self.clock()
        amount = parse_amount(data.get("amount"))

        try:
            with self.session_factory() as db:
                with db.begin():
                    store = PaymentStore(db)
                    ledger = SubscriptionLedger(
                        db, period_months=self.config.subscription_period_months, clock=self.clock
                    )
                    user, plan = self._resolve_user_and_plan(ledger, data, txnid)
                    if amount != plan.amount:
                        log.warning(f"Paid amount {amount} differs from {plan.name} price {plan.amount}")

                    record = store.claim(
                        PaymentRecord(
                            user_id=user.id,
                            gateway_order_id=_text(data, "udf3"),
                            merchant_transaction_id=txnid,
                            gateway_transaction_id=gtid,
                            amount=amount,
                            currency=plan.currency,
                            status=PaymentStatus.SUCCESS,
                            payment_method=_text(data, "mode") or None,
                            plan_name=plan.name,
                            product_info=_text(data, "productinfo")[:255],
                            payment_date=now,
                            raw_payload=audit_payload(data),
                        )
                    )
                    invoice_number = self.identifiers.allocate_invoice_number(store, record, now)
                    subscription = ledger.activate(
                        user,
                        tier=plan.tier,
                        plan_name=plan.name,
                        start=now,
                        amount=amount,
                        currency=plan.currency,
                        gateway_order_id=record.gateway_order_id,
                        gateway_transaction_id=gtid,
                    )
                    store.backfill_subscription(record, subscription.id)

                    subscription_id = subscription.id
                    invoice = InvoiceDocument.from_payment(
                        record,
                        customer_name=_text(data, "firstname"),
                        customer_email=_text(data, "email"),
                    )
        except DuplicateTransactionError:
            # Another delivery committed first
            existing = self._find_existing(gtid, txnid)
            if existing is None:
                raise PersistenceFailureError("Claimed payment record not found", operation="find_payment")
            return self._already_processed(existing, txnid, log)
        except UserOrPlanNotFoundError as e:
            log.error(f"Paid callback needs manual review: {e.message}", extra={"requires_manual_review": True})
            raise
        except SQLAlchemyError as e:
            log.error(f"Database error reconciling payment: {e}")
            raise PersistenceFailureError("Failed to reconcile payment", operation="reconcile")

        log.info(f"Activated subscription {subscription_id} with invoice {invoice_number}")
        enqueued = self._enqueue_invoice(invoice, log)

        return ReconcileResult(
            outcome=ReconcileOutcome.ACTIVATED,
            txnid=txnid,
            gateway_transaction_id=gtid,
            plan_name=plan.name,
            invoice_number=invoice_number,
            subscription_id=subscription_id,
            task_enqueued=enqueued,
        )

    def _enqueue_invoice(self, invoice: InvoiceDocument, log) -> bool:
        if self.task_runner is None:
            log.warning(f"No deferred task runner configured, invoice {invoice.invoice_number} not emailed")
            return False
        task = InvoiceEmailTask(invoice, self.renderer, self.email_sender, company_name=self.company_name)
        return self.task_runner.submit(task)
