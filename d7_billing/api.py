"""
D7 Billing API

PayU checkout, gateway callbacks, subscription management and invoices.

Callback endpoints (webhook, success, failure) are called by the gateway or
the customer's browser and authenticate through the payload hash. The other
endpoints act on behalf of the signed-in user.
"""

from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from core.config import settings
from core.exceptions import (MissingFieldError, NotFoundError, OneReportError, SignatureInvalidError,
                             UserOrPlanNotFoundError, ValidationError)
from core.logging import get_logger
from database.session import SessionLocal, get_db

from .deferred_tasks import DeferredTaskRunner
from .email_client import build_email_sender
from .gateway_config import GatewayConfig
from .identifiers import IdentifierFactory
from .invoice import HtmlInvoiceRenderer, InvoiceDocument, InvoiceRenderer
from .orders import OrderIssuer
from .payment_store import PaymentStore
from .reconciler import CallbackReconciler, EntryPoint, ReconcileResult, gateway_transaction_id
from .schemas import (CancelSubscriptionRequest, CancelSubscriptionResponse, CreateOrderRequest,
                      CreateOrderResponse, ErrorResponse, PaymentHistoryResponse, SubscriptionStatusResponse,
                      WebhookAckResponse, WebhookErrorResponse)
from .subscription_ledger import SubscriptionLedger

logger = get_logger("d7_billing.api")

# Initialize API routers
router = APIRouter(prefix="/payment", tags=["payment"])
subscription_router = APIRouter(prefix="/subscription", tags=["subscription"])

# Global instances, wired once from settings
gateway_config = GatewayConfig.from_settings(settings)
task_runner = DeferredTaskRunner(
    max_queue_size=settings.deferred_queue_size,
    workers=settings.deferred_workers,
)
invoice_renderer = HtmlInvoiceRenderer(company_name=settings.from_name, support_email=settings.support_email)
reconciler = CallbackReconciler(
    gateway_config,
    SessionLocal,
    task_runner=task_runner,
    renderer=invoice_renderer,
    email_sender=build_email_sender(settings),
    identifiers=IdentifierFactory(max_retries=settings.invoice_allocation_max_retries),
    company_name=settings.from_name,
)
order_issuer = OrderIssuer(gateway_config)


# Dependency injection helpers
def get_gateway_config() -> GatewayConfig:
    return gateway_config


def get_reconciler() -> CallbackReconciler:
    return reconciler


def get_order_issuer() -> OrderIssuer:
    return order_issuer


def get_invoice_renderer() -> InvoiceRenderer:
    return invoice_renderer


def get_task_runner() -> DeferredTaskRunner:
    return task_runner


def get_current_user_id(request: Request) -> str:
    """User id placed on request.state by the upstream auth middleware"""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return str(user_id)


# Error handling utilities
def create_error_response(
    error_message: str,
    error_type: str = "APIError",
    error_code: Optional[str] = None,
    status_code: int = 400,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Create standardized error response"""
    error_response = ErrorResponse(
        error=error_message,
        error_type=error_type,
        error_code=error_code,
        details=details or {},
    )
    return JSONResponse(status_code=status_code, content=error_response.model_dump(mode="json"))


def error_response_for(exc: OneReportError) -> JSONResponse:
    return create_error_response(
        error_message=exc.message,
        error_type=type(exc).__name__,
        error_code=exc.error_code,
        status_code=exc.status_code,
        details=exc.details,
    )


def webhook_error_response(exc: OneReportError, data: Mapping[str, Any]) -> JSONResponse:
    """Gateway-facing error body; the status code tells PayU whether to retry"""
    txnid = str(data.get("txnid") or "").strip() or None
    body = WebhookErrorResponse(
        message=exc.message,
        txnid=txnid,
        gatewayTransactionId=gateway_transaction_id(data) if txnid else None,
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


async def read_callback_payload(request: Request) -> Dict[str, Any]:
    """Gateway callbacks arrive form-encoded or as JSON"""
    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            payload = await request.json()
        else:
            form = await request.form()
            payload = {name: value for name, value in form.items() if isinstance(value, str)}
    except ValueError:
        raise ValidationError("Invalid payload")

    if not isinstance(payload, dict):
        raise ValidationError("Invalid payload")
    return payload


def redirect_error_code(exc: Exception) -> str:
    """Error code shown on the failure page"""
    if isinstance(exc, SignatureInvalidError):
        return "invalid_hash"
    if isinstance(exc, MissingFieldError):
        return "missing_fields"
    if isinstance(exc, UserOrPlanNotFoundError):
        return "user_not_found"
    return "processing_error"


def _page_url(config: GatewayConfig, page: str, params: Dict[str, Optional[str]]) -> str:
    query = urlencode({name: value for name, value in params.items() if value})
    return f"{config.app_url}/subscribe/{page}" + (f"?{query}" if query else "")


def success_redirect(config: GatewayConfig, result: ReconcileResult) -> RedirectResponse:
    url = _page_url(
        config,
        "success",
        {"txnid": result.txnid, "plan": result.plan_name, "invoice": result.invoice_number},
    )
    return RedirectResponse(url=url, status_code=303)


def failure_redirect(
    config: GatewayConfig, txnid: Optional[str], error: str, plan: Optional[str] = None
) -> RedirectResponse:
    url = _page_url(config, "failure", {"txnid": txnid, "error": error, "plan": plan})
    return RedirectResponse(url=url, status_code=303)


# Gateway callbacks


@router.post(
    "/webhook",
    response_model=WebhookAckResponse,
    responses={code: {"model": WebhookErrorResponse} for code in (400, 401, 404, 503)},
    summary="PayU server-to-server notification",
    description="Authoritative payment notification; answered without waiting for invoice or email work",
)
async def payment_webhook(
    request: Request,
    payment_reconciler: CallbackReconciler = Depends(get_reconciler),
):
    """
    PayU webhook

    Non-2xx answers make the gateway retry, so only transient failures
    (503) ask for a retry; bad signatures and bad payloads are final.
    """
    data: Dict[str, Any] = {}
    try:
        data = await read_callback_payload(request)
        result = await run_in_threadpool(payment_reconciler.reconcile, data, EntryPoint.WEBHOOK)
    except OneReportError as e:
        if e.retryable:
            logger.error(f"Webhook processing failed, gateway will retry: {e.message}")
        else:
            logger.warning(f"Webhook rejected ({e.error_code}): {e.message}")
        return webhook_error_response(e, data)

    logger.info(f"Webhook acknowledged for {result.gateway_transaction_id}: {result.outcome.value}")
    return JSONResponse(status_code=200, content=result.to_ack())


async def _browser_callback(
    request: Request,
    payment_reconciler: CallbackReconciler,
    config: GatewayConfig,
    entry_point: EntryPoint,
) -> RedirectResponse:
    txnid = None
    plan = None
    try:
        data = await read_callback_payload(request)
        txnid = str(data.get("txnid") or "") or None
        plan = str(data.get("udf2") or "") or None
        result = await run_in_threadpool(payment_reconciler.reconcile, data, entry_point)
    except OneReportError as e:
        logger.warning(f"{entry_point.value} redirect for {txnid} failed ({e.error_code}): {e.message}")
        return failure_redirect(config, txnid, redirect_error_code(e), plan)
    except Exception as e:
        # The customer always lands on a page
        logger.exception(f"Unexpected error handling {entry_point.value} redirect for {txnid}: {e}")
        return failure_redirect(config, txnid, "processing_error", plan)

    if result.is_success:
        return success_redirect(config, result)
    return failure_redirect(config, result.txnid, result.error_message or "payment_failed", result.plan_name)


@router.post("/success", summary="PayU success redirect", status_code=303)
async def payment_success(
    request: Request,
    payment_reconciler: CallbackReconciler = Depends(get_reconciler),
    config: GatewayConfig = Depends(get_gateway_config),
) -> RedirectResponse:
    return await _browser_callback(request, payment_reconciler, config, EntryPoint.SUCCESS_REDIRECT)


@router.post("/failure", summary="PayU failure redirect", status_code=303)
async def payment_failure(
    request: Request,
    payment_reconciler: CallbackReconciler = Depends(get_reconciler),
    config: GatewayConfig = Depends(get_gateway_config),
) -> RedirectResponse:
    # A late "success" can arrive here too; the outcome decides the page
    return await _browser_callback(request, payment_reconciler, config, EntryPoint.FAILURE_REDIRECT)


# Checkout and history


@router.post(
    "/create-order",
    response_model=CreateOrderResponse,
    summary="Create a signed PayU order",
)
def create_order(
    body: CreateOrderRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    issuer: OrderIssuer = Depends(get_order_issuer),
):
    user = SubscriptionLedger(db).get_user(user_id)
    if user is None:
        return error_response_for(NotFoundError("User", user_id))

    try:
        plan = issuer.resolve_plan(body.plan)
        order = issuer.issue(user, plan.name, phone=body.phone)
    except OneReportError as e:
        logger.warning(f"Order creation failed for user {user_id}: {e.message}")
        return error_response_for(e)

    return CreateOrderResponse(success=True, data=issuer.order_response(order, plan))


@router.get("/history", response_model=PaymentHistoryResponse, summary="Payment history for the current user")
def payment_history(
    limit: int = 50,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    records = PaymentStore(db).list_for_user(user_id, limit=max(1, min(limit, 200)))
    payments = [record.to_dict() for record in records]
    return PaymentHistoryResponse(payments=payments, count=len(payments))


@router.get("/invoices/{invoice_number}", summary="Download an invoice")
def download_invoice(
    invoice_number: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    renderer: InvoiceRenderer = Depends(get_invoice_renderer),
):
    record = PaymentStore(db).get_by_invoice_number(invoice_number)
    # Other users' invoices are reported as missing
    if record is None or record.user_id != user_id:
        return error_response_for(NotFoundError("Invoice", invoice_number))

    user = SubscriptionLedger(db).get_user(user_id)
    payload = record.raw_payload or {}
    invoice = InvoiceDocument.from_payment(
        record,
        customer_name=payload.get("firstname") or (user.name if user else None),
        customer_email=payload.get("email") or (user.email if user else ""),
    )
    rendered = renderer.render(invoice)
    return Response(
        content=rendered.content,
        media_type=rendered.content_type,
        headers={"Content-Disposition": f'attachment; filename="{rendered.filename}"'},
    )


# Subscription management


@subscription_router.get("", response_model=SubscriptionStatusResponse, summary="Current subscription")
def get_subscription(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    ledger = SubscriptionLedger(db)
    user = ledger.get_user(user_id)
    if user is None:
        return error_response_for(NotFoundError("User", user_id))

    current = ledger.current_subscription(user_id)
    return SubscriptionStatusResponse(
        subscription=current.to_dict() if current else None,
        hasAccess=ledger.has_access(user_id),
        usageTier=user.usage_tier.value,
        subscriptionStatus=user.subscription_status.value,
        subscriptionEndDate=user.subscription_end_date,
    )


@subscription_router.post(
    "/cancel",
    response_model=CancelSubscriptionResponse,
    summary="Cancel the active subscription",
    description="Stops renewal; access continues until the current period ends",
)
def cancel_subscription(
    body: Optional[CancelSubscriptionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    ledger = SubscriptionLedger(db)
    try:
        subscription = ledger.cancel_active_for_user(user_id, reason=body.reason if body else None)
        end_date = subscription.end_date
        db.commit()
    except NotFoundError:
        db.rollback()
        return create_error_response(
            error_message="No active subscription found",
            error_type="NotFoundError",
            error_code="NOT_FOUND",
            status_code=404,
        )
    except OneReportError as e:
        db.rollback()
        logger.error(f"Cancellation failed for user {user_id}: {e.message}")
        return error_response_for(e)

    logger.info(f"User {user_id} cancelled subscription {subscription.id}")
    return CancelSubscriptionResponse(endDate=end_date)
