"""API Router for billing.

Plan catalog, subscription, plan changes, wallet, invoices and the gateway
webhook endpoint. Business errors raised by the services are rendered by the
application-wide ``BillingError`` handler.
"""

import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_session
from app.core.errors import (
    BillingError,
    ErrorKind,
    GatewayNotFound,
    InvalidWebhookPayload,
    InvoiceNotFound,
    PersistenceError,
    SubscriptionNotFound,
    WebhookNotRecorded,
)
from app.core.logging import log_error
from app.core.security import Capability, Principal, require_capability
from app.modules.billing.plan_change import PlanChangeService
from app.modules.billing.repository import (
    InvoiceRepository,
    PlanRepository,
    SubscriptionRepository,
)
from app.modules.billing.schemas import (
    ErrorResponse,
    InvoiceListResponse,
    InvoiceResponse,
    PlanChangePreviewResponse,
    PlanChangeRequest,
    PlanChangeResponse,
    PlanListResponse,
    PlanResponse,
    SubscriptionResponse,
    TopupRequest,
    TopupResponse,
    WalletBalanceResponse,
    WalletTransactionListResponse,
    WalletTransactionResponse,
    WebhookAckResponse,
)
from app.modules.billing.settlement import SettlementService
from app.modules.billing.wallet import WalletService
from app.modules.payment_gateway.factory import PaymentGatewayFactory, get_gateway_factory

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/billing",
    tags=["billing"],
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)

TRANSIENT_ERROR_KINDS = (ErrorKind.CONFLICT, ErrorKind.INFRASTRUCTURE)


# ==================== Plans & Subscription ====================

@router.get("/plans", response_model=PlanListResponse)
async def list_plans(
    principal: Principal = Depends(require_capability(Capability.BILLING_READ)),
    session: AsyncSession = Depends(get_session),
):
    """List active plans ordered for display."""
    plans = await PlanRepository(session).get_all_active()
    return PlanListResponse(plans=[PlanResponse.model_validate(p) for p in plans])


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    principal: Principal = Depends(require_capability(Capability.BILLING_READ)),
    session: AsyncSession = Depends(get_session),
):
    subscription = await SubscriptionRepository(session).get_by_tenant(principal.tenant_id)
    if subscription is None:
        raise SubscriptionNotFound(tenant_id=str(principal.tenant_id))
    return SubscriptionResponse.model_validate(subscription)


# ==================== Plan Change ====================

@router.post("/plan-change/preview", response_model=PlanChangePreviewResponse)
async def preview_plan_change(
    data: PlanChangeRequest,
    principal: Principal = Depends(require_capability(Capability.BILLING_READ)),
    session: AsyncSession = Depends(get_session),
    gateways: PaymentGatewayFactory = Depends(get_gateway_factory),
):
    """Price a plan change at the current instant without committing it."""
    service = PlanChangeService(session, gateways.create())
    preview = await service.preview(principal.tenant_id, data.target_plan_code)
    result = preview.result
    return PlanChangePreviewResponse(
        current_plan_code=preview.current_plan.code,
        target_plan_code=preview.target_plan.code,
        direction=result.direction.value,
        amount_due=result.amount_due,
        amount_payable=preview.amount_payable,
        credit_amount=result.credit_amount,
        elapsed_fraction=float(result.elapsed_fraction),
        unused_value=result.unused_value,
        target_remaining_cost=result.target_remaining_cost,
        cycle_start=preview.cycle_start,
        cycle_end=preview.cycle_end,
        currency=settings.BILLING_CURRENCY,
    )


@router.post("/plan-change", response_model=PlanChangeResponse)
async def execute_plan_change(
    data: PlanChangeRequest,
    principal: Principal = Depends(require_capability(Capability.BILLING_MANAGE)),
    session: AsyncSession = Depends(get_session),
    gateways: PaymentGatewayFactory = Depends(get_gateway_factory),
):
    """Commit a plan change.

    Downgrades apply immediately and credit the wallet. Upgrades return a
    checkout session; the plan switches when the payment settles.
    """
    service = PlanChangeService(session, gateways.create())
    outcome = await service.execute(principal.tenant_id, data.target_plan_code)
    return PlanChangeResponse(
        plan_change_id=outcome.plan_change_id,
        direction=outcome.direction.value,
        status=outcome.status.value,
        from_plan_code=outcome.from_plan_code,
        to_plan_code=outcome.to_plan_code,
        amount_due=outcome.amount_due,
        credit_amount=outcome.credit_amount,
        invoice_id=outcome.invoice_id,
        session_token=outcome.session_token,
        redirect_url=outcome.redirect_url,
    )


# ==================== Wallet ====================

@router.get("/wallet", response_model=WalletBalanceResponse)
async def get_wallet(
    principal: Principal = Depends(require_capability(Capability.BILLING_READ)),
    session: AsyncSession = Depends(get_session),
):
    balance = await WalletService(session).get_balance(principal.tenant_id)
    return WalletBalanceResponse(
        tenant_id=principal.tenant_id,
        balance=balance,
        currency=settings.BILLING_CURRENCY,
    )


@router.get("/wallet/transactions", response_model=WalletTransactionListResponse)
async def list_wallet_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(require_capability(Capability.BILLING_READ)),
    session: AsyncSession = Depends(get_session),
):
    """Wallet history, newest first."""
    transactions, total = await WalletService(session).list_transactions(
        principal.tenant_id, limit=page_size, offset=(page - 1) * page_size
    )
    return WalletTransactionListResponse(
        transactions=[WalletTransactionResponse.model_validate(t) for t in transactions],
        total=total,
        page=page,
        page_size=page_size,
        has_more=page * page_size < total,
    )


@router.post("/wallet/topups", response_model=TopupResponse, status_code=status.HTTP_201_CREATED)
async def create_topup(
    data: TopupRequest,
    principal: Principal = Depends(require_capability(Capability.BILLING_MANAGE)),
    session: AsyncSession = Depends(get_session),
    gateways: PaymentGatewayFactory = Depends(get_gateway_factory),
):
    """Start a wallet top-up; the wallet is credited when payment settles."""
    intent = await WalletService(session, gateways.create()).create_topup(
        principal.tenant_id, data.amount
    )
    return TopupResponse(
        invoice_id=intent.invoice.id,
        invoice_number=intent.invoice.invoice_number,
        amount=intent.invoice.amount,
        currency=intent.invoice.currency,
        status=intent.invoice.status,
        session_token=intent.session_token,
        redirect_url=intent.redirect_url,
    )


# ==================== Invoices ====================

@router.get("/invoices", response_model=InvoiceListResponse)
async def list_invoices(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    invoice_status: Optional[str] = Query(None, alias="status"),
    principal: Principal = Depends(require_capability(Capability.BILLING_READ)),
    session: AsyncSession = Depends(get_session),
):
    invoices, total = await InvoiceRepository(session).list_for_tenant(
        principal.tenant_id,
        status=invoice_status,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return InvoiceListResponse(
        invoices=[InvoiceResponse.model_validate(i) for i in invoices],
        total=total,
        page=page,
        page_size=page_size,
        has_more=page * page_size < total,
    )


@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: uuid.UUID,
    principal: Principal = Depends(require_capability(Capability.BILLING_READ)),
    session: AsyncSession = Depends(get_session),
):
    invoice = await InvoiceRepository(session).get_for_tenant(principal.tenant_id, invoice_id)
    if invoice is None:
        raise InvoiceNotFound(invoice_id=str(invoice_id))
    return InvoiceResponse.model_validate(invoice)


# ==================== Gateway Webhooks ====================

@router.post("/webhooks/{gateway}", response_model=WebhookAckResponse)
async def receive_gateway_webhook(
    gateway: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
    gateways: PaymentGatewayFactory = Depends(get_gateway_factory),
):
    """Receive a payment notification.

    Unknown gateways get 404 and unparseable bodies 400, both before anything
    is stored. Once the notification is recorded the answer is 200, including
    for rejected signatures and business failures, so the gateway stops
    retrying. Conflicts and infrastructure failures answer 503 when
    WEBHOOK_RETRY_ON_TRANSIENT_ERRORS is enabled. A notification that could
    not be recorded always answers 503.
    """
    if not gateways.is_supported(gateway):
        raise GatewayNotFound(provider=gateway)

    body = await request.body()
    try:
        raw_payload = body.decode("utf-8")
        payload = json.loads(raw_payload)
    except ValueError:
        raise InvalidWebhookPayload("Malformed JSON body")
    if not isinstance(payload, dict):
        raise InvalidWebhookPayload("JSON object expected")

    service = SettlementService(session, gateways.create(gateway))
    try:
        result = await service.handle_event(
            raw_payload=raw_payload,
            payload=payload,
            headers=request.headers,
            source_ip=request.client.host if request.client else None,
        )
    except WebhookNotRecorded as e:
        log_error(logger, "Webhook not recorded", exception=e.__cause__ or e, gateway=gateway)
        return _webhook_failure(e.message, e.kind, force_retry=True)
    except BillingError as e:
        return _webhook_failure(e.message, e.kind)
    except SQLAlchemyError as e:
        log_error(logger, "Webhook settlement storage failure", exception=e, gateway=gateway)
        error = PersistenceError()
        return _webhook_failure(error.message, error.kind)

    return WebhookAckResponse(
        success=result.success,
        message=result.message,
        idempotent=result.idempotent,
        event_id=result.event_id,
    )


def _webhook_failure(message: str, kind: ErrorKind, force_retry: bool = False) -> JSONResponse:
    body = WebhookAckResponse(success=False, message=message, error_kind=kind.value)
    retry = kind in TRANSIENT_ERROR_KINDS and settings.WEBHOOK_RETRY_ON_TRANSIENT_ERRORS
    if force_retry or retry:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_200_OK
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
