"""
Payment routes: start a credit purchase, browser return from the gateway,
gateway async notification, owner-scoped order status.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_principal, get_reconciler
from app.core.config import settings
from app.core.errors import (
    AccessDenied,
    GatewayUnavailable,
    HandoffExpired,
    HandoffNotFound,
    InvalidNotification,
    InvalidPurchase,
)
from app.schemas.payments import CreateOrderIn, CreateOrderOut, OrderOut, ReconciliationOut
from app.services.auth.tokens import Principal
from app.services.credits.packages import get_package
from app.services.payments.rate_limit import check_purchase_rate_limit
from app.services.payments.reconciler import PaymentReconciler
from app.utils.currency import format_cents

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def _gateway_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Payment gateway unavailable, try again later",
        headers={"Retry-After": str(settings.cb_open_seconds)},
    )


@router.post("/orders", response_model=CreateOrderOut, status_code=status.HTTP_201_CREATED)
def create_order(
    body: CreateOrderIn,
    principal: Principal = Depends(get_principal),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> CreateOrderOut:
    if not check_purchase_rate_limit(principal.user_id):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many purchase attempts. Try again later.",
        )
    try:
        package = get_package(body.package_id)
        result = reconciler.initiate(
            principal.user_id,
            package.price_cents,
            package.credits,
            principal.access_token,
            body.refresh_token,
        )
    except InvalidPurchase as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AccessDenied:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to purchase credits")
    except GatewayUnavailable:
        raise _gateway_unavailable()
    return CreateOrderOut(
        order_id=result.order_id,
        handoff_id=result.handoff_id,
        redirect_url=result.redirect_url,
        expires_at=result.expires_at,
    )


@router.get("/return", response_model=ReconciliationOut)
def payment_return(
    hid: str = Query(..., min_length=1),
    out_trade_no: str = Query(..., min_length=1),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> ReconciliationOut:
    """
    Browser lands here after the gateway. Only hid and out_trade_no are read;
    trade_status and friends in the query string are ignored.
    """
    try:
        result = reconciler.complete(hid, out_trade_no)
    except HandoffExpired:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Payment session expired, please sign in again",
        )
    except HandoffNotFound:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Payment session not found, please sign in again",
        )
    return ReconciliationOut(
        order_id=result.order_id,
        status=result.status,
        credits_requested=result.credits_requested,
        granted=result.granted,
        balance=result.balance,
        transaction_id=result.transaction_id,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
    )


@router.post("/notify", response_class=PlainTextResponse)
async def payment_notify(
    request: Request,
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> PlainTextResponse:
    """Gateway server notification. Replies `success` only once the order is settled."""
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    try:
        result = await run_in_threadpool(reconciler.confirm_from_notification, params)
    except InvalidNotification:
        return PlainTextResponse("failure")
    except GatewayUnavailable as e:
        logger.warning("payment_notification_deferred", extra={"order_id": e.order_id, "error": e.reason})
        return PlainTextResponse("failure")
    if result.status in ("paid", "failed", "expired"):
        return PlainTextResponse("success")
    return PlainTextResponse("failure")


@router.get("/orders/{order_id}", response_model=OrderOut)
def get_order(
    order_id: str,
    refresh: bool = Query(False),
    principal: Principal = Depends(get_principal),
    reconciler: PaymentReconciler = Depends(get_reconciler),
) -> OrderOut:
    try:
        if refresh:
            order = reconciler.refresh_order(principal.user_id, order_id)
        else:
            order = reconciler.get_order(principal.user_id, order_id)
    except GatewayUnavailable:
        raise _gateway_unavailable()
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return OrderOut(
        order_id=order.id,
        status=order.status,
        amount=format_cents(order.amount_cents),
        credits_requested=order.credits_requested,
        failure_reason=order.failure_reason,
        created_at=order.created_at,
        confirmed_at=order.confirmed_at,
    )
