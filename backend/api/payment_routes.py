# api/payment_routes.py
# ============================================================================
# COURSE PAYMENTS SERVICE - PAYMENT ENDPOINTS
# ============================================================================
# POST /api/payments/tbank/init          (session)  -> {paymentUrl, orderId}
# POST /api/payments/tbank/notification  (provider) -> {ok: true}
# POST /api/payments/tbank/sync          (session)  -> {status, courseId, paidAt}
# GET  /api/purchases/courses            (session)  -> {courseIds}
# ============================================================================

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from api.auth import require_user
from errors import InvalidRequest
from pipeline.purchase_lifecycle import PurchaseLifecycle
from schemas.payment_definitions import (
    AuthenticatedUser,
    InitPaymentRequest,
    InitPaymentResponse,
    PurchasedCoursesResponse,
    SyncPaymentRequest,
    SyncPaymentResponse,
)

router = APIRouter(prefix="/api")


def get_lifecycle(request: Request) -> PurchaseLifecycle:
    return request.app.state.lifecycle


@router.post(
    "/payments/tbank/init",
    response_model=InitPaymentResponse,
    response_model_by_alias=True,
)
async def init_payment(
    body: InitPaymentRequest,
    request: Request,
    user: AuthenticatedUser = Depends(require_user),
    lifecycle: PurchaseLifecycle = Depends(get_lifecycle),
):
    """Start a checkout for one course."""
    return await lifecycle.initialize(user, body.course_id, origin=request.headers.get("origin"))


@router.post("/payments/tbank/notification")
async def tbank_notification(
    request: Request,
    lifecycle: PurchaseLifecycle = Depends(get_lifecycle),
) -> Dict[str, Any]:
    """
    Provider callback. Answers {ok: true} once handled so the provider stops
    retrying; 403 on terminal key / token mismatch, 400 on malformed payload.
    """
    try:
        payload = await request.json()
    except ValueError as e:
        raise InvalidRequest("INVALID_NOTIFICATION") from e
    if not isinstance(payload, dict):
        raise InvalidRequest("INVALID_NOTIFICATION")

    return await lifecycle.notify(payload)


@router.post(
    "/payments/tbank/sync",
    response_model=SyncPaymentResponse,
    response_model_by_alias=True,
)
async def sync_payment(
    body: SyncPaymentRequest,
    user: AuthenticatedUser = Depends(require_user),
    lifecycle: PurchaseLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.sync(user, body.order_id)


@router.get(
    "/purchases/courses",
    response_model=PurchasedCoursesResponse,
    response_model_by_alias=True,
)
async def purchased_courses(
    user: AuthenticatedUser = Depends(require_user),
    lifecycle: PurchaseLifecycle = Depends(get_lifecycle),
):
    course_ids = await lifecycle.list_purchased_courses(user)
    return PurchasedCoursesResponse(course_ids=course_ids)
