"""
Purchase Lifecycle Controller
=============================

Orchestrates a course purchase from checkout to access:

    initialize  -> insert `initiated` row, call provider Init, persist result
    notify      -> verify the provider callback, apply its status, grant access
    sync        -> poll provider GetState for one order, apply, grant access

Notify, Sync and the reconciler all end in IPurchaseStore.apply_provider_status,
so they commute on terminal status and paid_at is written at most once.
"""

import math
import os
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlsplit

import structlog

from errors import (
    CourseNotFound,
    Forbidden,
    InvalidRequest,
    NotConfigured,
    ProviderError,
    PurchaseNotFound,
    ReceiptEmailRequired,
    ReceiptNotConfigured,
    whitelist_provider_details,
)
from schemas.payment_definitions import (
    STATUS_CREATED,
    STATUS_FAILED,
    STATUS_INITIATED,
    TERMINAL_STATUSES,
    AuthenticatedUser,
    BusinessStatus,
    Course,
    InitPaymentResponse,
    Purchase,
    SyncPaymentResponse,
    normalize_status,
)
from services.access_grants import AccessGrantService
from services.course_catalog import ICourseCatalog
from services.tbank_client import TBankClient
from services.tbank_signature import verify
from storage.purchase_store import IPurchaseStore, PurchaseChanges, UpdateGuard

logger = structlog.get_logger().bind(component="purchase_lifecycle")

PROVIDER = "tbank"
NOTIFICATION_PATH = "/api/payments/tbank/notification"
RECEIPT_ITEM_NAME_LIMIT = 128


# =============================================================================
# CONFIGURATION
# =============================================================================

def _normalize_origin(value: str) -> Optional[str]:
    try:
        parts = urlsplit(str(value).strip())
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


@dataclass
class CheckoutConfig:
    """Redirect allow-list and public callback base."""
    web_origins: List[str] = field(default_factory=list)
    public_base_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "CheckoutConfig":
        raw = os.getenv("WEB_ORIGIN", "http://localhost:5173")
        return cls(
            web_origins=[o.strip().rstrip("/") for o in raw.split(",") if o.strip()],
            public_base_url=os.getenv("PUBLIC_BASE_URL") or None,
        )

    def is_allowed(self, url: Optional[str]) -> bool:
        if not url:
            return False
        origin = _normalize_origin(url)
        allowed = {_normalize_origin(o) for o in self.web_origins}
        return origin is not None and origin in allowed


# =============================================================================
# HELPERS
# =============================================================================

def _safe_int(value: Any) -> Optional[int]:
    """Truncate a numeric price to int; None when it is not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return int(math.trunc(number))


def _first_present(payload: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


class PurchaseLifecycle:
    """
    Request handlers for initialize / notify / sync.

    Example:
        lifecycle = PurchaseLifecycle(store, client, grants, catalog)
        result = await lifecycle.initialize(user, "course-1", origin="https://app.example")
    """

    def __init__(
        self,
        store: IPurchaseStore,
        client: TBankClient,
        grants: AccessGrantService,
        catalog: ICourseCatalog,
        checkout: Optional[CheckoutConfig] = None,
    ):
        self.store = store
        self.client = client
        self.grants = grants
        self.catalog = catalog
        self.checkout = checkout or CheckoutConfig.from_env()

    @property
    def tbank(self):
        return self.client.config

    def _require_configured(self) -> None:
        if not self.tbank.is_configured:
            raise NotConfigured()

    # =========================================================================
    # URL / RECEIPT BUILDERS
    # =========================================================================

    def redirect_urls(self, order_id: str, origin: Optional[str] = None) -> Tuple[Optional[str], Optional[str]]:
        """Success/fail URLs: configured if allow-listed, else derived from an allowed origin."""
        if origin and self.checkout.is_allowed(origin):
            base = origin.rstrip("/")
        elif self.checkout.web_origins:
            base = self.checkout.web_origins[0]
        else:
            base = None

        order = quote(order_id, safe="")

        def pick(configured: Optional[str], outcome: str) -> Optional[str]:
            if configured and self.checkout.is_allowed(configured):
                return configured
            if configured:
                logger.warning("redirect_url_not_allowed", outcome=outcome)
            if base is None:
                return None
            return f"{base}/profile?payment={outcome}&orderId={order}"

        return pick(self.tbank.success_url, "success"), pick(self.tbank.fail_url, "fail")

    def notification_url(self) -> Optional[str]:
        if self.tbank.notification_url:
            return self.tbank.notification_url
        if self.checkout.public_base_url:
            return self.checkout.public_base_url.rstrip("/") + NOTIFICATION_PATH
        return None

    def build_receipt(self, course: Course, user: AuthenticatedUser, amount_minor_units: int) -> Dict[str, Any]:
        if not self.tbank.receipt_taxation or not self.tbank.receipt_tax:
            raise ReceiptNotConfigured()
        if not user.email:
            raise ReceiptEmailRequired()

        name = (course.title or f"Курс {course.id}")[:RECEIPT_ITEM_NAME_LIMIT]
        return {
            "Email": user.email,
            "Taxation": self.tbank.receipt_taxation,
            "Items": [
                {
                    "Name": name,
                    "Price": amount_minor_units,
                    "Quantity": 1,
                    "Amount": amount_minor_units,
                    "Tax": self.tbank.receipt_tax,
                    "PaymentMethod": "full_payment",
                    "PaymentObject": "service",
                }
            ],
        }

    # =========================================================================
    # INITIALIZE
    # =========================================================================

    async def initialize(
        self,
        user: AuthenticatedUser,
        course_id: str,
        origin: Optional[str] = None,
    ) -> InitPaymentResponse:
        self._require_configured()

        course_id = str(course_id or "").strip()
        if not course_id:
            raise InvalidRequest(details={"field": "courseId"})

        course = await self.catalog.get_course(course_id)
        if course is None:
            raise CourseNotFound()

        amount = _safe_int(course.sale_price if course.sale_price is not None else course.price)
        if amount is None:
            raise InvalidRequest("COURSE_PRICE_INVALID")
        if amount <= 0:
            raise InvalidRequest("COURSE_IS_FREE")
        amount_minor_units = amount * 100

        receipt = None
        if self.tbank.receipt_enabled:
            receipt = self.build_receipt(course, user, amount_minor_units)

        purchase = await self.store.insert(Purchase(
            order_id=str(uuid.uuid4()),
            user_id=user.id,
            course_id=course_id,
            amount=amount,
            amount_minor_units=amount_minor_units,
            provider=PROVIDER,
            status=BusinessStatus(value=STATUS_INITIATED),
        ))
        order_id = purchase.order_id

        success_url, fail_url = self.redirect_urls(order_id, origin)
        payload = {
            "TerminalKey": self.tbank.terminal_key,
            "Amount": amount_minor_units,
            "OrderId": order_id,
            "Description": f"Покупка курса: {course.title}" if course.title else "Покупка курса",
            "SuccessURL": success_url,
            "FailURL": fail_url,
            "NotificationURL": self.notification_url(),
            "Receipt": receipt,
        }
        payload = {key: value for key, value in payload.items() if value is not None}

        try:
            result = await self.client.init(payload)
        except ProviderError as e:
            await self._mark_failed(purchase.id)
            logger.warning("purchase_init_failed", order_id=order_id, reason=e.code)
            raise ProviderError("TBANK_INIT_FAILED", details=e.details) from e

        if not result.success or not result.payment_url:
            await self._mark_failed(purchase.id, payment_id=result.payment_id)
            logger.warning(
                "purchase_init_rejected",
                order_id=order_id,
                error_code=result.raw.get("ErrorCode"),
            )
            raise ProviderError("TBANK_INIT_REJECTED", details=whitelist_provider_details(result.raw))

        await self.store.conditional_update(
            purchase.id,
            PurchaseChanges(
                status=normalize_status(result.raw_status) or STATUS_CREATED,
                payment_id=result.payment_id,
            ),
            UpdateGuard(status_not_in=TERMINAL_STATUSES),
        )

        logger.info(
            "purchase_initialized",
            order_id=order_id,
            course_id=course_id,
            amount_minor_units=amount_minor_units,
        )
        return InitPaymentResponse(payment_url=result.payment_url, order_id=order_id)

    async def _mark_failed(self, purchase_id: str, payment_id: Optional[str] = None) -> None:
        await self.store.conditional_update(
            purchase_id,
            PurchaseChanges(status=STATUS_FAILED, payment_id=payment_id),
            UpdateGuard(status_not_in=TERMINAL_STATUSES),
        )

    # =========================================================================
    # NOTIFY
    # =========================================================================

    async def notify(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._require_configured()

        if not isinstance(payload, dict):
            raise InvalidRequest("INVALID_NOTIFICATION")

        token = _first_present(payload, "Token", "token")
        terminal_key = _first_present(payload, "TerminalKey", "terminalKey")
        if not token or not terminal_key:
            raise InvalidRequest("INVALID_NOTIFICATION")

        if terminal_key != self.tbank.terminal_key:
            logger.warning("notification_rejected", reason="terminal_key")
            raise Forbidden("INVALID_TERMINAL")

        if not verify(payload, self.tbank.password, token, self.client.modes, self.tbank.token_exclude):
            logger.warning("notification_rejected", reason="token")
            raise Forbidden("INVALID_TOKEN")

        order_id = _first_present(payload, "OrderId", "orderId")
        if not order_id:
            raise InvalidRequest("MISSING_ORDER_ID")

        payment_id = _first_present(payload, "PaymentId", "paymentId") or None
        status = normalize_status(_first_present(payload, "Status", "status"))

        purchase = await self.store.get_by_order_id(order_id)
        if purchase is None:
            logger.warning("notification_unknown_order", order_id=order_id, status=status)
            return {"ok": True}

        amount = _safe_int(payload.get("Amount"))
        if amount is not None and amount != purchase.amount_minor_units:
            logger.warning(
                "notification_amount_mismatch",
                order_id=order_id,
                expected=purchase.amount_minor_units,
                received=amount,
            )

        updated = await self.store.apply_provider_status(purchase.id, status, payment_id=payment_id)
        await self._grant_if_paid(updated)

        logger.info("notification_applied", order_id=order_id, status=status)
        return {"ok": True}

    # =========================================================================
    # SYNC
    # =========================================================================

    async def sync(self, user: AuthenticatedUser, order_id: str) -> SyncPaymentResponse:
        self._require_configured()

        order_id = str(order_id or "").strip()
        if not order_id:
            raise InvalidRequest(details={"field": "orderId"})

        purchase = await self.store.get_for_user(user.id, order_id)
        if purchase is None:
            raise PurchaseNotFound()

        if purchase.payment_id:
            state = await self.client.get_state(purchase.payment_id)
            updated = await self.store.apply_provider_status(
                purchase.id,
                state.status,
                payment_id=purchase.payment_id,
            )
            purchase = updated or purchase
            await self._grant_if_paid(purchase)
            logger.info("purchase_synced", order_id=order_id, status=state.status)

        return SyncPaymentResponse(
            status=normalize_status(purchase.status.business_value),
            course_id=purchase.course_id,
            paid_at=purchase.paid_at,
        )

    # =========================================================================
    # PURCHASED COURSES
    # =========================================================================

    async def list_purchased_courses(self, user: AuthenticatedUser) -> List[str]:
        """Granted course ids; falls back to paid purchases and backfills grants."""
        course_ids = await self.grants.list_course_ids(user.id)
        if course_ids:
            return course_ids

        course_ids = []
        for purchase in await self.store.list_paid_for_user(user.id):
            if purchase.course_id in course_ids:
                continue
            course_ids.append(purchase.course_id)
            await self.grants.grant(user.id, purchase.course_id, purchase.id)

        if course_ids:
            logger.info("grants_backfilled", user_id=user.id, count=len(course_ids))
        return course_ids

    async def _grant_if_paid(self, purchase: Optional[Purchase]) -> bool:
        if purchase is None or not purchase.is_paid:
            return False
        return await self.grants.grant(purchase.user_id, purchase.course_id, purchase.id)
