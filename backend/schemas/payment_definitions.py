# schemas/payment_definitions.py
# ============================================================================
# COURSE PAYMENTS SERVICE - PAYMENT SCHEMAS
# ============================================================================
# Purpose: Purchase / access grant records and the purchase status union
#
# The persisted `status` column holds either a business status reported by
# the provider or a reconciliation lock token. Inside the service it is always
# one of the two models below; the raw string only exists at the store
# boundary (parse_status / serialize_status).
# ============================================================================

from typing import Any, Dict, List, Optional, Union
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
import secrets


# ============================================================================
# SECTION 1: STATUS FAMILIES
# ============================================================================

PAID_STATUSES = frozenset({
    "paid", "succeeded", "success", "completed", "captured", "confirmed",
})

FAILED_STATUSES = frozenset({
    "failed", "rejected", "canceled", "cancelled", "refunded", "expired",
    "dead", "timeout",
})

TERMINAL_STATUSES = PAID_STATUSES | FAILED_STATUSES

STATUS_INITIATED = "initiated"
STATUS_CREATED = "created"
STATUS_FAILED = "failed"

LOCK_PREFIX = "reconciling"


def normalize_status(status: Any) -> str:
    """Trim and lower-case a provider status; None becomes ''."""
    if status is None:
        return ""
    return str(status).strip().lower()


def is_paid_status(status: Any) -> bool:
    return normalize_status(status) in PAID_STATUSES


def is_failed_status(status: Any) -> bool:
    return normalize_status(status) in FAILED_STATUSES


def is_terminal_status(status: Any) -> bool:
    return normalize_status(status) in TERMINAL_STATUSES


# ============================================================================
# SECTION 2: STATUS UNION
# ============================================================================

class BusinessStatus(BaseModel):
    """
    A lifecycle or provider status (initiated, new, confirmed, ...).

    `value` is the string exactly as persisted; rows written by older
    deployments may hold the provider's upper-case form (NEW, CONFIRMED).
    Status families compare case-insensitively.
    """
    model_config = ConfigDict(frozen=True)

    value: str

    @property
    def is_paid(self) -> bool:
        return is_paid_status(self.value)

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.value)

    @property
    def business_value(self) -> str:
        return self.value

    def serialize(self) -> str:
        return self.value


class ReconcileLock(BaseModel):
    """
    Claim on a purchase row held by one reconciler tick.

    Serialized as ``reconciling:<claimed_at_ms>:<nonce>:<previous_status>``
    in place of the real status. The previous status is carried inside the
    token so the holder can restore it on release.
    """
    model_config = ConfigDict(frozen=True)

    claimed_at_ms: int
    nonce: str
    previous_status: str

    @classmethod
    def claim(cls, previous_status: str, now_ms: int) -> "ReconcileLock":
        return cls(
            claimed_at_ms=int(now_ms),
            nonce=secrets.token_hex(6),
            previous_status=previous_status,
        )

    @property
    def is_paid(self) -> bool:
        return False

    @property
    def is_terminal(self) -> bool:
        return False

    @property
    def business_value(self) -> str:
        return self.previous_status

    def is_expired(self, now_ms: int, ttl_ms: int) -> bool:
        return now_ms - self.claimed_at_ms >= ttl_ms

    def serialize(self) -> str:
        return f"{LOCK_PREFIX}:{self.claimed_at_ms}:{self.nonce}:{self.previous_status}"


PurchaseStatus = Union[BusinessStatus, ReconcileLock]


def parse_status(raw: Optional[str]) -> PurchaseStatus:
    """
    Turn the persisted status string into its tagged form.

    Business statuses keep the raw text so a guard built from them matches
    the column byte for byte.
    """
    text = "" if raw is None else str(raw)
    if text.startswith(LOCK_PREFIX + ":"):
        parts = text.split(":", 3)
        if len(parts) == 4 and parts[1].isdigit() and parts[2]:
            return ReconcileLock(
                claimed_at_ms=int(parts[1]),
                nonce=parts[2],
                previous_status=parts[3],
            )
    return BusinessStatus(value=text)


def serialize_status(status: Union[PurchaseStatus, str]) -> str:
    if isinstance(status, str):
        return normalize_status(status)
    return status.serialize()


# ============================================================================
# SECTION 3: RECORDS
# ============================================================================

class Purchase(BaseModel):
    """One checkout attempt (table course_purchases)."""
    id: Optional[str] = None
    order_id: str
    user_id: str
    course_id: str
    amount: int = Field(ge=0, description="Price in major currency units")
    amount_minor_units: int = Field(ge=0, description="Price in the provider's smallest unit")
    provider: str = "tbank"
    payment_id: Optional[str] = None
    status: PurchaseStatus = Field(default_factory=lambda: BusinessStatus(value=STATUS_INITIATED))
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.paid_at is not None or self.status.is_paid


class AccessGrant(BaseModel):
    """Course entitlement (table user_courses)."""
    user_id: str
    course_id: str
    purchase_id: Optional[str] = None
    status: str = "active"
    granted_at: datetime


class Course(BaseModel):
    """Catalog entry as seen by checkout (owned by the catalog)."""
    id: str
    title: Optional[str] = None
    price: Optional[Any] = None
    sale_price: Optional[Any] = None
    currency: Optional[str] = None


class AuthenticatedUser(BaseModel):
    """Identity injected by the auth collaborator."""
    id: str
    email: Optional[str] = None


# ============================================================================
# SECTION 4: PROVIDER RESULTS
# ============================================================================

class InitResult(BaseModel):
    success: bool
    payment_id: Optional[str] = None
    payment_url: Optional[str] = None
    raw_status: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class StateResult(BaseModel):
    status: str
    raw: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# SECTION 5: API PAYLOADS
# ============================================================================

class InitPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    course_id: str = Field(alias="courseId", min_length=1)


class InitPaymentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_url: str = Field(alias="paymentUrl")
    order_id: str = Field(alias="orderId")


class SyncPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1)


class SyncPaymentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    course_id: str = Field(alias="courseId")
    paid_at: Optional[datetime] = Field(default=None, alias="paidAt")


class PurchasedCoursesResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    course_ids: List[str] = Field(default_factory=list, alias="courseIds")
