# storage/purchase_store.py
# ============================================================================
# COURSE PAYMENTS SERVICE - PURCHASE STORE
# ============================================================================
# Purpose: Persistence for course_purchases behind a swappable interface
#
# CONCURRENCY MODEL:
# - conditional_update is a single UPDATE ... WHERE <guard>; it is the only
#   concurrency-control device, across processes and within one
# - payment_id and paid_at are written through COALESCE so they are set at
#   most once no matter which caller races
# - apply_provider_status is the one routine Notify, Sync and the
#   reconciler use to move a purchase forward
# ============================================================================

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union

import asyncpg
import structlog

from database import Database, rows_affected
from errors import DuplicateOrder, StoreError
from schemas.payment_definitions import (
    PAID_STATUSES,
    TERMINAL_STATUSES,
    Purchase,
    PurchaseStatus,
    ReconcileLock,
    is_paid_status,
    normalize_status,
    parse_status,
    serialize_status,
)

logger = structlog.get_logger().bind(component="purchase_store")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: UPDATE PRIMITIVES
# ============================================================================

@dataclass(frozen=True)
class UpdateGuard:
    """
    Predicate the row must still satisfy for an update to apply.

    Status sets compare case-insensitively; status_equals compares the
    raw persisted string (used for lock tokens).
    """
    status_equals: Optional[str] = None
    status_in: Optional[FrozenSet[str]] = None
    status_not_in: Optional[FrozenSet[str]] = None
    paid_at_is_null: bool = False

    def matches(self, purchase: Purchase) -> bool:
        raw = serialize_status(purchase.status)
        lowered = raw.lower()
        if self.status_equals is not None and raw != self.status_equals:
            return False
        if self.status_in is not None and lowered not in self.status_in:
            return False
        if self.status_not_in is not None and lowered in self.status_not_in:
            return False
        if self.paid_at_is_null and purchase.paid_at is not None:
            return False
        return True


@dataclass(frozen=True)
class PurchaseChanges:
    """Columns to write. payment_id and paid_at only fill NULLs."""
    status: Optional[Union[PurchaseStatus, str]] = None
    payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return self.status is None and self.payment_id is None and self.paid_at is None


# ============================================================================
# SECTION 2: INTERFACE
# ============================================================================

class IPurchaseStore(ABC):
    """Purchase store interface"""

    @abstractmethod
    async def get(self, purchase_id: str) -> Optional[Purchase]:
        pass

    @abstractmethod
    async def get_by_order_id(self, order_id: str) -> Optional[Purchase]:
        pass

    @abstractmethod
    async def get_for_user(self, user_id: str, order_id: str) -> Optional[Purchase]:
        pass

    @abstractmethod
    async def insert(self, purchase: Purchase) -> Purchase:
        """Persist a new purchase. Raises DuplicateOrder on order_id collision."""
        pass

    @abstractmethod
    async def conditional_update(
        self,
        purchase_id: str,
        changes: PurchaseChanges,
        guard: UpdateGuard,
    ) -> int:
        """Apply `changes` atomically iff `guard` holds. Returns rows changed (0 or 1)."""
        pass

    @abstractmethod
    async def list_reconcile_candidates(
        self,
        provider: str,
        since: datetime,
        limit: int,
    ) -> List[Purchase]:
        """Unpaid, non-terminal purchases with a payment id, newest first."""
        pass

    @abstractmethod
    async def list_paid_for_user(self, user_id: str) -> List[Purchase]:
        pass

    async def apply_provider_status(
        self,
        purchase_id: str,
        status: Any,
        payment_id: Optional[str] = None,
        lock: Optional[ReconcileLock] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Purchase]:
        """
        Move a purchase forward with a status reported by the provider.

        1. paid status: set paid_at, status and payment_id unless the row is
           already paid or terminal
        2. paid status and nothing changed: backfill paid_at on a row that
           carries a paid status without a timestamp
        3. any non-empty status: write it unless the row is terminal
        4. re-read the row

        With `lock`, every step additionally requires the row to still hold
        that lock token, so a reconciler that lost its claim writes nothing.
        """
        value = normalize_status(status)
        now = now or utcnow()
        token = lock.serialize() if lock is not None else None

        if is_paid_status(value):
            changed = await self.conditional_update(
                purchase_id,
                PurchaseChanges(status=value, payment_id=payment_id, paid_at=now),
                UpdateGuard(status_equals=token, status_not_in=TERMINAL_STATUSES, paid_at_is_null=True),
            )
            if not changed:
                await self.conditional_update(
                    purchase_id,
                    PurchaseChanges(paid_at=now),
                    UpdateGuard(status_equals=token, status_in=PAID_STATUSES, paid_at_is_null=True),
                )

        if value:
            await self.conditional_update(
                purchase_id,
                PurchaseChanges(status=value, payment_id=payment_id),
                UpdateGuard(status_equals=token, status_not_in=TERMINAL_STATUSES),
            )

        return await self.get(purchase_id)


# ============================================================================
# SECTION 3: IN-MEMORY IMPLEMENTATION (tests / local dev)
# ============================================================================

class InMemoryPurchaseStore(IPurchaseStore):
    """Thread-safe in-memory purchase store"""

    def __init__(self):
        self._purchases: Dict[str, Purchase] = {}
        self._lock = asyncio.Lock()

    async def get(self, purchase_id: str) -> Optional[Purchase]:
        async with self._lock:
            return self._purchases.get(str(purchase_id))

    async def get_by_order_id(self, order_id: str) -> Optional[Purchase]:
        async with self._lock:
            for purchase in self._purchases.values():
                if purchase.order_id == order_id:
                    return purchase
            return None

    async def get_for_user(self, user_id: str, order_id: str) -> Optional[Purchase]:
        purchase = await self.get_by_order_id(order_id)
        if purchase is None or purchase.user_id != user_id:
            return None
        return purchase

    async def insert(self, purchase: Purchase) -> Purchase:
        async with self._lock:
            if any(p.order_id == purchase.order_id for p in self._purchases.values()):
                raise DuplicateOrder(details={"order_id": purchase.order_id})

            now = utcnow()
            stored = purchase.model_copy(update={
                "id": purchase.id or str(uuid.uuid4()),
                "created_at": purchase.created_at or now,
                "updated_at": now,
            })
            self._purchases[stored.id] = stored
            return stored

    async def conditional_update(
        self,
        purchase_id: str,
        changes: PurchaseChanges,
        guard: UpdateGuard,
    ) -> int:
        async with self._lock:
            current = self._purchases.get(str(purchase_id))
            if current is None or not guard.matches(current):
                return 0

            update: Dict[str, Any] = {"updated_at": utcnow()}
            if changes.status is not None:
                update["status"] = parse_status(serialize_status(changes.status))
            if changes.payment_id is not None and current.payment_id is None:
                update["payment_id"] = str(changes.payment_id)
            if changes.paid_at is not None and current.paid_at is None:
                update["paid_at"] = changes.paid_at

            self._purchases[current.id] = current.model_copy(update=update)
            return 1

    async def list_reconcile_candidates(
        self,
        provider: str,
        since: datetime,
        limit: int,
    ) -> List[Purchase]:
        async with self._lock:
            rows = [
                p for p in self._purchases.values()
                if p.provider == provider
                and p.paid_at is None
                and p.payment_id is not None
                and p.created_at is not None and p.created_at >= since
                and serialize_status(p.status).lower() not in TERMINAL_STATUSES
            ]
        rows.sort(key=lambda p: p.created_at, reverse=True)
        return rows[:limit]

    async def list_paid_for_user(self, user_id: str) -> List[Purchase]:
        async with self._lock:
            return [
                p for p in self._purchases.values()
                if p.user_id == user_id and p.is_paid
            ]


# ============================================================================
# SECTION 4: POSTGRES IMPLEMENTATION
# ============================================================================

def _row_to_purchase(row: Optional[asyncpg.Record]) -> Optional[Purchase]:
    if row is None:
        return None
    data = dict(row)
    return Purchase(
        id=str(data["id"]),
        order_id=data["order_id"],
        user_id=str(data["user_id"]),
        course_id=str(data["course_id"]),
        amount=int(data["amount_rub"]),
        amount_minor_units=int(data["amount_kopeks"]),
        provider=data.get("provider") or "tbank",
        payment_id=data.get("payment_id"),
        status=parse_status(data.get("status")),
        paid_at=data.get("paid_at"),
        created_at=data.get("created_at"),
        updated_at=data.get("updated_at"),
    )


def _lowered(values: Iterable[str]) -> List[str]:
    return sorted(normalize_status(v) for v in values)


class PostgresPurchaseStore(IPurchaseStore):
    """course_purchases on asyncpg via the shared Database pool"""

    async def get(self, purchase_id: str) -> Optional[Purchase]:
        row = await Database.fetch_one(
            "SELECT * FROM course_purchases WHERE id = $1",
            str(purchase_id),
        )
        return _row_to_purchase(row)

    async def get_by_order_id(self, order_id: str) -> Optional[Purchase]:
        row = await Database.fetch_one(
            "SELECT * FROM course_purchases WHERE order_id = $1",
            order_id,
        )
        return _row_to_purchase(row)

    async def get_for_user(self, user_id: str, order_id: str) -> Optional[Purchase]:
        row = await Database.fetch_one(
            "SELECT * FROM course_purchases WHERE order_id = $1 AND user_id = $2",
            order_id,
            user_id,
        )
        return _row_to_purchase(row)

    async def insert(self, purchase: Purchase) -> Purchase:
        try:
            row = await Database.fetch_one(
                """
                INSERT INTO course_purchases
                (user_id, course_id, status, amount_rub, amount_kopeks,
                 provider, order_id, payment_id, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, COALESCE($9, NOW()))
                RETURNING *
                """,
                purchase.user_id,
                purchase.course_id,
                serialize_status(purchase.status),
                purchase.amount,
                purchase.amount_minor_units,
                purchase.provider,
                purchase.order_id,
                purchase.payment_id,
                purchase.created_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateOrder(details={"order_id": purchase.order_id}) from e
        except asyncpg.PostgresError as e:
            logger.error("purchase_insert_failed", order_id=purchase.order_id, error=str(e))
            raise StoreError() from e

        return _row_to_purchase(row)

    async def conditional_update(
        self,
        purchase_id: str,
        changes: PurchaseChanges,
        guard: UpdateGuard,
    ) -> int:
        if changes.is_empty:
            return 0

        params: List[Any] = [str(purchase_id)]

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        set_clauses = ["updated_at = NOW()"]
        if changes.status is not None:
            set_clauses.append(f"status = {bind(serialize_status(changes.status))}")
        if changes.payment_id is not None:
            set_clauses.append(f"payment_id = COALESCE(payment_id, {bind(str(changes.payment_id))})")
        if changes.paid_at is not None:
            set_clauses.append(f"paid_at = COALESCE(paid_at, {bind(changes.paid_at)})")

        where = ["id = $1"]
        if guard.status_equals is not None:
            where.append(f"status = {bind(guard.status_equals)}")
        if guard.status_in is not None:
            where.append(f"lower(status) = ANY({bind(_lowered(guard.status_in))}::text[])")
        if guard.status_not_in is not None:
            where.append(f"lower(status) <> ALL({bind(_lowered(guard.status_not_in))}::text[])")
        if guard.paid_at_is_null:
            where.append("paid_at IS NULL")

        query = f"""
            UPDATE course_purchases
            SET {', '.join(set_clauses)}
            WHERE {' AND '.join(where)}
        """

        try:
            result = await Database.execute(query, *params)
        except asyncpg.PostgresError as e:
            logger.error("purchase_update_failed", purchase_id=str(purchase_id), error=str(e))
            raise StoreError() from e

        return rows_affected(result)

    async def list_reconcile_candidates(
        self,
        provider: str,
        since: datetime,
        limit: int,
    ) -> List[Purchase]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM course_purchases
            WHERE provider = $1
              AND paid_at IS NULL
              AND payment_id IS NOT NULL
              AND created_at >= $2
              AND lower(status) <> ALL($3::text[])
            ORDER BY created_at DESC
            LIMIT $4
            """,
            provider,
            since,
            _lowered(TERMINAL_STATUSES),
            limit,
        )
        return [_row_to_purchase(row) for row in rows]

    async def list_paid_for_user(self, user_id: str) -> List[Purchase]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM course_purchases
            WHERE user_id = $1
              AND (paid_at IS NOT NULL OR lower(status) = ANY($2::text[]))
            ORDER BY created_at DESC
            """,
            user_id,
            _lowered(PAID_STATUSES),
        )
        return [_row_to_purchase(row) for row in rows]
