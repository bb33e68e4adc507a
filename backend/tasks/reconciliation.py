"""
Reconciliation Loop - The Safety Net
====================================
Background task that finds purchases neither the provider callback nor
the client poll has resolved, and asks the provider for their state.

Each candidate is claimed by writing a lock token into its status column
(reconciling:<ms>:<nonce>:<previous_status>) with a conditional update, so
several instances can run the loop against one database without two of
them working the same row.

Features:
- Runs every RECONCILE_INTERVAL_SECONDS (never more often than every 15s)
- Looks back RECONCILE_LOOKBACK_HOURS, newest first, capped per tick
- Expired locks are reclaimed; failed lookups restore the previous status
- Single-flight within a process
"""

import os
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import structlog

from schemas.payment_definitions import BusinessStatus, Purchase, ReconcileLock, serialize_status
from services.access_grants import AccessGrantService
from services.tbank_client import TBankClient
from storage.purchase_store import IPurchaseStore, PurchaseChanges, UpdateGuard

# Configure logger
logger = structlog.get_logger().bind(component="reconciler")

PROVIDER = "tbank"
MIN_INTERVAL_SECONDS = 15


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class ReconcilerConfig:
    """Reconciliation loop configuration"""

    # How often to run a tick (seconds)
    interval_seconds: int = 60

    # How far back to look for unresolved purchases (hours)
    lookback_hours: int = 168

    # Maximum purchases to process per tick
    batch_size: int = 25

    # How long a claim stays valid before another tick may take it over
    lock_ttl_seconds: int = 120

    enabled: bool = True

    def __post_init__(self):
        self.interval_seconds = max(MIN_INTERVAL_SECONDS, int(self.interval_seconds))

    @classmethod
    def from_env(cls) -> "ReconcilerConfig":
        return cls(
            interval_seconds=int(os.getenv("RECONCILE_INTERVAL_SECONDS", "60")),
            lookback_hours=int(os.getenv("RECONCILE_LOOKBACK_HOURS", "168")),
            batch_size=int(os.getenv("RECONCILE_BATCH_SIZE", "25")),
            lock_ttl_seconds=int(os.getenv("RECONCILE_LOCK_TTL_SECONDS", "120")),
            enabled=os.getenv("RECONCILE_ENABLED", "true").lower() == "true",
        )


@dataclass
class ReconcilerStats:
    ticks: int = 0
    skipped_ticks: int = 0
    candidates: int = 0
    claimed: int = 0
    paid: int = 0
    released: int = 0
    errors: int = 0
    last_tick_at: Optional[str] = None
    last_error: Optional[str] = None
    outcomes: Dict[str, int] = field(default_factory=dict)


# =============================================================================
# RECONCILER
# =============================================================================

class PurchaseReconciler:
    """
    Example:
        reconciler = PurchaseReconciler(store, client, grants, ReconcilerConfig.from_env())
        reconciler.start()        # in the app lifespan
        ...
        await reconciler.stop()
    """

    def __init__(
        self,
        store: IPurchaseStore,
        client: TBankClient,
        grants: AccessGrantService,
        config: Optional[ReconcilerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client = client
        self.grants = grants
        self.config = config or ReconcilerConfig.from_env()
        self.clock = clock
        self.stats = ReconcilerStats()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    # =========================================================================
    # TICK
    # =========================================================================

    async def run_once(self) -> Dict[str, int]:
        """Process one batch. Returns a count per outcome."""
        if self._running:
            self.stats.skipped_ticks += 1
            logger.info("reconcile_tick_skipped")
            return {}

        self._running = True
        outcomes: Dict[str, int] = {}
        try:
            now = self._now()
            since = now - timedelta(hours=self.config.lookback_hours)
            candidates = await self.store.list_reconcile_candidates(
                PROVIDER, since, self.config.batch_size
            )
            self.stats.ticks += 1
            self.stats.candidates += len(candidates)
            self.stats.last_tick_at = now.isoformat()

            for purchase in candidates:
                try:
                    outcome = await self._reconcile(purchase)
                except Exception as e:
                    outcome = "error"
                    self.stats.errors += 1
                    self.stats.last_error = str(e)
                    logger.error(
                        "reconcile_candidate_failed",
                        order_id=purchase.order_id,
                        error=str(e),
                    )
                outcomes[outcome] = outcomes.get(outcome, 0) + 1
                self.stats.outcomes[outcome] = self.stats.outcomes.get(outcome, 0) + 1

            if candidates:
                logger.info("reconcile_tick_complete", candidates=len(candidates), **outcomes)
        finally:
            self._running = False

        return outcomes

    async def _reconcile(self, purchase: Purchase) -> str:
        observed = purchase.status
        if observed.is_terminal:
            return "terminal"

        now_ms = self._now_ms()
        ttl_ms = self.config.lock_ttl_seconds * 1000

        if isinstance(observed, ReconcileLock):
            if not observed.is_expired(now_ms, ttl_ms):
                return "locked"
            previous = observed.previous_status
        else:
            previous = observed.value

        lock = ReconcileLock.claim(previous, now_ms)
        claimed = await self.store.conditional_update(
            purchase.id,
            PurchaseChanges(status=lock),
            UpdateGuard(status_equals=serialize_status(observed)),
        )
        if not claimed:
            logger.info("reconcile_claim_lost", order_id=purchase.order_id)
            return "lost_race"

        self.stats.claimed += 1
        logger.info(
            "reconcile_claimed",
            order_id=purchase.order_id,
            reclaimed=isinstance(observed, ReconcileLock),
        )

        try:
            state = await self.client.get_state(purchase.payment_id)
            updated = await self.store.apply_provider_status(
                purchase.id,
                state.status,
                payment_id=purchase.payment_id,
                lock=lock,
                now=self._now(),
            )
        except Exception:
            await self._release(purchase, lock)
            raise

        if updated is not None and serialize_status(updated.status) == lock.serialize():
            await self._release(purchase, lock)
            return "released"

        if updated is not None and updated.is_paid:
            self.stats.paid += 1
            await self.grants.grant(updated.user_id, updated.course_id, updated.id)
            logger.info("reconcile_paid", order_id=purchase.order_id)
            return "paid"

        return "updated"

    async def _release(self, purchase: Purchase, lock: ReconcileLock) -> None:
        """Put the pre-lock status back, only while this tick still holds the lock."""
        restored = await self.store.conditional_update(
            purchase.id,
            PurchaseChanges(status=BusinessStatus(value=lock.previous_status)),
            UpdateGuard(status_equals=lock.serialize()),
        )
        if restored:
            self.stats.released += 1
        logger.info(
            "reconcile_released",
            order_id=purchase.order_id,
            restored=bool(restored),
            status=lock.previous_status,
        )

    # =========================================================================
    # BACKGROUND TASK
    # =========================================================================

    async def run_forever(self) -> None:
        logger.info(
            "reconciler_started",
            interval=self.config.interval_seconds,
            lookback_hours=self.config.lookback_hours,
            batch_size=self.config.batch_size,
        )

        while True:
            try:
                await self.run_once()
            except Exception as e:
                self.stats.errors += 1
                self.stats.last_error = str(e)
                logger.error("reconcile_tick_failed", error=str(e))

            await asyncio.sleep(self.config.interval_seconds)

    def start(self) -> Optional[asyncio.Task]:
        if not self.config.enabled:
            logger.info("reconciler_disabled")
            return None
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("reconciler_stopped")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "running": self._task is not None and not self._task.done(),
            "interval_seconds": self.config.interval_seconds,
            "lookback_hours": self.config.lookback_hours,
            "batch_size": self.config.batch_size,
            "lock_ttl_seconds": self.config.lock_ttl_seconds,
            "ticks": self.stats.ticks,
            "skipped_ticks": self.stats.skipped_ticks,
            "candidates": self.stats.candidates,
            "claimed": self.stats.claimed,
            "paid": self.stats.paid,
            "released": self.stats.released,
            "errors": self.stats.errors,
            "last_tick_at": self.stats.last_tick_at,
            "last_error": self.stats.last_error,
        }


# =============================================================================
# HEALTH CHECK
# =============================================================================

def get_reconciler_stats(reconciler: Optional[PurchaseReconciler]) -> Dict[str, Any]:
    """Reconciler statistics for monitoring"""
    if reconciler is None:
        return {"enabled": False}
    return reconciler.get_stats()
