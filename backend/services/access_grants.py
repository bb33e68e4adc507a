# services/access_grants.py
# ============================================================================
# COURSE PAYMENTS SERVICE - ACCESS GRANTS
# ============================================================================
# Purpose: Record that a user may open a course (table user_courses)
#
# At most one grant exists per (user_id, course_id). Granting is
# best-effort: failures are logged and reported as False, never raised,
# so a payment that is already recorded is never rolled back by it.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

import asyncpg
import structlog

from database import Database, rows_affected
from schemas.payment_definitions import AccessGrant

logger = structlog.get_logger().bind(component="access_grants")


class ConflictTargetMissing(Exception):
    """The grants table has no unique (user_id, course_id) constraint."""


# =============================================================================
# STORE INTERFACE
# =============================================================================

class IAccessGrantStore(ABC):
    """Access grant store interface"""

    @abstractmethod
    async def insert_ignore(self, grant: AccessGrant) -> bool:
        """Insert unless the pair exists. Raises ConflictTargetMissing on legacy schemas."""
        pass

    @abstractmethod
    async def upsert(self, grant: AccessGrant) -> None:
        """Update the pair's row, inserting it when nothing was updated."""
        pass

    @abstractmethod
    async def list_course_ids(self, user_id: str) -> List[str]:
        pass


class InMemoryAccessGrantStore(IAccessGrantStore):
    """
    In-memory grants. With unique_constraint=False it behaves like a legacy
    table without the pair constraint.
    """

    def __init__(self, unique_constraint: bool = True):
        self.unique_constraint = unique_constraint
        self._grants: List[AccessGrant] = []
        self._lock = asyncio.Lock()

    async def insert_ignore(self, grant: AccessGrant) -> bool:
        if not self.unique_constraint:
            raise ConflictTargetMissing("no unique constraint on (user_id, course_id)")
        async with self._lock:
            if any(g.user_id == grant.user_id and g.course_id == grant.course_id for g in self._grants):
                return False
            self._grants.append(grant)
            return True

    async def upsert(self, grant: AccessGrant) -> None:
        async with self._lock:
            updated = False
            for index, existing in enumerate(self._grants):
                if existing.user_id == grant.user_id and existing.course_id == grant.course_id:
                    self._grants[index] = existing.model_copy(update={
                        "purchase_id": grant.purchase_id,
                        "status": grant.status,
                        "granted_at": grant.granted_at,
                    })
                    updated = True
            if not updated:
                self._grants.append(grant)

    async def list_course_ids(self, user_id: str) -> List[str]:
        async with self._lock:
            seen: List[str] = []
            for grant in self._grants:
                if grant.user_id == user_id and grant.course_id not in seen:
                    seen.append(grant.course_id)
            return seen

    async def all(self) -> List[AccessGrant]:
        async with self._lock:
            return list(self._grants)


class PostgresAccessGrantStore(IAccessGrantStore):
    """user_courses on asyncpg"""

    async def insert_ignore(self, grant: AccessGrant) -> bool:
        try:
            result = await Database.execute(
                """
                INSERT INTO user_courses (user_id, course_id, purchase_id, status, granted_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (user_id, course_id) DO NOTHING
                """,
                grant.user_id,
                grant.course_id,
                grant.purchase_id,
                grant.status,
                grant.granted_at,
            )
        except asyncpg.InvalidColumnReferenceError as e:
            raise ConflictTargetMissing(str(e)) from e
        return rows_affected(result) > 0

    async def upsert(self, grant: AccessGrant) -> None:
        async with Database.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE user_courses
                    SET purchase_id = $3, status = $4, granted_at = $5
                    WHERE user_id = $1 AND course_id = $2
                    """,
                    grant.user_id,
                    grant.course_id,
                    grant.purchase_id,
                    grant.status,
                    grant.granted_at,
                )
                if rows_affected(result) == 0:
                    await conn.execute(
                        """
                        INSERT INTO user_courses (user_id, course_id, purchase_id, status, granted_at)
                        VALUES ($1, $2, $3, $4, $5)
                        """,
                        grant.user_id,
                        grant.course_id,
                        grant.purchase_id,
                        grant.status,
                        grant.granted_at,
                    )

    async def list_course_ids(self, user_id: str) -> List[str]:
        rows = await Database.fetch_all(
            "SELECT DISTINCT course_id FROM user_courses WHERE user_id = $1",
            user_id,
        )
        return [str(row["course_id"]) for row in rows]


# =============================================================================
# SERVICE
# =============================================================================

class AccessGrantService:
    """Grants course access after a confirmed payment."""

    def __init__(self, store: IAccessGrantStore):
        self.store = store

    async def grant(
        self,
        user_id: str,
        course_id: str,
        purchase_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        grant = AccessGrant(
            user_id=str(user_id),
            course_id=str(course_id),
            purchase_id=str(purchase_id) if purchase_id else None,
            status="active",
            granted_at=now or datetime.now(timezone.utc),
        )

        try:
            try:
                inserted = await self.store.insert_ignore(grant)
            except ConflictTargetMissing:
                logger.warning("grant_conflict_target_missing", course_id=grant.course_id)
                await self.store.upsert(grant)
                inserted = True
        except Exception as e:
            logger.error(
                "grant_failed",
                user_id=grant.user_id,
                course_id=grant.course_id,
                purchase_id=grant.purchase_id,
                error=str(e),
            )
            return False

        logger.info(
            "access_granted" if inserted else "access_already_granted",
            user_id=grant.user_id,
            course_id=grant.course_id,
            purchase_id=grant.purchase_id,
        )
        return True

    async def list_course_ids(self, user_id: str) -> List[str]:
        return await self.store.list_course_ids(user_id)
