# services/course_catalog.py
# ============================================================================
# COURSE PAYMENTS SERVICE - COURSE CATALOG
# ============================================================================
# Read-only view of course prices used by checkout.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

from database import Database
from schemas.payment_definitions import Course


class ICourseCatalog(ABC):
    """Course price lookup"""

    @abstractmethod
    async def get_course(self, course_id: str) -> Optional[Course]:
        pass


class InMemoryCourseCatalog(ICourseCatalog):

    def __init__(self, courses: Optional[Iterable[Course]] = None):
        self._courses: Dict[str, Course] = {c.id: c for c in (courses or [])}
        self._lock = asyncio.Lock()

    async def add(self, course: Course) -> None:
        async with self._lock:
            self._courses[course.id] = course

    async def get_course(self, course_id: str) -> Optional[Course]:
        async with self._lock:
            return self._courses.get(course_id)


class PostgresCourseCatalog(ICourseCatalog):

    async def get_course(self, course_id: str) -> Optional[Course]:
        row = await Database.fetch_one(
            "SELECT id, title, price, sale_price, currency FROM courses WHERE id = $1",
            course_id,
        )
        if row is None:
            return None
        return Course(**{**dict(row), "id": str(row["id"])})
