# tests/test_access_grants.py
import asyncio

import pytest

from services.access_grants import AccessGrantService, IAccessGrantStore, InMemoryAccessGrantStore

pytestmark = pytest.mark.anyio


class BrokenGrantStore(IAccessGrantStore):
    async def insert_ignore(self, grant):
        raise RuntimeError("connection reset")

    async def upsert(self, grant):
        raise RuntimeError("connection reset")

    async def list_course_ids(self, user_id):
        return []


async def test_repeated_grants_leave_one_row(grants, grant_store):
    results = await asyncio.gather(*[
        grants.grant("user-1", "course-1", "purchase-1") for _ in range(5)
    ])

    assert all(results)
    rows = await grant_store.all()
    assert len(rows) == 1
    assert rows[0].status == "active"
    assert rows[0].purchase_id == "purchase-1"


async def test_legacy_table_without_unique_constraint():
    store = InMemoryAccessGrantStore(unique_constraint=False)
    service = AccessGrantService(store)

    assert await service.grant("user-1", "course-1", "purchase-1")
    assert await service.grant("user-1", "course-1", "purchase-2")

    rows = await store.all()
    assert len(rows) == 1
    assert rows[0].purchase_id == "purchase-2"


async def test_grant_failure_is_reported_not_raised():
    service = AccessGrantService(BrokenGrantStore())

    assert await service.grant("user-1", "course-1", "purchase-1") is False


async def test_list_course_ids(grants):
    await grants.grant("user-1", "course-1")
    await grants.grant("user-1", "course-2")
    await grants.grant("user-2", "course-3")

    assert await grants.list_course_ids("user-1") == ["course-1", "course-2"]
