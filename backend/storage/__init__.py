# storage/__init__.py
# ============================================================================
# COURSE PAYMENTS SERVICE - STORAGE MODULE
# ============================================================================
# Purchase persistence (Postgres in production, in-memory for tests)
# ============================================================================

from storage.purchase_store import (
    IPurchaseStore,
    InMemoryPurchaseStore,
    PostgresPurchaseStore,
    PurchaseChanges,
    UpdateGuard,
)

__all__ = [
    "IPurchaseStore",
    "InMemoryPurchaseStore",
    "PostgresPurchaseStore",
    "PurchaseChanges",
    "UpdateGuard",
]
