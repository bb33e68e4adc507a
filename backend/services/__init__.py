# services/__init__.py
# ============================================================================
# COURSE PAYMENTS SERVICE - SERVICES MODULE
# ============================================================================
# Provider client, request tokens, access grants and the course catalog
# ============================================================================

from services.tbank_signature import (
    DEFAULT_MODES,
    SIGNATURE_MODES,
    register_mode,
    sign,
    verify,
)

from services.tbank_client import (
    TBankClient,
    TBankConfig,
)

from services.access_grants import (
    AccessGrantService,
    InMemoryAccessGrantStore,
    PostgresAccessGrantStore,
)

from services.course_catalog import (
    ICourseCatalog,
    InMemoryCourseCatalog,
    PostgresCourseCatalog,
)

__all__ = [
    # Request tokens
    "DEFAULT_MODES",
    "SIGNATURE_MODES",
    "register_mode",
    "sign",
    "verify",
    # Provider client
    "TBankClient",
    "TBankConfig",
    # Access grants
    "AccessGrantService",
    "InMemoryAccessGrantStore",
    "PostgresAccessGrantStore",
    # Catalog
    "ICourseCatalog",
    "InMemoryCourseCatalog",
    "PostgresCourseCatalog",
]
