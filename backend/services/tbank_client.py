# services/tbank_client.py
# ============================================================================
# COURSE PAYMENTS SERVICE - T-BANK CLIENT
# ============================================================================
# Purpose: Call the provider's Init and GetState operations
#
# ARCHITECTURE:
# - One httpx.AsyncClient per process, opened in the app lifespan
# - Every call is bounded by asyncio.timeout; slow calls are logged
# - Token modes are tried in order until the provider stops answering
#   with an invalid-token error
#
# FAILURE HANDLING:
# - Network errors, timeouts, non-2xx answers and non-JSON bodies raise
#   ProviderError at once (another mode would not help)
# - Exhausting every mode raises ProviderError("TBANK_SIGNATURE_REJECTED")
# ============================================================================

import asyncio
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit, urlunsplit

import httpx
import structlog

from errors import ProviderError, whitelist_provider_details
from schemas.payment_definitions import InitResult, StateResult, normalize_status
from services.tbank_signature import DEFAULT_EXCLUDE, DEFAULT_MODES, TOKEN_FIELD, sign

logger = structlog.get_logger().bind(component="tbank_client")


# ============================================================================
# SECTION 1: CONFIGURATION
# ============================================================================

INVALID_TOKEN_ERROR_CODES = frozenset({"204"})
INVALID_TOKEN_MARKERS = ("token", "токен")


def _env_list(name: str, default: str) -> Tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class TBankConfig:
    """Provider credentials and call limits."""
    api_url: str = "https://securepay.tinkoff.ru/v2"
    terminal_key: str = ""
    password: str = ""
    timeout_ms: int = 15000
    slow_log_ms: int = 1500
    token_modes: Tuple[str, ...] = DEFAULT_MODES
    token_exclude: Tuple[str, ...] = DEFAULT_EXCLUDE

    success_url: Optional[str] = None
    fail_url: Optional[str] = None
    notification_url: Optional[str] = None

    receipt_enabled: bool = False
    receipt_taxation: Optional[str] = None
    receipt_tax: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.terminal_key and self.password)

    @classmethod
    def from_env(cls) -> "TBankConfig":
        return cls(
            api_url=os.getenv("TBANK_API_URL", "https://securepay.tinkoff.ru/v2"),
            terminal_key=os.getenv("TBANK_TERMINAL_KEY", ""),
            password=os.getenv("TBANK_PASSWORD", ""),
            timeout_ms=int(os.getenv("TBANK_TIMEOUT_MS", "15000")),
            slow_log_ms=int(os.getenv("EXTERNAL_SLOW_LOG_MS", "1500")),
            token_modes=_env_list("TBANK_TOKEN_MODES", ",".join(DEFAULT_MODES)),
            token_exclude=_env_list("TBANK_TOKEN_EXCLUDE", ",".join(DEFAULT_EXCLUDE)),
            success_url=os.getenv("TBANK_SUCCESS_URL") or None,
            fail_url=os.getenv("TBANK_FAIL_URL") or None,
            notification_url=os.getenv("TBANK_NOTIFICATION_URL") or None,
            receipt_enabled=_env_flag("TBANK_RECEIPT_ENABLED"),
            receipt_taxation=os.getenv("TBANK_RECEIPT_TAXATION") or None,
            receipt_tax=os.getenv("TBANK_RECEIPT_TAX") or None,
        )


# ============================================================================
# SECTION 2: HELPERS
# ============================================================================

def _strip_credentials(url: str) -> str:
    """Drop user:password from a URL before it is logged."""
    try:
        parts = urlsplit(str(url))
        netloc = parts.hostname or ""
        if parts.port:
            netloc = f"{netloc}:{parts.port}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    except ValueError:
        return str(url)


def is_invalid_token_response(data: Dict[str, Any]) -> bool:
    """The provider rejected the request because of the Token field."""
    if not isinstance(data, dict) or data.get("Success") is True:
        return False
    code = str(data.get("ErrorCode") or "").strip()
    if code not in INVALID_TOKEN_ERROR_CODES:
        return False
    text = f"{data.get('Message') or ''} {data.get('Details') or ''}".lower()
    return any(marker in text for marker in INVALID_TOKEN_MARKERS)


def _first(data: Dict[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


# ============================================================================
# SECTION 3: CLIENT
# ============================================================================

class TBankClient:
    """
    Async client for the two provider operations the service consumes.

    Example:
        client = TBankClient(TBankConfig.from_env())
        await client.initialize()
        result = await client.init({"Amount": 190000, "OrderId": "..."})
        state = await client.get_state(result.payment_id)
    """

    def __init__(
        self,
        config: Optional[TBankConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        modes: Optional[Sequence[str]] = None,
    ):
        self.config = config or TBankConfig.from_env()
        self.modes: List[str] = list(modes or self.config.token_modes or DEFAULT_MODES)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
            logger.info("tbank_client_initialized", api_url=_strip_credentials(self.config.api_url))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _url(self, operation: str) -> str:
        base = str(self.config.api_url or "").rstrip("/")
        return f"{base}/{operation.lstrip('/')}"

    async def _post(self, operation: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """One bounded POST; returns the decoded JSON object."""
        if self._client is None:
            await self.initialize()

        url = self._url(operation)
        name = f"tbank-{operation.lower()}"
        timeout_s = self.config.timeout_ms / 1000
        started = time.perf_counter()

        try:
            async with asyncio.timeout(timeout_s):
                response = await self._client.post(url, json=body, timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.warning(
                "aborted_external",
                name=name,
                ms=round((time.perf_counter() - started) * 1000),
                url=_strip_credentials(url),
                error=str(e) or "timeout",
            )
            raise ProviderError(details={"reason": "timeout"}) from e
        except httpx.HTTPError as e:
            logger.warning(
                "failed_external",
                name=name,
                ms=round((time.perf_counter() - started) * 1000),
                url=_strip_credentials(url),
                error=str(e),
            )
            raise ProviderError(details={"reason": "network"}) from e

        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms >= self.config.slow_log_ms:
            logger.warning(
                "slow_external",
                name=name,
                ms=round(elapsed_ms),
                url=_strip_credentials(url),
                status=response.status_code,
            )

        if response.status_code >= 400:
            raise ProviderError(details={"reason": "http_status", "status": response.status_code})

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(details={"reason": "invalid_json"}) from e
        if not isinstance(data, dict):
            raise ProviderError(details={"reason": "invalid_json"})
        return data

    async def _signed_call(self, operation: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Try each token mode until the provider accepts the signature."""
        fields = {key: value for key, value in payload.items() if key != TOKEN_FIELD}
        fields.setdefault("TerminalKey", self.config.terminal_key)

        last: Dict[str, Any] = {}
        for mode in self.modes:
            token = sign(fields, self.config.password, mode, self.config.token_exclude)
            data = await self._post(operation, {**fields, TOKEN_FIELD: token})

            if not is_invalid_token_response(data):
                if mode != self.modes[0]:
                    logger.info("token_mode_fallback", operation=operation, mode=mode)
                return data

            logger.warning(
                "token_rejected",
                operation=operation,
                mode=mode,
                error_code=data.get("ErrorCode"),
            )
            last = data

        raise ProviderError(
            "TBANK_SIGNATURE_REJECTED",
            details=whitelist_provider_details(last),
        )

    # ========================================================================
    # PUBLIC OPERATIONS
    # ========================================================================

    async def init(self, payload: Dict[str, Any]) -> InitResult:
        data = await self._signed_call("Init", payload)
        payment_id = _first(data, "PaymentId", "paymentId")
        return InitResult(
            success=data.get("Success") is True or data.get("success") is True,
            payment_id=str(payment_id) if payment_id is not None else None,
            payment_url=_first(data, "PaymentURL", "PaymentUrl", "paymentUrl"),
            raw_status=_first(data, "Status", "status"),
            raw=data,
        )

    async def get_state(self, payment_id: str) -> StateResult:
        data = await self._signed_call("GetState", {"PaymentId": str(payment_id)})
        status = normalize_status(_first(data, "Status", "status"))
        if not status:
            raise ProviderError(
                "TBANK_GET_STATE_FAILED",
                details=whitelist_provider_details(data),
            )
        return StateResult(status=status, raw=data)
