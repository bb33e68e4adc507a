# services/tbank_signature.py
# ============================================================================
# COURSE PAYMENTS SERVICE - T-BANK REQUEST TOKENS
# ============================================================================
# Purpose: Compute and verify the SHA-256 `Token` field of provider requests
#
# The provider documents one canonicalization but deployments disagree on
# it, so the token is computed by an ordered list of modes. Callers try the
# modes in order and fall back to the next one when the provider answers
# with an invalid-token error.
# ============================================================================

import hashlib
import hmac
import json
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple


TOKEN_FIELD = "Token"
PASSWORD_FIELD = "Password"

MODE_PASSWORD_KEY = "password_key"
MODE_APPEND_PASSWORD = "append_password"
MODE_KEY_VALUE = "key_value"

DEFAULT_MODES: Tuple[str, ...] = (MODE_PASSWORD_KEY, MODE_APPEND_PASSWORD, MODE_KEY_VALUE)

# Nested objects some deployments leave out of the signed field set.
DEFAULT_EXCLUDE: Tuple[str, ...] = ("Receipt", "DATA")

Canonicalizer = Callable[[List[Tuple[str, str]], str], str]


def _render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def _prepare_fields(fields: Mapping[str, Any], exclude: Iterable[str] = ()) -> List[Tuple[str, str]]:
    """Drop the token, excluded names and empty values; render the rest."""
    skip = {TOKEN_FIELD, *exclude}
    return [
        (str(name), _render_value(value))
        for name, value in (fields or {}).items()
        if str(name) not in skip and value is not None
    ]


def _password_key(entries: List[Tuple[str, str]], secret: str) -> str:
    items = sorted(entries + [(PASSWORD_FIELD, secret)], key=lambda item: item[0])
    return "".join(value for _, value in items)


def _append_password(entries: List[Tuple[str, str]], secret: str) -> str:
    items = sorted(entries, key=lambda item: item[0])
    return "".join(value for _, value in items) + secret


def _key_value(entries: List[Tuple[str, str]], secret: str) -> str:
    items = sorted(entries + [(PASSWORD_FIELD, secret)], key=lambda item: item[0])
    return "".join(name + value for name, value in items)


SIGNATURE_MODES: Dict[str, Canonicalizer] = {
    MODE_PASSWORD_KEY: _password_key,
    MODE_APPEND_PASSWORD: _append_password,
    MODE_KEY_VALUE: _key_value,
}


def register_mode(name: str, canonicalizer: Canonicalizer) -> None:
    """Add a canonicalization mode usable by sign/verify and the client."""
    SIGNATURE_MODES[name] = canonicalizer


def canonicalize(
    fields: Mapping[str, Any],
    secret: str,
    mode: str = MODE_PASSWORD_KEY,
    exclude: Iterable[str] = (),
) -> str:
    try:
        canonicalizer = SIGNATURE_MODES[mode]
    except KeyError:
        raise ValueError(f"Unknown signature mode: {mode}") from None
    return canonicalizer(_prepare_fields(fields, exclude), str(secret or ""))


def sign(
    fields: Mapping[str, Any],
    secret: str,
    mode: str = MODE_PASSWORD_KEY,
    exclude: Iterable[str] = (),
) -> str:
    """Lower-case hex SHA-256 of the canonical string for `mode`."""
    data = canonicalize(fields, secret, mode, exclude)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def verify(
    fields: Mapping[str, Any],
    secret: str,
    candidate_token: Optional[str],
    modes: Sequence[str] = DEFAULT_MODES,
    exclude: Iterable[str] = DEFAULT_EXCLUDE,
) -> bool:
    """
    Check an inbound token against every mode, with and without the
    exclusion list. Comparison is constant-time and case-insensitive.
    """
    if not candidate_token:
        return False

    candidate = str(candidate_token).strip().lower().encode("utf-8")
    exclusions = [tuple(exclude)]
    if exclusions[0]:
        exclusions.append(())

    for mode in modes:
        for excluded in exclusions:
            expected = sign(fields, secret, mode, excluded)
            if hmac.compare_digest(expected.encode("utf-8"), candidate):
                return True
    return False
