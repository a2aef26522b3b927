"""
HMAC-SHA256 signatures shared by the payment authority and the game-server
plugins.

Parameter sets are canonicalized as ``key1value1key2value2...``: the ``s``
field is dropped, keys are sorted ascending, values are rendered as trimmed
strings and keys whose value is None or empty are omitted. The payment
authority recomputes the digest the same way, so this format must not
change.
"""
from __future__ import annotations
import hashlib
import hmac
from typing import Any, Mapping, Optional

SIGNATURE_FIELD = "s"


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def canonicalize(params: Mapping[str, Any]) -> str:
    parts = []
    for key in sorted(params):
        if key == SIGNATURE_FIELD:
            continue
        value = params[key]
        if value is None:
            continue
        rendered = _render(value)
        if rendered == "":
            continue
        parts.append(f"{key}{rendered}")
    return "".join(parts)


def sign_payload(payload: str | bytes, secret_key: str) -> str:
    if isinstance(payload, str):
        payload = payload.encode()
    return hmac.new(
        secret_key.encode(), payload, hashlib.sha256
    ).hexdigest()


def verify_payload(
        payload: str | bytes, signature: Optional[str], secret_key: str
) -> bool:
    if not signature or not secret_key:
        return False
    expected = sign_payload(payload, secret_key)
    return hmac.compare_digest(expected, signature.strip().lower())


def sign(params: Mapping[str, Any], secret_key: str) -> str:
    return sign_payload(canonicalize(params), secret_key)


def verify(
        params: Mapping[str, Any], signature: Optional[str], secret_key: str
) -> bool:
    return verify_payload(canonicalize(params), signature, secret_key)


def signed_params(
        params: Mapping[str, Any], api_key: str, secret_key: str
) -> dict:
    """params + apiKey + s, with empty values dropped (they are not signed)."""
    out = {
        k: _render(v) for k, v in params.items()
        if v is not None and _render(v) != ""
    }
    out["apiKey"] = api_key
    out[SIGNATURE_FIELD] = sign(out, secret_key)
    return out
