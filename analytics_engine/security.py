from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any

from fastapi import Header

from analytics_engine.errors import EngineError
from analytics_engine.schemas import AccessScope
from analytics_engine.settings import get_settings

TOKEN_ISSUER = "practice-api"
TOKEN_AUDIENCE = "analytics-engine"


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")


def _safe_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _int_list(value: Any) -> list[int] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        return []
    ids = [_safe_int(item) for item in value]
    return [item for item in ids if item is not None]


def _invalid(message: str) -> EngineError:
    return EngineError(status_code=401, code="invalid_service_token", message=message)


def verify_service_token(token: str, *, secret: str | None = None) -> AccessScope:
    """Validate a signed service token and return the access scope it carries.

    A token without a ``partition_ids`` claim yields an empty, restricted scope.
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise _invalid("Invalid service token format")

    header_b64, payload_b64, signature_b64 = parts
    signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
    expected_sig = hmac.new(
        (secret or get_settings().engine_service_secret).encode("utf-8"),
        signing_input,
        hashlib.sha256,
    ).digest()
    try:
        got_sig = _b64url_decode(signature_b64)
        payload = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        raise _invalid("Invalid service token encoding") from exc
    if not hmac.compare_digest(expected_sig, got_sig):
        raise _invalid("Invalid service token signature")
    if not isinstance(payload, dict):
        raise _invalid("Invalid service token payload")

    exp = _safe_int(payload.get("exp"))
    if exp is None or exp < int(time.time()):
        raise EngineError(status_code=401, code="expired_service_token", message="Service token expired")
    if payload.get("aud") != TOKEN_AUDIENCE:
        raise _invalid("Invalid service token audience")
    if payload.get("iss") != TOKEN_ISSUER:
        raise _invalid("Invalid service token issuer")

    return AccessScope(
        partition_ids=_int_list(payload.get("partition_ids")) or [],
        secondary_entity_ids=_int_list(payload.get("secondary_entity_ids")),
        unrestricted=payload.get("unrestricted") is True,
        principal_id=str(payload["sub"]) if payload.get("sub") is not None else None,
    )


def require_access_scope(authorization: str | None = Header(default=None)) -> AccessScope:
    if not authorization:
        raise EngineError(status_code=401, code="missing_service_token", message="Missing service token")
    scheme, _, raw_token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not raw_token:
        raise _invalid("Invalid authorization header")
    return verify_service_token(raw_token)


def mint_service_token(
    *,
    secret: str,
    subject: str,
    partition_ids: list[int],
    secondary_entity_ids: list[int] | None = None,
    unrestricted: bool = False,
    ttl_seconds: int = 120,
) -> str:
    now = int(time.time())
    header = {"alg": "HS256", "typ": "JWT"}
    payload = {
        "iss": TOKEN_ISSUER,
        "aud": TOKEN_AUDIENCE,
        "sub": subject,
        "iat": now,
        "exp": now + ttl_seconds,
        "partition_ids": partition_ids,
        "secondary_entity_ids": secondary_entity_ids,
        "unrestricted": unrestricted,
    }
    header_b64 = _b64url_encode(json.dumps(header, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    payload_b64 = _b64url_encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
    sig = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    return f"{header_b64}.{payload_b64}.{_b64url_encode(sig)}"
