import base64
import hashlib
import hmac
import json
import time
from typing import Any

from fastapi import Header, HTTPException

from backend.config import AUTH_TOKEN_TTL_SECONDS, SIGNING_KEY, STAFF_ROLE


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload_b64: str, *, purpose: str) -> str:
    digest = hmac.new(
        SIGNING_KEY.encode("utf-8"),
        f"{purpose}.{payload_b64}".encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(digest)


def sign_claims(claims: dict[str, Any], *, purpose: str) -> str:
    payload_json = json.dumps(claims, separators=(",", ":"), sort_keys=True)
    payload_b64 = _b64url_encode(payload_json.encode("utf-8"))
    return f"{payload_b64}.{_sign(payload_b64, purpose=purpose)}"


def decode_signed(token: str, *, purpose: str) -> dict[str, Any] | None:
    """Verify signature and return the claims; expiry is left to the caller."""
    if not token or "." not in token:
        return None

    payload_b64, signature = token.split(".", 1)
    try:
        expected = _sign(payload_b64, purpose=purpose)
    except UnicodeEncodeError:
        return None
    if not hmac.compare_digest(signature, expected):
        return None

    try:
        payload_raw = _b64url_decode(payload_b64).decode("utf-8")
        payload = json.loads(payload_raw)
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(payload, dict):
        return None
    return payload


def issue_session_token(subject: str, *, role: str = STAFF_ROLE) -> tuple[str, dict[str, Any]]:
    now = int(time.time())
    exp = now + AUTH_TOKEN_TTL_SECONDS
    payload = {
        "sub": subject.strip(),
        "role": role,
        "iat": now,
        "exp": exp,
    }
    return sign_claims(payload, purpose="auth"), payload


def decode_session_token(token: str) -> dict[str, Any] | None:
    payload = decode_signed(token, purpose="auth")
    if payload is None:
        return None

    sub = payload.get("sub")
    exp = payload.get("exp")
    if not isinstance(sub, str) or not sub.strip():
        return None
    if not isinstance(exp, int):
        return None
    if exp < int(time.time()):
        return None

    return payload


def require_session(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    payload = decode_session_token(token.strip())
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")
    if payload.get("role") != STAFF_ROLE:
        raise HTTPException(status_code=403, detail="Staff access required.")

    return payload
