import secrets

from backend.config import CLASS_TOKEN_TTL_SECONDS
from backend.security import decode_signed, sign_claims
from backend.services.models import ClassToken

CLASS_TOKEN_PURPOSE = "class"


class TokenIssuer:
    """
    Mints opaque, unguessable class tokens bound to one session.

    The token carries its own signed issue time and TTL so expiry can be
    recomputed server-side from the token alone; whether a value is still the
    session's *current* token is decided by SessionRegistry.
    """

    def __init__(self, ttl_seconds: int = CLASS_TOKEN_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds

    def mint(self, session_id: str, *, now: float, ttl_seconds: int | None = None) -> ClassToken:
        ttl = int(ttl_seconds if ttl_seconds is not None else self.ttl_seconds)
        claims = {
            "sid": session_id,
            "iat": round(now, 3),
            "ttl": ttl,
            "nonce": secrets.token_urlsafe(16),
        }
        return ClassToken(
            token_value=sign_claims(claims, purpose=CLASS_TOKEN_PURPOSE),
            session_id=session_id,
            issued_at=claims["iat"],
            ttl_seconds=ttl,
        )

    def decode(self, token_value: str) -> ClassToken | None:
        claims = decode_signed((token_value or "").strip(), purpose=CLASS_TOKEN_PURPOSE)
        if claims is None:
            return None

        sid = claims.get("sid")
        iat = claims.get("iat")
        ttl = claims.get("ttl")
        if not isinstance(sid, str) or not sid:
            return None
        if not isinstance(iat, (int, float)) or not isinstance(ttl, int):
            return None

        return ClassToken(
            token_value=token_value.strip(),
            session_id=sid,
            issued_at=float(iat),
            ttl_seconds=ttl,
        )
