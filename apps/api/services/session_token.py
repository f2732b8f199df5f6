"""Bearer token verification against the identity provider."""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
from jose import JWTError, jwt

from config import resolve_jwks_url, resolve_jwt_issuer, settings

logger = logging.getLogger(__name__)

ASYMMETRIC_ALGORITHMS = ["RS256", "ES256"]

_jwks_cache: Dict[str, Any] = {"keys": None, "fetched_at": 0.0}


def create_access_token(
    subject: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Mint a token shaped like the identity provider's, signed with the static secret."""
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = now + timedelta(hours=max(ttl_hours, 1))
    claims: Dict[str, Any] = {
        "sub": subject,
        "role": "authenticated",
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if settings.JWT_AUDIENCE:
        claims["aud"] = settings.JWT_AUDIENCE
    issuer = resolve_jwt_issuer()
    if issuer:
        claims["iss"] = issuer
    if email:
        claims["email"] = email

    token = jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    return {
        "token": token,
        "expires_at": int(expires_at.timestamp()),
    }


def decode_access_token(token: str, key: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Decode and validate a bearer token. Raises ValueError on any failure."""
    audience = settings.JWT_AUDIENCE or None
    issuer = resolve_jwt_issuer() or None
    if key is not None:
        verify_key: Any = key
        algorithms = ASYMMETRIC_ALGORITHMS
    else:
        verify_key = settings.JWT_SECRET
        algorithms = [settings.JWT_ALGORITHM]

    try:
        payload = jwt.decode(
            token,
            verify_key,
            algorithms=algorithms,
            audience=audience,
            issuer=issuer,
            options={"verify_aud": audience is not None},
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired token.") from exc

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Token missing subject.")

    return payload


async def load_jwks() -> Optional[Dict[str, Any]]:
    """Return the cached JWKS document, refreshing it once it is older than JWKS_CACHE_SECONDS."""
    url = resolve_jwks_url()
    if not url:
        return None

    now = time.monotonic()
    cached = _jwks_cache.get("keys")
    if cached and now - float(_jwks_cache.get("fetched_at") or 0.0) < max(int(settings.JWKS_CACHE_SECONDS), 1):
        return cached

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(url)
            response.raise_for_status()
            document = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        if cached:
            logger.warning("JWKS refresh failed, keeping cached keys: %s", exc)
            return cached
        raise ValueError("Unable to load identity provider keys.") from exc

    _jwks_cache["keys"] = document
    _jwks_cache["fetched_at"] = now
    return document


async def verify_access_token(token: str) -> Dict[str, Any]:
    return decode_access_token(token, key=await load_jwks())
