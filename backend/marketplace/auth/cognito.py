from __future__ import annotations

from typing import Any

import httpx
from cachetools import TTLCache
from jose import JWTError, jwt

from ..modules.identity.actor import Actor
from ..settings import settings


class CognitoAuthError(Exception):
    def __init__(self, message: str, *, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


_JWKS_CACHE: TTLCache[str, dict[str, Any]] = TTLCache(maxsize=4, ttl=60 * 60)


def _issuer() -> str:
    if not settings.cognito_user_pool_id:
        raise CognitoAuthError("COGNITO_USER_POOL_ID is not set", status_code=500)
    region = settings.cognito_region or settings.aws_region
    return f"https://cognito-idp.{region}.amazonaws.com/{settings.cognito_user_pool_id}"


def _get_jwks() -> dict[str, Any]:
    url = f"{_issuer()}/.well-known/jwks.json"
    cached = _JWKS_CACHE.get(url)
    if cached:
        return cached

    with httpx.Client(timeout=10.0) as client:
        resp = client.get(url)
        resp.raise_for_status()
        jwks = resp.json()

    _JWKS_CACHE[url] = jwks
    return jwks


def verify_claims(token: str) -> dict[str, Any]:
    if not token:
        raise CognitoAuthError("missing token")
    if not settings.cognito_client_id:
        raise CognitoAuthError("COGNITO_CLIENT_ID is not set", status_code=500)

    try:
        claims = jwt.decode(
            token,
            _get_jwks(),
            algorithms=["RS256"],
            audience=settings.cognito_client_id,
            issuer=_issuer(),
            options={"verify_aud": True, "verify_iss": True},
        )
    except JWTError as e:
        raise CognitoAuthError("invalid token") from e

    if claims.get("token_use") not in (None, "id"):
        # Role and company claims are only present on ID tokens.
        raise CognitoAuthError("invalid token_use")
    if not str(claims.get("sub") or "").strip():
        raise CognitoAuthError("missing sub")
    return claims


def verify_bearer_token(token: str) -> Actor:
    """Verify a Cognito ID token and turn its claims into the caller's Actor."""
    return Actor.from_claims(verify_claims(token))
