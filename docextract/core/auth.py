"""
Auth0 JWT validation OR dev-mode bypass. Controlled by FF_USE_AUTH0 flag.

Authentication always resolves before any persistence happens; failures
surface as Unauthorized.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx
from jose import jwt, JWTError

from .config import get_settings
from .exceptions import Unauthorized
from .flags import get_flags

logger = logging.getLogger(__name__)

CLAIM_NAMESPACE = "https://docextract.app"


@dataclass
class AuthenticatedUser:
    user_id: str
    email: str = ""
    tenant_id: str = ""
    permissions: list[str] = field(default_factory=list)


# Dev-mode user, returned when FF_USE_AUTH0=false
DEV_USER = AuthenticatedUser(
    user_id="dev-user",
    email="dev@local",
    tenant_id="dev-tenant",
    permissions=["all"],
)


class Auth0Client:
    """Validates Auth0 JWT tokens. Caches JWKS keys."""

    def __init__(self):
        self._jwks: Optional[dict] = None
        self._jwks_fetched_at: float = 0
        self._jwks_ttl: int = 600  # 10 minutes

    async def _get_jwks(self, domain: str) -> dict:
        now = time.time()
        if self._jwks and (now - self._jwks_fetched_at) < self._jwks_ttl:
            return self._jwks

        url = f"https://{domain}/.well-known/jwks.json"
        async with httpx.AsyncClient() as client:
            resp = await client.get(url, timeout=10)
            resp.raise_for_status()
            self._jwks = resp.json()
            self._jwks_fetched_at = now
            return self._jwks

    async def verify_token(self, token: str) -> AuthenticatedUser:
        settings = get_settings()
        domain = settings.auth0_domain

        try:
            jwks = await self._get_jwks(domain)
        except httpx.HTTPError as e:
            logger.error("JWKS fetch failed for %s: %s", domain, e)
            raise Unauthorized("Unable to verify token")

        unverified_header = jwt.get_unverified_header(token)
        rsa_key = next(
            (
                {k: key[k] for k in ("kty", "kid", "use", "n", "e")}
                for key in jwks.get("keys", [])
                if key.get("kid") == unverified_header.get("kid")
            ),
            None,
        )
        if not rsa_key:
            raise JWTError("Unable to find matching key in JWKS")

        payload = jwt.decode(
            token,
            rsa_key,
            algorithms=[settings.auth0_algorithm],
            audience=settings.auth0_audience,
            issuer=f"https://{domain}/",
        )

        user_id = payload.get("sub", "")
        return AuthenticatedUser(
            user_id=user_id,
            email=payload.get("email", payload.get(f"{CLAIM_NAMESPACE}/email", "")),
            # Single-user tenants when the token carries no tenant claim
            tenant_id=payload.get(f"{CLAIM_NAMESPACE}/tenant_id", user_id),
            permissions=payload.get("permissions", []),
        )


# Singleton
_auth0_client = Auth0Client()


async def get_current_user(authorization: str = "") -> AuthenticatedUser:
    """
    Resolve the current user from the Authorization header.
    If FF_USE_AUTH0 is false, returns a dev user.
    """
    flags = get_flags()

    if not flags.use_auth0:
        return DEV_USER

    if not authorization:
        raise Unauthorized("Missing authorization header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise Unauthorized("Invalid Authorization header. Use: Bearer <token>")

    try:
        user = await _auth0_client.verify_token(token)
    except JWTError as e:
        raise Unauthorized(f"Invalid token: {e}")

    if not user.user_id:
        raise Unauthorized("Token missing subject claim")

    return user
