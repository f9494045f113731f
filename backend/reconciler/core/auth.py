"""Session verification for FastAPI.

Sessions are issued by Clerk; this service only verifies them. A session is
accepted from the ``Authorization: Bearer`` header or, for browser redirects
such as the GitHub installation callback, from the ``__session`` cookie.
"""

import base64
from dataclasses import dataclass
from functools import lru_cache

import jwt as pyjwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from reconciler.core.config import get_settings

_bearer_scheme = HTTPBearer(auto_error=False)

SESSION_COOKIE = "__session"


def _extract_frontend_api_domain(pk: str) -> str:
    """Extract the Clerk frontend API domain from a publishable key.

    Clerk publishable keys are formatted as ``pk_(test|live)_<base64>`` where the
    base64 payload decodes to ``<domain>$``.
    """
    parts = pk.split("_", 2)
    if len(parts) != 3 or parts[0] != "pk":
        raise ValueError("Invalid Clerk publishable key format")

    try:
        raw = base64.b64decode(parts[2] + "==")
        domain = raw.decode("utf-8").rstrip("$")
    except Exception as exc:
        raise ValueError("Invalid Clerk publishable key: cannot decode") from exc

    if not domain:
        raise ValueError("Invalid Clerk publishable key: empty domain")

    return domain


@lru_cache
def get_jwks_client() -> PyJWKClient:
    """Create a cached JWKS client pointing at the Clerk JWKS endpoint."""
    settings = get_settings()
    domain = _extract_frontend_api_domain(settings.clerk_publishable_key)
    return PyJWKClient(f"https://{domain}/.well-known/jwks.json", cache_keys=True, lifespan=300)


@dataclass(frozen=True)
class SessionUser:
    """Authenticated user extracted from a session JWT."""

    user_id: str
    claims: dict

    @property
    def email(self) -> str | None:
        return self.claims.get("email")

    @property
    def name(self) -> str | None:
        return self.claims.get("name")

    @property
    def github_account_id(self) -> str | None:
        """Numeric GitHub account id linked to this user, from the session template."""
        value = self.claims.get("github_account_id")
        return str(value) if value is not None else None

    @property
    def active_org_id(self) -> str | None:
        return self.claims.get("org_id")


def decode_session_token(token: str) -> SessionUser:
    """Verify and decode a session JWT.

    Raises ``HTTPException(401)`` on any validation failure.
    """
    try:
        client = get_jwks_client()
        signing_key = client.get_signing_key_from_jwt(token)

        payload = pyjwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            options={
                "verify_exp": True,
                "verify_nbf": True,
                "verify_iat": True,
                "require": ["sub", "exp", "nbf", "iat"],
            },
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.MissingRequiredClaimError as exc:
        raise HTTPException(status_code=401, detail=f"Missing required claim: {exc}")
    except pyjwt.InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token: {exc}")
    except ValueError as exc:
        raise HTTPException(status_code=500, detail="Authentication is misconfigured") from exc

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Token missing sub claim")

    settings = get_settings()
    azp = payload.get("azp")
    if azp is not None and azp not in settings.clerk_allowed_origins:
        raise HTTPException(status_code=401, detail="Unauthorized origin (azp mismatch)")

    return SessionUser(user_id=sub, claims=payload)


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> SessionUser:
    """FastAPI dependency that extracts and validates the session JWT.

    Usage::

        @router.post("/protected")
        async def protected(user: SessionUser = Depends(require_auth)):
            ...
    """
    token = credentials.credentials if credentials else request.cookies.get(SESSION_COOKIE)
    if not token:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    user = decode_session_token(token)
    request.state.user_id = user.user_id
    return user


async def get_optional_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> SessionUser | None:
    """Like ``require_auth`` but returns None instead of failing.

    Used by browser redirect endpoints that send anonymous visitors to sign-in.
    """
    try:
        return await require_auth(request, credentials)
    except HTTPException as exc:
        if exc.status_code == 401:
            return None
        raise
