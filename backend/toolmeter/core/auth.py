"""Clerk JWT authentication for FastAPI.

The entitlement code never sees tokens: it only receives the ``AuthenticatedUser``
produced here. A request without a verifiable credential is rejected before
any entitlement logic runs.
"""

import base64
from dataclasses import dataclass, field
from functools import lru_cache

import jwt as pyjwt
import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from toolmeter.core.config import get_settings

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


class InvalidCredentialError(Exception):
    """A presented credential failed verification."""


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
    except (ValueError, UnicodeDecodeError) as exc:
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
class AuthenticatedUser:
    """Identity resolved from a verified session token."""

    user_id: str
    email: str | None = None
    claims: dict = field(default_factory=dict)


def _validate_audience_claim(aud_claim: object, allowed_audiences: list[str]) -> None:
    if aud_claim is None:
        raise InvalidCredentialError("Missing aud claim")

    if isinstance(aud_claim, str):
        audiences = {aud_claim}
    elif isinstance(aud_claim, list) and all(isinstance(v, str) for v in aud_claim):
        audiences = set(aud_claim)
    else:
        raise InvalidCredentialError("Invalid aud claim format")

    if not audiences.intersection(allowed_audiences):
        raise InvalidCredentialError("Unauthorized audience (aud mismatch)")


def decode_clerk_jwt(token: str) -> AuthenticatedUser:
    """Verify signature, timing claims, issuer, azp and (optionally) audience.

    Raises ``InvalidCredentialError`` on any validation failure.
    """
    settings = get_settings()
    try:
        signing_key = get_jwks_client().get_signing_key_from_jwt(token)
        payload = pyjwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            options={
                "verify_exp": True,
                "verify_nbf": True,
                "verify_iat": True,
                "verify_aud": False,
                "require": ["sub", "exp", "nbf", "iat"],
            },
        )
    except pyjwt.ExpiredSignatureError as exc:
        raise InvalidCredentialError("Token expired") from exc
    except pyjwt.ImmatureSignatureError as exc:
        raise InvalidCredentialError("Token not yet valid") from exc
    except pyjwt.InvalidTokenError as exc:
        raise InvalidCredentialError(f"Invalid token: {exc}") from exc

    try:
        expected_issuer = f"https://{_extract_frontend_api_domain(settings.clerk_publishable_key)}"
    except ValueError as exc:
        raise InvalidCredentialError("Authentication is misconfigured") from exc
    if payload.get("iss") != expected_issuer:
        raise InvalidCredentialError("Invalid issuer (iss mismatch)")

    azp = payload.get("azp")
    if not azp or azp not in settings.clerk_allowed_origins:
        raise InvalidCredentialError("Unauthorized origin (azp mismatch)")

    if settings.clerk_allowed_audiences:
        _validate_audience_claim(payload.get("aud"), settings.clerk_allowed_audiences)

    return AuthenticatedUser(user_id=payload["sub"], email=payload.get("email"), claims=payload)


def verify_credential(token: str | None) -> AuthenticatedUser | None:
    """Resolve a bearer token to a user, or None when it cannot be verified."""
    if not token:
        return None
    try:
        return decode_clerk_jwt(token)
    except InvalidCredentialError as exc:
        logger.info("credential_rejected", reason=str(exc))
        return None


async def require_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """FastAPI dependency returning the authenticated user or raising 401.

    Usage::

        @router.get("/protected")
        async def protected(user: AuthenticatedUser = Depends(require_auth)):
            ...
    """
    user = verify_credential(credentials.credentials if credentials else None)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or missing credentials")

    # Error handlers read this for log context
    request.state.user_id = user.user_id
    return user
