"""Bearer token verification for the chat routes.

Access codes are exchanged for signed JWTs by the access-code service; this
module only verifies those tokens and exposes the caller's identity and role to
the routers. Token issuance lives outside this service.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, TypedDict, cast

import jwt
from fastapi import Depends, HTTPException, Request, status
from jwt import ExpiredSignatureError, InvalidTokenError

__all__ = [
    "ROLES",
    "AccessTokenConfigurationError",
    "AccessTokenPayload",
    "AccessTokenValidationError",
    "Principal",
    "decode_access_token",
    "get_current_principal",
    "require_role",
]

ROLES = ("student", "counsellor", "admin")


class AccessTokenConfigurationError(RuntimeError):
    """Raised when token verification is not configured."""


class AccessTokenValidationError(ValueError):
    """Raised when the provided access token cannot be validated."""


class _AccessTokenRequiredClaims(TypedDict):
    sub: str
    role: str


class AccessTokenPayload(_AccessTokenRequiredClaims, total=False):
    """Decoded JWT payload issued by the access-code service."""

    exp: int
    iat: int
    name: str
    school: str


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as seen by the routers."""

    user_id: str
    role: str
    name: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.role in {"counsellor", "admin"}


def _get_env(name: str, *, required: bool = True, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if required and (value is None or not value.strip()):
        raise AccessTokenConfigurationError(
            f"Environment variable '{name}' must be set for access token validation.",
        )
    if value is None:
        return ""
    return value.strip()


def decode_access_token(token: str) -> AccessTokenPayload:
    """Decode and validate an access token.

    Raises:
        AccessTokenConfigurationError: If ``ACCESS_TOKEN_SECRET`` is missing.
        AccessTokenValidationError: If the signature, expiry or claims are invalid.
    """

    secret_key = _get_env("ACCESS_TOKEN_SECRET")
    algorithm = _get_env("ACCESS_TOKEN_ALGORITHM", required=False, default="HS256")

    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[algorithm],
            options={"require": ["exp", "sub"]},
        )
    except ExpiredSignatureError as exc:
        raise AccessTokenValidationError("Access token has expired.") from exc
    except InvalidTokenError as exc:
        raise AccessTokenValidationError("Access token is invalid.") from exc

    role = payload.get("role")
    if role not in ROLES:
        raise AccessTokenValidationError("Access token carries an unknown role.")

    return cast(AccessTokenPayload, payload)


async def get_current_principal(request: Request) -> Principal:
    """Resolve the caller from the ``Authorization`` header.

    Raises ``401`` for a missing or invalid token and ``500`` when verification
    is not configured.
    """

    authorization = request.headers.get("Authorization")
    if not authorization and request.url.path.endswith("/events"):
        # Browsers' EventSource cannot set headers; streams accept a query token.
        query_token = request.query_params.get("access_token")
        if query_token:
            authorization = f"Bearer {query_token}"
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header.",
        )

    scheme, _, credentials = authorization.partition(" ")
    if not credentials or scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must use Bearer scheme.",
        )

    try:
        payload = decode_access_token(credentials)
    except AccessTokenConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    except AccessTokenValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc

    request.state.role = payload["role"]
    return Principal(
        user_id=str(payload["sub"]),
        role=payload["role"],
        name=payload.get("name"),
    )


def require_role(*roles: str) -> Callable[..., Principal]:
    """Create a dependency ensuring the caller holds one of ``roles``.

    ``admin`` is accepted wherever a counsellor is.
    """

    unknown = set(roles) - set(ROLES)
    if unknown:
        raise ValueError(f"Unknown role(s): {', '.join(sorted(unknown))}")
    allowed = set(roles)
    if "counsellor" in allowed:
        allowed.add("admin")

    async def dependency(
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role.",
            )
        return principal

    return dependency
