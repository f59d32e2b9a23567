"""
Caller identity carried explicitly through the request pipeline.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from fastapi import Request

from farm_shared.errors import AuthenticationError, AuthorizationError
from farm_shared.logging import get_logger, log_security_event


ANONYMOUS_USER = "anonymous"
NO_TENANT = "no-tenant"


@dataclass(frozen=True)
class Anonymous:
    """Unauthenticated caller, known only by network address."""

    address: str = "unknown"

    user_id: None = None
    tenant_id: None = None
    role: None = None

    @property
    def is_authenticated(self) -> bool:
        return False

    @property
    def rate_key(self) -> str:
        return f"ip:{self.address}"


@dataclass(frozen=True)
class Authenticated:
    """Verified caller with a role, optionally scoped to a farm (tenant)."""

    user_id: str
    role: str
    tenant_id: Optional[str] = None
    address: str = "unknown"

    @property
    def is_authenticated(self) -> bool:
        return True

    @property
    def rate_key(self) -> str:
        return f"user:{self.user_id}"


Identity = Union[Anonymous, Authenticated]

# Resolves a bearer token to user claims (``user_id``, ``role``, ``tenant_id``);
# raises AuthenticationError for tokens it rejects.
TokenVerifier = Callable[[str], Awaitable[Dict[str, Any]]]


def get_client_ip(request: Request) -> str:
    """Extract the caller IP from standard headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    if request.client:
        return request.client.host
    return "unknown"


class IdentityResolver:
    """Turns request credentials into an ``Identity``.

    Verification itself belongs to the auth collaborator; the resolver only
    extracts the bearer token and maps the returned claims. Requests without
    credentials, and requests whose token is rejected, resolve to
    ``Anonymous`` so they are still rate limited by address.
    """

    def __init__(self, verify_token: Optional[TokenVerifier] = None):
        self.verify_token = verify_token
        self.logger = get_logger("records.identity")

    async def resolve(self, request: Request) -> Identity:
        address = get_client_ip(request)
        auth_header = request.headers.get("Authorization")
        if not auth_header or self.verify_token is None:
            return Anonymous(address=address)

        if not auth_header.startswith("Bearer "):
            log_security_event(
                "SECURITY_MALFORMED_CREDENTIALS",
                ip=address,
                path=request.url.path,
                method=request.method,
            )
            return Anonymous(address=address)

        try:
            claims = await self.verify_token(auth_header[7:])
        except AuthenticationError as e:
            log_security_event(
                "SECURITY_TOKEN_REJECTED",
                ip=address,
                path=request.url.path,
                method=request.method,
                error=e.message,
            )
            return Anonymous(address=address)

        user_id = claims.get("user_id")
        if not user_id:
            self.logger.warning("Verified token carried no user id", ip=address)
            return Anonymous(address=address)

        return Authenticated(
            user_id=str(user_id),
            role=str(claims.get("role") or "worker"),
            tenant_id=claims.get("tenant_id"),
            address=address,
        )


def require_authenticated(request: Request) -> Authenticated:
    """FastAPI dependency: the caller must be authenticated."""
    identity = getattr(request.state, "identity", None)
    if not isinstance(identity, Authenticated):
        raise AuthenticationError("Authentication required")
    return identity


def require_role(*roles: str) -> Callable[[Request], Authenticated]:
    """FastAPI dependency factory: the caller must hold one of ``roles``."""

    def dependency(request: Request) -> Authenticated:
        identity = require_authenticated(request)
        if identity.role not in roles:
            raise AuthorizationError(
                "Insufficient permissions",
                {"required_roles": list(roles), "role": identity.role},
            )
        return identity

    return dependency
