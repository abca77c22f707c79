"""
FastAPI Dependencies - Authentication and service access.

NO DICTIONARIES - All dependencies return typed objects.

Services are built once at startup and kept on app.state; these helpers hand
them to route handlers, so tests can swap them with dependency_overrides.
"""

from dataclasses import dataclass

import httpx
import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from structlog import get_logger

from adfree.config import Settings, settings
from adfree.exceptions import AuthenticationError
from adfree.services.entitlement_store import EntitlementStore
from adfree.services.notification_ingestor import NotificationIngestor
from adfree.services.products import ProductCatalog
from adfree.services.receipt_verifier import ReceiptVerifier

logger = get_logger(__name__)

# ============================================================================
# User Authentication (Supabase access tokens)
# ============================================================================


@dataclass(frozen=True)
class UserIdentity:
    """Authenticated user identity from an access token."""

    user_id: str  # Supabase auth user id (sub claim)
    email: str | None = None


# Bearer token scheme; a missing header is a valid "no user" outcome
bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str, config: Settings) -> UserIdentity:
    """
    Verify a Supabase HS256 access token.

    Raises:
        AuthenticationError: If the token is invalid or cannot be verified
    """
    if not config.supabase_jwt_secret:
        raise AuthenticationError("Token verification is not configured")

    try:
        claims = jwt.decode(
            token,
            config.supabase_jwt_secret,
            algorithms=["HS256"],
            audience=config.supabase_jwt_audience,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError(f"Invalid token: {exc}") from exc

    return UserIdentity(user_id=str(claims["sub"]), email=claims.get("email"))


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity | None:
    """
    Resolve the current user, or None when no token is sent.

    A token that is present but invalid is rejected with 401.
    """
    if credentials is None:
        return None

    try:
        return decode_access_token(credentials.credentials, settings)
    except AuthenticationError as exc:
        logger.warning("access_token_rejected", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


# ============================================================================
# Service Container
# ============================================================================


@dataclass
class ServiceContainer:
    """Long-lived service instances shared by request handlers."""

    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    catalog: ProductCatalog
    store: EntitlementStore
    verifier: ReceiptVerifier
    ingestor: NotificationIngestor

    async def close(self) -> None:
        await self.http_client.aclose()
        await self.engine.dispose()


def get_services(request: Request) -> ServiceContainer:
    services: ServiceContainer | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return services


def get_store(services: ServiceContainer = Depends(get_services)) -> EntitlementStore:
    return services.store


def get_receipt_verifier(services: ServiceContainer = Depends(get_services)) -> ReceiptVerifier:
    return services.verifier


def get_ingestor(services: ServiceContainer = Depends(get_services)) -> NotificationIngestor:
    return services.ingestor


def get_catalog(services: ServiceContainer = Depends(get_services)) -> ProductCatalog:
    return services.catalog
