"""Authentication and authorization for the Catalog API.

Implements password hashing, user lookup, and the FastAPI dependencies that
authenticate Bearer access tokens and enforce permissions.
"""
import uuid
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.orm import Session

from catalog.core import tokens
from catalog.core.config import settings
from catalog.core.exceptions import NotAuthenticated, PermissionDenied, TokenError
from catalog.core.logging import get_logger
from catalog.domain.models import User
from catalog.infrastructure.database import get_db

logger = get_logger(__name__)

# Production security check
if settings.environment == "production" and len(settings.jwt_secret_key) < 32:
    logger.warning("JWT_SECRET_KEY should be at least 32 characters for security")

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Missing credentials are reported by the permission dependencies.
security = HTTPBearer(auto_error=False)

SAFE_METHODS = ("GET", "HEAD", "OPTIONS")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Check a password against its hash; malformed hashes never match."""
    try:
        return pwd_context.verify(plain_password, password_hash)
    except (ValueError, TypeError):
        return False


def get_user_by_username(session: Session, username: str) -> Optional[User]:
    return session.execute(
        select(User).where(User.username == username)
    ).scalar_one_or_none()


def create_user(
    session: Session,
    username: str,
    password: Optional[str],
    email: str = "",
    **extra_fields,
) -> User:
    """Create a user with a hashed password.

    A ``None`` password yields an unusable hash, so the account can never log
    in with a password.
    """
    password_hash = hash_password(password) if password else "!" + uuid.uuid4().hex
    user = User(username=username, email=email.lower(), password_hash=password_hash, **extra_fields)
    session.add(user)
    session.flush()
    logger.info(f"User created: {username}", extra={"user_id": user.id})
    return user


def create_superuser(session: Session, username: str, password: Optional[str], email: str = "") -> User:
    return create_user(
        session, username, password, email=email, is_staff=True, is_superuser=True
    )


def authenticate_user(session: Session, username: str, password: str) -> Optional[User]:
    """Authenticate user with username and password.

    Returns:
        User object if authentication successful, None otherwise
    """
    user = get_user_by_username(session, username)

    if not user:
        logger.warning(f"Login attempt for non-existent user: {username}")
        # Keep response time uniform for unknown usernames.
        hash_password(password)
        return None

    if not verify_password(password, user.password_hash):
        logger.warning(f"Invalid password for user: {username}")
        return None

    if not user.is_active:
        logger.warning(f"Login attempt for inactive user: {username}")
        return None

    logger.info(f"User authenticated successfully: {username}", extra={"user_id": user.id})
    return user


def _user_from_credentials(
    credentials: Optional[HTTPAuthorizationCredentials],
    session: Session,
) -> Optional[User]:
    if credentials is None:
        return None

    payload = tokens.decode(credentials.credentials, expected_type=tokens.ACCESS)
    user = session.get(User, payload[tokens.USER_ID_CLAIM])

    if user is None:
        raise TokenError("User not found")
    if not user.is_active:
        raise TokenError("User is inactive")

    logger.debug(f"User authenticated: {user.username}", extra={"user_id": user.id})
    return user


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: Session = Depends(get_db),
) -> Optional[User]:
    """Return the authenticated user, or None for anonymous requests.

    An invalid token is still an error: clients that send credentials get
    told they are wrong instead of silently being treated as anonymous.
    """
    user = _user_from_credentials(credentials, session)
    request.state.user = user
    return user


async def get_current_user(user: Optional[User] = Depends(get_optional_user)) -> User:
    """FastAPI dependency requiring an authenticated user (401 otherwise)."""
    if user is None:
        raise NotAuthenticated()
    return user


class IsAuthenticated:
    """Permission: any authenticated user."""

    async def __call__(self, user: Optional[User] = Depends(get_optional_user)) -> User:
        if user is None:
            raise NotAuthenticated()
        return user


class IsAdminUser:
    """Permission: staff users only."""

    async def __call__(self, user: Optional[User] = Depends(get_optional_user)) -> User:
        if user is None:
            raise NotAuthenticated()
        if not user.is_staff:
            logger.warning(
                f"Insufficient permissions for {user.username}",
                extra={"user_id": user.id}
            )
            raise PermissionDenied()
        return user


class IsAuthenticatedOrReadOnly:
    """Permission: anyone may read, only authenticated users may write."""

    async def __call__(
        self,
        request: Request,
        user: Optional[User] = Depends(get_optional_user),
    ) -> Optional[User]:
        if request.method in SAFE_METHODS:
            return user
        if user is None:
            raise NotAuthenticated()
        return user
