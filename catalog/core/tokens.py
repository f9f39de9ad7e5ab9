"""JWT access/refresh token issuance, refresh with rotation, and blacklisting.

Access tokens are short lived and never stored. Refresh tokens are recorded
as ``OutstandingToken`` rows so that they can be blacklisted on logout or
after rotation.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from catalog.core.config import settings
from catalog.core.exceptions import TokenError
from catalog.core.logging import get_logger
from catalog.domain.models import BlacklistedToken, OutstandingToken, User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

TOKEN_TYPE_CLAIM = "token_type"
USER_ID_CLAIM = "user_id"


@dataclass
class IssuedToken:
    """An encoded token together with the claims it was built from."""
    token: str
    payload: Dict[str, Any]

    @property
    def jti(self) -> str:
        return self.payload["jti"]

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.payload["exp"], tz=timezone.utc).replace(tzinfo=None)

    def __str__(self):
        return self.token


def _lifetime(token_type: str) -> timedelta:
    if token_type == ACCESS:
        return timedelta(minutes=settings.access_token_lifetime_minutes)
    return timedelta(days=settings.refresh_token_lifetime_days)


def _encode(user_id: int, token_type: str, lifetime: Optional[timedelta] = None) -> IssuedToken:
    now = datetime.now(timezone.utc)
    expire = now + (lifetime if lifetime is not None else _lifetime(token_type))
    payload = {
        TOKEN_TYPE_CLAIM: token_type,
        USER_ID_CLAIM: user_id,
        "jti": uuid.uuid4().hex,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    token = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return IssuedToken(token=token, payload=payload)


def decode(token: str, expected_type: Optional[str] = None) -> Dict[str, Any]:
    """Decode and validate a JWT.

    Args:
        token: Encoded token
        expected_type: ``"access"`` or ``"refresh"``; None accepts either

    Returns:
        The token claims

    Raises:
        TokenError: If the signature, expiry, or token type is invalid
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "jti", TOKEN_TYPE_CLAIM]},
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token attempted")
        raise TokenError("Token is invalid or expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token attempted: {e}")
        raise TokenError("Token is invalid or expired")

    if expected_type is not None and payload.get(TOKEN_TYPE_CLAIM) != expected_type:
        raise TokenError("Token has wrong type")
    if USER_ID_CLAIM not in payload:
        raise TokenError("Token contained no recognizable user identification")

    return payload


def create_access_token(user: User, lifetime: Optional[timedelta] = None) -> str:
    return _encode(user.id, ACCESS, lifetime).token


def create_refresh_token(session: Session, user: User, lifetime: Optional[timedelta] = None) -> str:
    """Issue a refresh token and record it as outstanding."""
    issued = _encode(user.id, REFRESH, lifetime)
    session.add(OutstandingToken(
        user_id=user.id,
        jti=issued.jti,
        token=issued.token,
        created_at=datetime.now(timezone.utc).replace(tzinfo=None),
        expires_at=issued.expires_at,
    ))
    session.flush()
    return issued.token


def obtain_pair(session: Session, user: User) -> Dict[str, str]:
    """Issue an access/refresh pair for an authenticated user."""
    refresh_token = create_refresh_token(session, user)
    access_token = create_access_token(user)

    if settings.update_last_login:
        user.last_login = datetime.now(timezone.utc).replace(tzinfo=None)

    session.commit()
    logger.info(
        f"Token pair issued for {user.username}",
        extra={"user_id": user.id}
    )
    return {"access": access_token, "refresh": refresh_token}


def _outstanding(session: Session, jti: str) -> Optional[OutstandingToken]:
    return session.execute(
        select(OutstandingToken).where(OutstandingToken.jti == jti)
    ).scalar_one_or_none()


def is_blacklisted(session: Session, jti: str) -> bool:
    outstanding = _outstanding(session, jti)
    return outstanding is not None and outstanding.blacklisted is not None


def blacklist(session: Session, refresh_token: str) -> None:
    """Blacklist a refresh token so it can no longer be used.

    Tokens issued before outstanding tokens were recorded are recorded on
    the spot. Blacklisting twice is a no-op.
    """
    payload = decode(refresh_token, expected_type=REFRESH)
    outstanding = _outstanding(session, payload["jti"])

    if outstanding is None:
        outstanding = OutstandingToken(
            user_id=payload[USER_ID_CLAIM],
            jti=payload["jti"],
            token=refresh_token,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc).replace(tzinfo=None),
        )
        session.add(outstanding)
        session.flush()

    if outstanding.blacklisted is None:
        session.add(BlacklistedToken(token=outstanding))
        session.flush()
        logger.info(
            "Refresh token blacklisted",
            extra={"user_id": payload[USER_ID_CLAIM]}
        )


def refresh(session: Session, refresh_token: str) -> Dict[str, str]:
    """Exchange a refresh token for a new access token.

    With rotation enabled a new refresh token is issued as well, and with
    blacklisting after rotation the presented token is blacklisted, so it
    can be used only once.

    Raises:
        TokenError: If the token is invalid, expired, blacklisted, or its
            user no longer exists or is inactive
    """
    payload = decode(refresh_token, expected_type=REFRESH)

    if is_blacklisted(session, payload["jti"]):
        logger.warning(
            "Blacklisted refresh token presented",
            extra={"user_id": payload[USER_ID_CLAIM]}
        )
        raise TokenError("Token is blacklisted")

    user = session.get(User, payload[USER_ID_CLAIM])
    if user is None or not user.is_active:
        raise TokenError("User not found or inactive")

    result = {"access": create_access_token(user)}

    try:
        if settings.rotate_refresh_tokens:
            if settings.blacklist_after_rotation:
                blacklist(session, refresh_token)
            result["refresh"] = create_refresh_token(session, user)
        session.commit()
    except IntegrityError:
        # Another request blacklisted the same token first.
        session.rollback()
        logger.warning(
            "Refresh token blacklisted concurrently",
            extra={"user_id": payload[USER_ID_CLAIM]}
        )
        raise TokenError("Token is blacklisted") from None

    logger.info("Access token refreshed", extra={"user_id": user.id})
    return result


def verify(token: str) -> Dict[str, Any]:
    """Validate a token of either type; returns its claims."""
    return decode(token)
