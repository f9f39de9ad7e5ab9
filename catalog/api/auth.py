"""JWT authentication routes.

- ``POST /api/token/`` exchanges credentials for an access/refresh pair
- ``POST /api/token/refresh/`` exchanges a refresh token for a new access
  token (and a new refresh token when rotation is on)
- ``POST /api/token/verify/`` checks a token's signature and expiry
- ``POST /api/token/blacklist/`` revokes a refresh token (logout)
- ``POST /api/register/`` creates an account
- ``GET /api/me/`` returns the authenticated user
"""
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from catalog.core import csrf, tokens
from catalog.core.auth import authenticate_user, create_user, get_current_user, get_user_by_username
from catalog.core.exceptions import AuthenticationFailed, TokenError, ValidationFailed
from catalog.core.logging import LogTimer, get_logger
from catalog.domain.models import User
from catalog.domain.schemas import (
    TokenObtainRequest,
    TokenPair,
    TokenRefreshRequest,
    TokenRefreshResponse,
    TokenVerifyRequest,
    UserCreate,
    UserRead,
)
from catalog.infrastructure.database import get_db
from catalog.infrastructure.throttling import throttle

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["auth"], dependencies=[Depends(throttle)])

NO_ACTIVE_ACCOUNT = "No active account found with the given credentials"


@router.post("/token/", response_model=TokenPair)
def obtain_token_pair(req: TokenObtainRequest, request: Request, session: Session = Depends(get_db)):
    """Authenticate with username and password.

    A successful login also rotates the CSRF secret, so tokens issued to
    the browser before login stop validating.

    Example:
        POST /api/token/
        {"username": "admin", "password": "s3cret-pass"}
    """
    user = authenticate_user(session, req.username, req.password)
    if user is None:
        logger.info("Token obtain rejected", extra={"username": req.username})
        raise AuthenticationFailed(NO_ACTIVE_ACCOUNT, code="no_active_account")
    with LogTimer(logger, "token_obtain"):
        pair = tokens.obtain_pair(session, user)
    csrf.rotate_token(request)
    return pair


@router.post("/token/refresh/", response_model=TokenRefreshResponse, response_model_exclude_none=True)
def refresh_token(req: TokenRefreshRequest, session: Session = Depends(get_db)):
    return tokens.refresh(session, req.refresh)


@router.post("/token/verify/")
def verify_token(req: TokenVerifyRequest, session: Session = Depends(get_db)):
    """Return ``{}`` for a valid token, 401 otherwise.

    Blacklisted refresh tokens fail verification.
    """
    payload = tokens.verify(req.token)
    if payload[tokens.TOKEN_TYPE_CLAIM] == tokens.REFRESH and tokens.is_blacklisted(session, payload["jti"]):
        raise TokenError("Token is blacklisted")
    return {}


@router.post("/token/blacklist/")
def blacklist_token(req: TokenRefreshRequest, session: Session = Depends(get_db)):
    """Revoke a refresh token. Access tokens already issued stay valid until expiry."""
    tokens.blacklist(session, req.refresh)
    session.commit()
    return {}


@router.post("/register/", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def register(req: UserCreate, session: Session = Depends(get_db)):
    if get_user_by_username(session, req.username) is not None:
        raise ValidationFailed(errors={"username": ["A user with that username already exists."]})

    user = create_user(
        session,
        req.username,
        req.password,
        email=req.email,
        first_name=req.first_name,
        last_name=req.last_name,
    )
    session.commit()
    return user


@router.get("/me/", response_model=UserRead)
def me(current_user: User = Depends(get_current_user)):
    return current_user
