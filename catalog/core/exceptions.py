"""Exception types shared by the API, services and management commands.

Every API-facing error carries an HTTP status code, a human readable
``detail`` and a short machine readable ``code``. The handlers registered by
``register_exception_handlers`` render them as JSON.
"""
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from catalog.core.logging import get_logger

logger = get_logger(__name__)


class CatalogError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    default_detail = "A server error occurred."
    default_code = "error"

    def __init__(self, detail: Optional[str] = None, code: Optional[str] = None):
        self.detail = detail or self.default_detail
        self.code = code or self.default_code
        super().__init__(self.detail)

    @property
    def headers(self) -> Dict[str, str]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail, "code": self.code}


class NotFound(CatalogError):
    status_code = 404
    default_detail = "Not found."
    default_code = "not_found"


class ValidationFailed(CatalogError):
    """Invalid input, with optional per-field messages."""

    status_code = 400
    default_detail = "Invalid input."
    default_code = "invalid"

    def __init__(
        self,
        detail: Optional[str] = None,
        errors: Optional[Dict[str, List[str]]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(detail, code)
        self.errors = errors or {}

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.errors:
            body["errors"] = self.errors
        return body


class AuthenticationFailed(CatalogError):
    status_code = 401
    default_detail = "Incorrect authentication credentials."
    default_code = "authentication_failed"

    @property
    def headers(self) -> Dict[str, str]:
        return {"WWW-Authenticate": 'Bearer realm="api"'}


class NotAuthenticated(AuthenticationFailed):
    default_detail = "Authentication credentials were not provided."
    default_code = "not_authenticated"


class TokenError(AuthenticationFailed):
    default_detail = "Token is invalid or expired"
    default_code = "token_not_valid"


class PermissionDenied(CatalogError):
    status_code = 403
    default_detail = "You do not have permission to perform this action."
    default_code = "permission_denied"


class CSRFFailure(PermissionDenied):
    default_code = "csrf_failed"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"CSRF Failed: {reason}")


class Throttled(CatalogError):
    status_code = 429
    default_detail = "Request was throttled."
    default_code = "throttled"

    def __init__(self, wait: Optional[float] = None):
        self.wait = wait
        detail = self.default_detail
        if wait is not None:
            detail = f"{detail} Expected available in {int(max(wait, 0) + 0.999)} seconds."
        super().__init__(detail)

    @property
    def headers(self) -> Dict[str, str]:
        if self.wait is None:
            return {}
        return {"Retry-After": str(int(max(self.wait, 0) + 0.999))}


class FixtureError(Exception):
    """Raised when a fixture cannot be located, parsed or installed."""


class CommandError(Exception):
    """Raised by management commands; printed to stderr with exit status 1."""

    def __init__(self, *args, returncode: int = 1):
        self.returncode = returncode
        super().__init__(*args)


def register_exception_handlers(app: FastAPI) -> None:
    """Render ``CatalogError`` subclasses as JSON responses."""

    @app.exception_handler(CatalogError)
    async def catalog_error_handler(request: Request, exc: CatalogError):
        if exc.status_code >= 500:
            logger.error(f"Unhandled catalog error: {exc.detail}", exc_info=exc)
        else:
            logger.info(
                f"Request rejected: {exc.code}",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": exc.status_code,
                    "reason": exc.detail,
                }
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors: Dict[str, List[str]] = {}
        for error in exc.errors():
            loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
            key = ".".join(loc) or "non_field_errors"
            msg = error.get("msg", "Invalid value.")
            if msg.startswith("Value error, "):
                msg = msg[len("Value error, "):]
            errors.setdefault(key, []).append(msg)
        failure = ValidationFailed(errors=errors)
        return JSONResponse(status_code=failure.status_code, content=failure.to_dict())
