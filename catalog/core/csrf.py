"""Cross Site Request Forgery protection.

Double-submit cookie scheme for browser clients that authenticate with
cookies or post HTML forms:

- The cookie holds a 32 character secret.
- Pages and API clients receive a *masked* token (64 characters): a random
  mask followed by the secret shifted by the mask. A fresh mask is used for
  every issued token so the value changes between responses while all of
  them validate against the same secret.
- Unsafe requests must echo a token, either in the ``X-CSRFToken`` header or
  in the ``csrfmiddlewaretoken`` form field, and it must unmask to the
  cookie's secret.

Requests authenticated with a Bearer token are not cookie-bound and skip the
check, as do paths listed in ``CSRF_EXEMPT_PATHS``.
"""
import secrets
import string
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request, cookie_parser
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from catalog.core.config import settings
from catalog.core.exceptions import CSRFFailure
from catalog.core.logging import get_logger

logger = get_logger(__name__)

CSRF_SECRET_LENGTH = 32
CSRF_TOKEN_LENGTH = 2 * CSRF_SECRET_LENGTH
CSRF_ALLOWED_CHARS = string.ascii_letters + string.digits

SAFE_METHODS = ("GET", "HEAD", "OPTIONS", "TRACE")

SCOPE_KEY = "csrf"

REASON_NO_REFERER = "Referer checking failed - no Referer."
REASON_BAD_REFERER = "Referer checking failed - %s does not match any trusted origins."
REASON_MALFORMED_REFERER = "Referer checking failed - Referer is malformed."
REASON_INSECURE_REFERER = "Referer checking failed - Referer is insecure while host is secure."
REASON_BAD_ORIGIN = "Origin checking failed - %s does not match any trusted origins."
REASON_NO_CSRF_COOKIE = "CSRF cookie not set."
REASON_CSRF_TOKEN_MISSING = "CSRF token missing."
REASON_INCORRECT_LENGTH = "has incorrect length"
REASON_INVALID_CHARACTERS = "has invalid characters"

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


class InvalidTokenFormat(Exception):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


def _get_new_csrf_string() -> str:
    return "".join(secrets.choice(CSRF_ALLOWED_CHARS) for _ in range(CSRF_SECRET_LENGTH))


def mask_cipher_secret(secret: str) -> str:
    """Return a 64 character token: a new random mask followed by the
    secret with each character shifted by the matching mask character."""
    mask = _get_new_csrf_string()
    chars = CSRF_ALLOWED_CHARS
    pairs = zip((chars.index(x) for x in secret), (chars.index(x) for x in mask))
    cipher = "".join(chars[(x + y) % len(chars)] for x, y in pairs)
    return mask + cipher


def unmask_cipher_token(token: str) -> str:
    """Recover the secret from a masked token produced by ``mask_cipher_secret``."""
    mask = token[:CSRF_SECRET_LENGTH]
    token = token[CSRF_SECRET_LENGTH:]
    chars = CSRF_ALLOWED_CHARS
    pairs = zip((chars.index(x) for x in token), (chars.index(x) for x in mask))
    return "".join(chars[x - y] for x, y in pairs)


def check_token_format(token: str) -> None:
    """Raise InvalidTokenFormat unless ``token`` is a secret or a masked token."""
    if len(token) not in (CSRF_TOKEN_LENGTH, CSRF_SECRET_LENGTH):
        raise InvalidTokenFormat(REASON_INCORRECT_LENGTH)
    if any(c not in CSRF_ALLOWED_CHARS for c in token):
        raise InvalidTokenFormat(REASON_INVALID_CHARACTERS)


def does_token_match(request_csrf_token: str, secret: str) -> bool:
    """Compare a (possibly masked) token with the secret in constant time."""
    if len(request_csrf_token) == CSRF_TOKEN_LENGTH:
        request_csrf_token = unmask_cipher_token(request_csrf_token)
    return secrets.compare_digest(request_csrf_token, secret)


def _csrf_state(scope: Scope) -> Dict:
    return scope.setdefault(SCOPE_KEY, {"secret": None, "needs_update": False})


def get_token(request: Request) -> str:
    """Return a masked CSRF token for the current request.

    Generates a secret if the request did not carry a valid cookie. The
    middleware then sets (or refreshes) the cookie on the response.
    """
    state = _csrf_state(request.scope)
    if state["secret"] is None:
        state["secret"] = _get_new_csrf_string()
    state["needs_update"] = True
    return mask_cipher_secret(state["secret"])


def rotate_token(request: Request) -> None:
    """Replace the secret, e.g. after login, invalidating earlier tokens."""
    state = _csrf_state(request.scope)
    state["secret"] = _get_new_csrf_string()
    state["needs_update"] = True


def origin_matches(origin: str, allowed: Iterable[str]) -> bool:
    """Match an origin against exact origins and ``scheme://*.domain`` wildcards."""
    try:
        parsed = urlsplit(origin)
        origin_host = parsed.hostname
        origin_port = parsed.port
    except ValueError:
        return False
    if not origin_host:
        return False

    for candidate in allowed:
        if candidate == origin:
            return True
        if "*" not in candidate:
            continue
        scheme, _, netloc = candidate.partition("://")
        if scheme != parsed.scheme or not netloc.startswith("*."):
            continue
        domain = netloc[2:]
        host, _, port = domain.partition(":")
        if port and str(origin_port) != port:
            continue
        if not port and origin_port is not None:
            continue
        if origin_host == host or origin_host.endswith("." + host):
            return True
    return False


def _read_cookie(headers: Headers, cookie_name: str) -> Optional[str]:
    return cookie_parser(headers.get("cookie", "")).get(cookie_name)


def _secret_from_cookie(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        check_token_format(value)
    except InvalidTokenFormat:
        return None
    if len(value) == CSRF_TOKEN_LENGTH:
        value = unmask_cipher_token(value)
    return value


def _build_cookie_header(name: str, value: str) -> str:
    response = Response()
    response.set_cookie(
        name,
        value,
        max_age=settings.csrf_cookie_age,
        path="/",
        secure=settings.csrf_cookie_secure,
        samesite="lax",
    )
    return response.headers["set-cookie"]


async def _read_body(receive: Receive) -> List[Message]:
    """Drain the request body, returning the received messages for replay."""
    messages = []
    more_body = True
    while more_body:
        message = await receive()
        messages.append(message)
        if message["type"] != "http.request":
            break
        more_body = message.get("more_body", False)
    return messages


def _replay(messages: List[Message], receive: Receive) -> Receive:
    """A receive callable that yields the buffered messages, then the original stream."""
    pending = list(messages)

    async def replay_receive() -> Message:
        if pending:
            return pending.pop(0)
        return await receive()

    return replay_receive


class CSRFMiddleware:
    """ASGI middleware enforcing the CSRF token check on unsafe requests."""

    def __init__(self, app: ASGIApp, exempt_paths: Optional[List[str]] = None):
        self.app = app
        self._exempt_paths = exempt_paths

    @property
    def exempt_paths(self) -> List[str]:
        if self._exempt_paths is not None:
            return self._exempt_paths
        return settings.csrf_exempt_paths

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        state = _csrf_state(scope)
        state["secret"] = _secret_from_cookie(_read_cookie(headers, settings.csrf_cookie_name))

        method = scope["method"].upper()
        if method not in SAFE_METHODS and not self._is_exempt(scope, headers):
            failure, receive = await self._check(scope, receive, headers, state)
            if failure is not None:
                await self._reject(scope, failure)(scope, receive, send)
                return

        async def send_with_cookie(message: Message) -> None:
            if message["type"] == "http.response.start" and state["needs_update"] and state["secret"]:
                response_headers = MutableHeaders(scope=message)
                response_headers.append(
                    "set-cookie",
                    _build_cookie_header(settings.csrf_cookie_name, state["secret"]),
                )
                response_headers.append("vary", "Cookie")
            await send(message)

        await self.app(scope, receive, send_with_cookie)

    def _is_exempt(self, scope: Scope, headers: Headers) -> bool:
        authorization = headers.get("authorization", "")
        if authorization.lower().startswith("bearer "):
            return True
        path = scope.get("path", "")
        return any(path == p or (p.endswith("/") and path.startswith(p)) for p in self.exempt_paths)

    async def _check(self, scope: Scope, receive: Receive, headers: Headers, state: Dict):
        """Return (failure reason or None, receive callable for downstream)."""
        is_secure = scope.get("scheme") in ("https", "wss")
        host = headers.get("host", "")

        origin = headers.get("origin")
        if origin is not None:
            if not self._origin_verified(origin, scope, host):
                return REASON_BAD_ORIGIN % origin, receive
        elif is_secure:
            reason = self._check_referer(headers.get("referer"), host)
            if reason is not None:
                return reason, receive

        secret = state["secret"]
        if secret is None:
            return REASON_NO_CSRF_COOKIE, receive

        request_token = headers.get(settings.csrf_header_name)
        token_source = settings.csrf_header_name
        content_type = headers.get("content-type", "").split(";")[0].strip().lower()

        if request_token is None and content_type in FORM_CONTENT_TYPES:
            request_token, receive = await self._token_from_form(scope, receive)
            token_source = settings.csrf_form_field

        if not request_token:
            return REASON_CSRF_TOKEN_MISSING, receive

        request_token = request_token.strip()
        try:
            check_token_format(request_token)
        except InvalidTokenFormat as exc:
            return f"CSRF token from {token_source} {exc.reason}.", receive

        if not does_token_match(request_token, secret):
            return f"CSRF token from {token_source} incorrect.", receive

        return None, receive

    async def _token_from_form(self, scope: Scope, receive: Receive):
        messages = await _read_body(receive)

        form_request = Request(scope, _replay(messages, receive))
        form = await form_request.form()
        value = form.get(settings.csrf_form_field)
        token = value if isinstance(value, str) else None
        await form.close()

        return token, _replay(messages, receive)

    def _origin_verified(self, origin: str, scope: Scope, host: str) -> bool:
        good_origin = f"{scope.get('scheme', 'http')}://{host}"
        if origin == good_origin:
            return True
        return origin_matches(origin, settings.csrf_trusted_origins)

    def _check_referer(self, referer: Optional[str], host: str) -> Optional[str]:
        if referer is None:
            return REASON_NO_REFERER
        try:
            parsed = urlsplit(referer)
        except ValueError:
            return REASON_MALFORMED_REFERER
        if not parsed.scheme or not parsed.netloc:
            return REASON_MALFORMED_REFERER
        if parsed.scheme != "https":
            return REASON_INSECURE_REFERER

        referer_origin = f"{parsed.scheme}://{parsed.netloc}"
        if parsed.netloc == host or origin_matches(referer_origin, settings.csrf_trusted_origins):
            return None
        return REASON_BAD_REFERER % referer_origin

    def _reject(self, scope: Scope, reason: str) -> JSONResponse:
        logger.warning(
            f"Forbidden ({reason}): {scope.get('path')}",
            extra={"path": scope.get("path"), "method": scope.get("method"), "reason": reason}
        )
        failure = CSRFFailure(reason)
        return JSONResponse(status_code=failure.status_code, content=failure.to_dict())
