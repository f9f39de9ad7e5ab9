"""Browser-facing form endpoints.

These routes sit outside ``/api/`` so they are covered by the CSRF check:
clients fetch a token from ``GET /csrf/`` (which also sets the cookie) and
send it back in the ``X-CSRFToken`` header or the ``csrfmiddlewaretoken``
form field.
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from catalog.core.csrf import get_token
from catalog.core.exceptions import ValidationFailed
from catalog.core.logging import get_logger
from catalog.domain.schemas import ContactRead, CustomerRead
from catalog.infrastructure.database import get_db
from catalog.infrastructure.throttling import throttle
from catalog.services.forms import ContactForm, CustomerForm, Form

logger = get_logger(__name__)
router = APIRouter(tags=["forms"], dependencies=[Depends(throttle)])


async def _form_data(request: Request) -> Dict[str, Any]:
    """Read a JSON object or an HTML form body into a plain dict."""
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type == "application/json":
        try:
            data = await request.json()
        except ValueError:
            raise ValidationFailed("JSON parse error.", code="parse_error") from None
        if not isinstance(data, dict):
            raise ValidationFailed("Expected a JSON object.", code="parse_error")
        return data

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _invalid(form: Form) -> JSONResponse:
    failure = ValidationFailed(errors=form.errors)
    return JSONResponse(status_code=failure.status_code, content=failure.to_dict())


@router.get("/csrf/")
def csrf_token(request: Request):
    """Return a masked CSRF token and set the ``csrftoken`` cookie."""
    return {"csrfToken": get_token(request)}


@router.post("/contact/", status_code=status.HTTP_201_CREATED, response_model=ContactRead)
async def contact(request: Request, session: Session = Depends(get_db)):
    form = ContactForm(await _form_data(request), session=session)
    if not form.is_valid():
        return _invalid(form)
    message = form.save()
    logger.info(f"Contact message received: {message.subject}", extra={"model": "contact"})
    return message


@router.post("/customers/signup/", status_code=status.HTTP_201_CREATED, response_model=CustomerRead)
async def customer_signup(request: Request, session: Session = Depends(get_db)):
    form = CustomerForm(await _form_data(request), session=session)
    if not form.is_valid():
        return _invalid(form)
    return form.save()
