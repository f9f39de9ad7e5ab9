"""Form validation with per-field and cross-field clean hooks.

A form declares its fields as a pydantic model (``schema``). Validation runs
in three passes:

1. String input is stripped and each field is type-checked on its own, so
   one bad field never hides the errors of another. Input left blank by
   stripping counts as missing.
2. ``clean_<field>(value)`` runs for every field that passed step 1 and may
   return a replacement value or raise ``FormValidationError``.
3. ``clean()`` runs once for checks that involve several fields.

``ModelForm`` adds uniqueness checks against the database and ``save()``.
"""
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Mapping, Optional, Type

from pydantic import BaseModel, EmailStr, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import inspect
from sqlalchemy.orm import Session

from catalog.core.logging import get_logger
from catalog.domain.models import Contact, Customer, Product
from catalog.services.queries import find_unique_conflicts

logger = get_logger(__name__)

NON_FIELD_ERRORS = "__all__"
REQUIRED_MESSAGE = "This field is required."

_EMPTY_VALUES = (None, "", [], (), {})


class FormValidationError(Exception):
    """Raised by clean hooks. ``field`` targets ``clean()`` errors at a field."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)


def _message(error: Dict[str, Any]) -> str:
    msg = error.get("msg", "Invalid value.")
    prefix = "Value error, "
    return msg[len(prefix):] if msg.startswith(prefix) else msg


class Form:
    """Validate a mapping of raw input against ``schema``.

    Example:
        >>> form = ContactForm({"name": "Ann", "email": "bad", ...})
        >>> form.is_valid()
        False
        >>> form.errors["email"]
        ['value is not a valid email address: ...']
    """

    schema: Type[BaseModel]

    _adapters_cache: Dict[type, Dict[str, TypeAdapter]] = {}

    def __init__(self, data: Optional[Mapping[str, Any]] = None):
        self.is_bound = data is not None
        self.data = dict(data or {})
        self._errors: Optional[Dict[str, List[str]]] = None
        self.cleaned_data: Dict[str, Any] = {}

    @classmethod
    def _adapters(cls) -> Dict[str, TypeAdapter]:
        if cls not in Form._adapters_cache:
            Form._adapters_cache[cls] = {
                name: TypeAdapter(
                    Annotated[(field.annotation, *field.metadata)] if field.metadata else field.annotation
                )
                for name, field in cls.schema.model_fields.items()
            }
        return Form._adapters_cache[cls]

    @property
    def errors(self) -> Dict[str, List[str]]:
        if self._errors is None:
            self.full_clean()
        return self._errors

    def is_valid(self) -> bool:
        return self.is_bound and not self.errors

    def add_error(self, field: Optional[str], message: str) -> None:
        key = field or NON_FIELD_ERRORS
        self._errors.setdefault(key, []).append(message)
        if field in self.cleaned_data:
            del self.cleaned_data[field]

    def full_clean(self) -> None:
        self._errors = {}
        self.cleaned_data = {}
        if not self.is_bound:
            return

        self._clean_fields()
        self._clean_form()
        self._post_clean()

        if self._errors:
            logger.debug(
                f"{type(self).__name__} invalid: {sorted(self._errors)}",
            )

    def _clean_fields(self) -> None:
        fields = self.schema.model_fields
        for name, adapter in self._adapters().items():
            field = fields[name]
            raw = self.data.get(name)
            if isinstance(raw, str):
                raw = raw.strip()

            if raw in _EMPTY_VALUES:
                if field.is_required():
                    self.add_error(name, REQUIRED_MESSAGE)
                    continue
                value = field.get_default(call_default_factory=True)
            else:
                try:
                    value = adapter.validate_python(raw)
                except PydanticValidationError as e:
                    for error in e.errors():
                        self.add_error(name, _message(error))
                    continue

            self.cleaned_data[name] = value

            hook = getattr(self, f"clean_{name}", None)
            if hook is None:
                continue
            try:
                self.cleaned_data[name] = hook(value)
            except FormValidationError as e:
                self.add_error(name, e.message)

    def _clean_form(self) -> None:
        try:
            cleaned = self.clean()
        except FormValidationError as e:
            self.add_error(e.field, e.message)
            return
        if cleaned is not None:
            self.cleaned_data = cleaned

    def _post_clean(self) -> None:
        """Hook for subclasses that validate against external state."""

    def clean(self) -> Optional[Dict[str, Any]]:
        return self.cleaned_data


class ModelForm(Form):
    """Form bound to a model; checks unique columns and saves instances.

    Subclasses define ``class Meta: model = ...`` plus the ``schema``.
    """

    class Meta:
        model = None

    def __init__(
        self,
        data: Optional[Mapping[str, Any]] = None,
        instance=None,
        session: Optional[Session] = None,
    ):
        super().__init__(data)
        self.instance = instance
        self.session = session

    @property
    def model(self):
        return self.Meta.model

    def _post_clean(self) -> None:
        if self.session is None:
            return
        self.validate_unique()

    def validate_unique(self) -> None:
        conflicts = find_unique_conflicts(self.session, self.model, self.cleaned_data, self.instance)
        for field_name, messages in conflicts.items():
            for message in messages:
                self.add_error(field_name, message)

    def save(self, session: Optional[Session] = None, commit: bool = True):
        """Create or update ``instance`` from ``cleaned_data``.

        Raises:
            ValueError: If the form has errors
        """
        if self.errors:
            action = "created" if self.instance is None else "changed"
            raise ValueError(
                f"The {self.model.__name__} could not be {action} because the data didn't validate."
            )

        session = session or self.session
        instance = self.instance if self.instance is not None else self.model()
        for name, value in self.cleaned_data.items():
            if name in inspect(self.model).columns:
                setattr(instance, name, value)

        session.add(instance)
        if commit:
            session.commit()
        else:
            session.flush()

        self.instance = instance
        logger.info(
            f"{self.model.__name__} saved from form",
            extra={"model": self.model.__name__}
        )
        return instance


# -----------------
# CONCRETE FORMS
# -----------------

class ContactFields(BaseModel):
    name: str = Field(max_length=100)
    email: EmailStr
    subject: str = Field(max_length=200)
    message: str


class ContactForm(ModelForm):
    """Contact form; saves a Contact row."""

    schema = ContactFields

    class Meta:
        model = Contact

    def clean_subject(self, value: str) -> str:
        if "spam" in value.lower():
            raise FormValidationError("Subject looks like spam.")
        return value

    def clean_message(self, value: str) -> str:
        if len(value) < 10:
            raise FormValidationError("Message must be at least 10 characters long.")
        return value


class CustomerFields(BaseModel):
    first_name: str = Field(max_length=100)
    last_name: str = Field(max_length=100)
    email: EmailStr
    phone: str = Field(default="", max_length=20)
    city: str = Field(default="", max_length=100)


class CustomerForm(ModelForm):
    schema = CustomerFields

    class Meta:
        model = Customer

    def clean_email(self, value: str) -> str:
        return value.lower()

    def clean_phone(self, value: str) -> str:
        digits = value.replace(" ", "").replace("-", "")
        if digits and not digits.lstrip("+").isdigit():
            raise FormValidationError("Enter a valid phone number.")
        return digits


class ProductFields(BaseModel):
    name: str = Field(max_length=200)
    description: str = ""
    price: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    stock: int = Field(default=0, ge=0)
    is_available: bool = True


class ProductForm(ModelForm):
    schema = ProductFields

    class Meta:
        model = Product

    def clean(self):
        cleaned = super().clean()
        if cleaned.get("is_available") and cleaned.get("stock") == 0:
            raise FormValidationError(
                "A product with no stock cannot be marked available.", field="is_available"
            )
        return cleaned
