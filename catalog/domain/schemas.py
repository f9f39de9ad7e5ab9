"""Pydantic schemas (serializers) for the REST API.

Each resource has a ``Create`` schema for POST/PUT bodies, an ``Update``
schema with every field optional for PATCH, and a ``Read`` schema built from
ORM instances.
"""
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


T = TypeVar("T")

ISBN_PATTERN = re.compile(r"^(\d{10}|\d{13})$")


def _not_blank(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if not value:
        raise ValueError("This field may not be blank.")
    return value


class Page(BaseModel, Generic[T]):
    """Paginated list envelope."""
    count: int
    next: Optional[str] = None
    previous: Optional[str] = None
    results: List[T]


# -----------------
# PRODUCTS
# -----------------

class ProductBase(BaseModel):
    name: str = Field(max_length=200)
    description: str = ""
    price: Decimal = Field(max_digits=10, decimal_places=2)
    stock: int = 0
    is_available: bool = True

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value):
        return _not_blank(value)

    @field_validator("price")
    @classmethod
    def price_must_be_positive(cls, value):
        if value is not None and value <= 0:
            raise ValueError("Price must be greater than zero.")
        return value

    @field_validator("stock")
    @classmethod
    def stock_not_negative(cls, value):
        if value is not None and value < 0:
            raise ValueError("Stock cannot be negative.")
        return value


class ProductCreate(ProductBase):
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Laptop",
                "description": "14 inch, 16GB RAM",
                "price": "999.99",
                "stock": 5,
                "is_available": True,
            }
        }
    )


class ProductUpdate(ProductBase):
    name: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=2)
    stock: Optional[int] = None
    is_available: Optional[bool] = None


class ProductRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str
    price: Decimal
    stock: int
    is_available: bool
    created_at: datetime


class ProductStats(BaseModel):
    count: int
    average_price: Optional[Decimal] = None
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    total_stock: int = 0


# -----------------
# CUSTOMERS
# -----------------

class CustomerBase(BaseModel):
    first_name: str = Field(max_length=100)
    last_name: str = Field(max_length=100)
    email: EmailStr
    phone: str = Field(default="", max_length=20)
    city: str = Field(default="", max_length=100)

    @field_validator("first_name", "last_name")
    @classmethod
    def names_not_blank(cls, value):
        return _not_blank(value)


class CustomerCreate(CustomerBase):
    pass


class CustomerUpdate(CustomerBase):
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=20)
    city: Optional[str] = Field(default=None, max_length=100)


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    last_name: str
    email: str
    phone: str
    city: str
    created_at: datetime


# -----------------
# CONTACTS
# -----------------

class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    subject: str
    message: str
    created_at: datetime


# -----------------
# AUTHORS & BOOKS
# -----------------

class AuthorBase(BaseModel):
    name: str = Field(max_length=100)
    birth_date: Optional[date] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value):
        return _not_blank(value)


class AuthorCreate(AuthorBase):
    pass


class AuthorUpdate(AuthorBase):
    name: Optional[str] = Field(default=None, max_length=100)


class AuthorRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    birth_date: Optional[date] = None


class BookBase(BaseModel):
    title: str = Field(max_length=200)
    isbn: str
    published_date: Optional[date] = None
    pages: Optional[int] = None
    price: Optional[Decimal] = Field(default=None, max_digits=8, decimal_places=2)
    author_id: int

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value):
        return _not_blank(value)

    @field_validator("isbn")
    @classmethod
    def normalize_isbn(cls, value):
        if value is None:
            return value
        digits = value.replace("-", "").replace(" ", "")
        if not ISBN_PATTERN.match(digits):
            raise ValueError("ISBN must contain 10 or 13 digits.")
        return digits

    @field_validator("pages")
    @classmethod
    def pages_positive(cls, value):
        if value is not None and value <= 0:
            raise ValueError("Pages must be a positive number.")
        return value


class BookCreate(BookBase):
    pass


class BookUpdate(BookBase):
    title: Optional[str] = Field(default=None, max_length=200)
    isbn: Optional[str] = None
    author_id: Optional[int] = None


class BookRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    isbn: str
    published_date: Optional[date] = None
    pages: Optional[int] = None
    price: Optional[Decimal] = None
    author_id: int
    author: Optional[AuthorRead] = None


# -----------------
# AUTHENTICATION
# -----------------

class TokenObtainRequest(BaseModel):
    username: str
    password: str

    model_config = ConfigDict(
        json_schema_extra={"example": {"username": "admin", "password": "s3cret-pass"}}
    )


class TokenPair(BaseModel):
    access: str
    refresh: str


class TokenRefreshRequest(BaseModel):
    refresh: str


class TokenRefreshResponse(BaseModel):
    access: str
    refresh: Optional[str] = None


class TokenVerifyRequest(BaseModel):
    token: str


class UserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=150)
    email: EmailStr
    password: str = Field(min_length=8)
    first_name: str = ""
    last_name: str = ""

    @field_validator("username")
    @classmethod
    def username_characters(cls, value):
        if not re.match(r"^[\w.@+-]+$", value):
            raise ValueError(
                "Enter a valid username. This value may contain only letters, "
                "numbers, and @/./+/-/_ characters."
            )
        return value


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    first_name: str
    last_name: str
    is_staff: bool
    date_joined: datetime
    last_login: Optional[datetime] = None
