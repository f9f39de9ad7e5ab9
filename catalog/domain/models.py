"""Database models for the catalog.

Defines the schema shared by the REST API, forms, fixtures and management
commands:
- User: accounts for JWT authentication
- Customer, Product, Contact: storefront records
- Author, Book: a one-to-many relation for relational lookups
- OutstandingToken, BlacklistedToken: refresh token bookkeeping

Every model has a label (``catalog.<lowercase name>``) used in fixtures.
"""
from datetime import datetime, timezone
from typing import Dict, Type

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

APP_LABEL = "catalog"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "auth_user"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(150), unique=True, nullable=False, index=True)
    email = Column(String(254), nullable=False, default="")
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(150), nullable=False, default="")
    last_name = Column(String(150), nullable=False, default="")
    is_active = Column(Boolean, nullable=False, default=True)
    is_staff = Column(Boolean, nullable=False, default=False)
    is_superuser = Column(Boolean, nullable=False, default=False)
    date_joined = Column(DateTime, nullable=False, default=utcnow)
    last_login = Column(DateTime, nullable=True)

    outstanding_tokens = relationship(
        "OutstandingToken", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<User {self.username}>"


class Customer(Base):
    __tablename__ = "catalog_customer"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(254), unique=True, nullable=False)
    phone = Column(String(20), nullable=False, default="")
    city = Column(String(100), nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Customer {self.first_name} {self.last_name}>"


class Product(Base):
    __tablename__ = "catalog_product"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    is_available = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Product {self.name}>"


class Contact(Base):
    __tablename__ = "catalog_contact"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    email = Column(String(254), nullable=False)
    subject = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Author(Base):
    __tablename__ = "catalog_author"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    birth_date = Column(Date, nullable=True)

    books = relationship("Book", back_populates="author", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Author {self.name}>"


class Book(Base):
    __tablename__ = "catalog_book"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(200), nullable=False)
    isbn = Column(String(13), unique=True, nullable=False)
    published_date = Column(Date, nullable=True)
    pages = Column(Integer, nullable=True)
    price = Column(Numeric(8, 2), nullable=True)
    author_id = Column(
        Integer, ForeignKey("catalog_author.id", ondelete="CASCADE"), nullable=False, index=True
    )

    author = relationship("Author", back_populates="books")

    def __repr__(self):
        return f"<Book {self.title}>"


class OutstandingToken(Base):
    """Every refresh token issued, so it can later be blacklisted."""

    __tablename__ = "token_blacklist_outstandingtoken"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("auth_user.id", ondelete="CASCADE"), nullable=True, index=True
    )
    jti = Column(String(255), unique=True, nullable=False)
    token = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=True, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    user = relationship("User", back_populates="outstanding_tokens")
    blacklisted = relationship(
        "BlacklistedToken", back_populates="token", uselist=False, cascade="all, delete-orphan"
    )


class BlacklistedToken(Base):
    __tablename__ = "token_blacklist_blacklistedtoken"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(
        Integer,
        ForeignKey("token_blacklist_outstandingtoken.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    blacklisted_at = Column(DateTime, nullable=False, default=utcnow)

    token = relationship("OutstandingToken", back_populates="blacklisted")


MODEL_REGISTRY: Dict[str, Type] = {
    "auth.user": User,
    f"{APP_LABEL}.customer": Customer,
    f"{APP_LABEL}.product": Product,
    f"{APP_LABEL}.contact": Contact,
    f"{APP_LABEL}.author": Author,
    f"{APP_LABEL}.book": Book,
    "token_blacklist.outstandingtoken": OutstandingToken,
    "token_blacklist.blacklistedtoken": BlacklistedToken,
}


def get_model(label: str) -> Type:
    """Return the model class registered under ``label`` (case-insensitive).

    Raises:
        LookupError: If no model has that label
    """
    try:
        return MODEL_REGISTRY[label.lower()]
    except KeyError:
        raise LookupError(f"Invalid model identifier: '{label}'") from None


def model_label(model: Type) -> str:
    for label, cls in MODEL_REGISTRY.items():
        if cls is model:
            return label
    raise LookupError(f"Model {model.__name__} is not registered")
