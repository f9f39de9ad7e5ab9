"""Pytest configuration and shared fixtures."""
import os

# Settings are read once at import time.
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_ENABLED"] = "false"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-that-is-long-enough-for-hs256"

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from catalog.core import tokens
from catalog.core.auth import create_superuser, create_user
from catalog.domain.models import Author, Book, Customer, Product
from catalog.infrastructure.database import create_all, drop_all, get_session_factory, init_db
from catalog.infrastructure.redis import CacheManager, reset_cache
from catalog.infrastructure.throttling import MemoryHistoryStore, reset_history_store


@pytest.fixture(autouse=True)
def database():
    """Fresh in-memory database for every test."""
    init_db("sqlite://")
    create_all()
    yield
    drop_all()


@pytest.fixture(autouse=True)
def isolated_state():
    """In-memory throttle histories and a disconnected cache for every test."""
    reset_history_store(MemoryHistoryStore())
    reset_cache(CacheManager(redis_client=None))
    yield
    reset_history_store()
    reset_cache()


@pytest.fixture
def session():
    """Database session for arranging and inspecting test data."""
    db = get_session_factory()()
    yield db
    db.close()


@pytest.fixture
def user(session):
    """Regular active user with password ``correct-horse``."""
    account = create_user(session, "alice", "correct-horse", email="Alice@Example.com")
    session.commit()
    return account


@pytest.fixture
def staff_user(session):
    account = create_superuser(session, "admin", "admin-pass-123", email="admin@example.com")
    session.commit()
    return account


@pytest.fixture
def auth_headers(user):
    """Bearer headers for ``user``."""
    return {"Authorization": f"Bearer {tokens.create_access_token(user)}"}


@pytest.fixture
def staff_headers(staff_user):
    return {"Authorization": f"Bearer {tokens.create_access_token(staff_user)}"}


@pytest.fixture
def products(session):
    """Three products, one of them out of stock."""
    items = [
        Product(name="Laptop", description="14 inch", price=Decimal("999.99"), stock=5),
        Product(name="Mechanical Keyboard", description="Brown switches", price=Decimal("89.50"), stock=25),
        Product(name="USB-C Hub", description="7 ports", price=Decimal("35.00"), stock=0, is_available=False),
    ]
    session.add_all(items)
    session.commit()
    return items


@pytest.fixture
def customers(session):
    items = [
        Customer(first_name="Ada", last_name="Lovelace", email="ada@example.com", city="London"),
        Customer(first_name="Grace", last_name="Hopper", email="grace@example.com", city="New York"),
    ]
    session.add_all(items)
    session.commit()
    return items


@pytest.fixture
def library(session):
    """Two authors; Le Guin has two books, Butler one."""
    le_guin = Author(name="Ursula K. Le Guin")
    butler = Author(name="Octavia E. Butler")
    session.add_all([le_guin, butler])
    session.flush()
    session.add_all([
        Book(title="The Dispossessed", isbn="9780061054884", pages=387, author=le_guin),
        Book(title="The Left Hand of Darkness", isbn="9780441478125", pages=304, author=le_guin),
        Book(title="Kindred", isbn="9780807083697", pages=264, author=butler),
    ])
    session.commit()
    return {"le_guin": le_guin, "butler": butler}


@pytest.fixture
def test_client():
    """FastAPI test client."""
    from main import app
    return TestClient(app)
