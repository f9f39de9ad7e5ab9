"""Catalog service - products, customers and a library behind a REST API.

Layers:
- core: configuration, logging, errors, authentication, CSRF, middleware
- domain: SQLAlchemy models and pydantic schemas
- infrastructure: database, Redis, throttling
- services: lookups, pagination, forms, fixtures
- api: FastAPI routers
- management: ``manage.py`` commands
"""

__version__ = "1.0.0"
