"""CRUD routes for the catalog resources.

``register_crud`` wires the standard list/create/retrieve/update/destroy
routes for a model onto a router. List endpoints accept lookup filters
(``?price__gte=10``), ``search``, ``ordering``, ``page`` and ``page_size``.
Reads are public; writes require authentication and deletes require staff.
"""
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Type

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel
from sqlalchemy import inspect, select
from sqlalchemy.orm import Session

from catalog.core.auth import IsAdminUser, IsAuthenticatedOrReadOnly
from catalog.core.exceptions import ValidationFailed
from catalog.core.logging import get_logger
from catalog.domain.models import Author, Book, Customer, Product
from catalog.domain.schemas import (
    AuthorCreate,
    AuthorRead,
    AuthorUpdate,
    BookCreate,
    BookRead,
    BookUpdate,
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    Page,
    ProductCreate,
    ProductRead,
    ProductStats,
    ProductUpdate,
)
from catalog.infrastructure.database import get_db
from catalog.infrastructure.redis import get_cache
from catalog.infrastructure.throttling import throttle
from catalog.services.pagination import PageNumberPagination
from catalog.services.queries import (
    LOOKUP_SEP,
    aggregate,
    apply_filters,
    apply_ordering,
    apply_search,
    find_unique_conflicts,
    get_object_or_404,
)

logger = get_logger(__name__)

RESERVED_PARAMS = ("page", "page_size", "ordering", "search", "format")

PRODUCT_STATS_CACHE_KEY = "products:stats"

router = APIRouter(prefix="/api", dependencies=[Depends(throttle)])

can_write = IsAuthenticatedOrReadOnly()
is_admin = IsAdminUser()


def _filter_params(request: Request, filter_fields: Iterable[str]) -> Dict[str, str]:
    """Lookup parameters from the query string, restricted to ``filter_fields``.

    Raises:
        ValidationFailed: If a parameter targets a field that is not filterable
    """
    allowed = set(filter_fields)
    params = {}
    for key, value in request.query_params.items():
        if key in RESERVED_PARAMS:
            continue
        root = key.split(LOOKUP_SEP, 1)[0]
        if root not in allowed:
            raise ValidationFailed(
                f"Filtering on '{key}' is not allowed.",
                errors={key: [f"Unknown filter. Allowed fields: {', '.join(sorted(allowed))}."]},
            )
        params[key] = value
    return params


def _check_foreign_keys(session: Session, model, data: Dict[str, Any]) -> None:
    """Reject writes that reference missing related rows."""
    errors = {}
    for column in inspect(model).columns:
        if not column.foreign_keys or data.get(column.key) is None:
            continue
        for foreign_key in column.foreign_keys:
            target_table = foreign_key.column.table
            exists = session.execute(
                select(foreign_key.column).where(foreign_key.column == data[column.key]).limit(1)
            ).first()
            if exists is None:
                errors[column.key] = [f'Invalid pk "{data[column.key]}" - object does not exist.']
                logger.debug(f"Missing {target_table.name} row for {column.key}={data[column.key]}")
    if errors:
        raise ValidationFailed(errors=errors)


def _validate_write(session: Session, model, data: Dict[str, Any], instance=None) -> None:
    _check_foreign_keys(session, model, data)
    conflicts = find_unique_conflicts(session, model, data, instance)
    if conflicts:
        raise ValidationFailed(errors=conflicts)


def register_crud(
    router: APIRouter,
    prefix: str,
    model,
    create_schema: Type[BaseModel],
    update_schema: Type[BaseModel],
    read_schema: Type[BaseModel],
    search_fields: Sequence[str] = (),
    filter_fields: Sequence[str] = (),
    default_ordering: str = "id",
    on_write: Optional[Callable[[], None]] = None,
) -> None:
    """Register list, create, retrieve, update, partial update and delete routes."""
    name = model.__name__.lower()
    tags = [prefix.strip("/")]

    def serialize(instance):
        return read_schema.model_validate(instance)

    def changed() -> None:
        if on_write is not None:
            on_write()

    def list_objects(request: Request, session: Session = Depends(get_db), user=Depends(can_write)):
        query = select(model)
        query = apply_filters(query, model, _filter_params(request, filter_fields))
        query = apply_search(query, model, request.query_params.get("search"), search_fields)
        query = apply_ordering(query, model, request.query_params.get("ordering") or default_ordering)
        return PageNumberPagination().paginate(
            session, query, request.url, request.query_params, serialize
        )

    def create_object(body: create_schema, session: Session = Depends(get_db), user=Depends(can_write)):
        data = body.model_dump()
        _validate_write(session, model, data)
        instance = model(**data)
        session.add(instance)
        session.commit()
        session.refresh(instance)
        changed()
        logger.info(f"{model.__name__} created", extra={"user_id": user.id, "model": name})
        return instance

    def retrieve_object(pk: int, session: Session = Depends(get_db), user=Depends(can_write)):
        return get_object_or_404(session, model, pk)

    def update_object(pk: int, body: create_schema, session: Session = Depends(get_db), user=Depends(can_write)):
        return _save(pk, body.model_dump(), session, user)

    def partial_update_object(pk: int, body: update_schema, session: Session = Depends(get_db), user=Depends(can_write)):
        return _save(pk, body.model_dump(exclude_unset=True, exclude_none=True), session, user)

    def _save(pk: int, data: Dict[str, Any], session: Session, user):
        instance = get_object_or_404(session, model, pk)
        _validate_write(session, model, data, instance)
        for field_name, value in data.items():
            setattr(instance, field_name, value)
        session.commit()
        session.refresh(instance)
        changed()
        logger.info(f"{model.__name__} {pk} updated", extra={"user_id": user.id, "model": name})
        return instance

    def destroy_object(pk: int, session: Session = Depends(get_db), user=Depends(is_admin)):
        instance = get_object_or_404(session, model, pk)
        session.delete(instance)
        session.commit()
        changed()
        logger.info(f"{model.__name__} {pk} deleted", extra={"user_id": user.id, "model": name})
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    router.add_api_route(
        f"{prefix}/", list_objects, methods=["GET"], response_model=Page[read_schema],
        name=f"{name}-list", tags=tags,
    )
    router.add_api_route(
        f"{prefix}/", create_object, methods=["POST"], response_model=read_schema,
        status_code=status.HTTP_201_CREATED, name=f"{name}-create", tags=tags,
    )
    router.add_api_route(
        f"{prefix}/{{pk}}/", retrieve_object, methods=["GET"], response_model=read_schema,
        name=f"{name}-detail", tags=tags,
    )
    router.add_api_route(
        f"{prefix}/{{pk}}/", update_object, methods=["PUT"], response_model=read_schema,
        name=f"{name}-update", tags=tags,
    )
    router.add_api_route(
        f"{prefix}/{{pk}}/", partial_update_object, methods=["PATCH"], response_model=read_schema,
        name=f"{name}-partial-update", tags=tags,
    )
    router.add_api_route(
        f"{prefix}/{{pk}}/", destroy_object, methods=["DELETE"],
        status_code=status.HTTP_204_NO_CONTENT, response_class=Response,
        name=f"{name}-delete", tags=tags,
    )


# -----------------
# EXTRA ACTIONS
# -----------------
# Registered before the CRUD routes so ``/products/stats/`` is not read as a pk.

def invalidate_product_stats() -> None:
    get_cache().delete(PRODUCT_STATS_CACHE_KEY)


@router.get("/products/stats/", response_model=ProductStats, tags=["products"])
def product_stats(session: Session = Depends(get_db)):
    """Aggregate price and stock figures over available products (cached)."""
    cache = get_cache()
    cached = cache.get(PRODUCT_STATS_CACHE_KEY)
    if cached is not None:
        return cached

    query = apply_filters(select(Product), Product, {"is_available": "true"})
    stats = aggregate(
        session, query, Product,
        count=("count", "id"),
        average_price=("avg", "price"),
        min_price=("min", "price"),
        max_price=("max", "price"),
        total_stock=("sum", "stock"),
    )
    stats["total_stock"] = stats["total_stock"] or 0
    result = ProductStats(**stats).model_dump(mode="json")
    cache.set(PRODUCT_STATS_CACHE_KEY, result)
    return result


@router.get("/authors/{pk}/books/", response_model=Page[BookRead], tags=["authors"])
def author_books(pk: int, request: Request, session: Session = Depends(get_db)):
    """Books by one author, paginated and ordered by title."""
    author = get_object_or_404(session, Author, pk)
    query = apply_ordering(
        select(Book).where(Book.author_id == author.id),
        Book,
        request.query_params.get("ordering") or "title",
    )
    return PageNumberPagination().paginate(
        session, query, request.url, request.query_params, BookRead.model_validate
    )


register_crud(
    router, "/products", Product, ProductCreate, ProductUpdate, ProductRead,
    search_fields=("name", "description"),
    filter_fields=("name", "price", "stock", "is_available", "created_at"),
    on_write=invalidate_product_stats,
)
register_crud(
    router, "/customers", Customer, CustomerCreate, CustomerUpdate, CustomerRead,
    search_fields=("first_name", "last_name", "email"),
    filter_fields=("first_name", "last_name", "email", "city", "created_at"),
)
register_crud(
    router, "/authors", Author, AuthorCreate, AuthorUpdate, AuthorRead,
    search_fields=("name",),
    filter_fields=("name", "birth_date", "books"),
    default_ordering="name",
)
register_crud(
    router, "/books", Book, BookCreate, BookUpdate, BookRead,
    search_fields=("title", "isbn"),
    filter_fields=("title", "isbn", "published_date", "pages", "price", "author", "author_id"),
    default_ordering="title",
)
