"""Lookup-style query helpers on top of SQLAlchemy.

Translates query parameters written the way ORM filter calls are written
(``price__gte=10``, ``name__icontains=pro``, ``author__name__startswith=J``)
into SQLAlchemy criteria, plus ordering, search and aggregation helpers used
by the list endpoints.
"""
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import and_, func, inspect, not_, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from catalog.core.exceptions import NotFound, ValidationFailed
from catalog.core.logging import get_logger

logger = get_logger(__name__)

LOOKUP_SEP = "__"

LOOKUPS = (
    "exact", "iexact",
    "contains", "icontains",
    "startswith", "istartswith",
    "endswith", "iendswith",
    "gt", "gte", "lt", "lte",
    "in", "isnull", "range",
)

AGGREGATES = {
    "count": func.count,
    "sum": func.sum,
    "avg": func.avg,
    "min": func.min,
    "max": func.max,
}

TRUE_VALUES = ("1", "true", "t", "yes", "y", "on")
FALSE_VALUES = ("0", "false", "f", "no", "n", "off")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    lowered = str(raw).strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"'{raw}' is not a valid boolean")


def parse_datetime(raw: str) -> datetime:
    """Parse an ISO-8601 datetime into a naive UTC value.

    Accepts a ``Z`` suffix; offsets are converted to UTC.
    """
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    value = datetime.fromisoformat(raw)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def coerce_value(column, raw: Any) -> Any:
    """Convert a query-string value to the column's Python type.

    Raises:
        ValueError: If the value cannot be converted
    """
    if raw is None or not isinstance(raw, str):
        return raw

    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return raw

    if python_type is bool:
        return parse_bool(raw)
    if python_type is int:
        return int(raw)
    if python_type is float:
        return float(raw)
    if python_type is Decimal:
        try:
            return Decimal(raw)
        except InvalidOperation:
            raise ValueError(f"'{raw}' is not a valid decimal") from None
    if python_type is datetime:
        return parse_datetime(raw)
    if python_type is date:
        return date.fromisoformat(raw)
    return raw


def _resolve(model, path: Sequence[str]):
    """Resolve ``[relation, ..., field]`` to (column attribute, joins needed)."""
    joins = []
    current = model
    for relation_name in path[:-1]:
        relationships = inspect(current).relationships
        if relation_name not in relationships:
            raise ValidationFailed(
                f"Cannot resolve keyword '{relation_name}' into field.",
                errors={relation_name: ["Unknown relation."]},
            )
        relationship = relationships[relation_name]
        joins.append(getattr(current, relation_name))
        current = relationship.mapper.class_

    field_name = path[-1]
    columns = inspect(current).columns
    if field_name not in columns:
        raise ValidationFailed(
            f"Cannot resolve keyword '{field_name}' into field.",
            errors={field_name: ["Unknown field."]},
        )
    return getattr(current, field_name), columns[field_name], joins


def split_lookup(key: str) -> Tuple[List[str], str]:
    """Split ``author__name__icontains`` into (["author", "name"], "icontains")."""
    parts = key.split(LOOKUP_SEP)
    if len(parts) > 1 and parts[-1] in LOOKUPS:
        return parts[:-1], parts[-1]
    return parts, "exact"


def build_condition(model, key: str, raw: Any):
    """Build a SQLAlchemy criterion for one ``field__lookup=value`` pair.

    Returns:
        Tuple of (criterion, relationship attributes to join)

    Raises:
        ValidationFailed: On unknown fields/lookups or unconvertible values
    """
    path, lookup = split_lookup(key)
    attribute, column, joins = _resolve(model, path)

    try:
        if lookup == "isnull":
            flag = parse_bool(raw)
            return (attribute.is_(None) if flag else attribute.is_not(None)), joins

        if lookup == "in":
            items = raw.split(",") if isinstance(raw, str) else list(raw)
            values = [coerce_value(column, item.strip() if isinstance(item, str) else item) for item in items]
            return attribute.in_(values), joins

        if lookup == "range":
            items = raw.split(",") if isinstance(raw, str) else list(raw)
            if len(items) != 2:
                raise ValueError("range lookup needs exactly two values")
            low, high = (coerce_value(column, item) for item in items)
            return attribute.between(low, high), joins

        if lookup in ("contains", "icontains", "startswith", "istartswith", "endswith", "iendswith"):
            text = _escape_like(str(raw))
            pattern = {
                "contains": f"%{text}%",
                "startswith": f"{text}%",
                "endswith": f"%{text}",
            }[lookup.lstrip("i")]
            if lookup.startswith("i"):
                return func.lower(attribute).like(pattern.lower(), escape="\\"), joins
            return attribute.like(pattern, escape="\\"), joins

        if lookup == "iexact":
            return func.lower(attribute) == str(raw).lower(), joins

        value = coerce_value(column, raw)
    except ValueError as e:
        raise ValidationFailed(
            f"Invalid value for '{key}'.",
            errors={key: [str(e)]},
        ) from None

    if lookup == "exact":
        return (attribute.is_(None) if value is None else attribute == value), joins
    if lookup == "gt":
        return attribute > value, joins
    if lookup == "gte":
        return attribute >= value, joins
    if lookup == "lt":
        return attribute < value, joins
    return attribute <= value, joins


def _criteria(query: Select, model, params: Mapping[str, Any]):
    conditions = []
    joined = set()
    for key, raw in params.items():
        condition, joins = build_condition(model, key, raw)
        for relation in joins:
            if relation.key not in joined:
                joined.add(relation.key)
                query = query.join(relation)
        conditions.append(condition)
    if joined:
        # To-many joins repeat rows.
        query = query.distinct()
    return query, conditions


def apply_filters(query: Select, model, params: Mapping[str, Any]) -> Select:
    """AND together every lookup in ``params``.

    Example:
        >>> q = apply_filters(select(Product), Product, {"price__gte": "10", "name__icontains": "lap"})
    """
    query, conditions = _criteria(query, model, params)
    if conditions:
        query = query.where(and_(*conditions))
    return query


def exclude(query: Select, model, params: Mapping[str, Any]) -> Select:
    """Exclude rows matching all lookups in ``params``."""
    query, conditions = _criteria(query, model, params)
    if conditions:
        query = query.where(not_(and_(*conditions)))
    return query


def apply_ordering(query: Select, model, ordering: Optional[str]) -> Select:
    """Order by a comma separated field list; ``-field`` sorts descending."""
    if not ordering:
        return query

    columns = inspect(model).columns
    clauses = []
    for name in (part.strip() for part in ordering.split(",")):
        if not name:
            continue
        descending = name.startswith("-")
        field_name = name.lstrip("-")
        if field_name not in columns:
            raise ValidationFailed(
                f"Cannot order by '{field_name}'.",
                errors={"ordering": [f"Unknown field '{field_name}'."]},
            )
        attribute = getattr(model, field_name)
        clauses.append(attribute.desc() if descending else attribute.asc())
    return query.order_by(*clauses)


def apply_search(query: Select, model, term: Optional[str], fields: Iterable[str]) -> Select:
    """Match rows where any of ``fields`` contains every whitespace separated word."""
    if not term or not term.strip():
        return query

    words = term.split()
    for word in words:
        pattern = f"%{_escape_like(word.lower())}%"
        query = query.where(or_(*[
            func.lower(getattr(model, field)).like(pattern, escape="\\") for field in fields
        ]))
    return query


def count(session: Session, query: Select) -> int:
    """Count rows of an arbitrary select (ordering is dropped)."""
    subquery = query.order_by(None).subquery()
    return session.execute(select(func.count()).select_from(subquery)).scalar_one()


def aggregate(session: Session, query: Select, model, **aggregates: Tuple[str, str]) -> Dict[str, Any]:
    """Compute named aggregates over a filtered query.

    Example:
        >>> aggregate(session, select(Product), Product, avg_price=("avg", "price"))
        {'avg_price': Decimal('12.50')}
    """
    subquery = query.order_by(None).subquery()
    selected = []
    for alias, (function_name, field_name) in aggregates.items():
        if function_name not in AGGREGATES:
            raise ValueError(f"Unknown aggregate function: {function_name}")
        if field_name not in subquery.c:
            raise ValueError(f"Unknown field for {model.__name__}: {field_name}")
        selected.append(AGGREGATES[function_name](subquery.c[field_name]).label(alias))

    row = session.execute(select(*selected)).one()
    return dict(row._mapping)


def get_object_or_404(session: Session, model, pk: Any):
    """Fetch by primary key or raise NotFound."""
    instance = session.get(model, pk)
    if instance is None:
        raise NotFound(f"No {model.__name__} matches the given query.")
    return instance


def find_unique_conflicts(session: Session, model, data: Mapping[str, Any], instance=None) -> Dict[str, List[str]]:
    """Return ``{field: [message]}`` for unique columns whose value is taken.

    ``instance`` is excluded from the check when updating.
    """
    mapper = inspect(model)
    pk_column = mapper.primary_key[0]
    errors: Dict[str, List[str]] = {}
    for column in mapper.columns:
        if not column.unique or column.key not in data:
            continue
        query = select(pk_column).where(column == data[column.key])
        if instance is not None:
            query = query.where(pk_column != getattr(instance, pk_column.key))
        if session.execute(query.limit(1)).first() is not None:
            label = column.key.replace("_", " ").capitalize()
            errors[column.key] = [f"{model.__name__} with this {label} already exists."]
    return errors
