"""Tests for lookup filters, ordering, search and aggregation."""
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from catalog.core.exceptions import NotFound, ValidationFailed
from catalog.domain.models import Author, Book, Customer, Product
from catalog.services.queries import (
    aggregate,
    apply_filters,
    apply_ordering,
    apply_search,
    count,
    exclude,
    find_unique_conflicts,
    get_object_or_404,
    parse_bool,
    parse_datetime,
    split_lookup,
)


def names(session, query):
    return [p.name for p in session.execute(query).scalars()]


class TestLookups:
    """Test ``field__lookup`` filters."""

    def test_split_lookup(self):
        assert split_lookup("price__gte") == (["price"], "gte")
        assert split_lookup("author__name__icontains") == (["author", "name"], "icontains")
        assert split_lookup("name") == (["name"], "exact")

    def test_exact_and_comparison(self, session, products):
        query = apply_filters(select(Product), Product, {"price__gte": "89.50"})
        assert sorted(names(session, query)) == ["Laptop", "Mechanical Keyboard"]

        query = apply_filters(select(Product), Product, {"price__lt": "50"})
        assert names(session, query) == ["USB-C Hub"]

    def test_icontains(self, session, products):
        query = apply_filters(select(Product), Product, {"name__icontains": "KEY"})
        assert names(session, query) == ["Mechanical Keyboard"]

    def test_startswith_escapes_wildcards(self, session, products):
        query = apply_filters(select(Product), Product, {"name__startswith": "%"})
        assert names(session, query) == []

    def test_in_and_range(self, session, products):
        ids = [str(p.id) for p in products[:2]]
        query = apply_filters(select(Product), Product, {"id__in": ",".join(ids)})
        assert count(session, query) == 2

        query = apply_filters(select(Product), Product, {"stock__range": "1,10"})
        assert names(session, query) == ["Laptop"]

    def test_boolean_and_isnull(self, session, products):
        query = apply_filters(select(Product), Product, {"is_available": "false"})
        assert names(session, query) == ["USB-C Hub"]

        query = apply_filters(select(Product), Product, {"description__isnull": "true"})
        assert names(session, query) == []

    def test_filters_are_anded(self, session, products):
        query = apply_filters(
            select(Product), Product, {"price__gt": "50", "stock__gte": "10"}
        )
        assert names(session, query) == ["Mechanical Keyboard"]

    def test_relation_lookup(self, session, library):
        query = apply_filters(select(Book), Book, {"author__name__icontains": "butler"})
        assert [b.title for b in session.execute(query).scalars()] == ["Kindred"]

    def test_reverse_relation_lookup_is_distinct(self, session, library):
        query = apply_filters(select(Author), Author, {"books__pages__gt": "100"})
        assert count(session, query) == 2

    def test_exclude(self, session, products):
        query = exclude(select(Product), Product, {"is_available": "false"})
        assert sorted(names(session, query)) == ["Laptop", "Mechanical Keyboard"]

    def test_unknown_field(self):
        with pytest.raises(ValidationFailed) as exc_info:
            apply_filters(select(Product), Product, {"colour": "red"})
        assert exc_info.value.detail == "Cannot resolve keyword 'colour' into field."

    def test_bad_value(self):
        with pytest.raises(ValidationFailed) as exc_info:
            apply_filters(select(Product), Product, {"price__gte": "cheap"})
        assert "price__gte" in exc_info.value.errors

    def test_parse_bool(self):
        assert parse_bool("Yes") is True
        assert parse_bool("0") is False
        with pytest.raises(ValueError):
            parse_bool("maybe")


class TestOrderingAndSearch:
    def test_ordering(self, session, products):
        query = apply_ordering(select(Product), Product, "-price")
        assert names(session, query) == ["Laptop", "Mechanical Keyboard", "USB-C Hub"]

    def test_multiple_ordering_fields(self, session, products):
        query = apply_ordering(select(Product), Product, "is_available,name")
        assert names(session, query) == ["USB-C Hub", "Laptop", "Mechanical Keyboard"]

    def test_unknown_ordering_field(self):
        with pytest.raises(ValidationFailed) as exc_info:
            apply_ordering(select(Product), Product, "-colour")
        assert "ordering" in exc_info.value.errors

    def test_search_matches_any_field(self, session, products):
        query = apply_search(select(Product), Product, "switches", ["name", "description"])
        assert names(session, query) == ["Mechanical Keyboard"]

    def test_search_requires_every_word(self, session, customers):
        query = apply_search(select(Customer), Customer, "grace hopper", ["first_name", "last_name"])
        assert [c.email for c in session.execute(query).scalars()] == ["grace@example.com"]

    def test_blank_search_is_noop(self, session, products):
        query = apply_search(select(Product), Product, "  ", ["name"])
        assert count(session, query) == 3


class TestAggregates:
    def test_aggregate(self, session, products):
        stats = aggregate(
            session, select(Product), Product,
            n=("count", "id"), total=("sum", "stock"), top=("max", "price"),
        )

        assert stats["n"] == 3
        assert stats["total"] == 30
        assert Decimal(str(stats["top"])) == Decimal("999.99")

    def test_aggregate_respects_filters(self, session, products):
        query = apply_filters(select(Product), Product, {"is_available": "true"})
        assert aggregate(session, query, Product, n=("count", "id"))["n"] == 2

    def test_unknown_aggregate(self, session):
        with pytest.raises(ValueError):
            aggregate(session, select(Product), Product, x=("median", "price"))


class TestObjectHelpers:
    def test_get_object_or_404(self, session, products):
        assert get_object_or_404(session, Product, products[0].id).name == "Laptop"

        with pytest.raises(NotFound) as exc_info:
            get_object_or_404(session, Product, 999)
        assert exc_info.value.detail == "No Product matches the given query."

    def test_find_unique_conflicts(self, session, customers):
        conflicts = find_unique_conflicts(session, Customer, {"email": "ada@example.com"})
        assert conflicts == {"email": ["Customer with this Email already exists."]}

    def test_unique_check_ignores_instance_itself(self, session, customers):
        ada = customers[0]
        assert find_unique_conflicts(session, Customer, {"email": ada.email}, instance=ada) == {}


class TestParseDatetime:
    @pytest.mark.parametrize("raw", [
        "2024-01-10T08:00:00Z",
        "2024-01-10T08:00:00+00:00",
        "2024-01-10T10:00:00+02:00",
        "2024-01-10T08:00:00",
    ])
    def test_values_become_naive_utc(self, raw):
        assert parse_datetime(raw) == datetime(2024, 1, 10, 8, 0)

    def test_filter_with_utc_suffix(self, session, customers):
        query = apply_filters(select(Customer), Customer, {"created_at__gte": "2000-01-01T00:00:00Z"})

        assert len(session.execute(query).scalars().all()) == len(customers)
