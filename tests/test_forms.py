"""Tests for form validation hooks and model forms."""
from decimal import Decimal

import pytest

from catalog.domain.models import Contact, Customer
from catalog.services.forms import (
    NON_FIELD_ERRORS,
    REQUIRED_MESSAGE,
    ContactForm,
    CustomerForm,
    Form,
    FormValidationError,
    ProductForm,
)


@pytest.fixture
def contact_data():
    return {
        "name": "  Ann  ",
        "email": "ann@example.com",
        "subject": "Shipping",
        "message": "Do you ship to Lisbon?",
    }


class TestContactForm:
    """Test field and clean hooks on the contact form."""

    def test_valid_form_is_cleaned(self, contact_data):
        form = ContactForm(contact_data)

        assert form.is_valid()
        assert form.cleaned_data["name"] == "Ann"

    def test_unbound_form_is_invalid(self):
        form = ContactForm()

        assert not form.is_bound
        assert not form.is_valid()
        assert form.errors == {}

    def test_required_fields(self):
        form = ContactForm({"name": "Ann"})

        assert not form.is_valid()
        assert form.errors["email"] == [REQUIRED_MESSAGE]
        assert form.errors["subject"] == [REQUIRED_MESSAGE]
        assert form.errors["message"] == [REQUIRED_MESSAGE]
        assert "name" not in form.errors

    def test_invalid_email_does_not_hide_other_errors(self, contact_data):
        contact_data.update(email="not-an-email", message="short")
        form = ContactForm(contact_data)

        assert not form.is_valid()
        assert set(form.errors) == {"email", "message"}
        assert form.errors["message"] == ["Message must be at least 10 characters long."]

    def test_blank_name_and_subject_are_required(self, contact_data):
        contact_data.update(name="   ", subject="\t ")
        form = ContactForm(contact_data)

        assert not form.is_valid()
        assert form.errors["name"] == [REQUIRED_MESSAGE]
        assert form.errors["subject"] == [REQUIRED_MESSAGE]

    def test_spam_subject(self, contact_data):
        contact_data["subject"] = "Cheap SPAM offer"
        form = ContactForm(contact_data)

        assert not form.is_valid()
        assert form.errors["subject"] == ["Subject looks like spam."]

    def test_max_length(self, contact_data):
        contact_data["name"] = "x" * 101
        form = ContactForm(contact_data)

        assert not form.is_valid()
        assert "name" in form.errors

    def test_save(self, session, contact_data):
        form = ContactForm(contact_data, session=session)
        assert form.is_valid()

        contact = form.save()

        assert contact.id is not None
        assert session.query(Contact).count() == 1

    def test_save_invalid_raises(self, session):
        form = ContactForm({"name": "Ann"}, session=session)

        with pytest.raises(ValueError):
            form.save()


class TestCustomerForm:
    def test_email_lowercased_and_phone_normalized(self):
        form = CustomerForm({
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ADA@Example.com",
            "phone": "+44 20-7946-0000",
        })

        assert form.is_valid()
        assert form.cleaned_data["email"] == "ada@example.com"
        assert form.cleaned_data["phone"] == "+442079460000"
        assert form.cleaned_data["city"] == ""

    def test_invalid_phone(self):
        form = CustomerForm({
            "first_name": "Ada", "last_name": "Lovelace",
            "email": "ada@example.com", "phone": "call me",
        })

        assert form.errors["phone"] == ["Enter a valid phone number."]

    def test_blank_names_are_required(self, session):
        form = CustomerForm(
            {"first_name": "  ", "last_name": " ", "email": "ada@example.com"},
            session=session,
        )

        assert not form.is_valid()
        assert form.errors["first_name"] == [REQUIRED_MESSAGE]
        assert form.errors["last_name"] == [REQUIRED_MESSAGE]
        with pytest.raises(ValueError):
            form.save()
        assert session.query(Customer).count() == 0

    def test_unique_email(self, session, customers):
        form = CustomerForm(
            {"first_name": "Ada", "last_name": "L", "email": "ada@example.com"},
            session=session,
        )

        assert not form.is_valid()
        assert form.errors["email"] == ["Customer with this Email already exists."]

    def test_update_existing_instance(self, session, customers):
        ada = customers[0]
        form = CustomerForm(
            {"first_name": "Ada", "last_name": "King", "email": "ada@example.com"},
            instance=ada,
            session=session,
        )

        assert form.is_valid()
        form.save()
        session.expire_all()
        assert session.get(Customer, ada.id).last_name == "King"


class TestProductForm:
    def test_decimal_price(self):
        form = ProductForm({"name": "Desk", "price": "120.00", "stock": "3"})

        assert form.is_valid()
        assert form.cleaned_data["price"] == Decimal("120.00")
        assert form.cleaned_data["stock"] == 3

    def test_price_must_be_positive(self):
        form = ProductForm({"name": "Desk", "price": "0"})

        assert "price" in form.errors

    def test_blank_name_after_strip(self):
        form = ProductForm({"name": "   ", "price": "10"})

        assert form.errors["name"] == [REQUIRED_MESSAGE]

    def test_cross_field_clean(self):
        form = ProductForm({"name": "Desk", "price": "10", "stock": "0", "is_available": "true"})

        assert not form.is_valid()
        assert form.errors["is_available"] == ["A product with no stock cannot be marked available."]

    def test_unavailable_without_stock_is_fine(self):
        form = ProductForm({"name": "Desk", "price": "10", "stock": "0", "is_available": "false"})

        assert form.is_valid()


class TestCustomForm:
    """Non-field errors raised from ``clean()``."""

    def test_non_field_error(self, contact_data):
        class StrictContactForm(ContactForm):
            def clean(self):
                cleaned = super().clean()
                if cleaned.get("name") == "Ann":
                    raise FormValidationError("Ann may not write in.")
                return cleaned

        form = StrictContactForm(contact_data)

        assert not form.is_valid()
        assert form.errors[NON_FIELD_ERRORS] == ["Ann may not write in."]

    def test_plain_form_has_no_database(self, contact_data):
        assert issubclass(ContactForm, Form)
        assert ContactForm(contact_data).session is None
