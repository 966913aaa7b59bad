"""Tests for payload parsing helpers."""
from __future__ import annotations

from datetime import datetime

import pytest

from servio.errors import ValidationError
from servio.validation import (
    LineItem,
    parse_amount_cents,
    parse_cart_items,
    parse_choice,
    parse_datetime,
    parse_future_datetime,
    string_field,
)


@pytest.mark.parametrize(
    "value, cents",
    [(500, 50000), ("12.50", 1250), (0.1, 10), ("0.005", 1), (19.99, 1999)],
)
def test_parse_amount_cents(value, cents) -> None:
    assert parse_amount_cents(value) == cents


@pytest.mark.parametrize("value", [None, "", "abc", True, -1, 0, "NaN", "Infinity"])
def test_parse_amount_cents_rejects(value) -> None:
    with pytest.raises(ValidationError):
        parse_amount_cents(value)


def test_zero_allowed_when_requested() -> None:
    assert parse_amount_cents(0, allow_zero=True) == 0


def test_cart_shapes_are_normalised() -> None:
    items = parse_cart_items(
        [
            {"serviceId": 7, "name": "Cleaning", "price": 200, "quantity": 2},
            {"id": "cart-1", "service": {"_id": "svc9", "title": "Plumbing", "price": "100"}, "quantity": "1"},
            {"service": "Painting", "price": 50, "qty": 3},
        ]
    )

    assert items == [
        LineItem("7", "Cleaning", 20000, 2),
        LineItem("svc9", "Plumbing", 10000, 1),
        LineItem("Painting", "Painting", 5000, 3),
    ]
    assert sum(item.subtotal_cents for item in items) == 65000


@pytest.mark.parametrize(
    "raw",
    [
        [],
        None,
        "Cleaning",
        [{"name": "No ref", "price": 1}],
        [{"serviceId": 1, "name": "X", "price": 1, "quantity": 0}],
        [{"serviceId": 1, "name": "X", "price": -3}],
        ["not a dict"],
    ],
)
def test_bad_carts_are_rejected(raw) -> None:
    with pytest.raises(ValidationError):
        parse_cart_items(raw)


def test_parse_datetime_normalises_to_naive_utc() -> None:
    assert parse_datetime("2030-05-01T10:00:00Z") == datetime(2030, 5, 1, 10, 0)
    assert parse_datetime("2030-05-01T15:30:00+05:30") == datetime(2030, 5, 1, 10, 0)
    assert parse_datetime("2030-05-01T10:00:00") == datetime(2030, 5, 1, 10, 0)


def test_parse_future_datetime() -> None:
    now = datetime(2030, 1, 1)
    assert parse_future_datetime("2030-01-02T00:00:00", now) == datetime(2030, 1, 2)
    with pytest.raises(ValidationError, match="Scheduled date must be in the future"):
        parse_future_datetime("2030-01-01T00:00:00", now)
    with pytest.raises(ValidationError, match="Invalid scheduled date format"):
        parse_future_datetime("next tuesday", now)


def test_string_field() -> None:
    payload = {"name": "  Asha  ", "phone": 98765, "password": " pw "}

    assert string_field(payload, "name") == "Asha"
    assert string_field(payload, "password", strip=False) == " pw "
    assert string_field(payload, "location", "Not specified") == "Not specified"
    with pytest.raises(ValidationError, match="phone must be a string"):
        string_field(payload, "phone")


def test_parse_choice() -> None:
    assert parse_choice("pending", ("pending", "confirmed")) == "pending"
    with pytest.raises(ValidationError, match="Invalid status"):
        parse_choice("bogus", ("pending", "confirmed"))
