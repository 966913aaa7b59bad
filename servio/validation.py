"""Request payload parsing shared by the route modules and the workflow."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .errors import ValidationError


@dataclass(frozen=True)
class LineItem:
    service_ref: str
    name: str
    unit_price_cents: int
    quantity: int

    @property
    def subtotal_cents(self) -> int:
        return self.unit_price_cents * self.quantity


def require_fields(payload: dict, *names: str) -> None:
    missing = [name for name in names if payload.get(name) in (None, "", [])]
    if missing:
        raise ValidationError(f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required")


def string_field(payload: dict, name: str, default: str = "", *, strip: bool = True) -> str:
    """Read a text field, rejecting numbers, lists and objects."""
    value = payload.get(name)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value.strip() if strip else value


def parse_choice(value: object, choices: tuple[str, ...], *, field: str = "status") -> str:
    if value not in choices:
        raise ValidationError(f"Invalid {field}")
    return value


def parse_amount_cents(value: object, *, field: str = "amount", allow_zero: bool = False) -> int:
    """Convert a currency amount (``500``, ``"12.50"``) into integer cents."""
    if isinstance(value, bool) or value is None or value == "":
        raise ValidationError(f"Invalid {field}")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid {field}") from None
    if not amount.is_finite():
        raise ValidationError(f"Invalid {field}")
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents < 0 or (cents == 0 and not allow_zero):
        raise ValidationError(f"Invalid {field}")
    return cents


def parse_positive_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}")
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}") from None
    if number <= 0:
        raise ValidationError(f"Invalid {field}")
    return number


def parse_datetime(value: object, *, field: str = "date") -> datetime:
    """Parse an ISO-8601 timestamp into naive UTC.

    Naive inputs are taken to be UTC already; ``Z`` suffixes are accepted.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid {field} format")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid {field} format") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_future_datetime(value: object, now: datetime, *, field: str = "scheduled date") -> datetime:
    parsed = parse_datetime(value, field=field)
    if parsed <= now:
        raise ValidationError(f"{field[:1].upper()}{field[1:]} must be in the future")
    return parsed


def parse_cart_items(raw_items: object) -> list[LineItem]:
    """Normalise cart entries into line items.

    Accepts both the flat shape ``{"serviceId", "name", "price", "quantity"}``
    and the storefront cart shape ``{"id", "service": {...}, "quantity"}``.
    """
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Services are required")

    items: list[LineItem] = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"Invalid cart item at position {index}")
        service = raw.get("service")
        nested = service if isinstance(service, dict) else {}

        ref = (
            raw.get("serviceId")
            or raw.get("service_id")
            or nested.get("id")
            or nested.get("_id")
            or raw.get("id")
            or (service if isinstance(service, str) else None)
        )
        name = raw.get("name") or nested.get("name") or nested.get("title") or (
            service if isinstance(service, str) else None
        )
        price = raw.get("price", nested.get("price"))
        quantity = raw.get("quantity", raw.get("qty", 1))

        if not ref or not name:
            raise ValidationError(f"Cart item at position {index} needs a service reference and name")

        items.append(
            LineItem(
                service_ref=str(ref),
                name=str(name),
                unit_price_cents=parse_amount_cents(price, field=f"price for {name}", allow_zero=True),
                quantity=parse_positive_int(quantity, field=f"quantity for {name}"),
            )
        )
    return items
