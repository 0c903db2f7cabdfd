"""Order money arithmetic.

All amounts are `Decimal`. Intermediate values keep full precision and only
the returned figures are rounded to cents.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from common.exceptions import FieldValidationError
from common.utils import to_decimal, to_money

DEFAULT_VAT_RATE = Decimal("0.20")
DELIVERY = "delivery"
PICKUP = "pickup"
FIXED = "fixed"
PERCENTAGE = "percentage"


@dataclass(frozen=True)
class LineItem:
    quantity: Decimal
    price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.quantity * self.price


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    discount_amount: Decimal
    delivery_charge: Decimal
    total_amount: Decimal

    def as_dict(self) -> dict[str, Decimal]:
        return {
            "amount": self.subtotal,
            "vat_rate": self.vat_rate,
            "vat_amount": self.vat_amount,
            "discount_amount": self.discount_amount,
            "delivery_charge": self.delivery_charge,
            "total_amount": self.total_amount,
        }


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def validate_line_items(items: Iterable[Any]) -> list[LineItem]:
    """Reject missing, non-numeric or negative quantities and prices.

    Returns the items as `LineItem` values ready for `compute_order_totals`.
    """
    errors: dict[str, str] = {}
    line_items = []
    for index, item in enumerate(items):
        values = {}
        for name in ("quantity", "price"):
            raw = _field(item, name)
            if raw is None or raw == "" or isinstance(raw, bool):
                errors[f"items[{index}].{name}"] = f"A numeric {name} is required."
                continue
            try:
                value = to_decimal(raw)
            except (InvalidOperation, TypeError, ValueError):
                errors[f"items[{index}].{name}"] = f"{name.capitalize()} must be a number."
                continue
            if not value.is_finite():
                errors[f"items[{index}].{name}"] = f"{name.capitalize()} must be a number."
            elif value < 0:
                errors[f"items[{index}].{name}"] = f"{name.capitalize()} must not be negative."
            else:
                values[name] = value
        if len(values) == 2:
            line_items.append(LineItem(quantity=values["quantity"], price=values["price"]))

    if errors:
        raise FieldValidationError(errors)
    return line_items


def subtotal(items: Iterable[Any]) -> Decimal:
    return sum((to_decimal(_field(item, "quantity")) * to_decimal(_field(item, "price")) for item in items), Decimal("0"))


def resolve_discount_amount(subtotal_amount: Any, discount_type: str | None, discount_value: Any) -> Decimal:
    """Turn a fixed or percentage discount into an amount off the subtotal."""
    value = to_decimal(discount_value)
    if value < 0:
        raise FieldValidationError({"discount_value": "Discount must not be negative."})
    if discount_type in (None, "", FIXED):
        return value
    if discount_type == PERCENTAGE:
        if value > 100:
            raise FieldValidationError({"discount_value": "Percentage discount cannot exceed 100."})
        return to_decimal(subtotal_amount) * value / Decimal("100")
    raise FieldValidationError({"discount_type": f"Unknown discount type '{discount_type}'."})


def compute_order_totals(
    items: Iterable[Any],
    discount: Any = 0,
    delivery_method: str = PICKUP,
    delivery_charge: Any = 0,
    vat_rate: Any = DEFAULT_VAT_RATE,
) -> OrderTotals:
    """subtotal + subtotal * vat_rate - discount (+ delivery charge for deliveries)."""
    raw_subtotal = subtotal(items)
    rate = to_decimal(vat_rate)
    raw_vat = raw_subtotal * rate
    discount_amount = to_decimal(discount)
    applied_delivery = to_decimal(delivery_charge) if delivery_method == DELIVERY else Decimal("0")
    raw_total = raw_subtotal + raw_vat - discount_amount + applied_delivery

    return OrderTotals(
        subtotal=to_money(raw_subtotal),
        vat_rate=rate,
        vat_amount=to_money(raw_vat),
        discount_amount=to_money(discount_amount),
        delivery_charge=to_money(applied_delivery),
        total_amount=to_money(raw_total),
    )
