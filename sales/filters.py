"""Order filtering and paging.

The same criteria drive two paths: `filter_orders` works on an already
fetched collection (model instances, or dicts such as `OrderSerializer`
output with ISO timestamps), `filter_queryset` pushes the identical
predicates into the ORM for the list endpoint.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from datetime import date, datetime, time
from datetime import timezone as dt_timezone
from typing import Any, Iterable, Mapping, Sequence

from django.core.paginator import Paginator
from django.db.models import Q
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from common.exceptions import FieldValidationError

DEFAULT_PAGE_SIZE = 10

CHOICE_FIELDS = ("payment_status", "delivery_method", "order_status")
TEXT_FIELDS = ("customer", "order_number", "wigger")
DATE_FIELDS = ("created_from", "created_to", "updated_from", "updated_to")


@dataclass(frozen=True)
class OrderFilterCriteria:
    payment_status: str | None = None
    delivery_method: str | None = None
    order_status: str | None = None
    customer: str | None = None
    order_number: str | None = None
    wigger: str | None = None
    pos_operator: str | None = None
    created_from: date | None = None
    created_to: date | None = None
    updated_from: date | None = None
    updated_to: date | None = None

    @classmethod
    def from_query_params(cls, params: Mapping[str, Any]) -> "OrderFilterCriteria":
        values: dict[str, Any] = {}
        errors = {}
        for name in CHOICE_FIELDS + TEXT_FIELDS + ("pos_operator",):
            raw = (params.get(name) or "").strip()
            if raw:
                values[name] = raw
        for name in DATE_FIELDS:
            raw = (params.get(name) or "").strip()
            if not raw:
                continue
            try:
                parsed = parse_date(raw)
            except ValueError:
                parsed = None
            if parsed is None:
                errors[name] = "Use YYYY-MM-DD."
            else:
                values[name] = parsed

        criteria = cls(**values)
        for prefix in ("created", "updated"):
            start, end = getattr(criteria, f"{prefix}_from"), getattr(criteria, f"{prefix}_to")
            if start and end and start > end:
                errors[f"{prefix}_from"] = f"{prefix}_from must be before or equal to {prefix}_to."
        if errors:
            raise FieldValidationError(errors)
        return criteria

    def is_empty(self) -> bool:
        return all(getattr(self, field.name) in (None, "") for field in fields(self))

    def with_changes(self, **changes: Any) -> "OrderFilterCriteria":
        return replace(self, **changes)

    def day_bounds(self, tz=None) -> dict[str, datetime | None]:
        """Inclusive bounds: start of the `from` day to 23:59:59.999999 of the `to` day."""
        tz = tz or timezone.get_current_timezone()
        return {
            "created_from": _start_of_day(self.created_from, tz),
            "created_to": _end_of_day(self.created_to, tz),
            "updated_from": _start_of_day(self.updated_from, tz),
            "updated_to": _end_of_day(self.updated_to, tz),
        }


def _start_of_day(value: date | None, tz) -> datetime | None:
    if value is None:
        return None
    return datetime.combine(value, time.min).replace(tzinfo=tz)


def _end_of_day(value: date | None, tz) -> datetime | None:
    if value is None:
        return None
    return datetime.combine(value, time.max).replace(tzinfo=tz)


def _value(order: Any, name: str) -> Any:
    if isinstance(order, Mapping):
        return order.get(name)
    return getattr(order, name, None)


def _related_name(order: Any, relation: str, attribute: str) -> str:
    if isinstance(order, Mapping):
        for key in (f"{relation}_detail", relation):
            nested = order.get(key)
            if isinstance(nested, Mapping):
                return nested.get(attribute) or ""
        return order.get(f"{relation}_{attribute}") or order.get(f"{relation}_name") or ""
    related = getattr(order, relation, None)
    return getattr(related, attribute, "") if related is not None else ""


def _operator_id(order: Any) -> str:
    if isinstance(order, Mapping):
        operator = order.get("pos_operator")
        if isinstance(operator, Mapping):
            operator = operator.get("id")
        return str(operator or order.get("pos_operator_id") or "")
    return str(getattr(order, "pos_operator_id", "") or "")


def _aware(value: datetime | str | None, tz) -> datetime | None:
    if isinstance(value, str):
        value = parse_datetime(value)
    if value is None:
        return None
    if timezone.is_naive(value):
        return timezone.make_aware(value, tz)
    return value


def _contains(haystack: str, needle: str) -> bool:
    return needle.casefold() in (haystack or "").casefold()


def _in_range(value: datetime | None, start: datetime | None, end: datetime | None) -> bool:
    if start is None and end is None:
        return True
    if value is None:
        return False
    if start is not None and value < start:
        return False
    if end is not None and value > end:
        return False
    return True


def matches(order: Any, criteria: OrderFilterCriteria, tz=None) -> bool:
    tz = tz or timezone.get_current_timezone()
    for name in CHOICE_FIELDS:
        wanted = getattr(criteria, name)
        if wanted and _value(order, name) != wanted:
            return False

    if criteria.customer and not _contains(_related_name(order, "customer", "full_name"), criteria.customer):
        return False
    if criteria.order_number and not _contains(_value(order, "order_number") or "", criteria.order_number):
        return False
    if criteria.wigger and not _contains(_related_name(order, "wigger", "name"), criteria.wigger):
        return False
    if criteria.pos_operator and _operator_id(order) != str(criteria.pos_operator):
        return False

    bounds = criteria.day_bounds(tz)
    if not _in_range(_aware(_value(order, "created_at"), tz), bounds["created_from"], bounds["created_to"]):
        return False
    if not _in_range(_aware(_value(order, "updated_at"), tz), bounds["updated_from"], bounds["updated_to"]):
        return False
    return True


def filter_orders(orders: Iterable[Any], criteria: OrderFilterCriteria | None = None, tz=None) -> list[Any]:
    """AND of every active criterion, newest `created_at` first."""
    criteria = criteria or OrderFilterCriteria()
    tz = tz or timezone.get_current_timezone()
    selected = [order for order in orders if matches(order, criteria, tz)]
    oldest = datetime.min.replace(tzinfo=dt_timezone.utc)
    selected.sort(key=lambda order: _aware(_value(order, "created_at"), tz) or oldest, reverse=True)
    return selected


def filter_queryset(queryset, criteria: OrderFilterCriteria, tz=None):
    query = Q()
    for name in CHOICE_FIELDS:
        wanted = getattr(criteria, name)
        if wanted:
            query &= Q(**{name: wanted})
    if criteria.customer:
        query &= Q(customer__full_name__icontains=criteria.customer)
    if criteria.order_number:
        query &= Q(order_number__icontains=criteria.order_number)
    if criteria.wigger:
        query &= Q(wigger__name__icontains=criteria.wigger)
    if criteria.pos_operator:
        query &= Q(pos_operator_id=criteria.pos_operator)

    bounds = criteria.day_bounds(tz)
    lookups = {
        "created_from": "created_at__gte",
        "created_to": "created_at__lte",
        "updated_from": "updated_at__gte",
        "updated_to": "updated_at__lte",
    }
    for name, lookup in lookups.items():
        if bounds[name] is not None:
            query &= Q(**{lookup: bounds[name]})
    return queryset.filter(query).order_by("-created_at")


@dataclass(frozen=True)
class PageResult:
    items: list[Any]
    number: int
    num_pages: int
    count: int

    @property
    def has_next(self) -> bool:
        return self.number < self.num_pages

    @property
    def has_previous(self) -> bool:
        return self.number > 1


def paginate(items: Sequence[Any], page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> PageResult:
    if page_size < 1:
        raise ValueError("page_size must be at least 1")
    paginator = Paginator(list(items), page_size)
    current = paginator.get_page(page)
    return PageResult(
        items=list(current.object_list),
        number=current.number,
        num_pages=paginator.num_pages,
        count=paginator.count,
    )


class OrderBrowser:
    """Filter state plus current page over a fetched order collection.

    Any change to the criteria moves the browser back to page 1.
    """

    def __init__(self, orders: Iterable[Any], page_size: int = DEFAULT_PAGE_SIZE, tz=None):
        self.orders = list(orders)
        self.page_size = page_size
        self.tz = tz
        self.criteria = OrderFilterCriteria()
        self.page = 1

    def set_filter(self, **changes: Any) -> None:
        updated = self.criteria.with_changes(**changes)
        if updated != self.criteria:
            self.criteria = updated
            self.page = 1

    def clear_filters(self) -> None:
        if not self.criteria.is_empty():
            self.criteria = OrderFilterCriteria()
            self.page = 1

    def go_to(self, page: int) -> None:
        self.page = max(1, int(page))

    @property
    def results(self) -> list[Any]:
        return filter_orders(self.orders, self.criteria, self.tz)

    def current_page(self) -> PageResult:
        result = paginate(self.results, self.page, self.page_size)
        self.page = result.number
        return result
