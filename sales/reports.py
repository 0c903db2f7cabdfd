import csv
import io
from collections import OrderedDict
from datetime import datetime, time
from decimal import Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.conf import settings
from django.core.cache import cache
from django.db.models import Avg, Count, DecimalField, Q, Sum, Value
from django.db.models.functions import Coalesce, TruncDate
from django.http import HttpResponse
from django.utils import timezone
from django.utils.dateparse import parse_date
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.renderers import BaseRenderer
from rest_framework.response import Response
from rest_framework.settings import api_settings
from rest_framework.views import APIView

from common.permissions import RoleCapabilityPermission
from common.utils import to_decimal, to_money
from core.models import AppSettings, User
from inventory.models import InventoryItem
from inventory.search import display_name
from sales.models import Order

ZERO = Decimal("0.00")
OPEN_FULFILMENT_STATUSES = (
    Order.OrderStatus.CREATED,
    Order.OrderStatus.IN_PROGRESS,
    Order.OrderStatus.COMPLETED,
    Order.OrderStatus.DISPATCHED,
    Order.OrderStatus.RETURNED,
)


def _money_sum(field, **filters):
    return Coalesce(Sum(field, filter=Q(**filters) if filters else None), Value(ZERO), output_field=DecimalField(max_digits=14, decimal_places=2))


class CSVRenderer(BaseRenderer):
    """Lets `?format=csv` through content negotiation.

    Report views answer CSV requests with their own `HttpResponse`; this
    renderer only formats DRF responses such as validation errors.
    """

    media_type = "text/csv"
    format = "csv"
    charset = "utf-8"

    def render(self, data, accepted_media_type=None, renderer_context=None):
        if not data:
            return b""
        rows = data if isinstance(data, list) else [data]
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=list(rows[0].keys()))
        writer.writeheader()
        writer.writerows(rows)
        return buffer.getvalue().encode(self.charset)


class BaseReportView(APIView):
    """Shared plumbing for the read-only reports.

    Every report accepts `?timezone=` (IANA name) and `?format=csv`; the
    order-based ones also take an inclusive `date_from`/`date_to` pair.
    Results are cached per full URL for `REPORT_CACHE_SECONDS`.
    """

    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    renderer_classes = [*api_settings.DEFAULT_RENDERER_CLASSES, CSVRenderer]
    permission_action_map = {"get": "reports.view"}
    cache_timeout = settings.REPORT_CACHE_SECONDS

    def _timezone(self, request):
        name = request.query_params.get("timezone")
        try:
            return ZoneInfo(name) if name else timezone.get_current_timezone()
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError({"timezone": "Invalid IANA timezone."})

    def _parse_limit(self, request, default=10, minimum=1, maximum=1000):
        raw = request.query_params.get("limit")
        if raw is None:
            return default
        message = f"Limit must be an integer between {minimum} and {maximum}."
        try:
            limit = int(raw)
        except ValueError:
            raise ValidationError({"limit": message})
        if limit < minimum or limit > maximum:
            raise ValidationError({"limit": message})
        return limit

    @staticmethod
    def _day_bounds(first_day, last_day, tz):
        return (
            datetime.combine(first_day, time.min).replace(tzinfo=tz),
            datetime.combine(last_day, time.max).replace(tzinfo=tz),
        )

    def _date_range(self, request, tz):
        params = request.query_params
        first_day = parse_date(params.get("date_from", ""))
        last_day = parse_date(params.get("date_to", ""))
        if first_day is None and last_day is None:
            return None, None
        if first_day is None or last_day is None:
            raise ValidationError({"date_range": "Both date_from and date_to are required."})
        if first_day > last_day:
            raise ValidationError({"date_range": "date_from must be before or equal to date_to."})
        return self._day_bounds(first_day, last_day, tz)

    def _orders(self, request, tz):
        start, end = self._date_range(request, tz)
        if start is None:
            return Order.objects.all()
        return Order.objects.filter(created_at__range=(start, end))

    @staticmethod
    def _wants_csv(request):
        return request.query_params.get("format") == "csv"

    def _csv_response(self, filename, rows):
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = f'attachment; filename="{filename}"'
        if rows:
            writer = csv.DictWriter(response, fieldnames=list(rows[0]))
            writer.writeheader()
            writer.writerows(rows)
        return response

    def _cached(self, request, key, build):
        cache_key = f"reports:{key}:{request.get_full_path()}"
        payload = cache.get(cache_key)
        if payload is None:
            payload = build()
            cache.set(cache_key, payload, self.cache_timeout)
        return payload

    def _respond(self, request, filename, payload, **extra):
        """CSV carries only the row list; JSON wraps it with any summary fields."""
        if isinstance(payload, list):
            payload = {**extra, "results": payload}
        if self._wants_csv(request):
            return self._csv_response(filename, payload["results"])
        return Response(payload)


class EndOfDayReportView(BaseReportView):
    """Totals for one calendar day (`?date=`, today by default)."""

    def get(self, request):
        tz = self._timezone(request)
        raw_date = request.query_params.get("date")
        day = parse_date(raw_date) if raw_date else timezone.localdate(timezone=tz)
        if day is None:
            raise ValidationError({"date": "Use YYYY-MM-DD."})
        start, end = self._day_bounds(day, day, tz)

        def run():
            queryset = Order.objects.filter(created_at__range=(start, end))
            totals = queryset.aggregate(
                order_count=Count("id"),
                total_sales=_money_sum("total_amount"),
                total_vat=_money_sum("vat_amount"),
                total_discounts=_money_sum("discount_amount"),
                total_delivery=_money_sum("delivery_charge", delivery_method=Order.DeliveryMethod.DELIVERY),
            )
            by_payment_status = {
                row["payment_status"]: str(row["total"])
                for row in queryset.values("payment_status").annotate(total=_money_sum("total_amount")).order_by("payment_status")
            }
            return {
                "date": day.isoformat(),
                **{key: str(value) if isinstance(value, Decimal) else value for key, value in totals.items()},
                "sales_by_payment_status": by_payment_status,
            }

        summary = self._cached(request, "end-of-day", run)
        if self._wants_csv(request):
            row = {key: value for key, value in summary.items() if key != "sales_by_payment_status"}
            row.update({f"sales_{status.lower()}": total for status, total in summary["sales_by_payment_status"].items()})
            return self._csv_response(f"end_of_day_{day.isoformat()}.csv", [row])
        return Response(summary)


class SalesByItemReportView(BaseReportView):
    def get(self, request):
        tz = self._timezone(request)
        limit = self._parse_limit(request, default=50)

        def run():
            sales = OrderedDict()
            for items in self._orders(request, tz).values_list("items", flat=True):
                for item in items or []:
                    entry = sales.setdefault(
                        item.get("id"),
                        {"item_id": item.get("id"), "name": item.get("name", ""), "quantity": 0, "revenue": ZERO},
                    )
                    quantity = int(item.get("quantity") or 0)
                    entry["quantity"] += quantity
                    entry["revenue"] += to_decimal(item.get("price")) * quantity
            rows = sorted(sales.values(), key=lambda row: row["quantity"], reverse=True)[:limit]
            return [{**row, "revenue": str(to_money(row["revenue"]))} for row in rows]

        rows = self._cached(request, "sales-by-item", run)
        return self._respond(request, "sales_by_item.csv", rows)


class DetailedSalesReportView(BaseReportView):
    def get(self, request):
        tz = self._timezone(request)

        def run():
            queryset = self._orders(request, tz).select_related("customer", "pos_operator", "wigger").order_by("-created_at")
            return [
                {
                    "order_number": order.order_number,
                    "created_at": timezone.localtime(order.created_at, tz).isoformat(),
                    "customer": order.customer.full_name if order.customer_id else "",
                    "pos_operator": (order.pos_operator.full_name or order.pos_operator.username) if order.pos_operator_id else "",
                    "wigger": order.wigger.name if order.wigger_id else "",
                    "items": "; ".join(f"{item.get('name')} x{item.get('quantity')}" for item in order.items),
                    "amount": str(order.amount),
                    "vat_amount": str(order.vat_amount),
                    "discount_amount": str(order.discount_amount),
                    "delivery_charge": str(order.applied_delivery_charge),
                    "total_amount": str(order.total_amount),
                    "order_status": order.order_status,
                    "payment_status": order.payment_status,
                }
                for order in queryset
            ]

        rows = self._cached(request, "detailed-sales", run)
        return self._respond(request, "detailed_sales.csv", rows)


class WiggerReportView(BaseReportView):
    """Orders attributed to each wigger and their share of all attributed orders."""

    def get(self, request):
        tz = self._timezone(request)

        def run():
            rows = list(
                self._orders(request, tz)
                .filter(wigger__isnull=False)
                .values("wigger_id", "wigger__name")
                .annotate(order_count=Count("id"), total_sales=_money_sum("total_amount"))
                .order_by("-order_count", "wigger__name")
            )
            total_orders = sum(row["order_count"] for row in rows)
            return [
                {
                    "wigger_id": str(row["wigger_id"]),
                    "wigger": row["wigger__name"],
                    "order_count": row["order_count"],
                    "total_sales": str(row["total_sales"]),
                    "share_percent": str(to_money(Decimal(row["order_count"]) * 100 / total_orders)) if total_orders else "0.00",
                }
                for row in rows
            ]

        rows = self._cached(request, "wiggers", run)
        return self._respond(request, "wigger_report.csv", rows)


class StaffPerformanceReportView(BaseReportView):
    def get(self, request):
        tz = self._timezone(request)
        start, end = self._date_range(request, tz)

        def run():
            order_filter = Q()
            if start and end:
                order_filter = Q(created_orders__created_at__gte=start, created_orders__created_at__lte=end)
            users = (
                User.objects.annotate(
                    total_orders=Count("created_orders", filter=order_filter),
                    total_sales=Coalesce(
                        Sum("created_orders__total_amount", filter=order_filter),
                        Value(ZERO),
                        output_field=DecimalField(max_digits=14, decimal_places=2),
                    ),
                )
                .order_by("-total_sales", "username")
            )
            return [
                {
                    "user_id": str(user.id),
                    "username": user.username,
                    "full_name": user.full_name,
                    "role": user.role,
                    "total_orders": user.total_orders,
                    "total_sales": str(to_money(user.total_sales)),
                    "average_order_value": str(to_money(user.total_sales / user.total_orders)) if user.total_orders else "0.00",
                }
                for user in users
            ]

        rows = self._cached(request, "staff-performance", run)
        return self._respond(request, "staff_performance.csv", rows)


def _inventory_items():
    return InventoryItem.objects.select_related("supplier").prefetch_related("attribute_links__attribute_item__category")


class InventoryValuationReportView(BaseReportView):
    def get(self, request):
        def run():
            rows = []
            total_value = ZERO
            for item in _inventory_items().order_by("created_at"):
                value = to_money(to_decimal(item.cost_price) * item.quantity)
                total_value += value
                rows.append(
                    {
                        "item_id": str(item.id),
                        "display_name": display_name(item),
                        "quantity": item.quantity,
                        "cost_price": str(to_money(item.cost_price)),
                        "value": str(value),
                    }
                )
            return {"total_value": str(to_money(total_value)), "results": rows}

        payload = self._cached(request, "inventory-valuation", run)
        return self._respond(request, "inventory_valuation.csv", payload)


class LowStockReportView(BaseReportView):
    def get(self, request):
        raw_threshold = request.query_params.get("threshold")
        if raw_threshold is None:
            threshold = AppSettings.load().low_stock_threshold
        else:
            try:
                threshold = int(raw_threshold)
            except ValueError:
                raise ValidationError({"threshold": "Threshold must be an integer."})

        def run():
            return [
                {
                    "item_id": str(item.id),
                    "display_name": display_name(item),
                    "quantity": item.quantity,
                    "supplier": item.supplier.name if item.supplier_id else "",
                }
                for item in _inventory_items().filter(quantity__lte=threshold).order_by("quantity", "created_at")
            ]

        rows = self._cached(request, f"low-stock:{threshold}", run)
        return self._respond(request, "low_stock.csv", rows, threshold=threshold)


class CurrentStockReportView(BaseReportView):
    def get(self, request):
        def run():
            rows = [
                {
                    "item_id": str(item.id),
                    "display_name": display_name(item),
                    "quantity": item.quantity,
                    "supplier": item.supplier.name if item.supplier_id else "",
                    "last_stocked_at": item.last_stocked_at.isoformat() if item.last_stocked_at else "",
                }
                for item in _inventory_items()
            ]
            rows.sort(key=lambda row: (row["display_name"].casefold(), row["display_name"]))
            return rows

        rows = self._cached(request, "current-stock", run)
        return self._respond(request, "current_stock.csv", rows)


def _order_rows(queryset):
    return [
        {
            "order_id": str(order.id),
            "order_number": order.order_number,
            "customer": order.customer.full_name if order.customer_id else "",
            "total_amount": str(order.total_amount),
            "order_status": order.order_status,
            "payment_status": order.payment_status,
            "delivery_method": order.delivery_method,
            "created_at": order.created_at.isoformat(),
        }
        for order in queryset.select_related("customer").order_by("-created_at")
    ]


class OutstandingPaymentsReportView(BaseReportView):
    def get(self, request):
        def run():
            queryset = Order.objects.exclude(payment_status=Order.PaymentStatus.PAID)
            rows = _order_rows(queryset)
            total = queryset.aggregate(total=_money_sum("total_amount"))["total"]
            return {"total_outstanding": str(total), "results": rows}

        payload = self._cached(request, "outstanding-payments", run)
        return self._respond(request, "outstanding_payments.csv", payload)


class OrderFulfillmentReportView(BaseReportView):
    """Orders still moving through fulfilment (not delivered or cancelled)."""

    def get(self, request):
        def run():
            queryset = Order.objects.filter(order_status__in=OPEN_FULFILMENT_STATUSES)
            counts = dict(queryset.values_list("order_status").annotate(count=Count("id")).order_by())
            return {"status_counts": counts, "results": _order_rows(queryset)}

        payload = self._cached(request, "order-fulfillment", run)
        return self._respond(request, "order_fulfillment.csv", payload)


class DashboardView(BaseReportView):
    def get(self, request):
        tz = self._timezone(request)

        def run():
            orders = self._orders(request, tz)

            def distribution(field):
                return {
                    row[field]: {"count": row["count"], "total": str(row["total"])}
                    for row in orders.values(field).annotate(count=Count("id"), total=_money_sum("total_amount")).order_by(field)
                }

            sales_over_time = [
                {"date": row["day"].isoformat(), "total": str(row["total"]), "order_count": row["count"]}
                for row in orders.annotate(day=TruncDate("created_at", tzinfo=tz))
                .values("day")
                .annotate(total=_money_sum("total_amount"), count=Count("id"))
                .order_by("day")
            ]
            discount_split = [
                {
                    "date": row["day"].isoformat(),
                    "discounted": str(row["discounted"]),
                    "full_price": str(row["full_price"]),
                }
                for row in orders.annotate(day=TruncDate("created_at", tzinfo=tz))
                .values("day")
                .annotate(
                    discounted=Coalesce(
                        Sum("total_amount", filter=Q(discount_amount__gt=0)),
                        Value(ZERO),
                        output_field=DecimalField(max_digits=14, decimal_places=2),
                    ),
                    full_price=Coalesce(
                        Sum("total_amount", filter=Q(discount_amount=0)),
                        Value(ZERO),
                        output_field=DecimalField(max_digits=14, decimal_places=2),
                    ),
                )
                .order_by("day")
            ]
            by_operator = [
                {
                    "user_id": str(row["pos_operator_id"]),
                    "operator": row["pos_operator__full_name"] or row["pos_operator__username"],
                    "total": str(row["total"]),
                    "order_count": row["count"],
                }
                for row in orders.filter(pos_operator__isnull=False)
                .values("pos_operator_id", "pos_operator__full_name", "pos_operator__username")
                .annotate(total=_money_sum("total_amount"), count=Count("id"))
                .order_by("-total")
            ]
            totals = orders.aggregate(
                order_count=Count("id"),
                total_sales=_money_sum("total_amount"),
                average_order_value=Coalesce(Avg("total_amount"), Value(ZERO), output_field=DecimalField(max_digits=14, decimal_places=2)),
            )
            return {
                "order_count": totals["order_count"],
                "total_sales": str(totals["total_sales"]),
                "average_order_value": str(to_money(totals["average_order_value"])),
                "status_distribution": distribution("order_status"),
                "payment_breakdown": distribution("payment_status"),
                "delivery_split": distribution("delivery_method"),
                "sales_over_time": sales_over_time,
                "sales_by_operator": by_operator,
                "discount_vs_full_price": discount_split,
            }

        return Response(self._cached(request, "dashboard", run))
