from django.urls import path
from rest_framework.routers import DefaultRouter

from sales.reports import (
    CurrentStockReportView,
    DashboardView,
    DetailedSalesReportView,
    EndOfDayReportView,
    InventoryValuationReportView,
    LowStockReportView,
    OrderFulfillmentReportView,
    OutstandingPaymentsReportView,
    SalesByItemReportView,
    StaffPerformanceReportView,
    WiggerReportView,
)
from sales.views import CustomerViewSet, OrderViewSet, WiggerViewSet

router = DefaultRouter()
router.register(r"customers", CustomerViewSet, basename="customer")
router.register(r"wiggers", WiggerViewSet, basename="wigger")
router.register(r"orders", OrderViewSet, basename="order")

urlpatterns = router.urls

urlpatterns += [
    path("dashboard/", DashboardView.as_view(), name="dashboard"),
    path("reports/end-of-day/", EndOfDayReportView.as_view(), name="report-end-of-day"),
    path("reports/sales-by-item/", SalesByItemReportView.as_view(), name="report-sales-by-item"),
    path("reports/detailed-sales/", DetailedSalesReportView.as_view(), name="report-detailed-sales"),
    path("reports/wiggers/", WiggerReportView.as_view(), name="report-wiggers"),
    path("reports/staff-performance/", StaffPerformanceReportView.as_view(), name="report-staff-performance"),
    path("reports/inventory-valuation/", InventoryValuationReportView.as_view(), name="report-inventory-valuation"),
    path("reports/low-stock/", LowStockReportView.as_view(), name="report-low-stock"),
    path("reports/current-stock/", CurrentStockReportView.as_view(), name="report-current-stock"),
    path("reports/outstanding-payments/", OutstandingPaymentsReportView.as_view(), name="report-outstanding-payments"),
    path("reports/order-fulfillment/", OrderFulfillmentReportView.as_view(), name="report-order-fulfillment"),
]
