import logging

from django.http import HttpResponse
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.pagination import OrderResultsSetPagination
from common.permissions import RoleCapabilityPermission
from core.models import AppSettings
from sales import services
from sales.filters import OrderFilterCriteria, filter_queryset
from sales.models import Customer, Order, Wigger
from sales.serializers import (
    CustomerSerializer,
    OrderCreateSerializer,
    OrderSerializer,
    OrderStatusSerializer,
    OrderUpdateSerializer,
    PrimaryAddressSerializer,
    WiggerSerializer,
)

logger = logging.getLogger(__name__)


class CustomerViewSet(viewsets.ModelViewSet):
    queryset = Customer.objects.prefetch_related("addresses").order_by("full_name")
    serializer_class = CustomerSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "customers.manage",
        "retrieve": "customers.attach",
        "create": "customers.attach",
        "update": "customers.attach",
        "partial_update": "customers.attach",
        "destroy": "customers.manage",
        "search": "customers.attach",
        "primary_address": "customers.attach",
    }

    def get_queryset(self):
        queryset = super().get_queryset()
        name = self.request.query_params.get("name")
        if name:
            queryset = queryset.filter(full_name__icontains=name)
        return queryset

    @action(detail=False, methods=["get"], url_path="search")
    def search(self, request):
        field = request.query_params.get("field", "email")
        query = (request.query_params.get("query") or "").strip()
        if not query:
            return Response({"count": 0, "results": []})
        customers = services.find_customers(field, query)
        return Response({"count": len(customers), "results": CustomerSerializer(customers, many=True).data})

    @action(detail=True, methods=["post"], url_path="primary-address")
    def primary_address(self, request, pk=None):
        customer = self.get_object()
        serializer = PrimaryAddressSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        services.set_primary_address(customer, serializer.validated_data["address_id"])
        customer = self.get_queryset().get(pk=customer.pk)
        return Response(CustomerSerializer(customer).data)


class WiggerViewSet(viewsets.ModelViewSet):
    queryset = Wigger.objects.all()
    serializer_class = WiggerSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "orders.create",
        "retrieve": "orders.create",
        "create": "wiggers.manage",
        "update": "wiggers.manage",
        "partial_update": "wiggers.manage",
        "destroy": "wiggers.manage",
    }


class OrderViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.CreateModelMixin,
    mixins.DestroyModelMixin,
    viewsets.GenericViewSet,
):
    queryset = Order.objects.select_related("customer", "wigger", "pos_operator").prefetch_related(
        "customer__addresses"
    )
    serializer_class = OrderSerializer
    pagination_class = OrderResultsSetPagination
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "orders.view",
        "retrieve": "orders.view",
        "create": "orders.create",
        "partial_update": "orders.edit",
        "destroy": "orders.delete",
        "change_status": "orders.status.change",
        "receipt": "orders.receipt",
    }

    def get_queryset(self):
        queryset = super().get_queryset()
        if self.action == "list":
            criteria = OrderFilterCriteria.from_query_params(self.request.query_params)
            queryset = filter_queryset(queryset, criteria)
        return queryset

    def create(self, request, *args, **kwargs):
        serializer = OrderCreateSerializer(data=request.data, context=self.get_serializer_context())
        serializer.is_valid(raise_exception=True)
        order = serializer.save()
        order = self.get_queryset().get(pk=order.pk)
        return Response(OrderSerializer(order).data, status=status.HTTP_201_CREATED)

    def partial_update(self, request, *args, **kwargs):
        order = self.get_object()
        serializer = OrderUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        changed = services.update_order(order, serializer.validated_data["updates"], request.user)
        order = self.get_queryset().get(pk=order.pk)
        return Response({"changed_fields": changed, "order": OrderSerializer(order).data})

    @action(detail=True, methods=["post"], url_path="status")
    def change_status(self, request, pk=None):
        order = self.get_object()
        serializer = OrderStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        services.change_status(order, serializer.validated_data["field"], serializer.validated_data["value"], request.user)
        return Response(OrderSerializer(order).data)

    @action(detail=True, methods=["get"], url_path="receipt")
    def receipt(self, request, pk=None):
        order = self.get_object()
        text = services.render_receipt_text(order, business_name=AppSettings.load().business_name)
        response = HttpResponse(text, content_type="text/plain; charset=utf-8")
        response["Content-Disposition"] = f'attachment; filename="receipt_{order.id}.txt"'
        return response

    def perform_destroy(self, instance):
        logger.info(
            "order_deleted",
            extra={"order_id": str(instance.id), "order_number": instance.order_number, "user_id": str(self.request.user.pk)},
        )
        instance.delete()
