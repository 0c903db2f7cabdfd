import logging

from django.conf import settings
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.permissions import RoleCapabilityPermission
from inventory.models import AttributeCategory, AttributeItem, InventoryItem, Supplier
from inventory.search import build_inventory_rows, search_inventory
from inventory.serializers import (
    AttributeCategorySerializer,
    AttributeItemSerializer,
    InventoryItemSerializer,
    SupplierSerializer,
)

logger = logging.getLogger(__name__)

READ_ACTIONS = ("list", "retrieve")
WRITE_ACTIONS = ("create", "update", "partial_update", "destroy")


def inventory_permission_map(*extra_read, **extra):
    mapping = {name: "inventory.view" for name in READ_ACTIONS + extra_read}
    mapping.update({name: "inventory.manage" for name in WRITE_ACTIONS})
    mapping.update(extra)
    return mapping


class AttributeCategoryViewSet(viewsets.ModelViewSet):
    queryset = AttributeCategory.objects.prefetch_related("items")
    serializer_class = AttributeCategorySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = inventory_permission_map(items="inventory.view", add_item="inventory.manage")

    def perform_destroy(self, instance):
        removed_items = instance.items.count()
        instance.delete()
        logger.info(
            "attribute_category_deleted category=%s removed_items=%s",
            instance.title,
            removed_items,
        )

    @action(detail=True, methods=["get"], url_path="items")
    def items(self, request, pk=None):
        category = self.get_object()
        return Response(AttributeItemSerializer(category.items.all(), many=True).data)

    @items.mapping.post
    def add_item(self, request, pk=None):
        category = self.get_object()
        serializer = AttributeItemSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        serializer.save(category=category)
        return Response(serializer.data, status=status.HTTP_201_CREATED)


class AttributeItemViewSet(viewsets.ModelViewSet):
    queryset = AttributeItem.objects.select_related("category")
    serializer_class = AttributeItemSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = inventory_permission_map()

    def get_queryset(self):
        queryset = super().get_queryset()
        category_id = self.request.query_params.get("category")
        if category_id:
            queryset = queryset.filter(category_id=category_id)
        return queryset


class SupplierViewSet(viewsets.ModelViewSet):
    queryset = Supplier.objects.all()
    serializer_class = SupplierSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = inventory_permission_map()


class InventoryItemViewSet(viewsets.ModelViewSet):
    queryset = InventoryItem.objects.select_related("supplier").prefetch_related(
        "attribute_links__attribute_item__category"
    )
    serializer_class = InventoryItemSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = inventory_permission_map("search")

    def get_queryset(self):
        queryset = super().get_queryset()
        supplier_id = self.request.query_params.get("supplier")
        if supplier_id:
            queryset = queryset.filter(supplier_id=supplier_id)
        return queryset.order_by("-last_stocked_at", "id")

    def perform_create(self, serializer):
        instance = serializer.save()
        logger.info("inventory_item_created item=%s quantity=%s", instance.id, instance.quantity)

    @action(detail=False, methods=["get"], url_path="search")
    def search(self, request):
        """Search pre-joined rows by display name, supplier, quantity or price.

        Matches carry highlight ranges per field. Clients are expected to
        debounce keystrokes (see `SEARCH_DEBOUNCE_SECONDS`).
        """
        rows = build_inventory_rows(self.get_queryset())
        results = search_inventory(rows, request.query_params.get("q", ""))
        return Response(
            {
                "count": len(results),
                "debounce_seconds": settings.SEARCH_DEBOUNCE_SECONDS,
                "results": results,
            }
        )
