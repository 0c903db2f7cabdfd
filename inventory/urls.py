from rest_framework.routers import DefaultRouter

from inventory.views import (
    AttributeCategoryViewSet,
    AttributeItemViewSet,
    InventoryItemViewSet,
    SupplierViewSet,
)

router = DefaultRouter()
router.register(r"attribute-categories", AttributeCategoryViewSet, basename="attribute-category")
router.register(r"attribute-items", AttributeItemViewSet, basename="attribute-item")
router.register(r"suppliers", SupplierViewSet, basename="supplier")
router.register(r"inventory-items", InventoryItemViewSet, basename="inventory-item")

urlpatterns = router.urls
