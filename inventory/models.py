import uuid

from django.db import models


class AttributeCategory(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    title = models.CharField(max_length=255, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["title"]
        verbose_name_plural = "attribute categories"

    def __str__(self):
        return self.title


class AttributeItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # Deleting a category removes its items; inventory links to them go with the through rows.
    category = models.ForeignKey(AttributeCategory, on_delete=models.CASCADE, related_name="items", null=True, blank=True)
    name = models.CharField(max_length=255)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["category", "name"], name="attribute_item_category_idx"),
        ]

    def __str__(self):
        if self.category_id:
            return f"{self.category.title}: {self.name}"
        return self.name


class Supplier(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    contact_person = models.CharField(max_length=255, blank=True)
    email = models.EmailField(blank=True)
    phone_number = models.CharField(max_length=64, blank=True)
    address = models.TextField(blank=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class InventoryItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    quantity = models.PositiveIntegerField(default=0)
    cost_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    supplier = models.ForeignKey(Supplier, on_delete=models.SET_NULL, null=True, blank=True, related_name="inventory_items")
    attributes = models.ManyToManyField(
        AttributeItem,
        through="InventoryItemAttribute",
        related_name="inventory_items",
        blank=True,
    )
    last_stocked_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["quantity"], name="inventory_item_quantity_idx"),
            models.Index(fields=["last_stocked_at"], name="inventory_item_stocked_idx"),
        ]

    def ordered_attributes(self):
        """Attributes in the order they were assigned, with categories joined."""
        return [
            link.attribute_item
            for link in self.attribute_links.select_related("attribute_item__category").order_by("position")
        ]

    def __str__(self):
        from inventory.search import display_name

        return display_name(self)


class InventoryItemAttribute(models.Model):
    inventory_item = models.ForeignKey(InventoryItem, on_delete=models.CASCADE, related_name="attribute_links")
    attribute_item = models.ForeignKey(AttributeItem, on_delete=models.CASCADE, related_name="inventory_links")
    position = models.PositiveSmallIntegerField(default=0)

    class Meta:
        ordering = ["position"]
        constraints = [
            models.UniqueConstraint(
                fields=["inventory_item", "attribute_item"],
                name="inventory_item_attribute_unique",
            )
        ]
