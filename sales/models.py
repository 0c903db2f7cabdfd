import uuid
from decimal import Decimal

from django.db import models
from django.db.models import Q

from core.models import User


class Wigger(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class Customer(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    full_name = models.CharField(max_length=255)
    email = models.EmailField(unique=True)
    phone_number = models.CharField(max_length=64, unique=True)
    head_size = models.CharField(max_length=64, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["full_name"], name="customer_full_name_idx"),
        ]

    def save(self, *args, **kwargs):
        if self.email:
            self.email = self.email.strip().lower()
        if self.phone_number:
            self.phone_number = self.phone_number.strip()
        super().save(*args, **kwargs)

    def __str__(self):
        return self.full_name


class CustomerAddress(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer = models.ForeignKey(Customer, on_delete=models.CASCADE, related_name="addresses")
    address = models.TextField()
    is_primary = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["customer"],
                condition=Q(is_primary=True),
                name="uniq_customer_primary_address",
            )
        ]

    def __str__(self):
        return self.address


class Order(models.Model):
    class OrderStatus(models.TextChoices):
        CREATED = "CREATED", "Created"
        IN_PROGRESS = "IN PROGRESS", "In progress"
        COMPLETED = "COMPLETED", "Completed"
        DISPATCHED = "DISPATCHED", "Dispatched"
        DELIVERED = "DELIVERED", "Delivered"
        CANCELLED = "CANCELLED", "Cancelled"
        RETURNED = "RETURNED", "Returned"

    class PaymentStatus(models.TextChoices):
        PENDING = "PENDING", "Pending"
        PAID = "PAID", "Paid"

    class DeliveryMethod(models.TextChoices):
        PICKUP = "pickup", "Pickup"
        DELIVERY = "delivery", "Delivery"

    class DiscountType(models.TextChoices):
        FIXED = "fixed", "Fixed"
        PERCENTAGE = "percentage", "Percentage"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_number = models.CharField(max_length=64, unique=True)
    customer = models.ForeignKey(Customer, on_delete=models.SET_NULL, null=True, blank=True, related_name="orders")
    pos_operator = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name="created_orders")
    wigger = models.ForeignKey(Wigger, on_delete=models.SET_NULL, null=True, blank=True, related_name="orders")
    items = models.JSONField(default=list)
    order_status = models.CharField(max_length=16, choices=OrderStatus, default=OrderStatus.CREATED)
    payment_status = models.CharField(max_length=16, choices=PaymentStatus, default=PaymentStatus.PENDING)
    delivery_method = models.CharField(max_length=16, choices=DeliveryMethod, default=DeliveryMethod.PICKUP)
    amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    vat_rate = models.DecimalField(max_digits=5, decimal_places=4, default=Decimal("0.2000"))
    vat_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    discount_type = models.CharField(max_length=16, choices=DiscountType, default=DiscountType.FIXED)
    discount_value = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    delivery_charge = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    notes = models.TextField(blank=True)
    status_history = models.JSONField(default=list, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["created_at"], name="order_created_idx"),
            models.Index(fields=["order_status", "created_at"], name="order_status_created_idx"),
            models.Index(fields=["payment_status", "created_at"], name="order_payment_created_idx"),
        ]

    @property
    def applied_delivery_charge(self):
        # `delivery_charge` keeps the entered charge even while the order is set to pickup.
        if self.delivery_method == self.DeliveryMethod.DELIVERY:
            return self.delivery_charge
        return Decimal("0.00")

    def __str__(self):
        return self.order_number
