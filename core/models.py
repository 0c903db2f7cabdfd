import uuid
from decimal import Decimal

from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q
from django.db.models.functions import Lower


class User(AbstractUser):
    class Role(models.TextChoices):
        SUPER_ADMIN = "SUPER_ADMIN", "Super admin"
        ADMIN = "ADMIN", "Admin"
        ORDER_OPERATOR = "ORDER_OPERATOR", "Order operator"

    # Older clients still send the POS operator spelling.
    ROLE_ALIASES = {"POS_OPERATOR": Role.ORDER_OPERATOR}

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email = models.EmailField(blank=True)
    full_name = models.CharField(max_length=255, blank=True)
    role = models.CharField(max_length=32, choices=Role, default=Role.ORDER_OPERATOR)
    requires_password_reset = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta(AbstractUser.Meta):
        constraints = [
            models.UniqueConstraint(
                Lower("email"),
                condition=~Q(email=""),
                name="core_user_email_ci_unique",
            )
        ]

    @classmethod
    def normalize_role(cls, role):
        if not role:
            return role
        value = str(role).strip().upper().replace(" ", "_")
        return cls.ROLE_ALIASES.get(value, value)

    def save(self, *args, **kwargs):
        if self.email:
            self.email = self.email.strip().lower()
        self.role = self.normalize_role(self.role)
        super().save(*args, **kwargs)

    def __str__(self):
        return self.full_name or self.username


class AppSettings(models.Model):
    """Install-wide configuration. There is only ever one row (pk=1)."""

    SINGLETON_PK = 1

    id = models.PositiveSmallIntegerField(primary_key=True, default=SINGLETON_PK, editable=False)
    business_name = models.CharField(max_length=255, blank=True)
    business_logo = models.TextField(blank=True)
    vat_rate = models.DecimalField(
        max_digits=5,
        decimal_places=4,
        default=Decimal("0.2000"),
        validators=[MinValueValidator(Decimal("0")), MaxValueValidator(Decimal("1"))],
    )
    low_stock_threshold = models.PositiveIntegerField(default=10)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "app settings"
        verbose_name_plural = "app settings"

    def save(self, *args, **kwargs):
        self.pk = self.SINGLETON_PK
        super().save(*args, **kwargs)

    @classmethod
    def load(cls):
        instance, _ = cls.objects.get_or_create(
            pk=cls.SINGLETON_PK,
            defaults={
                "vat_rate": settings.DEFAULT_VAT_RATE,
                "low_stock_threshold": settings.DEFAULT_LOW_STOCK_THRESHOLD,
            },
        )
        return instance

    def __str__(self):
        return self.business_name or "App settings"
