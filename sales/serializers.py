from django.db import transaction
from rest_framework import serializers

from common.utils import to_money
from inventory.models import InventoryItem
from sales import services
from sales.models import Customer, CustomerAddress, Order, Wigger
from sales.reconciliation import validate_customer_fields


class CustomerAddressSerializer(serializers.ModelSerializer):
    class Meta:
        model = CustomerAddress
        fields = ["id", "address", "is_primary", "created_at"]
        read_only_fields = fields


class NewAddressSerializer(serializers.Serializer):
    address = serializers.CharField()
    is_primary = serializers.BooleanField(default=False)


class UpdatedAddressSerializer(serializers.Serializer):
    id = serializers.UUIDField(required=False)
    address = serializers.CharField(required=False, allow_blank=True)
    is_primary = serializers.BooleanField(default=False)


class CustomerSerializer(serializers.ModelSerializer):
    addresses = CustomerAddressSerializer(many=True, read_only=True)
    new_address = NewAddressSerializer(write_only=True, required=False)
    updated_addresses = UpdatedAddressSerializer(many=True, write_only=True, required=False)

    class Meta:
        model = Customer
        fields = [
            "id",
            "full_name",
            "email",
            "phone_number",
            "head_size",
            "addresses",
            "new_address",
            "updated_addresses",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]
        # Uniqueness is checked case-insensitively in validate().
        extra_kwargs = {"email": {"validators": []}, "phone_number": {"validators": []}}

    def validate(self, attrs):
        current = {}
        if self.instance is not None:
            current = {name: getattr(self.instance, name) for name in ("full_name", "email", "phone_number")}
        current.update({name: attrs[name] for name in ("full_name", "email", "phone_number") if name in attrs})
        errors = validate_customer_fields(current)
        if errors:
            raise serializers.ValidationError(errors)

        others = Customer.objects.all()
        if self.instance is not None:
            others = others.exclude(pk=self.instance.pk)
        if "email" in attrs:
            attrs["email"] = attrs["email"].strip().lower()
            if others.filter(email__iexact=attrs["email"]).exists():
                raise serializers.ValidationError({"email": "A customer with this email already exists."})
        if "phone_number" in attrs:
            attrs["phone_number"] = attrs["phone_number"].strip()
            if others.filter(phone_number=attrs["phone_number"]).exists():
                raise serializers.ValidationError({"phone_number": "A customer with this phone number already exists."})

        if attrs.get("new_address") and attrs.get("updated_addresses"):
            raise serializers.ValidationError("Send either new_address or updated_addresses, not both.")
        if "updated_addresses" in attrs and self.instance is None:
            raise serializers.ValidationError({"updated_addresses": "Only existing customers can rewrite addresses."})
        return attrs

    def create(self, validated_data):
        return services.create_customer(
            full_name=validated_data["full_name"],
            email=validated_data["email"],
            phone_number=validated_data["phone_number"],
            head_size=validated_data.get("head_size", ""),
            new_address=validated_data.get("new_address"),
        )

    @transaction.atomic
    def update(self, instance, validated_data):
        new_address = validated_data.pop("new_address", None)
        updated_addresses = validated_data.pop("updated_addresses", None)
        instance = super().update(instance, validated_data)
        if new_address:
            services.add_address(instance, new_address["address"], new_address.get("is_primary", False))
        if updated_addresses:
            services.replace_addresses(instance, updated_addresses)
        return instance


class PrimaryAddressSerializer(serializers.Serializer):
    address_id = serializers.UUIDField()


class WiggerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Wigger
        fields = ["id", "name", "created_at"]
        read_only_fields = ["id", "created_at"]


class OrderItemInputSerializer(serializers.Serializer):
    id = serializers.UUIDField()
    quantity = serializers.IntegerField(min_value=1)
    price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, allow_null=True)


class OrderCreateSerializer(serializers.Serializer):
    items = OrderItemInputSerializer(many=True, allow_empty=False)
    customer = serializers.PrimaryKeyRelatedField(queryset=Customer.objects.all(), required=False, allow_null=True)
    wigger = serializers.PrimaryKeyRelatedField(queryset=Wigger.objects.all(), required=False, allow_null=True)
    delivery_method = serializers.ChoiceField(choices=Order.DeliveryMethod.choices, default=Order.DeliveryMethod.PICKUP)
    delivery_charge = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, default=0)
    discount_type = serializers.ChoiceField(choices=Order.DiscountType.choices, default=Order.DiscountType.FIXED)
    discount_value = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, default=0)
    payment_status = serializers.ChoiceField(choices=Order.PaymentStatus.choices, default=Order.PaymentStatus.PENDING)
    notes = serializers.CharField(required=False, allow_blank=True, default="")

    def validate_items(self, items):
        # The unit price defaults to the item's cost price when the operator leaves it empty.
        missing = [item["id"] for item in items if item.get("price") is None]
        cost_prices = dict(InventoryItem.objects.filter(pk__in=missing).values_list("pk", "cost_price"))
        return [
            {
                "id": str(item["id"]),
                "quantity": item["quantity"],
                "price": item["price"] if item.get("price") is not None else to_money(cost_prices.get(item["id"]) or 0),
            }
            for item in items
        ]

    def validate(self, attrs):
        if attrs["discount_type"] == Order.DiscountType.PERCENTAGE and attrs["discount_value"] > 100:
            raise serializers.ValidationError({"discount_value": "Percentage discount cannot exceed 100."})
        return attrs

    def create(self, validated_data):
        return services.create_order(operator=self.context["request"].user, **validated_data)


class OrderSerializer(serializers.ModelSerializer):
    customer_detail = CustomerSerializer(source="customer", read_only=True)
    wigger_name = serializers.CharField(source="wigger.name", read_only=True, default="")
    pos_operator_name = serializers.SerializerMethodField()
    applied_delivery_charge = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "customer",
            "customer_detail",
            "pos_operator",
            "pos_operator_name",
            "wigger",
            "wigger_name",
            "items",
            "order_status",
            "payment_status",
            "delivery_method",
            "amount",
            "vat_rate",
            "vat_amount",
            "discount_type",
            "discount_value",
            "discount_amount",
            "delivery_charge",
            "applied_delivery_charge",
            "total_amount",
            "notes",
            "status_history",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_pos_operator_name(self, obj):
        operator = obj.pos_operator
        if operator is None:
            return ""
        return operator.full_name or operator.username


class OrderUpdateSerializer(serializers.Serializer):
    updates = serializers.DictField()


class OrderStatusSerializer(serializers.Serializer):
    field = serializers.ChoiceField(choices=["order_status", "payment_status"])
    value = serializers.CharField()

    def validate(self, attrs):
        choices = services.STATUS_FIELDS[attrs["field"]]
        if attrs["value"] not in choices.values:
            raise serializers.ValidationError({"value": f"'{attrs['value']}' is not a valid {attrs['field']}."})
        return attrs
