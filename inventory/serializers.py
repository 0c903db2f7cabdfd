from django.db import transaction
from django.utils import timezone
from rest_framework import serializers

from inventory.models import (
    AttributeCategory,
    AttributeItem,
    InventoryItem,
    InventoryItemAttribute,
    Supplier,
)
from inventory.search import display_name


class AttributeItemSerializer(serializers.ModelSerializer):
    category_title = serializers.CharField(source="category.title", read_only=True, default="")

    class Meta:
        model = AttributeItem
        fields = ["id", "category", "category_title", "name", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class AttributeCategorySerializer(serializers.ModelSerializer):
    items = AttributeItemSerializer(many=True, read_only=True)

    class Meta:
        model = AttributeCategory
        fields = ["id", "title", "items", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class SupplierSerializer(serializers.ModelSerializer):
    class Meta:
        model = Supplier
        fields = [
            "id",
            "name",
            "contact_person",
            "email",
            "phone_number",
            "address",
            "notes",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]


class InventoryItemSerializer(serializers.ModelSerializer):
    attributes = serializers.PrimaryKeyRelatedField(
        queryset=AttributeItem.objects.all(),
        many=True,
        write_only=True,
        required=False,
    )
    attribute_details = serializers.SerializerMethodField()
    display_name = serializers.SerializerMethodField()
    supplier_name = serializers.CharField(source="supplier.name", read_only=True, default="")

    class Meta:
        model = InventoryItem
        fields = [
            "id",
            "display_name",
            "quantity",
            "cost_price",
            "supplier",
            "supplier_name",
            "attributes",
            "attribute_details",
            "last_stocked_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "last_stocked_at", "created_at", "updated_at"]

    def get_display_name(self, obj):
        return display_name(obj)

    def get_attribute_details(self, obj):
        links = sorted(obj.attribute_links.all(), key=lambda link: link.position)
        return AttributeItemSerializer([link.attribute_item for link in links], many=True).data

    def validate(self, attrs):
        # Form submissions send empty strings for the optional relations.
        for field_name in ("supplier", "cost_price"):
            if self.initial_data.get(field_name, None) == "":
                attrs[field_name] = None

        attributes = attrs.get("attributes")
        if attributes is not None:
            if not attributes:
                raise serializers.ValidationError({"attributes": "A sellable item needs at least one attribute."})
            if len({attribute.pk for attribute in attributes}) != len(attributes):
                raise serializers.ValidationError({"attributes": "Attributes must not repeat."})
        elif self.instance is None:
            raise serializers.ValidationError({"attributes": "A sellable item needs at least one attribute."})
        return attrs

    def _set_attributes(self, instance, attributes):
        InventoryItemAttribute.objects.filter(inventory_item=instance).delete()
        InventoryItemAttribute.objects.bulk_create(
            [
                InventoryItemAttribute(inventory_item=instance, attribute_item=attribute, position=position)
                for position, attribute in enumerate(attributes)
            ]
        )

    @transaction.atomic
    def create(self, validated_data):
        attributes = validated_data.pop("attributes")
        validated_data["last_stocked_at"] = timezone.now()
        instance = InventoryItem.objects.create(**validated_data)
        self._set_attributes(instance, attributes)
        return instance

    @transaction.atomic
    def update(self, instance, validated_data):
        attributes = validated_data.pop("attributes", None)
        previous_quantity = instance.quantity
        for field, value in validated_data.items():
            setattr(instance, field, value)
        if instance.quantity > previous_quantity:
            instance.last_stocked_at = timezone.now()
        instance.save()
        if attributes is not None:
            self._set_attributes(instance, attributes)
        return instance
