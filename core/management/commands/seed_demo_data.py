from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from core.models import AppSettings
from inventory.models import AttributeCategory, AttributeItem, InventoryItem, InventoryItemAttribute, Supplier
from inventory.search import display_name
from sales import services
from sales.models import Customer, CustomerAddress, Order, Wigger

DEMO_USERS = [
    ("owner", "owner@example.com", "Shop Owner", "SUPER_ADMIN", "owner1234"),
    ("manager", "manager@example.com", "Store Manager", "ADMIN", "manager1234"),
    ("till", "till@example.com", "Till Operator", "ORDER_OPERATOR", "till1234"),
]

DEMO_ATTRIBUTES = {
    "Length": ["14in", "18in", "24in"],
    "Colour": ["Jet Black", "Honey Blonde"],
    "Texture": ["Body Wave", "Straight"],
}

DEMO_STOCK = [
    (("14in", "Jet Black", "Straight"), 25, "45.00"),
    (("18in", "Honey Blonde", "Body Wave"), 8, "70.00"),
    (("24in", "Jet Black", "Body Wave"), 3, "110.00"),
]


class Command(BaseCommand):
    help = "Seed demo users, settings, inventory, customers and orders for local development."

    @transaction.atomic
    def handle(self, *args, **options):
        User = get_user_model()

        users = {}
        for username, email, full_name, role, password in DEMO_USERS:
            user, created = User.objects.get_or_create(
                username=username,
                defaults={"email": email, "full_name": full_name, "role": role, "is_active": True},
            )
            if created:
                user.set_password(password)
                user.save(update_fields=["password"])
            users[role] = user

        app_settings = AppSettings.load()
        if not app_settings.business_name:
            app_settings.business_name = "Crown Wigs"
            app_settings.save(update_fields=["business_name", "updated_at"])

        attributes = {}
        for title, names in DEMO_ATTRIBUTES.items():
            category, _ = AttributeCategory.objects.get_or_create(title=title)
            for name in names:
                attributes[name], _ = AttributeItem.objects.get_or_create(category=category, name=name)

        supplier, _ = Supplier.objects.get_or_create(
            name="Silk Road Hair",
            defaults={"contact_person": "Mariam", "email": "orders@silkroadhair.example", "phone_number": "+201000000100"},
        )

        items = []
        for labels, quantity, cost_price in DEMO_STOCK:
            wanted = [attributes[label] for label in labels]
            existing = next(
                (
                    item
                    for item in InventoryItem.objects.prefetch_related("attribute_links")
                    if [link.attribute_item_id for link in sorted(item.attribute_links.all(), key=lambda link: link.position)]
                    == [attribute.pk for attribute in wanted]
                ),
                None,
            )
            if existing is None:
                existing = InventoryItem.objects.create(quantity=quantity, cost_price=Decimal(cost_price), supplier=supplier)
                InventoryItemAttribute.objects.bulk_create(
                    [
                        InventoryItemAttribute(inventory_item=existing, attribute_item=attribute, position=position)
                        for position, attribute in enumerate(wanted)
                    ]
                )
            items.append(existing)

        wigger, _ = Wigger.objects.get_or_create(name="Lola Styles")

        customer, created = Customer.objects.get_or_create(
            email="amina@example.com",
            defaults={"full_name": "Amina Yusuf", "phone_number": "+201000000001", "head_size": "22.5in"},
        )
        if created:
            CustomerAddress.objects.create(customer=customer, address="12 Nile Corniche, Cairo", is_primary=True)

        if not Order.objects.exists():
            services.create_order(
                operator=users["ORDER_OPERATOR"],
                customer=customer,
                wigger=wigger,
                items=[{"id": str(items[0].id), "quantity": 1, "price": "95.00"}],
                delivery_method=Order.DeliveryMethod.DELIVERY,
                delivery_charge=Decimal("7.50"),
            )
            services.create_order(
                operator=users["ORDER_OPERATOR"],
                items=[{"id": str(items[1].id), "quantity": 2, "price": "140.00"}],
                discount_type=Order.DiscountType.PERCENTAGE,
                discount_value=Decimal("10"),
                payment_status=Order.PaymentStatus.PAID,
            )

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write("Credentials: " + ", ".join(f"{username}/{password}" for username, _, _, _, password in DEMO_USERS))
        for item in items:
            item.refresh_from_db(fields=["quantity"])
            self.stdout.write(f"Stock: {display_name(item)} x{item.quantity}")
