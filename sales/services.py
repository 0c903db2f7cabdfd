import logging
import time
from collections import Counter

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from common.exceptions import EditNotPermitted, FieldValidationError, InvalidTransition
from common.permissions import get_user_role
from common.utils import to_decimal, to_json_compatible, to_money
from core.models import AppSettings, User
from inventory.models import InventoryItem
from inventory.search import display_name
from sales.models import Customer, CustomerAddress, Order, Wigger
from sales.pricing import compute_order_totals, resolve_discount_amount, validate_line_items
from sales.reconciliation import OutcomeKind, validate_customer_fields

logger = logging.getLogger(__name__)

EDITABLE_ORDER_FIELDS = ("customer", "delivery_method", "delivery_charge", "notes", "wigger")
STATUS_FIELDS = {
    "order_status": Order.OrderStatus,
    "payment_status": Order.PaymentStatus,
}


def generate_order_number():
    millis = int(time.time() * 1000)
    while Order.objects.filter(order_number=f"ORD-{millis}").exists():
        millis += 1
    return f"ORD-{millis}"


def find_customers(field, query):
    """Exact lookup by email (case-insensitive) or phone number."""
    queryset = Customer.objects.prefetch_related("addresses")
    if field == "email":
        return list(queryset.filter(email__iexact=query.strip()))
    if field == "phone_number":
        return list(queryset.filter(phone_number=query.strip()))
    raise FieldValidationError({"field": "Search by email or phone number."})


def _history_entry(field, previous, value, actor):
    return {
        "field": field,
        "from": previous,
        "to": value,
        "changed_by": str(actor.pk) if actor is not None else None,
        "changed_at": timezone.now().isoformat(),
    }


@transaction.atomic
def create_order(
    *,
    operator,
    items,
    customer=None,
    wigger=None,
    delivery_method=Order.DeliveryMethod.PICKUP,
    delivery_charge=0,
    discount_type=Order.DiscountType.FIXED,
    discount_value=0,
    notes="",
    payment_status=Order.PaymentStatus.PENDING,
):
    """Create an order from `{id, quantity, price}` lines and take the stock.

    Totals are always computed here from the lines; VAT comes from AppSettings.
    """
    if not items:
        raise FieldValidationError({"items": "An order needs at least one item."})
    line_items = validate_line_items(items)

    requested = Counter()
    for item, line in zip(items, line_items):
        if line.quantity != line.quantity.to_integral_value() or line.quantity < 1:
            raise FieldValidationError({"items": "Quantities must be whole numbers of at least 1."})
        requested[str(item["id"])] += int(line.quantity)

    stock = {
        str(inventory_item.pk): inventory_item
        for inventory_item in InventoryItem.objects.select_for_update()
        .filter(pk__in=list(requested))
        .prefetch_related("attribute_links__attribute_item__category")
    }
    errors = {}
    for item_id, quantity in requested.items():
        inventory_item = stock.get(item_id)
        if inventory_item is None:
            errors[item_id] = "Inventory item not found."
        elif quantity > inventory_item.quantity:
            errors[item_id] = f"Only {inventory_item.quantity} in stock."
    if errors:
        raise FieldValidationError({"items": errors}, message="Some items cannot be fulfilled.")

    for item_id, quantity in requested.items():
        InventoryItem.objects.filter(pk=item_id).update(quantity=F("quantity") - quantity)

    snapshot = [
        {
            "id": str(item["id"]),
            "name": display_name(stock[str(item["id"])]),
            "quantity": int(line.quantity),
            "price": str(to_money(line.price)),
        }
        for item, line in zip(items, line_items)
    ]

    vat_rate = AppSettings.load().vat_rate
    subtotal = sum((line.line_total for line in line_items), to_decimal(0))
    discount_amount = resolve_discount_amount(subtotal, discount_type, discount_value)
    totals = compute_order_totals(
        line_items,
        discount=discount_amount,
        delivery_method=delivery_method,
        delivery_charge=delivery_charge,
        vat_rate=vat_rate,
    )

    order = Order.objects.create(
        order_number=generate_order_number(),
        customer=customer,
        pos_operator=operator,
        wigger=wigger,
        items=snapshot,
        delivery_method=delivery_method,
        discount_type=discount_type or Order.DiscountType.FIXED,
        discount_value=to_money(discount_value),
        notes=notes or "",
        payment_status=payment_status,
        status_history=[_history_entry("order_status", None, Order.OrderStatus.CREATED, operator)],
        **{**totals.as_dict(), "delivery_charge": to_money(delivery_charge)},
    )
    logger.info(
        "order_created",
        extra={
            "order_id": str(order.id),
            "order_number": order.order_number,
            "customer_id": str(order.customer_id) if order.customer_id else None,
            "user_id": str(operator.pk) if operator is not None else None,
        },
    )
    return order


def _clear_primary(customer):
    CustomerAddress.objects.filter(customer=customer, is_primary=True).update(is_primary=False)


@transaction.atomic
def add_address(customer, address, is_primary=False):
    text = (address or "").strip()
    if not text:
        raise FieldValidationError({"new_address": "Address cannot be empty."})
    if not customer.addresses.exists():
        is_primary = True
    if is_primary:
        _clear_primary(customer)
    return CustomerAddress.objects.create(customer=customer, address=text, is_primary=is_primary)


@transaction.atomic
def replace_addresses(customer, addresses):
    """Rewrite a customer's address list so exactly one entry is primary.

    Entries with an `id` update that address, entries without one are created.
    Addresses are never deleted.
    """
    primaries = [entry for entry in addresses if entry.get("is_primary")]
    if len(primaries) != 1:
        raise FieldValidationError({"updated_addresses": "Exactly one address must be primary."})

    existing = {str(address.pk): address for address in customer.addresses.select_for_update()}
    _clear_primary(customer)
    primary = None
    for entry in addresses:
        address_id = entry.get("id")
        if address_id:
            address = existing.get(str(address_id))
            if address is None:
                raise FieldValidationError({"updated_addresses": f"Unknown address {address_id}."})
            if entry.get("address"):
                address.address = entry["address"].strip()
                address.save(update_fields=["address"])
        else:
            text = (entry.get("address") or "").strip()
            if not text:
                raise FieldValidationError({"updated_addresses": "Address cannot be empty."})
            address = CustomerAddress.objects.create(customer=customer, address=text)
        if entry.get("is_primary"):
            primary = address
    CustomerAddress.objects.filter(pk=primary.pk).update(is_primary=True)
    return primary


@transaction.atomic
def set_primary_address(customer, address_id):
    """Make one address primary and every sibling non-primary in one transaction."""
    address = customer.addresses.select_for_update().filter(pk=address_id).first()
    if address is None:
        raise FieldValidationError({"address_id": "Address does not belong to this customer."})
    _clear_primary(customer)
    CustomerAddress.objects.filter(pk=address.pk).update(is_primary=True)
    address.is_primary = True
    return address


@transaction.atomic
def create_customer(*, full_name, email, phone_number, head_size="", new_address=None):
    data = {"full_name": full_name, "email": email, "phone_number": phone_number}
    errors = validate_customer_fields(data)
    if errors:
        raise FieldValidationError(errors)
    email = email.strip().lower()
    phone_number = phone_number.strip()
    duplicates = {}
    if Customer.objects.filter(email__iexact=email).exists():
        duplicates["email"] = "A customer with this email already exists."
    if Customer.objects.filter(phone_number=phone_number).exists():
        duplicates["phone_number"] = "A customer with this phone number already exists."
    if duplicates:
        raise FieldValidationError(duplicates)
    try:
        customer = Customer.objects.create(
            full_name=full_name.strip(),
            email=email,
            phone_number=phone_number,
            head_size=(head_size or "").strip(),
        )
    except IntegrityError:
        raise FieldValidationError({"email": "A customer with this email or phone number already exists."})
    if new_address and (new_address.get("address") or "").strip():
        add_address(customer, new_address["address"], is_primary=True)
    return customer


@transaction.atomic
def apply_reconciliation(outcome):
    """Persist a reconciliation outcome and return the customer it resolved to."""
    if outcome.kind is OutcomeKind.NEW_CUSTOMER:
        new_address = outcome.new_address.as_payload() if outcome.new_address else None
        customer = create_customer(**outcome.customer, new_address=new_address)
    else:
        customer = Customer.objects.filter(pk=outcome.customer_id).first()
        if customer is None:
            raise FieldValidationError({"customer": "Customer no longer exists."})
        if outcome.kind is OutcomeKind.EXISTING_ADD_ADDRESS:
            add_address(customer, outcome.new_address.address, outcome.new_address.is_primary)
        elif outcome.kind is OutcomeKind.EXISTING_REPLACE_ADDRESSES:
            replace_addresses(customer, [dict(entry) for entry in outcome.addresses])

    logger.info(
        "customer_reconciled kind=%s",
        outcome.kind.value,
        extra={"customer_id": str(customer.pk)},
    )
    return customer


def _ensure_can_edit(actor):
    if get_user_role(actor) != User.Role.SUPER_ADMIN:
        raise EditNotPermitted("Only a super admin can edit orders.")


def _resolve_relation(model, value, field):
    if value in (None, ""):
        return None
    if isinstance(value, model):
        return value
    instance = model.objects.filter(pk=value).first()
    if instance is None:
        raise FieldValidationError({field: f"Unknown {field}."})
    return instance


def _recalculate_totals(order):
    totals = compute_order_totals(
        order.items,
        discount=order.discount_amount,
        delivery_method=order.delivery_method,
        delivery_charge=order.delivery_charge,
        vat_rate=order.vat_rate,
    )
    values = totals.as_dict()
    for name in ("amount", "vat_amount", "discount_amount", "total_amount"):
        setattr(order, name, values[name])


@transaction.atomic
def update_order(order, updates, actor):
    """Apply only the fields that differ from the stored order.

    Returns the list of fields that changed. Line items are frozen after
    creation and cannot be part of `updates`.
    """
    _ensure_can_edit(actor)
    unknown = set(updates) - set(EDITABLE_ORDER_FIELDS)
    if unknown:
        raise FieldValidationError({name: "This field cannot be edited." for name in sorted(unknown)})

    changed = []
    if "customer" in updates:
        customer = _resolve_relation(Customer, updates["customer"], "customer")
        if (customer.pk if customer else None) != order.customer_id:
            order.customer = customer
            changed.append("customer")
    if "wigger" in updates:
        wigger = _resolve_relation(Wigger, updates["wigger"], "wigger")
        if (wigger.pk if wigger else None) != order.wigger_id:
            order.wigger = wigger
            changed.append("wigger")
    if "notes" in updates and (updates["notes"] or "") != order.notes:
        order.notes = updates["notes"] or ""
        changed.append("notes")
    if "delivery_method" in updates and updates["delivery_method"] != order.delivery_method:
        if updates["delivery_method"] not in Order.DeliveryMethod.values:
            raise FieldValidationError({"delivery_method": "Choose pickup or delivery."})
        order.delivery_method = updates["delivery_method"]
        changed.append("delivery_method")
    if "delivery_charge" in updates:
        charge = to_money(updates["delivery_charge"] or 0)
        if charge < 0:
            raise FieldValidationError({"delivery_charge": "Delivery charge must not be negative."})
        if charge != order.delivery_charge:
            order.delivery_charge = charge
            changed.append("delivery_charge")

    if not changed:
        return changed

    update_fields = [name for name in changed]
    if {"delivery_method", "delivery_charge"} & set(changed):
        _recalculate_totals(order)
        update_fields += ["amount", "vat_amount", "discount_amount", "total_amount"]
    order.save(update_fields=sorted(set(update_fields)) + ["updated_at"])
    logger.info(
        "order_updated",
        extra={
            "order_id": str(order.id),
            "order_number": order.order_number,
            "user_id": str(actor.pk),
            "changed_fields": changed,
        },
    )
    return changed


@transaction.atomic
def change_status(order, field, value, actor):
    choices = STATUS_FIELDS.get(field)
    if choices is None:
        raise FieldValidationError({"field": "Use order_status or payment_status."})
    if value not in choices.values:
        raise FieldValidationError({"value": f"'{value}' is not a valid {field}."})
    previous = getattr(order, field)
    if previous == value:
        raise InvalidTransition(f"Order is already {value}.")

    setattr(order, field, value)
    order.status_history = list(order.status_history or []) + [_history_entry(field, previous, value, actor)]
    order.save(update_fields=[field, "status_history", "updated_at"])
    logger.info(
        "order_status_changed field=%s from=%s to=%s",
        field,
        previous,
        value,
        extra={"order_id": str(order.id), "order_number": order.order_number, "user_id": str(actor.pk)},
    )
    return order


def render_receipt_text(order, business_name=""):
    width = 40
    lines = []
    if business_name:
        lines.append(business_name.center(width).rstrip())
    lines.append("RECEIPT".center(width).rstrip())
    lines.append("=" * width)
    lines.append(f"Order: {order.order_number}")
    lines.append(f"Date: {timezone.localtime(order.created_at):%Y-%m-%d %H:%M}")
    if order.customer_id:
        lines.append(f"Customer: {order.customer.full_name}")
        lines.append(f"Phone: {order.customer.phone_number}")
    if order.pos_operator_id:
        lines.append(f"Served by: {order.pos_operator.full_name or order.pos_operator.username}")
    lines.append(f"Delivery: {order.delivery_method}")
    lines.append("-" * width)
    for item in order.items:
        quantity = int(item.get("quantity", 0))
        price = to_money(item.get("price"))
        line_total = to_money(quantity * price)
        lines.append(item.get("name") or item.get("id", ""))
        lines.append(f"  {quantity} x {price}".ljust(width - 12) + f"{line_total:>12}")
    lines.append("-" * width)

    def money_row(label, amount):
        return label.ljust(width - 12) + f"{to_money(amount):>12}"

    lines.append(money_row("Subtotal", order.amount))
    lines.append(money_row(f"VAT ({to_money(to_decimal(order.vat_rate) * 100)}%)", order.vat_amount))
    if order.discount_amount:
        lines.append(money_row("Discount", -order.discount_amount))
    if order.delivery_method == Order.DeliveryMethod.DELIVERY:
        lines.append(money_row("Delivery", order.applied_delivery_charge))
    lines.append(money_row("TOTAL", order.total_amount))
    lines.append("=" * width)
    lines.append(f"Payment: {order.payment_status}")
    if order.notes:
        lines.append(f"Notes: {order.notes}")
    lines.append("Thank you for your purchase!")
    return "\n".join(lines) + "\n"


def order_snapshot(order):
    """Plain-data view of an order used by the detail editor."""
    return to_json_compatible(
        {
            "id": order.id,
            "order_number": order.order_number,
            "customer": order.customer_id,
            "delivery_method": order.delivery_method,
            "delivery_charge": order.delivery_charge,
            "notes": order.notes,
            "wigger": order.wigger_id,
            "order_status": order.order_status,
            "payment_status": order.payment_status,
        }
    )
