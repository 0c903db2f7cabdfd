from datetime import date, datetime, timedelta
from datetime import timezone as dt_timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.test import SimpleTestCase, TestCase
from rest_framework.test import APIClient

from common.exceptions import EditNotPermitted, FieldValidationError, InvalidTransition
from inventory.models import AttributeCategory, AttributeItem, InventoryItem, InventoryItemAttribute
from sales import services
from sales.editor import OrderDetailEditor, ServiceGateway, StatusControl
from sales.filters import OrderBrowser, OrderFilterCriteria, filter_orders, filter_queryset, paginate
from sales.models import Customer, CustomerAddress, Order, Wigger
from sales.pricing import compute_order_totals, resolve_discount_amount, validate_line_items
from sales.reconciliation import (
    AddingAddress,
    NewCustomerDraft,
    OutcomeKind,
    ReconciliationSession,
    Selected,
    Viewing,
)
from sales.serializers import OrderSerializer

UTC = dt_timezone.utc
User = get_user_model()


class PricingTests(SimpleTestCase):
    items = [{"quantity": 2, "price": 10}, {"quantity": 1, "price": 5}]

    def test_pickup_example(self):
        totals = compute_order_totals(self.items, vat_rate=Decimal("0.20"))

        self.assertEqual(totals.subtotal, Decimal("25.00"))
        self.assertEqual(totals.vat_amount, Decimal("5.00"))
        self.assertEqual(totals.total_amount, Decimal("30.00"))

    def test_delivery_example_adds_charge(self):
        totals = compute_order_totals(self.items, delivery_method="delivery", delivery_charge="7.5")

        self.assertEqual(totals.total_amount, Decimal("37.50"))
        self.assertEqual(totals.delivery_charge, Decimal("7.50"))

    def test_pickup_ignores_delivery_charge(self):
        totals = compute_order_totals(self.items, discount="3", delivery_method="pickup", delivery_charge="7.5")

        self.assertEqual(totals.delivery_charge, Decimal("0.00"))
        self.assertEqual(totals.total_amount, Decimal("27.00"))

    def test_total_matches_closed_form(self):
        cases = [
            ([{"quantity": 3, "price": "19.99"}], "2.50", "4.00", "0.15"),
            ([{"quantity": 1, "price": "0.33"}, {"quantity": 7, "price": "1.10"}], "0", "12.00", "0.20"),
        ]
        for items, discount, charge, rate in cases:
            subtotal = sum(Decimal(str(item["quantity"])) * Decimal(item["price"]) for item in items)
            expected = subtotal * (1 + Decimal(rate)) - Decimal(discount)
            pickup = compute_order_totals(items, discount, "pickup", charge, rate)
            delivery = compute_order_totals(items, discount, "delivery", charge, rate)

            self.assertEqual(pickup.total_amount, expected.quantize(Decimal("0.01")))
            self.assertEqual(delivery.total_amount, (expected + Decimal(charge)).quantize(Decimal("0.01")))

    def test_validate_line_items_reports_each_bad_field(self):
        with self.assertRaises(FieldValidationError) as ctx:
            validate_line_items([{"quantity": 1, "price": "-1"}, {"quantity": "abc", "price": 2}])

        self.assertIn("items[0].price", ctx.exception.errors)
        self.assertIn("items[1].quantity", ctx.exception.errors)

    def test_percentage_discount_is_taken_from_subtotal(self):
        self.assertEqual(resolve_discount_amount(Decimal("80"), "percentage", "25"), Decimal("20"))
        self.assertEqual(resolve_discount_amount(Decimal("80"), "fixed", "5"), Decimal("5"))

        with self.assertRaises(FieldValidationError):
            resolve_discount_amount(Decimal("80"), "percentage", "120")
        with self.assertRaises(FieldValidationError):
            resolve_discount_amount(Decimal("80"), "fixed", "-1")


def _order(number, created_at, **extra):
    order = {
        "id": number,
        "order_number": number,
        "payment_status": "PENDING",
        "delivery_method": "pickup",
        "order_status": "CREATED",
        "customer": {"full_name": ""},
        "wigger": None,
        "pos_operator": None,
        "created_at": created_at,
        "updated_at": created_at,
    }
    order.update(extra)
    return order


class OrderFilterTests(SimpleTestCase):
    def setUp(self):
        base = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)
        self.orders = [
            _order("ORD-1", base, payment_status="PAID", customer={"full_name": "Amina Yusuf"}),
            _order("ORD-2", base + timedelta(days=1), delivery_method="delivery"),
            _order("ORD-3", base - timedelta(days=1), wigger_name="Lola", customer={"full_name": "Ben Amin"}),
            _order("ORD-4", datetime(2024, 3, 11, 23, 59, 59, 500000, tzinfo=UTC), payment_status="PAID"),
        ]

    def test_empty_filter_returns_everything_newest_first(self):
        result = filter_orders(self.orders, OrderFilterCriteria(), tz=UTC)

        self.assertEqual([order["order_number"] for order in result], ["ORD-4", "ORD-2", "ORD-1", "ORD-3"])
        self.assertEqual(len(result), len(self.orders))

    def test_filtering_twice_is_the_same_as_once(self):
        criteria = OrderFilterCriteria(payment_status="PAID")

        once = filter_orders(self.orders, criteria, tz=UTC)
        twice = filter_orders(once, criteria, tz=UTC)

        self.assertEqual(once, twice)
        self.assertEqual([order["order_number"] for order in once], ["ORD-4", "ORD-1"])

    def test_criteria_are_combined_with_and(self):
        criteria = OrderFilterCriteria(customer="amin", payment_status="PAID")

        result = filter_orders(self.orders, criteria, tz=UTC)

        self.assertEqual([order["order_number"] for order in result], ["ORD-1"])

    def test_wigger_substring_matches_flat_name(self):
        result = filter_orders(self.orders, OrderFilterCriteria(wigger="lo"), tz=UTC)

        self.assertEqual([order["order_number"] for order in result], ["ORD-3"])

    def test_end_date_includes_the_last_microseconds_of_the_day(self):
        criteria = OrderFilterCriteria(created_from=date(2024, 3, 11), created_to=date(2024, 3, 11))

        result = filter_orders(self.orders, criteria, tz=UTC)

        self.assertEqual({order["order_number"] for order in result}, {"ORD-2", "ORD-4"})

    def test_day_bounds_follow_the_local_time_zone(self):
        lagos = ZoneInfo("Africa/Lagos")
        orders = [
            _order("ORD-LATE", datetime(2024, 3, 10, 23, 30, tzinfo=UTC)),
            _order("ORD-EARLY", datetime(2024, 3, 10, 22, 30, tzinfo=UTC)),
        ]
        criteria = OrderFilterCriteria(created_from=date(2024, 3, 11), created_to=date(2024, 3, 11))

        in_lagos = filter_orders(orders, criteria, tz=lagos)
        in_utc = filter_orders(orders, criteria, tz=UTC)

        self.assertEqual([order["order_number"] for order in in_lagos], ["ORD-LATE"])
        self.assertEqual(in_utc, [])

    def test_updated_range_uses_updated_at(self):
        base = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)
        orders = [
            _order("ORD-A", base, updated_at=base + timedelta(days=5)),
            _order("ORD-B", base + timedelta(days=5), updated_at=base + timedelta(days=5)),
            _order("ORD-C", base + timedelta(days=1)),
        ]
        criteria = OrderFilterCriteria(updated_from=date(2024, 3, 15), updated_to=date(2024, 3, 15))

        result = filter_orders(orders, criteria, tz=UTC)

        self.assertEqual([order["order_number"] for order in result], ["ORD-B", "ORD-A"])

    def test_pos_operator_matches_by_id(self):
        orders = [
            _order("ORD-A", datetime(2024, 3, 10, tzinfo=UTC), pos_operator="user-1"),
            _order("ORD-B", datetime(2024, 3, 11, tzinfo=UTC), pos_operator={"id": "user-2"}),
            _order("ORD-C", datetime(2024, 3, 12, tzinfo=UTC)),
        ]

        first = filter_orders(orders, OrderFilterCriteria(pos_operator="user-1"), tz=UTC)
        second = filter_orders(orders, OrderFilterCriteria(pos_operator="user-2"), tz=UTC)

        self.assertEqual([order["order_number"] for order in first], ["ORD-A"])
        self.assertEqual([order["order_number"] for order in second], ["ORD-B"])

    def test_query_params_are_parsed_and_checked(self):
        criteria = OrderFilterCriteria.from_query_params({"order_status": "IN PROGRESS", "created_from": "2024-03-01"})

        self.assertEqual(criteria.order_status, "IN PROGRESS")
        self.assertEqual(criteria.created_from, date(2024, 3, 1))
        self.assertTrue(OrderFilterCriteria.from_query_params({}).is_empty())

        with self.assertRaises(FieldValidationError):
            OrderFilterCriteria.from_query_params({"created_from": "2024-03-05", "created_to": "2024-03-01"})
        with self.assertRaises(FieldValidationError):
            OrderFilterCriteria.from_query_params({"updated_to": "not-a-date"})


class PaginationTests(SimpleTestCase):
    def test_pages_cover_every_item_exactly_once(self):
        items = list(range(23))
        for page_size in (1, 4, 10, 23, 50):
            first = paginate(items, 1, page_size)
            collected = []
            for number in range(1, first.num_pages + 1):
                collected.extend(paginate(items, number, page_size).items)
            self.assertEqual(collected, items)

    def test_out_of_range_page_falls_back_to_last(self):
        result = paginate(list(range(12)), 9, 10)

        self.assertEqual(result.number, 2)
        self.assertEqual(result.items, [10, 11])
        self.assertFalse(result.has_next)

    def test_changing_a_filter_resets_to_first_page(self):
        base = datetime(2024, 1, 1, tzinfo=UTC)
        orders = [_order(f"ORD-{i}", base + timedelta(hours=i)) for i in range(25)]
        browser = OrderBrowser(orders, page_size=10, tz=UTC)
        browser.go_to(3)

        self.assertEqual(browser.current_page().number, 3)

        browser.set_filter(payment_status="PENDING")
        self.assertEqual(browser.page, 1)

        browser.go_to(2)
        browser.set_filter(payment_status="PENDING")
        self.assertEqual(browser.page, 2)

        browser.clear_filters()
        self.assertEqual(browser.page, 1)


def _customer(addresses=(), **extra):
    customer = {
        "id": "cust-1",
        "full_name": "Amina Yusuf",
        "email": "amina@example.com",
        "phone_number": "0100",
        "head_size": "22",
        "addresses": [
            {"id": address_id, "address": text, "is_primary": primary} for address_id, text, primary in addresses
        ],
    }
    customer.update(extra)
    return customer


def _primaries(addresses):
    return [address for address in addresses if address["is_primary"]]


class ReconciliationTests(SimpleTestCase):
    def setUp(self):
        self.customer = _customer([("a1", "1 Nile St", True), ("a2", "2 Canal Rd", False)])

    def _selected(self, customer=None):
        session = ReconciliationSession()
        session.search("amina@example.com", "email", lambda field, query: [customer or self.customer])
        return session

    def test_search_without_results_starts_a_prefilled_draft(self):
        session = ReconciliationSession()

        state = session.search("x@example.com", "email", lambda field, query: [])

        self.assertIsInstance(state, NewCustomerDraft)
        self.assertEqual(state.email, "x@example.com")

    def test_second_search_keeps_typed_draft_values(self):
        session = ReconciliationSession()
        session.search("x@example.com", "email", lambda field, query: [])
        session.update_draft(full_name="Xena")

        state = session.search("0123", "phone_number", lambda field, query: [])

        self.assertEqual((state.full_name, state.email, state.phone_number), ("Xena", "x@example.com", "0123"))

    def test_search_hit_selects_primary_address(self):
        state = self._selected().state

        self.assertIsInstance(state, Selected)
        self.assertEqual(state.selected_address_id, "a1")
        self.assertEqual(state.primary_address_id, "a1")

    def test_search_requires_query_and_known_field(self):
        session = ReconciliationSession()

        with self.assertRaises(FieldValidationError):
            session.begin_search("   ", "email")
        with self.assertRaises(FieldValidationError):
            session.begin_search("amina", "full_name")
        self.assertIsInstance(session.state, Viewing)

    def test_failed_lookup_restores_previous_state(self):
        session = ReconciliationSession()
        session.search("x@example.com", "email", lambda field, query: [])
        session.update_draft(full_name="Xena")
        before = session.state

        def broken(field, query):
            raise ConnectionError("lookup unavailable")

        with self.assertRaises(ConnectionError):
            session.search("0123", "phone_number", broken)

        self.assertEqual(session.state, before)
        self.assertEqual(session.last_error, "lookup unavailable")

    def test_unchanged_selection_has_empty_payload(self):
        outcome = self._selected().reconcile()

        self.assertIs(outcome.kind, OutcomeKind.EXISTING_UNCHANGED)
        self.assertEqual(outcome.as_payload(), {})
        self.assertEqual(outcome.customer_id, "cust-1")

    def test_non_primary_new_address_is_appended(self):
        session = self._selected()
        session.start_adding_address()
        session.update_new_address(address="3 Delta Way")
        session.confirm_new_address()

        outcome = session.reconcile()

        self.assertIs(outcome.kind, OutcomeKind.EXISTING_ADD_ADDRESS)
        self.assertEqual(outcome.as_payload(), {"new_address": {"address": "3 Delta Way", "is_primary": False}})

    def test_primary_change_rewrites_whole_list_with_one_primary(self):
        session = self._selected()
        session.set_primary("a2")

        outcome = session.reconcile()
        addresses = outcome.as_payload()["updated_addresses"]

        self.assertIs(outcome.kind, OutcomeKind.EXISTING_REPLACE_ADDRESSES)
        self.assertEqual(len(addresses), 2)
        self.assertEqual([address["id"] for address in _primaries(addresses)], ["a2"])

    def test_new_primary_address_demotes_the_old_one(self):
        session = self._selected()
        session.start_adding_address()
        session.update_new_address(address="3 Delta Way", is_primary=True)
        session.confirm_new_address()

        addresses = session.reconcile().as_payload()["updated_addresses"]

        self.assertEqual(len(addresses), 3)
        self.assertEqual(_primaries(addresses), [{"address": "3 Delta Way", "is_primary": True}])

    def test_first_address_is_always_primary(self):
        session = self._selected(_customer())
        session.start_adding_address()
        session.update_new_address(address="9 Sun Rd", is_primary=False)

        state = session.confirm_new_address()
        outcome = session.reconcile()

        self.assertTrue(state.pending_address.is_primary)
        self.assertIs(outcome.kind, OutcomeKind.EXISTING_ADD_ADDRESS)

    def test_cancel_adding_address_returns_to_previous_state(self):
        session = self._selected()
        before = session.state

        self.assertIsInstance(session.start_adding_address(), AddingAddress)
        session.update_new_address(address="draft text")
        session.cancel_adding_address()

        self.assertEqual(session.state, before)

    def test_adding_address_needs_a_customer_context(self):
        session = ReconciliationSession()

        with self.assertRaises(InvalidTransition):
            session.start_adding_address()

    def test_selecting_foreign_address_is_rejected(self):
        with self.assertRaises(InvalidTransition):
            self._selected().select_address("other")

    def test_new_customer_outcome_requires_fields(self):
        session = ReconciliationSession()
        session.search("x@example.com", "email", lambda field, query: [])

        with self.assertRaises(FieldValidationError) as ctx:
            session.reconcile()

        self.assertIn("full_name", ctx.exception.errors)
        self.assertIn("phone_number", ctx.exception.errors)
        self.assertIsInstance(session.state, NewCustomerDraft)

    def test_failed_save_keeps_the_draft(self):
        session = ReconciliationSession()
        session.search("x@example.com", "email", lambda field, query: [])
        session.update_draft(full_name="Xena", phone_number="0123")
        before = session.state

        def failing(outcome):
            raise RuntimeError("save failed")

        with self.assertRaises(RuntimeError):
            session.save(failing)

        self.assertEqual(session.state, before)
        self.assertEqual(session.last_error, "save failed")


class RecordingGateway:
    def __init__(self, inner=None, fail_update=False):
        self.inner = inner
        self.fail_update = fail_update
        self.order_updates = []
        self.status_updates = []
        self.reconciled = []

    def apply_reconciliation(self, outcome):
        self.reconciled.append(outcome)
        if self.inner is not None:
            return self.inner.apply_reconciliation(outcome)
        return {"id": "new-customer"}

    def update_order(self, order_id, changes):
        self.order_updates.append((order_id, changes))
        if self.fail_update:
            raise ConnectionError("update failed")
        if self.inner is not None:
            return self.inner.update_order(order_id, changes)
        return None

    def update_status(self, order_id, changes):
        self.status_updates.append((order_id, changes))


def _order_snapshot(**extra):
    snapshot = {
        "id": "order-1",
        "customer": None,
        "delivery_method": "pickup",
        "notes": "",
        "wigger": None,
        "order_status": "IN PROGRESS",
        "payment_status": "PENDING",
    }
    snapshot.update(extra)
    return snapshot


class OrderDetailEditorTests(SimpleTestCase):
    def setUp(self):
        self.super_admin = User(username="root", role=User.Role.SUPER_ADMIN)
        self.admin = User(username="admin", role=User.Role.ADMIN)

    def test_only_super_admin_can_edit(self):
        editor = OrderDetailEditor(_order_snapshot(), self.admin)

        with self.assertRaises(EditNotPermitted):
            editor.begin_edit()
        self.assertFalse(editor.editing)

    def test_only_changed_fields_are_sent(self):
        editor = OrderDetailEditor(_order_snapshot(notes="Call first"), self.super_admin)
        editor.begin_edit()
        editor.set_notes("Call first")
        editor.set_delivery_method("delivery")
        gateway = RecordingGateway()

        changes = editor.save(gateway)

        self.assertEqual(changes, {"delivery_method": "delivery"})
        self.assertEqual(gateway.order_updates, [("order-1", {"delivery_method": "delivery"})])
        self.assertFalse(editor.editing)

    def test_no_changes_means_no_call(self):
        editor = OrderDetailEditor(_order_snapshot(), self.super_admin)
        editor.begin_edit()
        gateway = RecordingGateway()

        self.assertEqual(editor.save(gateway), {})
        self.assertEqual(gateway.order_updates, [])

    def test_incomplete_new_customer_is_rejected_before_any_call(self):
        editor = OrderDetailEditor(_order_snapshot(), self.super_admin)
        editor.begin_edit()
        editor.customer_session.search("x@example.com", "email", lambda field, query: [])
        gateway = RecordingGateway()

        with self.assertRaises(FieldValidationError):
            editor.save(gateway)

        self.assertEqual(gateway.reconciled, [])
        self.assertEqual(gateway.order_updates, [])
        self.assertTrue(editor.editing)

    def test_delivery_charge_is_sent_with_switch_to_delivery(self):
        editor = OrderDetailEditor(_order_snapshot(delivery_charge="0.00"), self.super_admin)
        editor.begin_edit()
        editor.set_delivery_method("delivery")
        editor.set_delivery_charge("12.5")
        gateway = RecordingGateway()

        changes = editor.save(gateway)

        self.assertEqual(changes, {"delivery_method": "delivery", "delivery_charge": "12.50"})
        self.assertEqual(gateway.order_updates, [("order-1", changes)])

    def test_negative_delivery_charge_is_rejected(self):
        editor = OrderDetailEditor(_order_snapshot(), self.super_admin)
        editor.begin_edit()

        with self.assertRaises(FieldValidationError):
            editor.set_delivery_charge("-1")
        self.assertEqual(editor.changed_fields(), {})

    def test_reselecting_same_customer_skips_reconciliation(self):
        customer = {"id": "cust-1", "full_name": "Amina Yusuf", "email": "amina@example.com", "phone_number": "+201000000001"}
        editor = OrderDetailEditor(_order_snapshot(customer="cust-1", customer_detail=customer), self.super_admin)
        editor.begin_edit()
        editor.customer_session.search("amina@example.com", "email", lambda field, query: [customer])
        gateway = RecordingGateway()

        self.assertEqual(editor.save(gateway), {})
        self.assertEqual(gateway.reconciled, [])
        self.assertEqual(gateway.order_updates, [])

    def test_switching_to_another_existing_customer_sends_only_the_order_update(self):
        other = {"id": "cust-2", "full_name": "Ben Amin", "email": "ben@example.com", "phone_number": "+201000000002"}
        editor = OrderDetailEditor(_order_snapshot(customer="cust-1"), self.super_admin)
        editor.begin_edit()
        editor.customer_session.search("ben@example.com", "email", lambda field, query: [other])
        gateway = RecordingGateway()

        changes = editor.save(gateway)

        self.assertEqual(changes, {"customer": "cust-2"})
        self.assertEqual(gateway.reconciled, [])
        self.assertEqual(gateway.order_updates, [("order-1", {"customer": "cust-2"})])

    def test_failed_save_stays_in_edit_mode(self):
        editor = OrderDetailEditor(_order_snapshot(), self.super_admin)
        editor.begin_edit()
        editor.set_notes("Gift wrap")

        with self.assertRaises(ConnectionError):
            editor.save(RecordingGateway(fail_update=True))

        self.assertTrue(editor.editing)
        self.assertEqual(editor.changed_fields(), {"notes": "Gift wrap"})
        self.assertEqual(editor.last_error, "update failed")


class StatusControlTests(SimpleTestCase):
    def setUp(self):
        self.control = StatusControl(_order_snapshot())
        self.gateway = RecordingGateway()

    def test_confirm_sends_exactly_one_update(self):
        pending = self.control.request_change("order_status", "DISPATCHED")

        self.assertIn("DISPATCHED", pending.message)
        self.control.confirm(self.gateway)

        self.assertEqual(self.gateway.status_updates, [("order-1", {"order_status": "DISPATCHED"})])
        self.assertEqual(self.control.displayed("order_status"), "DISPATCHED")

    def test_cancel_sends_nothing_and_reverts(self):
        self.control.request_change("order_status", "DISPATCHED")
        self.assertEqual(self.control.displayed("order_status"), "DISPATCHED")

        self.control.cancel()

        self.assertEqual(self.gateway.status_updates, [])
        self.assertEqual(self.control.displayed("order_status"), "IN PROGRESS")

    def test_disabled_while_editor_is_editing(self):
        editor = OrderDetailEditor(_order_snapshot(), User(username="root", role=User.Role.SUPER_ADMIN))
        control = StatusControl(_order_snapshot(), editor=editor)
        editor.begin_edit()

        self.assertTrue(control.disabled)
        with self.assertRaises(InvalidTransition):
            control.request_change("payment_status", "PAID")

    def test_unknown_status_is_rejected(self):
        with self.assertRaises(FieldValidationError):
            self.control.request_change("order_status", "LOST")


class SalesFixtureMixin:
    def create_users(self):
        self.super_admin = User.objects.create_user(
            username="owner", password="pass1234", full_name="Owner", role=User.Role.SUPER_ADMIN
        )
        self.admin = User.objects.create_user(username="manager", password="pass1234", role=User.Role.ADMIN)
        self.operator = User.objects.create_user(username="till", password="pass1234", role=User.Role.ORDER_OPERATOR)

    def create_item(self, quantity=5, cost_price="10.00", colour="Black"):
        category, _ = AttributeCategory.objects.get_or_create(title="Colour")
        attribute = AttributeItem.objects.create(category=category, name=colour)
        item = InventoryItem.objects.create(quantity=quantity, cost_price=Decimal(cost_price))
        InventoryItemAttribute.objects.create(inventory_item=item, attribute_item=attribute, position=0)
        return item

    def create_order(self, **kwargs):
        kwargs.setdefault("operator", self.operator)
        kwargs.setdefault("items", [{"id": str(self.item.id), "quantity": 1, "price": "10.00"}])
        return services.create_order(**kwargs)


class OrderServiceTests(SalesFixtureMixin, TestCase):
    def setUp(self):
        self.create_users()
        self.item = self.create_item()

    def test_create_order_snapshots_items_and_takes_stock(self):
        order = self.create_order(
            items=[{"id": str(self.item.id), "quantity": 2, "price": "10.00"}],
            delivery_method="delivery",
            delivery_charge="7.50",
        )

        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 3)
        self.assertTrue(order.order_number.startswith("ORD-"))
        self.assertEqual(order.items, [{"id": str(self.item.id), "name": "Colour: Black", "quantity": 2, "price": "10.00"}])
        self.assertEqual(order.amount, Decimal("20.00"))
        self.assertEqual(order.vat_amount, Decimal("4.00"))
        self.assertEqual(order.total_amount, Decimal("31.50"))
        self.assertEqual(order.status_history[0]["to"], Order.OrderStatus.CREATED)

    def test_order_numbers_are_unique(self):
        first = self.create_order()
        second = self.create_order()

        self.assertNotEqual(first.order_number, second.order_number)

    def test_over_stock_request_changes_nothing(self):
        with self.assertRaises(FieldValidationError):
            self.create_order(items=[{"id": str(self.item.id), "quantity": 6, "price": "10.00"}])

        self.item.refresh_from_db()
        self.assertEqual(self.item.quantity, 5)
        self.assertFalse(Order.objects.exists())

    def test_update_order_applies_only_changed_fields_and_reprices_delivery(self):
        order = self.create_order()

        changed = services.update_order(
            order,
            {"notes": "", "delivery_method": "delivery", "delivery_charge": "5.00"},
            self.super_admin,
        )

        order.refresh_from_db()
        self.assertEqual(changed, ["delivery_method", "delivery_charge"])
        self.assertEqual(order.delivery_charge, Decimal("5.00"))
        self.assertEqual(order.total_amount, Decimal("17.00"))

    def test_delivery_charge_survives_switch_to_pickup_and_back(self):
        order = self.create_order(delivery_method="delivery", delivery_charge="7.50")
        self.assertEqual(order.total_amount, Decimal("19.50"))

        services.update_order(order, {"delivery_method": "pickup"}, self.super_admin)
        order.refresh_from_db()
        self.assertEqual(order.total_amount, Decimal("12.00"))
        self.assertEqual(order.delivery_charge, Decimal("7.50"))
        self.assertEqual(order.applied_delivery_charge, Decimal("0.00"))

        services.update_order(order, {"delivery_method": "delivery"}, self.super_admin)
        order.refresh_from_db()
        self.assertEqual(order.applied_delivery_charge, Decimal("7.50"))
        self.assertEqual(order.total_amount, Decimal("19.50"))

    def test_update_order_rejects_items_and_non_super_admins(self):
        order = self.create_order()

        with self.assertRaises(FieldValidationError):
            services.update_order(order, {"items": []}, self.super_admin)
        with self.assertRaises(EditNotPermitted):
            services.update_order(order, {"notes": "x"}, self.admin)

    def test_change_status_appends_history(self):
        order = self.create_order()

        services.change_status(order, "order_status", "IN PROGRESS", self.admin)

        order.refresh_from_db()
        self.assertEqual(order.order_status, "IN PROGRESS")
        self.assertEqual(order.status_history[-1]["from"], "CREATED")
        self.assertEqual(order.status_history[-1]["changed_by"], str(self.admin.id))
        with self.assertRaises(InvalidTransition):
            services.change_status(order, "order_status", "IN PROGRESS", self.admin)

    def test_receipt_lists_items_and_total(self):
        order = self.create_order()

        text = services.render_receipt_text(order, business_name="Crown Wigs")

        self.assertIn("Crown Wigs", text)
        self.assertIn(order.order_number, text)
        self.assertIn("Colour: Black", text)
        self.assertIn("12.00", text)


class StoredOrderFilterTests(SalesFixtureMixin, TestCase):
    def setUp(self):
        self.create_users()
        self.item = self.create_item(quantity=10)
        self.customer = Customer.objects.create(full_name="Amina Yusuf", email="amina@example.com", phone_number="0100")
        self.other_operator = User.objects.create_user(username="till2", password="pass1234", role=User.Role.ORDER_OPERATOR)
        self.first = self.create_order(customer=self.customer)
        self.second = self.create_order(operator=self.other_operator)
        Order.objects.filter(pk=self.first.pk).update(created_at=datetime(2024, 3, 10, 23, 30, tzinfo=UTC))
        Order.objects.filter(pk=self.second.pk).update(created_at=datetime(2024, 3, 10, 22, 30, tzinfo=UTC))

    def serialized(self):
        return OrderSerializer(Order.objects.select_related("customer", "wigger", "pos_operator"), many=True).data

    def test_serialized_orders_can_be_filtered_in_memory(self):
        everything = filter_orders(self.serialized(), OrderFilterCriteria(), tz=UTC)
        by_customer = filter_orders(self.serialized(), OrderFilterCriteria(customer="amina"), tz=UTC)

        self.assertEqual([order["order_number"] for order in everything], [self.first.order_number, self.second.order_number])
        self.assertEqual([order["order_number"] for order in by_customer], [self.first.order_number])

    def test_pos_operator_filter_matches_in_memory_and_in_the_database(self):
        criteria = OrderFilterCriteria(pos_operator=str(self.other_operator.pk))

        in_memory = filter_orders(self.serialized(), criteria, tz=UTC)
        stored = filter_queryset(Order.objects.all(), criteria, tz=UTC)

        self.assertEqual([order["order_number"] for order in in_memory], [self.second.order_number])
        self.assertEqual([order.pk for order in stored], [self.second.pk])

    def test_queryset_day_bounds_follow_the_local_time_zone(self):
        criteria = OrderFilterCriteria(created_from=date(2024, 3, 11), created_to=date(2024, 3, 11))

        in_lagos = filter_queryset(Order.objects.all(), criteria, tz=ZoneInfo("Africa/Lagos"))
        in_utc = filter_queryset(Order.objects.all(), criteria, tz=UTC)

        self.assertEqual([order.pk for order in in_lagos], [self.first.pk])
        self.assertFalse(in_utc.exists())


class CustomerPersistenceTests(SalesFixtureMixin, TestCase):
    def setUp(self):
        self.create_users()
        self.item = self.create_item()
        self.customer = Customer.objects.create(full_name="Amina", email="amina@example.com", phone_number="0100")
        self.first = CustomerAddress.objects.create(customer=self.customer, address="1 Nile St", is_primary=True)
        self.second = CustomerAddress.objects.create(customer=self.customer, address="2 Canal Rd")

    def _primary_ids(self):
        return list(self.customer.addresses.filter(is_primary=True).values_list("id", flat=True))

    def test_replace_outcome_leaves_exactly_one_primary(self):
        session = ReconciliationSession()
        session.search("AMINA@example.com", "email", services.find_customers)
        session.set_primary(str(self.second.id))

        session.save(services.apply_reconciliation)

        self.assertEqual(self._primary_ids(), [self.second.id])

    def test_new_primary_address_is_the_only_primary(self):
        session = ReconciliationSession()
        session.search("0100", "phone_number", services.find_customers)
        session.start_adding_address()
        session.update_new_address(address="3 Delta Way", is_primary=True)
        session.confirm_new_address()

        session.save(services.apply_reconciliation)

        primary = self.customer.addresses.get(is_primary=True)
        self.assertEqual(primary.address, "3 Delta Way")
        self.assertEqual(self.customer.addresses.count(), 3)

    def test_set_primary_address_is_atomic_swap(self):
        services.set_primary_address(self.customer, self.second.id)

        self.assertEqual(self._primary_ids(), [self.second.id])

    def test_new_customer_scenario_attaches_created_customer(self):
        order = self.create_order()
        editor = OrderDetailEditor(services.order_snapshot(order), self.super_admin)
        editor.begin_edit()

        state = editor.customer_session.search("x@example.com", "email", services.find_customers)
        self.assertIsInstance(state, NewCustomerDraft)
        self.assertEqual(state.email, "x@example.com")
        editor.customer_session.update_draft(full_name="Xena Doe", phone_number="0199")

        gateway = RecordingGateway(inner=ServiceGateway(self.super_admin))
        changes = editor.save(gateway)

        created = Customer.objects.get(email="x@example.com")
        self.assertEqual(changes, {"customer": str(created.id)})
        self.assertEqual(gateway.order_updates, [(str(order.id), {"customer": str(created.id)})])
        order.refresh_from_db()
        self.assertEqual(order.customer_id, created.id)

    def test_duplicate_customer_email_is_rejected(self):
        with self.assertRaises(FieldValidationError):
            services.create_customer(full_name="Other", email="Amina@Example.com", phone_number="0999")


class OrderApiTests(SalesFixtureMixin, TestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.create_users()
        self.item = self.create_item(quantity=20)

    def test_operator_creates_order_with_cost_price_default(self):
        self.client.force_authenticate(user=self.operator)

        response = self.client.post(
            "/api/v1/orders/",
            {"items": [{"id": str(self.item.id), "quantity": 2}], "delivery_method": "pickup"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["items"][0]["price"], "10.00")
        self.assertEqual(payload["total_amount"], "24.00")
        self.assertEqual(payload["pos_operator"], str(self.operator.id))

    def test_over_stock_returns_validation_envelope(self):
        self.client.force_authenticate(user=self.operator)

        response = self.client.post(
            "/api/v1/orders/",
            {"items": [{"id": str(self.item.id), "quantity": 21, "price": "10.00"}]},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn(str(self.item.id), response.json()["errors"]["items"])

    def test_operator_cannot_list_or_edit_orders(self):
        order = self.create_order()
        self.client.force_authenticate(user=self.operator)

        self.assertEqual(self.client.get("/api/v1/orders/").status_code, 403)
        response = self.client.patch(f"/api/v1/orders/{order.id}/", {"updates": {"notes": "x"}}, format="json")
        self.assertEqual(response.status_code, 403)

    def test_admin_cannot_edit_but_super_admin_can(self):
        order = self.create_order()

        self.client.force_authenticate(user=self.admin)
        response = self.client.patch(f"/api/v1/orders/{order.id}/", {"updates": {"notes": "x"}}, format="json")
        self.assertEqual(response.status_code, 403)

        self.client.force_authenticate(user=self.super_admin)
        response = self.client.patch(f"/api/v1/orders/{order.id}/", {"updates": {"notes": "Rush"}}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["changed_fields"], ["notes"])
        self.assertEqual(response.json()["order"]["notes"], "Rush")

    def test_items_are_frozen(self):
        order = self.create_order()
        self.client.force_authenticate(user=self.super_admin)

        response = self.client.patch(f"/api/v1/orders/{order.id}/", {"updates": {"items": []}}, format="json")

        self.assertEqual(response.status_code, 400)

    def test_status_endpoint(self):
        order = self.create_order()
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            f"/api/v1/orders/{order.id}/status/", {"field": "payment_status", "value": "PAID"}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["payment_status"], "PAID")

        response = self.client.post(
            f"/api/v1/orders/{order.id}/status/", {"field": "payment_status", "value": "PAID"}, format="json"
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "invalid_transition")

        response = self.client.post(
            f"/api/v1/orders/{order.id}/status/", {"field": "order_status", "value": "LOST"}, format="json"
        )
        self.assertEqual(response.status_code, 400)

    def test_list_is_filtered_and_paged_by_ten(self):
        for _ in range(11):
            self.create_order()
        paid = self.create_order(payment_status=Order.PaymentStatus.PAID)
        self.client.force_authenticate(user=self.admin)

        page_two = self.client.get("/api/v1/orders/?page=2")
        self.assertEqual(page_two.status_code, 200)
        self.assertEqual(page_two.json()["count"], 12)
        self.assertEqual(len(page_two.json()["results"]), 2)

        filtered = self.client.get("/api/v1/orders/?payment_status=PAID")
        self.assertEqual([row["id"] for row in filtered.json()["results"]], [str(paid.id)])

    def test_queryset_filter_matches_in_memory_filter(self):
        wigger = Wigger.objects.create(name="Lola")
        orders = [self.create_order(wigger=wigger), self.create_order(), self.create_order(wigger=wigger)]
        Order.objects.filter(pk=orders[0].pk).update(created_at=datetime(2024, 5, 1, 23, 59, 59, tzinfo=UTC))
        Order.objects.filter(pk=orders[2].pk).update(created_at=datetime(2024, 5, 3, 8, 0, tzinfo=UTC))
        criteria = OrderFilterCriteria(wigger="lo", created_to=date(2024, 5, 2))

        queryset = Order.objects.select_related("customer", "wigger")
        from_db = [order.id for order in filter_queryset(queryset, criteria, tz=UTC)]
        in_memory = [order.id for order in filter_orders(list(queryset), criteria, tz=UTC)]

        self.assertEqual(from_db, [orders[0].id])
        self.assertEqual(in_memory, from_db)

    def test_operator_downloads_receipt(self):
        order = self.create_order()
        self.client.force_authenticate(user=self.operator)

        response = self.client.get(f"/api/v1/orders/{order.id}/receipt/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Disposition"], f'attachment; filename="receipt_{order.id}.txt"')
        self.assertIn(order.order_number, response.content.decode())

    def test_only_super_admin_deletes_orders(self):
        order = self.create_order()

        self.client.force_authenticate(user=self.admin)
        self.assertEqual(self.client.delete(f"/api/v1/orders/{order.id}/").status_code, 403)

        self.client.force_authenticate(user=self.super_admin)
        self.assertEqual(self.client.delete(f"/api/v1/orders/{order.id}/").status_code, 204)


class CustomerApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.operator = User.objects.create_user(username="till", password="pass1234", role=User.Role.ORDER_OPERATOR)
        self.client.force_authenticate(user=self.operator)

    def _create(self, **extra):
        payload = {
            "full_name": "Amina Yusuf",
            "email": "Amina@Example.com",
            "phone_number": "0100",
            "new_address": {"address": "1 Nile St"},
        }
        payload.update(extra)
        return self.client.post("/api/v1/customers/", payload, format="json")

    def test_create_with_first_address_makes_it_primary(self):
        response = self._create()

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["email"], "amina@example.com")
        self.assertEqual([address["is_primary"] for address in payload["addresses"]], [True])

    def test_duplicate_email_ignores_case(self):
        self._create()

        response = self._create(email="AMINA@example.com", phone_number="0200")

        self.assertEqual(response.status_code, 400)
        self.assertIn("email", response.json()["errors"])

    def test_missing_required_fields(self):
        response = self.client.post("/api/v1/customers/", {"email": "bad"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("full_name", response.json()["errors"])

    def test_exact_search_by_email_and_phone(self):
        self._create()

        by_email = self.client.get("/api/v1/customers/search/", {"field": "email", "query": "AMINA@example.com"})
        by_phone = self.client.get("/api/v1/customers/search/", {"field": "phone_number", "query": "010"})

        self.assertEqual(by_email.json()["count"], 1)
        self.assertEqual(by_phone.json()["count"], 0)

    def test_updated_addresses_and_primary_action_keep_one_primary(self):
        customer_id = self._create().json()["id"]
        response = self.client.patch(
            f"/api/v1/customers/{customer_id}/",
            {"new_address": {"address": "2 Canal Rd", "is_primary": True}},
            format="json",
        )
        addresses = response.json()["addresses"]
        self.assertEqual([address["is_primary"] for address in addresses], [False, True])

        response = self.client.post(
            f"/api/v1/customers/{customer_id}/primary-address/", {"address_id": addresses[0]["id"]}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual([address["is_primary"] for address in response.json()["addresses"]], [True, False])

        response = self.client.patch(
            f"/api/v1/customers/{customer_id}/",
            {"updated_addresses": [{"id": addresses[0]["id"]}, {"id": addresses[1]["id"], "is_primary": True}]},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual([address["is_primary"] for address in response.json()["addresses"]], [False, True])

    def test_operator_cannot_list_all_customers(self):
        self.assertEqual(self.client.get("/api/v1/customers/").status_code, 403)


class ReportApiTests(SalesFixtureMixin, TestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.create_users()
        self.item = self.create_item(quantity=4)
        self.wigger = Wigger.objects.create(name="Lola")
        self.create_order(wigger=self.wigger)
        self.create_order(discount_value="2.00", payment_status=Order.PaymentStatus.PAID)

    def test_reports_are_back_office_only(self):
        self.client.force_authenticate(user=self.operator)

        self.assertEqual(self.client.get("/api/v1/reports/low-stock/").status_code, 403)
        self.assertEqual(self.client.get("/api/v1/dashboard/").status_code, 403)

    def test_low_stock_uses_settings_threshold_and_exports_csv(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/reports/low-stock/")
        self.assertEqual(response.json()["threshold"], 10)
        self.assertEqual([row["quantity"] for row in response.json()["results"]], [2])

        response = self.client.get("/api/v1/reports/low-stock/?format=csv")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        self.assertIn("Colour: Black", response.content.decode())

    def test_sales_by_item_and_wigger_report(self):
        self.client.force_authenticate(user=self.admin)

        sales = self.client.get("/api/v1/reports/sales-by-item/").json()["results"]
        self.assertEqual(sales[0]["quantity"], 2)
        self.assertEqual(sales[0]["revenue"], "20.00")

        wiggers = self.client.get("/api/v1/reports/wiggers/").json()["results"]
        self.assertEqual(wiggers[0]["wigger"], "Lola")
        self.assertEqual(wiggers[0]["share_percent"], "100.00")

    def test_outstanding_payments_and_dashboard(self):
        self.client.force_authenticate(user=self.admin)

        outstanding = self.client.get("/api/v1/reports/outstanding-payments/").json()
        self.assertEqual(len(outstanding["results"]), 1)
        self.assertEqual(outstanding["total_outstanding"], "12.00")

        dashboard = self.client.get("/api/v1/dashboard/").json()
        self.assertEqual(dashboard["order_count"], 2)
        self.assertEqual(dashboard["total_sales"], "22.00")
        self.assertEqual(dashboard["payment_breakdown"]["PAID"]["count"], 1)
        self.assertEqual(dashboard["discount_vs_full_price"][0]["discounted"], "10.00")

    def test_end_of_day_totals(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/reports/end-of-day/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["order_count"], 2)
        self.assertEqual(response.json()["total_discounts"], "2.00")
