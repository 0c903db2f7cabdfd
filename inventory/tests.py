from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase
from rest_framework.test import APIClient

from inventory.models import AttributeCategory, AttributeItem, InventoryItem, InventoryItemAttribute, Supplier
from inventory.search import (
    Debouncer,
    InventorySearchSession,
    attribute_label,
    build_inventory_rows,
    display_name,
    find_match_ranges,
    search_inventory,
)


class ManualTimer:
    """Stand-in for threading.Timer that only fires when told to."""

    created = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.cancelled = False
        self.started = False
        self.daemon = False
        ManualTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args, **self.kwargs)


def _row(item_id, attributes, supplier="", quantity=0, cost_price=None):
    return {
        "id": item_id,
        "attributes": [{"category_title": title, "name": name} for title, name in attributes],
        "supplier_name": supplier,
        "quantity": quantity,
        "cost_price": cost_price,
    }


class DisplayNameTests(SimpleTestCase):
    def test_attribute_label_with_and_without_category(self):
        self.assertEqual(attribute_label("Colour", "Black"), "Colour: Black")
        self.assertEqual(attribute_label(None, "Black"), "Black")
        self.assertEqual(attribute_label("", "Black"), "Black")

    def test_display_name_joins_labels_in_order(self):
        item = _row("a", [("Length", "24in"), ("Colour", "Black"), ("", "Lace")])

        self.assertEqual(display_name(item), "Length: 24in, Colour: Black, Lace")

    def test_item_without_attributes_is_na(self):
        self.assertEqual(display_name(_row("b", [])), "N/A")

    def test_display_name_tracks_attribute_changes(self):
        before = _row("c", [("Colour", "Black")])
        after = _row("c", [("Colour", "Blonde")])

        self.assertEqual(display_name(before), "Colour: Black")
        self.assertEqual(display_name(after), "Colour: Blonde")


class SearchInventoryTests(SimpleTestCase):
    def setUp(self):
        self.rows = build_inventory_rows(
            [
                _row("1", [("Colour", "blonde"), ("Length", "18in")], supplier="Hair Co", quantity=12, cost_price="45.5"),
                _row("2", [("Colour", "Black")], supplier="Wig World", quantity=3, cost_price="80"),
                _row("3", [], supplier="Hair Co", quantity=0),
                _row("4", [("Colour", "auburn")], supplier="", quantity=120, cost_price="12.00"),
            ]
        )

    def test_empty_query_returns_everything_sorted_case_insensitively(self):
        results = search_inventory(self.rows, "")

        self.assertEqual(
            [row["display_name"] for row in results],
            ["Colour: auburn", "Colour: Black", "Colour: blonde, Length: 18in", "N/A"],
        )
        self.assertTrue(all(row["matches"] == {} for row in results))

    def test_accented_names_sort_with_their_base_letter(self):
        rows = build_inventory_rows(
            [
                _row("1", [("Colour", "Zinc")]),
                _row("2", [("Colour", "ecru")]),
                _row("3", [("Colour", "Ébène")]),
            ]
        )

        results = search_inventory(rows, "")

        self.assertEqual([row["display_name"] for row in results], ["Colour: Ébène", "Colour: ecru", "Colour: Zinc"])

    def test_matches_supplier_quantity_and_price_text(self):
        self.assertEqual({row["id"] for row in search_inventory(self.rows, "hair co")}, {"1", "3"})
        self.assertEqual({row["id"] for row in search_inventory(self.rows, "12")}, {"1", "4"})
        self.assertEqual({row["id"] for row in search_inventory(self.rows, "45.50")}, {"1"})

    def test_item_without_attributes_is_searchable_by_na(self):
        results = search_inventory(self.rows, "n/a")

        self.assertEqual([row["id"] for row in results], ["3"])
        self.assertEqual(results[0]["matches"]["display_name"], [[0, 3]])

    def test_match_ranges_are_reported_per_field(self):
        results = search_inventory(self.rows, "colour")
        blonde = next(row for row in results if row["id"] == "1")

        self.assertEqual(blonde["matches"], {"display_name": [[0, 6]]})

    def test_longer_query_never_widens_results(self):
        queries = ["c", "co", "col", "colo", "colou", "colour", "colour:", "colour: b", "colour: bl"]
        previous = None
        for query in queries:
            ids = {row["id"] for row in search_inventory(self.rows, query)}
            if previous is not None:
                self.assertTrue(ids <= previous, query)
            previous = ids


class FindMatchRangesTests(SimpleTestCase):
    def test_repeated_occurrences_do_not_overlap(self):
        self.assertEqual(find_match_ranges("aaaa", "aa"), [[0, 2], [2, 4]])

    def test_case_insensitive(self):
        self.assertEqual(find_match_ranges("Black, BLACK", "black"), [[0, 5], [7, 12]])

    def test_special_characters_are_literal(self):
        self.assertEqual(find_match_ranges("12.00 (sale)", "(sale)"), [[6, 12]])
        self.assertEqual(find_match_ranges("1200", "."), [])

    def test_empty_query_has_no_ranges(self):
        self.assertEqual(find_match_ranges("anything", ""), [])


class DebouncerTests(SimpleTestCase):
    def setUp(self):
        ManualTimer.created = []
        self.calls = []

    def test_only_the_last_call_fires(self):
        debouncer = Debouncer(self.calls.append, wait=0.3, timer_factory=ManualTimer)

        debouncer("b")
        debouncer("bl")
        debouncer("bla")

        first, second, third = ManualTimer.created
        self.assertTrue(first.cancelled)
        self.assertTrue(second.cancelled)
        self.assertEqual(third.interval, 0.3)

        first.fire()
        third.fire()
        self.assertEqual(self.calls, ["bla"])
        self.assertFalse(debouncer.pending)

    def test_close_prevents_stale_callback(self):
        debouncer = Debouncer(self.calls.append, timer_factory=ManualTimer)
        debouncer("query")
        timer = ManualTimer.created[-1]

        debouncer.close()
        timer.fire()
        debouncer("later")

        self.assertTrue(timer.cancelled)
        self.assertEqual(self.calls, [])
        self.assertEqual(len(ManualTimer.created), 1)

    def test_cancel_allows_later_calls(self):
        debouncer = Debouncer(self.calls.append, timer_factory=ManualTimer)
        debouncer("first")
        stale = ManualTimer.created[-1]
        debouncer.cancel()
        debouncer("second")

        stale.fire()
        ManualTimer.created[-1].fire()

        self.assertEqual(self.calls, ["second"])

    def test_search_session_runs_once_per_quiet_period(self):
        results = []
        rows = build_inventory_rows([_row("1", [("Colour", "Black")]), _row("2", [("Colour", "Blonde")])])
        session = InventorySearchSession(rows, results.append, timer_factory=ManualTimer)

        session.type("bl")
        session.type("bla")
        ManualTimer.created[-1].fire()

        self.assertEqual(len(results), 1)
        self.assertEqual([row["id"] for row in results[0]], ["1"])
        session.close()


class InventoryApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="inv-admin", password="pass1234", role="ADMIN")
        self.operator = user_model.objects.create_user(username="inv-op", password="pass1234", role="POS_OPERATOR")

        self.colour = AttributeCategory.objects.create(title="Colour")
        self.length = AttributeCategory.objects.create(title="Length")
        self.black = AttributeItem.objects.create(category=self.colour, name="Black")
        self.blonde = AttributeItem.objects.create(category=self.colour, name="Blonde")
        self.long = AttributeItem.objects.create(category=self.length, name="24in")
        self.supplier = Supplier.objects.create(name="Hair Co")

    def _create_item(self, attributes, quantity=5, cost_price="20.00"):
        item = InventoryItem.objects.create(quantity=quantity, cost_price=Decimal(cost_price), supplier=self.supplier)
        for position, attribute in enumerate(attributes):
            InventoryItemAttribute.objects.create(inventory_item=item, attribute_item=attribute, position=position)
        return item

    def test_admin_creates_item_with_ordered_attributes(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/inventory-items/",
            {
                "quantity": 7,
                "cost_price": "35.00",
                "supplier": str(self.supplier.id),
                "attributes": [str(self.long.id), str(self.black.id)],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["display_name"], "Length: 24in, Colour: Black")
        self.assertEqual(payload["supplier_name"], "Hair Co")
        self.assertIsNotNone(payload["last_stocked_at"])

    def test_item_requires_an_attribute(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/inventory-items/", {"quantity": 1, "attributes": []}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("attributes", response.json()["errors"])

    def test_negative_quantity_is_rejected(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/inventory-items/",
            {"quantity": -1, "attributes": [str(self.black.id)]},
            format="json",
        )

        self.assertEqual(response.status_code, 400)

    def test_operator_can_search_but_not_edit(self):
        self._create_item([self.black])
        self.client.force_authenticate(user=self.operator)

        search = self.client.get("/api/v1/inventory-items/search/", {"q": "black"})
        create = self.client.post("/api/v1/suppliers/", {"name": "Nope"}, format="json")

        self.assertEqual(search.status_code, 200)
        self.assertEqual(search.json()["count"], 1)
        self.assertEqual(create.status_code, 403)

    def test_search_endpoint_returns_sorted_matches_with_ranges(self):
        self._create_item([self.blonde, self.long])
        self._create_item([self.black])
        self._create_item([self.long], quantity=0)
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/inventory-items/search/", {"q": "colour"})

        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual([row["display_name"] for row in results], ["Colour: Black", "Colour: Blonde, Length: 24in"])
        self.assertEqual(results[0]["matches"]["display_name"], [[0, 6]])

    def test_category_items_endpoint(self):
        self.client.force_authenticate(user=self.admin)

        created = self.client.post(
            f"/api/v1/attribute-categories/{self.length.id}/items/",
            {"name": "30in"},
            format="json",
        )
        listed = self.client.get(f"/api/v1/attribute-categories/{self.length.id}/items/")

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["category"], str(self.length.id))
        self.assertEqual([row["name"] for row in listed.json()], ["24in", "30in"])

    def test_operator_cannot_add_category_items(self):
        self.client.force_authenticate(user=self.operator)

        response = self.client.post(
            f"/api/v1/attribute-categories/{self.length.id}/items/",
            {"name": "30in"},
            format="json",
        )

        self.assertEqual(response.status_code, 403)

    def test_category_delete_cascades_items_and_keeps_inventory(self):
        item = self._create_item([self.long, self.black])
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/attribute-categories/{self.colour.id}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(AttributeItem.objects.filter(category_id=self.colour.id).exists())
        item.refresh_from_db()
        self.assertEqual([attribute.name for attribute in item.ordered_attributes()], ["24in"])

    def test_duplicate_category_title_is_rejected(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/attribute-categories/", {"title": "Colour"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_supplier_delete_keeps_items(self):
        item = self._create_item([self.black])
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/suppliers/{self.supplier.id}/")

        self.assertEqual(response.status_code, 204)
        item.refresh_from_db()
        self.assertIsNone(item.supplier_id)
