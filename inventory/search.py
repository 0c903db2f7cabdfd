"""In-memory search over inventory items.

Display names are derived from an item's attributes every time they are
needed and never stored on the row; the join is memoised on the item id and
the attribute set so repeated renders of an unchanged item are cheap.
"""

from __future__ import annotations

import logging
import re
import threading
import unicodedata
from functools import lru_cache
from typing import Any, Callable, Iterable, Mapping, Sequence

from common.utils import to_money

logger = logging.getLogger(__name__)

NO_ATTRIBUTES_LABEL = "N/A"
SEARCHABLE_FIELDS = ("display_name", "supplier_name", "quantity", "price")
DEFAULT_DEBOUNCE_SECONDS = 0.3


def attribute_label(category_title: str | None, item_name: str) -> str:
    if category_title:
        return f"{category_title}: {item_name}"
    return item_name


@lru_cache(maxsize=4096)
def _joined_display_name(item_id: str, attribute_key: tuple[tuple[str, str], ...]) -> str:
    if not attribute_key:
        return NO_ATTRIBUTES_LABEL
    return ", ".join(attribute_label(title, name) for title, name in attribute_key)


def _attribute_key(item: Any) -> tuple[tuple[str, str], ...]:
    if isinstance(item, Mapping):
        attributes = item.get("attributes") or []
        key = []
        for attribute in attributes:
            category = attribute.get("category") or {}
            title = attribute.get("category_title") or category.get("title") or ""
            key.append((title, attribute.get("name", "")))
        return tuple(key)

    links = sorted(item.attribute_links.all(), key=lambda link: link.position)
    return tuple(
        (link.attribute_item.category.title if link.attribute_item.category_id else "", link.attribute_item.name)
        for link in links
    )


def display_name(item: Any) -> str:
    """Return "Category: Item, Category: Item" for an inventory item or row dict."""
    item_id = item.get("id") if isinstance(item, Mapping) else item.pk
    return _joined_display_name(str(item_id), _attribute_key(item))


def _price_text(value: Any) -> str:
    if value is None or value == "":
        return ""
    return str(to_money(value))


def build_inventory_rows(items: Iterable[Any]) -> list[dict[str, Any]]:
    """Pre-join inventory items into flat rows the search engine works on.

    Model instances should come with `supplier` selected and
    `attribute_links__attribute_item__category` prefetched.
    """
    rows = []
    for item in items:
        if isinstance(item, Mapping):
            supplier = item.get("supplier") or {}
            rows.append(
                {
                    "id": str(item.get("id")),
                    "display_name": display_name(item),
                    "supplier_name": item.get("supplier_name") or supplier.get("name") or "",
                    "quantity": str(item.get("quantity", 0)),
                    "price": _price_text(item.get("cost_price")),
                    "last_stocked_at": item.get("last_stocked_at"),
                }
            )
            continue

        rows.append(
            {
                "id": str(item.pk),
                "display_name": display_name(item),
                "supplier_name": item.supplier.name if item.supplier_id else "",
                "quantity": str(item.quantity),
                "price": _price_text(item.cost_price),
                "last_stocked_at": item.last_stocked_at,
            }
        )
    return rows


def find_match_ranges(text: str, query: str) -> list[list[int]]:
    """Case-insensitive, non-overlapping `[start, end)` ranges of `query` in `text`."""
    if not query or not text:
        return []
    return [[match.start(), match.end()] for match in re.finditer(re.escape(query), text, re.IGNORECASE)]


def _collation_key(text: str) -> str:
    # Base letters first so "Ébène" files under E, as a locale collation would.
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(char for char in decomposed if not unicodedata.combining(char)).casefold()


def _sort_key(row: Mapping[str, Any]) -> tuple[str, str, str]:
    name = row.get("display_name") or ""
    return (_collation_key(name), name.casefold(), name)


def search_inventory(rows: Sequence[Mapping[str, Any]], query: str | None) -> list[dict[str, Any]]:
    query = (query or "").strip()
    results = []
    for row in rows:
        matches = {}
        if query:
            for field in SEARCHABLE_FIELDS:
                ranges = find_match_ranges(str(row.get(field) or ""), query)
                if ranges:
                    matches[field] = ranges
            if not matches:
                continue
        results.append({**row, "matches": matches})
    results.sort(key=_sort_key)
    return results


class Debouncer:
    """Run `callback` once after `wait` seconds without another `call()`.

    Each call cancels the pending timer and starts a new one with the latest
    arguments. After `close()` no callback fires, pending or future.
    """

    def __init__(
        self,
        callback: Callable[..., Any],
        wait: float = DEFAULT_DEBOUNCE_SECONDS,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self.callback = callback
        self.wait = wait
        self._timer_factory = timer_factory
        self._timer = None
        self._closed = False
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def call(self, *args: Any, **kwargs: Any) -> None:
        with self._lock:
            if self._closed:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = self._timer_factory(self.wait, self._fire, args=(self._generation, args, kwargs))
            timer.daemon = True
            self._timer = timer
            timer.start()

    __call__ = call

    def _fire(self, generation: int, args: tuple, kwargs: dict) -> None:
        with self._lock:
            # A timer cancelled after it started running must not fire.
            if self._closed or generation != self._generation:
                return
            self._timer = None
        self.callback(*args, **kwargs)

    def cancel(self) -> None:
        with self._lock:
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class InventorySearchSession:
    """Search-as-you-type over a fixed set of rows."""

    def __init__(
        self,
        rows: Sequence[Mapping[str, Any]],
        on_results: Callable[[list[dict[str, Any]]], Any],
        wait: float = DEFAULT_DEBOUNCE_SECONDS,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self.rows = list(rows)
        self.on_results = on_results
        self.query = ""
        self.results = search_inventory(self.rows, "")
        self._debouncer = Debouncer(self._run, wait=wait, timer_factory=timer_factory)

    def type(self, query: str) -> None:
        self.query = query
        self._debouncer.call(query)

    def _run(self, query: str) -> None:
        self.results = search_inventory(self.rows, query)
        logger.debug("inventory_search_ran query=%s results=%s", query, len(self.results))
        self.on_results(self.results)

    def close(self) -> None:
        self._debouncer.close()
