"""Customer/address reconciliation for attaching an order to a customer.

A session walks through explicit states::

    Viewing -> Searching -> Selected | NewCustomerDraft -> (AddingAddress) -> Reconciled

and ends with exactly one `ReconciliationOutcome`. Each state is an immutable
value; a transition replaces the session's state and a failed search or save
puts the previous state back untouched.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Mapping, Union

from common.exceptions import FieldValidationError, InvalidTransition

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SEARCH_FIELDS = ("email", "phone_number")
CUSTOMER_FIELDS = ("full_name", "email", "phone_number", "head_size")


def validate_customer_fields(data: Mapping[str, Any]) -> dict[str, str]:
    """Return field errors for a customer payload; empty when valid."""
    errors = {}
    full_name = (data.get("full_name") or "").strip()
    email = (data.get("email") or "").strip()
    phone_number = (data.get("phone_number") or "").strip()

    if not full_name:
        errors["full_name"] = "Full name is required."
    if not email:
        errors["email"] = "Email is required."
    elif not EMAIL_RE.match(email):
        errors["email"] = "Enter a valid email address."
    if not phone_number:
        errors["phone_number"] = "Phone number is required."
    return errors


@dataclass(frozen=True)
class AddressSnapshot:
    id: str
    address: str
    is_primary: bool = False


@dataclass(frozen=True)
class CustomerSnapshot:
    id: str
    full_name: str
    email: str
    phone_number: str
    head_size: str = ""
    addresses: tuple[AddressSnapshot, ...] = ()

    @classmethod
    def from_obj(cls, obj: Any) -> "CustomerSnapshot":
        if isinstance(obj, CustomerSnapshot):
            return obj
        if isinstance(obj, Mapping):
            get = obj.get
            raw_addresses = get("addresses") or []
        else:
            def get(name, default=None):
                return getattr(obj, name, default)

            raw_addresses = obj.addresses.all()

        addresses = []
        for address in raw_addresses:
            if isinstance(address, Mapping):
                addresses.append(
                    AddressSnapshot(str(address.get("id")), address.get("address", ""), bool(address.get("is_primary")))
                )
            else:
                addresses.append(AddressSnapshot(str(address.id), address.address, address.is_primary))

        return cls(
            id=str(get("id")),
            full_name=get("full_name") or "",
            email=get("email") or "",
            phone_number=get("phone_number") or "",
            head_size=get("head_size") or "",
            addresses=tuple(addresses),
        )

    @property
    def primary_address(self) -> AddressSnapshot | None:
        return next((address for address in self.addresses if address.is_primary), None)

    def default_address_id(self) -> str | None:
        primary = self.primary_address
        if primary is not None:
            return primary.id
        return self.addresses[0].id if self.addresses else None


@dataclass(frozen=True)
class NewAddress:
    address: str
    is_primary: bool = False

    def as_payload(self) -> dict[str, Any]:
        return {"address": self.address, "is_primary": self.is_primary}


@dataclass(frozen=True)
class Viewing:
    customer: CustomerSnapshot | None = None


@dataclass(frozen=True)
class Searching:
    query: str
    field: str
    previous: "State"


@dataclass(frozen=True)
class Selected:
    customer: CustomerSnapshot
    selected_address_id: str | None = None
    primary_address_id: str | None = None
    pending_address: NewAddress | None = None


@dataclass(frozen=True)
class NewCustomerDraft:
    full_name: str = ""
    email: str = ""
    phone_number: str = ""
    head_size: str = ""
    pending_address: NewAddress | None = None

    def customer_payload(self) -> dict[str, str]:
        return {name: getattr(self, name).strip() for name in CUSTOMER_FIELDS}


@dataclass(frozen=True)
class AddingAddress:
    previous: Union[Selected, NewCustomerDraft]
    address: str = ""
    is_primary: bool = False


@dataclass(frozen=True)
class Reconciled:
    outcome: "ReconciliationOutcome"
    previous: Union[Selected, NewCustomerDraft]
    customer_id: str | None = None


State = Union[Viewing, Searching, Selected, NewCustomerDraft, AddingAddress, Reconciled]


class OutcomeKind(enum.Enum):
    EXISTING_UNCHANGED = "existing_unchanged"
    EXISTING_ADD_ADDRESS = "existing_add_address"
    EXISTING_REPLACE_ADDRESSES = "existing_replace_addresses"
    NEW_CUSTOMER = "new_customer"


@dataclass(frozen=True)
class ReconciliationOutcome:
    kind: OutcomeKind
    customer_id: str | None = None
    selected_address_id: str | None = None
    customer: dict[str, str] | None = None
    new_address: NewAddress | None = None
    addresses: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    def as_payload(self) -> dict[str, Any]:
        """The single mutation request for this outcome."""
        if self.kind is OutcomeKind.EXISTING_UNCHANGED:
            return {}
        if self.kind is OutcomeKind.EXISTING_ADD_ADDRESS:
            return {"new_address": self.new_address.as_payload()}
        if self.kind is OutcomeKind.EXISTING_REPLACE_ADDRESSES:
            return {"updated_addresses": [dict(address) for address in self.addresses]}
        payload = dict(self.customer or {})
        if self.new_address is not None:
            payload["new_address"] = self.new_address.as_payload()
        return payload


class ReconciliationSession:
    def __init__(self, customer: Any = None):
        snapshot = CustomerSnapshot.from_obj(customer) if customer is not None else None
        self._state: State = Viewing(customer=snapshot)
        self.last_error: str | None = None

    @property
    def state(self) -> State:
        return self._state

    def _require(self, *allowed: type) -> None:
        if not isinstance(self._state, allowed):
            names = ", ".join(state.__name__ for state in allowed)
            raise InvalidTransition(f"Expected state {names}, session is {type(self._state).__name__}.")

    def _fail(self, message: str, errors: Mapping[str, str] | None = None) -> None:
        self.last_error = message
        raise FieldValidationError(errors or {}, message=message)

    # Search

    def begin_search(self, query: str, field: str) -> Searching:
        self._require(Viewing, Selected, NewCustomerDraft)
        query = (query or "").strip()
        if field not in SEARCH_FIELDS:
            self._fail("Search by email or phone number.", {"field": "Search by email or phone number."})
        if not query:
            self._fail("Enter a search term.", {"query": "Enter a search term."})
        self.last_error = None
        self._state = Searching(query=query, field=field, previous=self._state)
        return self._state

    def complete_search(self, results: Iterable[Any]) -> State:
        self._require(Searching)
        searching = self._state
        customers = [CustomerSnapshot.from_obj(result) for result in results]
        if not customers:
            draft = searching.previous if isinstance(searching.previous, NewCustomerDraft) else NewCustomerDraft()
            self._state = replace(draft, **{searching.field: searching.query})
        else:
            customer = customers[0]
            default_id = customer.default_address_id()
            primary = customer.primary_address
            self._state = Selected(
                customer=customer,
                selected_address_id=default_id,
                primary_address_id=primary.id if primary else None,
            )
        return self._state

    def fail_search(self, error: Any) -> State:
        self._require(Searching)
        self.last_error = str(error)
        self._state = self._state.previous
        return self._state

    def search(self, query: str, field: str, lookup: Callable[[str, str], Iterable[Any]]) -> State:
        searching = self.begin_search(query, field)
        try:
            results = list(lookup(searching.field, searching.query))
        except Exception as exc:
            self.fail_search(exc)
            logger.warning("customer_search_failed field=%s error=%s", field, exc)
            raise
        return self.complete_search(results)

    # Editing

    def update_draft(self, **values: str) -> NewCustomerDraft:
        self._require(NewCustomerDraft)
        unknown = set(values) - set(CUSTOMER_FIELDS)
        if unknown:
            raise InvalidTransition(f"Unknown customer fields: {', '.join(sorted(unknown))}.")
        self._state = replace(self._state, **values)
        return self._state

    def select_address(self, address_id: str) -> Selected:
        self._require(Selected)
        self._known_address(address_id)
        self._state = replace(self._state, selected_address_id=address_id)
        return self._state

    def set_primary(self, address_id: str) -> Selected:
        self._require(Selected)
        self._known_address(address_id)
        self._state = replace(self._state, primary_address_id=address_id, selected_address_id=address_id)
        return self._state

    def _known_address(self, address_id: str) -> None:
        if address_id not in {address.id for address in self._state.customer.addresses}:
            raise InvalidTransition(f"Address {address_id} does not belong to this customer.")

    def start_adding_address(self) -> AddingAddress:
        self._require(Selected, NewCustomerDraft)
        pending = self._state.pending_address
        self._state = AddingAddress(
            previous=self._state,
            address=pending.address if pending else "",
            is_primary=pending.is_primary if pending else False,
        )
        return self._state

    def update_new_address(self, address: str | None = None, is_primary: bool | None = None) -> AddingAddress:
        self._require(AddingAddress)
        changes = {}
        if address is not None:
            changes["address"] = address
        if is_primary is not None:
            changes["is_primary"] = bool(is_primary)
        self._state = replace(self._state, **changes)
        return self._state

    def cancel_adding_address(self) -> State:
        self._require(AddingAddress)
        self._state = self._state.previous
        return self._state

    def confirm_new_address(self) -> State:
        self._require(AddingAddress)
        adding = self._state
        text = adding.address.strip()
        if not text:
            self._fail("Address cannot be empty.", {"address": "Address cannot be empty."})
        previous = adding.previous
        is_primary = adding.is_primary
        # A customer's first address is always the primary one.
        if isinstance(previous, NewCustomerDraft) or not previous.customer.addresses:
            is_primary = True
        self.last_error = None
        self._state = replace(previous, pending_address=NewAddress(address=text, is_primary=is_primary))
        return self._state

    # Outcome

    def outcome(self) -> ReconciliationOutcome:
        """Compute the outcome for the current state without transitioning."""
        self._require(Selected, NewCustomerDraft)
        if isinstance(self._state, NewCustomerDraft):
            return self._new_customer_outcome(self._state)
        return self._existing_customer_outcome(self._state)

    def _new_customer_outcome(self, draft: NewCustomerDraft) -> ReconciliationOutcome:
        payload = draft.customer_payload()
        errors = validate_customer_fields(payload)
        if errors:
            self._fail("Please fill in the required customer fields.", errors)
        payload["email"] = payload["email"].lower()
        return ReconciliationOutcome(
            kind=OutcomeKind.NEW_CUSTOMER,
            customer=payload,
            new_address=draft.pending_address,
        )

    def _existing_customer_outcome(self, selected: Selected) -> ReconciliationOutcome:
        customer = selected.customer
        current_primary = customer.primary_address
        current_primary_id = current_primary.id if current_primary else None
        pending = selected.pending_address
        primary_changed = selected.primary_address_id is not None and selected.primary_address_id != current_primary_id

        if pending is None and not primary_changed:
            return ReconciliationOutcome(
                kind=OutcomeKind.EXISTING_UNCHANGED,
                customer_id=customer.id,
                selected_address_id=selected.selected_address_id,
            )

        if pending is not None and not primary_changed and (not pending.is_primary or not customer.addresses):
            return ReconciliationOutcome(
                kind=OutcomeKind.EXISTING_ADD_ADDRESS,
                customer_id=customer.id,
                selected_address_id=selected.selected_address_id,
                new_address=pending,
            )

        # Any primary change on a customer with addresses rewrites the whole list.
        if pending is not None and pending.is_primary:
            primary_id = None
        else:
            primary_id = selected.primary_address_id or current_primary_id or customer.addresses[0].id

        addresses = [
            {"id": address.id, "address": address.address, "is_primary": address.id == primary_id}
            for address in customer.addresses
        ]
        if pending is not None:
            addresses.append({"address": pending.address, "is_primary": primary_id is None})

        return ReconciliationOutcome(
            kind=OutcomeKind.EXISTING_REPLACE_ADDRESSES,
            customer_id=customer.id,
            selected_address_id=selected.selected_address_id if pending is None or not pending.is_primary else None,
            addresses=tuple(addresses),
        )

    def reconcile(self) -> ReconciliationOutcome:
        outcome = self.outcome()
        self._state = Reconciled(outcome=outcome, previous=self._state, customer_id=outcome.customer_id)
        return outcome

    def save(self, apply: Callable[[ReconciliationOutcome], Any]) -> Any:
        """Reconcile and persist through `apply`; on failure restore the previous state."""
        outcome = self.outcome()
        previous = self._state
        try:
            customer = apply(outcome)
        except Exception as exc:
            self._state = previous
            self.last_error = str(getattr(exc, "message", None) or exc)
            logger.warning("customer_reconciliation_failed kind=%s error=%s", outcome.kind.value, self.last_error)
            raise
        customer_id = str(getattr(customer, "id", None) or (customer or {}).get("id") or outcome.customer_id)
        self.last_error = None
        self._state = Reconciled(outcome=outcome, previous=previous, customer_id=customer_id)
        return customer
