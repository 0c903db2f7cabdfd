"""In-place editing of an existing order.

`OrderDetailEditor` tracks the editable fields of one order against the
snapshot taken when editing began and sends a single update containing only
what changed. `StatusControl` handles order/payment status on its own, one
confirmed change at a time, and is disabled while the editor is editing.

Both talk to persistence through a gateway object; `ServiceGateway` is the
ORM-backed one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from common.exceptions import EditNotPermitted, FieldValidationError, InvalidTransition
from common.permissions import get_user_role
from common.utils import to_money
from core.models import User
from sales import services
from sales.models import Order
from sales.reconciliation import (
    NewCustomerDraft,
    OutcomeKind,
    Reconciled,
    ReconciliationSession,
    Selected,
    validate_customer_fields,
)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("customer", "delivery_method", "delivery_charge", "notes", "wigger")
STATUS_CHOICES = {
    "order_status": Order.OrderStatus,
    "payment_status": Order.PaymentStatus,
}


class ServiceGateway:
    """Gateway that applies editor and status-control calls through `sales.services`."""

    def __init__(self, actor):
        self.actor = actor

    def find_customers(self, field, query):
        return services.find_customers(field, query)

    def apply_reconciliation(self, outcome):
        return services.apply_reconciliation(outcome)

    def update_order(self, order_id, changes):
        order = Order.objects.get(pk=order_id)
        services.update_order(order, changes, self.actor)
        return order

    def update_status(self, order_id, changes):
        (field, value), = changes.items()
        order = Order.objects.get(pk=order_id)
        return services.change_status(order, field, value, self.actor)


def _id(value: Any) -> str | None:
    if value in (None, ""):
        return None
    if isinstance(value, Mapping):
        value = value.get("id")
    else:
        value = getattr(value, "pk", value)
    return str(value) if value is not None else None


class OrderDetailEditor:
    def __init__(self, order: Mapping[str, Any], actor):
        self.order = dict(order)
        self.actor = actor
        self.editing = False
        self.baseline: dict[str, Any] = {}
        self.values: dict[str, Any] = {}
        self.customer_session: ReconciliationSession | None = None
        self.last_error: str | None = None

    @property
    def can_edit(self) -> bool:
        return get_user_role(self.actor) == User.Role.SUPER_ADMIN

    def _snapshot(self) -> dict[str, Any]:
        return {
            "customer": _id(self.order.get("customer")),
            "delivery_method": self.order.get("delivery_method"),
            "delivery_charge": str(to_money(self.order.get("delivery_charge"))),
            "notes": self.order.get("notes") or "",
            "wigger": _id(self.order.get("wigger")),
        }

    def begin_edit(self) -> None:
        if not self.can_edit:
            raise EditNotPermitted("Only a super admin can edit orders.")
        self.baseline = self._snapshot()
        self.values = dict(self.baseline)
        self.customer_session = ReconciliationSession(self.order.get("customer_detail"))
        self.last_error = None
        self.editing = True

    def cancel_edit(self) -> None:
        self.editing = False
        self.values = {}
        self.customer_session = None

    def _require_editing(self) -> None:
        if not self.editing:
            raise InvalidTransition("Order is not in edit mode.")

    def set_delivery_method(self, value: str) -> None:
        self._require_editing()
        if value not in Order.DeliveryMethod.values:
            raise FieldValidationError({"delivery_method": "Choose pickup or delivery."})
        self.values["delivery_method"] = value

    def set_delivery_charge(self, value: Any) -> None:
        self._require_editing()
        try:
            charge = to_money(value)
        except ArithmeticError:
            raise FieldValidationError({"delivery_charge": "Enter a valid amount."})
        if charge < 0:
            raise FieldValidationError({"delivery_charge": "Delivery charge must not be negative."})
        self.values["delivery_charge"] = str(charge)

    def set_notes(self, value: str | None) -> None:
        self._require_editing()
        self.values["notes"] = value or ""

    def set_wigger(self, wigger: Any) -> None:
        self._require_editing()
        self.values["wigger"] = _id(wigger)

    def set_customer(self, customer: Any) -> None:
        self._require_editing()
        self.values["customer"] = _id(customer)

    def changed_fields(self) -> dict[str, Any]:
        return {
            name: self.values[name]
            for name in EDITABLE_FIELDS
            if name in self.values and self.values[name] != self.baseline.get(name)
        }

    def _resolve_customer(self, gateway) -> None:
        session = self.customer_session
        if session is None:
            return
        state = session.state
        if isinstance(state, Selected) and session.outcome().kind is OutcomeKind.EXISTING_UNCHANGED:
            session.reconcile()
        elif isinstance(state, (Selected, NewCustomerDraft)):
            session.save(gateway.apply_reconciliation)
        state = session.state
        if isinstance(state, Reconciled) and state.customer_id:
            self.values["customer"] = state.customer_id

    def save(self, gateway) -> dict[str, Any]:
        """Persist the changed fields in one update call.

        A new-customer draft with missing required fields is rejected before
        anything reaches the gateway. Any failure keeps the editor in edit
        mode with the typed values intact.
        """
        self._require_editing()
        session = self.customer_session
        if session is not None and isinstance(session.state, NewCustomerDraft):
            errors = validate_customer_fields(session.state.customer_payload())
            if errors:
                self.last_error = "Please fill in the required customer fields."
                raise FieldValidationError(errors, message=self.last_error)

        try:
            self._resolve_customer(gateway)
            changes = self.changed_fields()
            if changes:
                gateway.update_order(self.order["id"], changes)
        except Exception as exc:
            self.last_error = str(getattr(exc, "message", None) or exc)
            logger.warning("order_edit_failed error=%s", self.last_error, extra={"order_id": str(self.order.get("id"))})
            raise

        self.order.update(changes)
        self.last_error = None
        self.editing = False
        self.customer_session = None
        return changes


@dataclass(frozen=True)
class PendingStatusChange:
    field: str
    value: str
    previous: str

    @property
    def message(self) -> str:
        label = self.field.replace("_", " ")
        return f"Change {label} from {self.previous} to {self.value}?"


class StatusControl:
    def __init__(self, order: Mapping[str, Any], editor: OrderDetailEditor | None = None):
        self.order_id = order["id"]
        self.values = {field: order.get(field) for field in STATUS_CHOICES}
        self.editor = editor
        self.pending: PendingStatusChange | None = None

    @property
    def disabled(self) -> bool:
        return self.editor is not None and self.editor.editing

    def displayed(self, field: str) -> str:
        if self.pending is not None and self.pending.field == field:
            return self.pending.value
        return self.values[field]

    def request_change(self, field: str, value: str) -> PendingStatusChange:
        if self.disabled:
            raise InvalidTransition("Finish editing the order before changing its status.")
        choices = STATUS_CHOICES.get(field)
        if choices is None:
            raise FieldValidationError({"field": "Use order_status or payment_status."})
        if value not in choices.values:
            raise FieldValidationError({field: f"'{value}' is not a valid {field}."})
        if value == self.values[field]:
            raise InvalidTransition(f"Order is already {value}.")
        self.pending = PendingStatusChange(field=field, value=value, previous=self.values[field])
        return self.pending

    def confirm(self, gateway) -> dict[str, str]:
        if self.pending is None:
            raise InvalidTransition("No status change to confirm.")
        pending = self.pending
        changes = {pending.field: pending.value}
        try:
            gateway.update_status(self.order_id, changes)
        finally:
            self.pending = None
        self.values[pending.field] = pending.value
        return changes

    def cancel(self) -> None:
        self.pending = None
