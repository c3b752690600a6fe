"""Delivery tracking for issued invoices.

A delivery moves ``pending -> out_for_delivery -> delivered``. Either of the
first two states may also end in ``failed`` or ``cancelled``. ``delivered``
requires the receiver's name and signature and is final.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, FrozenSet, List, Optional

from . import core_logic, data_manager, log
from .constants import DeliveryStatus, TableName

OPEN_DELIVERY_STATUSES: FrozenSet[DeliveryStatus] = frozenset(
    {DeliveryStatus.PENDING, DeliveryStatus.OUT_FOR_DELIVERY}
)


@dataclass(frozen=True)
class ScheduleDeliveryCommand:
    """User intent for scheduling delivery of an invoice."""

    invoice_id: str
    delivery_agent_id: str
    scheduled_date: Optional[date] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


def get_delivery(context: core_logic.RuntimeContext, delivery_id: str) -> data_manager.DeliveryRow:
    return core_logic.select_one(context, TableName.DELIVERIES, delivery_id, "delivery")


def list_deliveries(
    context: core_logic.RuntimeContext,
    *,
    agency_id: Optional[str] = None,
    delivery_agent_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    status: Optional[DeliveryStatus] = None,
) -> List[data_manager.DeliveryRow]:
    """Return deliveries, newest first, optionally filtered."""

    filters: Dict[str, Any] = {}
    if agency_id:
        filters["agency_id"] = agency_id
    if delivery_agent_id:
        filters["delivery_agent_id"] = delivery_agent_id
    if invoice_id:
        filters["invoice_id"] = invoice_id
    if status is not None:
        filters["status"] = DeliveryStatus(status).value
    return context.gateway.select(TableName.DELIVERIES, filters=filters, order_by="created_at", descending=True)


def schedule_delivery(
    context: core_logic.RuntimeContext,
    actor: core_logic.Actor,
    command: ScheduleDeliveryCommand,
) -> data_manager.DeliveryRow:
    """Create a ``pending`` delivery for an existing invoice.

    An invoice can have at most one open (pending or out for delivery)
    delivery at a time.

    Raises:
        BusinessRuleViolation: If no delivery agent is given or the invoice
            already has an open delivery.
        MissingReferenceError: If the invoice does not exist.
    """

    if not command.delivery_agent_id:
        raise core_logic.BusinessRuleViolation("A delivery agent is required")
    invoice = core_logic.get_invoice(context, command.invoice_id)
    core_logic.require_agency_access(actor, invoice.agency_id)

    open_deliveries = [
        row
        for row in list_deliveries(context, invoice_id=invoice.id)
        if DeliveryStatus(row.status) in OPEN_DELIVERY_STATUSES
    ]
    if open_deliveries:
        log.warning("Invoice '%s' already has open delivery '%s'", invoice.invoice_number, open_deliveries[0].id)
        raise core_logic.BusinessRuleViolation(f"Invoice '{invoice.invoice_number}' already has an open delivery")

    stamp = core_logic.timestamp_text(command.timestamp)
    delivery = data_manager.DeliveryRow(
        id=core_logic.generate_record_id(),
        invoice_id=invoice.id,
        delivery_agent_id=command.delivery_agent_id,
        agency_id=invoice.agency_id,
        status=DeliveryStatus.PENDING.value,
        scheduled_date=command.scheduled_date.isoformat() if command.scheduled_date else None,
        delivered_at=None,
        latitude=None,
        longitude=None,
        location_status=None,
        signature=None,
        notes=command.notes,
        received_by_name=None,
        received_by_phone=None,
        created_by=actor.user_id,
        created_at=stamp,
        updated_at=stamp,
    )
    context.gateway.insert(TableName.DELIVERIES, [delivery])
    log.info(
        "Scheduled delivery '%s' of invoice '%s' for agent '%s'",
        delivery.id,
        invoice.invoice_number,
        command.delivery_agent_id,
    )
    return delivery


def _transition(
    context: core_logic.RuntimeContext,
    actor: core_logic.Actor,
    delivery_id: str,
    target: DeliveryStatus,
    values: Dict[str, Any],
    timestamp: Optional[datetime],
) -> data_manager.DeliveryRow:
    delivery = get_delivery(context, delivery_id)
    if actor.user_id != delivery.delivery_agent_id:
        core_logic.require_agency_access(actor, delivery.agency_id)

    current = DeliveryStatus(delivery.status)
    allowed = _ALLOWED_SOURCES[target]
    if current not in allowed:
        log.warning("Delivery '%s' cannot move from '%s' to '%s'", delivery.id, current.value, target.value)
        raise core_logic.InvalidTransitionError(
            f"Delivery '{delivery.id}' is '{current.value}' and cannot become '{target.value}'"
        )

    values = {**values, "status": target.value, "updated_at": core_logic.timestamp_text(timestamp)}
    updated = context.gateway.update(TableName.DELIVERIES, delivery.id, values)
    log.info("Delivery '%s' moved to '%s' by '%s'", delivery.id, target.value, actor.user_id)
    return updated


_ALLOWED_SOURCES: Dict[DeliveryStatus, FrozenSet[DeliveryStatus]] = {
    DeliveryStatus.OUT_FOR_DELIVERY: frozenset({DeliveryStatus.PENDING}),
    DeliveryStatus.DELIVERED: frozenset({DeliveryStatus.OUT_FOR_DELIVERY}),
    DeliveryStatus.FAILED: OPEN_DELIVERY_STATUSES,
    DeliveryStatus.CANCELLED: OPEN_DELIVERY_STATUSES,
}


def dispatch_delivery(
    context: core_logic.RuntimeContext,
    actor: core_logic.Actor,
    delivery_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.DeliveryRow:
    """Mark a pending delivery as out for delivery."""

    return _transition(context, actor, delivery_id, DeliveryStatus.OUT_FOR_DELIVERY, {}, timestamp)


def complete_delivery(
    context: core_logic.RuntimeContext,
    actor: core_logic.Actor,
    delivery_id: str,
    *,
    signature: str,
    received_by_name: str,
    received_by_phone: Optional[str] = None,
    notes: Optional[str] = None,
    location: Optional[core_logic.Location] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.DeliveryRow:
    """Record the hand-over of a delivery that is out for delivery.

    Args:
        context (RuntimeContext): Runtime context providing gateway access.
        actor (Actor): Delivering agent or a user of the owning agency.
        delivery_id (str): Delivery being completed.
        signature (str): Receiver's signature blob; must not be empty.
        received_by_name (str): Name of the person who took the goods.
        received_by_phone (str | None): Optional receiver phone number.
        notes (str | None): Optional hand-over notes.
        location (Location | None): Capture outcome at the drop-off point.
        timestamp (datetime | None): Delivery time override.

    Returns:
        data_manager.DeliveryRow: The delivered record.

    Raises:
        BusinessRuleViolation: If the signature or receiver name is missing.
        InvalidTransitionError: If the delivery is not out for delivery.
    """

    if not signature or not signature.strip():
        raise core_logic.BusinessRuleViolation("A receiver signature is required")
    if not received_by_name or not received_by_name.strip():
        raise core_logic.BusinessRuleViolation("The receiver's name is required")

    location = location or core_logic.Location.unavailable("Location not captured")
    values: Dict[str, Any] = {
        "signature": signature,
        "received_by_name": received_by_name.strip(),
        "received_by_phone": received_by_phone,
        "delivered_at": core_logic.timestamp_text(timestamp),
        "latitude": location.latitude,
        "longitude": location.longitude,
        "location_status": location.status.value,
    }
    if notes:
        values["notes"] = notes
    return _transition(context, actor, delivery_id, DeliveryStatus.DELIVERED, values, timestamp)


def fail_delivery(
    context: core_logic.RuntimeContext,
    actor: core_logic.Actor,
    delivery_id: str,
    *,
    reason: str,
    timestamp: Optional[datetime] = None,
) -> data_manager.DeliveryRow:
    """Mark an open delivery as failed, keeping ``reason`` in its notes."""

    if not reason or not reason.strip():
        raise core_logic.BusinessRuleViolation("A failure reason is required")
    return _transition(context, actor, delivery_id, DeliveryStatus.FAILED, {"notes": reason.strip()}, timestamp)


def cancel_delivery(
    context: core_logic.RuntimeContext,
    actor: core_logic.Actor,
    delivery_id: str,
    *,
    reason: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.DeliveryRow:
    values = {"notes": reason.strip()} if reason else {}
    return _transition(context, actor, delivery_id, DeliveryStatus.CANCELLED, values, timestamp)
