"""Disputes raised against products, product categories or customers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from . import core_logic, data_manager, log
from .constants import DisputePriority, DisputeStatus, DisputeType, TableName, UserRole

_NEXT_STATUSES: Dict[DisputeStatus, FrozenSet[DisputeStatus]] = {
    DisputeStatus.OPEN: frozenset({DisputeStatus.IN_PROGRESS, DisputeStatus.CLOSED}),
    DisputeStatus.IN_PROGRESS: frozenset({DisputeStatus.RESOLVED, DisputeStatus.CLOSED}),
    DisputeStatus.RESOLVED: frozenset({DisputeStatus.CLOSED}),
    DisputeStatus.CLOSED: frozenset(),
}


@dataclass(frozen=True)
class OpenDisputeCommand:
    """User intent for raising a dispute and assigning it."""

    dispute_type: DisputeType
    target_id: str
    target_name: str
    reason: str
    description: str
    assigned_to: str
    priority: DisputePriority = DisputePriority.MEDIUM
    sales_order_id: Optional[str] = None
    timestamp: Optional[datetime] = None


def get_dispute(context: core_logic.RuntimeContext, dispute_id: str) -> data_manager.DisputeRow:
    return core_logic.select_one(context, TableName.DISPUTES, dispute_id, "dispute")


def list_disputes(
    context: core_logic.RuntimeContext,
    *,
    status: Optional[DisputeStatus] = None,
    assigned_to: Optional[str] = None,
    priority: Optional[DisputePriority] = None,
) -> List[data_manager.DisputeRow]:
    filters: Dict[str, Any] = {}
    if status is not None:
        filters["status"] = DisputeStatus(status).value
    if assigned_to:
        filters["assigned_to"] = assigned_to
    if priority is not None:
        filters["priority"] = DisputePriority(priority).value
    return context.gateway.select(TableName.DISPUTES, filters=filters, order_by="created_at", descending=True)


def open_dispute(
    context: core_logic.RuntimeContext,
    actor: core_logic.Actor,
    command: OpenDisputeCommand,
) -> data_manager.DisputeRow:
    """Raise a new dispute in ``open`` status.

    Raises:
        PermissionDeniedError: If ``actor`` is an agent.
        BusinessRuleViolation: If the target, reason or assignee is missing.
        MissingReferenceError: If ``sales_order_id`` names an unknown order.
    """

    if actor.role is UserRole.AGENT:
        raise core_logic.PermissionDeniedError("Agents cannot open disputes")
    if not command.target_id:
        raise core_logic.BusinessRuleViolation("A dispute needs a target")
    if not command.reason or not command.reason.strip():
        raise core_logic.BusinessRuleViolation("A dispute reason is required")
    if not command.assigned_to:
        raise core_logic.BusinessRuleViolation("A dispute must be assigned")
    if command.sales_order_id:
        core_logic.get_order(context, command.sales_order_id)

    stamp = core_logic.timestamp_text(command.timestamp)
    dispute = data_manager.DisputeRow(
        id=core_logic.generate_record_id(),
        dispute_type=DisputeType(command.dispute_type).value,
        target_id=command.target_id,
        target_name=command.target_name,
        reason=command.reason.strip(),
        description=command.description,
        assigned_to=command.assigned_to,
        assigned_by=actor.user_id,
        status=DisputeStatus.OPEN.value,
        priority=DisputePriority(command.priority).value,
        sales_order_id=command.sales_order_id,
        created_at=stamp,
        updated_at=stamp,
    )
    context.gateway.insert(TableName.DISPUTES, [dispute])
    log.info(
        "Opened %s dispute '%s' on '%s' assigned to '%s'",
        dispute.priority,
        dispute.id,
        dispute.target_id,
        dispute.assigned_to,
    )
    return dispute


def update_dispute_status(
    context: core_logic.RuntimeContext,
    actor: core_logic.Actor,
    dispute_id: str,
    status: DisputeStatus,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.DisputeRow:
    """Advance a dispute along ``open -> in_progress -> resolved -> closed``.

    Any state other than ``closed`` may also jump straight to ``closed``.
    Only the assignee, the assigner or a superuser may change the status.

    Raises:
        PermissionDeniedError: If ``actor`` is not involved in the dispute.
        InvalidTransitionError: If the move is not allowed.
    """

    dispute = get_dispute(context, dispute_id)
    if not actor.is_superuser and actor.user_id not in (dispute.assigned_to, dispute.assigned_by):
        raise core_logic.PermissionDeniedError(f"User '{actor.user_id}' is not involved in dispute '{dispute.id}'")

    current = DisputeStatus(dispute.status)
    target = DisputeStatus(status)
    if target not in _NEXT_STATUSES[current]:
        log.warning("Dispute '%s' cannot move from '%s' to '%s'", dispute.id, current.value, target.value)
        raise core_logic.InvalidTransitionError(
            f"Dispute '{dispute.id}' is '{current.value}' and cannot become '{target.value}'"
        )

    updated = context.gateway.update(
        TableName.DISPUTES,
        dispute.id,
        {"status": target.value, "updated_at": core_logic.timestamp_text(timestamp)},
    )
    log.info("Dispute '%s' moved to '%s' by '%s'", dispute.id, target.value, actor.user_id)
    return updated
