"""Business logic layer for the field sales back office.

This module holds the order lifecycle (creation, approval, invoicing,
closing), the invoice issuance step, and the return reversal step. It talks
to storage exclusively through the :class:`~field_sales.data_manager.DataGateway`
carried by the :class:`RuntimeContext`, so every operation can run against
the in-memory gateway in tests, the local workbook, or the hosted REST store.

Multi-step writes (order plus items, invoice plus items plus stock events)
are not atomic on any backend. Each step registers an undo callback; when a
later step fails the callbacks run in reverse order and the original
:class:`~field_sales.data_manager.PersistenceError` is re-raised.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    INVOICEABLE_ORDER_STATUSES,
    TERMINAL_ORDER_STATUSES,
    BackendKind,
    InventoryFailurePolicy,
    InventoryTransactionType,
    LocationStatus,
    OrderStatus,
    ReturnStatus,
    TableName,
    UserRole,
)
from .discount_policy import (
    CENT,
    Discount,
    DiscountPolicy,
    DiscountVerdict,
    discount_rule_applies,
    discount_rule_to_discount,
    evaluate_discount,
    quantize_money,
    quantize_percentage,
    rule_is_redeemable,
)


ORDER_NUMBER_PREFIX = "SO"
INVOICE_NUMBER_PREFIX = "INV"
RETURN_NUMBER_PREFIX = "RET"


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced order, invoice, item, return or rule is unknown."""


class InvalidTransitionError(BusinessRuleViolation):
    """Raised when a record is asked to move to a state its lifecycle forbids."""


class PermissionDeniedError(BusinessRuleViolation):
    """Raised when the acting user's role does not allow the operation."""


class LocationUnavailableError(Exception):
    """Raised by location providers that cannot produce a position fix."""


@dataclass(frozen=True)
class Actor:
    """The authenticated user on whose behalf an operation runs."""

    user_id: str
    role: UserRole
    agency_id: Optional[str] = None

    @property
    def is_superuser(self) -> bool:
        return self.role is UserRole.SUPERUSER


@dataclass(frozen=True)
class Location:
    """A captured position or an explicit record that none was available."""

    status: LocationStatus
    latitude: Optional[Decimal] = None
    longitude: Optional[Decimal] = None
    reason: Optional[str] = None

    @classmethod
    def captured(cls, latitude: Any, longitude: Any) -> "Location":
        lat = Decimal(str(latitude))
        lon = Decimal(str(longitude))
        if not Decimal("-90") <= lat <= Decimal("90"):
            raise ValueError(f"Latitude out of range: {lat}")
        if not Decimal("-180") <= lon <= Decimal("180"):
            raise ValueError(f"Longitude out of range: {lon}")
        return cls(LocationStatus.CAPTURED, lat, lon)

    @classmethod
    def unavailable(cls, reason: str) -> "Location":
        return cls(LocationStatus.UNAVAILABLE, reason=reason)


LocationProvider = Callable[[], Tuple[Any, Any]]


def capture_location(provider: Optional[LocationProvider]) -> Location:
    """Ask ``provider`` for a position, returning an explicit outcome either way.

    Args:
        provider (Callable | None): Zero-argument callable returning
            ``(latitude, longitude)`` or raising
            :class:`LocationUnavailableError` when the device denies or lacks
            location access.

    Returns:
        Location: Captured coordinates, or an ``unavailable`` location whose
            ``reason`` explains why. Coordinates are never substituted.
    """

    if provider is None:
        return Location.unavailable("No location provider configured")
    try:
        latitude, longitude = provider()
    except LocationUnavailableError as exc:
        log.warning("Location unavailable: %s", exc)
        return Location.unavailable(str(exc) or "Location unavailable")
    return Location.captured(latitude, longitude)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the data gateway used by the BLL."""

    settings: data_manager.ConfigSettings
    gateway: data_manager.DataGateway
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)

    @property
    def policy(self) -> DiscountPolicy:
        return DiscountPolicy(
            default_limit=self.settings.default_discount_limit,
            zero_subtotal_requires_approval=self.settings.zero_subtotal_requires_approval,
        )


# ---------------------------------------------------------------------------
# Commands and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderItemInput:
    """One requested line of a new sales order."""

    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    color: str = ""
    size: str = ""


@dataclass(frozen=True)
class CreateOrderCommand:
    """User intent for placing a sales order.

    ``agency_id`` defaults to the actor's agency. A ``discount_rule_id``
    replaces the manual ``discount``; supplying both is rejected.
    """

    customer_id: str
    customer_name: str
    items: Sequence[OrderItemInput]
    discount: Discount = field(default_factory=Discount.none)
    agency_id: Optional[str] = None
    discount_rule_id: Optional[str] = None
    location: Optional[Location] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class InvoiceLine:
    """A line to print on an invoice.

    ``sales_order_item_id`` links the line back to the order item it bills;
    it is ``None`` on direct invoices.
    """

    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    color: str = ""
    size: str = ""
    sales_order_item_id: Optional[str] = None


@dataclass(frozen=True)
class InvoiceLineSelection:
    """Quantity of one sales order item to include on the next invoice."""

    order_item_id: str
    quantity: int


@dataclass(frozen=True)
class ConvertToInvoiceCommand:
    """User intent for invoicing (part of) an approved sales order.

    An empty ``lines`` selection invoices every remaining quantity.
    """

    order_id: str
    signature: str
    lines: Sequence[InvoiceLineSelection] = ()
    location: Optional[Location] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class DirectInvoiceCommand:
    """User intent for an invoice without a preceding sales order."""

    customer_id: str
    customer_name: str
    lines: Sequence[InvoiceLine]
    signature: str
    discount: Discount = field(default_factory=Discount.none)
    agency_id: Optional[str] = None
    location: Optional[Location] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ReturnLineInput:
    """One returned line.

    With an invoice, ``invoice_item_id`` identifies the billed line and the
    product details are copied from it. Without one, the product details
    must be supplied.
    """

    quantity: int
    invoice_item_id: Optional[str] = None
    product_id: str = ""
    product_name: str = ""
    unit_price: Decimal = Decimal("0")
    color: str = ""
    size: str = ""
    reason: Optional[str] = None


@dataclass(frozen=True)
class ReturnCommand:
    """User intent for recording a customer return."""

    reason: str
    lines: Sequence[ReturnLineInput]
    invoice_id: Optional[str] = None
    customer_id: str = ""
    customer_name: str = ""
    agency_id: Optional[str] = None
    location: Optional[Location] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PlacedOrder:
    order: data_manager.SalesOrderRow
    items: Tuple[data_manager.SalesOrderItemRow, ...]
    verdict: DiscountVerdict


@dataclass(frozen=True)
class IssuedInvoice:
    invoice: data_manager.InvoiceRow
    items: Tuple[data_manager.InvoiceItemRow, ...]
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RecordedReturn:
    record: data_manager.ReturnRow
    items: Tuple[data_manager.ReturnItemRow, ...]
    warnings: Tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Resolve optional timestamps into consistent, timezone-aware values.

    Args:
        candidate (datetime | None): Caller-provided timestamp, usually sourced
            from a command object.

    Returns:
        datetime: ``candidate`` as-is when provided, otherwise the current UTC
            datetime generated via :func:`datetime.now`.
    """

    return candidate if candidate is not None else datetime.now(UTC)


def _stamp(when: datetime) -> str:
    return when.isoformat()


def timestamp_text(candidate: Optional[datetime] = None) -> str:
    """ISO-8601 text for ``candidate``, or for the current UTC time."""

    return _stamp(_resolve_timestamp(candidate))


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after a write.

    Missing buckets are ignored so callers can request targeted invalidation
    without checking first.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def generate_record_id() -> str:
    """Return a new primary key for any table."""

    return str(uuid.uuid4())


def generate_document_number(prefix: str, when: Optional[datetime] = None) -> str:
    """Create a human readable document number such as ``SO-20250101120000000000``.

    Args:
        prefix (str): Document family, for example ``"SO"`` or ``"INV"``.
        when (datetime | None): Timestamp to embed. Defaults to the current
            UTC time.

    Returns:
        str: ``prefix`` joined to a microsecond resolution timestamp.
    """

    stamp = (when or datetime.now(UTC)).strftime("%Y%m%d%H%M%S%f")
    return f"{prefix}-{stamp}"


def require_positive_quantity(quantity: Any) -> None:
    """Ensure a line quantity is a whole number greater than zero.

    Raises:
        ValueError: If ``quantity`` is not an ``int`` or is not positive.
    """

    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValueError(f"Quantity must be a whole number, got {quantity!r}")
    if quantity <= 0:
        raise ValueError("Quantity must be positive")


def require_nonnegative_money(value: Any) -> None:
    """Ensure a monetary amount is a non-negative ``Decimal``.

    Raises:
        ValueError: If ``value`` is not a ``Decimal`` or is negative.
    """

    if not isinstance(value, Decimal):
        raise ValueError("Monetary values must be Decimal instances")
    if value < Decimal("0"):
        raise ValueError("Monetary values must be non-negative")


def require_superuser(actor: Actor, action: str) -> None:
    if not actor.is_superuser:
        log.warning("User '%s' (%s) attempted to %s", actor.user_id, actor.role.value, action)
        raise PermissionDeniedError(f"Only superusers may {action}")


def require_agency_access(actor: Actor, agency_id: str) -> None:
    """Reject non-superusers acting on another agency's records."""

    if actor.is_superuser or actor.agency_id == agency_id:
        return
    log.warning("User '%s' attempted to act on agency '%s'", actor.user_id, agency_id)
    raise PermissionDeniedError(f"User '{actor.user_id}' cannot act on agency '{agency_id}'")


def _resolve_agency(actor: Actor, agency_id: Optional[str]) -> str:
    resolved = agency_id or actor.agency_id
    if not resolved:
        raise BusinessRuleViolation("An agency is required")
    require_agency_access(actor, resolved)
    return resolved


def _location_columns(location: Optional[Location]) -> Dict[str, Any]:
    location = location or Location.unavailable("Location not captured")
    return {
        "latitude": location.latitude,
        "longitude": location.longitude,
        "location_status": location.status.value,
    }


def _line_total(quantity: int, unit_price: Decimal) -> Decimal:
    return quantize_money(unit_price * quantity)


def select_one(context: RuntimeContext, table: TableName, record_id: str, label: str) -> Any:
    """Fetch a single record by id.

    Raises:
        MissingReferenceError: If no ``table`` row has ``record_id``.
    """

    rows = context.gateway.select(table, filters={"id": record_id}, limit=1)
    if not rows:
        log.warning("Lookup failed for %s '%s'", label, record_id)
        raise MissingReferenceError(f"Unknown {label}: {record_id}")
    return rows[0]


UndoStep = Tuple[str, Callable[[], None]]


def run_undo(steps: List[UndoStep]) -> None:
    """Run compensation callbacks in reverse registration order.

    Every step is attempted; failures are logged and do not stop the
    remaining steps.
    """

    for description, step in reversed(steps):
        try:
            step()
            log.info("Compensated: %s", description)
        except data_manager.PersistenceError as exc:
            log.error("Compensation step '%s' failed: %s", description, exc)


def _delete_step(context: RuntimeContext, table: TableName, record_id: str) -> UndoStep:
    return (f"delete {table.value} {record_id}", lambda: context.gateway.delete(table, record_id))


def _restore_step(context: RuntimeContext, table: TableName, record_id: str, previous: Mapping[str, Any]) -> UndoStep:
    values = dict(previous)
    return (f"restore {table.value} {record_id}", lambda: context.gateway.update(table, record_id, values))


def _record_stock_events(context: RuntimeContext, events: Sequence[data_manager.InventoryTransactionRow], reference: str) -> Tuple[str, ...]:
    """Write stock events according to the configured failure policy.

    Under ``warn`` a failed write is logged and returned as a warning. Under
    ``rollback`` the :class:`~field_sales.data_manager.PersistenceError`
    propagates so the caller can undo the primary document.
    """

    if not events:
        return ()
    try:
        context.gateway.insert(TableName.INVENTORY_TRANSACTIONS, events)
    except data_manager.PersistenceError as exc:
        if context.settings.inventory_failure_policy is InventoryFailurePolicy.ROLLBACK:
            log.error("Inventory update failed for %s; rolling back: %s", reference, exc)
            raise
        message = f"Inventory update failed for {reference}: {exc}"
        log.warning(message)
        return (message,)
    return ()


def _stock_event(
    actor: Actor,
    *,
    transaction_type: InventoryTransactionType,
    quantity: int,
    product_id: str,
    product_name: str,
    color: str,
    size: str,
    reference_id: str,
    reference_name: str,
    agency_id: str,
    when: datetime,
) -> data_manager.InventoryTransactionRow:
    return data_manager.InventoryTransactionRow(
        id=generate_record_id(),
        product_id=product_id,
        product_name=product_name,
        color=color,
        size=size,
        transaction_type=transaction_type.value,
        quantity=quantity,
        reference_id=reference_id,
        reference_name=reference_name,
        user_id=actor.user_id,
        agency_id=agency_id,
        notes=None,
        created_at=_stamp(when),
    )


# ---------------------------------------------------------------------------
# Context lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and build the configured data gateway.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Context bundling the immutable settings, the gateway
            and an empty cache store.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    gateway = data_manager.build_gateway(settings)
    log.info("Loaded runtime context (backend=%s)", settings.backend.value)
    return RuntimeContext(settings=settings, gateway=gateway)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Flush pending changes for backends that buffer writes.

    The workbook backend keeps edits in memory until saved to
    :attr:`ConfigSettings.data_file`. REST writes are already durable.
    """

    gateway = context.gateway
    if isinstance(gateway, data_manager.WorkbookGateway) and context.settings.data_file is not None:
        gateway.save(context.settings.data_file)
        log.info("Persisted workbook '%s'", context.settings.data_file)
    else:
        log.debug("Nothing to persist for backend '%s'", context.settings.backend.value)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Discard cached state and, for the workbook backend, unsaved edits.

    Returns:
        RuntimeContext: Fresh context with an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """

    if context.settings.backend is BackendKind.WORKBOOK:
        gateway = data_manager.build_gateway(context.settings)
        log.info("Reloaded workbook '%s'", context.settings.data_file)
    else:
        gateway = context.gateway
    return RuntimeContext(settings=context.settings, gateway=gateway)


# ---------------------------------------------------------------------------
# Agency discount limits
# ---------------------------------------------------------------------------


def get_agency_discount_limit(context: RuntimeContext, agency_id: str) -> Optional[Decimal]:
    """Return the active discount limit of ``agency_id`` or ``None``.

    Results are cached per agency until a limit is changed. If storage holds
    more than one active limit the most recently assigned one wins and the
    inconsistency is logged.
    """

    bucket = _get_cache_bucket(context, "discount_limits")
    if agency_id in bucket:
        return bucket[agency_id]

    rows = context.gateway.select(
        TableName.AGENCY_DISCOUNT_LIMITS,
        filters={"agency_id": agency_id, "is_active": True},
        order_by="assigned_at",
        descending=True,
    )
    if len(rows) > 1:
        log.error("Agency '%s' has %d active discount limits; using the latest", agency_id, len(rows))
    limit = rows[0].max_discount_percentage if rows else None
    bucket[agency_id] = limit
    return limit


def set_agency_discount_limit(
    context: RuntimeContext,
    actor: Actor,
    agency_id: str,
    max_discount_percentage: Decimal,
    *,
    notes: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.AgencyDiscountLimitRow:
    """Assign a new active discount limit to an agency.

    Any previously active limit is deactivated first so each agency keeps at
    most one active limit.

    Args:
        context (RuntimeContext): Runtime context providing gateway access.
        actor (Actor): Acting user; must be a superuser.
        agency_id (str): Agency receiving the limit.
        max_discount_percentage (Decimal): Limit between 0 and 100.
        notes (str | None): Optional free text stored with the limit.
        timestamp (datetime | None): Assignment time override.

    Returns:
        data_manager.AgencyDiscountLimitRow: The newly active limit.

    Raises:
        PermissionDeniedError: If ``actor`` is not a superuser.
        ValueError: If the percentage is outside 0-100.
        data_manager.PersistenceError: If a write fails; earlier
            deactivations are restored.
    """

    require_superuser(actor, "set agency discount limits")
    if not agency_id:
        raise BusinessRuleViolation("An agency is required")
    if not Decimal("0") <= Decimal(max_discount_percentage) <= Decimal("100"):
        raise ValueError("Discount limit must be between 0 and 100")
    max_discount_percentage = Decimal(max_discount_percentage)

    when = _resolve_timestamp(timestamp)
    previous = context.gateway.select(
        TableName.AGENCY_DISCOUNT_LIMITS,
        filters={"agency_id": agency_id, "is_active": True},
    )
    row = data_manager.AgencyDiscountLimitRow(
        id=generate_record_id(),
        agency_id=agency_id,
        max_discount_percentage=max_discount_percentage,
        is_active=True,
        assigned_by=actor.user_id,
        assigned_at=_stamp(when),
        notes=notes,
    )

    undo: List[UndoStep] = []
    try:
        for existing in previous:
            context.gateway.update(TableName.AGENCY_DISCOUNT_LIMITS, existing.id, {"is_active": False})
            undo.append(_restore_step(context, TableName.AGENCY_DISCOUNT_LIMITS, existing.id, {"is_active": True}))
        context.gateway.insert(TableName.AGENCY_DISCOUNT_LIMITS, [row])
    except data_manager.PersistenceError:
        log.error("Failed to set discount limit for agency '%s'", agency_id)
        run_undo(undo)
        raise
    finally:
        _invalidate_cache(context, "discount_limits")

    log.info(
        "Set discount limit for agency '%s' to %s%% (by '%s')",
        agency_id,
        max_discount_percentage,
        actor.user_id,
    )
    return row


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def get_order(context: RuntimeContext, order_id: str) -> data_manager.SalesOrderRow:
    return select_one(context, TableName.SALES_ORDERS, order_id, "sales order")


def get_order_items(context: RuntimeContext, order_id: str) -> List[data_manager.SalesOrderItemRow]:
    return context.gateway.select(TableName.SALES_ORDER_ITEMS, filters={"sales_order_id": order_id})


def list_orders(
    context: RuntimeContext,
    *,
    agency_id: Optional[str] = None,
    status: Optional[OrderStatus] = None,
    customer_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[data_manager.SalesOrderRow]:
    """Return orders, newest first, optionally filtered."""

    filters: Dict[str, Any] = {}
    if agency_id:
        filters["agency_id"] = agency_id
    if status is not None:
        filters["status"] = OrderStatus(status).value
    if customer_id:
        filters["customer_id"] = customer_id
    return context.gateway.select(
        TableName.SALES_ORDERS,
        filters=filters,
        order_by="created_at",
        descending=True,
        limit=limit,
    )


def list_pending_approvals(context: RuntimeContext, agency_id: Optional[str] = None) -> List[data_manager.SalesOrderRow]:
    """Return the approval queue: pending orders flagged for approval, oldest first."""

    filters: Dict[str, Any] = {"status": OrderStatus.PENDING.value, "requires_approval": True}
    if agency_id:
        filters["agency_id"] = agency_id
    return context.gateway.select(TableName.SALES_ORDERS, filters=filters, order_by="created_at")


def remaining_amount(order: data_manager.SalesOrderRow) -> Decimal:
    """Amount of ``order`` not yet covered by invoices."""

    return order.total - order.total_invoiced


def can_convert_to_invoice(order: data_manager.SalesOrderRow) -> bool:
    return OrderStatus(order.status) in INVOICEABLE_ORDER_STATUSES and remaining_amount(order) > 0


def can_close(order: data_manager.SalesOrderRow) -> bool:
    return OrderStatus(order.status) not in TERMINAL_ORDER_STATUSES


def _validate_order_command(command: CreateOrderCommand) -> None:
    if not command.customer_id or not command.customer_name.strip():
        raise BusinessRuleViolation("A customer is required")
    if not command.items:
        raise BusinessRuleViolation("At least one item is required")
    for item in command.items:
        if not item.product_id:
            raise BusinessRuleViolation("Every item needs a product")
        require_positive_quantity(item.quantity)
        require_nonnegative_money(item.unit_price)
    if command.discount_rule_id and command.discount.value > 0:
        raise BusinessRuleViolation("An order takes either a manual discount or a discount rule, not both")


def redeem_rule(context: RuntimeContext, table: TableName, rule: Any) -> Any:
    """Count one redemption of a discount or promotional rule row.

    Raises:
        BusinessRuleViolation: If the rule's usage cap is already reached.
        data_manager.PersistenceError: If the counter cannot be written.
    """

    if rule.max_usage_count is not None and rule.current_usage_count >= rule.max_usage_count:
        log.warning("Rule '%s' reached its usage cap of %s", rule.id, rule.max_usage_count)
        raise BusinessRuleViolation(f"Rule '{rule.name}' has reached its usage limit")
    updated = context.gateway.update(table, rule.id, {"current_usage_count": rule.current_usage_count + 1})
    log.debug("Rule '%s' used %s times", rule.id, updated.current_usage_count)
    return updated


def _resolve_rule_discount(
    context: RuntimeContext,
    actor: Actor,
    command: CreateOrderCommand,
    when: datetime,
) -> Tuple[Discount, Optional[data_manager.DiscountRuleRow]]:
    if not command.discount_rule_id:
        return command.discount, None

    rule = select_one(context, TableName.DISCOUNT_RULES, command.discount_rule_id, "discount rule")
    if not rule_is_redeemable(rule, when.date()):
        log.warning("Discount rule '%s' is not redeemable", rule.id)
        raise BusinessRuleViolation(f"Discount rule '{rule.name}' is inactive, expired or used up")
    product_ids = [item.product_id for item in command.items]
    if not discount_rule_applies(rule, customer_id=command.customer_id, product_ids=product_ids, agent_id=actor.user_id):
        log.warning("Discount rule '%s' does not apply to order for '%s'", rule.id, command.customer_id)
        raise BusinessRuleViolation(f"Discount rule '{rule.name}' does not apply to this order")
    return discount_rule_to_discount(rule, command.items), rule


def create_order(context: RuntimeContext, actor: Actor, command: CreateOrderCommand) -> PlacedOrder:
    """Validate, price and persist a new sales order with its items.

    The discount is evaluated against the agency's active limit (or the
    configured default). Orders whose discount needs approval start in
    ``pending``; all others start in ``approved``. The order row is written
    first, then its items; if the items cannot be written the order row is
    deleted again before the error propagates.

    Args:
        context (RuntimeContext): Runtime context providing gateway access.
        actor (Actor): User placing the order.
        command (CreateOrderCommand): Customer, items and discount.

    Returns:
        PlacedOrder: Persisted order, items and the discount verdict.

    Raises:
        BusinessRuleViolation: On a missing customer, empty item list, unknown
            agency, or an inapplicable discount rule.
        MissingReferenceError: If the discount rule does not exist.
        ValueError: On non-positive quantities or negative prices.
        data_manager.PersistenceError: If storage rejects a write.
    """

    _validate_order_command(command)
    agency_id = _resolve_agency(actor, command.agency_id)
    when = _resolve_timestamp(command.timestamp)

    discount, rule = _resolve_rule_discount(context, actor, command, when)
    subtotal = sum((_line_total(item.quantity, item.unit_price) for item in command.items), Decimal("0.00"))
    verdict = evaluate_discount(
        discount,
        subtotal,
        get_agency_discount_limit(context, agency_id),
        policy=context.policy,
        role=actor.role,
    )
    discount_amount = discount.amount_for(subtotal)
    status = OrderStatus.PENDING if verdict.requires_approval else OrderStatus.APPROVED

    order = data_manager.SalesOrderRow(
        id=generate_record_id(),
        order_number=generate_document_number(ORDER_NUMBER_PREFIX, when),
        customer_id=command.customer_id,
        customer_name=command.customer_name.strip(),
        agency_id=agency_id,
        subtotal=subtotal,
        discount_percentage=quantize_percentage(verdict.effective_percentage),
        discount_amount=discount_amount,
        total=subtotal - discount_amount,
        total_invoiced=Decimal("0.00"),
        status=status.value,
        requires_approval=verdict.requires_approval,
        approved_by=None,
        approved_at=None,
        discount_rule_id=rule.id if rule else None,
        notes=command.notes,
        created_by=actor.user_id,
        created_at=_stamp(when),
        **_location_columns(command.location),
    )
    items = tuple(
        data_manager.SalesOrderItemRow(
            id=generate_record_id(),
            sales_order_id=order.id,
            product_id=item.product_id,
            product_name=item.product_name,
            color=item.color,
            size=item.size,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total=_line_total(item.quantity, item.unit_price),
            quantity_invoiced=0,
        )
        for item in command.items
    )

    undo: List[UndoStep] = []
    try:
        context.gateway.insert(TableName.SALES_ORDERS, [order])
        undo.append(_delete_step(context, TableName.SALES_ORDERS, order.id))
        context.gateway.insert(TableName.SALES_ORDER_ITEMS, items)
    except data_manager.PersistenceError:
        log.error("Failed to persist sales order '%s'; compensating", order.order_number)
        run_undo(undo)
        raise

    if rule is not None:
        try:
            redeem_rule(context, TableName.DISCOUNT_RULES, rule)
        except data_manager.PersistenceError as exc:
            log.warning("Could not record usage of discount rule '%s': %s", rule.id, exc)

    log.info(
        "Created sales order '%s' for customer '%s' (total=%s, discount=%s%%, status=%s)",
        order.order_number,
        order.customer_id,
        order.total,
        order.discount_percentage,
        order.status,
    )
    return PlacedOrder(order=order, items=items, verdict=verdict)


def _decide(
    context: RuntimeContext,
    order_id: str,
    actor: Actor,
    *,
    target: OrderStatus,
    verb: str,
    done: str,
    timestamp: Optional[datetime],
) -> data_manager.SalesOrderRow:
    require_superuser(actor, f"{verb} orders")
    order = get_order(context, order_id)
    if order.status != OrderStatus.PENDING.value:
        log.warning("Cannot %s order '%s' in status '%s'", verb, order.order_number, order.status)
        raise InvalidTransitionError(f"Order '{order.order_number}' is '{order.status}'; only pending orders can be {done}")

    when = _resolve_timestamp(timestamp)
    updated = context.gateway.update(
        TableName.SALES_ORDERS,
        order.id,
        {"status": target.value, "approved_by": actor.user_id, "approved_at": _stamp(when)},
    )
    log.info("Order '%s' %s by '%s'", order.order_number, done, actor.user_id)
    return updated


def approve_order(
    context: RuntimeContext,
    order_id: str,
    actor: Actor,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.SalesOrderRow:
    """Move a pending order to ``approved``, stamping the approver.

    Raises:
        PermissionDeniedError: If ``actor`` is not a superuser.
        MissingReferenceError: If the order does not exist.
        InvalidTransitionError: If the order is not ``pending``.
    """

    return _decide(context, order_id, actor, target=OrderStatus.APPROVED, verb="approve", done="approved", timestamp=timestamp)


def reject_order(
    context: RuntimeContext,
    order_id: str,
    actor: Actor,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.SalesOrderRow:
    """Move a pending order to ``cancelled``, stamping the decision maker.

    Raises:
        PermissionDeniedError: If ``actor`` is not a superuser.
        MissingReferenceError: If the order does not exist.
        InvalidTransitionError: If the order is not ``pending``.
    """

    return _decide(context, order_id, actor, target=OrderStatus.CANCELLED, verb="reject", done="rejected", timestamp=timestamp)


def close_order(context: RuntimeContext, order_id: str, actor: Actor) -> data_manager.SalesOrderRow:
    """Manually close an order that is not already terminal.

    Raises:
        InvalidTransitionError: If the order is ``closed``, ``cancelled`` or
            ``invoiced``.
    """

    order = get_order(context, order_id)
    require_agency_access(actor, order.agency_id)
    if not can_close(order):
        log.warning("Cannot close order '%s' in status '%s'", order.order_number, order.status)
        raise InvalidTransitionError(f"Order '{order.order_number}' is already '{order.status}'")

    updated = context.gateway.update(TableName.SALES_ORDERS, order.id, {"status": OrderStatus.CLOSED.value})
    log.info("Order '%s' closed by '%s' (was %s)", order.order_number, actor.user_id, order.status)
    return updated


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


def get_invoice(context: RuntimeContext, invoice_id: str) -> data_manager.InvoiceRow:
    return select_one(context, TableName.INVOICES, invoice_id, "invoice")


def get_invoice_items(context: RuntimeContext, invoice_id: str) -> List[data_manager.InvoiceItemRow]:
    return context.gateway.select(TableName.INVOICE_ITEMS, filters={"invoice_id": invoice_id})


def list_invoices(
    context: RuntimeContext,
    *,
    agency_id: Optional[str] = None,
    sales_order_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[data_manager.InvoiceRow]:
    filters: Dict[str, Any] = {}
    if agency_id:
        filters["agency_id"] = agency_id
    if sales_order_id:
        filters["sales_order_id"] = sales_order_id
    if customer_id:
        filters["customer_id"] = customer_id
    return context.gateway.select(
        TableName.INVOICES,
        filters=filters,
        order_by="created_at",
        descending=True,
        limit=limit,
    )


def _validate_invoice_request(customer_id: str, customer_name: str, lines: Sequence[InvoiceLine], signature: str) -> None:
    if not customer_id or not customer_name.strip():
        raise BusinessRuleViolation("A customer is required")
    if not lines:
        raise BusinessRuleViolation("At least one invoice line is required")
    if not signature or not signature.strip():
        raise BusinessRuleViolation("A customer signature is required")
    for line in lines:
        if not line.product_id:
            raise BusinessRuleViolation("Every invoice line needs a product")
        require_positive_quantity(line.quantity)
        require_nonnegative_money(line.unit_price)


def _check_order_lines(
    order: data_manager.SalesOrderRow,
    order_items: Sequence[data_manager.SalesOrderItemRow],
    lines: Sequence[InvoiceLine],
) -> bool:
    """Validate ``lines`` against the order and report whether they exhaust it."""

    if not can_convert_to_invoice(order):
        log.warning("Order '%s' cannot be invoiced in status '%s'", order.order_number, order.status)
        raise InvalidTransitionError(
            f"Order '{order.order_number}' cannot be invoiced (status '{order.status}', "
            f"remaining {remaining_amount(order)})"
        )

    by_id = {item.id: item for item in order_items}
    requested: Dict[str, int] = {}
    for line in lines:
        if line.sales_order_item_id not in by_id:
            raise MissingReferenceError(
                f"Order '{order.order_number}' has no item '{line.sales_order_item_id}'"
            )
        ordered = by_id[line.sales_order_item_id]
        if line.product_id != ordered.product_id or line.unit_price != ordered.unit_price:
            log.warning(
                "Invoice line for order item '%s' does not match the order (product=%s, price=%s)",
                ordered.id,
                line.product_id,
                line.unit_price,
            )
            raise BusinessRuleViolation(
                f"Invoice line for '{ordered.product_name}' must bill product '{ordered.product_id}' "
                f"at {ordered.unit_price}"
            )
        requested[line.sales_order_item_id] = requested.get(line.sales_order_item_id, 0) + line.quantity

    for item_id, quantity in requested.items():
        item = by_id[item_id]
        outstanding = item.quantity - item.quantity_invoiced
        if quantity > outstanding:
            log.warning(
                "Invoice quantity %s exceeds outstanding %s for order item '%s'",
                quantity,
                outstanding,
                item_id,
            )
            raise BusinessRuleViolation(
                f"Cannot invoice {quantity} of '{item.product_name}'; only {outstanding} remain"
            )

    return all(item.quantity - item.quantity_invoiced == requested.get(item.id, 0) for item in order_items)


def _issue(
    context: RuntimeContext,
    actor: Actor,
    *,
    source: Optional[data_manager.SalesOrderRow],
    order_items: Sequence[data_manager.SalesOrderItemRow],
    customer_id: str,
    customer_name: str,
    agency_id: str,
    lines: Sequence[InvoiceLine],
    discount: Discount,
    signature: str,
    location: Optional[Location],
    when: datetime,
) -> IssuedInvoice:
    exhausts_order = _check_order_lines(source, order_items, lines) if source is not None else False

    subtotal = sum((_line_total(line.quantity, line.unit_price) for line in lines), Decimal("0.00"))
    discount_amount = discount.amount_for(subtotal)
    total = subtotal - discount_amount
    if source is not None:
        remaining = remaining_amount(source)
        # The last invoice absorbs rounding left over from earlier partial invoices.
        # Any other invoice leaves at least one cent for the units still outstanding.
        if exhausts_order:
            total = remaining
        else:
            total = min(total, max(remaining - CENT, Decimal("0.00")))
        discount_amount = subtotal - total

    invoice = data_manager.InvoiceRow(
        id=generate_record_id(),
        invoice_number=generate_document_number(INVOICE_NUMBER_PREFIX, when),
        sales_order_id=source.id if source is not None else None,
        customer_id=customer_id,
        customer_name=customer_name.strip(),
        agency_id=agency_id,
        subtotal=subtotal,
        discount_amount=discount_amount,
        total=total,
        signature=signature,
        created_by=actor.user_id,
        created_at=_stamp(when),
        **_location_columns(location),
    )
    items = tuple(
        data_manager.InvoiceItemRow(
            id=generate_record_id(),
            invoice_id=invoice.id,
            sales_order_item_id=line.sales_order_item_id,
            product_id=line.product_id,
            product_name=line.product_name,
            color=line.color,
            size=line.size,
            quantity=line.quantity,
            unit_price=line.unit_price,
            total=_line_total(line.quantity, line.unit_price),
        )
        for line in lines
    )
    events = [
        _stock_event(
            actor,
            transaction_type=InventoryTransactionType.INVOICE_CREATION,
            quantity=-item.quantity,
            product_id=item.product_id,
            product_name=item.product_name,
            color=item.color,
            size=item.size,
            reference_id=invoice.id,
            reference_name=invoice.invoice_number,
            agency_id=agency_id,
            when=when,
        )
        for item in items
    ]

    undo: List[UndoStep] = []
    try:
        context.gateway.insert(TableName.INVOICES, [invoice])
        undo.append(_delete_step(context, TableName.INVOICES, invoice.id))
        context.gateway.insert(TableName.INVOICE_ITEMS, items)
        undo.extend(_delete_step(context, TableName.INVOICE_ITEMS, item.id) for item in items)

        if source is not None:
            by_id = {item.id: item for item in order_items}
            for line in lines:
                current = by_id[line.sales_order_item_id]
                context.gateway.update(
                    TableName.SALES_ORDER_ITEMS,
                    current.id,
                    {"quantity_invoiced": current.quantity_invoiced + line.quantity},
                )
                undo.append(
                    _restore_step(
                        context,
                        TableName.SALES_ORDER_ITEMS,
                        current.id,
                        {"quantity_invoiced": current.quantity_invoiced},
                    )
                )
                by_id[current.id] = replace(current, quantity_invoiced=current.quantity_invoiced + line.quantity)

            total_invoiced = source.total_invoiced + total
            status = OrderStatus.INVOICED if exhausts_order else OrderStatus.PARTIALLY_INVOICED
            context.gateway.update(
                TableName.SALES_ORDERS,
                source.id,
                {"total_invoiced": total_invoiced, "status": status.value},
            )
            undo.append(
                _restore_step(
                    context,
                    TableName.SALES_ORDERS,
                    source.id,
                    {"total_invoiced": source.total_invoiced, "status": source.status},
                )
            )

        warnings = _record_stock_events(context, events, f"invoice '{invoice.invoice_number}'")
    except data_manager.PersistenceError:
        log.error("Failed to issue invoice '%s'; compensating", invoice.invoice_number)
        run_undo(undo)
        raise

    log.info(
        "Issued invoice '%s' for customer '%s' (total=%s, order=%s)",
        invoice.invoice_number,
        customer_id,
        invoice.total,
        source.order_number if source is not None else "direct",
    )
    return IssuedInvoice(invoice=invoice, items=items, warnings=warnings)


def issue_invoice(
    context: RuntimeContext,
    actor: Actor,
    *,
    source: Optional[data_manager.SalesOrderRow],
    customer_id: str,
    customer_name: str,
    agency_id: str,
    lines: Sequence[InvoiceLine],
    signature: str,
    discount: Optional[Discount] = None,
    location: Optional[Location] = None,
    timestamp: Optional[datetime] = None,
) -> IssuedInvoice:
    """Create an invoice, its items and one stock decrement per line.

    Lines and signature are validated before any storage call. With a
    ``source`` order the stored order is re-read, so a stale row cannot
    over-bill it. Every line must reference one of its items at that item's
    product and unit price and stay within the outstanding quantity; the
    order's discount percentage replaces ``discount``. The order's
    ``total_invoiced`` and status are updated in the same step. When the
    invoice covers every outstanding quantity its total equals the order's
    remaining amount and the order becomes ``invoiced``.

    Stock events follow the configured
    :class:`~field_sales.constants.InventoryFailurePolicy`: under ``warn``
    a failure is returned in :attr:`IssuedInvoice.warnings` and the invoice
    stands; under ``rollback`` the invoice is undone and the error raised.

    Args:
        context (RuntimeContext): Runtime context providing gateway access.
        actor (Actor): User issuing the invoice.
        source (data_manager.SalesOrderRow | None): Order being billed, or
            ``None`` for a direct invoice.
        customer_id (str): Billed customer id.
        customer_name (str): Billed customer name.
        agency_id (str): Agency owning the invoice.
        lines (Sequence[InvoiceLine]): Billed lines.
        signature (str): Opaque customer signature blob.
        discount (Discount | None): Discount for a direct invoice; ignored
            when ``source`` is given.
        location (Location | None): Capture outcome; ``None`` is stored as
            unavailable.
        timestamp (datetime | None): Issue time override.

    Returns:
        IssuedInvoice: Persisted invoice, items and any inventory warnings.

    Raises:
        BusinessRuleViolation: On missing lines, customer or signature, or
            quantities or prices the order does not allow.
        InvalidTransitionError: If ``source`` cannot be invoiced.
        ValueError: On non-positive quantities or negative prices.
        data_manager.PersistenceError: If a write fails after compensation.
    """

    _validate_invoice_request(customer_id, customer_name, lines, signature)
    require_agency_access(actor, agency_id)
    order_items: List[data_manager.SalesOrderItemRow] = []
    if source is not None:
        # Billing state and pricing always come from the stored order.
        source = get_order(context, source.id)
        require_agency_access(actor, source.agency_id)
        order_items = get_order_items(context, source.id)
        discount = Discount.percentage(source.discount_percentage)
    return _issue(
        context,
        actor,
        source=source,
        order_items=order_items,
        customer_id=customer_id,
        customer_name=customer_name,
        agency_id=agency_id,
        lines=lines,
        discount=discount or Discount.none(),
        signature=signature,
        location=location,
        when=_resolve_timestamp(timestamp),
    )


def convert_to_invoice(context: RuntimeContext, actor: Actor, command: ConvertToInvoiceCommand) -> IssuedInvoice:
    """Invoice the selected quantities of an approved sales order.

    The order's discount percentage applies to the invoice subtotal. After
    the invoice is written the order moves to ``invoiced`` when
    ``total_invoiced`` reaches ``total`` and to ``partially_invoiced``
    otherwise.

    Raises:
        BusinessRuleViolation: On an empty signature, or a selection that
            exceeds an item's outstanding quantity.
        InvalidTransitionError: If the order is not ``approved`` or
            ``partially_invoiced`` or has nothing left to invoice.
        MissingReferenceError: If the order or a selected item is unknown.
    """

    if not command.signature or not command.signature.strip():
        raise BusinessRuleViolation("A customer signature is required")
    for selection in command.lines:
        require_positive_quantity(selection.quantity)

    order = get_order(context, command.order_id)
    require_agency_access(actor, order.agency_id)
    order_items = get_order_items(context, order.id)
    by_id = {item.id: item for item in order_items}

    if command.lines:
        selections = list(command.lines)
    else:
        selections = [
            InvoiceLineSelection(item.id, item.quantity - item.quantity_invoiced)
            for item in order_items
            if item.quantity > item.quantity_invoiced
        ]
        if not selections:
            raise InvalidTransitionError(f"Order '{order.order_number}' has nothing left to invoice")

    lines = []
    for selection in selections:
        item = by_id.get(selection.order_item_id)
        if item is None:
            raise MissingReferenceError(f"Order '{order.order_number}' has no item '{selection.order_item_id}'")
        lines.append(
            InvoiceLine(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=selection.quantity,
                unit_price=item.unit_price,
                color=item.color,
                size=item.size,
                sales_order_item_id=item.id,
            )
        )

    return _issue(
        context,
        actor,
        source=order,
        order_items=order_items,
        customer_id=order.customer_id,
        customer_name=order.customer_name,
        agency_id=order.agency_id,
        lines=lines,
        discount=Discount.percentage(order.discount_percentage),
        signature=command.signature,
        location=command.location,
        when=_resolve_timestamp(command.timestamp),
    )


def create_direct_invoice(context: RuntimeContext, actor: Actor, command: DirectInvoiceCommand) -> IssuedInvoice:
    """Issue an invoice without a preceding sales order.

    A direct invoice has no approval queue, so its discount must be within
    the agency's limit unless a superuser issues it.

    Raises:
        BusinessRuleViolation: On missing lines, customer or signature, or a
            discount that would need approval.
    """

    _validate_invoice_request(command.customer_id, command.customer_name, command.lines, command.signature)
    for line in command.lines:
        if line.sales_order_item_id is not None:
            raise BusinessRuleViolation("Direct invoice lines cannot reference sales order items")
    agency_id = _resolve_agency(actor, command.agency_id)

    subtotal = sum((_line_total(line.quantity, line.unit_price) for line in command.lines), Decimal("0.00"))
    verdict = evaluate_discount(
        command.discount,
        subtotal,
        get_agency_discount_limit(context, agency_id),
        policy=context.policy,
        role=actor.role,
    )
    if verdict.requires_approval:
        log.warning("Direct invoice discount rejected for agency '%s': %s", agency_id, verdict.message)
        raise BusinessRuleViolation(f"{verdict.message}; place a sales order instead")

    return _issue(
        context,
        actor,
        source=None,
        order_items=(),
        customer_id=command.customer_id,
        customer_name=command.customer_name,
        agency_id=agency_id,
        lines=command.lines,
        discount=command.discount,
        signature=command.signature,
        location=command.location,
        when=_resolve_timestamp(command.timestamp),
    )


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------


def get_return(context: RuntimeContext, return_id: str) -> data_manager.ReturnRow:
    return select_one(context, TableName.RETURNS, return_id, "return")


def get_return_items(context: RuntimeContext, return_id: str) -> List[data_manager.ReturnItemRow]:
    return context.gateway.select(TableName.RETURN_ITEMS, filters={"return_id": return_id})


def list_returns(
    context: RuntimeContext,
    *,
    agency_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[data_manager.ReturnRow]:
    filters: Dict[str, Any] = {}
    if agency_id:
        filters["agency_id"] = agency_id
    if invoice_id:
        filters["invoice_id"] = invoice_id
    return context.gateway.select(
        TableName.RETURNS,
        filters=filters,
        order_by="created_at",
        descending=True,
        limit=limit,
    )


def returnable_quantities(context: RuntimeContext, invoice_id: str) -> Dict[str, int]:
    """Map each item of ``invoice_id`` to the quantity that can still be returned.

    Raises:
        MissingReferenceError: If the invoice does not exist.
    """

    get_invoice(context, invoice_id)
    outstanding = {}
    for item in get_invoice_items(context, invoice_id):
        returned = sum(
            row.quantity_returned
            for row in context.gateway.select(TableName.RETURN_ITEMS, filters={"invoice_item_id": item.id})
        )
        outstanding[item.id] = item.quantity - returned
    return outstanding


def _refund_total(subtotal: Decimal, invoice: Optional[data_manager.InvoiceRow]) -> Decimal:
    """Apply the invoice's discount ratio to a return subtotal."""

    if invoice is None or invoice.subtotal <= 0:
        return subtotal
    return quantize_money(subtotal * invoice.total / invoice.subtotal)


def _allocate_against_invoice(
    context: RuntimeContext,
    invoice: data_manager.InvoiceRow,
    wanted: Sequence[Tuple[str, int]],
) -> Dict[str, data_manager.InvoiceItemRow]:
    """Check ``(invoice_item_id, quantity)`` pairs against what is returnable."""

    items = {item.id: item for item in get_invoice_items(context, invoice.id)}
    outstanding = returnable_quantities(context, invoice.id)
    for item_id, quantity in wanted:
        if item_id not in items:
            raise MissingReferenceError(f"Invoice '{invoice.invoice_number}' has no item '{item_id}'")
        if quantity > outstanding[item_id]:
            log.warning(
                "Return of %s exceeds returnable %s for invoice item '%s'",
                quantity,
                outstanding[item_id],
                item_id,
            )
            raise BusinessRuleViolation(
                f"Cannot return {quantity} of '{items[item_id].product_name}'; "
                f"only {outstanding[item_id]} can be returned"
            )
        outstanding[item_id] -= quantity
    return items


def record_return(context: RuntimeContext, actor: Actor, command: ReturnCommand) -> RecordedReturn:
    """Record a customer return and put the returned units back in stock.

    When the command names an invoice, each line must reference one of its
    items and may not exceed the invoiced quantity minus earlier returns;
    product, price and customer details come from the invoice. Without an
    invoice the return is accepted provisionally and can later be bound with
    :func:`link_return_to_invoice`. Returns are approved on creation.

    Args:
        context (RuntimeContext): Runtime context providing gateway access.
        actor (Actor): User recording the return.
        command (ReturnCommand): Returned lines, reason and optional invoice.

    Returns:
        RecordedReturn: Persisted return, items and any inventory warnings.

    Raises:
        BusinessRuleViolation: On an empty reason or line list, a customer
            that does not match the invoice, or an over-return.
        MissingReferenceError: If the invoice or an invoice item is unknown.
        ValueError: On non-positive quantities or negative prices.
        data_manager.PersistenceError: If a write fails after compensation.
    """

    if not command.reason or not command.reason.strip():
        raise BusinessRuleViolation("A return reason is required")
    if not command.lines:
        raise BusinessRuleViolation("At least one returned item is required")
    for line in command.lines:
        require_positive_quantity(line.quantity)
        if command.invoice_id is None:
            if line.invoice_item_id is not None:
                raise BusinessRuleViolation("Lines can only reference invoice items when the return names an invoice")
            if not line.product_id:
                raise BusinessRuleViolation("Every returned item needs a product")
            require_nonnegative_money(line.unit_price)
        elif not line.invoice_item_id:
            raise BusinessRuleViolation("Every returned item must reference an invoice item")

    when = _resolve_timestamp(command.timestamp)
    invoice: Optional[data_manager.InvoiceRow] = None
    if command.invoice_id is not None:
        invoice = get_invoice(context, command.invoice_id)
        if command.customer_id and command.customer_id != invoice.customer_id:
            raise BusinessRuleViolation(
                f"Invoice '{invoice.invoice_number}' belongs to customer '{invoice.customer_id}'"
            )
        customer_id, customer_name = invoice.customer_id, invoice.customer_name
        agency_id = invoice.agency_id
        require_agency_access(actor, agency_id)
        invoice_items = _allocate_against_invoice(
            context,
            invoice,
            [(line.invoice_item_id or "", line.quantity) for line in command.lines],
        )
    else:
        if not command.customer_id or not command.customer_name.strip():
            raise BusinessRuleViolation("A customer is required")
        customer_id, customer_name = command.customer_id, command.customer_name.strip()
        agency_id = _resolve_agency(actor, command.agency_id)
        invoice_items = {}

    record_id = generate_record_id()
    items = []
    for line in command.lines:
        source_item = invoice_items.get(line.invoice_item_id or "")
        if source_item is not None:
            details = (source_item.product_id, source_item.product_name, source_item.color, source_item.size)
            unit_price, original = source_item.unit_price, source_item.quantity
        else:
            details = (line.product_id, line.product_name, line.color, line.size)
            unit_price, original = line.unit_price, line.quantity
        items.append(
            data_manager.ReturnItemRow(
                id=generate_record_id(),
                return_id=record_id,
                invoice_item_id=line.invoice_item_id,
                product_id=details[0],
                product_name=details[1],
                color=details[2],
                size=details[3],
                quantity_returned=line.quantity,
                original_quantity=original,
                unit_price=unit_price,
                total=_line_total(line.quantity, unit_price),
                reason=line.reason,
            )
        )

    subtotal = sum((item.total for item in items), Decimal("0.00"))
    record = data_manager.ReturnRow(
        id=record_id,
        return_number=generate_document_number(RETURN_NUMBER_PREFIX, when),
        invoice_id=invoice.id if invoice is not None else None,
        customer_id=customer_id,
        customer_name=customer_name,
        agency_id=agency_id,
        subtotal=subtotal,
        total=_refund_total(subtotal, invoice),
        reason=command.reason.strip(),
        status=ReturnStatus.APPROVED.value,
        created_by=actor.user_id,
        created_at=_stamp(when),
        processed_by=None,
        processed_at=None,
        **_location_columns(command.location),
    )
    events = [
        _stock_event(
            actor,
            transaction_type=InventoryTransactionType.CUSTOMER_RETURN,
            quantity=item.quantity_returned,
            product_id=item.product_id,
            product_name=item.product_name,
            color=item.color,
            size=item.size,
            reference_id=record.id,
            reference_name=record.return_number,
            agency_id=agency_id,
            when=when,
        )
        for item in items
    ]

    undo: List[UndoStep] = []
    try:
        context.gateway.insert(TableName.RETURNS, [record])
        undo.append(_delete_step(context, TableName.RETURNS, record.id))
        context.gateway.insert(TableName.RETURN_ITEMS, items)
        undo.extend(_delete_step(context, TableName.RETURN_ITEMS, item.id) for item in items)
        warnings = _record_stock_events(context, events, f"return '{record.return_number}'")
    except data_manager.PersistenceError:
        log.error("Failed to record return '%s'; compensating", record.return_number)
        run_undo(undo)
        raise

    log.info(
        "Recorded return '%s' for customer '%s' (%d lines, invoice=%s)",
        record.return_number,
        customer_id,
        len(items),
        invoice.invoice_number if invoice is not None else "unlinked",
    )
    return RecordedReturn(record=record, items=tuple(items), warnings=warnings)


def link_return_to_invoice(
    context: RuntimeContext,
    actor: Actor,
    return_id: str,
    invoice_id: str,
) -> RecordedReturn:
    """Bind a provisional return to the invoice it belongs to.

    Each returned line is matched to an invoice item with the same product,
    colour and size that still has enough returnable quantity. The same cap
    as :func:`record_return` applies.

    Raises:
        BusinessRuleViolation: If the return is already linked, the customer
            differs, or a line cannot be matched within the cap.
        MissingReferenceError: If the return or invoice is unknown.
    """

    record = get_return(context, return_id)
    if record.invoice_id:
        raise BusinessRuleViolation(f"Return '{record.return_number}' is already linked to an invoice")
    invoice = get_invoice(context, invoice_id)
    require_agency_access(actor, invoice.agency_id)
    if record.customer_id != invoice.customer_id:
        raise BusinessRuleViolation(
            f"Return '{record.return_number}' and invoice '{invoice.invoice_number}' belong to different customers"
        )

    invoice_items = get_invoice_items(context, invoice.id)
    outstanding = returnable_quantities(context, invoice.id)
    return_items = get_return_items(context, record.id)
    matches: List[Tuple[data_manager.ReturnItemRow, data_manager.InvoiceItemRow]] = []
    # Largest returns first, each into the matching line with the most room left.
    for item in sorted(return_items, key=lambda row: row.quantity_returned, reverse=True):
        candidates = [
            invoice_item
            for invoice_item in invoice_items
            if (invoice_item.product_id, invoice_item.color, invoice_item.size)
            == (item.product_id, item.color, item.size)
            and outstanding[invoice_item.id] >= item.quantity_returned
        ]
        candidate = max(candidates, key=lambda invoice_item: outstanding[invoice_item.id], default=None)
        if candidate is None:
            log.warning(
                "Return item '%s' cannot be matched to invoice '%s'",
                item.id,
                invoice.invoice_number,
            )
            raise BusinessRuleViolation(
                f"Invoice '{invoice.invoice_number}' has no line with {item.quantity_returned} "
                f"returnable units of '{item.product_name}'"
            )
        outstanding[candidate.id] -= item.quantity_returned
        matches.append((item, candidate))

    undo: List[UndoStep] = []
    linked_items = []
    try:
        for item, invoice_item in matches:
            linked_items.append(
                context.gateway.update(
                    TableName.RETURN_ITEMS,
                    item.id,
                    {"invoice_item_id": invoice_item.id, "original_quantity": invoice_item.quantity},
                )
            )
            undo.append(
                _restore_step(
                    context,
                    TableName.RETURN_ITEMS,
                    item.id,
                    {"invoice_item_id": None, "original_quantity": item.original_quantity},
                )
            )
        updated = context.gateway.update(
            TableName.RETURNS,
            record.id,
            {"invoice_id": invoice.id, "total": _refund_total(record.subtotal, invoice)},
        )
    except data_manager.PersistenceError:
        log.error("Failed to link return '%s'; compensating", record.return_number)
        run_undo(undo)
        raise

    log.info("Linked return '%s' to invoice '%s'", record.return_number, invoice.invoice_number)
    return RecordedReturn(record=updated, items=tuple(linked_items))


def process_return(
    context: RuntimeContext,
    actor: Actor,
    return_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.ReturnRow:
    """Mark an approved return as processed.

    Raises:
        PermissionDeniedError: If ``actor`` is an agent.
        InvalidTransitionError: If the return is not ``approved``.
    """

    if actor.role is UserRole.AGENT:
        log.warning("Agent '%s' attempted to process return '%s'", actor.user_id, return_id)
        raise PermissionDeniedError("Agents cannot process returns")
    record = get_return(context, return_id)
    require_agency_access(actor, record.agency_id)
    if record.status != ReturnStatus.APPROVED.value:
        raise InvalidTransitionError(f"Return '{record.return_number}' is '{record.status}', not approved")

    when = _resolve_timestamp(timestamp)
    updated = context.gateway.update(
        TableName.RETURNS,
        record.id,
        {"status": ReturnStatus.PROCESSED.value, "processed_by": actor.user_id, "processed_at": _stamp(when)},
    )
    log.info("Processed return '%s' (by '%s')", record.return_number, actor.user_id)
    return updated


def calculate_stock(context: RuntimeContext, agency_id: Optional[str] = None) -> Dict[Tuple[str, str, str], int]:
    """Aggregate signed inventory transactions per product variant.

    Args:
        context (RuntimeContext): Runtime context providing gateway access.
        agency_id (str | None): Restrict to one agency's inventory pool.

    Returns:
        dict[tuple[str, str, str], int]: ``(product_id, color, size)`` mapped
            to the net quantity. Invoices contribute negative quantities and
            customer returns positive ones.
    """

    filters = {"agency_id": agency_id} if agency_id else None
    stock: Dict[Tuple[str, str, str], int] = {}
    for row in context.gateway.select(TableName.INVENTORY_TRANSACTIONS, filters=filters):
        key = (row.product_id, row.color, row.size)
        stock[key] = stock.get(key, 0) + row.quantity
    return stock
