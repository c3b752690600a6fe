"""Unit tests verifying the business logic layer against the in-memory gateway."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from field_sales import constants, core_logic, data_manager
from field_sales.constants import (
    InventoryFailurePolicy,
    LocationStatus,
    OrderStatus,
    ReturnStatus,
    TableName,
    UserRole,
)
from field_sales.discount_policy import Discount


def _rows(context, table):
    return context.gateway.select(table)


def _direct_invoice(context, actor, lines, *, signature="sig", discount=None):
    command = core_logic.DirectInvoiceCommand(
        customer_id="C-1",
        customer_name="Acme Stores",
        lines=[
            core_logic.InvoiceLine(product_id, f"Product {product_id}", quantity, Decimal(price))
            for product_id, quantity, price in lines
        ],
        signature=signature,
        discount=discount or Discount.none(),
    )
    return core_logic.create_direct_invoice(context, actor, command)


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and gateway into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "field_sales.xlsx",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    gateway = Mock(name="gateway")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    build_gateway = Mock(return_value=gateway)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "build_gateway", build_gateway)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.gateway is gateway
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    build_gateway.assert_called_once_with(parsed_settings)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, gateway=context.gateway)
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_persist_context_skips_non_workbook_backends(context):
    """Nothing is saved when the gateway writes through immediately."""

    core_logic.persist_context(context)


def test_policy_reflects_settings(context):
    custom = core_logic.RuntimeContext(
        settings=replace(context.settings, default_discount_limit=Decimal("35"), zero_subtotal_requires_approval=True),
        gateway=context.gateway,
    )

    assert custom.policy.default_limit == Decimal("35")
    assert custom.policy.zero_subtotal_requires_approval is True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_generate_document_number_uses_prefix_and_timestamp():
    moment = datetime(2025, 1, 2, 3, 4, 5, 6, tzinfo=UTC)

    assert core_logic.generate_document_number("INV", moment) == "INV-20250102030405000006"


@pytest.mark.parametrize("quantity", [0, -1, 1.5, True, "2"])
def test_require_positive_quantity_rejects_invalid_values(quantity):
    with pytest.raises(ValueError):
        core_logic.require_positive_quantity(quantity)


def test_capture_location_reports_unavailable_without_fabricating_coordinates():
    """A denied location yields an explicit unavailable outcome."""

    def denied():
        raise core_logic.LocationUnavailableError("permission denied")

    location = core_logic.capture_location(denied)

    assert location.status is LocationStatus.UNAVAILABLE
    assert location.latitude is None and location.longitude is None
    assert location.reason == "permission denied"
    assert core_logic.capture_location(None).status is LocationStatus.UNAVAILABLE


def test_capture_location_validates_coordinates():
    location = core_logic.capture_location(lambda: ("-1.2921", "36.8219"))

    assert location.status is LocationStatus.CAPTURED
    assert location.latitude == Decimal("-1.2921")
    with pytest.raises(ValueError):
        core_logic.capture_location(lambda: (95, 0))


# ---------------------------------------------------------------------------
# Agency discount limits
# ---------------------------------------------------------------------------


def test_set_agency_discount_limit_requires_superuser(context, agency_user):
    with pytest.raises(core_logic.PermissionDeniedError):
        core_logic.set_agency_discount_limit(context, agency_user, "AG-1", Decimal("30"))


def test_set_agency_discount_limit_keeps_one_active_limit(context, superuser):
    """A new limit deactivates the previous one and refreshes the cache."""

    core_logic.set_agency_discount_limit(context, superuser, "AG-1", Decimal("30"))
    assert core_logic.get_agency_discount_limit(context, "AG-1") == Decimal("30")

    core_logic.set_agency_discount_limit(context, superuser, "AG-1", Decimal("12.5"))

    active = context.gateway.select(
        TableName.AGENCY_DISCOUNT_LIMITS,
        filters={"agency_id": "AG-1", "is_active": True},
    )
    assert len(active) == 1
    assert core_logic.get_agency_discount_limit(context, "AG-1") == Decimal("12.5")


def test_set_agency_discount_limit_rejects_out_of_range(context, superuser):
    with pytest.raises(ValueError):
        core_logic.set_agency_discount_limit(context, superuser, "AG-1", Decimal("120"))


def test_get_agency_discount_limit_returns_none_without_limit(context):
    assert core_logic.get_agency_discount_limit(context, "AG-404") is None


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def test_create_order_above_default_limit_waits_for_approval(place_order):
    """A 25% discount on 1000 exceeds the default 20% limit."""

    placed = place_order([("P-1", 4, "250.00")], discount=Discount.percentage("25"))

    assert placed.order.status == OrderStatus.PENDING.value
    assert placed.order.requires_approval is True
    assert placed.order.subtotal == Decimal("1000.00")
    assert placed.order.discount_amount == Decimal("250.00")
    assert placed.order.total == Decimal("750.00")
    assert placed.verdict.requires_approval is True
    assert len(placed.items) == 1


def test_create_order_within_agency_limit_is_approved(context, superuser, place_order):
    core_logic.set_agency_discount_limit(context, superuser, "AG-1", Decimal("30"))

    placed = place_order([("P-1", 4, "250.00")], discount=Discount.percentage("25"))

    assert placed.order.status == OrderStatus.APPROVED.value
    assert placed.order.requires_approval is False


def test_create_order_by_superuser_never_needs_approval(place_order, superuser):
    placed = place_order(discount=Discount.percentage("80"), actor=superuser, agency_id="AG-1")

    assert placed.order.status == OrderStatus.APPROVED.value


def test_create_order_records_timestamp_and_number(place_order, set_fixed_datetime):
    moment = set_fixed_datetime(datetime(2025, 5, 1, 12, 0, tzinfo=UTC))

    placed = place_order()

    assert placed.order.created_at == moment.isoformat()
    assert placed.order.order_number == "SO-20250501120000000000"
    assert placed.order.location_status == LocationStatus.UNAVAILABLE.value


def test_create_order_rejects_empty_items(context, agent):
    command = core_logic.CreateOrderCommand(customer_id="C-1", customer_name="Acme", items=[])

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.create_order(context, agent, command)


def test_create_order_rejects_other_agencies(place_order):
    with pytest.raises(core_logic.PermissionDeniedError):
        place_order(agency_id="AG-2")


def test_create_order_compensates_when_items_fail(context, gateway, place_order):
    """A failed item write removes the already written order row."""

    gateway.fail_on("insert", TableName.SALES_ORDER_ITEMS)

    with pytest.raises(data_manager.PersistenceError):
        place_order()

    assert _rows(context, TableName.SALES_ORDERS) == []
    assert ("delete", TableName.SALES_ORDERS) in gateway.calls


def test_create_order_with_discount_rule(context, agent, set_fixed_datetime):
    set_fixed_datetime(datetime(2025, 6, 1, 9, 0, tzinfo=UTC))
    rule = data_manager.DiscountRuleRow(
        id="DR-1",
        name="Loyalty",
        discount_type="percentage",
        value=Decimal("10"),
        applicable_to="customer",
        target_ids=("C-1",),
        is_active=True,
        valid_from="2025-01-01",
        valid_to="2025-12-31",
        max_usage_count=5,
        current_usage_count=0,
        description=None,
        created_by="U-ADMIN",
        created_at="2025-01-01T00:00:00+00:00",
    )
    context.gateway.insert(TableName.DISCOUNT_RULES, [rule])
    command = core_logic.CreateOrderCommand(
        customer_id="C-1",
        customer_name="Acme Stores",
        items=[core_logic.OrderItemInput("P-1", "Widget", 10, Decimal("100.00"))],
        discount_rule_id="DR-1",
    )

    placed = core_logic.create_order(context, agent, command)

    assert placed.order.total == Decimal("900.00")
    assert placed.order.discount_rule_id == "DR-1"
    assert core_logic.select_one(context, TableName.DISCOUNT_RULES, "DR-1", "rule").current_usage_count == 1

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.create_order(context, agent, replace(command, discount=Discount.percentage("5")))


def test_approve_order_moves_pending_to_approved(context, place_order, superuser):
    placed = place_order([("P-1", 4, "250.00")], discount=Discount.percentage("25"))

    approved = core_logic.approve_order(context, placed.order.id, superuser)

    assert approved.status == OrderStatus.APPROVED.value
    assert approved.approved_by == superuser.user_id
    assert core_logic.list_pending_approvals(context) == []


def test_approve_order_requires_superuser(context, place_order, agency_user):
    placed = place_order([("P-1", 4, "250.00")], discount=Discount.percentage("25"))

    with pytest.raises(core_logic.PermissionDeniedError):
        core_logic.approve_order(context, placed.order.id, agency_user)


def test_approve_order_rejects_non_pending_orders(context, place_order, superuser):
    placed = place_order()

    with pytest.raises(core_logic.InvalidTransitionError):
        core_logic.approve_order(context, placed.order.id, superuser)


def test_reject_order_cancels_pending_order(context, place_order, superuser):
    placed = place_order([("P-1", 4, "250.00")], discount=Discount.percentage("25"))

    rejected = core_logic.reject_order(context, placed.order.id, superuser)

    assert rejected.status == OrderStatus.CANCELLED.value
    assert core_logic.can_convert_to_invoice(rejected) is False


def test_list_pending_approvals_filters_by_agency(context, place_order):
    other_agent = core_logic.Actor(user_id="U-AGENT-2", role=UserRole.AGENT, agency_id="AG-2")
    place_order([("P-1", 4, "250.00")], discount=Discount.percentage("25"))
    place_order([("P-1", 4, "250.00")], discount=Discount.percentage("25"), actor=other_agent)
    place_order([("P-1", 1, "250.00")])

    queue = core_logic.list_pending_approvals(context, "AG-1")

    assert [order.agency_id for order in queue] == ["AG-1"]
    assert len(core_logic.list_pending_approvals(context)) == 2


def test_close_order_rejects_terminal_orders(context, place_order, agent):
    placed = place_order()
    closed = core_logic.close_order(context, placed.order.id, agent)

    assert closed.status == OrderStatus.CLOSED.value
    with pytest.raises(core_logic.InvalidTransitionError):
        core_logic.close_order(context, placed.order.id, agent)


def test_get_order_raises_for_unknown_ids(context):
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_order(context, "missing")


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


def test_approved_discounted_order_invoices_in_full(context, place_order, superuser, agent):
    placed = place_order([("P-1", 4, "250.00")], discount=Discount.percentage("25"))
    core_logic.approve_order(context, placed.order.id, superuser)

    issued = core_logic.convert_to_invoice(
        context,
        agent,
        core_logic.ConvertToInvoiceCommand(order_id=placed.order.id, signature="data:image/png;base64,AAA"),
    )

    order = core_logic.get_order(context, placed.order.id)
    assert issued.invoice.total == Decimal("750.00")
    assert issued.invoice.sales_order_id == order.id
    assert order.total_invoiced == Decimal("750.00")
    assert order.status == OrderStatus.INVOICED.value
    assert issued.warnings == ()


def test_partial_invoicing_tracks_remaining_amount(context, place_order, agent):
    """Invoicing 2 of 3 units leaves the order partially invoiced until the last unit."""

    placed = place_order([("P-1", 3, "250.00")])
    item_id = placed.items[0].id

    first = core_logic.convert_to_invoice(
        context,
        agent,
        core_logic.ConvertToInvoiceCommand(
            order_id=placed.order.id,
            signature="sig",
            lines=[core_logic.InvoiceLineSelection(item_id, 2)],
        ),
    )
    order = core_logic.get_order(context, placed.order.id)
    assert first.invoice.total == Decimal("500.00")
    assert order.status == OrderStatus.PARTIALLY_INVOICED.value
    assert core_logic.remaining_amount(order) == Decimal("250.00")

    second = core_logic.convert_to_invoice(
        context,
        agent,
        core_logic.ConvertToInvoiceCommand(
            order_id=placed.order.id,
            signature="sig",
            lines=[core_logic.InvoiceLineSelection(item_id, 1)],
        ),
    )
    order = core_logic.get_order(context, placed.order.id)
    assert second.invoice.total == Decimal("250.00")
    assert order.status == OrderStatus.INVOICED.value
    assert order.total_invoiced == order.total
    assert core_logic.get_order_items(context, order.id)[0].quantity_invoiced == 3


def test_convert_to_invoice_rejects_over_invoicing(context, place_order, agent):
    placed = place_order([("P-1", 3, "250.00")])

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.convert_to_invoice(
            context,
            agent,
            core_logic.ConvertToInvoiceCommand(
                order_id=placed.order.id,
                signature="sig",
                lines=[core_logic.InvoiceLineSelection(placed.items[0].id, 4)],
            ),
        )


def test_issue_invoice_rereads_order_passed_by_caller(context, place_order, agent):
    """A row captured before a partial invoice cannot bill the order past its total."""

    placed = place_order([("P-1", 2, "500.00"), ("P-2", 1, "250.00")])
    first_item, second_item = placed.items
    core_logic.convert_to_invoice(
        context,
        agent,
        core_logic.ConvertToInvoiceCommand(
            order_id=placed.order.id,
            signature="sig",
            lines=[core_logic.InvoiceLineSelection(first_item.id, 2)],
        ),
    )

    issued = core_logic.issue_invoice(
        context,
        agent,
        source=placed.order,
        customer_id="C-1",
        customer_name="Acme Stores",
        agency_id="AG-1",
        lines=[
            core_logic.InvoiceLine(
                "P-2",
                "Product P-2",
                1,
                Decimal("250.00"),
                sales_order_item_id=second_item.id,
            )
        ],
        signature="sig",
        discount=Discount.percentage("50"),
    )

    order = core_logic.get_order(context, placed.order.id)
    billed = sum(row.total for row in core_logic.list_invoices(context))
    assert issued.invoice.total == Decimal("250.00")
    assert order.total_invoiced == Decimal("1250.00") == order.total
    assert billed == order.total
    assert order.status == OrderStatus.INVOICED.value


def test_issue_invoice_rejects_prices_that_differ_from_the_order(context, place_order, agent):
    placed = place_order([("P-1", 2, "50.00")])
    item = placed.items[0]

    with pytest.raises(core_logic.BusinessRuleViolation, match="at 50.00"):
        core_logic.issue_invoice(
            context,
            agent,
            source=placed.order,
            customer_id="C-1",
            customer_name="Acme Stores",
            agency_id="AG-1",
            lines=[core_logic.InvoiceLine("P-1", "Product P-1", 2, Decimal("1.00"), sales_order_item_id=item.id)],
            signature="sig",
        )

    assert _rows(context, TableName.INVOICES) == []
    assert core_logic.get_order(context, placed.order.id).status == OrderStatus.APPROVED.value


def test_rounding_never_closes_an_order_with_units_outstanding(context, place_order, agent):
    """Per-unit invoices round up past the discounted total; the last unit still gets billed."""

    placed = place_order([("P-1", 10, "0.04")], discount=Discount.percentage("10"))
    item_id = placed.items[0].id
    assert placed.order.total == Decimal("0.36")

    def _invoice_one():
        return core_logic.convert_to_invoice(
            context,
            agent,
            core_logic.ConvertToInvoiceCommand(
                order_id=placed.order.id,
                signature="sig",
                lines=[core_logic.InvoiceLineSelection(item_id, 1)],
            ),
        )

    for _ in range(9):
        _invoice_one()

    order = core_logic.get_order(context, placed.order.id)
    assert order.status == OrderStatus.PARTIALLY_INVOICED.value
    assert core_logic.remaining_amount(order) > Decimal("0.00")
    assert core_logic.can_convert_to_invoice(order)

    last = _invoice_one()
    order = core_logic.get_order(context, placed.order.id)
    assert last.invoice.total == Decimal("0.01")
    assert order.status == OrderStatus.INVOICED.value
    assert order.total_invoiced == order.total
    assert core_logic.get_order_items(context, order.id)[0].quantity_invoiced == 10


def test_convert_to_invoice_rejects_pending_orders(context, place_order, agent):
    placed = place_order([("P-1", 4, "250.00")], discount=Discount.percentage("25"))

    with pytest.raises(core_logic.InvalidTransitionError):
        core_logic.convert_to_invoice(
            context,
            agent,
            core_logic.ConvertToInvoiceCommand(order_id=placed.order.id, signature="sig"),
        )


def test_convert_to_invoice_requires_signature_before_storage(context, gateway, agent):
    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.convert_to_invoice(
            context,
            agent,
            core_logic.ConvertToInvoiceCommand(order_id="any", signature="   "),
        )

    assert gateway.calls == []


def test_direct_invoice_without_signature_never_reaches_storage(context, gateway, agent):
    with pytest.raises(core_logic.BusinessRuleViolation):
        _direct_invoice(context, agent, [("P-1", 1, "10.00")], signature="")

    assert gateway.calls == []


def test_direct_invoice_rejects_discount_needing_approval(context, agent):
    with pytest.raises(core_logic.BusinessRuleViolation):
        _direct_invoice(context, agent, [("P-1", 1, "100.00")], discount=Discount.percentage("50"))

    assert _rows(context, TableName.INVOICES) == []


def test_direct_invoice_writes_stock_decrements(context, agent):
    issued = _direct_invoice(context, agent, [("P-1", 3, "10.00"), ("P-2", 5, "20.00")])

    assert issued.invoice.sales_order_id is None
    assert issued.invoice.total == Decimal("130.00")
    assert core_logic.calculate_stock(context) == {("P-1", "", ""): -3, ("P-2", "", ""): -5}


def test_inventory_failure_under_warn_policy_keeps_invoice(context, gateway, agent):
    gateway.fail_on("insert", TableName.INVENTORY_TRANSACTIONS)

    issued = _direct_invoice(context, agent, [("P-1", 1, "10.00")])

    assert len(issued.warnings) == 1
    assert "Inventory update failed" in issued.warnings[0]
    assert [row.id for row in _rows(context, TableName.INVOICES)] == [issued.invoice.id]


def test_inventory_failure_under_rollback_policy_undoes_invoice(settings, gateway, agent, place_order):
    context = core_logic.RuntimeContext(
        settings=replace(settings, inventory_failure_policy=InventoryFailurePolicy.ROLLBACK),
        gateway=gateway,
    )
    placed = place_order([("P-1", 2, "50.00")])
    gateway.fail_on("insert", TableName.INVENTORY_TRANSACTIONS)

    with pytest.raises(data_manager.PersistenceError):
        core_logic.convert_to_invoice(
            context,
            agent,
            core_logic.ConvertToInvoiceCommand(order_id=placed.order.id, signature="sig"),
        )

    order = core_logic.get_order(context, placed.order.id)
    assert _rows(context, TableName.INVOICES) == []
    assert _rows(context, TableName.INVOICE_ITEMS) == []
    assert order.status == OrderStatus.APPROVED.value
    assert order.total_invoiced == Decimal("0.00")
    assert core_logic.get_order_items(context, order.id)[0].quantity_invoiced == 0


def test_invoice_compensates_when_order_update_fails(context, gateway, place_order, agent):
    placed = place_order([("P-1", 2, "50.00")])
    gateway.fail_on("update", TableName.SALES_ORDERS)

    with pytest.raises(data_manager.PersistenceError):
        core_logic.convert_to_invoice(
            context,
            agent,
            core_logic.ConvertToInvoiceCommand(order_id=placed.order.id, signature="sig"),
        )

    assert _rows(context, TableName.INVOICES) == []
    assert core_logic.get_order_items(context, placed.order.id)[0].quantity_invoiced == 0


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------


def test_return_caps_quantities_per_invoice_item(context, agent):
    """Returning 4 of 5 invoiced units leaves one returnable unit."""

    issued = _direct_invoice(context, agent, [("P-1", 3, "10.00"), ("P-2", 5, "20.00")])
    first_item, second_item = issued.items

    recorded = core_logic.record_return(
        context,
        agent,
        core_logic.ReturnCommand(
            reason="Damaged",
            invoice_id=issued.invoice.id,
            lines=[core_logic.ReturnLineInput(quantity=4, invoice_item_id=second_item.id)],
        ),
    )

    outstanding = core_logic.returnable_quantities(context, issued.invoice.id)
    assert outstanding == {first_item.id: 3, second_item.id: 1}
    assert recorded.record.status == ReturnStatus.APPROVED.value
    assert recorded.record.total == Decimal("80.00")
    assert recorded.items[0].original_quantity == 5
    assert core_logic.calculate_stock(context)[("P-2", "", "")] == -1

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.record_return(
            context,
            agent,
            core_logic.ReturnCommand(
                reason="Damaged",
                invoice_id=issued.invoice.id,
                lines=[core_logic.ReturnLineInput(quantity=2, invoice_item_id=second_item.id)],
            ),
        )


def test_return_refund_follows_invoice_discount(context, agent):
    issued = _direct_invoice(context, agent, [("P-1", 10, "10.00")], discount=Discount.percentage("10"))

    recorded = core_logic.record_return(
        context,
        agent,
        core_logic.ReturnCommand(
            reason="Wrong size",
            invoice_id=issued.invoice.id,
            lines=[core_logic.ReturnLineInput(quantity=2, invoice_item_id=issued.items[0].id)],
        ),
    )

    assert recorded.record.subtotal == Decimal("20.00")
    assert recorded.record.total == Decimal("18.00")


def test_provisional_return_can_be_linked_later(context, agent):
    recorded = core_logic.record_return(
        context,
        agent,
        core_logic.ReturnCommand(
            reason="Unwanted",
            customer_id="C-1",
            customer_name="Acme Stores",
            lines=[
                core_logic.ReturnLineInput(
                    quantity=2,
                    product_id="P-1",
                    product_name="Product P-1",
                    unit_price=Decimal("10.00"),
                )
            ],
        ),
    )
    assert recorded.record.invoice_id is None

    issued = _direct_invoice(context, agent, [("P-1", 3, "10.00")])
    linked = core_logic.link_return_to_invoice(context, agent, recorded.record.id, issued.invoice.id)

    assert linked.record.invoice_id == issued.invoice.id
    assert linked.items[0].invoice_item_id == issued.items[0].id
    assert core_logic.returnable_quantities(context, issued.invoice.id) == {issued.items[0].id: 1}
    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.link_return_to_invoice(context, agent, recorded.record.id, issued.invoice.id)
    assert [row.id for row in core_logic.list_returns(context, invoice_id=issued.invoice.id)] == [recorded.record.id]


def test_link_return_fits_lines_sharing_a_product(context, agent):
    """Two invoice lines of one product can absorb a 1-unit and a 3-unit return."""

    recorded = core_logic.record_return(
        context,
        agent,
        core_logic.ReturnCommand(
            reason="Unwanted",
            customer_id="C-1",
            customer_name="Acme Stores",
            lines=[
                core_logic.ReturnLineInput(
                    quantity=quantity,
                    product_id="P-1",
                    product_name="Product P-1",
                    unit_price=Decimal("10.00"),
                )
                for quantity in (1, 3)
            ],
        ),
    )
    issued = _direct_invoice(context, agent, [("P-1", 3, "10.00"), ("P-1", 2, "10.00")])
    larger, smaller = issued.items

    linked = core_logic.link_return_to_invoice(context, agent, recorded.record.id, issued.invoice.id)

    by_quantity = {item.quantity_returned: item.invoice_item_id for item in linked.items}
    assert by_quantity == {3: larger.id, 1: smaller.id}
    assert core_logic.returnable_quantities(context, issued.invoice.id) == {larger.id: 0, smaller.id: 1}


def test_issue_invoice_validates_before_storage(context, gateway, agent):
    """Missing lines or customers are rejected without touching the gateway."""

    line = core_logic.InvoiceLine("P-1", "Widget", 1, Decimal("5.00"))
    with pytest.raises(core_logic.BusinessRuleViolation, match="invoice line"):
        core_logic.issue_invoice(
            context,
            agent,
            source=None,
            customer_id="C-1",
            customer_name="Acme Stores",
            agency_id="AG-1",
            lines=[],
            signature="sig",
        )
    with pytest.raises(core_logic.BusinessRuleViolation, match="customer"):
        core_logic.issue_invoice(
            context,
            agent,
            source=None,
            customer_id="C-1",
            customer_name="  ",
            agency_id="AG-1",
            lines=[line],
            signature="sig",
        )
    assert gateway.calls == []

    issued = core_logic.issue_invoice(
        context,
        agent,
        source=None,
        customer_id="C-1",
        customer_name="Acme Stores",
        agency_id="AG-1",
        lines=[line],
        signature="sig",
    )
    assert issued.invoice.sales_order_id is None
    assert issued.invoice.location_status == LocationStatus.UNAVAILABLE.value


def test_record_return_compensates_when_items_fail(context, gateway, agent):
    issued = _direct_invoice(context, agent, [("P-1", 1, "10.00")])
    gateway.fail_on("insert", TableName.RETURN_ITEMS)

    with pytest.raises(data_manager.PersistenceError):
        core_logic.record_return(
            context,
            agent,
            core_logic.ReturnCommand(
                reason="Damaged",
                invoice_id=issued.invoice.id,
                lines=[core_logic.ReturnLineInput(quantity=1, invoice_item_id=issued.items[0].id)],
            ),
        )

    assert _rows(context, TableName.RETURNS) == []


def test_process_return_is_denied_to_agents(context, agent, agency_user):
    issued = _direct_invoice(context, agent, [("P-1", 1, "10.00")])
    recorded = core_logic.record_return(
        context,
        agent,
        core_logic.ReturnCommand(
            reason="Damaged",
            invoice_id=issued.invoice.id,
            lines=[core_logic.ReturnLineInput(quantity=1, invoice_item_id=issued.items[0].id)],
        ),
    )

    with pytest.raises(core_logic.PermissionDeniedError):
        core_logic.process_return(context, agent, recorded.record.id)

    processed = core_logic.process_return(context, agency_user, recorded.record.id)
    assert processed.status == ReturnStatus.PROCESSED.value
    assert processed.processed_by == agency_user.user_id
    with pytest.raises(core_logic.InvalidTransitionError):
        core_logic.process_return(context, agency_user, recorded.record.id)


def test_record_return_requires_reason(context, agent):
    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.record_return(
            context,
            agent,
            core_logic.ReturnCommand(reason=" ", lines=[core_logic.ReturnLineInput(quantity=1)]),
        )


def test_calculate_stock_filters_by_agency(context, agent, superuser):
    _direct_invoice(context, agent, [("P-1", 2, "10.00")])
    other = core_logic.DirectInvoiceCommand(
        customer_id="C-2",
        customer_name="Other",
        lines=[core_logic.InvoiceLine("P-1", "Product P-1", 1, Decimal("10.00"))],
        signature="sig",
        agency_id="AG-2",
    )
    core_logic.create_direct_invoice(context, superuser, other)

    assert core_logic.calculate_stock(context, "AG-1") == {("P-1", "", ""): -2}
    assert core_logic.calculate_stock(context) == {("P-1", "", ""): -3}


def test_actor_role_helpers():
    assert core_logic.Actor("U", UserRole.SUPERUSER).is_superuser is True
    assert core_logic.Actor("U", UserRole.AGENT, "AG-1").is_superuser is False
