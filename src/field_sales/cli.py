"""Command-line entry points for the field sales back office.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. The acting user comes from ``--user-id``,
``--role`` and ``--agency-id`` or the ``FIELD_SALES_USER_ID``,
``FIELD_SALES_ROLE`` and ``FIELD_SALES_AGENCY_ID`` environment variables.
"""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, deliveries, disputes, log, rules
from .constants import (
    DeliveryStatus,
    DiscountType,
    DisputePriority,
    DisputeStatus,
    DisputeType,
    OrderStatus,
    PromotionType,
    RuleScope,
    TableName,
    UserRole,
)
from .discount_policy import BasketLine, Discount


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


SubParsers = argparse._SubParsersAction

RULE_TABLES_BY_KIND = {
    "discount": TableName.DISCOUNT_RULES,
    "promotion": TableName.PROMOTIONAL_RULES,
}


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="field-sales",
        description="Command-line tools for field sales orders, invoices, returns and deliveries.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument("--user-id", default=os.environ.get("FIELD_SALES_USER_ID"))
    parser.add_argument(
        "--role",
        choices=[member.value for member in UserRole],
        default=os.environ.get("FIELD_SALES_ROLE"),
    )
    parser.add_argument("--agency-id", default=os.environ.get("FIELD_SALES_AGENCY_ID"))
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as orders, invoices and returns."""
    specs = {
        "create-order": register_create_order_command(subparsers),
        "approve-order": register_decide_order_command(subparsers, "approve-order", core_logic.approve_order),
        "reject-order": register_decide_order_command(subparsers, "reject-order", core_logic.reject_order),
        "close-order": register_decide_order_command(subparsers, "close-order", core_logic.close_order),
        "invoice-order": register_invoice_order_command(subparsers),
        "direct-invoice": register_direct_invoice_command(subparsers),
        "record-return": register_record_return_command(subparsers),
        "link-return": register_link_return_command(subparsers),
        "process-return": register_process_return_command(subparsers),
        "schedule-delivery": register_schedule_delivery_command(subparsers),
        "dispatch-delivery": register_dispatch_delivery_command(subparsers),
        "complete-delivery": register_complete_delivery_command(subparsers),
        "fail-delivery": register_fail_delivery_command(subparsers),
        "cancel-delivery": register_cancel_delivery_command(subparsers),
        "set-discount-limit": register_set_discount_limit_command(subparsers),
        "open-dispute": register_open_dispute_command(subparsers),
        "update-dispute": register_update_dispute_command(subparsers),
        "create-discount-rule": register_create_discount_rule_command(subparsers),
        "create-promotion": register_create_promotion_command(subparsers),
        "set-rule-active": register_set_rule_active_command(subparsers),
        "record-rule-usage": register_record_rule_usage_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and stock."""
    specs = {
        "orders": register_orders_command(subparsers),
        "approvals": register_approvals_command(subparsers),
        "invoices": register_invoices_command(subparsers),
        "stock": register_stock_command(subparsers),
        "deliveries": register_deliveries_command(subparsers),
        "disputes": register_disputes_command(subparsers),
        "rules": register_rules_command(subparsers),
        "quote-promotions": register_quote_promotions_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_signature_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--signature", help="Signature blob, for example a data URL.")
    group.add_argument("--signature-file", type=Path, help="File holding the signature blob.")


def _add_location_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--latitude", default=None)
    parser.add_argument("--longitude", default=None)


def _add_discount_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--discount-percent", default=None)
    group.add_argument("--discount-amount", default=None)


# ---------------------------------------------------------------------------
# Write command registrations
# ---------------------------------------------------------------------------


def register_create_order_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``create-order``."""
    name = "create-order"
    help_text = "Place a sales order; large discounts wait for superuser approval."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--customer-name", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            help="PRODUCT_ID:NAME:QTY:UNIT_PRICE[:COLOR[:SIZE]]; repeat per line.",
        )
        _add_discount_arguments(parser)
        parser.add_argument("--discount-rule-id", default=None)
        _add_location_arguments(parser)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_order)


def register_decide_order_command(
    subparsers: SubParsers,
    name: str,
    operation: Callable[..., data_manager.SalesOrderRow],
) -> CommandSpec:
    """Register ``approve-order``, ``reject-order`` or ``close-order``."""
    help_text = f"{name.split('-')[0].capitalize()} a sales order."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        order = operation(context, args.order_id, build_actor(args))
        print(f"{order.order_number}: {order.status}")
        return 0

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_invoice_order_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``invoice-order``."""
    name = "invoice-order"
    help_text = "Invoice all or part of an approved sales order."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            default=[],
            help="ORDER_ITEM_ID:QTY; omit to invoice everything outstanding.",
        )
        _add_signature_arguments(parser)
        _add_location_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice_order)


def register_direct_invoice_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``direct-invoice``."""
    name = "direct-invoice"
    help_text = "Issue an invoice without a sales order."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--customer-name", required=True)
        parser.add_argument("--item", dest="items", action="append", required=True)
        _add_discount_arguments(parser)
        _add_signature_arguments(parser)
        _add_location_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_direct_invoice)


def register_record_return_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``record-return``."""
    name = "record-return"
    help_text = "Record a customer return against an invoice or provisionally."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--reason", required=True)
        parser.add_argument("--invoice-id", default=None)
        parser.add_argument("--customer-id", default="")
        parser.add_argument("--customer-name", default="")
        parser.add_argument("--line", dest="lines", action="append", default=[], help="INVOICE_ITEM_ID:QTY")
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            default=[],
            help="PRODUCT_ID:NAME:QTY:UNIT_PRICE[:COLOR[:SIZE]] for returns without an invoice.",
        )
        _add_location_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_record_return)


def register_link_return_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``link-return``."""
    name = "link-return"
    help_text = "Bind a provisional return to its invoice."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--return-id", required=True)
        parser.add_argument("--invoice-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_link_return)


def register_process_return_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``process-return``."""
    name = "process-return"
    help_text = "Mark an approved return as processed."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--return-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_process_return)


def register_schedule_delivery_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``schedule-delivery``."""
    name = "schedule-delivery"
    help_text = "Schedule delivery of an invoice."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--delivery-agent-id", required=True)
        parser.add_argument("--date", dest="scheduled_date", default=None, help="YYYY-MM-DD")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_schedule_delivery)


def register_dispatch_delivery_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``dispatch-delivery``."""
    name = "dispatch-delivery"
    help_text = "Mark a delivery as out for delivery."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--delivery-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dispatch_delivery)


def register_complete_delivery_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``complete-delivery``."""
    name = "complete-delivery"
    help_text = "Record the hand-over of a delivery."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--delivery-id", required=True)
        parser.add_argument("--received-by", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        _add_signature_arguments(parser)
        _add_location_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_complete_delivery)


def register_fail_delivery_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``fail-delivery``."""
    name = "fail-delivery"
    help_text = "Mark a delivery as failed."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--delivery-id", required=True)
        parser.add_argument("--reason", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_fail_delivery)


def register_set_discount_limit_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``set-discount-limit``."""
    name = "set-discount-limit"
    help_text = "Assign an agency's maximum discount without approval."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--agency", dest="target_agency_id", required=True)
        parser.add_argument("--percent", required=True)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_discount_limit)


def register_open_dispute_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``open-dispute``."""
    name = "open-dispute"
    help_text = "Raise a dispute and assign it."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="dispute_type", choices=[m.value for m in DisputeType], required=True)
        parser.add_argument("--target-id", required=True)
        parser.add_argument("--target-name", required=True)
        parser.add_argument("--reason", required=True)
        parser.add_argument("--description", default="")
        parser.add_argument("--assign-to", required=True)
        parser.add_argument(
            "--priority",
            choices=[m.value for m in DisputePriority],
            default=DisputePriority.MEDIUM.value,
        )
        parser.add_argument("--order-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_open_dispute)


def register_update_dispute_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``update-dispute``."""
    name = "update-dispute"
    help_text = "Move a dispute to its next status."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--dispute-id", required=True)
        parser.add_argument("--status", choices=[m.value for m in DisputeStatus], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_dispute)


def _add_rule_window_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--valid-from", required=True, help="YYYY-MM-DD")
    parser.add_argument("--valid-to", required=True, help="YYYY-MM-DD")
    parser.add_argument("--max-usage", type=int, default=None)
    parser.add_argument("--description", default=None)


def register_create_discount_rule_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``create-discount-rule``."""
    name = "create-discount-rule"
    help_text = "Define a discount rule (superusers only)."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", dest="rule_name", required=True)
        parser.add_argument("--type", dest="discount_type", choices=[m.value for m in DiscountType], required=True)
        parser.add_argument("--value", required=True)
        parser.add_argument("--scope", choices=[m.value for m in RuleScope], default=RuleScope.GLOBAL.value)
        parser.add_argument(
            "--target",
            dest="targets",
            action="append",
            default=[],
            help="Customer, product or agent id the rule is limited to; repeat per id.",
        )
        _add_rule_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_discount_rule)


def register_create_promotion_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``create-promotion``."""
    name = "create-promotion"
    help_text = "Define a promotional rule (superusers only)."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", dest="rule_name", required=True)
        parser.add_argument(
            "--type",
            dest="promotion_type",
            choices=[m.value for m in PromotionType],
            required=True,
        )
        parser.add_argument("--buy", dest="buy_quantity", type=int, required=True)
        parser.add_argument("--get", dest="get_quantity", type=int, default=0)
        parser.add_argument("--percent", default=None)
        parser.add_argument("--scope", choices=[m.value for m in RuleScope], default=RuleScope.GLOBAL.value)
        parser.add_argument("--buy-product", dest="buy_products", action="append", default=[])
        parser.add_argument("--get-product", dest="get_products", action="append", default=[])
        parser.add_argument("--customer", dest="customers", action="append", default=[])
        parser.add_argument("--agent", dest="agents", action="append", default=[])
        _add_rule_window_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_promotion)


def register_set_rule_active_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``set-rule-active``."""
    name = "set-rule-active"
    help_text = "Enable or disable a discount or promotional rule."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=sorted(RULE_TABLES_BY_KIND), required=True)
        parser.add_argument("--rule-id", required=True)
        group = parser.add_mutually_exclusive_group(required=True)
        group.add_argument("--active", dest="active", action="store_true")
        group.add_argument("--inactive", dest="active", action="store_false")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_rule_active)


def register_record_rule_usage_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``record-rule-usage``."""
    name = "record-rule-usage"
    help_text = "Count one redemption of a rule against its usage cap."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=sorted(RULE_TABLES_BY_KIND), required=True)
        parser.add_argument("--rule-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_record_rule_usage)


def register_cancel_delivery_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``cancel-delivery``."""
    name = "cancel-delivery"
    help_text = "Cancel a pending or dispatched delivery."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--delivery-id", required=True)
        parser.add_argument("--reason", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cancel_delivery)


# ---------------------------------------------------------------------------
# Read command registrations
# ---------------------------------------------------------------------------


def register_orders_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "List sales orders, newest first."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--status", choices=[m.value for m in OrderStatus], default=None)
        parser.add_argument("--limit", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders_report)


def register_approvals_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``approvals``."""
    name = "approvals"
    help_text = "List orders waiting for superuser approval."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_approvals_report)


def register_invoices_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``invoices``."""
    name = "invoices"
    help_text = "List invoices, newest first."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", default=None)
        parser.add_argument("--limit", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoices_report)


def register_stock_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display net stock movements per product variant."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_deliveries_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``deliveries``."""
    name = "deliveries"
    help_text = "List deliveries."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--status", choices=[m.value for m in DeliveryStatus], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_deliveries_report)


def register_disputes_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``disputes``."""
    name = "disputes"
    help_text = "List disputes."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--status", choices=[m.value for m in DisputeStatus], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_disputes_report)


def register_rules_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``rules``."""
    name = "rules"
    help_text = "List discount or promotional rules."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--kind", choices=sorted(RULE_TABLES_BY_KIND), default="discount")
        parser.add_argument("--active-only", action="store_true")
        parser.add_argument(
            "--customer-id",
            default=None,
            help="Only discount rules redeemable today for this customer.",
        )
        parser.add_argument("--product", dest="products", action="append", default=[])
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_rules_report)


def register_quote_promotions_command(subparsers: SubParsers) -> CommandSpec:
    """Register the parser and executor for ``quote-promotions``."""
    name = "quote-promotions"
    help_text = "Price the active promotions against a basket, best first."

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", default=None)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            required=True,
            help="PRODUCT_ID:QTY:UNIT_PRICE[:CATEGORY_ID]; repeat per line.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_quote_promotions)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def build_actor(args: argparse.Namespace) -> core_logic.Actor:
    """Identify the acting user from the global options."""
    user_id = getattr(args, "user_id", None)
    role = getattr(args, "role", None)
    if not user_id:
        raise core_logic.BusinessRuleViolation("A user id is required (--user-id or FIELD_SALES_USER_ID)")
    if not role:
        raise core_logic.BusinessRuleViolation("A role is required (--role or FIELD_SALES_ROLE)")
    return core_logic.Actor(user_id=user_id, role=UserRole(role), agency_id=getattr(args, "agency_id", None))


def parse_money(text: str, label: str) -> Decimal:
    """Parse a decimal amount, reporting bad input as ``ValueError``."""
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid {label}: {text!r}") from exc


def parse_quantity(text: str, label: str = "quantity") -> int:
    try:
        return int(text)
    except ValueError as exc:
        raise ValueError(f"Invalid {label}: {text!r}") from exc


def parse_item(text: str) -> core_logic.OrderItemInput:
    """Parse ``PRODUCT_ID:NAME:QTY:UNIT_PRICE[:COLOR[:SIZE]]``."""
    parts = text.split(":")
    if not 4 <= len(parts) <= 6:
        raise ValueError(f"Invalid item {text!r}; expected PRODUCT_ID:NAME:QTY:UNIT_PRICE[:COLOR[:SIZE]]")
    parts += [""] * (6 - len(parts))
    return core_logic.OrderItemInput(
        product_id=parts[0],
        product_name=parts[1],
        quantity=parse_quantity(parts[2]),
        unit_price=parse_money(parts[3], "unit price"),
        color=parts[4],
        size=parts[5],
    )


def parse_selection(text: str) -> tuple[str, int]:
    """Parse ``ID:QTY`` into its parts."""
    record_id, sep, quantity = text.rpartition(":")
    if not sep or not record_id:
        raise ValueError(f"Invalid line {text!r}; expected ID:QTY")
    return record_id, parse_quantity(quantity)


def translate_discount(args: argparse.Namespace) -> Discount:
    percent = getattr(args, "discount_percent", None)
    amount = getattr(args, "discount_amount", None)
    if percent is not None:
        return Discount.percentage(parse_money(percent, "discount percentage"))
    if amount is not None:
        return Discount.fixed(parse_money(amount, "discount amount"))
    return Discount.none()


def translate_location(args: argparse.Namespace) -> core_logic.Location:
    """Build a location from ``--latitude``/``--longitude`` or mark it unavailable."""
    latitude = getattr(args, "latitude", None)
    longitude = getattr(args, "longitude", None)
    if latitude is None and longitude is None:
        return core_logic.Location.unavailable("No coordinates supplied")
    if latitude is None or longitude is None:
        raise ValueError("--latitude and --longitude must be given together")
    return core_logic.Location.captured(parse_money(latitude, "latitude"), parse_money(longitude, "longitude"))


def read_signature(args: argparse.Namespace) -> str:
    """Return the signature text from ``--signature`` or ``--signature-file``."""
    if getattr(args, "signature_file", None) is not None:
        return Path(args.signature_file).read_text(encoding="utf-8").strip()
    return getattr(args, "signature", None) or ""


def translate_create_order(args: argparse.Namespace) -> core_logic.CreateOrderCommand:
    """Translate CLI args into a create-order command object."""
    return core_logic.CreateOrderCommand(
        customer_id=args.customer_id,
        customer_name=args.customer_name,
        items=[parse_item(item) for item in args.items],
        discount=translate_discount(args),
        agency_id=getattr(args, "agency_id", None),
        discount_rule_id=args.discount_rule_id,
        location=translate_location(args),
        notes=args.notes,
    )


def translate_invoice_order(args: argparse.Namespace) -> core_logic.ConvertToInvoiceCommand:
    """Translate CLI args into a convert-to-invoice command object."""
    selections = [core_logic.InvoiceLineSelection(*parse_selection(line)) for line in args.lines]
    return core_logic.ConvertToInvoiceCommand(
        order_id=args.order_id,
        signature=read_signature(args),
        lines=selections,
        location=translate_location(args),
    )


def translate_direct_invoice(args: argparse.Namespace) -> core_logic.DirectInvoiceCommand:
    """Translate CLI args into a direct-invoice command object."""
    lines = []
    for text in args.items:
        item = parse_item(text)
        lines.append(
            core_logic.InvoiceLine(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                color=item.color,
                size=item.size,
            )
        )
    return core_logic.DirectInvoiceCommand(
        customer_id=args.customer_id,
        customer_name=args.customer_name,
        lines=lines,
        signature=read_signature(args),
        discount=translate_discount(args),
        agency_id=getattr(args, "agency_id", None),
        location=translate_location(args),
    )


def translate_record_return(args: argparse.Namespace) -> core_logic.ReturnCommand:
    """Translate CLI args into a return command object."""
    lines = []
    for text in args.lines:
        invoice_item_id, quantity = parse_selection(text)
        lines.append(core_logic.ReturnLineInput(quantity=quantity, invoice_item_id=invoice_item_id))
    for text in args.items:
        item = parse_item(text)
        lines.append(
            core_logic.ReturnLineInput(
                quantity=item.quantity,
                product_id=item.product_id,
                product_name=item.product_name,
                unit_price=item.unit_price,
                color=item.color,
                size=item.size,
            )
        )
    return core_logic.ReturnCommand(
        reason=args.reason,
        lines=lines,
        invoice_id=args.invoice_id,
        customer_id=args.customer_id,
        customer_name=args.customer_name,
        agency_id=getattr(args, "agency_id", None),
        location=translate_location(args),
    )


def translate_schedule_delivery(args: argparse.Namespace) -> deliveries.ScheduleDeliveryCommand:
    """Translate CLI args into a schedule-delivery command object."""
    scheduled = date.fromisoformat(args.scheduled_date) if args.scheduled_date else None
    return deliveries.ScheduleDeliveryCommand(
        invoice_id=args.invoice_id,
        delivery_agent_id=args.delivery_agent_id,
        scheduled_date=scheduled,
        notes=args.notes,
    )


def translate_open_dispute(args: argparse.Namespace) -> disputes.OpenDisputeCommand:
    """Translate CLI args into an open-dispute command object."""
    return disputes.OpenDisputeCommand(
        dispute_type=DisputeType(args.dispute_type),
        target_id=args.target_id,
        target_name=args.target_name,
        reason=args.reason,
        description=args.description,
        assigned_to=args.assign_to,
        priority=DisputePriority(args.priority),
        sales_order_id=args.order_id,
    )


def parse_basket_line(text: str) -> BasketLine:
    """Parse ``PRODUCT_ID:QTY:UNIT_PRICE[:CATEGORY_ID]``."""
    parts = text.split(":")
    if not 3 <= len(parts) <= 4:
        raise ValueError(f"Invalid line {text!r}; expected PRODUCT_ID:QTY:UNIT_PRICE[:CATEGORY_ID]")
    return BasketLine(
        product_id=parts[0],
        quantity=parse_quantity(parts[1]),
        unit_price=parse_money(parts[2], "unit price"),
        category_id=parts[3] if len(parts) == 4 and parts[3] else None,
    )


def translate_discount_rule(args: argparse.Namespace) -> rules.DiscountRuleCommand:
    """Translate CLI args into a discount rule definition."""
    return rules.DiscountRuleCommand(
        name=args.rule_name,
        discount_type=DiscountType(args.discount_type),
        value=parse_money(args.value, "rule value"),
        applicable_to=RuleScope(args.scope),
        valid_from=date.fromisoformat(args.valid_from),
        valid_to=date.fromisoformat(args.valid_to),
        target_ids=tuple(args.targets),
        max_usage_count=args.max_usage,
        description=args.description,
    )


def translate_promotion(args: argparse.Namespace) -> rules.PromotionCommand:
    """Translate CLI args into a promotional rule definition."""
    percentage = parse_money(args.percent, "discount percentage") if args.percent is not None else None
    return rules.PromotionCommand(
        name=args.rule_name,
        promotion_type=PromotionType(args.promotion_type),
        buy_quantity=args.buy_quantity,
        get_quantity=args.get_quantity,
        discount_percentage=percentage,
        applicable_to=RuleScope(args.scope),
        buy_product_ids=tuple(args.buy_products),
        get_product_ids=tuple(args.get_products),
        customer_ids=tuple(args.customers),
        agent_ids=tuple(args.agents),
        valid_from=date.fromisoformat(args.valid_from),
        valid_to=date.fromisoformat(args.valid_to),
        max_usage_count=args.max_usage,
        description=args.description,
    )


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def _print_rows(rows: Sequence[Any], columns: Sequence[str]) -> None:
    print("\t".join(columns))
    for row in rows:
        print("\t".join("" if getattr(row, column) is None else str(getattr(row, column)) for column in columns))


def _print_warnings(warnings: Sequence[str]) -> None:
    for warning in warnings:
        print(f"WARNING: {warning}")


def run_create_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-order workflow via the BLL."""
    command = translate_create_order(args)
    placed = core_logic.create_order(context, build_actor(args), command)
    print(f"{placed.order.order_number} ({placed.order.id}): {placed.order.status}, total {placed.order.total}")
    print(placed.verdict.message)
    return 0


def run_invoice_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the convert-to-invoice workflow via the BLL."""
    command = translate_invoice_order(args)
    issued = core_logic.convert_to_invoice(context, build_actor(args), command)
    print(f"{issued.invoice.invoice_number} ({issued.invoice.id}): total {issued.invoice.total}")
    _print_warnings(issued.warnings)
    return 0


def run_direct_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the direct invoice workflow via the BLL."""
    command = translate_direct_invoice(args)
    issued = core_logic.create_direct_invoice(context, build_actor(args), command)
    print(f"{issued.invoice.invoice_number} ({issued.invoice.id}): total {issued.invoice.total}")
    _print_warnings(issued.warnings)
    return 0


def run_record_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the return workflow via the BLL."""
    command = translate_record_return(args)
    recorded = core_logic.record_return(context, build_actor(args), command)
    print(f"{recorded.record.return_number} ({recorded.record.id}): total {recorded.record.total}")
    _print_warnings(recorded.warnings)
    return 0


def run_link_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the return linking workflow via the BLL."""
    linked = core_logic.link_return_to_invoice(context, build_actor(args), args.return_id, args.invoice_id)
    print(f"{linked.record.return_number}: linked to {linked.record.invoice_id}")
    return 0


def run_process_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the return processing workflow via the BLL."""
    record = core_logic.process_return(context, build_actor(args), args.return_id)
    print(f"{record.return_number}: {record.status}")
    return 0


def run_schedule_delivery(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delivery scheduling workflow."""
    delivery = deliveries.schedule_delivery(context, build_actor(args), translate_schedule_delivery(args))
    print(f"{delivery.id}: {delivery.status}")
    return 0


def run_dispatch_delivery(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delivery dispatch workflow."""
    delivery = deliveries.dispatch_delivery(context, build_actor(args), args.delivery_id)
    print(f"{delivery.id}: {delivery.status}")
    return 0


def run_complete_delivery(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delivery completion workflow."""
    delivery = deliveries.complete_delivery(
        context,
        build_actor(args),
        args.delivery_id,
        signature=read_signature(args),
        received_by_name=args.received_by,
        received_by_phone=args.phone,
        notes=args.notes,
        location=translate_location(args),
    )
    print(f"{delivery.id}: {delivery.status}")
    return 0


def run_fail_delivery(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delivery failure workflow."""
    delivery = deliveries.fail_delivery(context, build_actor(args), args.delivery_id, reason=args.reason)
    print(f"{delivery.id}: {delivery.status}")
    return 0


def run_cancel_delivery(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delivery cancellation workflow."""
    delivery = deliveries.cancel_delivery(context, build_actor(args), args.delivery_id, reason=args.reason)
    print(f"{delivery.id}: {delivery.status}")
    return 0


def run_set_discount_limit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the discount limit assignment via the BLL."""
    limit = core_logic.set_agency_discount_limit(
        context,
        build_actor(args),
        args.target_agency_id,
        parse_money(args.percent, "discount limit"),
        notes=args.notes,
    )
    print(f"{limit.agency_id}: {limit.max_discount_percentage}%")
    return 0


def run_open_dispute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dispute creation workflow."""
    dispute = disputes.open_dispute(context, build_actor(args), translate_open_dispute(args))
    print(f"{dispute.id}: {dispute.status} ({dispute.priority})")
    return 0


def run_update_dispute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dispute status workflow."""
    dispute = disputes.update_dispute_status(
        context,
        build_actor(args),
        args.dispute_id,
        DisputeStatus(args.status),
    )
    print(f"{dispute.id}: {dispute.status}")
    return 0


def run_create_discount_rule(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the discount rule definition workflow."""
    rule = rules.create_discount_rule(context, build_actor(args), translate_discount_rule(args))
    print(f"{rule.name} ({rule.id}): {rule.discount_type} {rule.value}, scope {rule.applicable_to}")
    return 0


def run_create_promotion(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the promotional rule definition workflow."""
    rule = rules.create_promotional_rule(context, build_actor(args), translate_promotion(args))
    print(f"{rule.name} ({rule.id}): {rule.promotion_type}")
    return 0


def run_set_rule_active(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    rule = rules.set_rule_active(
        context,
        build_actor(args),
        RULE_TABLES_BY_KIND[args.kind],
        args.rule_id,
        args.active,
    )
    print(f"{rule.name} ({rule.id}): {'active' if rule.is_active else 'inactive'}")
    return 0


def run_record_rule_usage(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    rule = rules.record_rule_usage(context, RULE_TABLES_BY_KIND[args.kind], args.rule_id)
    cap = f" of {rule.max_usage_count}" if rule.max_usage_count is not None else ""
    print(f"{rule.name} ({rule.id}): used {rule.current_usage_count}{cap}")
    return 0


def run_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List orders for the acting agency."""
    rows = core_logic.list_orders(
        context,
        agency_id=getattr(args, "agency_id", None),
        status=OrderStatus(args.status) if args.status else None,
        limit=args.limit,
    )
    _print_rows(rows, ("order_number", "id", "customer_name", "status", "total", "total_invoiced"))
    return 0


def run_approvals_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List the approval queue."""
    rows = core_logic.list_pending_approvals(context, getattr(args, "agency_id", None))
    _print_rows(rows, ("order_number", "id", "agency_id", "customer_name", "discount_percentage", "total"))
    return 0


def run_invoices_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List invoices."""
    rows = core_logic.list_invoices(
        context,
        agency_id=getattr(args, "agency_id", None),
        sales_order_id=args.order_id,
        limit=args.limit,
    )
    _print_rows(rows, ("invoice_number", "id", "sales_order_id", "customer_name", "total", "location_status"))
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print net stock movements per product variant."""
    stock = core_logic.calculate_stock(context, getattr(args, "agency_id", None))
    print("product_id\tcolor\tsize\tquantity")
    for (product_id, color, size), quantity in sorted(stock.items()):
        print(f"{product_id}\t{color}\t{size}\t{quantity}")
    return 0


def run_deliveries_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List deliveries."""
    rows = deliveries.list_deliveries(
        context,
        agency_id=getattr(args, "agency_id", None),
        status=DeliveryStatus(args.status) if args.status else None,
    )
    _print_rows(rows, ("id", "invoice_id", "delivery_agent_id", "status", "scheduled_date", "delivered_at"))
    return 0


def run_disputes_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List disputes."""
    rows = disputes.list_disputes(context, status=DisputeStatus(args.status) if args.status else None)
    _print_rows(rows, ("id", "dispute_type", "target_name", "status", "priority", "assigned_to"))
    return 0


def run_rules_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List rules; ``--customer-id`` narrows discount rules to those redeemable today."""
    if args.kind == "promotion":
        if args.customer_id:
            raise ValueError("--customer-id only filters discount rules")
        rows = rules.list_promotional_rules(context, active_only=args.active_only)
        _print_rows(
            rows,
            ("id", "name", "promotion_type", "buy_quantity", "get_quantity", "is_active", "current_usage_count"),
        )
        return 0
    if args.customer_id:
        rows = rules.list_applicable_discount_rules(
            context,
            customer_id=args.customer_id,
            product_ids=args.products,
            agent_id=getattr(args, "user_id", None),
        )
    else:
        rows = rules.list_discount_rules(context, active_only=args.active_only)
    _print_rows(rows, ("id", "name", "discount_type", "value", "applicable_to", "is_active", "current_usage_count"))
    return 0


def run_quote_promotions(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every promotion that applies to the basket."""
    quotes = rules.quote_promotions(
        context,
        [parse_basket_line(line) for line in args.lines],
        customer_id=args.customer_id,
        agent_id=getattr(args, "user_id", None),
    )
    print("id\tname\tdiscount_amount")
    for quote in quotes:
        print(f"{quote.rule.id}\t{quote.rule.name}\t{quote.discount_amount}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (core_logic.BusinessRuleViolation, ValueError)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, data_manager.PersistenceError):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
