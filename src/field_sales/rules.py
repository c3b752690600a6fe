"""Discount and promotional rule administration.

Superusers define the rules here. The arithmetic that decides whether a rule
applies and what it is worth lives in :mod:`field_sales.discount_policy`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple, Union

from . import core_logic, data_manager, log
from .constants import DiscountType, PromotionType, RuleScope, TableName
from .discount_policy import (
    BasketLine,
    discount_rule_applies,
    promotion_applies,
    promotion_discount,
    rule_is_redeemable,
)

RULE_TABLES = (TableName.DISCOUNT_RULES, TableName.PROMOTIONAL_RULES)
DISCOUNT_RULE_SCOPES = frozenset({RuleScope.GLOBAL, RuleScope.CUSTOMER, RuleScope.PRODUCT, RuleScope.AGENT})
PROMOTION_SCOPES = frozenset({RuleScope.GLOBAL, RuleScope.PRODUCT, RuleScope.CATEGORY})

RuleRow = Union[data_manager.DiscountRuleRow, data_manager.PromotionalRuleRow]


@dataclass(frozen=True)
class DiscountRuleCommand:
    """Definition of a new discount rule."""

    name: str
    discount_type: DiscountType
    value: Decimal
    applicable_to: RuleScope
    valid_from: date
    valid_to: date
    target_ids: Tuple[str, ...] = ()
    max_usage_count: Optional[int] = None
    description: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PromotionCommand:
    """Definition of a new promotional rule."""

    name: str
    promotion_type: PromotionType
    buy_quantity: int
    valid_from: date
    valid_to: date
    get_quantity: int = 0
    discount_percentage: Optional[Decimal] = None
    applicable_to: RuleScope = RuleScope.GLOBAL
    buy_product_ids: Tuple[str, ...] = ()
    get_product_ids: Tuple[str, ...] = ()
    customer_ids: Tuple[str, ...] = ()
    agent_ids: Tuple[str, ...] = ()
    max_usage_count: Optional[int] = None
    description: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PromotionQuote:
    """A promotion that applies to a basket and the amount it takes off."""

    rule: data_manager.PromotionalRuleRow
    discount_amount: Decimal


def _require_rule_table(table: TableName) -> TableName:
    table = TableName(table)
    if table not in RULE_TABLES:
        raise ValueError(f"{table.value} is not a rule table")
    return table


def _validate_common(name: str, valid_from: date, valid_to: date, max_usage_count: Optional[int]) -> None:
    if not name or not name.strip():
        raise core_logic.BusinessRuleViolation("A rule name is required")
    if valid_from > valid_to:
        raise core_logic.BusinessRuleViolation("A rule cannot end before it starts")
    if max_usage_count is not None:
        core_logic.require_positive_quantity(max_usage_count)


def create_discount_rule(
    context: core_logic.RuntimeContext,
    actor: core_logic.Actor,
    command: DiscountRuleCommand,
) -> data_manager.DiscountRuleRow:
    """Validate and store a discount rule.

    Percentage rules take a value up to 100, fixed-amount rules a money
    amount, special-pricing rules the special unit price. Scoped rules need
    at least one target id.

    Raises:
        PermissionDeniedError: If ``actor`` is not a superuser.
        BusinessRuleViolation: On an empty name, inverted window, unsupported
            scope or missing targets.
        ValueError: On negative values, percentages above 100, or a
            non-positive usage cap.
    """

    core_logic.require_superuser(actor, "create discount rules")
    _validate_common(command.name, command.valid_from, command.valid_to, command.max_usage_count)
    kind = DiscountType(command.discount_type)
    scope = RuleScope(command.applicable_to)
    core_logic.require_nonnegative_money(command.value)
    if kind is DiscountType.PERCENTAGE and command.value > Decimal("100"):
        raise ValueError("Percentage rules cannot exceed 100")
    if scope not in DISCOUNT_RULE_SCOPES:
        raise core_logic.BusinessRuleViolation(f"Discount rules cannot target '{scope.value}'")
    if scope is not RuleScope.GLOBAL and not command.target_ids:
        raise core_logic.BusinessRuleViolation(f"A '{scope.value}' rule needs at least one target")

    rule = data_manager.DiscountRuleRow(
        id=core_logic.generate_record_id(),
        name=command.name.strip(),
        discount_type=kind.value,
        value=command.value,
        applicable_to=scope.value,
        target_ids=tuple(command.target_ids),
        is_active=True,
        valid_from=command.valid_from.isoformat(),
        valid_to=command.valid_to.isoformat(),
        max_usage_count=command.max_usage_count,
        current_usage_count=0,
        description=command.description,
        created_by=actor.user_id,
        created_at=core_logic.timestamp_text(command.timestamp),
    )
    context.gateway.insert(TableName.DISCOUNT_RULES, [rule])
    log.info("Created %s discount rule '%s' (%s, scope=%s)", kind.value, rule.name, rule.value, scope.value)
    return rule


def create_promotional_rule(
    context: core_logic.RuntimeContext,
    actor: core_logic.Actor,
    command: PromotionCommand,
) -> data_manager.PromotionalRuleRow:
    """Validate and store a promotional rule.

    Raises:
        PermissionDeniedError: If ``actor`` is not a superuser.
        BusinessRuleViolation: On an inconsistent definition, for example a
            bundle without products or a discount promotion without a
            percentage.
        ValueError: On non-positive quantities.
    """

    core_logic.require_superuser(actor, "create promotional rules")
    _validate_common(command.name, command.valid_from, command.valid_to, command.max_usage_count)
    kind = PromotionType(command.promotion_type)
    scope = RuleScope(command.applicable_to)
    core_logic.require_positive_quantity(command.buy_quantity)
    if scope not in PROMOTION_SCOPES:
        raise core_logic.BusinessRuleViolation(f"Promotions cannot target '{scope.value}'")
    if scope is not RuleScope.GLOBAL and not command.buy_product_ids:
        raise core_logic.BusinessRuleViolation(f"A '{scope.value}' promotion needs qualifying ids")
    if kind is not PromotionType.BUNDLE_DISCOUNT:
        core_logic.require_positive_quantity(command.get_quantity)
    if kind is PromotionType.BUNDLE_DISCOUNT and not command.buy_product_ids:
        raise core_logic.BusinessRuleViolation("A bundle needs its products")

    percentage = command.discount_percentage
    if kind in (PromotionType.BUY_X_GET_Y_DISCOUNT, PromotionType.BUNDLE_DISCOUNT):
        if percentage is None or not Decimal("0") < percentage <= Decimal("100"):
            raise core_logic.BusinessRuleViolation("A discount promotion needs a percentage between 0 and 100")

    rule = data_manager.PromotionalRuleRow(
        id=core_logic.generate_record_id(),
        name=command.name.strip(),
        promotion_type=kind.value,
        buy_quantity=command.buy_quantity,
        get_quantity=command.get_quantity,
        discount_percentage=percentage,
        applicable_to=scope.value,
        buy_product_ids=tuple(command.buy_product_ids),
        get_product_ids=tuple(command.get_product_ids),
        customer_ids=tuple(command.customer_ids),
        agent_ids=tuple(command.agent_ids),
        is_active=True,
        valid_from=command.valid_from.isoformat(),
        valid_to=command.valid_to.isoformat(),
        max_usage_count=command.max_usage_count,
        current_usage_count=0,
        description=command.description,
        created_by=actor.user_id,
        created_at=core_logic.timestamp_text(command.timestamp),
    )
    context.gateway.insert(TableName.PROMOTIONAL_RULES, [rule])
    log.info("Created %s promotion '%s'", kind.value, rule.name)
    return rule


def set_rule_active(
    context: core_logic.RuntimeContext,
    actor: core_logic.Actor,
    table: TableName,
    rule_id: str,
    active: bool,
) -> RuleRow:
    """Enable or disable a discount or promotional rule."""

    core_logic.require_superuser(actor, "change rules")
    table = _require_rule_table(table)
    core_logic.select_one(context, table, rule_id, "rule")
    updated = context.gateway.update(table, rule_id, {"is_active": bool(active)})
    log.info("Rule '%s' %s", rule_id, "activated" if active else "deactivated")
    return updated


def list_discount_rules(context: core_logic.RuntimeContext, *, active_only: bool = False) -> List[data_manager.DiscountRuleRow]:
    filters = {"is_active": True} if active_only else None
    return context.gateway.select(TableName.DISCOUNT_RULES, filters=filters, order_by="created_at")


def list_promotional_rules(
    context: core_logic.RuntimeContext,
    *,
    active_only: bool = False,
) -> List[data_manager.PromotionalRuleRow]:
    filters = {"is_active": True} if active_only else None
    return context.gateway.select(TableName.PROMOTIONAL_RULES, filters=filters, order_by="created_at")


def _today(on: Optional[date]) -> date:
    return on if on is not None else datetime.now(UTC).date()


def list_applicable_discount_rules(
    context: core_logic.RuntimeContext,
    *,
    customer_id: Optional[str],
    product_ids: Sequence[str],
    agent_id: Optional[str],
    on: Optional[date] = None,
) -> List[data_manager.DiscountRuleRow]:
    """Return redeemable discount rules whose scope covers this sale."""

    today = _today(on)
    return [
        rule
        for rule in list_discount_rules(context, active_only=True)
        if rule_is_redeemable(rule, today)
        and discount_rule_applies(rule, customer_id=customer_id, product_ids=product_ids, agent_id=agent_id)
    ]


def record_rule_usage(context: core_logic.RuntimeContext, table: TableName, rule_id: str) -> RuleRow:
    """Count one redemption of a rule.

    Raises:
        BusinessRuleViolation: If the rule's usage cap is already reached.
        MissingReferenceError: If the rule does not exist.
    """

    table = _require_rule_table(table)
    rule = core_logic.select_one(context, table, rule_id, "rule")
    return core_logic.redeem_rule(context, table, rule)


def quote_promotions(
    context: core_logic.RuntimeContext,
    lines: Sequence[BasketLine],
    *,
    customer_id: Optional[str],
    agent_id: Optional[str],
    on: Optional[date] = None,
) -> List[PromotionQuote]:
    """Price every applicable promotion against ``lines``, best first.

    Promotions worth nothing for this basket are left out.
    """

    today = _today(on)
    quotes = []
    for rule in list_promotional_rules(context, active_only=True):
        if not promotion_applies(rule, customer_id=customer_id, agent_id=agent_id, on=today):
            continue
        amount = promotion_discount(rule, lines)
        if amount > 0:
            quotes.append(PromotionQuote(rule=rule, discount_amount=amount))
    quotes.sort(key=lambda quote: quote.discount_amount, reverse=True)
    return quotes
