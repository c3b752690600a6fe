"""Pure discount evaluation and rule arithmetic.

Nothing in this module touches a gateway or the clock unless the caller
passes one in. The order lifecycle asks :func:`evaluate_discount` whether a
discount needs superuser approval, and the rule helpers decide whether a
discount or promotional rule applies to a basket and how much it is worth.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Protocol, Sequence, Union

from . import data_manager
from .constants import DEFAULT_DISCOUNT_LIMIT, DiscountType, PromotionType, RuleScope, UserRole


CENT = Decimal("0.01")
PERCENT_PRECISION = Decimal("0.0001")
HUNDRED = Decimal("100")

Number = Union[Decimal, int, str]


def quantize_money(value: Number) -> Decimal:
    """Round a monetary value to cents using ROUND_HALF_UP."""

    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_percentage(value: Number) -> Decimal:
    return Decimal(value).quantize(PERCENT_PRECISION, rounding=ROUND_HALF_UP)


class PricedLine(Protocol):
    """Anything carrying a product, a quantity and a unit price."""

    product_id: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class BasketLine:
    """A priced basket line used when quoting rules and promotions."""

    product_id: str
    quantity: int
    unit_price: Decimal
    category_id: Optional[str] = None


@dataclass(frozen=True)
class Discount:
    """A requested discount, either a percentage or a fixed amount."""

    kind: DiscountType
    value: Decimal

    @classmethod
    def percentage(cls, value: Number) -> "Discount":
        value = Decimal(value)
        if value < 0 or value > HUNDRED:
            raise ValueError(f"Discount percentage must be between 0 and 100, got {value}")
        return cls(DiscountType.PERCENTAGE, value)

    @classmethod
    def fixed(cls, amount: Number) -> "Discount":
        amount = Decimal(amount)
        if amount < 0:
            raise ValueError(f"Fixed discount must be non-negative, got {amount}")
        return cls(DiscountType.FIXED_AMOUNT, amount)

    @classmethod
    def none(cls) -> "Discount":
        return cls.percentage(0)

    def amount_for(self, subtotal: Number) -> Decimal:
        """Return the monetary discount this value grants on ``subtotal``.

        Fixed amounts never exceed the subtotal, so totals stay non-negative.
        """

        subtotal = Decimal(subtotal)
        if subtotal <= 0:
            return quantize_money(0)
        if self.kind is DiscountType.PERCENTAGE:
            return quantize_money(subtotal * self.value / HUNDRED)
        return quantize_money(min(self.value, subtotal))


@dataclass(frozen=True)
class DiscountPolicy:
    """Configurable knobs of the approval check."""

    default_limit: Decimal = DEFAULT_DISCOUNT_LIMIT
    zero_subtotal_requires_approval: bool = False


@dataclass(frozen=True)
class DiscountVerdict:
    """Outcome of an approval check."""

    requires_approval: bool
    message: str
    effective_percentage: Decimal
    limit: Decimal


def evaluate(
    discount_percentage: Number,
    agency_limit: Optional[Number] = None,
    *,
    role: Optional[UserRole] = None,
    default_limit: Number = DEFAULT_DISCOUNT_LIMIT,
) -> DiscountVerdict:
    """Decide whether a discount percentage needs superuser approval.

    A discount requires approval exactly when it is strictly greater than the
    applicable limit: the agency's configured limit when one is supplied,
    otherwise ``default_limit``. Discounts granted by a superuser never
    require approval.

    Args:
        discount_percentage (Decimal | int | str): Requested discount, 0-100.
        agency_limit (Decimal | int | str | None): Agency specific limit, if
            one is configured. A limit of ``0`` is a real limit.
        role (UserRole | None): Role of the user granting the discount.
        default_limit (Decimal | int | str): Limit used when the agency has
            none.

    Returns:
        DiscountVerdict: Approval requirement plus a human readable message.

    Raises:
        ValueError: If the percentage is outside 0-100.
    """

    percentage = Decimal(discount_percentage)
    if percentage < 0 or percentage > HUNDRED:
        raise ValueError(f"Discount percentage must be between 0 and 100, got {percentage}")
    limit = Decimal(agency_limit) if agency_limit is not None else Decimal(default_limit)

    if role is UserRole.SUPERUSER:
        return DiscountVerdict(False, "Superuser discounts do not require approval", percentage, limit)
    if percentage > limit:
        return DiscountVerdict(
            True,
            f"Discount of {percentage}% exceeds the {limit}% limit and requires superuser approval",
            percentage,
            limit,
        )
    return DiscountVerdict(False, f"Discount of {percentage}% is within the {limit}% limit", percentage, limit)


def effective_percentage(
    discount: Discount,
    subtotal: Number,
    *,
    zero_subtotal_requires_approval: bool = False,
) -> Decimal:
    """Express ``discount`` as a percentage of ``subtotal``.

    Percentage discounts are returned unchanged. Fixed amounts are divided by
    the subtotal and capped at 100. For a zero subtotal the result is ``0``
    unless ``zero_subtotal_requires_approval`` is set, in which case any
    positive discount counts as a full 100% discount.
    """

    subtotal = Decimal(subtotal)
    if subtotal <= 0:
        if zero_subtotal_requires_approval and discount.value > 0:
            return discount.value if discount.kind is DiscountType.PERCENTAGE else HUNDRED
        return Decimal("0")
    if discount.kind is DiscountType.PERCENTAGE:
        return discount.value
    return min(quantize_percentage(discount.value * HUNDRED / subtotal), HUNDRED)


def evaluate_discount(
    discount: Discount,
    subtotal: Number,
    agency_limit: Optional[Number] = None,
    *,
    policy: Optional[DiscountPolicy] = None,
    role: Optional[UserRole] = None,
) -> DiscountVerdict:
    """Normalize ``discount`` against ``subtotal`` and run :func:`evaluate`."""

    policy = policy or DiscountPolicy()
    percentage = effective_percentage(
        discount,
        subtotal,
        zero_subtotal_requires_approval=policy.zero_subtotal_requires_approval,
    )
    return evaluate(percentage, agency_limit, role=role, default_limit=policy.default_limit)


# ---------------------------------------------------------------------------
# Discount and promotional rules
# ---------------------------------------------------------------------------


RuleRow = Union[data_manager.DiscountRuleRow, data_manager.PromotionalRuleRow]


def rule_is_redeemable(rule: RuleRow, on: date) -> bool:
    """Return ``True`` when ``rule`` is active, in its window and under its cap."""

    if not rule.is_active:
        return False
    if not date.fromisoformat(rule.valid_from[:10]) <= on <= date.fromisoformat(rule.valid_to[:10]):
        return False
    if rule.max_usage_count is not None and rule.current_usage_count >= rule.max_usage_count:
        return False
    return True


def discount_rule_applies(
    rule: data_manager.DiscountRuleRow,
    *,
    customer_id: Optional[str],
    product_ids: Iterable[str],
    agent_id: Optional[str],
) -> bool:
    """Check whether the rule's scope covers this customer, basket and agent."""

    scope = RuleScope(rule.applicable_to)
    if scope is RuleScope.GLOBAL:
        return True
    if scope is RuleScope.CUSTOMER:
        return customer_id in rule.target_ids
    if scope is RuleScope.AGENT:
        return agent_id in rule.target_ids
    if scope is RuleScope.PRODUCT:
        return any(product_id in rule.target_ids for product_id in product_ids)
    return False


def discount_rule_to_discount(rule: data_manager.DiscountRuleRow, lines: Sequence[PricedLine]) -> Discount:
    """Translate a discount rule into the :class:`Discount` it grants on ``lines``.

    Special pricing rules carry a unit price; the discount is the gap between
    list and special price over the targeted lines (every line unless the rule
    is product scoped).
    """

    kind = DiscountType(rule.discount_type)
    if kind is DiscountType.PERCENTAGE:
        return Discount.percentage(rule.value)
    if kind is DiscountType.FIXED_AMOUNT:
        return Discount.fixed(rule.value)

    targeted = lines
    if RuleScope(rule.applicable_to) is RuleScope.PRODUCT:
        targeted = [line for line in lines if line.product_id in rule.target_ids]
    saving = sum(
        (max(Decimal(line.unit_price) - rule.value, Decimal("0")) * line.quantity for line in targeted),
        Decimal("0"),
    )
    return Discount.fixed(quantize_money(saving))


def promotion_applies(
    rule: data_manager.PromotionalRuleRow,
    *,
    customer_id: Optional[str],
    agent_id: Optional[str],
    on: date,
) -> bool:
    """Check the promotion's window, cap and customer/agent restrictions."""

    if not rule_is_redeemable(rule, on):
        return False
    if rule.customer_ids and customer_id not in rule.customer_ids:
        return False
    if rule.agent_ids and agent_id not in rule.agent_ids:
        return False
    return True


def _line_matches(rule: data_manager.PromotionalRuleRow, line: BasketLine, ids: Sequence[str]) -> bool:
    scope = RuleScope(rule.applicable_to)
    if not ids or scope is RuleScope.GLOBAL:
        return True
    if scope is RuleScope.CATEGORY:
        return line.category_id in ids
    return line.product_id in ids


def _cheapest_units_value(lines: Sequence[BasketLine], units: int) -> Decimal:
    value = Decimal("0")
    for line in sorted(lines, key=lambda item: Decimal(item.unit_price)):
        if units <= 0:
            break
        taken = min(units, line.quantity)
        value += Decimal(line.unit_price) * taken
        units -= taken
    return value


def promotion_discount(rule: data_manager.PromotionalRuleRow, lines: Sequence[BasketLine]) -> Decimal:
    """Return the monetary discount ``rule`` grants on ``lines``.

    Buy-X-get-Y rules reward ``Y`` units for every ``X`` bought, taking the
    cheapest qualifying units first. When the reward comes out of the same
    products that were bought, each reward needs ``X + Y`` units in the
    basket. Bundle rules discount the bundle lines by ``discount_percentage``
    once every bundle product reaches ``buy_quantity`` units.
    """

    kind = PromotionType(rule.promotion_type)
    percentage = Decimal(rule.discount_percentage or 0)
    buy_lines = [line for line in lines if _line_matches(rule, line, rule.buy_product_ids)]

    if kind is PromotionType.BUNDLE_DISCOUNT:
        if not rule.buy_product_ids:
            return quantize_money(0)
        for bundle_id in rule.buy_product_ids:
            units = sum(
                line.quantity
                for line in buy_lines
                if bundle_id in (line.product_id, line.category_id)
            )
            if units < rule.buy_quantity:
                return quantize_money(0)
        bundle_value = sum((Decimal(line.unit_price) * line.quantity for line in buy_lines), Decimal("0"))
        return quantize_money(bundle_value * percentage / HUNDRED)

    if rule.buy_quantity <= 0 or rule.get_quantity <= 0:
        return quantize_money(0)

    if rule.get_product_ids:
        get_lines: List[BasketLine] = [line for line in lines if _line_matches(rule, line, rule.get_product_ids)]
    else:
        get_lines = buy_lines
    bought = sum(line.quantity for line in buy_lines)
    available = sum(line.quantity for line in get_lines)

    if get_lines == buy_lines:
        rewarded = (bought // (rule.buy_quantity + rule.get_quantity)) * rule.get_quantity
    else:
        rewarded = min((bought // rule.buy_quantity) * rule.get_quantity, available)

    reward_value = _cheapest_units_value(get_lines, rewarded)
    if kind is PromotionType.BUY_X_GET_Y_DISCOUNT:
        reward_value = reward_value * percentage / HUNDRED
    return quantize_money(reward_value)
