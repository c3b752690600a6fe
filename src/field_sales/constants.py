"""Enumerations shared across the field sales modules.

Centralises domain constants so that the data access layer, the business
logic modules and the CLI agree on table names, status values and policy
identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Discount percentage an agency may grant without approval when no agency
# specific limit is configured.
DEFAULT_DISCOUNT_LIMIT = Decimal("20")


class TableName(str, Enum):
    """Enumerate the backend tables managed through the data gateway."""

    SALES_ORDERS = "sales_orders"
    SALES_ORDER_ITEMS = "sales_order_items"
    INVOICES = "invoices"
    INVOICE_ITEMS = "invoice_items"
    RETURNS = "returns"
    RETURN_ITEMS = "return_items"
    DELIVERIES = "deliveries"
    INVENTORY_TRANSACTIONS = "inventory_transactions"
    AGENCY_DISCOUNT_LIMITS = "agency_discount_limits"
    DISCOUNT_RULES = "discount_rules"
    PROMOTIONAL_RULES = "promotional_rules"
    DISPUTES = "disputes"


class UserRole(str, Enum):
    """Roles an acting user may hold."""

    SUPERUSER = "superuser"
    AGENCY = "agency"
    AGENT = "agent"


class OrderStatus(str, Enum):
    """Lifecycle states of a sales order."""

    PENDING = "pending"
    APPROVED = "approved"
    PARTIALLY_INVOICED = "partially_invoiced"
    INVOICED = "invoiced"
    CANCELLED = "cancelled"
    CLOSED = "closed"


TERMINAL_ORDER_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.INVOICED, OrderStatus.CANCELLED, OrderStatus.CLOSED}
)
INVOICEABLE_ORDER_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.APPROVED, OrderStatus.PARTIALLY_INVOICED}
)


class ReturnStatus(str, Enum):
    """Lifecycle states of a customer return."""

    PENDING = "pending"
    APPROVED = "approved"
    PROCESSED = "processed"
    REJECTED = "rejected"


class DeliveryStatus(str, Enum):
    """Lifecycle states of a delivery."""

    PENDING = "pending"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InventoryTransactionType(str, Enum):
    """Direction tags for stock events sent to the inventory ledger."""

    INVOICE_CREATION = "invoice_creation"
    CUSTOMER_RETURN = "customer_return"


class InventoryFailurePolicy(str, Enum):
    """What happens to an invoice or return when its stock events fail."""

    WARN = "warn"
    ROLLBACK = "rollback"


class LocationStatus(str, Enum):
    """Outcome of a geolocation capture."""

    CAPTURED = "captured"
    UNAVAILABLE = "unavailable"


class DiscountType(str, Enum):
    """Kinds of discount a rule or an order can carry."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    SPECIAL_PRICING = "special_pricing"


class RuleScope(str, Enum):
    """Who or what a discount or promotional rule targets."""

    GLOBAL = "global"
    CUSTOMER = "customer"
    PRODUCT = "product"
    AGENT = "agent"
    CATEGORY = "category"


class PromotionType(str, Enum):
    """Supported promotional mechanics."""

    BUY_X_GET_Y_FREE = "buy_x_get_y_free"
    BUY_X_GET_Y_DISCOUNT = "buy_x_get_y_discount"
    BUNDLE_DISCOUNT = "bundle_discount"


class DisputeType(str, Enum):
    """What a dispute is raised against."""

    PRODUCT_CATEGORY = "product_category"
    SPECIFIC_PRODUCT = "specific_product"
    CUSTOMER = "customer"


class DisputeStatus(str, Enum):
    """Lifecycle states of a dispute."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputePriority(str, Enum):
    """Urgency levels for disputes."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class BackendKind(str, Enum):
    """Storage backends the data gateway can be built on."""

    WORKBOOK = "workbook"
    REST = "rest"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_DISCOUNT_LIMIT",
    "TableName",
    "UserRole",
    "OrderStatus",
    "TERMINAL_ORDER_STATUSES",
    "INVOICEABLE_ORDER_STATUSES",
    "ReturnStatus",
    "DeliveryStatus",
    "InventoryTransactionType",
    "InventoryFailurePolicy",
    "LocationStatus",
    "DiscountType",
    "RuleScope",
    "PromotionType",
    "DisputeType",
    "DisputeStatus",
    "DisputePriority",
    "BackendKind",
]
