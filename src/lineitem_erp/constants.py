"""Enumerations shared across the line-item engine.

Centralises domain constants so that the record store, the rule engine, the
ledgers, and the command-line front-end rely on a single source of truth for
field types, block kinds, and collection names.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class FieldType(str, Enum):
    """Semantic type of a grid column."""

    NUMBER = "number"
    PRICE = "price"
    PERCENTAGE = "percentage"
    PERCENTAGE_OR_AMOUNT = "percentage_or_amount"
    STOCK = "stock"
    SELECT = "select"
    RELATION = "relation"
    STATUS = "status"
    DATE = "date"
    DATETIME = "datetime"
    TEXT = "text"
    CHECKBOX = "checkbox"


NUMERIC_FIELD_TYPES = frozenset(
    {
        FieldType.NUMBER,
        FieldType.PRICE,
        FieldType.PERCENTAGE,
        FieldType.PERCENTAGE_OR_AMOUNT,
        FieldType.STOCK,
    }
)

CATEGORICAL_FIELD_TYPES = frozenset(
    {FieldType.SELECT, FieldType.STATUS, FieldType.RELATION}
)


class RowCalculationType(str, Enum):
    """How the monetary total of a row is derived."""

    SIMPLE_MULTIPLY = "simple_multiply"
    INVOICE_ROW = "invoice_row"


class BlockKind(str, Enum):
    """Semantics attached to a row collection."""

    GENERIC = "generic"
    INVOICE_ITEMS = "invoice_items"
    PAYMENTS = "payments"
    STOCK_MOVEMENTS = "stock_movements"
    SHELF_INVENTORY = "shelf_inventory"
    PRODUCTION_BOM = "production_bom"


class EditorState(str, Enum):
    """Lifecycle tag of a row-collection editor."""

    VIEWING = "viewing"
    EDITING = "editing"
    SAVING = "saving"
    CANCELLED = "cancelled"


class VoucherType(str, Enum):
    """Classification of a stock movement."""

    INCOMING = "incoming"
    OUTGOING = "outgoing"
    TRANSFER = "transfer"


class MovementSource(str, Enum):
    """Origin of a stock movement."""

    OPENING_BALANCE = "opening_balance"
    INVENTORY_COUNT = "inventory_count"
    WASTE = "waste"
    SALES_INVOICE = "sales_invoice"
    PURCHASE_INVOICE = "purchase_invoice"
    PRODUCTION = "production"


MANUAL_SOURCES = frozenset(
    {
        MovementSource.OPENING_BALANCE.value,
        MovementSource.INVENTORY_COUNT.value,
        MovementSource.WASTE.value,
    }
)

AUTOMATED_SOURCES = frozenset(
    {
        MovementSource.SALES_INVOICE.value,
        MovementSource.PURCHASE_INVOICE.value,
        MovementSource.PRODUCTION.value,
    }
)


class PaymentType(str, Enum):
    """Supported payment mechanisms on a payment row."""

    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    CHEQUE = "cheque"
    ONLINE = "online"


class PaymentStatus(str, Enum):
    """Settlement state of a payment row."""

    PENDING = "pending"
    RECEIVED = "received"
    RETURNED = "returned"


class ChequeType(str, Enum):
    """Direction of a cheque relative to the company."""

    RECEIVED = "received"
    ISSUED = "issued"


class ChequeStatus(str, Enum):
    """Lifecycle status of a cheque."""

    NEW = "new"
    IN_BANK = "in_bank"
    CLEARED = "cleared"
    BOUNCED = "bounced"
    SPENT = "spent"
    RETURNED = "returned"


class ChequeLinkMode(str, Enum):
    """How a cheque payment row obtains its instrument."""

    CREATE = "create"
    EXISTING = "existing"


# Payment-row fields that only carry meaning while the payment type is cheque.
CHEQUE_LINK_FIELDS = (
    "cheque_link_mode",
    "cheque_id",
    "cheque_is_auto",
    "cheque_serial_no",
    "cheque_due_date",
    "bank_account_id",
)


class CustomerRank(str, Enum):
    """Loyalty rank derived from purchase history."""

    NORMAL = "normal"
    SILVER = "silver"
    GOLD = "gold"
    VIP = "vip"


class Collection(str, Enum):
    """Record-store collections, one worksheet each."""

    PRODUCTS = "products"
    SHELVES = "shelves"
    PRODUCT_INVENTORY = "product_inventory"
    STOCK_TRANSFERS = "stock_transfers"
    CHEQUES = "cheques"
    CUSTOMERS = "customers"
    INVOICES = "invoices"
    PRODUCTION_ORDERS = "production_orders"
    CHANGELOGS = "changelogs"
    DYNAMIC_OPTIONS = "dynamic_options"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "FieldType",
    "NUMERIC_FIELD_TYPES",
    "CATEGORICAL_FIELD_TYPES",
    "RowCalculationType",
    "BlockKind",
    "EditorState",
    "VoucherType",
    "MovementSource",
    "MANUAL_SOURCES",
    "AUTOMATED_SOURCES",
    "PaymentType",
    "PaymentStatus",
    "ChequeType",
    "ChequeStatus",
    "ChequeLinkMode",
    "CHEQUE_LINK_FIELDS",
    "CustomerRank",
    "Collection",
]
