"""Ready-made row-collection definitions for the engine's standard grids."""

from __future__ import annotations

from typing import Dict

from .constants import (
    BlockKind,
    ChequeLinkMode,
    FieldType,
    MovementSource,
    PaymentStatus,
    PaymentType,
    RowCalculationType,
    VoucherType,
)
from .row_rules import BlockSpec, FieldSpec
from .units import UNIT_OPTIONS


def _options(*pairs: tuple) -> tuple:
    return tuple({"label": label, "value": value} for label, value in pairs)


UNIT_CHOICES = tuple(UNIT_OPTIONS)

VOUCHER_OPTIONS = _options(
    ("ورود", VoucherType.INCOMING.value),
    ("خروج", VoucherType.OUTGOING.value),
    ("جابجایی", VoucherType.TRANSFER.value),
)

SOURCE_OPTIONS = _options(
    ("موجودی اول دوره", MovementSource.OPENING_BALANCE.value),
    ("انبارگردانی", MovementSource.INVENTORY_COUNT.value),
    ("ضایعات", MovementSource.WASTE.value),
    ("فاکتور فروش", MovementSource.SALES_INVOICE.value),
    ("فاکتور خرید", MovementSource.PURCHASE_INVOICE.value),
    ("تولید", MovementSource.PRODUCTION.value),
)

PAYMENT_TYPE_OPTIONS = _options(
    ("نقد", PaymentType.CASH.value),
    ("کارت به کارت", PaymentType.CARD.value),
    ("انتقال حساب", PaymentType.TRANSFER.value),
    ("چک", PaymentType.CHEQUE.value),
    ("آنلاین", PaymentType.ONLINE.value),
)

PAYMENT_STATUS_OPTIONS = _options(
    ("در انتظار", PaymentStatus.PENDING.value),
    ("دریافت شده", PaymentStatus.RECEIVED.value),
    ("عودت", PaymentStatus.RETURNED.value),
)


INVOICE_ITEMS_BLOCK = BlockSpec(
    block_id="invoiceItems",
    kind=BlockKind.INVOICE_ITEMS,
    row_calculation=RowCalculationType.INVOICE_ROW,
    title="Invoice Items",
    columns=(
        FieldSpec("product_id", FieldType.RELATION, title="Product", relation_target="products"),
        FieldSpec("source_shelf_id", FieldType.RELATION, title="Source Shelf", relation_target="shelves"),
        FieldSpec("use_dimensions", FieldType.CHECKBOX, title="By Dimensions"),
        FieldSpec("length", FieldType.NUMBER, title="Length", readonly_when=("use_dimensions", False)),
        FieldSpec("width", FieldType.NUMBER, title="Width", readonly_when=("use_dimensions", False)),
        FieldSpec("quantity", FieldType.NUMBER, title="Quantity", readonly_when=("use_dimensions", True)),
        FieldSpec("main_unit", FieldType.SELECT, title="Main Unit", options=UNIT_CHOICES, readonly=True),
        FieldSpec("sub_unit", FieldType.SELECT, title="Sub Unit", options=UNIT_CHOICES, readonly=True),
        FieldSpec("sub_quantity", FieldType.NUMBER, title="Sub Quantity", readonly=True),
        FieldSpec("unit_price", FieldType.PRICE, title="Unit Price"),
        FieldSpec("discount", FieldType.PERCENTAGE_OR_AMOUNT, title="Discount"),
        FieldSpec("vat", FieldType.PERCENTAGE_OR_AMOUNT, title="VAT"),
        FieldSpec("total_price", FieldType.PRICE, title="Total", readonly=True),
    ),
)

PAYMENTS_BLOCK = BlockSpec(
    block_id="payments",
    kind=BlockKind.PAYMENTS,
    title="Payments",
    columns=(
        FieldSpec("payment_type", FieldType.SELECT, title="Payment Type", options=PAYMENT_TYPE_OPTIONS),
        FieldSpec("status", FieldType.SELECT, title="Status", options=PAYMENT_STATUS_OPTIONS),
        FieldSpec("target_account", FieldType.SELECT, title="Target Account", options_category="target_account"),
        FieldSpec(
            "cheque_link_mode",
            FieldType.SELECT,
            title="Cheque Source",
            options=_options(("صدور چک جدید", ChequeLinkMode.CREATE.value), ("چک موجود", ChequeLinkMode.EXISTING.value)),
        ),
        FieldSpec("cheque_id", FieldType.RELATION, title="Cheque", relation_target="cheques"),
        FieldSpec("cheque_serial_no", FieldType.TEXT, title="Serial No"),
        FieldSpec("cheque_due_date", FieldType.DATE, title="Due Date"),
        FieldSpec("bank_account_id", FieldType.RELATION, title="Bank Account", relation_target="bank_accounts"),
        FieldSpec("responsible_id", FieldType.RELATION, title="Responsible", relation_target="profiles"),
        FieldSpec("date", FieldType.DATE, title="Date"),
        FieldSpec("amount", FieldType.PRICE, title="Amount"),
    ),
)

STOCK_MOVEMENTS_BLOCK = BlockSpec(
    block_id="product_stock_movements",
    kind=BlockKind.STOCK_MOVEMENTS,
    title="Inventory Movements",
    columns=(
        FieldSpec("voucher_type", FieldType.SELECT, title="Voucher Type", options=VOUCHER_OPTIONS),
        FieldSpec("source", FieldType.SELECT, title="Source", options=SOURCE_OPTIONS),
        FieldSpec("main_unit", FieldType.SELECT, title="Main Unit", options=UNIT_CHOICES, readonly=True),
        FieldSpec("main_quantity", FieldType.NUMBER, title="Main Quantity"),
        FieldSpec("sub_unit", FieldType.SELECT, title="Sub Unit", options=UNIT_CHOICES, readonly=True),
        FieldSpec("sub_quantity", FieldType.NUMBER, title="Sub Quantity"),
        FieldSpec(
            "from_shelf_id",
            FieldType.RELATION,
            title="From Shelf",
            relation_target="shelves",
            readonly_when=("voucher_type", VoucherType.INCOMING.value),
        ),
        FieldSpec(
            "to_shelf_id",
            FieldType.RELATION,
            title="To Shelf",
            relation_target="shelves",
            readonly_when=("voucher_type", VoucherType.OUTGOING.value),
        ),
        FieldSpec("invoice_id", FieldType.RELATION, title="Invoice", relation_target="invoices", readonly=True),
        FieldSpec(
            "production_order_id",
            FieldType.RELATION,
            title="Production Order",
            relation_target="production_orders",
            readonly=True,
        ),
        FieldSpec("created_at", FieldType.DATETIME, title="Created", readonly=True),
    ),
)

SHELF_INVENTORY_BLOCK = BlockSpec(
    block_id="shelf_items",
    kind=BlockKind.SHELF_INVENTORY,
    title="Shelf Items",
    columns=(
        FieldSpec("product_id", FieldType.RELATION, title="Product", relation_target="products"),
        FieldSpec("shelf_id", FieldType.RELATION, title="Shelf", relation_target="shelves"),
        FieldSpec("warehouse_id", FieldType.RELATION, title="Warehouse", relation_target="warehouses", readonly=True),
        FieldSpec("stock", FieldType.STOCK, title="Stock"),
    ),
)

PRODUCTION_BOM_BLOCK = BlockSpec(
    block_id="items_leather",
    kind=BlockKind.PRODUCTION_BOM,
    title="Bill of Materials",
    selection_field_map={
        "leather_colors": "colors",
        "fitting_colors": "colors",
        "lining_width": "lining_dims",
    },
    columns=(
        FieldSpec("category", FieldType.SELECT, title="Category", filterable=True),
        FieldSpec("leather_colors", FieldType.SELECT, title="Color", filterable=True, filter_key="colors", options_category="colors"),
        FieldSpec("main_unit", FieldType.SELECT, title="Unit", options=UNIT_CHOICES),
        FieldSpec("length", FieldType.NUMBER, title="Length"),
        FieldSpec("width", FieldType.NUMBER, title="Width"),
        FieldSpec("usage", FieldType.NUMBER, title="Usage"),
        FieldSpec("waste_rate", FieldType.PERCENTAGE, title="Waste Rate"),
        FieldSpec("buy_price", FieldType.PRICE, title="Buy Price"),
        FieldSpec("total_price", FieldType.PRICE, title="Total", readonly=True),
    ),
)

STANDARD_BLOCKS: Dict[str, BlockSpec] = {
    block.block_id: block
    for block in (
        INVOICE_ITEMS_BLOCK,
        PAYMENTS_BLOCK,
        STOCK_MOVEMENTS_BLOCK,
        SHELF_INVENTORY_BLOCK,
        PRODUCTION_BOM_BLOCK,
    )
}


__all__ = [
    "INVOICE_ITEMS_BLOCK",
    "PAYMENTS_BLOCK",
    "STOCK_MOVEMENTS_BLOCK",
    "SHELF_INVENTORY_BLOCK",
    "PRODUCTION_BOM_BLOCK",
    "STANDARD_BLOCKS",
]
