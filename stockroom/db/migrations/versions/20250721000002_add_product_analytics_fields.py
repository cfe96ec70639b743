"""Migration: Add Product Analytics Fields

Backfills analytics, status, supplier and marketing fields on every
product, indexes the ones used by the reorder and dashboard queries, and
derives profitMargin, totalRevenue and sku for products with a price and
a cost.
"""

from typing import Any, Optional

from stockroom.db.migrations.base import BaseMigration, MigrationContext

DEFAULTS = """
    viewCount = 0,
    lastViewedAt = NONE,
    averageOrderQuantity = 0,
    reorderPoint = 10,
    leadTimeDays = 7,
    isActive = true,
    isDiscontinued = false,
    lastStockUpdate = time::now(),
    totalRevenue = 0,
    profitMargin = 0,
    supplierId = NONE,
    supplierName = NONE,
    supplierContactInfo = NONE,
    barcode = NONE,
    sku = NONE,
    weight = NONE,
    dimensions = { length: NONE, width: NONE, height: NONE },
    tags = [],
    searchKeywords = [],
    metaDescription = NONE
"""

FIELDS = [
    "viewCount",
    "lastViewedAt",
    "averageOrderQuantity",
    "reorderPoint",
    "leadTimeDays",
    "isActive",
    "isDiscontinued",
    "lastStockUpdate",
    "totalRevenue",
    "profitMargin",
    "supplierId",
    "supplierName",
    "supplierContactInfo",
    "barcode",
    "sku",
    "weight",
    "dimensions",
    "tags",
    "searchKeywords",
    "metaDescription",
]

INDEXES = [
    ("products_view_count_desc_index", "viewCount"),
    ("products_reorder_analysis_index", "reorderPoint, stock"),
    ("products_status_index", "isActive, isDiscontinued"),
    ("products_tags_index", "tags"),
    ("products_last_stock_update_desc_index", "lastStockUpdate"),
]


def product_metrics(product: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Derived pricing fields for one product, or None if it has no usable price/cost.

    >>> product_metrics({"price": 20, "cost": 15, "sold": 3, "code": "ab-1"})
    {'profitMargin': 25.0, 'totalRevenue': 60, 'sku': 'AB-1'}
    """
    price = product.get("price")
    cost = product.get("cost")
    if not price or not cost or price <= 0:
        return None

    code = product.get("code")
    return {
        "profitMargin": round((price - cost) / price * 100, 2),
        "totalRevenue": (product.get("sold") or 0) * price,
        "sku": code.upper() if code else None,
    }


class MigrationAddProductAnalyticsFields(BaseMigration):
    name = "Add Product Analytics Fields"
    version = "20250721000002"
    description = "Add analytics tracking fields to products for better inventory management"

    async def up(self, ctx: MigrationContext) -> None:
        await ctx.execute(f"UPDATE products SET {DEFAULTS}")

        for index, columns in INDEXES:
            await ctx.execute(f"DEFINE INDEX IF NOT EXISTS {index} ON TABLE products COLUMNS {columns}")

        products = await ctx.execute("SELECT id, price, cost, sold, code FROM products")
        for product in products:
            metrics = product_metrics(product)
            if metrics is None:
                continue
            await ctx.execute(
                "UPDATE $id MERGE $data",
                {"id": product["id"], "data": {k: v for k, v in metrics.items() if v is not None}},
            )

    async def down(self, ctx: MigrationContext) -> None:
        await ctx.execute(f"UPDATE products UNSET {', '.join(FIELDS)}")

        for index, _ in INDEXES:
            await ctx.execute(f"REMOVE INDEX IF EXISTS {index} ON TABLE products")
