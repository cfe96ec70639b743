"""Migration: Initial Schema Setup

Indexes and uniqueness constraints for the core inventory tables:
- users: unique email and username
- products: unique code, name, category, stock
- customers: unique email, phone, name
- invoices: customer name, issue and creation dates
- stockhistories: product, timestamp, product + timestamp
"""

from stockroom.db.migrations.base import BaseMigration, MigrationContext

# (table, index name, columns, unique)
INDEXES = [
    ("users", "users_email_unique", "email", True),
    ("users", "users_username_unique", "username", True),
    ("products", "products_code_unique", "code", True),
    ("products", "products_name_index", "name", False),
    ("products", "products_category_index", "category", False),
    ("products", "products_stock_index", "stock", False),
    ("customers", "customers_email_unique", "email", True),
    ("customers", "customers_phone_index", "phone", False),
    ("customers", "customers_name_index", "name", False),
    ("invoices", "invoices_customer_name_index", "customerName", False),
    ("invoices", "invoices_issued_at_desc_index", "issuedAt", False),
    ("invoices", "invoices_created_at_desc_index", "createdAt", False),
    ("stockhistories", "stockhistories_product_id_index", "productId", False),
    ("stockhistories", "stockhistories_timestamp_desc_index", "timestamp", False),
    ("stockhistories", "stockhistories_product_timestamp_index", "productId, timestamp", False),
]


class MigrationInitialSchemaSetup(BaseMigration):
    """Initial indexes for the inventory database."""

    name = "Initial Schema Setup"
    version = "20250721000001"
    description = "Create initial indexes and constraints for all collections"

    async def up(self, ctx: MigrationContext) -> None:
        """Create the tables and their indexes."""
        for table in dict.fromkeys(table for table, _, _, _ in INDEXES):
            await ctx.execute(f"DEFINE TABLE IF NOT EXISTS {table} SCHEMALESS")

        for table, index, columns, unique in INDEXES:
            suffix = " UNIQUE" if unique else ""
            await ctx.execute(
                f"DEFINE INDEX IF NOT EXISTS {index} ON TABLE {table} COLUMNS {columns}{suffix}"
            )

    async def down(self, ctx: MigrationContext) -> None:
        """Drop the indexes. Tables and their data are kept."""
        for table, index, _, _ in reversed(INDEXES):
            await ctx.execute(f"REMOVE INDEX IF EXISTS {index} ON TABLE {table}")
