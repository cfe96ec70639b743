"""Source template for newly created migration files."""

from datetime import datetime, timezone
from textwrap import dedent
from typing import Optional

from .utils import class_name_for, slugify


def _docstring_safe(text: str) -> str:
    return text.replace('"""', "'''").replace("\\", "\\\\")


def render_migration_template(
    name: str,
    version: str,
    description: str,
    created: Optional[datetime] = None,
) -> str:
    """Render the Python module for a new migration."""
    created_at = (created or datetime.now(timezone.utc)).isoformat(timespec="seconds")
    class_name = class_name_for(slugify(name))

    return dedent(f'''\
        """Migration: {_docstring_safe(name)}

        Version: {version}
        Description: {_docstring_safe(description)}
        Created: {created_at}
        """

        from stockroom.db.migrations.base import BaseMigration, MigrationContext


        class {class_name}(BaseMigration):
            name = {name!r}
            version = {version!r}
            description = {description!r}

            async def up(self, ctx: MigrationContext) -> None:
                """Apply the migration."""
                # Example: backfill a field on every product
                # await ctx.execute("UPDATE products SET reorderPoint = 10 WHERE reorderPoint IS NONE")
                #
                # Example: add an index
                # await ctx.execute("DEFINE INDEX IF NOT EXISTS products_sku ON TABLE products COLUMNS sku")
                pass

            async def down(self, ctx: MigrationContext) -> None:
                """Revert the migration."""
                # await ctx.execute("REMOVE INDEX IF EXISTS products_sku ON TABLE products")
                # await ctx.execute("UPDATE products UNSET reorderPoint")
                pass
    ''')
