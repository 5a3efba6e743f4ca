"""Script to create the queue tables directly from the table definitions.

Use ``scripts/migrate.py`` for Postgres deployments: the change feed trigger
only exists in the migrations.
"""

import asyncio

from clinic_queue.database import engine
from clinic_queue.models import metadata


async def init_db() -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    await engine.dispose()
    print(f"✓ Created tables: {', '.join(sorted(metadata.tables))}")


if __name__ == "__main__":
    asyncio.run(init_db())
