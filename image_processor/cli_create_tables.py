"""CLI script to create database tables."""
import asyncio

from image_processor.db import create_engine, create_tables
from image_processor.settings import Settings


async def main():
    """Create all database tables."""
    engine = create_engine(Settings().master_dsn)
    try:
        await create_tables(engine)
    finally:
        await engine.dispose()
    print("Tables created successfully!")


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
