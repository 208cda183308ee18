import structlog
from sqlalchemy import inspect

from paygate.db import build_engine
from paygate.core.settings import get_settings

logger = structlog.get_logger(__name__)


async def reset_tables() -> None:
    """Create tables, or drop and recreate them when NEED_RESET_DATABASE is set"""

    settings = get_settings()

    # registers every model on the metadata
    from paygate.core.models import Base

    engine = build_engine()

    if settings.need_reset_database:
        logger.warning("database_reset_started")

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("database_reset_completed")
    else:
        async with engine.begin() as conn:

            def check_tables_exist(connection):
                inspector = inspect(connection)
                existing_tables = inspector.get_table_names()
                required_tables = Base.metadata.tables.keys()
                return set(required_tables).issubset(set(existing_tables))

            tables_exist = await conn.run_sync(check_tables_exist)

            if tables_exist:
                logger.info("database_tables_present")
            else:
                logger.info("database_tables_creating")
                await conn.run_sync(Base.metadata.create_all)

    await engine.dispose()
