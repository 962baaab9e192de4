"""Preferences database setup with SQLModel and async SQLite."""

import logging
from collections.abc import AsyncGenerator

import sqlalchemy
from sqlalchemy import text as sa_text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from vidopt.config import settings

# Import models so their tables are registered with SQLModel.metadata
from vidopt.models import AppConfig  # noqa: F401

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    future=True,
    connect_args={"check_same_thread": False},  # Needed for SQLite
)


@sqlalchemy.event.listens_for(engine.sync_engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


async_session = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db() -> None:
    """Initialize the database, creating all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    await _migrate_app_config(engine)

    logger.info("Database initialized successfully")


async def _migrate_app_config(target_engine: AsyncEngine | None = None) -> None:
    """Rebuild app_config when its columns drift from the model, keeping user values.

    Idempotent: no-op when the schema already matches.
    """
    eng = target_engine or engine

    async with eng.begin() as conn:
        col_result = await conn.execute(sa_text("PRAGMA table_info('app_config')"))
        old_col_names = [row[1] for row in col_result.fetchall()]
        expected_cols = {col.name for col in AppConfig.__table__.columns}

        if not old_col_names or set(old_col_names) == expected_cols:
            return

        logger.info(
            f"Schema mismatch in app_config - extra: {set(old_col_names) - expected_cols or 'none'}, "
            f"missing: {expected_cols - set(old_col_names) or 'none'}"
        )

        rows = (await conn.execute(sa_text("SELECT * FROM app_config"))).fetchall()
        await conn.execute(sa_text("DROP TABLE app_config"))
        await conn.run_sync(
            lambda sync_conn: AppConfig.__table__.create(sync_conn, checkfirst=True)
        )

        new_fields = set(AppConfig.model_fields.keys()) - {"id"}
        for row in rows:
            old_data = dict(zip(old_col_names, row, strict=False))
            config = AppConfig()
            for key, value in old_data.items():
                if key in new_fields and value is not None:
                    setattr(config, key, value)
            insert_data = {name: getattr(config, name) for name in new_fields}
            cols_str = ", ".join(insert_data.keys())
            placeholders = ", ".join(f":{k}" for k in insert_data.keys())
            await conn.execute(
                sa_text(f"INSERT INTO app_config ({cols_str}) VALUES ({placeholders})"),
                insert_data,
            )
            logger.info(f"Restored app_config row with {len(insert_data)} fields")


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with async_session() as session:
        yield session
