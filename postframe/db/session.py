"""Database configuration for the uploads table."""

from advanced_alchemy.config import AsyncSessionConfig, EngineConfig, SQLAlchemyAsyncConfig

from postframe.config import Settings
from postframe.db.base import Base


def build_db_config(settings: Settings) -> SQLAlchemyAsyncConfig:
    """Build the SQLAlchemy async database configuration."""
    return SQLAlchemyAsyncConfig(
        connection_string=settings.db.url,
        metadata=Base.metadata,
        create_all=False,
        session_config=AsyncSessionConfig(expire_on_commit=False),
        engine_config=EngineConfig(echo=settings.db.echo),
    )


async def create_tables(db_config: SQLAlchemyAsyncConfig) -> None:
    """Create any missing tables."""
    # Imported for its side effect of registering the models on Base.metadata
    import postframe.db.models  # noqa: F401

    async with db_config.get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


__all__ = ["build_db_config", "create_tables"]
