"""Engine and session factory setup."""

from pathlib import Path

import structlog
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from profilesync.models.config import MixpanelConfig, StorageConfig
from profilesync.storage.tables import SyncTables, build_tables

log = structlog.stdlib.get_logger()

SUPPORTED_DIALECTS = ("postgresql", "sqlite")


def create_db_engine(config: StorageConfig) -> Engine:
    """
    Create an engine for the configured database.

    SQLite file databases get WAL and a busy timeout; in-memory SQLite uses a
    single shared connection so every session sees the same data.

    Raises:
        ValueError: If the database dialect has no set-based upsert support here
    """
    url = config.database_url
    is_sqlite = url.startswith("sqlite")
    is_memory = is_sqlite and (url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url)

    engine_kwargs: dict = {"echo": config.echo}
    if is_sqlite:
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if is_memory:
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_pre_ping"] = True

    engine = create_engine(url, **engine_kwargs)
    if is_sqlite and not is_memory and engine.url.database:
        Path(engine.url.database).parent.mkdir(parents=True, exist_ok=True)
    if engine.dialect.name not in SUPPORTED_DIALECTS:
        raise ValueError(
            f"unsupported database dialect {engine.dialect.name!r}; "
            f"expected one of {SUPPORTED_DIALECTS}"
        )

    if is_sqlite and not is_memory:

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA busy_timeout=30000;")
            cursor.close()

    log.info("database_engine_created", dialect=engine.dialect.name, memory=is_memory)
    return engine


class Database:
    """Engine, session factory and table metadata for one database."""

    def __init__(self, engine: Engine, tables: SyncTables):
        self.engine = engine
        self.tables = tables
        self.session_factory: sessionmaker[Session] = sessionmaker(
            bind=engine, autoflush=False, expire_on_commit=False
        )

    @classmethod
    def from_config(cls, storage: StorageConfig, provider: MixpanelConfig) -> "Database":
        return cls(create_db_engine(storage), build_tables(provider))

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_all(self) -> None:
        """Create missing tables and indexes."""
        self.tables.metadata.create_all(self.engine)
        log.info("database_schema_ready", tables=sorted(self.tables.metadata.tables))

    def dispose(self) -> None:
        self.engine.dispose()
