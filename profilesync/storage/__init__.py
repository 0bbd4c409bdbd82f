"""Profile storage components backed by SQLAlchemy."""

from profilesync.storage.database import Database, create_db_engine
from profilesync.storage.tables import SyncTables, build_tables
from profilesync.storage.target_store import SqlTargetStore, TargetStore

__all__ = ["Database", "SqlTargetStore", "SyncTables", "TargetStore", "build_tables", "create_db_engine"]
