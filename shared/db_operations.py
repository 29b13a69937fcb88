"""Database operations for the chat to Notion sync application."""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import Session, sessionmaker

from shared.config import get_database_url
from shared.db_models import Base, KVEntry
from shared.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class DatabaseOperations(KeyValueStore):
    """Key-value store persisted in the kv_entries table."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        self.engine = create_engine(self.database_url, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        """
        Load values for the given keys.

        Args:
            keys: Keys to look up

        Returns:
            Dictionary of decoded values for the keys that exist
        """
        keys = list(keys)
        if not keys:
            return {}

        with self.get_session() as session:
            stmt = select(KVEntry).where(KVEntry.key.in_(keys))
            rows = session.execute(stmt).scalars().all()
            return {row.key: json.loads(row.value) for row in rows}

    def set(self, mapping: Dict[str, Any]) -> None:
        """
        Insert or update values.

        Args:
            mapping: Keys and JSON-serializable values to store
        """
        if not mapping:
            return

        with self.get_session() as session:
            now = datetime.utcnow()
            for key, value in mapping.items():
                session.merge(KVEntry(key=key, value=json.dumps(value), updated_at=now))
            session.commit()
        logger.debug(f"Stored keys: {sorted(mapping)}")

    def remove(self, keys: Iterable[str]) -> None:
        """Delete the given keys."""
        keys = list(keys)
        if not keys:
            return

        with self.get_session() as session:
            session.execute(delete(KVEntry).where(KVEntry.key.in_(keys)))
            session.commit()

    def ping(self) -> bool:
        """Check that the database answers a trivial query."""
        with self.get_session() as session:
            session.execute(select(KVEntry.key).limit(1))
        return True
