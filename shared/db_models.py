"""SQLAlchemy database models for the chat to Notion sync application."""

from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func


Base = declarative_base()


class KVEntry(Base):
    """Model for kv_entries table. Values are JSON-encoded text."""
    __tablename__ = 'kv_entries'

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<KVEntry(key={self.key})>"
