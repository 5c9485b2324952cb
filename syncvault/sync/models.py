"""
SQLAlchemy models for the Sync Service.

- SyncRecord: one opaque, client-encrypted blob per account id, owned by a sync token
- AutomationRecord: server-held automation document whose credential fields are
  sealed with the server secret chain
"""

from datetime import datetime, timezone

from sqlalchemy import Column, String, Text, DateTime

from syncvault.storage.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncRecord(Base):
    __tablename__ = "sync_store"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)           # opaque JSON text
    token = Column(String, nullable=False)        # SHA-256 sync token of the owner
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AutomationRecord(Base):
    __tablename__ = "automation_store"

    key = Column(String, primary_key=True)        # same id as the owning SyncRecord
    value = Column(Text, nullable=False)          # JSON with sealed fields
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
