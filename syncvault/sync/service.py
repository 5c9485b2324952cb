"""
Sync Service — ownership-checked key/value store for opaque blobs.

The first POST for an id claims it: the presented token becomes the owner
credential for every later request. Conflict policy is last-write-wins.
"""

import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError

from syncvault.errors import AuthorizationError, NotFoundError, ValidationError
from syncvault.storage.database import Database
from syncvault.sync.models import AutomationRecord, SyncRecord

logger = logging.getLogger(__name__)


def tokens_match(stored: Optional[str], presented: Optional[str]) -> bool:
    """Constant-time token comparison."""
    if not stored or not presented:
        return False
    return hmac.compare_digest(stored.encode("utf-8"), presented.encode("utf-8"))


def _serialize(payload: Any) -> Optional[str]:
    """JSON text to store. An empty body is stored as NULL and reads back as {}."""
    if payload is None:
        return None
    try:
        return json.dumps(payload)
    except (TypeError, ValueError) as e:
        raise ValidationError("Invalid request body") from e


class SyncService:

    def __init__(self, database: Database):
        self._db = database

    # ── Public API ──────────────────────────────────────────────

    def fetch(self, sync_id: Optional[str], token: Optional[str]) -> Any:
        self._require_credentials(sync_id, token)
        with self._db.session() as db:
            record = self._authorized_record(db, sync_id, token)
            value = record.value

        if not value:
            return {}
        data = json.loads(value)
        return {} if data is None else data

    def upsert(self, sync_id: Optional[str], token: Optional[str], payload: Any) -> None:
        """Claim ``sync_id`` if it is free, else overwrite it when the token matches."""
        self._require_credentials(sync_id, token)
        value = _serialize(payload)

        if self._claim(sync_id, token, value):
            logger.info("Claimed sync id %s", sync_id)
            return

        with self._db.session() as db:
            record = self._authorized_record(db, sync_id, token)
            record.value = value
            record.updated_at = datetime.now(timezone.utc)
        logger.info("Updated sync id %s", sync_id)

    def delete(self, sync_id: Optional[str], token: Optional[str]) -> None:
        self._require_credentials(sync_id, token)
        with self._db.session() as db:
            record = self._authorized_record(db, sync_id, token)
            db.delete(record)
            db.query(AutomationRecord).filter_by(key=sync_id).delete()
        logger.info("Deleted account data for sync id %s", sync_id)

    def authorize(self, sync_id: Optional[str], token: Optional[str]) -> None:
        """Raise unless ``token`` owns an existing record for ``sync_id``."""
        self._require_credentials(sync_id, token)
        with self._db.session() as db:
            self._authorized_record(db, sync_id, token)

    def count(self, sync_id: Optional[str] = None) -> int:
        with self._db.session() as db:
            query = db.query(SyncRecord)
            if sync_id is not None:
                query = query.filter_by(key=sync_id)
            return query.count()

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _require_credentials(sync_id: Optional[str], token: Optional[str]) -> None:
        if not sync_id or not token:
            raise ValidationError("Missing ID or Password header")

    @staticmethod
    def _authorized_record(db, sync_id: str, token: str) -> SyncRecord:
        record = db.get(SyncRecord, sync_id)
        if record is None:
            raise NotFoundError("Not found")
        if not tokens_match(record.token, token):
            logger.warning("Token mismatch for sync id %s", sync_id)
            raise AuthorizationError("Unauthorized: Invalid Password")
        return record

    def _claim(self, sync_id: str, token: str, value: str) -> bool:
        """Insert a new record. False if the id is already taken."""
        try:
            with self._db.session() as db:
                if db.get(SyncRecord, sync_id) is not None:
                    return False
                db.add(SyncRecord(
                    key=sync_id,
                    value=value,
                    token=token,
                    updated_at=datetime.now(timezone.utc),
                ))
        except IntegrityError:
            # Lost a concurrent claim for the same id; fall through to update.
            return False
        return True
