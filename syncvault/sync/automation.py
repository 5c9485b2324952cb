"""
Server-held automation documents.

Failover automation (rules with addon priority chains, plus a webhook) lives
next to the zero-knowledge blob because the server acts on it. Addon URLs and
the webhook URL routinely embed API keys, so those fields are sealed with the
server secret chain before they touch the disk.

Document shape:
    {"rules": [{"id", "accountId", "priorityChain": [url, ...], "isActive", ...}],
     "webhook": {"url": str, "enabled": bool}}
"""

import copy
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from syncvault.errors import ValidationError
from syncvault.storage.database import Database
from syncvault.sync.models import AutomationRecord
from syncvault.sync.secrets import ServerSecretChain
from syncvault.sync.service import SyncService

logger = logging.getLogger(__name__)

EMPTY_DOCUMENT = {"rules": [], "webhook": {"url": "", "enabled": False}}


def _map_sealed_fields(
    document: dict,
    transform: Callable[[Any], Any],
    on_failure: Optional[Callable[[str], None]] = None,
) -> dict:
    """Apply ``transform`` to every sealed field of a copy of ``document``."""
    doc = copy.deepcopy(document)

    def apply(value: Any, path: str) -> Any:
        if not value:
            return value
        result = transform(value)
        if result is None and on_failure is not None:
            on_failure(path)
        return result

    webhook = doc.get("webhook")
    if isinstance(webhook, dict):
        webhook["url"] = apply(webhook.get("url"), "webhook.url")

    for i, rule in enumerate(doc.get("rules") or []):
        chain = rule.get("priorityChain") if isinstance(rule, dict) else None
        if isinstance(chain, list):
            rule["priorityChain"] = [
                apply(url, f"rules[{i}].priorityChain[{j}]") for j, url in enumerate(chain)
            ]
    return doc


def validate_document(document: Any) -> dict:
    if not isinstance(document, dict):
        raise ValidationError("Automation document must be an object")
    rules = document.get("rules", [])
    if not isinstance(rules, list) or not all(isinstance(r, dict) for r in rules):
        raise ValidationError("rules must be a list of objects")
    webhook = document.get("webhook", EMPTY_DOCUMENT["webhook"])
    if not isinstance(webhook, dict):
        raise ValidationError("webhook must be an object")
    return {"rules": rules, "webhook": webhook}


class AutomationService:

    def __init__(self, database: Database, secrets: ServerSecretChain, sync_service: SyncService):
        self._db = database
        self._secrets = secrets
        self._sync = sync_service

    def load(self, sync_id: Optional[str], token: Optional[str]) -> dict:
        """Return the decrypted document.

        Fields no candidate secret can open come back as None and are listed
        under ``decryptionErrors``.
        """
        self._sync.authorize(sync_id, token)
        with self._db.session() as db:
            record = db.get(AutomationRecord, sync_id)
            raw = record.value if record is not None else None

        if raw is None:
            return {**copy.deepcopy(EMPTY_DOCUMENT), "decryptionErrors": []}

        failures: list[str] = []
        document = _map_sealed_fields(json.loads(raw), self._secrets.decrypt, failures.append)
        if failures:
            logger.error(
                "Automation document %s has %d unrecoverable field(s); "
                "data may be corrupted or key lost",
                sync_id, len(failures),
            )
        document["decryptionErrors"] = failures
        return document

    def save(self, sync_id: Optional[str], token: Optional[str], document: Any) -> None:
        self._sync.authorize(sync_id, token)
        sealed = _map_sealed_fields(validate_document(document), self._secrets.encrypt)
        value = json.dumps(sealed)
        now = datetime.now(timezone.utc)

        with self._db.session() as db:
            record = db.get(AutomationRecord, sync_id)
            if record is None:
                db.add(AutomationRecord(key=sync_id, value=value, updated_at=now))
            else:
                record.value = value
                record.updated_at = now
        logger.info("Saved automation document for sync id %s", sync_id)

    def reencrypt_all(self) -> dict:
        """Re-seal every document under the current secret.

        Documents with any field that cannot be opened are left untouched.
        """
        stats = {"total": 0, "rotated": 0, "errors": 0}

        with self._db.session() as db:
            for record in db.query(AutomationRecord).all():
                stats["total"] += 1
                failures: list[str] = []
                rotated = _map_sealed_fields(
                    json.loads(record.value), self._secrets.reencrypt, failures.append,
                )
                if failures:
                    logger.error(
                        "Skipping %s: %d field(s) could not be decrypted",
                        record.key, len(failures),
                    )
                    stats["errors"] += 1
                    continue
                record.value = json.dumps(rotated)
                record.updated_at = datetime.now(timezone.utc)
                stats["rotated"] += 1

        logger.info("Secret rotation complete: %s", stats)
        return stats
