"""
Database-backed idempotency keys for booking, cancel and reschedule.

A key is claimed inside the same transaction as the operation it guards, so the
stored response commits atomically with the side effects it describes.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import IDEMPOTENCY_TTL_HOURS
from .errors import ConflictError, ValidationError
from .models import IdempotencyRecord

logger = logging.getLogger(__name__)

PROCESSING = "processing"
COMPLETED = "completed"
MAX_KEY_LENGTH = 255


class IdempotencyService:
    def __init__(self, db: Session, clock, ttl_hours: int = IDEMPOTENCY_TTL_HOURS):
        self.db = db
        self.clock = clock
        self.ttl = timedelta(hours=ttl_hours)

    def lookup(self, scope: str, key: str, actor_id: str) -> Optional[IdempotencyRecord]:
        """Live record for this key, ignoring ones past their retention window"""
        record = self._find(scope, key, actor_id)
        if record is None or self._is_stale(record):
            return None
        return record

    def begin(self, scope: str, key: Optional[str], actor_id: str):
        """
        Claim a key for a new operation.

        Returns ``(record, None)`` for a fresh claim or ``(None, response)`` when
        the key was already completed. Without a key both are None.
        """
        if not key:
            return None, None
        if len(key) > MAX_KEY_LENGTH:
            raise ValidationError(f"Idempotency key cannot exceed {MAX_KEY_LENGTH} characters")

        existing = self.lookup(scope, key, actor_id)
        if existing is not None:
            return None, self._replay(existing)

        try:
            stale = self._find(scope, key, actor_id)
            if stale is not None:
                self.db.delete(stale)
                self.db.flush()

            record = IdempotencyRecord(
                scope=scope,
                key=key,
                actor_id=actor_id,
                status=PROCESSING,
                created_at=self.clock.now(),
            )
            self.db.add(record)
            self.db.flush()
            return record, None
        except IntegrityError:
            # A concurrent request claimed the key first
            self.db.rollback()
            existing = self.lookup(scope, key, actor_id)
            if existing is None:
                raise
            return None, self._replay(existing)

    def complete(self, record: Optional[IdempotencyRecord], response: dict) -> None:
        if record is None:
            return
        record.status = COMPLETED
        record.response = response
        record.completed_at = self.clock.now()
        self.db.flush()

    def _replay(self, record: IdempotencyRecord) -> dict:
        if record.status != COMPLETED:
            raise ConflictError(
                "A request with this idempotency key is still being processed",
                idempotency_key=record.key,
            )
        logger.info(f"🔄 Replaying {record.scope} result for idempotency key {record.key}")
        return record.response or {}

    def _find(self, scope: str, key: str, actor_id: str) -> Optional[IdempotencyRecord]:
        return (
            self.db.query(IdempotencyRecord)
            .filter(
                IdempotencyRecord.scope == scope,
                IdempotencyRecord.key == key,
                IdempotencyRecord.actor_id == actor_id,
            )
            .first()
        )

    def _is_stale(self, record: IdempotencyRecord) -> bool:
        return record.created_at < self.clock.now() - self.ttl
