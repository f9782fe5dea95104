"""
Idempotency ledger for inbound provider events.

should_process() is an atomic check-and-mark: the first caller for an event key
claims it and gets True; every later caller within the TTL gets False and must
acknowledge the event as a successful no-op. A caller whose processing fails
calls release() so a replay can apply the event.

Two stores:
- InMemoryIdempotencyStore: process-local, monotonic clock. Single instance only.
- DatabaseIdempotencyStore: processed_events table, shared by every instance.
"""
import hashlib
import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from app.config import settings
from app.models import ProcessedEvent

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 255


def build_event_key(source: str, event_type: str, entity_id: Any, *qualifiers: Any) -> str:
    """
    Deterministic key from (event type, provider entity id): stable across retries of the
    same event, distinct across events. Over-long keys are hashed.
    """
    parts = [str(source).strip().lower(), str(event_type).strip().lower(), str(entity_id).strip()]
    parts.extend(str(q).strip() for q in qualifiers if q not in (None, ""))
    key = ":".join(parts)
    if len(key) > MAX_KEY_LENGTH:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        key = f"{parts[0]}:{parts[1]}:sha256:{digest}"
    return key


class IdempotencyStore(ABC):
    @abstractmethod
    def get(self, key: str, ttl_seconds: int) -> bool:
        """True if key was claimed within the TTL."""

    @abstractmethod
    def set(self, key: str, ttl_seconds: int, source: Optional[str] = None) -> bool:
        """Claim key if absent or expired. Atomic; returns True only for the claiming caller."""

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def evict(self, ttl_seconds: int) -> int:
        """Drop entries older than the TTL; returns how many were removed."""


class InMemoryIdempotencyStore(IdempotencyStore):
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def get(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            claimed_at = self._entries.get(key)
            return claimed_at is not None and self._clock() - claimed_at < ttl_seconds

    def set(self, key: str, ttl_seconds: int, source: Optional[str] = None) -> bool:
        with self._lock:
            now = self._clock()
            claimed_at = self._entries.get(key)
            if claimed_at is not None and now - claimed_at < ttl_seconds:
                return False
            self._entries[key] = now
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def evict(self, ttl_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, claimed_at in self._entries.items() if now - claimed_at >= ttl_seconds]
            for k in expired:
                del self._entries[k]
            return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class DatabaseIdempotencyStore(IdempotencyStore):
    """
    Shared ledger on the processed_events table. The primary key on event_key makes
    the INSERT the atomic claim; an expired row is reclaimed with a conditional UPDATE.
    Uses its own sessions so a claim commits independently of the order transaction.
    """

    def __init__(self, session_factory: Callable):
        self.session_factory = session_factory

    @staticmethod
    def _cutoff(ttl_seconds: int) -> datetime:
        return datetime.now(timezone.utc) - timedelta(seconds=ttl_seconds)

    def get(self, key: str, ttl_seconds: int) -> bool:
        db = self.session_factory()
        try:
            row = db.get(ProcessedEvent, key)
            if row is None:
                return False
            processed_at = row.processed_at
            if processed_at.tzinfo is None:
                processed_at = processed_at.replace(tzinfo=timezone.utc)
            return processed_at >= self._cutoff(ttl_seconds)
        finally:
            db.close()

    def set(self, key: str, ttl_seconds: int, source: Optional[str] = None) -> bool:
        now = datetime.now(timezone.utc)
        db = self.session_factory()
        try:
            db.add(ProcessedEvent(event_key=key, source=source, processed_at=now))
            try:
                db.commit()
                return True
            except IntegrityError:
                db.rollback()
            result = db.execute(
                update(ProcessedEvent)
                .where(ProcessedEvent.event_key == key, ProcessedEvent.processed_at < self._cutoff(ttl_seconds))
                .values(processed_at=now, source=source)
            )
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    def delete(self, key: str) -> None:
        db = self.session_factory()
        try:
            db.execute(delete(ProcessedEvent).where(ProcessedEvent.event_key == key))
            db.commit()
        finally:
            db.close()

    def evict(self, ttl_seconds: int) -> int:
        db = self.session_factory()
        try:
            result = db.execute(delete(ProcessedEvent).where(ProcessedEvent.processed_at < self._cutoff(ttl_seconds)))
            db.commit()
            return result.rowcount or 0
        finally:
            db.close()


class IdempotencyLedger:
    def __init__(self, store: IdempotencyStore, ttl_seconds: int = 24 * 60 * 60):
        self.store = store
        self.ttl_seconds = ttl_seconds

    def should_process(self, event_key: str, source: Optional[str] = None) -> bool:
        """Atomic check-and-mark. False means the event was already applied within the TTL."""
        claimed = self.store.set(event_key, self.ttl_seconds, source)
        if not claimed:
            logger.info("Duplicate event ignored: %s", event_key)
        return claimed

    def mark_processed(self, event_key: str, source: Optional[str] = None) -> None:
        """Record a key without the check; used when the effect was applied outside should_process."""
        self.store.delete(event_key)
        self.store.set(event_key, self.ttl_seconds, source)

    def release(self, event_key: str) -> None:
        """Forget a claimed key whose processing failed."""
        self.store.delete(event_key)
        logger.warning("Released idempotency key after failed processing: %s", event_key)

    def evict_expired(self) -> int:
        removed = self.store.evict(self.ttl_seconds)
        if removed:
            logger.info("Idempotency ledger evicted %s expired keys", removed)
        return removed


_ledger: Optional[IdempotencyLedger] = None


def get_idempotency_ledger() -> IdempotencyLedger:
    """Process-wide ledger built from settings (FastAPI dependency)."""
    global _ledger
    if _ledger is None:
        if settings.IDEMPOTENCY_BACKEND == "memory":
            store: IdempotencyStore = InMemoryIdempotencyStore()
        else:
            from app.database import SessionLocal
            store = DatabaseIdempotencyStore(SessionLocal)
        _ledger = IdempotencyLedger(store, ttl_seconds=settings.IDEMPOTENCY_TTL_SEC)
        logger.info("Idempotency ledger: backend=%s ttl=%ss", settings.IDEMPOTENCY_BACKEND, settings.IDEMPOTENCY_TTL_SEC)
    return _ledger
