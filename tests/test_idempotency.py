"""
Idempotency ledger: key derivation and both stores.
"""
from datetime import datetime, timedelta, timezone

from conftest import TestingSessionLocal

from app.models import ProcessedEvent
from app.services.idempotency import (
    MAX_KEY_LENGTH,
    DatabaseIdempotencyStore,
    IdempotencyLedger,
    InMemoryIdempotencyStore,
    build_event_key,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestBuildEventKey:
    def test_deterministic(self):
        assert build_event_key("razorpay", "payment.captured", "pay_1") == "razorpay:payment.captured:pay_1"
        assert build_event_key("Razorpay", "PAYMENT.CAPTURED", " pay_1 ") == "razorpay:payment.captured:pay_1"

    def test_qualifiers_distinguish_events(self):
        first = build_event_key("shiprocket", "shipment", "AWB1", "in transit", "2024-05-01 10:00:00")
        second = build_event_key("shiprocket", "shipment", "AWB1", "in transit", "2024-05-02 09:00:00")
        assert first != second

    def test_empty_qualifiers_ignored(self):
        assert build_event_key("shiprocket", "shipment", "AWB1", None, "") == "shiprocket:shipment:AWB1"

    def test_long_keys_are_hashed(self):
        key = build_event_key("delhivery", "shipment", "X" * 400)
        assert len(key) <= MAX_KEY_LENGTH
        assert key.startswith("delhivery:shipment:sha256:")
        assert key == build_event_key("delhivery", "shipment", "X" * 400)


class TestInMemoryLedger:
    def test_first_claim_wins(self):
        ledger = IdempotencyLedger(InMemoryIdempotencyStore(), ttl_seconds=60)
        assert ledger.should_process("k1") is True
        assert ledger.should_process("k1") is False
        assert ledger.store.get("k1", ledger.ttl_seconds)

    def test_release_allows_replay(self):
        ledger = IdempotencyLedger(InMemoryIdempotencyStore(), ttl_seconds=60)
        assert ledger.should_process("k1")
        ledger.release("k1")
        assert not ledger.store.get("k1", ledger.ttl_seconds)
        assert ledger.should_process("k1")

    def test_expired_key_can_be_reclaimed(self):
        clock = FakeClock()
        ledger = IdempotencyLedger(InMemoryIdempotencyStore(clock=clock), ttl_seconds=60)
        assert ledger.should_process("k1")
        clock.now += 59
        assert not ledger.should_process("k1")
        clock.now += 2
        assert ledger.should_process("k1")

    def test_evict_only_after_ttl(self):
        clock = FakeClock()
        store = InMemoryIdempotencyStore(clock=clock)
        ledger = IdempotencyLedger(store, ttl_seconds=60)
        ledger.should_process("old")
        clock.now += 30
        ledger.should_process("new")
        clock.now += 31
        assert ledger.evict_expired() == 1
        assert len(store) == 1
        assert ledger.store.get("new", ledger.ttl_seconds)

    def test_mark_processed(self):
        ledger = IdempotencyLedger(InMemoryIdempotencyStore(), ttl_seconds=60)
        ledger.mark_processed("k1", source="sync")
        assert ledger.should_process("k1") is False


class TestDatabaseLedger:
    def test_claim_is_insert_once(self, db_session):
        ledger = IdempotencyLedger(DatabaseIdempotencyStore(TestingSessionLocal), ttl_seconds=3600)
        assert ledger.should_process("razorpay:payment.captured:pay_1", source="razorpay")
        assert not ledger.should_process("razorpay:payment.captured:pay_1", source="razorpay")
        row = db_session.get(ProcessedEvent, "razorpay:payment.captured:pay_1")
        assert row is not None
        assert row.source == "razorpay"

    def test_expired_row_is_reclaimed(self, db_session):
        db_session.add(ProcessedEvent(
            event_key="stale-key",
            source="shiprocket",
            processed_at=datetime.now(timezone.utc) - timedelta(days=2),
        ))
        db_session.commit()
        ledger = IdempotencyLedger(DatabaseIdempotencyStore(TestingSessionLocal), ttl_seconds=3600)
        assert not ledger.store.get("stale-key", ledger.ttl_seconds)
        assert ledger.should_process("stale-key")
        assert not ledger.should_process("stale-key")

    def test_release_and_evict(self, db_session):
        db_session.add(ProcessedEvent(
            event_key="old-key",
            source="shiprocket",
            processed_at=datetime.now(timezone.utc) - timedelta(days=2),
        ))
        db_session.commit()
        ledger = IdempotencyLedger(DatabaseIdempotencyStore(TestingSessionLocal), ttl_seconds=3600)
        assert ledger.should_process("fresh-key")
        assert ledger.evict_expired() == 1
        assert ledger.store.get("fresh-key", ledger.ttl_seconds)

        ledger.release("fresh-key")
        assert ledger.should_process("fresh-key")
