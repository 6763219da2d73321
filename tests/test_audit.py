"""
Tests for safegate.audit -- Append-Only, Tenant-Isolated, Hash-Chained Ledger.

Covers: chain assignment and verification, tamper detection, query filtering
and ordering, write-then-read round trip, fail-safe pending queue, retention
archival (idempotent, chain-preserving), break-glass logs, export format,
PHI redaction, multi-tenant isolation, and concurrent writers.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import threading

import pydantic
import pytest

from safegate.audit import (
    AuditEntry,
    AuditEventType,
    AuditLedger,
    EmergencyAccessLog,
    InMemoryAuditStore,
    redact_phi_from_metadata,
    retention_cutoff,
)
from safegate.errors import AuditWriteError
from safegate.models import AuditAction


NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _make_entry(
    tenant_id: str = "tenant_a",
    actor_id: str = "user_1",
    subject_id: str = "subj_1",
    event_type: AuditEventType = AuditEventType.CHANGE_EVALUATED,
    timestamp: datetime | None = None,
    metadata: dict | None = None,
) -> AuditEntry:
    """Helper to create audit entries for testing."""
    return AuditEntry(
        tenant_id=tenant_id,
        actor_id=actor_id,
        subject_id=subject_id,
        event_type=event_type,
        action=AuditAction.UPDATE,
        resource="health_profile",
        timestamp=timestamp or NOW,
        metadata=metadata or {},
    )


def _make_ledger(store: InMemoryAuditStore | None = None) -> AuditLedger:
    return AuditLedger(store=store, retry_attempts=3, retry_wait_seconds=0)


class FlakyStore(InMemoryAuditStore):
    """Store whose inserts fail a fixed number of times."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def insert(self, entry: AuditEntry) -> AuditEntry:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise AuditWriteError("store unavailable")
        return super().insert(entry)

    def insert_emergency(self, log: EmergencyAccessLog) -> EmergencyAccessLog:
        if self.failures > 0:
            self.failures -= 1
            raise AuditWriteError("store unavailable")
        return super().insert_emergency(log)


# ---------------------------------------------------------------------------
# 1. Chain assignment and verification
# ---------------------------------------------------------------------------

class TestChain:
    def test_first_entry_has_empty_previous_hash(self):
        ledger = _make_ledger()
        stored = ledger.record(_make_entry())
        assert stored.sequence == 1
        assert stored.previous_hash == ""
        assert len(ledger) == 1

    def test_entries_are_linked(self):
        ledger = _make_ledger()
        e1 = ledger.record(_make_entry(actor_id="a1"))
        e2 = ledger.record(_make_entry(actor_id="a2"))
        e3 = ledger.record(_make_entry(actor_id="a3"))
        assert e2.previous_hash == e1.compute_hash()
        assert e3.previous_hash == e2.compute_hash()
        assert [e1.sequence, e2.sequence, e3.sequence] == [1, 2, 3]

    def test_empty_ledger_is_valid(self):
        assert _make_ledger().verify_chain() == (True, None)

    def test_valid_chain_verifies(self):
        ledger = _make_ledger()
        for i in range(5):
            ledger.record(_make_entry(actor_id=f"a{i}"))
        assert ledger.verify_chain() == (True, None)


# ---------------------------------------------------------------------------
# 2. Tamper detection
# ---------------------------------------------------------------------------

class TestTamperDetection:
    def test_modified_entry_breaks_chain(self):
        store = InMemoryAuditStore()
        ledger = _make_ledger(store)
        for i in range(3):
            ledger.record(_make_entry(actor_id=f"a{i}"))

        store._active[1] = store._active[1].model_copy(update={"metadata": {"tampered": True}})

        valid, broken_at = ledger.verify_chain()
        assert valid is False
        assert broken_at == 3

    def test_deleted_entry_breaks_chain(self):
        store = InMemoryAuditStore()
        ledger = _make_ledger(store)
        for i in range(3):
            ledger.record(_make_entry(actor_id=f"a{i}"))

        del store._active[1]

        valid, broken_at = ledger.verify_chain()
        assert valid is False
        assert broken_at == 3

    def test_recorded_entries_are_immutable(self):
        ledger = _make_ledger()
        stored = ledger.record(_make_entry())
        with pytest.raises(pydantic.ValidationError):
            stored.actor_id = "TAMPERED"


# ---------------------------------------------------------------------------
# 3. Queries
# ---------------------------------------------------------------------------

class TestQuery:
    def test_query_by_event_type(self):
        ledger = _make_ledger()
        ledger.record(_make_entry(event_type=AuditEventType.CHANGE_EVALUATED))
        ledger.record(_make_entry(event_type=AuditEventType.ACCESS_DENIED))
        results = ledger.query("tenant_a", event_type=AuditEventType.ACCESS_DENIED)
        assert len(results) == 1

    def test_query_by_time_range(self):
        ledger = _make_ledger()
        ledger.record(_make_entry(timestamp=NOW - timedelta(hours=2)))
        ledger.record(_make_entry(timestamp=NOW - timedelta(hours=1)))
        ledger.record(_make_entry(timestamp=NOW))
        results = ledger.query(
            "tenant_a",
            time_start=NOW - timedelta(hours=1, minutes=30),
            time_end=NOW - timedelta(minutes=30),
        )
        assert len(results) == 1

    def test_query_orders_by_timestamp_then_sequence(self):
        ledger = _make_ledger()
        late = ledger.record(_make_entry(actor_id="late", timestamp=NOW))
        early = ledger.record(_make_entry(actor_id="early", timestamp=NOW - timedelta(minutes=5)))
        tie = ledger.record(_make_entry(actor_id="tie", timestamp=NOW))
        results = ledger.query("tenant_a")
        assert [e.entry_id for e in results] == [early.entry_id, late.entry_id, tie.entry_id]

    def test_write_then_read_round_trip(self):
        ledger = _make_ledger()
        original = _make_entry(metadata={"disposition": "WARN", "nested": {"count": 2}})
        ledger.record(original)

        results = ledger.query(
            "tenant_a",
            subject_id="subj_1",
            time_start=NOW - timedelta(seconds=1),
            time_end=NOW + timedelta(seconds=1),
        )
        assert len(results) == 1
        store_fields = {"sequence", "previous_hash", "archived"}
        assert results[0].model_dump(exclude=store_fields) == original.model_dump(exclude=store_fields)


# ---------------------------------------------------------------------------
# 4. Fail-safe write path
# ---------------------------------------------------------------------------

class TestFailSafeWrites:
    def test_transient_failure_is_retried(self):
        store = FlakyStore(failures=2)
        ledger = _make_ledger(store)
        stored = ledger.record(_make_entry())
        assert stored.sequence == 1
        assert store.attempts == 3
        assert ledger.fully_compliant is True

    def test_persistent_failure_parks_entry(self):
        store = FlakyStore(failures=10)
        ledger = _make_ledger(store)
        entry = _make_entry()
        returned = ledger.record(entry)
        assert returned.entry_id == entry.entry_id
        assert ledger.pending_count == 1
        assert ledger.fully_compliant is False

    def test_flush_pending_after_recovery(self):
        store = FlakyStore(failures=3)
        ledger = _make_ledger(store)
        ledger.record(_make_entry())
        assert ledger.pending_count == 1

        assert ledger.flush_pending() == 1
        assert ledger.fully_compliant is True
        assert len(ledger.query("tenant_a")) == 1

    def test_export_reports_pending_writes(self):
        ledger = _make_ledger(FlakyStore(failures=10))
        ledger.record(_make_entry())
        meta = ledger.export_for_review("tenant_a")["export_metadata"]
        assert meta["fully_compliant"] is False
        assert meta["pending_writes"] == 1


# ---------------------------------------------------------------------------
# 5. Retention archival
# ---------------------------------------------------------------------------

class TestArchival:
    def test_retention_cutoff_handles_leap_day(self):
        cutoff = retention_cutoff(datetime(2024, 2, 29, tzinfo=timezone.utc), 7)
        assert cutoff == datetime(2017, 2, 28, tzinfo=timezone.utc)

    def test_expired_entries_move_to_archive(self):
        ledger = _make_ledger()
        ledger.record(_make_entry(timestamp=NOW - timedelta(days=365 * 8)))
        ledger.record(_make_entry(timestamp=NOW - timedelta(days=30)))

        moved = ledger.archive_expired(now=NOW)
        assert moved == 1
        active = ledger.query("tenant_a")
        assert all(not e.archived for e in active)
        archived = ledger.query("tenant_a", include_archived=True)
        assert sum(1 for e in archived if e.archived) == 1

    def test_archive_is_idempotent(self):
        ledger = _make_ledger()
        ledger.record(_make_entry(timestamp=NOW - timedelta(days=365 * 8)))
        assert ledger.archive_expired(now=NOW) == 1
        assert ledger.archive_expired(now=NOW) == 0
        archived_events = ledger.query("tenant_a", event_type=AuditEventType.AUDIT_ARCHIVED)
        assert len(archived_events) == 1
        assert archived_events[0].metadata["archived_count"] == 1

    def test_archive_never_deletes(self):
        ledger = _make_ledger()
        for days in (3000, 2900, 10):
            ledger.record(_make_entry(timestamp=NOW - timedelta(days=days)))
        before = len(ledger)
        ledger.archive_expired(now=NOW)
        assert len(ledger) == before + 1

    def test_chain_valid_after_archive(self):
        ledger = _make_ledger()
        ledger.record(_make_entry(timestamp=NOW - timedelta(days=365 * 8)))
        ledger.record(_make_entry(timestamp=NOW))
        ledger.archive_expired(now=NOW)
        assert ledger.verify_chain() == (True, None)

    def test_archive_scoped_to_tenant(self):
        ledger = _make_ledger()
        old = NOW - timedelta(days=365 * 8)
        ledger.record(_make_entry(tenant_id="tenant_a", timestamp=old))
        ledger.record(_make_entry(tenant_id="tenant_b", timestamp=old))
        assert ledger.archive_expired(now=NOW, tenant_id="tenant_a") == 1
        assert len(ledger.query("tenant_b")) == 1


# ---------------------------------------------------------------------------
# 6. Break-glass logs
# ---------------------------------------------------------------------------

def _make_log(tenant_id: str = "tenant_a", granted_at: datetime = NOW) -> EmergencyAccessLog:
    return EmergencyAccessLog(
        grant_id="grant_1",
        tenant_id=tenant_id,
        actor_id="relative_1",
        subject_id="subj_1",
        reason="unconscious at home",
        granted_at=granted_at,
        expires_at=granted_at + timedelta(minutes=15),
    )


class TestEmergencyLogs:
    def test_logs_scoped_by_tenant(self):
        ledger = _make_ledger()
        ledger.record_emergency(_make_log("tenant_a"))
        ledger.record_emergency(_make_log("tenant_b"))
        assert len(ledger.emergency_logs("tenant_a")) == 1

    def test_logs_survive_archival(self):
        ledger = _make_ledger()
        ledger.record_emergency(_make_log(granted_at=NOW - timedelta(days=365 * 9)))
        ledger.record(_make_entry(timestamp=NOW - timedelta(days=365 * 9)))
        ledger.archive_expired(now=NOW)
        assert len(ledger.emergency_logs("tenant_a")) == 1

    def test_persistent_failure_raises(self):
        ledger = _make_ledger(FlakyStore(failures=10))
        with pytest.raises(AuditWriteError):
            ledger.record_emergency(_make_log())


# ---------------------------------------------------------------------------
# 7. Export, redaction and tenant isolation
# ---------------------------------------------------------------------------

class TestExport:
    def test_export_contains_required_fields(self):
        ledger = _make_ledger()
        ledger.record(_make_entry())
        ledger.record_emergency(_make_log())
        export = ledger.export_for_review("tenant_a")
        meta = export["export_metadata"]
        assert meta["tenant_id"] == "tenant_a"
        assert meta["entry_count"] == 1
        assert meta["emergency_log_count"] == 1
        assert meta["chain_integrity"] == "VALID"
        assert len(export["emergency_access_logs"]) == 1

    def test_export_scoped_by_tenant(self):
        ledger = _make_ledger()
        ledger.record(_make_entry(tenant_id="tenant_a"))
        ledger.record(_make_entry(tenant_id="tenant_b"))
        ledger.record(_make_entry(tenant_id="tenant_a"))
        export = ledger.export_for_review("tenant_a")
        assert export["export_metadata"]["entry_count"] == 2
        assert all(e["tenant_id"] == "tenant_a" for e in export["entries"])

    def test_export_applies_redaction(self):
        ledger = _make_ledger()
        ledger.record(_make_entry(metadata={"display_name": "Test Person", "disposition": "WARN"}))
        entry = ledger.export_for_review("tenant_a")["entries"][0]
        assert entry["metadata"]["display_name"] == "[REDACTED]"
        assert entry["metadata"]["disposition"] == "WARN"

    def test_query_never_crosses_tenants(self):
        ledger = _make_ledger()
        ledger.record(_make_entry(tenant_id="tenant_a"))
        ledger.record(_make_entry(tenant_id="tenant_b"))
        assert all(e.tenant_id == "tenant_b" for e in ledger.query("tenant_b"))


class TestPHIRedaction:
    def test_redact_known_phi_keys(self):
        redacted = redact_phi_from_metadata({
            "name": "John Doe",
            "ssn": "123-45-6789",
            "disposition": "BLOCK",
        })
        assert redacted["name"] == "[REDACTED]"
        assert redacted["ssn"] == "[REDACTED]"
        assert redacted["disposition"] == "BLOCK"

    def test_redact_patterns_in_values(self):
        redacted = redact_phi_from_metadata({"notes": "Call 555-123-4567 or jo@example.com"})
        assert "[REDACTED-PHONE]" in redacted["notes"]
        assert "[REDACTED-EMAIL]" in redacted["notes"]

    def test_redact_nested_lists(self):
        redacted = redact_phi_from_metadata({"contacts": [{"phone": "555-123-4567", "kind": "primary"}]})
        assert redacted["contacts"][0]["phone"] == "[REDACTED]"
        assert redacted["contacts"][0]["kind"] == "primary"


# ---------------------------------------------------------------------------
# 8. Concurrent writers
# ---------------------------------------------------------------------------

class TestConcurrentWriters:
    def test_parallel_records_keep_chain_intact(self):
        ledger = _make_ledger()
        threads_count, per_thread = 8, 25
        barrier = threading.Barrier(threads_count)

        def write(worker: int) -> None:
            barrier.wait()
            for i in range(per_thread):
                ledger.record(_make_entry(
                    actor_id=f"worker_{worker}",
                    timestamp=NOW + timedelta(seconds=i),
                ))

        threads = [threading.Thread(target=write, args=(n,)) for n in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(ledger) == threads_count * per_thread
        assert ledger.pending_count == 0
        results = ledger.query("tenant_a", subject_id="subj_1")
        assert len(results) == threads_count * per_thread
        keys = [(e.timestamp, e.sequence) for e in results]
        assert keys == sorted(keys)
        assert sorted(e.sequence for e in results) == list(range(1, threads_count * per_thread + 1))
        assert ledger.verify_chain() == (True, None)
