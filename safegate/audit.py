"""
Audit Ledger -- Append-Only, Tenant-Isolated, Hash-Chained.

Every safety decision and every access to protected health data is recorded
as an immutable ``AuditEntry``.  Entries are linked through a SHA-256 hash
chain assigned by the store at insert time, so any later modification of a
stored entry is detectable with ``verify_chain()``.

**Write path:**  ``AuditLedger.record()`` never raises.  Store failures are
retried with tenacity; if the store is still failing, the entry is parked on
a fail-safe pending queue and logged at error level.  While entries are
pending the ledger reports ``fully_compliant == False``; ``flush_pending()``
drains the queue once the store recovers.

**Retention:**  entries stay in the active store for the tenant's retention
horizon (seven years minimum) and are then *moved*, never deleted, to the
archive.  The sweep is a conditional move keyed by timestamp, so re-running
it is harmless.  Break-glass logs live in their own list, are visible to
compliance review immediately, and are never archived.

**Tenant isolation:**  every query and export is scoped by ``tenant_id``.

**Scope note:**  the in-memory store demonstrates the contract.  A
production deployment backs it with a store that guarantees atomic inserts
and write-once semantics.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from safegate.config import MIN_AUDIT_RETENTION_YEARS
from safegate.errors import AuditWriteError
from safegate.models import AccessScope, AuditAction, Conflict

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Enumeration of all auditable events."""

    # Protected data access
    PHI_ACCESS = "PHI_ACCESS"

    # Change evaluation
    CHANGE_EVALUATED = "CHANGE_EVALUATED"
    CHANGE_REJECTED = "CHANGE_REJECTED"
    WARNING_ACKNOWLEDGED = "WARNING_ACKNOWLEDGED"
    CONFLICT_OVERRIDE = "CONFLICT_OVERRIDE"
    OVERRIDE_REJECTED = "OVERRIDE_REJECTED"

    # Access gate
    ACCESS_GRANTED = "ACCESS_GRANTED"
    ACCESS_DENIED = "ACCESS_DENIED"
    EMERGENCY_ROUTED = "EMERGENCY_ROUTED"

    # Break-glass
    EMERGENCY_ACCESS_GRANTED = "EMERGENCY_ACCESS_GRANTED"
    EMERGENCY_ACCESS_ENDED = "EMERGENCY_ACCESS_ENDED"
    EMERGENCY_NOTIFICATION = "EMERGENCY_NOTIFICATION"

    # Clinical review
    REVIEW_OPENED = "REVIEW_OPENED"
    REVIEW_ASSIGNED = "REVIEW_ASSIGNED"
    REVIEW_APPROVED = "REVIEW_APPROVED"
    REVIEW_REJECTED = "REVIEW_REJECTED"

    # Failures
    SYSTEM_ERROR = "SYSTEM_ERROR"

    # Audit operations
    AUDIT_ARCHIVED = "AUDIT_ARCHIVED"
    AUDIT_EXPORTED = "AUDIT_EXPORTED"

    # Policy management
    POLICY_REGISTERED = "POLICY_REGISTERED"
    POLICY_UPDATED = "POLICY_UPDATED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEntry(BaseModel):
    """A single audit ledger entry.

    Records who did what to which subject, when, under which tenant, and the
    conflicts observed while doing it.  ``sequence``, ``previous_hash`` and
    ``archived`` are assigned by the store.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this audit entry (UUID).",
    )
    tenant_id: str = Field(
        ...,
        description="Tenant identifier -- scopes this entry for isolation.",
    )
    actor_id: str = Field(..., description="Identifier of the acting principal.")
    actor_role: str = Field(default="USER", description="Role of the actor at the time of the event.")
    subject_id: str = Field(default="", description="Subject whose data was touched, if any.")
    event_type: AuditEventType
    action: AuditAction = AuditAction.VIEW
    resource: str = Field(default="", description="Resource kind, e.g. 'health_profile'.")
    resource_id: str = Field(default="", description="Identifier of the resource instance.")
    timestamp: datetime = Field(default_factory=_utcnow)
    ip_address: str = Field(
        default="unknown",
        description="Client-supplied; forensic only, never an access-control input.",
    )
    user_agent: str = Field(
        default="unknown",
        description="Client-supplied; forensic only, never an access-control input.",
    )
    justification: str = ""
    compliance_flags: list[str] = Field(default_factory=list)
    conflicts_observed: list[Conflict] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    # Store-assigned
    sequence: int = Field(default=0, description="Insertion order assigned by the store.")
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry.  Empty for the first entry.",
    )
    archived: bool = Field(default=False, description="True once moved to the archive store.")

    def canonical_bytes(self) -> bytes:
        """Return a deterministic byte representation for hashing.

        ``archived`` is excluded so that archival does not break the chain.
        """
        data = self.model_dump(mode="json", exclude={"archived"})
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        """Compute the SHA-256 hash of this entry's canonical representation."""
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


class EmergencyAccessLog(BaseModel):
    """Dedicated break-glass record.  Cannot be amended or archived."""

    model_config = ConfigDict(frozen=True)

    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    grant_id: str
    tenant_id: str
    actor_id: str
    subject_id: str
    reason: str
    granted_at: datetime
    expires_at: datetime
    scope: AccessScope = AccessScope.CRITICAL_INFO_ONLY
    data_categories: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# PHI redaction patterns
# ---------------------------------------------------------------------------

_PHI_PATTERNS: dict[str, re.Pattern] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"),
}

# Keys whose values are always withheld from exports.
_PHI_KEYS = {"name", "full_name", "first_name", "last_name", "display_name",
             "contact_name", "provider_name", "dob", "date_of_birth", "ssn",
             "email", "phone", "address", "zip_code"}


def redact_phi_from_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Strip fields matching PHI patterns from metadata before export.

    Args:
        metadata: The original metadata dictionary.

    Returns:
        A new dictionary with PHI-matching fields replaced by ``[REDACTED]``
        markers.  Nested dictionaries and lists are redacted recursively.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _PHI_KEYS:
            redacted[key] = "[REDACTED]"
        else:
            redacted[key] = _redact_value(value)
    return redacted


def _redact_value(value: Any) -> Any:
    if isinstance(value, str):
        for pattern_name, pattern in _PHI_PATTERNS.items():
            value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", value)
        return value
    if isinstance(value, dict):
        return redact_phi_from_metadata(value)
    if isinstance(value, list):
        return [_redact_value(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class InMemoryAuditStore:
    """Backing store for the ledger.

    ``insert`` is atomic: it assigns the sequence number and chain link and
    appends in one step.  There are no update or delete methods.  The only
    mutation of stored rows is ``move_to_archive``, a conditional move keyed
    by timestamp.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: list[AuditEntry] = []
        self._archive: list[AuditEntry] = []
        self._emergency: list[EmergencyAccessLog] = []
        self._last_hash = ""
        self._next_sequence = 1

    def insert(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            stored = entry.model_copy(update={
                "sequence": self._next_sequence,
                "previous_hash": self._last_hash,
                "archived": False,
            })
            self._active.append(stored)
            self._last_hash = stored.compute_hash()
            self._next_sequence += 1
        return stored

    def insert_emergency(self, log: EmergencyAccessLog) -> EmergencyAccessLog:
        with self._lock:
            self._emergency.append(log)
        return log

    def move_to_archive(self, cutoff: datetime, tenant_id: Optional[str] = None) -> int:
        """Move active entries older than ``cutoff`` to the archive.

        Returns:
            Number of entries moved.  Zero on a re-run.
        """
        with self._lock:
            keep: list[AuditEntry] = []
            moved = 0
            for entry in self._active:
                if entry.timestamp < cutoff and (tenant_id is None or entry.tenant_id == tenant_id):
                    self._archive.append(entry.model_copy(update={"archived": True}))
                    moved += 1
                else:
                    keep.append(entry)
            self._active = keep
        return moved

    def active_entries(self) -> list[AuditEntry]:
        with self._lock:
            return list(self._active)

    def archived_entries(self) -> list[AuditEntry]:
        with self._lock:
            return list(self._archive)

    def emergency_logs(self) -> list[EmergencyAccessLog]:
        with self._lock:
            return list(self._emergency)

    def tenants(self) -> set[str]:
        with self._lock:
            return {e.tenant_id for e in self._active}


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

def retention_cutoff(now: datetime, years: int) -> datetime:
    """Return ``now`` minus ``years`` calendar years."""
    try:
        return now.replace(year=now.year - years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return now.replace(year=now.year - years, day=28)


class AuditLedger:
    """Append-only audit ledger over an ``InMemoryAuditStore``.

    This class provides:

    * **Never-failing writes** -- ``record()`` retries store failures and
      parks the entry on the pending queue when retries are exhausted.
    * **Hash chain verification** across active and archived entries.
    * **Tenant-scoped queries** ordered by timestamp, then insertion order.
    * **PHI redaction on export**.
    """

    def __init__(
        self,
        store: Optional[InMemoryAuditStore] = None,
        retry_attempts: int = 3,
        retry_wait_seconds: float = 0.05,
    ) -> None:
        self._store = store if store is not None else InMemoryAuditStore()
        self._retry_attempts = retry_attempts
        self._retry_wait_seconds = retry_wait_seconds
        self._pending: list[AuditEntry] = []
        self._pending_lock = threading.Lock()

    @property
    def store(self) -> InMemoryAuditStore:
        return self._store

    def _insert_with_retry(self, entry: AuditEntry) -> AuditEntry:
        retryer = Retrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_fixed(self._retry_wait_seconds),
            retry=retry_if_exception_type(AuditWriteError),
            reraise=True,
        )
        return retryer(self._store.insert, entry)

    def record(self, entry: AuditEntry) -> AuditEntry:
        """Append an entry.  Never raises.

        Args:
            entry: The audit entry to record.

        Returns:
            The stored entry with store-assigned fields populated, or the
            original entry if it was parked on the pending queue.
        """
        try:
            stored = self._insert_with_retry(entry)
        except Exception as exc:
            with self._pending_lock:
                self._pending.append(entry)
                pending = len(self._pending)
            logger.error(
                "audit_write_failed",
                entry_id=entry.entry_id,
                tenant_id=entry.tenant_id,
                event_type=entry.event_type.value,
                error=repr(exc),
                pending=pending,
            )
            return entry
        logger.debug(
            "audit_recorded",
            entry_id=stored.entry_id,
            tenant_id=stored.tenant_id,
            event_type=stored.event_type.value,
            sequence=stored.sequence,
        )
        return stored

    def flush_pending(self) -> int:
        """Retry parked entries in order.  Stops at the first failure.

        Returns:
            Number of entries written.
        """
        written = 0
        with self._pending_lock:
            while self._pending:
                entry = self._pending[0]
                try:
                    self._insert_with_retry(entry)
                except Exception as exc:
                    logger.error(
                        "audit_flush_failed",
                        entry_id=entry.entry_id,
                        error=repr(exc),
                        pending=len(self._pending),
                    )
                    break
                self._pending.pop(0)
                written += 1
        if written:
            logger.info("audit_pending_flushed", written=written)
        return written

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    @property
    def fully_compliant(self) -> bool:
        """False while any audit entry is waiting on the fail-safe queue."""
        return self.pending_count == 0

    # -- Queries ------------------------------------------------------------

    def query(
        self,
        tenant_id: str,
        subject_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        actor_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
        include_archived: bool = False,
    ) -> list[AuditEntry]:
        """Query audit entries for one tenant.

        Args:
            tenant_id: Required.  Only entries for this tenant are returned.
            subject_id: Optional filter by subject.
            event_type: Optional filter by event type.
            actor_id: Optional filter by actor.
            time_start: Optional inclusive start time.
            time_end: Optional inclusive end time.
            include_archived: Also search the archive store.

        Returns:
            Matching entries ordered by timestamp, then insertion sequence.
        """
        source = self._store.active_entries()
        if include_archived:
            source = self._store.archived_entries() + source

        results = []
        for entry in source:
            if entry.tenant_id != tenant_id:
                continue
            if subject_id is not None and entry.subject_id != subject_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            results.append(entry.model_copy(deep=True))
        results.sort(key=lambda e: (e.timestamp, e.sequence))
        return results

    # -- Break-glass --------------------------------------------------------

    def record_emergency(self, log: EmergencyAccessLog) -> EmergencyAccessLog:
        """Write a break-glass log.  Raises if the store rejects it.

        Raises:
            AuditWriteError: If the log cannot be persisted after retries.
        """
        retryer = Retrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_fixed(self._retry_wait_seconds),
            retry=retry_if_exception_type(AuditWriteError),
            reraise=True,
        )
        stored = retryer(self._store.insert_emergency, log)
        logger.warning(
            "break_glass_logged",
            log_id=log.log_id,
            tenant_id=log.tenant_id,
            actor_id=log.actor_id,
            subject_id=log.subject_id,
        )
        return stored

    def emergency_logs(
        self,
        tenant_id: str,
        subject_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> list[EmergencyAccessLog]:
        logs = [
            log for log in self._store.emergency_logs()
            if log.tenant_id == tenant_id
            and (subject_id is None or log.subject_id == subject_id)
            and (since is None or log.granted_at >= since)
        ]
        return sorted(logs, key=lambda log: log.granted_at)

    # -- Retention ----------------------------------------------------------

    def archive_expired(
        self,
        now: Optional[datetime] = None,
        retention_years: int = MIN_AUDIT_RETENTION_YEARS,
        tenant_id: Optional[str] = None,
    ) -> int:
        """Move entries past the retention horizon to the archive.

        Each tenant whose entries were moved gets an AUDIT_ARCHIVED entry
        with the count.  Safe to re-run.

        Returns:
            Number of entries moved.
        """
        now = now or _utcnow()
        cutoff = retention_cutoff(now, retention_years)
        tenants = [tenant_id] if tenant_id is not None else sorted(self._store.tenants())

        total = 0
        for tenant in tenants:
            moved = self._store.move_to_archive(cutoff, tenant_id=tenant)
            if not moved:
                continue
            total += moved
            self.record(AuditEntry(
                tenant_id=tenant,
                actor_id="SYSTEM",
                actor_role="SYSTEM",
                event_type=AuditEventType.AUDIT_ARCHIVED,
                action=AuditAction.UPDATE,
                resource="audit_log",
                metadata={
                    "archived_count": moved,
                    "cutoff": cutoff.isoformat(),
                    "retention_years": retention_years,
                },
            ))
        logger.info("audit_archive_sweep", moved=total, cutoff=cutoff.isoformat())
        return total

    # -- Integrity ----------------------------------------------------------

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk archived and active entries in sequence order.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the sequence number
            of the first broken link, or None if the chain is intact.
        """
        entries = sorted(
            self._store.archived_entries() + self._store.active_entries(),
            key=lambda e: e.sequence,
        )
        previous_hash = ""
        for expected_sequence, entry in enumerate(entries, start=1):
            if entry.sequence != expected_sequence:
                return (False, entry.sequence)
            if entry.previous_hash != previous_hash:
                return (False, entry.sequence)
            previous_hash = entry.compute_hash()
        return (True, None)

    def export_for_review(
        self,
        tenant_id: str,
        subject_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable compliance bundle for one tenant.

        Includes archived entries and all break-glass logs in the window.
        Metadata is PHI-redacted.  The export is read-only and does not
        record itself; callers audit the export.
        """
        entries = self.query(
            tenant_id,
            subject_id=subject_id,
            time_start=time_start,
            time_end=time_end,
            include_archived=True,
        )
        redacted_entries = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_phi_from_metadata(entry.metadata)
            redacted_entries.append(entry_dict)

        logs = [
            log.model_dump(mode="json")
            for log in self.emergency_logs(tenant_id, subject_id=subject_id, since=time_start)
            if time_end is None or log.granted_at <= time_end
        ]

        chain_valid, broken_at = self.verify_chain()
        return {
            "export_metadata": {
                "tenant_id": tenant_id,
                "subject_id": subject_id,
                "exported_at": _utcnow().isoformat(),
                "entry_count": len(redacted_entries),
                "emergency_log_count": len(logs),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_SEQUENCE_{broken_at}",
                "fully_compliant": self.fully_compliant,
                "pending_writes": self.pending_count,
            },
            "entries": redacted_entries,
            "emergency_access_logs": logs,
        }

    def __len__(self) -> int:
        return len(self._store.active_entries()) + len(self._store.archived_entries())
