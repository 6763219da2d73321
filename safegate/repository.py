"""
In-memory subject repository.

The persistence collaborator for subjects.  Committing a change appends new
``FactRecord`` entries to the subject's history; nothing is edited in place.
A database-backed repository implements the same three methods.
"""

from __future__ import annotations

import threading

import structlog

from safegate.models import FactRecord, ProposedChange, Subject

logger = structlog.get_logger(__name__)


class InMemorySubjectRepository:
    def __init__(self) -> None:
        self._subjects: dict[str, Subject] = {}
        self._lock = threading.Lock()

    def add(self, subject: Subject) -> Subject:
        with self._lock:
            if subject.subject_id in self._subjects:
                raise ValueError(f"Subject '{subject.subject_id}' already exists.")
            self._subjects[subject.subject_id] = subject.model_copy(deep=True)
        return subject

    def get(self, subject_id: str) -> Subject:
        """Return a copy of the subject.

        Raises:
            KeyError: If the subject does not exist.
        """
        with self._lock:
            if subject_id not in self._subjects:
                raise KeyError(f"No subject '{subject_id}'")
            return self._subjects[subject_id].model_copy(deep=True)

    def commit(self, subject_id: str, change: ProposedChange, actor_id: str) -> list[FactRecord]:
        """Append the change's facts to the subject's history.

        Ingredients are not clinical facts and are not recorded.

        Returns:
            The appended records.
        """
        records = [FactRecord(fact=fact, recorded_by=actor_id) for fact in change.facts()]
        with self._lock:
            if subject_id not in self._subjects:
                raise KeyError(f"No subject '{subject_id}'")
            subject = self._subjects[subject_id]
            self._subjects[subject_id] = subject.model_copy(
                update={"history": [*subject.history, *records]}
            )
        logger.info(
            "change_committed",
            subject_id=subject_id,
            record_count=len(records),
            recorded_by=actor_id,
        )
        return records
