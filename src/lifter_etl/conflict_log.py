"""lifter_etl.conflict_log

Append-only audit trail of identity ambiguities detected by the resolver.

Conflicts never block a resolution and are never read back by the resolver.
Sinks:
  - PostgresConflictLog  — rows in identity_conflict, tagged with the run id
  - CsvConflictLog       — lazy-open CSV file (same manner as RejectWriter)
  - MemoryConflictLog    — list-backed, for tests and dry runs
Every sink also emits the conflict as a WARNING.
"""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import psycopg
from psycopg.types.json import Jsonb

from lifter_etl.shared import StoreUnavailableError

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Reasons
# ---------------------------------------------------------------------------

EXTERNAL_ID_NAME_MISMATCH = "external_id_name_mismatch"
DUPLICATE_EXTERNAL_ID = "duplicate_external_id"
EXTERNAL_ID_SLOTS_FULL = "external_id_slots_full"
ENRICHMENT_BLOCKED = "enrichment_blocked"
DISAMBIGUATION_FAILED = "disambiguation_failed"
MULTIPLE_BIRTH_YEARS = "multiple_birth_years"

VALID_REASONS = frozenset({
    EXTERNAL_ID_NAME_MISMATCH,
    DUPLICATE_EXTERNAL_ID,
    EXTERNAL_ID_SLOTS_FULL,
    ENRICHMENT_BLOCKED,
    DISAMBIGUATION_FAILED,
    MULTIPLE_BIRTH_YEARS,
})


@dataclass(frozen=True)
class ConflictRecord:
    reason: str
    incoming_name: str
    supplied: dict[str, Any] = field(default_factory=dict)
    candidate_person_ids: list[int] = field(default_factory=list)
    chosen_person_id: int | None = None
    detail: str = ""

    def __post_init__(self) -> None:
        if self.reason not in VALID_REASONS:
            raise ValueError(f"unknown conflict reason {self.reason!r}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "incoming_name": self.incoming_name,
            "supplied": dict(self.supplied),
            "candidate_person_ids": list(self.candidate_person_ids),
            "chosen_person_id": self.chosen_person_id,
            "detail": self.detail,
        }


class ConflictLog(Protocol):
    def record(self, conflict: ConflictRecord) -> None:
        ...


def _emit(conflict: ConflictRecord) -> None:
    log.warning(
        "identity conflict %s: name=%r candidates=%s chosen=%s %s",
        conflict.reason,
        conflict.incoming_name,
        conflict.candidate_person_ids,
        conflict.chosen_person_id,
        conflict.detail,
    )


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class MemoryConflictLog:
    """Keeps conflicts in a list; `records` is in recording order."""

    def __init__(self) -> None:
        self.records: list[ConflictRecord] = []

    def __len__(self) -> int:
        return len(self.records)

    def record(self, conflict: ConflictRecord) -> None:
        _emit(conflict)
        self.records.append(conflict)

    def reasons(self) -> list[str]:
        return [c.reason for c in self.records]


class PostgresConflictLog:
    """Inserts conflicts into identity_conflict on the caller's connection."""

    def __init__(self, conn: psycopg.Connection, run_id: str) -> None:
        self._conn = conn
        self._run_id = run_id

    def record(self, conflict: ConflictRecord) -> None:
        _emit(conflict)
        try:
            self._conn.execute(
                """
                INSERT INTO identity_conflict
                  (run_id, reason, incoming_name, supplied,
                   candidate_person_ids, chosen_person_id, detail)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    self._run_id,
                    conflict.reason,
                    conflict.incoming_name,
                    Jsonb(conflict.supplied),
                    list(conflict.candidate_person_ids),
                    conflict.chosen_person_id,
                    conflict.detail,
                ),
            )
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            raise StoreUnavailableError(f"conflict log unavailable: {exc}") from exc


_CSV_FIELDS = [
    "reason",
    "incoming_name",
    "supplied",
    "candidate_person_ids",
    "chosen_person_id",
    "detail",
]


class CsvConflictLog:
    """Lazy-open CSV conflict file; nothing is created if no conflict occurs."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def record(self, conflict: ConflictRecord) -> None:
        _emit(conflict)
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._fh, fieldnames=_CSV_FIELDS)
            self._writer.writeheader()
        self._writer.writerow({
            "reason": conflict.reason,
            "incoming_name": conflict.incoming_name,
            "supplied": json.dumps(conflict.supplied, sort_keys=True, default=str),
            "candidate_person_ids": " ".join(str(i) for i in conflict.candidate_person_ids),
            "chosen_person_id": (
                "" if conflict.chosen_person_id is None else conflict.chosen_person_id
            ),
            "detail": conflict.detail,
        })
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
