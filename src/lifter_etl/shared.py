"""lifter_etl.shared

Shared contracts used by the resolver, the stores and the batch runner.
Includes the error taxonomy, the Person / Auxiliary data contracts,
RunCounters, RejectWriter and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class InvalidInputError(ValueError):
    """Raised when a record cannot be resolved because its input is malformed.

    Empty or whitespace-only names, non-positive external ids and
    out-of-range birth years.  Never falls through to Person creation.
    """


class StoreUnavailableError(Exception):
    """Raised when the Person or Participation store cannot be reached."""


class VerificationUnavailableError(Exception):
    """Raised when the external verification source cannot answer.

    Soft failure: the resolver degrades to the next disambiguation tier.
    """


class ExternalIdTakenError(Exception):
    """Raised by a store when a write collides with another Person's external id."""

    def __init__(self, external_id: int, message: str | None = None) -> None:
        super().__init__(message or f"external_id {external_id} already assigned")
        self.external_id = external_id


# ---------------------------------------------------------------------------
# Data contracts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Person:
    """A unique athlete as held by the Person Store."""

    person_id: int
    display_name: str
    external_id: int | None = None
    secondary_external_id: int | None = None
    birth_year: int | None = None
    country_code: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def holds_external_id(self, external_id: int) -> bool:
        return external_id in (self.external_id, self.secondary_external_id)

    @property
    def has_free_external_id_slot(self) -> bool:
        return self.external_id is None or self.secondary_external_id is None


@dataclass(frozen=True)
class CompetitionContext:
    """Where and when the incoming result was recorded.

    Used only for verification, never for matching.
    """

    competition_id: str | None = None
    date: date | None = None
    category: str | None = None
    weight_class: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.competition_id is None and self.date is None


@dataclass(frozen=True)
class Auxiliary:
    """Optional signals accompanying a scraped name.  None means unknown."""

    external_id: int | None = None
    birth_year: int | None = None
    country_code: str | None = None
    competition: CompetitionContext = field(default_factory=CompetitionContext)

    def to_dict(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "birth_year": self.birth_year,
            "country_code": self.country_code,
            "competition_id": self.competition.competition_id,
            "competition_date": (
                self.competition.date.isoformat() if self.competition.date else None
            ),
            "category": self.competition.category,
            "weight_class": self.competition.weight_class,
        }


# ---------------------------------------------------------------------------
# CSV helpers
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[str, str]) -> dict[str, str]:
    """Return a new dict with header keys whitespace-stripped."""
    return {k.strip(): v for k, v in raw.items() if k is not None}


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Batch rows
    rows_read: int = 0
    rows_resolved: int = 0
    rows_rejected: int = 0
    store_errors: int = 0
    # Resolution outcomes
    persons_created: int = 0
    persons_matched_existing: int = 0
    persons_enriched: int = 0
    duplicates_prevented: int = 0
    conflicts_recorded: int = 0
    # Verification
    verification_calls: int = 0
    verification_unavailable: int = 0
    verification_not_found: int = 0
    strategies: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def count_strategy(self, strategy: str) -> None:
        self.strategies[strategy] = self.strategies.get(strategy, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "rows_resolved": self.rows_resolved,
            "rows_rejected": self.rows_rejected,
            "store_errors": self.store_errors,
            "persons_created": self.persons_created,
            "persons_matched_existing": self.persons_matched_existing,
            "persons_enriched": self.persons_enriched,
            "duplicates_prevented": self.duplicates_prevented,
            "conflicts_recorded": self.conflicts_recorded,
            "verification_calls": self.verification_calls,
            "verification_unavailable": self.verification_unavailable,
            "verification_not_found": self.verification_not_found,
            "strategies": dict(sorted(self.strategies.items())),
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
    policy: dict[str, Any] | None = None,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "policy": policy or {},
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
