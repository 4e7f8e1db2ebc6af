"""lifter_etl.resolve_lifters

Batch CLI: resolve every row of a scraped results CSV to a person_id.

Usage:
    lifter-resolve \\
        --db-dsn "$DB_DSN" \\
        --csv-path "scraped/meet_7011_results.csv" \\
        --output-path "artifacts/resolved/meet_7011_resolved.csv" \\
        --policy-file config/resolution_policy.yml

Input columns (header whitespace is stripped):
  athlete_name (required), external_id, birth_year, country_code,
  competition_id, competition_date, category, weight_class

Each row resolves inside its own savepoint.  Rows with malformed input go
to the rejects CSV and the batch continues.  Store failures are counted and
make the run exit non-zero.  --dry-run rolls every change back.
"""

from __future__ import annotations

import csv
import logging
import sys
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from lifter_etl.conflict_log import CsvConflictLog, PostgresConflictLog
from lifter_etl.normalize import (
    normalize_country_code,
    normalize_space,
    parse_birth_year,
    parse_date,
    parse_external_id,
    trim,
)
from lifter_etl.person_store import PostgresParticipationStore, PostgresPersonStore
from lifter_etl.resolution_policy import (
    PolicyValidationError,
    ResolutionPolicy,
    load_policy,
)
from lifter_etl.resolver import IdentityResolver, Resolution
from lifter_etl.shared import (
    Auxiliary,
    CompetitionContext,
    InvalidInputError,
    RejectWriter,
    RunCounters,
    StoreUnavailableError,
    normalize_headers,
    write_run_report,
)
from lifter_etl.verification import DEFAULT_BASE_URL, Sport80Verifier

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Column contracts
# ---------------------------------------------------------------------------

REQUIRED_HEADERS = {"athlete_name"}

OUTPUT_COLUMNS = ["person_id", "strategy", "confidence", "created"]


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------

@dataclass
class ResultRow:
    line_no: int
    row: dict[str, str]
    name: str
    auxiliary: Auxiliary


def parse_result_row(row: dict[str, str], line_no: int) -> ResultRow:
    """Parse one CSV row.  Raises InvalidInputError naming the bad column."""
    name = normalize_space(row.get("athlete_name"))
    if not name:
        raise InvalidInputError("blank_athlete_name")

    external_id = parse_external_id(row.get("external_id"))
    if trim(row.get("external_id")) and external_id is None:
        raise InvalidInputError("invalid_external_id")

    birth_year = parse_birth_year(row.get("birth_year"))
    if trim(row.get("birth_year")) and birth_year is None:
        raise InvalidInputError("invalid_birth_year")

    competition_date = parse_date(row.get("competition_date"))
    if trim(row.get("competition_date")) and competition_date is None:
        raise InvalidInputError("invalid_competition_date")

    return ResultRow(
        line_no=line_no,
        row=row,
        name=name,
        auxiliary=Auxiliary(
            external_id=external_id,
            birth_year=birth_year,
            country_code=normalize_country_code(row.get("country_code")),
            competition=CompetitionContext(
                competition_id=trim(row.get("competition_id")),
                date=competition_date,
                category=normalize_space(row.get("category")),
                weight_class=trim(row.get("weight_class")),
            ),
        ),
    )


def read_result_rows(
    csv_path: Path,
    run_id: str,
    counters: RunCounters,
    rejects: RejectWriter,
) -> list[ResultRow]:
    parsed: list[ResultRow] = []
    with csv_path.open(encoding="utf-8-sig") as fh:
        reader = csv.DictReader(fh)
        headers = {h.strip() for h in (reader.fieldnames or []) if h}
        missing = REQUIRED_HEADERS - headers
        if missing:
            click.echo(
                f"[{run_id}] FATAL: missing headers after trim: {sorted(missing)}",
                err=True,
            )
            sys.exit(1)

        for line_no, raw_row in enumerate(reader, start=2):
            row = normalize_headers(raw_row)
            counters.rows_read += 1
            try:
                parsed.append(parse_result_row(row, line_no))
            except InvalidInputError as exc:
                rejects.write(row, str(exc))
                counters.rows_rejected += 1
    return parsed


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

class ResolvedWriter:
    """Lazy-open CSV of input rows with the resolved person_id appended."""

    def __init__(self, path: Path | None) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, str], resolution: Resolution) -> None:
        if self._path is None:
            return
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = [k for k in row.keys() if k not in OUTPUT_COLUMNS] + OUTPUT_COLUMNS
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["person_id"] = resolution.person.person_id
        out["strategy"] = resolution.strategy
        out["confidence"] = f"{resolution.confidence:.2f}"
        out["created"] = "true" if resolution.created else "false"
        self._writer.writerow(out)

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# Per-row processing
# ---------------------------------------------------------------------------

def _process_row(
    resolver: IdentityResolver,
    item: ResultRow,
    writer: ResolvedWriter,
    counters: RunCounters,
) -> None:
    """Resolve one parsed row.  Caller manages transaction/savepoint."""
    resolution = resolver.resolve_detailed(item.name, item.auxiliary)
    counters.rows_resolved += 1
    log.debug("line %s resolved: %s", item.line_no, resolution.trace.summary())
    writer.write(item.row, resolution)


def _row_failed(
    item: ResultRow,
    exc: Exception,
    run_id: str,
    counters: RunCounters,
    rejects: RejectWriter,
) -> None:
    if isinstance(exc, InvalidInputError):
        rejects.write(item.row, str(exc))
    else:
        counters.store_errors += 1
        counters.warnings.append(f"line {item.line_no}: {exc}")
        rejects.write(item.row, f"store_error: {exc}")
        click.echo(f"[{run_id}] line {item.line_no}: store error: {exc}", err=True)
    counters.rows_rejected += 1


def _run_real(
    conn: psycopg.Connection,
    resolver: IdentityResolver,
    rows: list[ResultRow],
    run_id: str,
    counters: RunCounters,
    rejects: RejectWriter,
    writer: ResolvedWriter,
) -> None:
    for item in rows:
        try:
            with conn.transaction():
                _process_row(resolver, item, writer, counters)
        except (InvalidInputError, StoreUnavailableError, psycopg.Error) as exc:
            _row_failed(item, exc, run_id, counters, rejects)
            if conn.broken or conn.closed:
                click.echo(f"[{run_id}] FATAL: connection lost; stopping batch", err=True)
                break


def _run_dry(
    conn: psycopg.Connection,
    resolver: IdentityResolver,
    rows: list[ResultRow],
    run_id: str,
    counters: RunCounters,
    rejects: RejectWriter,
    writer: ResolvedWriter,
) -> None:
    conn.autocommit = False

    try:
        for idx, item in enumerate(rows):
            sp_name = f"row_{idx}"
            conn.execute(f"SAVEPOINT {sp_name}")
            try:
                _process_row(resolver, item, writer, counters)
                conn.execute(f"RELEASE SAVEPOINT {sp_name}")
            except (InvalidInputError, StoreUnavailableError, psycopg.Error) as exc:
                if conn.broken or conn.closed:
                    _row_failed(item, exc, run_id, counters, rejects)
                    click.echo(f"[{run_id}] FATAL: connection lost; stopping batch", err=True)
                    break
                conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
                counters.warnings.append(f"[dry-run] line {item.line_no}: {exc}")
                _row_failed(item, exc, run_id, counters, rejects)
    finally:
        if not conn.closed:
            conn.rollback()
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option("--csv-path", required=True, type=click.Path(exists=True, dir_okay=False), help="Scraped results CSV")
@click.option("--output-path", default=None, type=click.Path(), help="Write input rows + resolved person_id here")
@click.option(
    "--rejects-path",
    default="artifacts/rejects/lifter_resolve_rejects.csv",
    show_default=True,
    type=click.Path(),
)
@click.option("--policy-file", default=None, type=click.Path(exists=True, dir_okay=False), help="Resolution policy YAML")
@click.option(
    "--verify/--no-verify",
    default=True,
    show_default=True,
    help="Use Sport80 rankings lookups to disambiguate same-name athletes",
)
@click.option("--sport80-base-url", default=DEFAULT_BASE_URL, show_default=True)
@click.option("--conflicts-path", default=None, type=click.Path(), help="Write conflicts to CSV instead of identity_conflict")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
def main(
    db_dsn: str,
    csv_path: str,
    output_path: str | None,
    rejects_path: str,
    policy_file: str | None,
    verify: bool,
    sport80_base_url: str,
    conflicts_path: str | None,
    dry_run: bool,
    run_id: str | None,
    log_level: str,
) -> None:
    """Resolve scraped lifter results to person ids."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    counters = RunCounters()

    click.echo(f"[{run_id}] Starting lifter resolution run (dry_run={dry_run})")

    try:
        policy = load_policy(Path(policy_file)) if policy_file else ResolutionPolicy()
    except PolicyValidationError as exc:
        click.echo(f"[{run_id}] FATAL: invalid policy file: {exc}", err=True)
        sys.exit(1)

    rejects = RejectWriter(Path(rejects_path))
    writer = ResolvedWriter(Path(output_path) if output_path else None)
    csv_conflicts = CsvConflictLog(Path(conflicts_path)) if conflicts_path else None

    try:
        rows = read_result_rows(Path(csv_path), run_id, counters, rejects)
        click.echo(
            f"[{run_id}] Pre-scan: {counters.rows_read} rows read, "
            f"{counters.rows_rejected} rejected, {len(rows)} valid"
        )

        try:
            conn = psycopg.connect(db_dsn, autocommit=False)
        except psycopg.OperationalError as exc:
            click.echo(f"[{run_id}] FATAL: cannot connect to database: {exc}", err=True)
            sys.exit(1)

        try:
            verifier = None
            if verify and policy.verification_enabled:
                verifier = Sport80Verifier(
                    base_url=sport80_base_url,
                    timeout=policy.verification_timeout_seconds,
                    date_window_before_days=policy.date_window_before_days,
                    date_window_after_days=policy.date_window_after_days,
                )
            resolver = IdentityResolver(
                PostgresPersonStore(conn),
                csv_conflicts or PostgresConflictLog(conn, run_id),
                verifier=verifier,
                participation_store=PostgresParticipationStore(conn),
                policy=policy,
                counters=counters,
            )
            if dry_run:
                _run_dry(conn, resolver, rows, run_id, counters, rejects, writer)
            else:
                _run_real(conn, resolver, rows, run_id, counters, rejects, writer)
        finally:
            conn.close()
    finally:
        rejects.close()
        writer.close()
        if csv_conflicts is not None:
            csv_conflicts.close()

    click.echo(
        f"[{run_id}] Done: {counters.rows_resolved} resolved, "
        f"{counters.persons_created} created, "
        f"{counters.persons_matched_existing} matched, "
        f"{counters.conflicts_recorded} conflicts, "
        f"{counters.rows_rejected} rejected"
    )

    report_path = write_run_report(
        run_id,
        started_at,
        dry_run,
        {
            "csv_path": csv_path,
            "output_path": output_path,
            "conflicts_path": conflicts_path,
        },
        counters,
        policy=policy.to_dict(),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if counters.store_errors:
        click.echo(
            f"[{run_id}] {counters.store_errors} row(s) failed on store errors; exiting non-zero",
            err=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
