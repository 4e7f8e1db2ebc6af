"""lifter_etl.person_store

Person Store and Participation Store used by the identity resolver.

Two implementations of each:
  - Postgres*  — psycopg against the tables in migrations/*.sql.
                 The caller owns the connection and its transaction; writes
                 run inside conn.transaction() so a failed insert only rolls
                 back its own savepoint.
  - Memory*    — dict-backed, same contract and uniqueness rules.  Used by
                 unit tests and by callers that resolve without a database.

Store contract:
  - Equality filters only; every list result is ordered by person_id ASC.
  - fill_person is fill-nulls-only: it never overwrites a populated column.
  - A write that would give a second Person an external id already held in
    either slot raises ExternalIdTakenError.
  - Connection-level failures raise StoreUnavailableError.
"""

from __future__ import annotations

import dataclasses
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Protocol

import psycopg
from psycopg import errors as pg_errors

from lifter_etl.shared import (
    ExternalIdTakenError,
    Person,
    StoreUnavailableError,
)

# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

class PersonStore(Protocol):
    def find_by_external_id(self, external_id: int) -> list[Person]:
        """Persons holding external_id in either slot."""
        ...

    def find_by_name(self, name: str) -> list[Person]:
        ...

    def find_by_name_country_birth_year(
        self, name: str, country_code: str, birth_year: int
    ) -> list[Person]:
        ...

    def get_person(self, person_id: int) -> Person | None:
        ...

    def insert_person(
        self,
        display_name: str,
        external_id: int | None = None,
        birth_year: int | None = None,
        country_code: str | None = None,
    ) -> Person:
        ...

    def fill_person(
        self,
        person_id: int,
        *,
        display_name: str | None = None,
        external_id: int | None = None,
        secondary_external_id: int | None = None,
        birth_year: int | None = None,
        country_code: str | None = None,
    ) -> Person:
        ...

    def rename_person(self, person_id: int, display_name: str) -> Person:
        ...


class ParticipationStore(Protocol):
    def has_participation(self, person_id: int, competition_id: str) -> bool:
        ...


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

_PERSON_COLUMNS = (
    "person_id, display_name, external_id, secondary_external_id, "
    "birth_year, country_code, created_at, updated_at"
)

_EXTERNAL_ID_CONSTRAINTS = frozenset({
    "uq_person_external_id",
    "uq_person_secondary_external_id",
    "uq_person_external_id_any",
})


def _row_to_person(row: tuple) -> Person:
    return Person(
        person_id=int(row[0]),
        display_name=row[1] or "",
        external_id=row[2],
        secondary_external_id=row[3],
        birth_year=row[4],
        country_code=row[5],
        created_at=row[6],
        updated_at=row[7],
    )


@contextmanager
def _store_errors() -> Iterator[None]:
    """Translate connection-level psycopg failures into StoreUnavailableError."""
    try:
        yield
    except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
        raise StoreUnavailableError(f"person store unavailable: {exc}") from exc


class PostgresPersonStore:
    """Person Store over the `person` table."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _fetch_persons(self, sql: str, params: tuple) -> list[Person]:
        with _store_errors():
            rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_person(r) for r in rows]

    def find_by_external_id(self, external_id: int) -> list[Person]:
        return self._fetch_persons(
            f"""
            SELECT {_PERSON_COLUMNS} FROM person
            WHERE external_id = %s OR secondary_external_id = %s
            ORDER BY person_id ASC
            """,
            (external_id, external_id),
        )

    def find_by_name(self, name: str) -> list[Person]:
        return self._fetch_persons(
            f"SELECT {_PERSON_COLUMNS} FROM person WHERE display_name = %s ORDER BY person_id ASC",
            (name,),
        )

    def find_by_name_country_birth_year(
        self, name: str, country_code: str, birth_year: int
    ) -> list[Person]:
        return self._fetch_persons(
            f"""
            SELECT {_PERSON_COLUMNS} FROM person
            WHERE display_name = %s AND country_code = %s AND birth_year = %s
            ORDER BY person_id ASC
            """,
            (name, country_code, birth_year),
        )

    def get_person(self, person_id: int) -> Person | None:
        found = self._fetch_persons(
            f"SELECT {_PERSON_COLUMNS} FROM person WHERE person_id = %s",
            (person_id,),
        )
        return found[0] if found else None

    def _write_one(self, sql: str, params: dict, external_id: int | None) -> Person:
        """Run a single-row write under a savepoint, mapping external-id collisions."""
        try:
            with _store_errors():
                with self._conn.transaction():
                    row = self._conn.execute(sql, params).fetchone()
        except pg_errors.UniqueViolation as exc:
            if exc.diag.constraint_name in _EXTERNAL_ID_CONSTRAINTS:
                raise ExternalIdTakenError(external_id or 0, str(exc)) from exc
            raise
        if row is None:
            raise LookupError(f"person {params.get('person_id')} not found")
        return _row_to_person(row)

    def insert_person(
        self,
        display_name: str,
        external_id: int | None = None,
        birth_year: int | None = None,
        country_code: str | None = None,
    ) -> Person:
        return self._write_one(
            f"""
            INSERT INTO person (display_name, external_id, birth_year, country_code)
            VALUES (%(display_name)s, %(external_id)s, %(birth_year)s, %(country_code)s)
            RETURNING {_PERSON_COLUMNS}
            """,
            {
                "display_name": display_name,
                "external_id": external_id,
                "birth_year": birth_year,
                "country_code": country_code,
            },
            external_id,
        )

    def fill_person(
        self,
        person_id: int,
        *,
        display_name: str | None = None,
        external_id: int | None = None,
        secondary_external_id: int | None = None,
        birth_year: int | None = None,
        country_code: str | None = None,
    ) -> Person:
        return self._write_one(
            f"""
            UPDATE person SET
              display_name = CASE
                WHEN display_name = '' AND %(display_name)s::text IS NOT NULL
                  THEN %(display_name)s::text
                ELSE display_name
              END,
              external_id = COALESCE(external_id, %(external_id)s::bigint),
              secondary_external_id = CASE
                WHEN secondary_external_id IS NULL
                 AND COALESCE(external_id, %(external_id)s::bigint) IS NOT NULL
                  THEN %(secondary_external_id)s::bigint
                ELSE secondary_external_id
              END,
              birth_year = COALESCE(birth_year, %(birth_year)s::integer),
              country_code = COALESCE(country_code, %(country_code)s::text),
              updated_at = now()
            WHERE person_id = %(person_id)s
            RETURNING {_PERSON_COLUMNS}
            """,
            {
                "person_id": person_id,
                "display_name": display_name,
                "external_id": external_id,
                "secondary_external_id": secondary_external_id,
                "birth_year": birth_year,
                "country_code": country_code,
            },
            external_id or secondary_external_id,
        )

    def rename_person(self, person_id: int, display_name: str) -> Person:
        return self._write_one(
            f"""
            UPDATE person SET display_name = %(display_name)s, updated_at = now()
            WHERE person_id = %(person_id)s
            RETURNING {_PERSON_COLUMNS}
            """,
            {"person_id": person_id, "display_name": display_name},
            None,
        )


class PostgresParticipationStore:
    """Read-only view of the `participation` table."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def has_participation(self, person_id: int, competition_id: str) -> bool:
        with _store_errors():
            row = self._conn.execute(
                """
                SELECT 1 FROM participation
                WHERE person_id = %s AND competition_id = %s
                LIMIT 1
                """,
                (person_id, competition_id),
            ).fetchone()
        return row is not None


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class MemoryPersonStore:
    """Dict-backed Person Store with the same uniqueness rules as the table."""

    def __init__(self) -> None:
        self._persons: dict[int, Person] = {}
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._persons)

    def all(self) -> list[Person]:
        return [self._persons[k] for k in sorted(self._persons)]

    def add(self, person: Person) -> Person:
        """Seed a Person with an explicit person_id."""
        if person.person_id in self._persons:
            raise ValueError(f"person_id {person.person_id} already present")
        for eid in (person.external_id, person.secondary_external_id):
            if eid is not None:
                self._check_external_id_free(eid, person.person_id)
        self._persons[person.person_id] = person
        self._next_id = max(self._next_id, person.person_id + 1)
        return person

    def _check_external_id_free(self, external_id: int, owner_id: int | None) -> None:
        for p in self._persons.values():
            if p.person_id != owner_id and p.holds_external_id(external_id):
                raise ExternalIdTakenError(external_id)

    def _select(self, predicate) -> list[Person]:
        return [p for p in self.all() if predicate(p)]

    def find_by_external_id(self, external_id: int) -> list[Person]:
        return self._select(lambda p: p.holds_external_id(external_id))

    def find_by_name(self, name: str) -> list[Person]:
        return self._select(lambda p: p.display_name == name)

    def find_by_name_country_birth_year(
        self, name: str, country_code: str, birth_year: int
    ) -> list[Person]:
        return self._select(
            lambda p: p.display_name == name
            and p.country_code == country_code
            and p.birth_year == birth_year
        )

    def get_person(self, person_id: int) -> Person | None:
        return self._persons.get(person_id)

    def insert_person(
        self,
        display_name: str,
        external_id: int | None = None,
        birth_year: int | None = None,
        country_code: str | None = None,
    ) -> Person:
        if external_id is not None:
            self._check_external_id_free(external_id, None)
        now = datetime.now(timezone.utc)
        person = Person(
            person_id=self._next_id,
            display_name=display_name,
            external_id=external_id,
            birth_year=birth_year,
            country_code=country_code,
            created_at=now,
            updated_at=now,
        )
        self._persons[person.person_id] = person
        self._next_id += 1
        return person

    def fill_person(
        self,
        person_id: int,
        *,
        display_name: str | None = None,
        external_id: int | None = None,
        secondary_external_id: int | None = None,
        birth_year: int | None = None,
        country_code: str | None = None,
    ) -> Person:
        current = self._persons.get(person_id)
        if current is None:
            raise LookupError(f"person {person_id} not found")
        changes: dict = {}
        if not current.display_name and display_name:
            changes["display_name"] = display_name
        if current.external_id is None and external_id is not None:
            self._check_external_id_free(external_id, person_id)
            changes["external_id"] = external_id
        primary = changes.get("external_id", current.external_id)
        if (
            current.secondary_external_id is None
            and secondary_external_id is not None
            and primary is not None
        ):
            self._check_external_id_free(secondary_external_id, person_id)
            changes["secondary_external_id"] = secondary_external_id
        if current.birth_year is None and birth_year is not None:
            changes["birth_year"] = birth_year
        if current.country_code is None and country_code is not None:
            changes["country_code"] = country_code
        updated = dataclasses.replace(
            current, updated_at=datetime.now(timezone.utc), **changes
        )
        self._persons[person_id] = updated
        return updated

    def rename_person(self, person_id: int, display_name: str) -> Person:
        current = self._persons.get(person_id)
        if current is None:
            raise LookupError(f"person {person_id} not found")
        updated = dataclasses.replace(
            current, display_name=display_name, updated_at=datetime.now(timezone.utc)
        )
        self._persons[person_id] = updated
        return updated


class MemoryParticipationStore:
    """Set-backed Participation Store keyed by (competition, person, weight class)."""

    def __init__(self) -> None:
        self._keys: set[tuple[str, int, str]] = set()

    def add(self, person_id: int, competition_id: str, weight_class: str = "") -> None:
        key = (competition_id, person_id, weight_class)
        if key in self._keys:
            raise ValueError(
                f"duplicate participation: competition={competition_id!r} "
                f"person={person_id} weight_class={weight_class!r}"
            )
        self._keys.add(key)

    def has_participation(self, person_id: int, competition_id: str) -> bool:
        return any(c == competition_id and p == person_id for c, p, _ in self._keys)
