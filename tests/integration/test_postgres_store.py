"""Integration tests for the PostgreSQL stores, conflict log and resolver.

These tests run against an ephemeral PostgreSQL database with the schema
applied via the db_conn fixture in conftest.py.
"""

from __future__ import annotations

import pytest

from lifter_etl.conflict_log import (
    DISAMBIGUATION_FAILED,
    MULTIPLE_BIRTH_YEARS,
    ConflictRecord,
    PostgresConflictLog,
)
from lifter_etl.person_store import PostgresParticipationStore, PostgresPersonStore
from lifter_etl.resolver import IdentityResolver
from lifter_etl.shared import (
    Auxiliary,
    ExternalIdTakenError,
    StoreUnavailableError,
)


def _seed_tigrans(store: PostgresPersonStore) -> tuple[int, int]:
    a = store.insert_person("Tigran Martirosyan", birth_year=1995, country_code="ARM")
    b = store.insert_person("Tigran Martirosyan", birth_year=2000, country_code="ARM")
    return a.person_id, b.person_id


# ---------------------------------------------------------------------------
# PostgresPersonStore
# ---------------------------------------------------------------------------

class TestPostgresPersonStore:
    def test_insert_and_find(self, db_conn):
        conn, _ = db_conn
        store = PostgresPersonStore(conn)
        person = store.insert_person("Jane Doe", external_id=38184, birth_year=1998, country_code="USA")
        assert person.person_id > 0
        assert person.created_at is not None

        assert store.find_by_external_id(38184) == [person]
        assert store.find_by_name("Jane Doe") == [person]
        assert store.find_by_name("jane doe") == []
        assert store.find_by_name_country_birth_year("Jane Doe", "USA", 1998) == [person]
        assert store.get_person(person.person_id) == person
        assert store.get_person(person.person_id + 100) is None

    def test_results_ordered_by_person_id(self, db_conn):
        conn, _ = db_conn
        store = PostgresPersonStore(conn)
        a, b = _seed_tigrans(store)
        assert [p.person_id for p in store.find_by_name("Tigran Martirosyan")] == [a, b]

    def test_duplicate_external_id_raises_and_connection_survives(self, db_conn):
        conn, _ = db_conn
        store = PostgresPersonStore(conn)
        store.insert_person("Jane Doe", external_id=38184)
        with pytest.raises(ExternalIdTakenError) as exc_info:
            store.insert_person("Other Jane", external_id=38184)
        assert exc_info.value.external_id == 38184
        assert len(store.find_by_name("Jane Doe")) == 1
        assert store.find_by_name("Other Jane") == []

    def test_fill_person_only_fills_nulls(self, db_conn):
        conn, _ = db_conn
        store = PostgresPersonStore(conn)
        person = store.insert_person("Sam Lee", birth_year=1990)
        filled = store.fill_person(
            person.person_id, external_id=9001, birth_year=2001, country_code="USA"
        )
        assert filled.external_id == 9001
        assert filled.birth_year == 1990
        assert filled.country_code == "USA"
        assert filled.updated_at >= person.updated_at

        second = store.fill_person(person.person_id, external_id=9002, secondary_external_id=9002)
        assert (second.external_id, second.secondary_external_id) == (9001, 9002)
        assert store.find_by_external_id(9002) == [second]

    def test_fill_secondary_without_primary_is_ignored(self, db_conn):
        conn, _ = db_conn
        store = PostgresPersonStore(conn)
        person = store.insert_person("Kim Park")
        filled = store.fill_person(person.person_id, secondary_external_id=77)
        assert filled.secondary_external_id is None

    def test_fill_taken_external_id(self, db_conn):
        conn, _ = db_conn
        store = PostgresPersonStore(conn)
        store.insert_person("Jane Doe", external_id=38184)
        other = store.insert_person("Kim Park")
        with pytest.raises(ExternalIdTakenError):
            store.fill_person(other.person_id, external_id=38184)
        assert store.get_person(other.person_id).external_id is None

    def test_secondary_slot_cannot_take_primary_of_another(self, db_conn):
        conn, _ = db_conn
        store = PostgresPersonStore(conn)
        holder = store.insert_person("Jane Doe", external_id=5)
        other = store.insert_person("Kim Park", external_id=6)
        with pytest.raises(ExternalIdTakenError) as exc_info:
            store.fill_person(other.person_id, secondary_external_id=5)
        assert exc_info.value.external_id == 5
        assert store.find_by_external_id(5) == [holder]
        assert store.get_person(other.person_id).secondary_external_id is None

    def test_primary_slot_cannot_take_secondary_of_another(self, db_conn):
        conn, _ = db_conn
        store = PostgresPersonStore(conn)
        holder = store.insert_person("Jane Doe", external_id=5)
        holder = store.fill_person(holder.person_id, secondary_external_id=7)
        with pytest.raises(ExternalIdTakenError):
            store.insert_person("Kim Park", external_id=7)
        assert store.find_by_external_id(7) == [holder]
        assert store.find_by_name("Kim Park") == []

    def test_rename(self, db_conn):
        conn, _ = db_conn
        store = PostgresPersonStore(conn)
        person = store.insert_person("Jane Doe", external_id=38184)
        renamed = store.rename_person(person.person_id, "Jane Q. Doe")
        assert renamed.display_name == "Jane Q. Doe"
        assert renamed.external_id == 38184

    def test_closed_connection_is_store_unavailable(self, db_conn):
        conn, _ = db_conn
        store = PostgresPersonStore(conn)
        conn.close()
        with pytest.raises(StoreUnavailableError):
            store.find_by_name("Jane Doe")


# ---------------------------------------------------------------------------
# PostgresParticipationStore
# ---------------------------------------------------------------------------

class TestPostgresParticipationStore:
    def test_has_participation(self, db_conn):
        conn, _ = db_conn
        person = PostgresPersonStore(conn).insert_person("Dana Cruz")
        conn.execute(
            "INSERT INTO participation (person_id, competition_id, weight_class) VALUES (%s, %s, %s)",
            (person.person_id, "meet-7011", "356"),
        )
        participation = PostgresParticipationStore(conn)
        assert participation.has_participation(person.person_id, "meet-7011")
        assert not participation.has_participation(person.person_id, "meet-1")


# ---------------------------------------------------------------------------
# PostgresConflictLog
# ---------------------------------------------------------------------------

class TestPostgresConflictLog:
    def test_record(self, db_conn):
        conn, _ = db_conn
        PostgresConflictLog(conn, "run-abc").record(ConflictRecord(
            reason=MULTIPLE_BIRTH_YEARS,
            incoming_name="Tigran Martirosyan",
            supplied={"country_code": "ARM"},
            candidate_person_ids=[1, 2],
            detail="ARM candidates carry birth years [1995, 2000]; none supplied",
        ))
        row = conn.execute(
            "SELECT run_id, reason, supplied, candidate_person_ids, chosen_person_id "
            "FROM identity_conflict"
        ).fetchone()
        assert row == ("run-abc", MULTIPLE_BIRTH_YEARS, {"country_code": "ARM"}, [1, 2], None)

    def test_empty_candidates(self, db_conn):
        conn, _ = db_conn
        PostgresConflictLog(conn, "run-abc").record(ConflictRecord(
            reason=DISAMBIGUATION_FAILED, incoming_name="X",
        ))
        row = conn.execute("SELECT candidate_person_ids FROM identity_conflict").fetchone()
        assert row == ([],)


# ---------------------------------------------------------------------------
# Resolver end-to-end on PostgreSQL
# ---------------------------------------------------------------------------

class TestResolverOnPostgres:
    def test_tigran_disambiguation(self, db_conn):
        conn, _ = db_conn
        store = PostgresPersonStore(conn)
        _, born_2000 = _seed_tigrans(store)
        resolver = IdentityResolver(store, PostgresConflictLog(conn, "run-1"))

        assert resolver.resolve(
            "Tigran Martirosyan", Auxiliary(birth_year=2000, country_code="ARM")
        ).person_id == born_2000

        created = resolver.resolve("Tigran Martirosyan", Auxiliary(country_code="ARM"))
        again = resolver.resolve("Tigran Martirosyan", Auxiliary(country_code="ARM"))
        assert again.person_id == created.person_id
        assert len(store.find_by_name("Tigran Martirosyan")) == 3

        reasons = sorted(r[0] for r in conn.execute("SELECT reason FROM identity_conflict").fetchall())
        assert reasons == [DISAMBIGUATION_FAILED, MULTIPLE_BIRTH_YEARS]

    def test_attaches_external_id(self, db_conn):
        conn, _ = db_conn
        store = PostgresPersonStore(conn)
        sam = store.insert_person("Sam Lee")
        resolver = IdentityResolver(store, PostgresConflictLog(conn, "run-1"))
        person = resolver.resolve("Sam Lee", Auxiliary(external_id=9001))
        assert person.person_id == sam.person_id
        assert store.get_person(sam.person_id).external_id == 9001
