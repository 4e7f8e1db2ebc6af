"""Unit tests for the in-memory stores in lifter_etl.person_store."""

from __future__ import annotations

import pytest

from lifter_etl.person_store import MemoryParticipationStore, MemoryPersonStore
from lifter_etl.shared import ExternalIdTakenError, Person


@pytest.fixture
def store() -> MemoryPersonStore:
    s = MemoryPersonStore()
    s.add(Person(1, "Tigran Martirosyan", birth_year=1995, country_code="ARM"))
    s.add(Person(2, "Tigran Martirosyan", birth_year=2000, country_code="ARM"))
    s.add(Person(5, "Sam Lee", external_id=9001, secondary_external_id=9002))
    return s


class TestQueries:
    def test_find_by_name_ordered(self, store):
        assert [p.person_id for p in store.find_by_name("Tigran Martirosyan")] == [1, 2]

    def test_find_by_name_exact(self, store):
        assert store.find_by_name("tigran martirosyan") == []

    def test_find_by_external_id_either_slot(self, store):
        assert [p.person_id for p in store.find_by_external_id(9001)] == [5]
        assert [p.person_id for p in store.find_by_external_id(9002)] == [5]
        assert store.find_by_external_id(1) == []

    def test_find_by_name_country_birth_year(self, store):
        found = store.find_by_name_country_birth_year("Tigran Martirosyan", "ARM", 2000)
        assert [p.person_id for p in found] == [2]

    def test_get_person(self, store):
        assert store.get_person(5).display_name == "Sam Lee"
        assert store.get_person(99) is None


class TestWrites:
    def test_insert_assigns_next_id(self, store):
        person = store.insert_person("New Athlete")
        assert person.person_id == 6
        assert person.created_at is not None

    def test_insert_duplicate_external_id(self, store):
        with pytest.raises(ExternalIdTakenError) as exc_info:
            store.insert_person("Other", external_id=9002)
        assert exc_info.value.external_id == 9002

    def test_add_duplicate_person_id(self, store):
        with pytest.raises(ValueError):
            store.add(Person(1, "Someone"))

    def test_fill_only_nulls(self, store):
        person = store.insert_person("Kim Park", birth_year=1990)
        filled = store.fill_person(person.person_id, birth_year=2001, country_code="KOR")
        assert filled.birth_year == 1990
        assert filled.country_code == "KOR"

    def test_fill_secondary_requires_primary(self, store):
        person = store.insert_person("Kim Park")
        filled = store.fill_person(person.person_id, secondary_external_id=77)
        assert filled.secondary_external_id is None

    def test_fill_primary_and_secondary_together(self, store):
        person = store.insert_person("Kim Park")
        filled = store.fill_person(person.person_id, external_id=76, secondary_external_id=77)
        assert (filled.external_id, filled.secondary_external_id) == (76, 77)

    def test_fill_taken_external_id(self, store):
        person = store.insert_person("Kim Park")
        with pytest.raises(ExternalIdTakenError):
            store.fill_person(person.person_id, external_id=9001)
        assert store.get_person(person.person_id).external_id is None

    def test_fill_missing_person(self, store):
        with pytest.raises(LookupError):
            store.fill_person(99, birth_year=2000)

    def test_rename(self, store):
        renamed = store.rename_person(5, "Samuel Lee")
        assert renamed.display_name == "Samuel Lee"
        assert renamed.external_id == 9001


class TestMemoryParticipationStore:
    def test_has_participation(self):
        p = MemoryParticipationStore()
        p.add(2, "meet-7011", "356")
        assert p.has_participation(2, "meet-7011")
        assert not p.has_participation(1, "meet-7011")
        assert not p.has_participation(2, "meet-1")

    def test_uniqueness_key(self):
        p = MemoryParticipationStore()
        p.add(2, "meet-7011", "356")
        p.add(2, "meet-7011", "364")
        with pytest.raises(ValueError):
            p.add(2, "meet-7011", "356")
