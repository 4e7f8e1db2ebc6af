"""Unit tests for lifter_etl.conflict_log (memory + CSV sinks)."""

from __future__ import annotations

import csv
import json
import logging
from unittest.mock import MagicMock

import pytest

from lifter_etl.conflict_log import (
    DISAMBIGUATION_FAILED,
    MULTIPLE_BIRTH_YEARS,
    ConflictRecord,
    CsvConflictLog,
    MemoryConflictLog,
    PostgresConflictLog,
)


def _record(**overrides) -> ConflictRecord:
    base = dict(
        reason=DISAMBIGUATION_FAILED,
        incoming_name="Tigran Martirosyan",
        supplied={"country_code": "ARM", "birth_year": None},
        candidate_person_ids=[1, 2],
        chosen_person_id=3,
        detail="2 same-name candidates; verification: verification not attempted",
    )
    base.update(overrides)
    return ConflictRecord(**base)


class TestConflictRecord:
    def test_unknown_reason_rejected(self):
        with pytest.raises(ValueError):
            _record(reason="looks_odd")

    def test_to_dict(self):
        d = _record().to_dict()
        assert d["reason"] == DISAMBIGUATION_FAILED
        assert d["candidate_person_ids"] == [1, 2]
        assert d["chosen_person_id"] == 3


class TestMemoryConflictLog:
    def test_records_in_order(self):
        sink = MemoryConflictLog()
        sink.record(_record(reason=MULTIPLE_BIRTH_YEARS, chosen_person_id=None))
        sink.record(_record())
        assert sink.reasons() == [MULTIPLE_BIRTH_YEARS, DISAMBIGUATION_FAILED]
        assert len(sink) == 2

    def test_emits_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="lifter_etl.conflict_log"):
            MemoryConflictLog().record(_record())
        assert "disambiguation_failed" in caplog.text
        assert "Tigran Martirosyan" in caplog.text


class TestCsvConflictLog:
    def test_lazy_open(self, tmp_path):
        path = tmp_path / "out" / "conflicts.csv"
        sink = CsvConflictLog(path)
        sink.close()
        assert not path.exists()

    def test_writes_rows(self, tmp_path):
        path = tmp_path / "out" / "conflicts.csv"
        sink = CsvConflictLog(path)
        sink.record(_record())
        sink.record(_record(reason=MULTIPLE_BIRTH_YEARS, chosen_person_id=None))
        sink.close()

        with path.open(encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert sink.count == 2
        assert [r["reason"] for r in rows] == [DISAMBIGUATION_FAILED, MULTIPLE_BIRTH_YEARS]
        assert rows[0]["candidate_person_ids"] == "1 2"
        assert rows[0]["chosen_person_id"] == "3"
        assert rows[1]["chosen_person_id"] == ""
        assert json.loads(rows[0]["supplied"]) == {"birth_year": None, "country_code": "ARM"}


class TestPostgresConflictLog:
    def test_inserts_with_run_id(self):
        conn = MagicMock()
        PostgresConflictLog(conn, "run-1").record(_record())
        sql, params = conn.execute.call_args[0]
        assert "INSERT INTO identity_conflict" in sql
        assert params[0] == "run-1"
        assert params[1] == DISAMBIGUATION_FAILED
        assert params[4] == [1, 2]
        assert params[5] == 3
