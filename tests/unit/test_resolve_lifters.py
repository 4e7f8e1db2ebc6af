"""Unit tests for row parsing and output writing in lifter_etl.resolve_lifters."""

from __future__ import annotations

import csv
from datetime import date

import pytest

from lifter_etl.resolve_lifters import ResolvedWriter, parse_result_row
from lifter_etl.resolver import Resolution
from lifter_etl.shared import InvalidInputError, Person


def _row(**overrides) -> dict[str, str]:
    row = {
        "athlete_name": "Jane Doe",
        "external_id": "38184",
        "birth_year": "1998",
        "country_code": "(usa)",
        "competition_id": "meet-7011",
        "competition_date": "Mar 09, 2024",
        "category": "Open  Women",
        "weight_class": "356",
    }
    row.update(overrides)
    return row


class TestParseResultRow:
    def test_full_row(self):
        item = parse_result_row(_row(), 2)
        assert item.name == "Jane Doe"
        assert item.auxiliary.external_id == 38184
        assert item.auxiliary.birth_year == 1998
        assert item.auxiliary.country_code == "USA"
        assert item.auxiliary.competition.competition_id == "meet-7011"
        assert item.auxiliary.competition.date == date(2024, 3, 9)
        assert item.auxiliary.competition.category == "Open Women"
        assert item.auxiliary.competition.weight_class == "356"

    def test_optional_columns_absent(self):
        item = parse_result_row({"athlete_name": "Jane Doe"}, 2)
        assert item.auxiliary.external_id is None
        assert item.auxiliary.competition.is_empty

    def test_name_whitespace_collapsed_not_reordered(self):
        assert parse_result_row(_row(athlete_name=" WANG   Hao "), 2).name == "WANG Hao"

    def test_member_url_external_id(self):
        item = parse_result_row(_row(external_id="/public/rankings/member/40001"), 2)
        assert item.auxiliary.external_id == 40001

    @pytest.mark.parametrize("overrides, reason", [
        ({"athlete_name": "  "}, "blank_athlete_name"),
        ({"external_id": "abc"}, "invalid_external_id"),
        ({"external_id": "0"}, "invalid_external_id"),
        ({"birth_year": "1850"}, "invalid_birth_year"),
        ({"competition_date": "someday"}, "invalid_competition_date"),
    ])
    def test_rejects(self, overrides, reason):
        with pytest.raises(InvalidInputError, match=reason):
            parse_result_row(_row(**overrides), 2)


class TestResolvedWriter:
    def test_appends_resolution_columns(self, tmp_path):
        path = tmp_path / "out" / "resolved.csv"
        writer = ResolvedWriter(path)
        writer.write({"athlete_name": "Jane Doe"}, Resolution(Person(7, "Jane Doe"), "name", 0.8))
        writer.close()
        with path.open(encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert rows == [{
            "athlete_name": "Jane Doe",
            "person_id": "7",
            "strategy": "name",
            "confidence": "0.80",
            "created": "false",
        }]

    def test_no_path_writes_nothing(self, tmp_path):
        writer = ResolvedWriter(None)
        writer.write({"athlete_name": "x"}, Resolution(Person(1, "x"), "name", 0.8))
        writer.close()
        assert list(tmp_path.iterdir()) == []
