"""Unit tests for row materialization."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from bqsink.bigquery.client import SchemaField, TableMetadata
from bqsink.bigquery.rows import (
    ColumnNameError,
    InvalidValueError,
    RowMaterializer,
    resolve_column_name,
    validate_value,
    value_matches_type,
)
from bqsink.config.models import ColumnSpec

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _clock() -> datetime:
    return NOW


def _snapshot(*names: str) -> TableMetadata:
    return TableMetadata(schema=tuple(SchemaField(n, "STRING") for n in names), etag="e1")


DYNAMIC_COLUMNS = [
    {
        "name_from_id": {"prefix": "score_", "suffix_from_id": "gameId"},
        "type": "INTEGER",
        "value_from_id": "score",
    },
]


class TestResolveColumnName:
    def test_fixed_name_wins(self):
        col = ColumnSpec(name="a", type="STRING", value_from_id="x")
        assert resolve_column_name(col, {"x": "v"}) == "a"

    def test_dynamic_name(self):
        col = ColumnSpec(**DYNAMIC_COLUMNS[0])
        assert resolve_column_name(col, {"gameId": "round7"}) == "score_round7"

    def test_missing_suffix_field(self):
        col = ColumnSpec(**DYNAMIC_COLUMNS[0])
        with pytest.raises(ColumnNameError, match="not in event"):
            resolve_column_name(col, {})

    def test_non_string_suffix(self):
        col = ColumnSpec(**DYNAMIC_COLUMNS[0])
        with pytest.raises(ColumnNameError, match="must be a string"):
            resolve_column_name(col, {"gameId": 7})

    def test_empty_name(self):
        col = ColumnSpec(
            name_from_id={"suffix_from_id": "gameId"}, type="STRING", value_from_id="v"
        )
        with pytest.raises(ColumnNameError, match="empty"):
            resolve_column_name(col, {"gameId": ""})


class TestValidation:
    @pytest.mark.parametrize(
        ("type_tag", "value", "expected"),
        [
            ("STRING", "x", True),
            ("STRING", 1, False),
            ("INTEGER", 3, True),
            ("INT64", True, False),
            ("FLOAT", 3, True),
            ("FLOAT64", 1.5, True),
            ("NUMERIC", "1.5", False),
            ("BOOLEAN", False, True),
            ("BOOL", 0, False),
            ("BYTES", b"\x00", True),
            ("BYTES", "x", False),
            ("TIMESTAMP", NOW, True),
            ("TIMESTAMP", "2024-05-01", False),
            ("RECORD", {"a": 1}, True),
            ("STRING", None, True),
        ],
    )
    def test_value_matches_type(self, type_tag, value, expected):
        assert value_matches_type(type_tag, value) is expected

    def test_required_rejects_null(self):
        col = ColumnSpec(name="a", type="STRING", mode="REQUIRED", value_from_id="x")
        with pytest.raises(InvalidValueError, match="REQUIRED"):
            validate_value(col, None)

    def test_zero_timestamp_is_invalid(self):
        col = ColumnSpec(name="t", type="TIMESTAMP", value_from_id="x")
        with pytest.raises(InvalidValueError, match="invalid timestamp"):
            validate_value(col, datetime.min)

    def test_repeated_checks_each_element(self):
        col = ColumnSpec(name="t", type="TIMESTAMP", mode="REPEATED", value_from_id="x")
        validate_value(col, [NOW, NOW])
        validate_value(col, [])
        with pytest.raises(InvalidValueError, match="TIMESTAMP but value is str"):
            validate_value(col, [NOW, "2024-05-01"])
        with pytest.raises(InvalidValueError, match="invalid timestamp"):
            validate_value(col, [datetime.min])

    def test_repeated_rejects_null_element(self):
        col = ColumnSpec(name="n", type="INTEGER", mode="REPEATED", value_from_id="x")
        with pytest.raises(InvalidValueError, match="null element"):
            validate_value(col, [1, None])


class TestRowMaterializer:
    def test_fixed_columns_and_ingestion_time(self, make_table):
        materializer = RowMaterializer(make_table(), clock=_clock)
        batch = materializer.materialize([{"eventNameId": "login"}], _snapshot("eventName", "dateIngested"))

        assert len(batch.rows) == 1
        assert batch.rows[0].values == {"eventName": "login", "dateIngested": NOW}
        assert batch.new_columns == {}

    def test_absent_field_skips_column(self, make_table):
        table = make_table(
            [
                {"name": "a", "type": "STRING", "value_from_id": "a"},
                {"name": "b", "type": "STRING", "value_from_id": "b"},
            ]
        )
        batch = RowMaterializer(table).materialize([{"a": "x"}], _snapshot("a", "b"))
        assert batch.rows[0].values == {"a": "x"}

    def test_event_matching_no_column_yields_no_row(self, make_table):
        table = make_table([{"name": "a", "type": "STRING", "value_from_id": "a"}])
        batch = RowMaterializer(table).materialize(
            [{"other": 1}, {"a": "x"}], _snapshot("a")
        )
        assert [r.values for r in batch.rows] == [{"a": "x"}]
        assert batch.empty == 1
        assert batch.discarded == 0

    def test_rows_follow_event_order(self, make_table):
        table = make_table([{"name": "a", "type": "STRING", "value_from_id": "a"}])
        events = [{"a": str(i)} for i in range(5)]
        batch = RowMaterializer(table).materialize(events, _snapshot("a"))
        assert [r.values["a"] for r in batch.rows] == ["0", "1", "2", "3", "4"]

    def test_dynamic_column_reported_as_new(self, make_table):
        table = make_table(DYNAMIC_COLUMNS)
        batch = RowMaterializer(table).materialize(
            [{"gameId": "round7", "score": 42}], _snapshot()
        )
        assert batch.rows[0].values == {"score_round7": 42}
        assert list(batch.new_columns) == ["score_round7"]
        assert batch.new_columns["score_round7"].type == "INTEGER"

    def test_known_dynamic_column_not_new(self, make_table):
        table = make_table(DYNAMIC_COLUMNS)
        batch = RowMaterializer(table).materialize(
            [{"gameId": "round7", "score": 42}], _snapshot("score_round7")
        )
        assert batch.new_columns == {}

    def test_no_snapshot_reports_every_column_as_new(self, make_table):
        batch = RowMaterializer(make_table(), clock=_clock).materialize(
            [{"eventNameId": "login"}], None
        )
        assert set(batch.new_columns) == {"eventName", "dateIngested"}

    def test_unresolved_dynamic_name_drops_row_only(self, make_table):
        table = make_table(
            [{"name": "a", "type": "STRING", "value_from_id": "a"}, *DYNAMIC_COLUMNS]
        )
        events = [
            {"a": "kept"},
            {"a": "dropped", "score": 1},
            {"a": "also kept", "gameId": "r1", "score": 2},
        ]
        batch = RowMaterializer(table).materialize(events, _snapshot("a"))
        assert [r.values["a"] for r in batch.rows] == ["kept", "also kept"]
        assert batch.discarded == 1
        assert list(batch.new_columns) == ["score_r1"]

    def test_dropped_row_does_not_contribute_new_columns(self, make_table):
        table = make_table(
            [
                *DYNAMIC_COLUMNS,
                {"name": "n", "type": "INTEGER", "value_from_id": "n"},
            ],
            discard_invalid_data=True,
        )
        batch = RowMaterializer(table).materialize(
            [{"gameId": "r9", "score": 1, "n": "not an int"}], _snapshot("n")
        )
        assert batch.rows == []
        assert batch.new_columns == {}

    def test_invalid_values_kept_without_discard_mode(self, make_table):
        table = make_table([{"name": "n", "type": "INTEGER", "value_from_id": "n"}])
        batch = RowMaterializer(table).materialize([{"n": "x"}], _snapshot("n"))
        assert batch.rows[0].values == {"n": "x"}

    def test_discard_mode_drops_only_invalid_row(self, make_table):
        table = make_table(discard_invalid_data=True)
        events = [{"eventNameId": f"e{i}"} for i in range(4)]
        events.insert(2, {"eventNameId": 123})
        batch = RowMaterializer(table, clock=_clock).materialize(
            events, _snapshot("eventName", "dateIngested")
        )
        assert len(batch.rows) == 4
        assert batch.discarded == 1

    def test_discard_mode_drops_null_required(self, make_table):
        table = make_table(discard_invalid_data=True)
        batch = RowMaterializer(table, clock=_clock).materialize(
            [{"eventNameId": None}], _snapshot("eventName", "dateIngested")
        )
        assert batch.rows == []
        assert batch.discarded == 1

    def test_discard_mode_drops_absent_required(self, make_table):
        table = make_table(discard_invalid_data=True)
        batch = RowMaterializer(table, clock=_clock).materialize(
            [{"unrelated": 1}], _snapshot("eventName", "dateIngested")
        )
        assert batch.rows == []
        assert batch.discarded == 1

    def test_insert_id_copied(self, make_table):
        table = make_table(insert_id_from_id="eventId")
        batch = RowMaterializer(table, clock=_clock).materialize(
            [{"eventNameId": "login", "eventId": "abc-1"}], None
        )
        assert batch.rows[0].insert_id == "abc-1"

    def test_wrong_typed_insert_id_still_written(self, make_table):
        table = make_table(insert_id_from_id="eventId")
        batch = RowMaterializer(table, clock=_clock).materialize(
            [{"eventNameId": "login", "eventId": 17}], None
        )
        assert len(batch.rows) == 1
        assert batch.rows[0].insert_id is None

    def test_default_clock_is_utc(self, make_table):
        batch = RowMaterializer(make_table()).materialize([{"eventNameId": "x"}], None)
        assert batch.rows[0].values["dateIngested"].tzinfo is UTC

    def test_discard_mode_keeps_valid_repeated_values(self, make_table):
        table = make_table(
            [{"name": "tags", "type": "STRING", "mode": "REPEATED", "value_from_id": "tags"}],
            discard_invalid_data=True,
        )
        batch = RowMaterializer(table).materialize(
            [{"tags": ["a", "b"]}, {"tags": ["a", 1]}], _snapshot("tags")
        )
        assert [r.values for r in batch.rows] == [{"tags": ["a", "b"]}]
        assert batch.discarded == 1
