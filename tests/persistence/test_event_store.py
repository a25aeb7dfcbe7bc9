# EventStore テスト
"""
InMemoryEventStore / PostgresEventStore の単体テスト
"""

from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from experiment_engine.models.experiment import Exposure, OutcomeEvent
from experiment_engine.persistence.event_store import InMemoryEventStore, PostgresEventStore


NOW = datetime(2024, 1, 1, 12, 0)


def exposure(subject_id, variant_id, experiment_id="exp1"):
    return Exposure(experiment_id, subject_id, variant_id, NOW)


def outcome(subject_id, variant_id, metric="click", value=1.0, experiment_id="exp1"):
    return OutcomeEvent(experiment_id, subject_id, metric, value, NOW, variant_id)


# ============================================================================
# InMemoryEventStore
# ============================================================================


class TestInMemoryEventStore:
    """リストによる実装"""

    def test_duplicate_exposures_are_ignored(self):
        store = InMemoryEventStore()
        assert store.write_exposures([exposure("u1", "A"), exposure("u1", "B")]) == 1
        assert store.load_exposures("exp1") == {"u1": "A"}

    def test_load_aggregates(self):
        store = InMemoryEventStore()
        store.write_exposures([exposure("u1", "A"), exposure("u2", "A"), exposure("u3", "B")])
        store.write_outcomes([
            outcome("u1", "A", "revenue", 2.0),
            outcome("u2", "A", "revenue", 3.0),
            outcome("u3", "B", "click"),
            outcome("x", "A", experiment_id="other"),
        ])

        exposures, totals = store.load_aggregates("exp1")

        assert exposures == {"A": 2, "B": 1}
        assert totals == {
            ("A", "revenue"): (2, 5.0, 13.0),
            ("B", "click"): (1, 1.0, 1.0),
        }

    def test_outcomes_without_variant_are_skipped(self):
        store = InMemoryEventStore()
        store.write_outcomes([outcome("u1", None)])
        assert store.load_aggregates("exp1") == ({}, {})

    def test_load_converted(self):
        store = InMemoryEventStore()
        store.write_outcomes([
            outcome("u1", "A"),
            outcome("u1", "A"),
            outcome("u2", "B", "revenue", 4.0),
            outcome("u3", "B", experiment_id="exp2"),
        ])
        assert store.load_converted("exp1", ["click"]) == {("u1", "click")}
        assert store.load_converted("exp1", []) == set()


# ============================================================================
# PostgresEventStore
# ============================================================================


@pytest.fixture
def mock_cursor():
    """モックカーソル"""
    cursor = MagicMock()
    cursor.__enter__ = MagicMock(return_value=cursor)
    cursor.__exit__ = MagicMock(return_value=None)
    return cursor


@pytest.fixture
def mock_db(mock_cursor):
    """モックDB接続"""
    db = MagicMock()
    db.get_cursor = MagicMock(return_value=mock_cursor)
    return db


@pytest.fixture
def store(mock_db):
    return PostgresEventStore(mock_db)


class TestPostgresEventStore:
    """experiment_exposures / experiment_outcomes テーブル"""

    def test_write_exposures_uses_execute_values(self, store, mock_cursor):
        mock_cursor.rowcount = 2
        with patch("experiment_engine.persistence.event_store.execute_values") as execute_values:
            written = store.write_exposures([exposure("u1", "A"), exposure("u2", "B")])

        assert written == 2
        cursor, sql, rows = execute_values.call_args[0]
        assert cursor is mock_cursor
        assert "ON CONFLICT (experiment_id, subject_id) DO NOTHING" in sql
        assert rows == [("exp1", "u1", "A", NOW), ("exp1", "u2", "B", NOW)]

    def test_write_nothing(self, store, mock_db):
        assert store.write_exposures([]) == 0
        assert store.write_outcomes([outcome("u1", None)]) == 0
        mock_db.get_cursor.assert_not_called()

    def test_write_outcomes(self, store):
        with patch("experiment_engine.persistence.event_store.execute_values") as execute_values:
            written = store.write_outcomes([outcome("u1", "A", "revenue", 9.5)])

        assert written == 1
        rows = execute_values.call_args[0][2]
        assert rows == [("exp1", "u1", "A", "revenue", 9.5, NOW)]

    def test_load_aggregates(self, store, mock_cursor):
        mock_cursor.fetchall.side_effect = [
            [("A", 10), ("B", 12)],
            [("A", "click", 3, Decimal("3"), Decimal("3")), ("B", "revenue", 2, Decimal("5.5"), Decimal("15.25"))],
        ]

        exposures, totals = store.load_aggregates("exp1")

        assert exposures == {"A": 10, "B": 12}
        assert totals == {
            ("A", "click"): (3, 3.0, 3.0),
            ("B", "revenue"): (2, 5.5, 15.25),
        }
        assert isinstance(totals[("B", "revenue")][1], float)
        for call in mock_cursor.execute.call_args_list:
            assert call[0][1] == ("exp1",)

    def test_load_exposures(self, store, mock_cursor):
        mock_cursor.fetchall.return_value = [("u1", "A"), ("u2", "B")]
        assert store.load_exposures("exp1") == {"u1": "A", "u2": "B"}

    def test_load_converted(self, store, mock_cursor):
        mock_cursor.fetchall.return_value = [("u1", "click"), ("u2", "click")]

        assert store.load_converted("exp1", ("click",)) == {("u1", "click"), ("u2", "click")}
        sql, params = mock_cursor.execute.call_args[0]
        assert "SELECT DISTINCT subject_id, metric" in sql
        assert params == ("exp1", ["click"])

    def test_load_converted_without_metrics(self, store, mock_db):
        assert store.load_converted("exp1", []) == set()
        mock_db.get_cursor.assert_not_called()
