# 実験定義リポジトリ テスト
"""
InMemoryExperimentRepository / PostgresExperimentRepository の単体テスト

Postgres 実装はカーソルをモックに差し替え、SQL とパラメータを検証する。
"""

from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from psycopg2.extras import Json

from experiment_engine.models.experiment import (
    Experiment,
    ExperimentStatus,
    MetricKind,
    Variant,
)
from experiment_engine.registry.repository import (
    InMemoryExperimentRepository,
    PostgresExperimentRepository,
)


# ============================================================================
# Fixtures
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
def repository(mock_db):
    return PostgresExperimentRepository(mock_db)


def make_experiment(experiment_id="exp1", status=ExperimentStatus.DRAFT, created_at=None):
    return Experiment(
        experiment_id=experiment_id,
        name="ranking v2",
        variants=(
            Variant("A", "control", 50, is_control=True),
            Variant("B", "treatment", 50, config={"algorithm": "v2"}),
        ),
        target_metric="click",
        guardrail_metrics=("revenue",),
        metric_kinds={"revenue": MetricKind.CONTINUOUS},
        status=status,
        created_at=created_at or datetime(2024, 1, 1),
    )


@pytest.fixture
def sample_row():
    """DBから返される行（_COLUMNS の順序）"""
    return (
        "exp1",                                   # experiment_id
        "ranking v2",                             # name
        "",                                       # description
        "running",                                # status
        [
            {"variant_id": "A", "name": "control", "weight": 50, "is_control": True},
            {"variant_id": "B", "name": "treatment", "weight": 50, "config": {"algorithm": "v2"}},
        ],                                        # variants
        "click",                                  # target_metric
        ["revenue"],                              # guardrail_metrics
        {"revenue": "continuous"},                # metric_kinds
        Decimal("100.00"),                        # traffic_allocation
        "search-team",                            # owner
        "",                                       # algorithm
        14,                                       # planned_duration_days
        {},                                       # configuration
        datetime(2024, 1, 1),                     # created_at
        datetime(2024, 1, 2),                     # started_at
        None,                                     # ended_at
        None,                                     # winner_variant_id
        False,                                    # is_significant
        0.0,                                      # confidence_level
        None,                                     # results
    )


# ============================================================================
# InMemoryExperimentRepository
# ============================================================================


class TestInMemoryRepository:
    """辞書による実装"""

    def test_save_and_load(self):
        repository = InMemoryExperimentRepository()
        experiment = make_experiment()
        repository.save(experiment)
        assert repository.load("exp1") is experiment
        assert repository.load("missing") is None

    def test_list_newest_first_and_by_state(self):
        repository = InMemoryExperimentRepository()
        repository.save(make_experiment("old", created_at=datetime(2024, 1, 1)))
        repository.save(make_experiment("new", ExperimentStatus.RUNNING, datetime(2024, 2, 1)))

        assert [e.experiment_id for e in repository.list_by_state()] == ["new", "old"]
        running = repository.list_by_state([ExperimentStatus.RUNNING])
        assert [e.experiment_id for e in running] == ["new"]

    def test_delete(self):
        repository = InMemoryExperimentRepository()
        repository.save(make_experiment())
        assert repository.delete("exp1") is True
        assert repository.delete("exp1") is False


# ============================================================================
# PostgresExperimentRepository
# ============================================================================


class TestPostgresSave:
    """save（UPSERT）"""

    def test_save_executes_upsert(self, repository, mock_cursor):
        repository.save(make_experiment())

        mock_cursor.execute.assert_called_once()
        sql, params = mock_cursor.execute.call_args[0]
        assert "INSERT INTO experiments" in sql
        assert "ON CONFLICT (experiment_id) DO UPDATE" in sql
        assert len(params) == 20
        assert params[0] == "exp1"
        assert params[3] == "draft"

    def test_jsonb_columns_use_json_adapter(self, repository, mock_cursor):
        repository.save(make_experiment())

        params = mock_cursor.execute.call_args[0][1]
        variants = params[4]
        assert isinstance(variants, Json)
        assert variants.adapted[1]["config"] == {"algorithm": "v2"}
        assert params[6].adapted == ["revenue"]
        assert params[7].adapted == {"revenue": "continuous"}
        # results は未評価なら NULL
        assert params[19] is None


class TestPostgresLoad:
    """load / list_by_state"""

    def test_load_converts_row(self, repository, mock_cursor, sample_row):
        mock_cursor.fetchone.return_value = sample_row

        experiment = repository.load("exp1")

        assert experiment.experiment_id == "exp1"
        assert experiment.status == ExperimentStatus.RUNNING
        assert experiment.variant_ids == ["A", "B"]
        assert experiment.control_variant.variant_id == "A"
        assert experiment.metric_kind("revenue") == MetricKind.CONTINUOUS
        assert experiment.traffic_allocation == 100.0
        assert experiment.started_at == datetime(2024, 1, 2)
        assert mock_cursor.execute.call_args[0][1] == ("exp1",)

    def test_load_missing(self, repository, mock_cursor):
        mock_cursor.fetchone.return_value = None
        assert repository.load("missing") is None

    def test_list_all(self, repository, mock_cursor, sample_row):
        mock_cursor.fetchall.return_value = [sample_row]

        experiments = repository.list_by_state()

        assert len(experiments) == 1
        sql = mock_cursor.execute.call_args[0][0]
        assert "WHERE" not in sql
        assert "ORDER BY created_at DESC" in sql

    def test_list_by_status(self, repository, mock_cursor):
        mock_cursor.fetchall.return_value = []

        repository.list_by_state([ExperimentStatus.RUNNING, "paused"])

        sql, params = mock_cursor.execute.call_args[0]
        assert "status = ANY(%s)" in sql
        assert params == (["running", "paused"],)


class TestPostgresDelete:
    """delete"""

    def test_delete_existing(self, repository, mock_cursor):
        mock_cursor.rowcount = 1
        assert repository.delete("exp1") is True

    def test_delete_missing(self, repository, mock_cursor):
        mock_cursor.rowcount = 0
        assert repository.delete("exp1") is False
