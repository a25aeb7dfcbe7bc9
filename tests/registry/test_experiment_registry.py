# ExperimentRegistry テスト
"""
ExperimentRegistry / ExperimentFilter の単体テスト
"""

from dataclasses import replace
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from experiment_engine.errors import ExperimentNotFoundError
from experiment_engine.models.experiment import Experiment, ExperimentStatus, Variant
from experiment_engine.registry.experiment_registry import ExperimentFilter, ExperimentRegistry
from experiment_engine.registry.repository import InMemoryExperimentRepository


def make_experiment(experiment_id, status=ExperimentStatus.DRAFT, day=1, **kwargs):
    return Experiment(
        experiment_id=experiment_id,
        name=kwargs.pop("name", f"experiment {experiment_id}"),
        variants=(
            Variant("A", "A", 50, is_control=True),
            Variant("B", "B", 50, algorithm=kwargs.pop("variant_algorithm", "")),
        ),
        target_metric="click",
        status=status,
        created_at=datetime(2024, 1, day),
        **kwargs,
    )


@pytest.fixture
def repository():
    return InMemoryExperimentRepository()


@pytest.fixture
def registry(repository):
    return ExperimentRegistry(repository)


# ============================================================================
# ExperimentFilter
# ============================================================================


class TestExperimentFilter:
    """絞り込み条件"""

    def test_build_single_status(self):
        criteria = ExperimentFilter.build(status="running")
        assert criteria.statuses == frozenset([ExperimentStatus.RUNNING])

    def test_build_multiple_statuses(self):
        criteria = ExperimentFilter.build(status=["running", ExperimentStatus.PAUSED])
        assert criteria.statuses == frozenset([ExperimentStatus.RUNNING, ExperimentStatus.PAUSED])

    def test_build_invalid_status(self):
        with pytest.raises(ValueError):
            ExperimentFilter.build(status="bogus")

    def test_empty_strings_mean_no_filter(self):
        criteria = ExperimentFilter.build(owner="", search="")
        assert criteria.owner is None
        assert criteria.search is None

    def test_search_is_case_insensitive(self):
        experiment = make_experiment("e1", name="Ranking V2", algorithm="Collaborative")
        assert ExperimentFilter.build(search="ranking").matches(experiment)
        assert ExperimentFilter.build(search="COLLAB").matches(experiment)
        assert not ExperimentFilter.build(search="bandit").matches(experiment)

    def test_search_covers_variant_algorithms(self):
        experiment = make_experiment("e1", variant_algorithm="two-tower")
        assert ExperimentFilter.build(search="tower").matches(experiment)

    def test_owner(self):
        experiment = make_experiment("e1", owner="search-team")
        assert ExperimentFilter.build(owner="search-team").matches(experiment)
        assert not ExperimentFilter.build(owner="ads-team").matches(experiment)


# ============================================================================
# ExperimentRegistry
# ============================================================================


class TestExperimentRegistry:
    """キャッシュ付きストア"""

    def test_put_and_get(self, registry):
        experiment = make_experiment("e1")
        registry.put(experiment)
        assert registry.get("e1") is experiment
        assert registry.peek("e1") is experiment
        assert registry.contains("e1")

    def test_get_falls_back_to_repository(self, registry, repository):
        experiment = make_experiment("e1")
        repository.save(experiment)

        assert registry.peek("e1") is None
        assert registry.get("e1") is experiment
        assert registry.peek("e1") is experiment

    def test_require_missing(self, registry):
        with pytest.raises(ExperimentNotFoundError) as exc_info:
            registry.require("nope")
        assert str(exc_info.value) == "Experiment nope not found"

    def test_warm_loads_everything(self, registry, repository):
        repository.save(make_experiment("e1"))
        repository.save(make_experiment("e2", ExperimentStatus.RUNNING))

        assert registry.warm() == 2
        assert registry.peek("e2").status == ExperimentStatus.RUNNING
        assert [e.experiment_id for e in registry.running()] == ["e2"]

    def test_put_replaces_reference(self, registry):
        experiment = make_experiment("e1")
        registry.put(experiment)
        updated = replace(experiment, status=ExperimentStatus.RUNNING)
        registry.put(updated)
        assert registry.peek("e1") is updated

    def test_failed_save_keeps_cache(self):
        repository = MagicMock()
        repository.save.side_effect = RuntimeError("db down")
        registry = ExperimentRegistry(repository)

        with pytest.raises(RuntimeError):
            registry.put(make_experiment("e1"))
        assert registry.peek("e1") is None

    def test_remove(self, registry):
        registry.put(make_experiment("e1"))
        assert registry.remove("e1") is True
        assert registry.peek("e1") is None
        assert registry.get("e1") is None

    def test_list_filters_and_limits(self, registry):
        registry.put(make_experiment("e1", day=1))
        registry.put(make_experiment("e2", ExperimentStatus.RUNNING, day=2))
        registry.put(make_experiment("e3", ExperimentStatus.RUNNING, day=3))

        assert [e.experiment_id for e in registry.list()] == ["e3", "e2", "e1"]
        running = registry.list(ExperimentFilter.build(status="running"))
        assert [e.experiment_id for e in running] == ["e3", "e2"]
        assert [e.experiment_id for e in registry.list(ExperimentFilter.build(limit=1))] == ["e3"]

    def test_close_clears_cache(self, registry):
        registry.put(make_experiment("e1"))
        registry.close()
        assert registry.peek("e1") is None
