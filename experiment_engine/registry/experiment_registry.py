# 実験レジストリ
"""
ExperimentRegistry: 実験定義のキャッシュ付きストア

設計方針:
- 読み取り（割り当てのホットパス）はプロセス内キャッシュのみを参照し、ロックを取らない
- 書き込みはライフサイクルコントローラーが実験ごとのロック内で行う（リポジトリへ書いてからキャッシュを差し替え）
- Experiment は不変なので、読み手は差し替え前後どちらかの一貫した定義を見る
- モジュールレベルのシングルトンは持たない。サービス起動時に生成して注入し、close() で破棄する
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Union

from experiment_engine.errors import ExperimentNotFoundError
from experiment_engine.models.experiment import Experiment, ExperimentStatus
from experiment_engine.registry.repository import (
    ExperimentRepository,
    InMemoryExperimentRepository,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExperimentFilter:
    """実験一覧の絞り込み条件

    Attributes:
        statuses: 対象ステータス（None なら全件）
        owner: オーナー（完全一致）
        search: 名前・説明・アルゴリズムに対する部分一致（大文字小文字を区別しない）
        limit: 最大件数
    """
    statuses: Optional[FrozenSet[ExperimentStatus]] = None
    owner: Optional[str] = None
    search: Optional[str] = None
    limit: Optional[int] = None

    @classmethod
    def build(
        cls,
        status: Union[None, str, ExperimentStatus, Iterable[Union[str, ExperimentStatus]]] = None,
        owner: Optional[str] = None,
        search: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> "ExperimentFilter":
        """単一のステータスまたはステータスの集合から条件を作る"""
        if status is None:
            statuses = None
        elif isinstance(status, (str, ExperimentStatus)):
            statuses = frozenset([ExperimentStatus(status)])
        else:
            statuses = frozenset(ExperimentStatus(s) for s in status)
        return cls(statuses=statuses, owner=owner or None, search=search or None, limit=limit)

    def matches(self, experiment: Experiment) -> bool:
        if self.statuses is not None and experiment.status not in self.statuses:
            return False
        if self.owner is not None and experiment.owner != self.owner:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = " ".join(
                [experiment.name, experiment.description, experiment.algorithm]
                + [v.algorithm for v in experiment.variants]
            ).lower()
            if needle not in haystack:
                return False
        return True


class ExperimentRegistry:
    """実験定義のストア

    使用例:
        registry = ExperimentRegistry(InMemoryExperimentRepository())
        registry.put(experiment)
        registry.get("exp1")
        registry.list(ExperimentFilter.build(status="running"))

    Attributes:
        repository: 永続化先
    """

    def __init__(self, repository: Optional[ExperimentRepository] = None):
        self.repository = repository or InMemoryExperimentRepository()
        self._cache: Dict[str, Experiment] = {}

    def warm(self) -> int:
        """リポジトリの全実験をキャッシュに読み込む

        Returns:
            読み込んだ件数
        """
        experiments = self.repository.list_by_state()
        self._cache = {e.experiment_id: e for e in experiments}
        logger.info(f"レジストリ初期化: experiments={len(experiments)}")
        return len(experiments)

    def get(self, experiment_id: str) -> Optional[Experiment]:
        """実験を取得（キャッシュになければリポジトリから読み込む）"""
        experiment = self._cache.get(experiment_id)
        if experiment is not None:
            return experiment
        experiment = self.repository.load(experiment_id)
        if experiment is not None:
            self._cache[experiment_id] = experiment
        return experiment

    def peek(self, experiment_id: str) -> Optional[Experiment]:
        """キャッシュのみを参照（I/O なし。割り当てのホットパス用）"""
        return self._cache.get(experiment_id)

    def require(self, experiment_id: str) -> Experiment:
        """実験を取得

        Raises:
            ExperimentNotFoundError: 実験が存在しない場合
        """
        experiment = self.get(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(f"Experiment {experiment_id} not found")
        return experiment

    def contains(self, experiment_id: str) -> bool:
        return self.get(experiment_id) is not None

    def put(self, experiment: Experiment) -> None:
        """実験を保存してキャッシュを差し替える

        リポジトリへの書き込みが失敗した場合はキャッシュを変更せずに例外を送出する。
        """
        self.repository.save(experiment)
        self._cache[experiment.experiment_id] = experiment

    def remove(self, experiment_id: str) -> bool:
        removed = self.repository.delete(experiment_id)
        self._cache.pop(experiment_id, None)
        return removed

    def list(self, criteria: Optional[ExperimentFilter] = None) -> List[Experiment]:
        """条件に合う実験を新しい順で返す"""
        criteria = criteria or ExperimentFilter()
        experiments = self.repository.list_by_state(criteria.statuses)
        matched = [e for e in experiments if criteria.matches(e)]
        if criteria.limit is not None:
            matched = matched[: max(criteria.limit, 0)]
        return matched

    def running(self) -> List[Experiment]:
        return [e for e in self._cache.values() if e.status == ExperimentStatus.RUNNING]

    def close(self) -> None:
        self._cache = {}
