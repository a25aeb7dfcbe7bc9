# 実験エンジンの例外定義
"""
実験エンジン共通の例外クラス

分類:
- ValidationError: 実験定義の不備（重み合計が100でない、バリアントID重複、対象メトリクス未設定など）
- InvalidStateError: 現在の状態では許可されない操作（実行中の実験の編集など）
- ExperimentNotFoundError: 指定IDの実験が存在しない
- UnknownSubjectWarning: 露出のない被験者に対する成果イベント（送出せず、戻り値として返す）
"""

from typing import List, Optional


class ExperimentError(Exception):
    """実験エンジンの基底例外"""
    pass


class ValidationError(ExperimentError, ValueError):
    """実験定義が不正な場合のエラー

    作成時・編集時・開始時に呼び出し元へそのまま返す。
    定義を暗黙に補正することはしない。

    Attributes:
        problems: 検出された問題の一覧
    """

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        super().__init__(message)
        self.problems = problems or [message]


class InvalidStateError(ExperimentError):
    """実験の状態が操作を許可しない場合のエラー

    送出時点で状態機械は一切変更されていない。
    """

    def __init__(self, message: str, status: Optional[str] = None, event: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.event = event


class ExperimentNotFoundError(ExperimentError, KeyError):
    """実験が見つからない場合のエラー"""

    def __str__(self) -> str:
        # KeyError は引数を repr で表示するため上書き
        return str(self.args[0]) if self.args else ""


class UnknownSubjectWarning(UserWarning):
    """露出（割り当て）記録のない被験者の成果イベント

    上流のイベント配信は順不同・重複を前提とするため、
    例外として送出せずログに残してイベントを破棄する。
    """

    def __init__(self, experiment_id: str, subject_id: str, metric: str):
        super().__init__(
            f"Subject '{subject_id}' has no exposure in experiment "
            f"'{experiment_id}'; outcome '{metric}' dropped"
        )
        self.experiment_id = experiment_id
        self.subject_id = subject_id
        self.metric = metric
