# ハッシュベースのバリアント割り当て
"""
HashAllocator: (実験ID, 被験者ID) から決定論的にバリアントを選択する

アルゴリズム:
    h = md5(experiment_id + ":" + subject_id) の先頭8バイト（64bit 符号なし整数）
    bucket = h mod 10000
    バリアント重み × 100 の累積ラダーで、累積上限が bucket を超える最初のバリアントを選ぶ

保証:
- 安定性: バリアント構成が変わらない限り同じ被験者は同じバリアント
- 一様性: 被験者数が増えるほど占有率は設定重みに収束
- 実験間の独立性: 実験IDをソルトにするため、実験をまたいだバケットは無相関

副作用なし（入力のみの純粋関数）。
"""

import hashlib
from typing import List, Sequence, Tuple

from experiment_engine.errors import ValidationError
from experiment_engine.models.experiment import BASIS_POINTS, Variant


# トラフィック参加判定用のソルト（バリアント割り当てと独立させる）
TRAFFIC_SALT = "traffic"


class HashAllocator:
    """重み付き一貫ハッシュによる割り当て

    使用例:
        allocator = HashAllocator()
        variant_id = allocator.assign("exp1", "user_42", experiment.variants)

    Attributes:
        buckets: バケット数（ベーシスポイント = 10000）
    """

    def __init__(self, buckets: int = BASIS_POINTS):
        if buckets != BASIS_POINTS:
            raise ValueError(f"buckets must be {BASIS_POINTS} (basis points), got {buckets}")
        self.buckets = buckets

    def bucket(self, experiment_id: str, subject_id: str, salt: str = "") -> int:
        """被験者のバケット値（0 - buckets-1）を計算

        Args:
            experiment_id: 実験ID
            subject_id: 被験者ID（ユーザーID・セッションIDなど安定した文字列）
            salt: 追加のソルト（用途ごとにバケットを独立させる）
        """
        key = f"{experiment_id}:{subject_id}"
        if salt:
            key = f"{salt}:{key}"
        digest = hashlib.md5(key.encode("utf-8")).digest()
        return int.from_bytes(digest[:8], "big") % self.buckets

    def build_ladder(self, variants: Sequence[Variant]) -> List[Tuple[int, str]]:
        """累積重みのラダーを構築

        Returns:
            (累積上限ベーシスポイント, variant_id) のリスト

        Raises:
            ValidationError: バリアントが空、または重み合計が100でない場合
        """
        if not variants:
            raise ValidationError("variants cannot be empty")

        ladder: List[Tuple[int, str]] = []
        cumulative = 0
        for variant in variants:
            cumulative += variant.basis_points
            ladder.append((cumulative, variant.variant_id))

        if cumulative != self.buckets:
            raise ValidationError(
                f"variant weights must sum to 100, got {cumulative / 100:g}"
            )
        return ladder

    def assign(self, experiment_id: str, subject_id: str, variants: Sequence[Variant]) -> str:
        """バリアントを割り当て

        Args:
            experiment_id: 実験ID
            subject_id: 被験者ID
            variants: 重み合計100のバリアント（1件以上）

        Returns:
            割り当てたバリアントID

        Raises:
            ValidationError: variants が不正な場合
        """
        ladder = self.build_ladder(variants)
        value = self.bucket(experiment_id, subject_id)

        for upper_bound, variant_id in ladder:
            if value < upper_bound:
                return variant_id

        # 合計は検証済みのためここには到達しない
        return ladder[-1][1]

    def admits(self, experiment_id: str, subject_id: str, traffic_allocation: float) -> bool:
        """被験者を実験に参加させるか判定

        traffic_allocation（0-100）の割合だけ母集団を実験に入れる。
        判定用のバケットは割り当てとは別ソルトで計算するため、参加可否とバリアントは無相関。
        """
        if traffic_allocation >= 100:
            return True
        if traffic_allocation <= 0:
            return False
        threshold = int(round(traffic_allocation * 100))
        return self.bucket(experiment_id, subject_id, salt=TRAFFIC_SALT) < threshold
