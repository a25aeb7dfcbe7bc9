# 実験ライフサイクルの状態遷移表
"""
状態遷移:

| 遷移元          | イベント | 遷移先     |
|-----------------|----------|------------|
| draft           | start    | running    |
| running         | pause    | paused     |
| paused          | resume   | running    |
| running/paused  | stop     | completed  |
| draft/running/paused | cancel | cancelled |

completed / cancelled は終端。表にない組み合わせは InvalidStateError。
ガード（start 時の定義検証）はコントローラー側で評価する。
"""

from enum import Enum
from typing import Dict, List, Tuple

from experiment_engine.errors import InvalidStateError
from experiment_engine.models.experiment import ExperimentStatus


class LifecycleEvent(str, Enum):
    """ライフサイクルイベント"""
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    CANCEL = "cancel"


TRANSITIONS: Dict[Tuple[ExperimentStatus, LifecycleEvent], ExperimentStatus] = {
    (ExperimentStatus.DRAFT, LifecycleEvent.START): ExperimentStatus.RUNNING,
    (ExperimentStatus.RUNNING, LifecycleEvent.PAUSE): ExperimentStatus.PAUSED,
    (ExperimentStatus.PAUSED, LifecycleEvent.RESUME): ExperimentStatus.RUNNING,
    (ExperimentStatus.RUNNING, LifecycleEvent.STOP): ExperimentStatus.COMPLETED,
    (ExperimentStatus.PAUSED, LifecycleEvent.STOP): ExperimentStatus.COMPLETED,
    (ExperimentStatus.DRAFT, LifecycleEvent.CANCEL): ExperimentStatus.CANCELLED,
    (ExperimentStatus.RUNNING, LifecycleEvent.CANCEL): ExperimentStatus.CANCELLED,
    (ExperimentStatus.PAUSED, LifecycleEvent.CANCEL): ExperimentStatus.CANCELLED,
}


def allowed_events(status: ExperimentStatus) -> List[LifecycleEvent]:
    """ある状態で受け付けるイベント"""
    return [event for (source, event) in TRANSITIONS if source == status]


def next_status(status: ExperimentStatus, event: LifecycleEvent) -> ExperimentStatus:
    """遷移先を返す

    Raises:
        InvalidStateError: 遷移表にない組み合わせの場合
    """
    status = ExperimentStatus(status)
    event = LifecycleEvent(event)
    target = TRANSITIONS.get((status, event))
    if target is None:
        allowed = [e.value for e in allowed_events(status)]
        if allowed:
            hint = f"Allowed events in '{status.value}': {allowed}."
        else:
            hint = f"'{status.value}' is a terminal status."
        raise InvalidStateError(
            f"Cannot {event.value} experiment in '{status.value}' status. {hint}",
            status=status.value,
            event=event.value,
        )
    return target
