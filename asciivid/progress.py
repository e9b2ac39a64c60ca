"""
Progress events emitted while a video is converted
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

LOADING = "loading"
EXTRACTING = "extracting"
CONVERTING = "converting"
ENCODING = "encoding"
COMPLETE = "complete"

# Extraction and conversion share a rank so they may alternate
_STAGE_RANK = {
    LOADING: 0,
    EXTRACTING: 1,
    CONVERTING: 1,
    ENCODING: 2,
    COMPLETE: 3,
}


@dataclass(frozen=True)
class ProgressEvent:
    stage: str
    percent: int
    current: Optional[int] = None
    total: Optional[int] = None


ProgressSink = Callable[[ProgressEvent], None]


def band_percent(current: int, total: int, start: int, span: int) -> int:
    """Map current/total into the percent band [start, start + span]."""
    if total <= 0:
        return start
    return start + round(current / total * span)


class ProgressReporter:
    """
    Forwards progress events to a sink in pipeline order.

    Percent never decreases across the run and a stage may not come
    before one that was already reported.
    """

    def __init__(self, sink: Optional[ProgressSink] = None):
        self._sink = sink
        self._last_percent = 0
        self._last_rank = 0
        self._stage: Optional[str] = None

    @property
    def percent(self) -> int:
        return self._last_percent

    @property
    def stage(self) -> Optional[str]:
        return self._stage

    def report(
        self,
        stage: str,
        percent: int,
        current: Optional[int] = None,
        total: Optional[int] = None,
    ) -> ProgressEvent:
        if stage not in _STAGE_RANK:
            raise ValueError(f"Unknown progress stage: {stage}")

        rank = _STAGE_RANK[stage]
        if rank < self._last_rank:
            raise ValueError(f"Stage {stage} reported after {self._stage}")

        if stage == COMPLETE:
            percent = 100
        percent = min(100, max(int(percent), self._last_percent))

        self._last_rank = rank
        self._last_percent = percent
        self._stage = stage

        event = ProgressEvent(stage, percent, current, total)
        logger.debug("progress %s %d%% (%s/%s)", stage, percent, current, total)
        if self._sink is not None:
            self._sink(event)
        return event
