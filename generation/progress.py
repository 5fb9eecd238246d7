"""
Progress reporting for long-running jobs.

Workers push ProgressEvent objects into a sink (any callable). Sinks are
fire-and-forget: an exception raised by a sink is logged and swallowed so a
broken display can never stop a run.
"""

import logging
from collections import deque
from typing import Callable, Deque, List, Optional

from generation.schemas import ProgressEvent

log = logging.getLogger("generation.pipeline")

ProgressSink = Callable[[ProgressEvent], None]


def emit(sink: Optional[ProgressSink], event: ProgressEvent) -> None:
    if sink is None:
        return
    try:
        sink(event)
    except Exception as e:
        log.warning(f"[GEN] Progress sink failed: {e}")


class ProgressLog:
    """Sink that keeps the latest event and a bounded history."""

    def __init__(self, maxlen: int = 200):
        self.latest: Optional[ProgressEvent] = None
        self._events: Deque[ProgressEvent] = deque(maxlen=maxlen)

    def __call__(self, event: ProgressEvent) -> None:
        self.latest = event
        self._events.append(event)

    @property
    def events(self) -> List[ProgressEvent]:
        return list(self._events)
