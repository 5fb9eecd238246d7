"""
Background run manager: at most one long-running job (question generation,
solution backfill or semantic validation) per process.

The job runs as an asyncio task. Its RunControl and ProgressLog stay reachable
so HTTP handlers can pause / resume / stop it and poll its progress.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from generation.control import RunControl
from generation.errors import RunConflictError
from generation.progress import ProgressLog

log = logging.getLogger("generation.pipeline")

JobFactory = Callable[[RunControl, ProgressLog], Awaitable[Any]]


class RunHandle:
    def __init__(self, kind: str, control: RunControl, progress: ProgressLog):
        self.kind = kind
        self.control = control
        self.progress = progress
        self.task: Optional[asyncio.Task] = None
        self.result: Any = None
        self.error: Optional[str] = None
        self.started_at = time.time()
        self.finished_at: Optional[float] = None

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()

    def snapshot(self) -> Dict:
        if self.active:
            status = "paused" if self.control.paused else "running"
        elif self.error:
            status = "failed"
        elif self.control.stopped:
            status = "stopped"
        else:
            status = "completed"
        result = self.result.model_dump() if hasattr(self.result, "model_dump") else self.result
        return {
            "kind": self.kind,
            "status": status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "latest": self.progress.latest.model_dump() if self.progress.latest else None,
            "events": [e.model_dump() for e in self.progress.events[-20:]],
            "result": result,
            "error": self.error,
        }


class RunManager:
    def __init__(self, pause_poll: float = 1.0):
        self.pause_poll = pause_poll
        self.current: Optional[RunHandle] = None

    def start(self, kind: str, job: JobFactory) -> RunHandle:
        """Start job in the background; RunConflictError if one is still active."""
        if self.current is not None and self.current.active:
            raise RunConflictError(f"A {self.current.kind} run is already in progress")

        handle = RunHandle(kind, RunControl(poll_interval=self.pause_poll), ProgressLog())
        handle.task = asyncio.create_task(self._run(handle, job))
        self.current = handle
        log.info(f"[GEN] Started background {kind} run")
        return handle

    async def _run(self, handle: RunHandle, job: JobFactory) -> None:
        try:
            handle.result = await job(handle.control, handle.progress)
        except Exception as e:
            handle.error = str(e)
            log.exception(f"[GEN] Background {handle.kind} run failed")
        finally:
            handle.finished_at = time.time()
