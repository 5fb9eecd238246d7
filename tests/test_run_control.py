import asyncio

import pytest

from generation.control import RunControl
from generation.errors import RunConflictError
from generation.progress import ProgressLog, emit
from generation.run_manager import RunManager
from generation.schemas import GenerationSummary, ProgressEvent


def _event(message="hello", level="info"):
    return ProgressEvent(stage="questions", message=message, level=level)


async def test_checkpoint_passes_when_running():
    assert await RunControl().checkpoint() is True


async def test_stop_releases_pause():
    polls = []

    async def poll(seconds):
        polls.append(seconds)
        control.stop()

    control = RunControl(poll_interval=0.5, sleep=poll)
    control.pause()
    assert control.paused

    assert await control.checkpoint() is False
    assert polls == [0.5]
    assert not control.paused


def test_pause_after_stop_is_ignored():
    control = RunControl()
    control.stop()
    control.pause()
    assert not control.paused


def test_progress_log_keeps_bounded_history():
    log = ProgressLog(maxlen=2)
    for i in range(3):
        log(_event(f"event {i}"))
    assert log.latest.message == "event 2"
    assert [e.message for e in log.events] == ["event 1", "event 2"]


def test_broken_sink_is_swallowed():
    def sink(event):
        raise RuntimeError("display crashed")

    emit(sink, _event())
    emit(None, _event())


async def test_run_manager_lifecycle():
    manager = RunManager(pause_poll=0.01)
    release = asyncio.Event()

    async def job(control, progress):
        progress(_event("working"))
        await release.wait()
        return GenerationSummary(generated=2, target=2)

    handle = manager.start("questions", job)
    await asyncio.sleep(0)
    assert handle.snapshot()["status"] == "running"

    with pytest.raises(RunConflictError):
        manager.start("validation", job)

    handle.control.pause()
    assert handle.snapshot()["status"] == "paused"
    handle.control.resume()

    release.set()
    await handle.task
    snapshot = handle.snapshot()
    assert snapshot["status"] == "completed"
    assert snapshot["result"]["generated"] == 2
    assert snapshot["latest"]["message"] == "working"


async def test_run_manager_records_failure():
    manager = RunManager()

    async def job(control, progress):
        raise LookupError("Course 7 not found")

    handle = manager.start("questions", job)
    await handle.task
    snapshot = handle.snapshot()
    assert snapshot["status"] == "failed"
    assert snapshot["error"] == "Course 7 not found"

    # A finished run does not block the next one
    second = manager.start("questions", job)
    await second.task
    assert manager.current is second
