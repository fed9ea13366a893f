"""Tests for watcher.py: debounce, pending rebuilds and subscription."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from paperx.errors import BusyError, EngineLaunchError, WatchSubscriptionError
from paperx.models import BuildResult
from paperx.watcher import WatchEvent, Watcher, _QueueingHandler


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePipeline:
    """Records requests; ``during_build`` runs while a build is in flight."""

    def __init__(self, success: bool = True) -> None:
        self.requests: list = []
        self.success = success
        self.during_build = None
        self.callbacks = MagicMock()

    def run(self, request):
        self.requests.append(request)
        if self.during_build is not None:
            hook, self.during_build = self.during_build, None
            hook()
        return BuildResult(request_id=len(self.requests), success=self.success)


class FakeObserver:
    def __init__(self, fail_on_schedule: bool = False) -> None:
        self.scheduled: list[str] = []
        self.started = self.stopped = self.joined = False
        self.fail_on_schedule = fail_on_schedule

    def schedule(self, handler, path, recursive=False):
        if self.fail_on_schedule:
            raise OSError("inotify watch limit reached")
        self.scheduled.append(path)

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        self.joined = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pipeline() -> FakePipeline:
    return FakePipeline()


@pytest.fixture
def watcher(workspace, pipeline, clock, callbacks) -> Watcher:
    return Watcher(
        pipeline,
        lambda reason: SimpleNamespace(reason=reason),
        debounce_ms=500,
        poll_interval=0,
        ignore=[workspace / "build"],
        clock=clock,
        callbacks=callbacks,
    )


def _touch(watcher: Watcher, workspace: Path, name: str = "main.tex") -> None:
    watcher.notify(WatchEvent(kind="modified", path=str(workspace / "tex" / name)))


class TestDebounce:
    def test_burst_produces_one_build(self, watcher, workspace, pipeline, clock):
        for _ in range(10):
            _touch(watcher, workspace)
        assert watcher.step() is None
        assert pipeline.requests == []

        clock.advance(0.25)
        assert watcher.step() is None
        clock.advance(0.25)
        result = watcher.step()

        assert result is not None
        assert len(pipeline.requests) == 1
        assert pipeline.requests[0].reason == "change"
        clock.advance(5)
        assert watcher.step() is None
        assert len(pipeline.requests) == 1

    def test_events_inside_window_extend_it(self, watcher, workspace, pipeline, clock):
        _touch(watcher, workspace)
        watcher.step()
        clock.advance(0.25)
        _touch(watcher, workspace, "sections/introduction.tex")
        watcher.step()

        clock.advance(0.375)  # past the first deadline, before the second
        watcher.step()
        assert pipeline.requests == []

        clock.advance(0.125)
        watcher.step()
        assert len(pipeline.requests) == 1

    def test_change_reported_once_per_burst(self, watcher, workspace, callbacks):
        for _ in range(3):
            _touch(watcher, workspace)
        watcher.step()
        assert callbacks.on_change.call_count == 1

    def test_no_events_no_build(self, watcher, pipeline, clock):
        clock.advance(10)
        assert watcher.step() is None
        assert watcher.deadline is None
        assert pipeline.requests == []


class TestPendingRebuild:
    def test_events_during_build_give_one_follow_up(self, watcher, workspace, pipeline, callbacks):
        pipeline.during_build = lambda: [_touch(watcher, workspace) for _ in range(5)]
        result = watcher.rebuild("change")

        assert len(pipeline.requests) == 2
        assert pipeline.requests[1].reason == "changes during previous build"
        assert result.request_id == 2
        assert watcher.session.pending_rebuild is False
        assert watcher.session.builds_started == 2
        callbacks.on_rebuild_pending.assert_called_once()

    def test_no_events_during_build_no_follow_up(self, watcher, pipeline):
        watcher.rebuild("change")
        assert len(pipeline.requests) == 1
        assert watcher.session.last_build_result.request_id == 1
        assert watcher.session.build_in_flight is False

    def test_each_build_gets_a_fresh_request(self, watcher, workspace, pipeline):
        pipeline.during_build = lambda: _touch(watcher, workspace)
        watcher.rebuild("change")
        first, second = pipeline.requests
        assert first is not second

    def test_failed_build_keeps_watching(self, watcher, workspace, clock):
        watcher.pipeline.success = False
        assert watcher.rebuild("change").success is False

        _touch(watcher, workspace)
        watcher.step()
        clock.advance(1)
        assert watcher.step() is not None
        assert watcher.session.builds_started == 2

    def test_launch_error_propagates(self, watcher):
        watcher.pipeline.run = MagicMock(side_effect=EngineLaunchError("pdflatex vanished"))
        with pytest.raises(EngineLaunchError):
            watcher.rebuild("change")
        assert watcher.session.build_in_flight is False

    def test_locked_output_dir_retries_after_debounce(self, watcher, pipeline, clock, callbacks):
        busy = BusyError("Cannot build in build: a build is running in process 4242")
        pipeline.run = MagicMock(side_effect=[busy, BuildResult(request_id=1, success=True)])

        assert watcher.rebuild("change") is None
        assert watcher.session.pending_rebuild is False
        assert watcher.deadline == 0.5
        callbacks.on_warning.assert_called_once()
        assert "process 4242" in callbacks.on_warning.call_args.args[0]

        clock.advance(0.5)
        result = watcher.step()
        assert result is not None and result.success is True
        assert pipeline.run.call_count == 2


class TestRelevance:
    def test_output_dir_events_ignored(self, watcher, workspace):
        watcher.notify(WatchEvent(kind="created", path=str(workspace / "build" / "main.pdf")))
        watcher.notify(WatchEvent(kind="modified", path=str(workspace / "build")))
        assert watcher.events.empty()

    def test_editor_swap_files_ignored(self, watcher, workspace):
        for name in (".main.tex.swp", "main.tex~", ".#main.tex"):
            _touch(watcher, workspace, name)
        assert watcher.events.empty()

    def test_build_lock_file_ignored(self, watcher, workspace):
        watcher.notify(WatchEvent(kind="created", path=str(workspace / ".build.paperx.lock")))
        assert watcher.events.empty()

    def test_source_events_queued(self, watcher, workspace):
        _touch(watcher, workspace)
        watcher.notify(WatchEvent(kind="created", path=str(workspace / "bib" / "references.bib")))
        assert watcher.events.qsize() == 2

    def test_full_queue_drops_events(self, workspace, pipeline, clock):
        small = Watcher(pipeline, str, queue_size=1, clock=clock, callbacks=MagicMock())
        _touch(small, workspace)
        _touch(small, workspace)
        assert small.events.qsize() == 1

    def test_handler_uses_destination_of_moves(self, watcher, workspace):
        handler = _QueueingHandler(watcher)
        event = SimpleNamespace(
            event_type="moved",
            is_directory=False,
            src_path=str(workspace / "tex" / ".main.tex.swp"),
            dest_path=str(workspace / "tex" / "main.tex"),
        )
        handler.on_any_event(event)
        queued = watcher.events.get_nowait()
        assert queued.path == str(workspace / "tex" / "main.tex")

    def test_handler_skips_directory_modifications(self, watcher, workspace):
        handler = _QueueingHandler(watcher)
        handler.on_any_event(SimpleNamespace(
            event_type="modified", is_directory=True, src_path=str(workspace / "tex"),
        ))
        handler.on_any_event(SimpleNamespace(
            event_type="opened", is_directory=False, src_path=str(workspace / "tex" / "main.tex"),
        ))
        assert watcher.events.empty()


class TestWatch:
    def test_initial_build_then_stop(self, watcher, workspace, pipeline, callbacks):
        observer = FakeObserver()
        watcher.observer_factory = lambda: observer
        pipeline.during_build = watcher.stop

        watcher.watch([workspace / "tex", workspace / "bib"])

        assert observer.scheduled == [str(workspace / "tex"), str(workspace / "bib")]
        assert observer.started and observer.stopped and observer.joined
        assert [r.reason for r in pipeline.requests] == ["initial build"]
        callbacks.on_watch_start.assert_called_once()

    def test_without_initial_build(self, watcher, workspace, pipeline):
        watcher.observer_factory = FakeObserver
        watcher.stop()
        watcher.watch([workspace / "tex"], initial_build=False)
        assert pipeline.requests == []

    def test_nothing_to_watch(self, watcher):
        with pytest.raises(WatchSubscriptionError):
            watcher.watch([])

    def test_subscription_failure(self, watcher, workspace, pipeline):
        watcher.observer_factory = lambda: FakeObserver(fail_on_schedule=True)
        with pytest.raises(WatchSubscriptionError, match="watch limit"):
            watcher.watch([workspace / "tex"])
        assert pipeline.requests == []
