"""Watch mode: debounce filesystem churn into serialized rebuilds.

The watchdog observer runs on its own thread and only enqueues events.  A
single control loop drains the queue and owns all state:

* an event outside a build (re)arms the debounce deadline;
* when the deadline passes with no further events, one build runs;
* events that arrive while a build is in flight set ``pending_rebuild``;
  after the build, a set flag is cleared and exactly one follow-up build
  runs, however many events arrived.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .artifacts import LOCK_SUFFIX
from .errors import BusyError, WatchSubscriptionError
from .logging_config import BuildCallbacks, RichCallbacks
from .models import BuildRequest, BuildResult, WatchSession
from .pipeline import BuildPipeline

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 400
DEFAULT_QUEUE_SIZE = 256

_RELEVANT_EVENTS = frozenset({"created", "modified", "deleted", "moved"})
# Editor swap/backup files that change on every keystroke or save.
_IGNORED_SUFFIXES = (".swp", ".swx", ".swo", "~", ".tmp")
_IGNORED_PREFIXES = (".#", "#")


@dataclass(frozen=True)
class WatchEvent:
    """A filesystem change as seen by the control loop."""

    kind: str
    path: str


class _QueueingHandler(FileSystemEventHandler):
    """watchdog handler that forwards relevant events to the watcher queue."""

    def __init__(self, watcher: Watcher) -> None:
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in _RELEVANT_EVENTS:
            return
        if event.is_directory and event.event_type == "modified":
            return
        path = getattr(event, "dest_path", "") or event.src_path
        if isinstance(path, bytes):
            path = path.decode(errors="replace")
        self.watcher.notify(WatchEvent(kind=event.event_type, path=str(path)))


class Watcher:
    """Serialize rebuilds of one workspace in response to file changes.

    Parameters
    ----------
    pipeline : BuildPipeline
        Pipeline bound to an engine resolved once before watching.
    make_request : Callable[[str], BuildRequest]
        Builds a fresh request for each build, given the reason.
    debounce_ms : int
        Quiet period after the last event before a rebuild fires.
    ignore : Sequence[Path]
        Trees whose events are dropped (the output directory).
    clock : Callable[[], float]
        Monotonic clock in seconds; injectable for tests.
    """

    def __init__(
        self,
        pipeline: BuildPipeline,
        make_request: Callable[[str], BuildRequest],
        *,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        poll_interval: float = 0.25,
        ignore: Sequence[Path] = (),
        clock: Callable[[], float] = time.monotonic,
        callbacks: BuildCallbacks | None = None,
        observer_factory: Callable[[], Observer] = Observer,
    ) -> None:
        self.pipeline = pipeline
        self.make_request = make_request
        self.session = WatchSession(debounce_window_ms=debounce_ms)
        self.events: queue.Queue[WatchEvent] = queue.Queue(maxsize=queue_size)
        self.poll_interval = poll_interval
        self.ignore = tuple(Path(p).resolve() for p in ignore)
        self.clock = clock
        self.callbacks = callbacks or pipeline.callbacks or RichCallbacks()
        self.observer_factory = observer_factory
        self._deadline: float | None = None
        self._stop = threading.Event()

    # -----------------------------------------------------------------------
    # Producer side (observer thread)
    # -----------------------------------------------------------------------

    def is_relevant(self, path: str) -> bool:
        name = Path(path).name
        if name.endswith(_IGNORED_SUFFIXES) or name.startswith(_IGNORED_PREFIXES):
            return False
        if ".paperx-trash-" in path or name.endswith(LOCK_SUFFIX):
            return False
        resolved = Path(path).resolve()
        return not any(resolved == root or resolved.is_relative_to(root) for root in self.ignore)

    def notify(self, event: WatchEvent) -> None:
        """Enqueue *event*; safe to call from any thread."""
        if not self.is_relevant(event.path):
            return
        try:
            self.events.put_nowait(event)
        except queue.Full:
            # A queued event already guarantees a rebuild.
            logger.debug("Event queue full, dropping %s %s", event.kind, event.path)

    def stop(self) -> None:
        """Ask the control loop to return after the current step."""
        self._stop.set()

    # -----------------------------------------------------------------------
    # Control loop
    # -----------------------------------------------------------------------

    @property
    def deadline(self) -> float | None:
        return self._deadline

    def _wait_time(self) -> float:
        if self._deadline is None:
            return self.poll_interval
        return max(0.0, min(self.poll_interval, self._deadline - self.clock()))

    def _drain(self, handle: Callable[[WatchEvent], None]) -> int:
        count = 0
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                return count
            handle(event)
            count += 1

    def _on_event(self, event: WatchEvent) -> None:
        if self._deadline is None:
            self.callbacks.on_change(event.path)
        self._deadline = self.clock() + self.session.debounce_window_ms / 1000.0

    def _mark_pending(self, event: WatchEvent) -> None:
        if not self.session.pending_rebuild:
            logger.debug("Change during build: %s", event.path)
            self.session.pending_rebuild = True
            self.callbacks.on_rebuild_pending()

    def step(self) -> BuildResult | None:
        """Wait for one event or the debounce deadline; returns a result if a build ran."""
        try:
            event = self.events.get(timeout=self._wait_time())
        except queue.Empty:
            event = None
        if event is not None:
            self._on_event(event)
            self._drain(self._on_event)
            return None
        if self._deadline is not None and self.clock() >= self._deadline:
            self._deadline = None
            return self.rebuild("change")
        return None

    def rebuild(self, reason: str) -> BuildResult | None:
        """Run one build, then at most one follow-up per build while changes keep arriving.

        Returns ``None`` when the output directory is locked by another build;
        the debounce deadline is re-armed so the build is retried.
        """
        result = self._build(reason)
        while result is not None and self.session.pending_rebuild:
            self.session.pending_rebuild = False
            result = self._build("changes during previous build")
        return result

    def _build(self, reason: str) -> BuildResult | None:
        request = self.make_request(reason)
        self.session.build_in_flight = True
        self.session.builds_started += 1
        busy: BusyError | None = None
        try:
            result = self.pipeline.run(request)
        except BusyError as exc:
            busy = exc
        finally:
            # Everything queued while the build ran collapses into one flag.
            self._drain(self._mark_pending)
            self.session.build_in_flight = False
        if busy is not None:
            # The retry covers any change queued meanwhile.
            self.session.pending_rebuild = False
            window = self.session.debounce_window_ms
            self._deadline = self.clock() + window / 1000.0
            self.callbacks.on_warning(f"{busy}; retrying in {window} ms")
            return None
        self.session.last_build_result = result
        return result

    def loop(self) -> None:
        """Run until ``stop()`` is called."""
        while not self._stop.is_set():
            self.step()

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    def watch(self, paths: Sequence[Path], *, initial_build: bool = True) -> None:
        """Subscribe to *paths* and rebuild on change until interrupted."""
        if not paths:
            raise WatchSubscriptionError("Nothing to watch: no source directories exist")
        handler = _QueueingHandler(self)
        observer = self.observer_factory()
        try:
            for path in paths:
                observer.schedule(handler, str(path), recursive=True)
            observer.start()
        except OSError as exc:
            raise WatchSubscriptionError(f"Cannot watch {', '.join(map(str, paths))}: {exc}") from exc

        self.callbacks.on_watch_start(paths, self.session.debounce_window_ms)
        try:
            if initial_build:
                self.rebuild("initial build")
            self.loop()
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping watcher")
        finally:
            observer.stop()
            observer.join(timeout=5)
        logger.info("Watcher stopped after %d builds", self.session.builds_started)
