"""Build output directory state: current artifact, build claim, cleanup."""

from __future__ import annotations

import logging
import os
import shutil
import sys
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from .errors import ArtifactIOError, BusyError
from .models import ArtifactRecord, BuildResult

logger = logging.getLogger(__name__)

RECORD_FILE = ".paperx-artifact.json"
LOCK_SUFFIX = ".paperx.lock"


class ArtifactManager:
    """Owns the output directory and the pointer to the last good artifact.

    The pointer is kept in memory and persisted as ``.paperx-artifact.json``
    inside the output directory so a later ``open`` can find it.  Only
    ``record_success`` writes it; failed builds never touch it.
    """

    def __init__(self, output_dir: str | Path) -> None:
        self.output_dir = Path(output_dir)
        self._current: ArtifactRecord | None = None
        self._lock = threading.Lock()
        self._in_flight = False

    @property
    def record_path(self) -> Path:
        return self.output_dir / RECORD_FILE

    # -----------------------------------------------------------------------
    # Build claim
    # -----------------------------------------------------------------------

    @property
    def lock_path(self) -> Path:
        """Lock file beside the output directory, shared by every process."""
        return self.output_dir.with_name(f".{self.output_dir.name}{LOCK_SUFFIX}")

    @property
    def build_in_flight(self) -> bool:
        return self._in_flight

    def _acquire(self, action: str) -> None:
        with self._lock:
            if self._in_flight:
                raise BusyError(f"Cannot {action} {self.output_dir}: a build is already running")
            self._create_lock_file(action)
            self._in_flight = True

    def _release(self) -> None:
        with self._lock:
            try:
                self.lock_path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove lock file %s: %s", self.lock_path, exc)
            self._in_flight = False

    def _create_lock_file(self, action: str) -> None:
        while True:
            try:
                self.lock_path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = _lock_owner(self.lock_path)
                if owner is None or _pid_alive(owner):
                    holder = f"process {owner}" if owner is not None else "another process"
                    raise BusyError(
                        f"Cannot {action} {self.output_dir}: a build is running in {holder} ({self.lock_path})"
                    ) from None
                logger.warning("Removing stale lock %s left by process %d", self.lock_path, owner)
                try:
                    self.lock_path.unlink(missing_ok=True)
                except OSError as exc:
                    raise ArtifactIOError(f"Could not remove stale lock {self.lock_path}: {exc}") from exc
                continue
            except OSError as exc:
                raise ArtifactIOError(f"Could not create lock file {self.lock_path}: {exc}") from exc
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(str(os.getpid()))
            return

    @contextmanager
    def claim(self) -> Iterator[Path]:
        """Mark a build in flight for the duration of the block.

        Raises ``BusyError`` if another build, in this process or another,
        already holds the lock for this output directory.
        """
        self._acquire("build in")
        try:
            try:
                self.output_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise ArtifactIOError(f"Could not create {self.output_dir}: {exc}") from exc
            yield self.output_dir
        finally:
            self._release()

    # -----------------------------------------------------------------------
    # Current artifact
    # -----------------------------------------------------------------------

    def record_success(self, result: BuildResult) -> ArtifactRecord:
        """Store *result*'s artifact as the current one."""
        if not result.success or result.artifact_path is None:
            raise ValueError("Only successful builds with an artifact can be recorded")
        record = ArtifactRecord(
            path=result.artifact_path,
            recorded_at=datetime.now(timezone.utc),
            engine=result.engine,
            passes_run=result.passes_run,
        )
        self._current = record
        try:
            self.record_path.write_text(record.model_dump_json(indent=2), encoding="utf-8")
        except OSError as exc:
            # The in-memory pointer is still valid for this process.
            logger.warning("Could not persist artifact record %s: %s", self.record_path, exc)
        logger.debug("Recorded artifact %s", record.path)
        return record

    def current_artifact(self) -> ArtifactRecord | None:
        """Return the last recorded success, or ``None`` ("no artifact yet")."""
        if self._current is not None:
            return self._current
        if not self.record_path.exists():
            return None
        try:
            record = ArtifactRecord.model_validate_json(self.record_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Ignoring unreadable artifact record %s: %s", self.record_path, exc)
            return None
        if not record.path.exists():
            logger.debug("Recorded artifact %s no longer exists", record.path)
            return None
        self._current = record
        return record

    # -----------------------------------------------------------------------
    # Cleanup
    # -----------------------------------------------------------------------

    def clean(self) -> bool:
        """Remove the output directory.  Returns False if there was nothing to remove.

        The directory is renamed to a hidden sibling first so the output path
        disappears in one step; the renamed tree is then deleted.  Any
        failure raises ``ArtifactIOError`` saying what is left on disk.
        """
        self._acquire("clean")
        try:
            return self._remove_output_dir()
        finally:
            self._release()

    def _remove_output_dir(self) -> bool:
        target = self.output_dir
        if not target.exists():
            self._current = None
            return False
        if not target.is_dir():
            raise ArtifactIOError(f"Output path {target} is not a directory")

        trash = target.with_name(f".{target.name}.paperx-trash-{uuid.uuid4().hex[:8]}")
        try:
            target.rename(trash)
        except OSError as exc:
            raise ArtifactIOError(f"Could not remove {target}: {exc}") from exc
        self._current = None

        try:
            shutil.rmtree(trash)
        except OSError as exc:
            raise ArtifactIOError(
                f"Removed {target} but could not delete its contents at {trash}: {exc}"
            ) from exc
        logger.info("Removed %s", target)
        return True


def _lock_owner(path: Path) -> int | None:
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    if pid == os.getpid():
        return True
    if sys.platform == "win32":
        # os.kill(pid, 0) terminates the process on Windows; keep the lock.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
