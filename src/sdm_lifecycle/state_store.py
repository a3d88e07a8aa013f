from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

from pydantic import ValidationError

from .models import LifecycleEvent, LifecycleSnapshot, utc_now

if TYPE_CHECKING:
    from .controller import LifecycleController

logger = logging.getLogger(__name__)


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive flock on ``<path>.lock`` so ``path`` itself can be replaced."""
    lock_path = path.with_name(f"{path.name}.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _parse_snapshot(path: Path, lifecycle_id: str) -> LifecycleSnapshot:
    if not path.is_file():
        raise FileNotFoundError(f"lifecycle {lifecycle_id} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"lifecycle {lifecycle_id} at {path} is not UTF-8") from exc
    if not text.strip():
        raise ValueError(f"lifecycle {lifecycle_id} at {path} is empty")
    try:
        return LifecycleSnapshot.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(f"lifecycle {lifecycle_id} at {path} failed validation: {exc}") from exc


def sanitize_lifecycle_id(lifecycle_id: str) -> str:
    """Validate a lifecycle ID for use as a file name.

    Raises:
        ValueError: If the ID is empty or contains characters outside ``[A-Za-z0-9._-]``.
    """
    value = lifecycle_id.strip()
    if not value:
        raise ValueError("lifecycle_id must be non-empty")
    if not re.fullmatch(r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}", value):
        raise ValueError(f"lifecycle_id is not filesystem-safe: {lifecycle_id!r}")
    return value


# ---------------------------------------------------------------------------
# LifecycleStateStore
# ---------------------------------------------------------------------------

class LifecycleStateStore:
    """Filesystem store of lifecycle snapshots.

    Active lifecycles live under ``lifecycles/``, archived ones under
    ``archive/``.  All writes are atomic temp-file-then-rename, and every
    read-modify-write holds an exclusive ``fcntl`` lock so that several
    processes advancing the same lifecycle never interleave.  Archived
    snapshots are immutable.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.lifecycles_dir = self.root / "lifecycles"
        self.archive_dir = self.root / "archive"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        for directory in (self.root, self.lifecycles_dir, self.archive_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def lifecycle_path(self, lifecycle_id: str) -> Path:
        return self.lifecycles_dir / f"{sanitize_lifecycle_id(lifecycle_id)}.json"

    def archive_path(self, lifecycle_id: str) -> Path:
        return self.archive_dir / f"{sanitize_lifecycle_id(lifecycle_id)}.json"

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def write(self, snapshot: LifecycleSnapshot) -> Path:
        """Persist an active lifecycle snapshot.

        Raises:
            ValueError: If the lifecycle has been archived.
        """
        path = self.lifecycle_path(snapshot.lifecycle_id)
        with _locked_file(path):
            self._write_unlocked(path, snapshot)
        return path

    def _write_unlocked(self, path: Path, snapshot: LifecycleSnapshot) -> None:
        if snapshot.archived or self.archive_path(snapshot.lifecycle_id).exists():
            raise ValueError(f"Lifecycle {snapshot.lifecycle_id} is archived and cannot be modified")
        _atomic_write_text(path, snapshot.model_dump_json(indent=2))

    def read(self, lifecycle_id: str) -> LifecycleSnapshot:
        """Read a lifecycle, looking in the archive when it is no longer active.

        Raises:
            FileNotFoundError: If the lifecycle does not exist.
            ValueError: If the file is corrupt or fails validation.
        """
        path = self.lifecycle_path(lifecycle_id)
        if not path.is_file():
            archived = self.archive_path(lifecycle_id)
            if archived.is_file():
                return _parse_snapshot(archived, lifecycle_id)
        with _locked_file(path):
            return _parse_snapshot(path, lifecycle_id)

    def list_lifecycles(self, *, include_archived: bool = False) -> list[str]:
        ids = {path.stem for path in self.lifecycles_dir.glob("*.json")}
        if include_archived:
            ids.update(path.stem for path in self.archive_dir.glob("*.json"))
        return sorted(ids)

    # ------------------------------------------------------------------
    # Locked transitions
    # ------------------------------------------------------------------

    def advance(
        self,
        lifecycle_id: str,
        controller: LifecycleController,
        event: LifecycleEvent,
    ) -> LifecycleSnapshot:
        """Apply ``event`` to a stored lifecycle under an exclusive lock.

        Raises:
            FileNotFoundError: If the lifecycle does not exist.
            ValueError: If the lifecycle is archived or its file is corrupt.
        """
        path = self.lifecycle_path(lifecycle_id)
        with _locked_file(path):
            snapshot = _parse_snapshot(path, lifecycle_id)
            advanced = controller.advance(snapshot, event)
            self._write_unlocked(path, advanced)
        logger.debug("Stored lifecycle %s after %s event %s", lifecycle_id, event.kind.value, event.event_id)
        return advanced

    def cancel(
        self,
        lifecycle_id: str,
        controller: LifecycleController,
        reason: str | None = None,
    ) -> LifecycleSnapshot:
        path = self.lifecycle_path(lifecycle_id)
        with _locked_file(path):
            snapshot = _parse_snapshot(path, lifecycle_id)
            cancelled = controller.cancel(snapshot, reason)
            self._write_unlocked(path, cancelled)
        return cancelled

    def archive(self, lifecycle_id: str) -> Path:
        """Move a finished lifecycle to the immutable archive.

        Raises:
            FileNotFoundError: If the lifecycle is not active.
            ValueError: If some goal has not reached a terminal state.
        """
        path = self.lifecycle_path(lifecycle_id)
        target = self.archive_path(lifecycle_id)
        with _locked_file(path):
            snapshot = _parse_snapshot(path, lifecycle_id)
            if not snapshot.is_complete:
                pending = sorted(goal.unique_name for goal in snapshot.goals.values() if not goal.is_terminal)
                raise ValueError(f"Lifecycle {lifecycle_id} still has unfinished goals: {', '.join(pending)}")
            snapshot.archived = True
            snapshot.updated_at = utc_now()
            _atomic_write_text(target, snapshot.model_dump_json(indent=2))
            path.unlink()
        logger.info("Archived lifecycle %s (%s)", lifecycle_id, snapshot.outcome.value if snapshot.outcome else "unknown")
        return target
