"""
Checkpoint store for Steward.

A checkpoint is the crash-recovery snapshot of the session: session/task
state, the step cursor, the full message thread and token usage. It is
written after every completed step and deleted on clean session end.

Design Principles:
    - Atomic: write to a temporary file in the same directory, fsync, then
      os.replace() over the target, so a crash leaves either the previous or
      the new complete checkpoint, never a partial one
    - Single file: exactly one checkpoint file exists per session
    - No guessing: a checkpoint that cannot be parsed, or whose schema
      version is unknown, is discarded and reported as a recovery failure
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from steward.errors import CheckpointCorruptedError, CheckpointWriteError
from steward.schema import CHECKPOINT_SCHEMA_VERSION, Checkpoint

logger = logging.getLogger(__name__)

CHECKPOINT_SUFFIX = ".checkpoint.json"


def checkpoint_path(directory: Path | str, session_id: str) -> Path:
    """Location of the single checkpoint file for a session."""
    return Path(directory) / f"{session_id}{CHECKPOINT_SUFFIX}"


class CheckpointStore:
    """
    File-backed checkpoint store for one session.

    Usage:
        store = CheckpointStore(checkpoint_path(".steward/checkpoints", session_id))
        store.write(checkpoint)
        snapshot = store.load()   # None if absent
        store.delete()

    Attributes:
        path: The checkpoint file
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    @classmethod
    def for_session(cls, directory: Path | str, session_id: str) -> "CheckpointStore":
        """Create the store for a session inside a checkpoint directory."""
        return cls(checkpoint_path(directory, session_id))

    def exists(self) -> bool:
        return self.path.exists()

    def write(self, snapshot: Checkpoint) -> None:
        """
        Atomically persist a checkpoint, replacing any previous one.

        Raises:
            CheckpointWriteError: If the checkpoint could not be written; the
                previous checkpoint (if any) is left intact
        """
        payload = snapshot.model_dump_json()
        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                dir=str(self.path.parent),
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
            self._fsync_directory()
        except OSError as e:
            raise CheckpointWriteError(
                operation="write",
                path=str(self.path),
                underlying_error=str(e),
            ) from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.debug("Could not remove temporary checkpoint %s", tmp_name)

        logger.debug(
            "Checkpoint written: %s (step_cursor=%d, messages=%d)",
            self.path,
            snapshot.step_cursor,
            len(snapshot.messages),
        )

    def load(self) -> Checkpoint | None:
        """
        Load the checkpoint.

        Returns:
            The checkpoint, or None if no checkpoint exists

        Raises:
            CheckpointCorruptedError: If the file is unreadable, malformed or
                has an unknown schema version. The file is deleted first.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            self._discard()
            raise CheckpointCorruptedError(
                operation="load", path=str(self.path), reason=f"unreadable: {e}"
            ) from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            self._discard()
            raise CheckpointCorruptedError(
                operation="load", path=str(self.path), reason=f"invalid JSON: {e}"
            ) from e

        version = data.get("schema_version") if isinstance(data, dict) else None
        if version != CHECKPOINT_SCHEMA_VERSION:
            self._discard()
            raise CheckpointCorruptedError(
                operation="load",
                path=str(self.path),
                reason=f"unsupported schema version: {version!r}",
            )

        try:
            return Checkpoint.model_validate(data)
        except ValidationError as e:
            self._discard()
            raise CheckpointCorruptedError(
                operation="load", path=str(self.path), reason=f"schema mismatch: {e}"
            ) from e

    def delete(self) -> bool:
        """
        Delete the checkpoint.

        Returns:
            True if a checkpoint was removed, False if none existed
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Checkpoint deleted: %s", self.path)
        return True

    def _discard(self) -> None:
        logger.warning("Discarding unrecoverable checkpoint %s", self.path)
        try:
            self.path.unlink()
        except OSError:
            logger.warning("Could not delete corrupt checkpoint %s", self.path)

    def _fsync_directory(self) -> None:
        """Flush the rename itself; not supported on every platform."""
        if os.name != "posix":
            return
        try:
            dir_fd = os.open(str(self.path.parent), os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)

    def __repr__(self) -> str:
        return f"<CheckpointStore: {self.path}>"
