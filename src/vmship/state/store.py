"""Durable state store with optimistic compare-and-swap locking."""

import fcntl
import json
import os
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Optional

from pydantic import ValidationError

from vmship.state.models import StateDocument, StateRecord
from vmship.utils.errors import ConflictError, NotFoundError, StateError
from vmship.utils.logging import get_logger

logger = get_logger(__name__)


class FileStateStore:
    """Persists state records to a JSON file.

    ``compare_and_swap`` is the only way to write a record. Every write
    re-reads the file under an exclusive ``fcntl`` lock, so two processes
    (or two stores in one process) pointed at the same file see each
    other's commits and the loser of a race gets a ConflictError.
    """

    def __init__(self, state_path: str, lock_timeout: float = 30.0):
        """
        Initialize FileStateStore.

        Args:
            state_path: Path to the state file
            lock_timeout: Seconds to wait for the file lock
        """
        self.state_path = Path(state_path)
        self.lock_path = self.state_path.with_suffix(self.state_path.suffix + ".lock")
        self.lock_timeout = lock_timeout
        self._thread_lock = threading.Lock()

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_path.exists()

    def load(self) -> Dict[str, StateRecord]:
        """
        Load every committed record.

        Returns:
            Mapping of logical ID to StateRecord (empty when no state file exists)

        Raises:
            StateError: If the state file is corrupted or invalid
        """
        # Writers replace the file atomically, so a missing file needs no lock
        if not self.state_path.exists():
            return {}
        with self._locked(shared=True):
            return dict(self._read().records)

    def get(self, resource_id: str) -> Optional[StateRecord]:
        """Get a single record, or None if it is not stored."""
        return self.load().get(resource_id)

    def compare_and_swap(
        self, resource_id: str, expected_version: int, new_record: StateRecord
    ) -> StateRecord:
        """
        Store a record if the stored version matches the expected one.

        Args:
            resource_id: Logical resource ID
            expected_version: Version the caller last observed (0 = no record)
            new_record: Record to store; its version is assigned by the store

        Returns:
            The stored record with its new version

        Raises:
            ConflictError: If the stored version differs from expected_version
            StateError: If the state cannot be read or written
        """
        if new_record.id != resource_id:
            raise StateError(
                f"Record ID '{new_record.id}' does not match '{resource_id}'"
            )

        with self._locked(shared=False):
            document = self._read()
            current = document.records.get(resource_id)
            actual_version = current.version if current else 0

            if actual_version != expected_version:
                raise ConflictError(resource_id, expected_version, actual_version)

            stored = new_record.model_copy(
                update={"version": expected_version + 1, "updated_at": datetime.utcnow()}
            )
            document.records[resource_id] = stored
            self._write(document)

        logger.debug(
            f"Committed state for {resource_id} at version {stored.version}",
            extra={"resource_id": resource_id},
        )
        return stored

    def remove(self, resource_id: str, expected_version: Optional[int] = None) -> StateRecord:
        """
        Remove a record.

        Args:
            resource_id: Logical resource ID
            expected_version: If given, the stored version must match it

        Returns:
            The removed record

        Raises:
            NotFoundError: If no record exists for resource_id
            ConflictError: If expected_version is given and differs
        """
        with self._locked(shared=False):
            document = self._read()
            current = document.records.get(resource_id)
            if current is None:
                raise NotFoundError(resource_id)
            if expected_version is not None and current.version != expected_version:
                raise ConflictError(resource_id, expected_version, current.version)

            del document.records[resource_id]
            self._write(document)

        logger.debug(f"Removed state for {resource_id}", extra={"resource_id": resource_id})
        return current

    def _read(self) -> StateDocument:
        """Read the state document; caller must hold the lock."""
        if not self.state_path.exists():
            return StateDocument()

        try:
            with open(self.state_path, "r") as f:
                data = json.load(f)
            return StateDocument.model_validate(data)
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file {self.state_path}: {e}", cause=e)
        except ValidationError as e:
            raise StateError(f"Invalid state file {self.state_path}: {e}", cause=e)
        except OSError as e:
            raise StateError(f"Failed to read state file {self.state_path}: {e}", cause=e)

    def _write(self, document: StateDocument) -> None:
        """Write the document atomically; caller must hold the exclusive lock."""
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        document.updated_at = datetime.utcnow()

        try:
            # Write to temporary file first
            temp_path = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
            with open(temp_path, "w") as f:
                json.dump(document.model_dump(mode="json"), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            temp_path.replace(self.state_path)
        except OSError as e:
            raise StateError(f"Failed to save state file {self.state_path}: {e}", cause=e)

    @contextmanager
    def _locked(self, shared: bool) -> Iterator[None]:
        """Hold the thread lock and an fcntl lock on the lock file."""
        with self._thread_lock:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR)
            try:
                mode = fcntl.LOCK_SH if shared else fcntl.LOCK_EX
                start_time = time.monotonic()
                while True:
                    try:
                        fcntl.flock(fd, mode | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if time.monotonic() - start_time > self.lock_timeout:
                            raise StateError(
                                f"Failed to acquire lock on {self.lock_path} "
                                f"after {self.lock_timeout}s"
                            )
                        time.sleep(0.05)
                try:
                    yield
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
