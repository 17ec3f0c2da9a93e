"""Deployment history stored as JSON files."""

import json
import os
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from vmship.deploy.models import DeploymentRecord, DeploymentStatus
from vmship.utils.errors import StateError
from vmship.utils.logging import get_logger

logger = get_logger(__name__)


class HistoryError(StateError):
    """Exception raised when a history record cannot be read or written."""


class DeploymentHistory:
    """Keeps one JSON file per deployment record."""

    def __init__(self, history_dir: str):
        """
        Initialize deployment history.

        Args:
            history_dir: Directory holding the record files
        """
        self.history_dir = Path(history_dir)
        self.logger = get_logger(__name__)

    def save(self, record: DeploymentRecord) -> Path:
        """
        Write a record, replacing any earlier version of it.

        Returns:
            Path of the record file
        """
        self.history_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(record.deployment_id)
        temp_path = path.with_suffix(".json.tmp")
        try:
            with open(temp_path, "w") as f:
                json.dump(record.model_dump(mode="json"), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            temp_path.replace(path)
        except OSError as e:
            raise HistoryError(f"Failed to save deployment record {record.deployment_id}: {e}", cause=e)

        self.logger.debug(f"Saved deployment record {record.deployment_id}")
        return path

    def get(self, deployment_id: str) -> DeploymentRecord:
        """
        Get a deployment record.

        Raises:
            HistoryError: If the record does not exist or cannot be parsed
        """
        path = self._path(deployment_id)
        if not path.exists():
            raise HistoryError(f"Deployment not found: {deployment_id}")
        return self._load(path)

    def list_deployments(self, host: Optional[str] = None, limit: int = 50) -> List[DeploymentRecord]:
        """
        List recent deployments.

        Unreadable files are skipped with a warning.

        Args:
            host: Only records for this target host
            limit: Maximum number of records to return

        Returns:
            Deployment records sorted by start time (newest first)
        """
        if not self.history_dir.exists():
            return []

        records = []
        for path in self.history_dir.glob("*.json"):
            try:
                record = self._load(path)
            except HistoryError as e:
                self.logger.warning(f"Skipping unreadable history file {path.name}: {e.message}")
                continue
            if host is None or record.target_host == host:
                records.append(record)

        records.sort(key=lambda r: (r.started_at, r.deployment_id), reverse=True)
        return records[:limit]

    def last_active_artifact(self, host: str) -> Optional[str]:
        """
        Artifact currently expected to run on host.

        That is the artifact of the newest Healthy deployment, or the
        restored artifact of the newest RolledBack one. Failed deployments
        leave the host in an unknown state and are passed over.
        """
        for record in self.list_deployments(host=host, limit=1000):
            if record.status == DeploymentStatus.HEALTHY:
                return record.artifact_ref
            if record.status == DeploymentStatus.ROLLED_BACK:
                return record.previous_artifact_ref
        return None

    def _path(self, deployment_id: str) -> Path:
        return self.history_dir / f"{deployment_id}.json"

    def _load(self, path: Path) -> DeploymentRecord:
        try:
            with open(path, "r") as f:
                return DeploymentRecord.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise HistoryError(f"Failed to load deployment record {path.name}: {e}", cause=e)
