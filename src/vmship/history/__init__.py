"""Deployment history tracking."""

from .manager import DeploymentHistory, HistoryError

__all__ = [
    "DeploymentHistory",
    "HistoryError",
]
