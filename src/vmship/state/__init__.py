"""State management module for tracking provisioned resources."""

from .models import ResourceKind, ResourceSpec, StateDocument, StateRecord
from .store import FileStateStore

__all__ = [
    "ResourceKind",
    "ResourceSpec",
    "StateRecord",
    "StateDocument",
    "FileStateStore",
]
