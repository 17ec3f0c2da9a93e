"""Provider client interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from vmship.state.models import ResourceKind


@dataclass
class ProviderResult:
    """Outcome of a successful create call."""
    remote_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)  # Provider-reported outputs


class ProviderClient(ABC):
    """Base class for remote resource providers.

    Implementations must be safe to call from several worker threads at
    once. Every failure is raised as a ProviderError (or subclass); errors
    worth retrying carry ``retryable=True``.
    """

    name = "provider"

    @abstractmethod
    def create(
        self,
        kind: ResourceKind,
        attributes: Dict[str, Any],
        token: Optional[str] = None
    ) -> ProviderResult:
        """Create a remote resource.

        Args:
            kind: Resource kind
            attributes: Fully resolved attributes
            token: Idempotency key; repeating a create with the same token
                returns the resource the first call made instead of a new one

        Returns:
            ProviderResult with the remote identifier and reported outputs
        """
        pass

    @abstractmethod
    def update(self, remote_id: str, kind: ResourceKind, diff: Dict[str, Any]) -> Dict[str, Any]:
        """Apply changed attributes to an existing remote resource.

        Args:
            remote_id: Provider identifier of the resource
            kind: Resource kind
            diff: Resolved new value per changed key; removed keys map to None

        Returns:
            Provider-reported outputs after the update

        Raises:
            ProviderError: Non-retryable, if a changed key cannot be applied
                without replacing the resource. Nothing is changed in that case.
        """
        pass

    @abstractmethod
    def delete(self, remote_id: str, kind: ResourceKind) -> None:
        """Delete a remote resource.

        Raises:
            ResourceNotFoundError: If the resource no longer exists
        """
        pass
