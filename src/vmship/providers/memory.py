"""In-process provider that simulates remote resources."""

import itertools
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from vmship.providers.base import ProviderClient, ProviderResult
from vmship.state.models import ResourceKind
from vmship.utils.errors import ErrorContext, ProviderError, ResourceNotFoundError
from vmship.utils.logging import get_logger

logger = get_logger(__name__)

# Remote ID prefix per kind, shaped like the real provider's identifiers
ID_PREFIXES = {
    ResourceKind.COMPUTE_INSTANCE: "i",
    ResourceKind.SECURITY_GROUP: "sg",
    ResourceKind.REPOSITORY: "repo",
    ResourceKind.IAM_ROLE: "role",
}


class InMemoryProvider(ProviderClient):
    """Keeps resources in a dictionary.

    Used for dry runs and tests. Failures can be injected per operation and
    per attribute ``name`` (or remote ID), and every call is recorded in
    ``calls`` in the order it started.
    """

    name = "memory"

    def __init__(self, delay: float = 0.0):
        """
        Initialize InMemoryProvider.

        Args:
            delay: Seconds each call sleeps before acting
        """
        self.delay = delay
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []  # (operation, name or remote_id)
        self._failures: Dict[Tuple[str, str], List[Exception]] = {}
        self._tokens: Dict[str, str] = {}  # create token -> remote_id
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self._active = 0
        self.max_concurrency = 0

    def fail(self, operation: str, target: str, error: Optional[Exception] = None, times: int = 1) -> None:
        """Make the next ``times`` calls of operation on target raise.

        Args:
            operation: ``create``, ``update`` or ``delete``
            target: Attribute ``name`` for create, remote ID otherwise
            error: Exception to raise (default: non-retryable ProviderError)
            times: Number of calls that fail
        """
        error = error or ProviderError(f"Injected {operation} failure for {target}")
        with self._lock:
            self._failures.setdefault((operation, target), []).extend([error] * times)

    def create(
        self,
        kind: ResourceKind,
        attributes: Dict[str, Any],
        token: Optional[str] = None
    ) -> ProviderResult:
        target = str(attributes.get("name", ""))
        self._enter("create", target)
        try:
            with self._lock:
                remote_id = self._tokens.get(token) if token else None
                if remote_id is not None and remote_id in self.resources:
                    logger.debug(f"Create with token {token} already made {remote_id}")
                    return ProviderResult(remote_id=remote_id, attributes=dict(self.resources[remote_id]["outputs"]))

                remote_id = f"{ID_PREFIXES[kind]}-{next(self._counter):08x}"
                outputs = self._outputs(kind, remote_id, attributes)
                self.resources[remote_id] = {"kind": kind, "attributes": dict(attributes), "outputs": outputs}
                if token:
                    self._tokens[token] = remote_id
            logger.debug(f"Created {kind.value} {remote_id}")
            return ProviderResult(remote_id=remote_id, attributes=dict(outputs))
        finally:
            self._exit()

    def update(self, remote_id: str, kind: ResourceKind, diff: Dict[str, Any]) -> Dict[str, Any]:
        self._enter("update", remote_id)
        try:
            with self._lock:
                resource = self._lookup(remote_id, "update")
                for key, value in diff.items():
                    if value is None:
                        resource["attributes"].pop(key, None)
                    else:
                        resource["attributes"][key] = value
                resource["kind"] = kind
                resource["outputs"] = self._outputs(kind, remote_id, resource["attributes"])
                return dict(resource["outputs"])
        finally:
            self._exit()

    def delete(self, remote_id: str, kind: ResourceKind) -> None:
        self._enter("delete", remote_id)
        try:
            with self._lock:
                self._lookup(remote_id, "delete")
                del self.resources[remote_id]
            logger.debug(f"Deleted {kind.value} {remote_id}")
        finally:
            self._exit()

    def _enter(self, operation: str, target: str) -> None:
        with self._lock:
            self.calls.append((operation, target))
            self._active += 1
            self.max_concurrency = max(self.max_concurrency, self._active)
            pending = self._failures.get((operation, target))
            error = pending.pop(0) if pending else None
        if self.delay:
            time.sleep(self.delay)
        if error is not None:
            with self._lock:
                self._active -= 1
            raise error

    def _exit(self) -> None:
        with self._lock:
            self._active -= 1

    def _lookup(self, remote_id: str, operation: str) -> Dict[str, Any]:
        """Find a resource; caller must hold the lock."""
        resource = self.resources.get(remote_id)
        if resource is None:
            raise ResourceNotFoundError(
                f"Remote resource {remote_id} does not exist",
                context=ErrorContext(remote_id=remote_id, operation=operation),
            )
        return resource

    @staticmethod
    def _outputs(kind: ResourceKind, remote_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Outputs the simulated provider reports for a resource."""
        outputs: Dict[str, Any] = {}
        name = attributes.get("name", remote_id)
        if kind == ResourceKind.COMPUTE_INSTANCE:
            octet = int(remote_id.split("-")[-1], 16) % 250 + 1
            outputs["public_ip"] = f"203.0.113.{octet}"
            outputs["private_ip"] = f"10.0.0.{octet}"
        elif kind == ResourceKind.REPOSITORY:
            outputs["repository_url"] = f"registry.local/{name}"
        elif kind == ResourceKind.IAM_ROLE:
            outputs["arn"] = f"arn:memory:iam::000000000000:role/{name}"
            outputs["instance_profile"] = name
        elif kind == ResourceKind.SECURITY_GROUP:
            outputs["group_id"] = remote_id
        return outputs
