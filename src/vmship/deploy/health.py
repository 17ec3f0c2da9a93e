"""Health probes for the deployed service."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import requests

from vmship.config.models import HealthConfig
from vmship.deploy.channel import RemoteChannel
from vmship.utils.errors import ChannelError


@dataclass
class ProbeResult:
    """Result of one probe attempt."""
    healthy: bool
    detail: str = ""


class HealthProbe(ABC):
    """Checks whether the service on a host is healthy."""

    @abstractmethod
    def check(self, host: str) -> ProbeResult:
        """Probe the service once. Must not raise for an unhealthy service."""
        pass


class HttpHealthProbe(HealthProbe):
    """Requests the service over HTTP from the machine running the engine."""

    def __init__(
        self,
        port: int,
        settings: Optional[HealthConfig] = None,
        session: Optional[requests.Session] = None
    ):
        self.port = port
        self.settings = settings or HealthConfig()
        self.session = session or requests.Session()

    def url(self, host: str) -> str:
        return f"http://{host}:{self.port}{self.settings.path}"

    def check(self, host: str) -> ProbeResult:
        url = self.url(host)
        try:
            response = self.session.get(url, timeout=self.settings.timeout, allow_redirects=False)
        except requests.RequestException as e:
            return ProbeResult(healthy=False, detail=f"{type(e).__name__}: {e}")

        healthy = response.status_code == self.settings.expected_status
        return ProbeResult(healthy=healthy, detail=f"GET {url} -> {response.status_code}")


class CommandHealthProbe(HealthProbe):
    """Runs a command on the host (curl against localhost by default)."""

    def __init__(self, channel: RemoteChannel, command: str, timeout: Optional[float] = None):
        self.channel = channel
        self.command = command
        self.timeout = timeout

    def check(self, host: str) -> ProbeResult:
        try:
            result = self.channel.run(host, self.command, timeout=self.timeout)
        except ChannelError as e:
            return ProbeResult(healthy=False, detail=e.message)
        detail = f"exit {result.exit_code}"
        if result.output:
            detail += f": {result.output}"
        return ProbeResult(healthy=result.succeeded, detail=detail)
