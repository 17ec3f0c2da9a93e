"""Provider clients that create, update and delete remote resources."""

from .base import ProviderClient, ProviderResult
from .memory import InMemoryProvider
from .aws import AWSProvider

__all__ = [
    "ProviderClient",
    "ProviderResult",
    "InMemoryProvider",
    "AWSProvider",
]
