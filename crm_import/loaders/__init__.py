"""Target CRM interfaces: commit sinks and existence lookups."""

from .base import BaseLoader, TargetLookup
from .memory_loader import InMemoryLoader
from .api_loader import APILoader

__all__ = [
    "BaseLoader",
    "TargetLookup",
    "InMemoryLoader",
    "APILoader",
]
