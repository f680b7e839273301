"""
Local Service Registry

This package provides:
1. RegistryCache: app-id and VIP indexes over the last fetched registry
2. RegistryFetcher: fetches the full registry and installs it atomically
3. transform_registry: turns a registry payload into a RegistrySnapshot
"""

from .cache import (
    RegistryCache,
    RegistrySnapshot,
    transform_registry,
)
from .fetcher import RegistryFetcher

__all__ = [
    'RegistryCache',
    'RegistryFetcher',
    'RegistrySnapshot',
    'transform_registry',
]
