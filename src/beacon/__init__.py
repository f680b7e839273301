"""
Beacon: Eureka-style service registry client

This package provides:
1. EurekaClient: registers the instance, sends heartbeats, caches the registry
2. load_config / build_config: resolved, immutable client configuration
3. RegistryCache: app-id and VIP lookups over the last fetched registry
"""

from .client import EurekaClient
from .config import ClientConfig, build_config, load_config
from .errors import (
    AuthError,
    BeaconError,
    ConfigurationError,
    DiscoveryError,
    LookupInputError,
    ProtocolError,
    TransportError,
)
from .instance import InstanceStatus, LifecycleState
from .registry import RegistryCache

__version__ = '0.1.0'
__all__ = [
    'AuthError',
    'BeaconError',
    'ClientConfig',
    'ConfigurationError',
    'DiscoveryError',
    'EurekaClient',
    'InstanceStatus',
    'LifecycleState',
    'LookupInputError',
    'ProtocolError',
    'RegistryCache',
    'TransportError',
    'build_config',
    'load_config',
]
