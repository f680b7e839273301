"""Exception hierarchy for the Beacon registry client."""

from typing import Optional


class BeaconError(Exception):
    """Base class for every error raised by Beacon."""


class ConfigurationError(BeaconError):
    """Missing or invalid configuration, raised when the client is built."""


class LookupInputError(BeaconError, ValueError):
    """A cache lookup was called without a key."""


class TransportError(BeaconError):
    """The request never produced a response (connection refused, timeout, DNS)."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class ProtocolError(BeaconError):
    """The registry server answered with an unexpected status or body."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class DiscoveryError(BeaconError):
    """DNS based discovery of the registry host failed."""


class AuthError(BeaconError):
    """A bearer token could not be obtained."""
