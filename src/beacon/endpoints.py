"""Registry endpoint selection: failover ring, DNS override and auth headers."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .auth import AuthGateway
from .discovery import DnsEndpointResolver
from .errors import AuthError, ConfigurationError

logger = logging.getLogger(__name__)


class ServiceUrlRing:
    """Ordered candidate registry URLs. The head is the current endpoint.

    Rotation is a cyclic shift: a URL that failed comes back around after
    one full cycle. No per-URL health is remembered.
    """

    def __init__(self, urls: Iterable[str]):
        self._urls: List[str] = list(urls)
        if not self._urls:
            raise ConfigurationError("At least one eureka service url must be specified")
        self._lock = threading.Lock()

    def current(self) -> str:
        with self._lock:
            return self._urls[0]

    def rotate(self) -> str:
        """Move the current URL to the tail and return the new current URL."""
        with self._lock:
            self._urls.append(self._urls.pop(0))
            return self._urls[0]

    def urls(self) -> List[str]:
        with self._lock:
            return list(self._urls)

    def __len__(self) -> int:
        return len(self._urls)


@dataclass
class Endpoint:
    """The resolved target of a single outbound call."""
    base_url: str
    headers: Dict[str, str] = field(default_factory=dict)

    def url_for(self, *parts: str) -> str:
        base = self.base_url if self.base_url.endswith("/") else self.base_url + "/"
        return base + "/".join(parts)


class EndpointResolver:
    """Resolve the current endpoint for one call.

    Applies the DNS override when configured and attaches a bearer token
    when an auth gateway is present. A token failure is logged and the call
    goes out without an Authorization header.
    """

    def __init__(
        self,
        ring: ServiceUrlRing,
        dns: Optional[DnsEndpointResolver] = None,
        auth: Optional[AuthGateway] = None,
    ):
        self.ring = ring
        self.dns = dns
        self.auth = auth

    def resolve(self) -> Endpoint:
        """Raises DiscoveryError if DNS lookup is enabled and fails."""
        url = self.ring.current()
        if self.dns is not None:
            url = self.dns.resolve(url)

        headers: Dict[str, str] = {}
        if self.auth is not None:
            try:
                token = self.auth.get_token()
            except AuthError as exc:
                logger.error("Unable to obtain an access token, calling without one: %s", exc)
            else:
                headers["Authorization"] = token.header_value
        return Endpoint(base_url=url, headers=headers)

    def rotate(self) -> str:
        new_url = self.ring.rotate()
        logger.info("Switching to eureka server %s", new_url)
        return new_url
