"""DNS TXT record discovery of the registry host.

Follows the Eureka naming convention:

    txt.<region>.<host>  ->  region-local names (e.g. us-east-1c.eureka.example.com)
    txt.<name>           ->  registry hostnames

Only the host of the current service URL is swapped; the service URL ring
itself is never rewritten, so every lookup resolves again from scratch.
"""

import logging
import random
import urllib.parse
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from dnslib import QTYPE, DNSRecord
from dnslib.dns import DNSError

from .errors import DiscoveryError

logger = logging.getLogger(__name__)

TxtLookup = Callable[[str], List[str]]


def _system_nameservers() -> List[Tuple[str, int]]:
    resolvers: List[Tuple[str, int]] = []
    resolv_path = Path("/etc/resolv.conf")
    if not resolv_path.exists():
        return resolvers
    for line in resolv_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("nameserver"):
            parts = line.split()
            if len(parts) >= 2:
                resolvers.append((parts[1], 53))
    return resolvers


def _parse_resolver(address: str) -> Tuple[str, int]:
    """Parse ``host``, ``host:port``, ``ipv6`` or ``[ipv6]:port``."""
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port = rest.lstrip(":")
        return host, int(port) if port else 53
    if address.count(":") > 1:
        return address, 53
    host, _, port = address.partition(":")
    return host, int(port) if port else 53


class DnslibTxtLookup:
    """Resolve TXT records by querying nameservers directly with dnslib.

    Nameservers are tried in order; the first one that answers wins. TXT
    strings are split on whitespace so a record holding several names
    yields several entries.
    """

    def __init__(self, resolver: Optional[str] = None, timeout: float = 5.0):
        self.timeout = timeout
        self._resolvers = [_parse_resolver(resolver)] if resolver else None

    def __call__(self, name: str) -> List[str]:
        resolvers = self._resolvers or _system_nameservers()
        if not resolvers:
            raise DiscoveryError("No DNS resolvers available for TXT lookup")

        query = DNSRecord.question(name, "TXT")
        last_error: Optional[Exception] = None
        for host, port in resolvers:
            try:
                response = DNSRecord.parse(
                    query.send(host, port=port, timeout=self.timeout, ipv6=":" in host)
                )
            except (OSError, DNSError) as exc:
                logger.debug("TXT query for %s failed (%s:%d): %s", name, host, port, exc)
                last_error = exc
                continue
            values = self._txt_values(response)
            if values:
                return values
            last_error = DiscoveryError(f"no TXT records for {name}")
        raise DiscoveryError(f"TXT lookup for {name} failed: {last_error}")

    @staticmethod
    def _txt_values(response: DNSRecord) -> List[str]:
        values: List[str] = []
        for rr in response.rr:
            if rr.rtype != QTYPE.TXT:
                continue
            for chunk in rr.rdata.data:
                text = chunk.decode() if isinstance(chunk, bytes) else str(chunk)
                values.extend(text.split())
        return values


class DnsEndpointResolver:
    """Two-stage TXT lookup that swaps the host of a service URL."""

    def __init__(
        self,
        region: Optional[str],
        lookup_txt: Optional[TxtLookup] = None,
        rng: Optional[random.Random] = None,
    ):
        self.region = region
        self._lookup_txt = lookup_txt or DnslibTxtLookup()
        self._rng = rng or random.Random()

    def locate_host(self, service_url: str) -> str:
        """Return a registry hostname for the region of *service_url*."""
        if not self.region:
            raise DiscoveryError(
                "EC2 region was undefined. "
                "eureka.ec2_region must be set to resolve Eureka using DNS records."
            )
        host = urllib.parse.urlsplit(service_url).hostname

        try:
            region_names = self._lookup_txt(f"txt.{self.region}.{host}")
        except DiscoveryError as exc:
            raise DiscoveryError(
                f"Error resolving eureka server list for region [{self.region}] using DNS: [{exc}]"
            ) from exc
        if not region_names:
            raise DiscoveryError(f"No eureka servers listed for region [{self.region}]")

        chosen = self._rng.choice(region_names)
        try:
            hosts = self._lookup_txt(f"txt.{chosen}")
        except DiscoveryError as exc:
            logger.warning("Failed to locate DNS record for Eureka: %s", exc)
            raise DiscoveryError(f"Error locating eureka server using DNS: [{exc}]") from exc
        if not hosts:
            raise DiscoveryError(f"No eureka hosts listed under txt.{chosen}")

        logger.debug("Found Eureka Server @ %s", hosts)
        return hosts[0]

    def resolve(self, service_url: str) -> str:
        """Return *service_url* with only its host replaced by a DNS-located one."""
        resolved = self.locate_host(service_url)
        return replace_host(service_url, resolved)


def replace_host(url: str, host: str) -> str:
    """Swap the hostname of *url*, keeping scheme, credentials, port, path and query."""
    parts = urllib.parse.urlsplit(url)
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    netloc = host
    if parts.port is not None:
        netloc = f"{host}:{parts.port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo += f":{parts.password}"
        netloc = f"{userinfo}@{netloc}"
    return urllib.parse.urlunsplit(parts._replace(netloc=netloc))
