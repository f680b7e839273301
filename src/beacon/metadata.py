"""EC2 instance metadata used to enrich the registered instance."""

import logging
from typing import Dict, Optional, Protocol

from .errors import BeaconError
from .transport import HttpTransport

logger = logging.getLogger(__name__)

METADATA_HOST = "http://169.254.169.254"

# Metadata key -> path under /latest/meta-data/
_METADATA_PATHS = {
    "ami-id": "ami-id",
    "instance-id": "instance-id",
    "instance-type": "instance-type",
    "local-ipv4": "local-ipv4",
    "local-hostname": "local-hostname",
    "availability-zone": "placement/availability-zone",
    "public-hostname": "public-hostname",
    "public-ipv4": "public-ipv4",
    "mac": "mac",
}


class MetadataProvider(Protocol):
    def fetch_metadata(self) -> Dict[str, str]:
        ...


class Ec2MetadataClient:
    """Reads instance metadata from the EC2 metadata service.

    Keys that cannot be read are left out of the result rather than failing
    the whole fetch; instances without a public address have no
    public-hostname, for example.
    """

    def __init__(self, host: str = METADATA_HOST, transport: Optional[HttpTransport] = None):
        self.host = host.rstrip("/")
        self._transport = transport or HttpTransport(timeout=2.0)

    def _session_headers(self) -> Dict[str, str]:
        """IMDSv2 session token, or no headers when only IMDSv1 is available."""
        try:
            response = self._transport.request(
                "PUT", f"{self.host}/latest/api/token",
                headers={"X-aws-ec2-metadata-token-ttl-seconds": "300"},
            )
        except BeaconError as exc:
            logger.debug("IMDSv2 token request failed, using IMDSv1: %s", exc)
            return {}
        if response.status != 200:
            return {}
        return {"X-aws-ec2-metadata-token": response.text.strip()}

    def _read(self, path: str, headers: Dict[str, str]) -> Optional[str]:
        url = f"{self.host}/latest/meta-data/{path}"
        try:
            response = self._transport.get(url, headers=headers)
        except BeaconError as exc:
            logger.debug("Unable to read metadata %s: %s", path, exc)
            return None
        if response.status != 200:
            return None
        return response.text.strip()

    def fetch_metadata(self) -> Dict[str, str]:
        headers = self._session_headers()
        metadata: Dict[str, str] = {}
        for key, path in _METADATA_PATHS.items():
            value = self._read(path, headers)
            if value is not None:
                metadata[key] = value

        mac = metadata.get("mac")
        if mac:
            vpc_id = self._read(f"network/interfaces/macs/{mac}/vpc-id", headers)
            if vpc_id is not None:
                metadata["vpc-id"] = vpc_id

        logger.info("Fetched %d EC2 metadata values", len(metadata))
        return metadata
