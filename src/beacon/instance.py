"""The instance announced to the registry and its lifecycle states."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .config import InstanceConfig

HOST_PLACEHOLDER = "__HOST__"

_DATA_CENTER_CLASSES = {
    "amazon": "com.netflix.appinfo.AmazonInfo",
}
_DEFAULT_DATA_CENTER_CLASS = "com.netflix.appinfo.InstanceInfo$DefaultDataCenterInfo"


class InstanceStatus(Enum):
    """Instance status as understood by the registry server"""
    UP = "UP"
    DOWN = "DOWN"
    STARTING = "STARTING"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"
    UNKNOWN = "UNKNOWN"


class LifecycleState(Enum):
    """Registration state of this client"""
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    REGISTERED = "registered"
    HEARTBEATING = "heartbeating"
    DEREGISTERING = "deregistering"


@dataclass
class InstanceDescriptor:
    """Mutable view of the instance, seeded from the immutable InstanceConfig.

    status, host/IP, data-center metadata and the URL templates change during
    the process lifetime; everything else is fixed at construction.
    """
    app: str
    vip_address: str
    port: int
    host_name: str
    ip_addr: str
    data_center_name: str
    data_center_metadata: Dict[str, Any] = field(default_factory=dict)
    status: str = InstanceStatus.STARTING.value
    instance_id: Optional[str] = None
    status_page_url: Optional[str] = None
    health_check_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: InstanceConfig) -> 'InstanceDescriptor':
        dci = config.data_center_info
        return cls(
            app=config.app,
            vip_address=config.vip_address,
            port=config.port,
            host_name=config.host_name,
            ip_addr=config.ip_addr,
            data_center_name=dci.name,
            data_center_metadata=dict(dci.metadata),
            status=config.status,
            instance_id=config.instance_id,
            status_page_url=config.status_page_url,
            health_check_url=config.health_check_url,
            metadata=dict(config.metadata),
        )

    @property
    def is_amazon(self) -> bool:
        return self.data_center_name.lower() == "amazon"

    @property
    def id(self) -> str:
        """Explicit instance id, else the EC2 instance-id, else the host name."""
        if self.instance_id:
            return self.instance_id
        if self.is_amazon and self.data_center_metadata.get("instance-id"):
            return self.data_center_metadata["instance-id"]
        return self.host_name

    def apply_metadata(self, metadata: Dict[str, Any], use_local: bool = False) -> None:
        """Merge cloud metadata and take host name and IP from it."""
        self.data_center_metadata.update(metadata)
        host = metadata.get("local-hostname" if use_local else "public-hostname")
        ip_addr = metadata.get("local-ipv4" if use_local else "public-ipv4")
        if host:
            self.host_name = host
        if ip_addr:
            self.ip_addr = ip_addr
        if host and self.status_page_url:
            self.status_page_url = self.status_page_url.replace(HOST_PLACEHOLDER, host)
        if host and self.health_check_url:
            self.health_check_url = self.health_check_url.replace(HOST_PLACEHOLDER, host)

    def to_dict(self) -> Dict[str, Any]:
        """Registration payload in the registry's JSON shape."""
        data: Dict[str, Any] = {
            "app": self.app,
            "hostName": self.host_name,
            "ipAddr": self.ip_addr,
            "vipAddress": self.vip_address,
            "status": self.status,
            "port": {"$": self.port, "@enabled": "true"},
            "dataCenterInfo": {
                "@class": _DATA_CENTER_CLASSES.get(
                    self.data_center_name.lower(), _DEFAULT_DATA_CENTER_CLASS
                ),
                "name": self.data_center_name,
                "metadata": dict(self.data_center_metadata),
            },
        }
        if self.instance_id:
            data["instanceId"] = self.instance_id
        if self.status_page_url:
            data["statusPageUrl"] = self.status_page_url
        if self.health_check_url:
            data["healthCheckUrl"] = self.health_check_url
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return {"instance": data}
