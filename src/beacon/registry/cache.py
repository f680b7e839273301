#!/usr/bin/env python3
"""
Local Registry Cache

This module provides:
- RegistrySnapshot: immutable app-id and VIP indexes built from one fetch
- transform_registry: turns a registry payload into a RegistrySnapshot
- RegistryCache: holds the current snapshot and answers lookups
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import LookupInputError, ProtocolError

logger = logging.getLogger(__name__)

STATUS_UP = "UP"

Instance = Dict[str, Any]


@dataclass(frozen=True)
class RegistrySnapshot:
    """Both indexes of one registry fetch. Never mutated after construction."""
    apps: Dict[str, List[Instance]] = field(default_factory=dict)
    vips: Dict[str, List[Instance]] = field(default_factory=dict)
    fetched_at: float = 0.0

    def instance_count(self) -> int:
        return sum(len(instances) for instances in self.apps.values())


def _as_list(value: Any) -> List[Any]:
    """Registry JSON collapses one-element arrays into a bare object."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def transform_registry(payload: Any, filter_up_instances: bool = True) -> Optional[RegistrySnapshot]:
    """Index a ``{"applications": {"application": [...]}}`` payload.

    Returns None when the payload holds no application list, in which
    case the existing cache should be kept.
    """
    if not payload:
        logger.warning("Unable to transform empty registry")
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("applications"), dict):
        raise ProtocolError("Registry payload has no 'applications' object")

    applications = payload["applications"].get("application")
    if applications is None:
        return None

    apps: Dict[str, List[Instance]] = {}
    vips: Dict[str, List[Instance]] = {}
    for app in _as_list(applications):
        if not isinstance(app, dict):
            raise ProtocolError(f"Registry application entry is not an object: {app!r:.100}")
        name = app.get("name")
        if not name:
            logger.debug("Skipping application entry without a name")
            continue
        entries = _as_list(app.get("instance"))
        if not all(isinstance(instance, dict) for instance in entries):
            raise ProtocolError(f"Registry application {name} has a malformed instance entry")
        instances = [
            instance for instance in entries
            if not filter_up_instances or instance.get("status") == STATUS_UP
        ]
        apps[name.upper()] = instances
        for instance in instances:
            vip = instance.get("vipAddress")
            if vip:
                vips.setdefault(vip, []).append(instance)

    return RegistrySnapshot(apps=apps, vips=vips, fetched_at=time.time())


class RegistryCache:
    """Read-mostly view of the registry.

    Writers install a whole RegistrySnapshot in one assignment, so readers
    see either the previous snapshot or the new one, never a mix.
    """

    def __init__(self):
        self._snapshot = RegistrySnapshot()

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def install(self, snapshot: RegistrySnapshot) -> None:
        self._snapshot = snapshot
        logger.debug(
            "Registry cache replaced: %d apps, %d instances",
            len(snapshot.apps), snapshot.instance_count(),
        )

    def get_instances_by_app_id(self, app_id: Optional[str]) -> List[Instance]:
        if not app_id:
            raise LookupInputError("Unable to query instances with no appId")
        instances = self._snapshot.apps.get(app_id.upper(), [])
        if not instances:
            logger.warning("Unable to retrieve instances for appId: %s", app_id)
        return list(instances)

    def get_instances_by_vip_address(self, vip_address: Optional[str]) -> List[Instance]:
        if not vip_address:
            raise LookupInputError("Unable to query instances with no vipAddress")
        instances = self._snapshot.vips.get(vip_address, [])
        if not instances:
            logger.warning("Unable to retrieve instances for vipAddress: %s", vip_address)
        return list(instances)

    def app_ids(self) -> List[str]:
        return sorted(self._snapshot.apps)
