"""Full-registry fetches from the current registry endpoint."""

import logging
import threading
from typing import Optional

from ..endpoints import EndpointResolver
from ..errors import BeaconError, ProtocolError
from ..events import REGISTRY_UPDATED, EventEmitter
from ..scheduler import Scheduler, TimerHandle
from ..transport import HttpTransport
from .cache import RegistryCache, RegistrySnapshot, transform_registry

logger = logging.getLogger(__name__)


class RegistryFetcher:
    """Fetch the registry, transform it, and install it into a RegistryCache.

    Fetches are serialized. The polling timer skips a tick while a
    previous fetch is still in flight instead of queueing behind it.
    """

    def __init__(
        self,
        endpoints: EndpointResolver,
        transport: HttpTransport,
        cache: RegistryCache,
        events: Optional[EventEmitter] = None,
        filter_up_instances: bool = True,
        scheduler: Optional[Scheduler] = None,
    ):
        self.endpoints = endpoints
        self.transport = transport
        self.cache = cache
        self.events = events or EventEmitter()
        self.filter_up_instances = filter_up_instances
        self._scheduler = scheduler or Scheduler()
        self._in_flight = threading.Lock()
        self._timer: Optional[TimerHandle] = None

    def fetch(self) -> RegistrySnapshot:
        """Fetch and install the registry. Raises on failure, leaving the cache untouched."""
        with self._in_flight:
            return self._fetch()

    def _fetch(self) -> RegistrySnapshot:
        endpoint = self.endpoints.resolve()
        headers = dict(endpoint.headers, Accept="application/json")
        response = self.transport.get(endpoint.base_url, headers=headers)
        if response.status != 200:
            raise ProtocolError(
                f"Unable to retrieve registry from Eureka server: status {response.status}",
                status=response.status, body=response.text[:200],
            )

        logger.debug("retrieved registry successfully")
        snapshot = transform_registry(response.json(), self.filter_up_instances)
        if snapshot is None:
            return self.cache.snapshot
        self.cache.install(snapshot)
        self.events.emit(REGISTRY_UPDATED)
        return snapshot

    def poll(self) -> None:
        """Timer tick: fetch unless a fetch is already running. Never raises."""
        if not self._in_flight.acquire(blocking=False):
            logger.debug("Registry fetch still in flight, skipping this tick")
            return
        try:
            self._fetch()
        except BeaconError as exc:
            logger.warning("Error fetching registries: %s", exc)
        finally:
            self._in_flight.release()

    def start(self, interval: float) -> None:
        self.stop()
        self._timer = self._scheduler.call_every(interval, self.poll)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
