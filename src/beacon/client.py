"""Core orchestration: enrich metadata, register, keep the registry cache fresh."""

import logging
import random
import threading
from concurrent.futures import CancelledError
from typing import Callable, List, Optional

from .auth import AuthGateway, OAuth2ClientCredentials
from .config import ClientConfig, validate_config
from .discovery import DnsEndpointResolver, DnslibTxtLookup, TxtLookup
from .endpoints import EndpointResolver, ServiceUrlRing
from .errors import BeaconError
from .events import STARTED, EventEmitter
from .instance import InstanceDescriptor
from .lifecycle import RegistrationLifecycleManager
from .metadata import Ec2MetadataClient, MetadataProvider
from .registry import RegistryCache, RegistryFetcher, RegistrySnapshot
from .scheduler import Scheduler
from .transport import HttpTransport

logger = logging.getLogger(__name__)

WAIT_FOR_REGISTRY_INTERVAL = 2.0


class EurekaClient:
    """Registers this instance with a Eureka registry and caches the registry.

    Collaborators (transport, scheduler, metadata provider, auth gateway,
    TXT lookup) default to the real implementations and can be replaced.
    """

    def __init__(
        self,
        config: ClientConfig,
        transport: Optional[HttpTransport] = None,
        scheduler: Optional[Scheduler] = None,
        metadata_provider: Optional[MetadataProvider] = None,
        auth: Optional[AuthGateway] = None,
        lookup_txt: Optional[TxtLookup] = None,
        rng: Optional[random.Random] = None,
    ):
        validate_config(config)
        self.config = config
        self.events = EventEmitter()
        self._scheduler = scheduler or Scheduler()
        self._transport = transport or HttpTransport(timeout=config.eureka.request_timeout)
        self._stop_event = threading.Event()

        options = config.eureka
        if auth is None and config.oauth2 is not None:
            auth = OAuth2ClientCredentials(config.oauth2, transport=self._transport)

        dns = None
        if options.use_dns:
            dns = DnsEndpointResolver(
                options.ec2_region,
                lookup_txt=lookup_txt or DnslibTxtLookup(options.dns_resolver),
                rng=rng,
            )

        self.ring = ServiceUrlRing(options.service_urls)
        self.endpoints = EndpointResolver(self.ring, dns=dns, auth=auth)

        instance = InstanceDescriptor.from_config(config.instance)
        if metadata_provider is None and instance.is_amazon:
            metadata_provider = Ec2MetadataClient()
        self.metadata_provider = metadata_provider

        self.cache = RegistryCache()
        self.lifecycle = RegistrationLifecycleManager(
            instance,
            self.endpoints,
            self._transport,
            events=self.events,
            scheduler=self._scheduler,
            heartbeat_interval=options.heartbeat_interval,
            rng=rng,
        )
        self.fetcher = RegistryFetcher(
            self.endpoints,
            self._transport,
            self.cache,
            events=self.events,
            filter_up_instances=options.filter_up_instances,
            scheduler=self._scheduler,
        )
        logger.debug("initialized eureka client for %s", instance.app)

    @property
    def instance(self) -> InstanceDescriptor:
        return self.lifecycle.instance

    @property
    def instance_id(self) -> str:
        return self.lifecycle.instance.id

    @property
    def current_service_url(self) -> str:
        return self.ring.current()

    def on(self, signal: str, listener: Callable) -> Callable:
        return self.events.on(signal, listener)

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Register, then fetch the registry if enabled.

        ``started`` is emitted whether or not start-up succeeded; a start-up
        error is re-raised after the signal.
        """
        error: Optional[BaseException] = None
        try:
            self._start()
        except (BeaconError, CancelledError) as exc:
            logger.warning("Error starting the Eureka Client: %s", exc)
            error = exc
        self.events.emit(STARTED)
        if error is not None:
            raise error

    def _start(self) -> None:
        self._stop_event.clear()
        options = self.config.eureka

        if self.metadata_provider is not None and options.fetch_metadata:
            self.lifecycle.add_instance_metadata(
                self.metadata_provider, use_local=options.use_local_metadata,
            )

        self.lifecycle.register().result()

        if not options.fetch_registry:
            return
        self.fetcher.start(options.registry_fetch_interval)
        if options.wait_for_registry:
            self._wait_for_registry()
        else:
            self.fetcher.fetch()

    def _wait_for_registry(self) -> None:
        """Poll until our own VIP address shows up in the registry, or stop() is called."""
        vip_address = self.instance.vip_address
        while True:
            try:
                self.fetcher.fetch()
            except BeaconError as exc:
                logger.warning("Error fetching registry while waiting for it: %s", exc)
            if self.cache.get_instances_by_vip_address(vip_address):
                return
            if self._stop_event.wait(WAIT_FOR_REGISTRY_INTERVAL):
                logger.info("Stopped while waiting for the registry")
                return

    def stop(self) -> None:
        """Stop heartbeats and registry fetches, then deregister."""
        self._stop_event.set()
        self.fetcher.stop()
        self.lifecycle.stop()

    def __enter__(self) -> 'EurekaClient':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def fetch_registry(self) -> RegistrySnapshot:
        return self.fetcher.fetch()

    def get_instances_by_app_id(self, app_id: Optional[str]) -> List[dict]:
        return self.cache.get_instances_by_app_id(app_id)

    def get_instances_by_vip_address(self, vip_address: Optional[str]) -> List[dict]:
        return self.cache.get_instances_by_vip_address(vip_address)
