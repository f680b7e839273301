"""Registration, heartbeat and deregistration against the registry server.

State machine::

    UNREGISTERED -> REGISTERING -> REGISTERED -> HEARTBEATING
         ^                                          |
         |          (404: re-register same server)  |
         |          (other: rotate, re-register)    |
         +---------------- DEREGISTERING <----------+

Registration retries forever on transport errors, rotating to the next
service URL each time. A response with a status other than 204 fails the
registration without retry.
"""

import logging
import random
import threading
from concurrent.futures import Future
from typing import Optional

from .endpoints import EndpointResolver
from .errors import BeaconError, DiscoveryError, ProtocolError, TransportError
from .events import DEREGISTERED, HEARTBEAT, REGISTERED, EventEmitter
from .instance import InstanceDescriptor, InstanceStatus, LifecycleState
from .metadata import MetadataProvider
from .scheduler import Scheduler, TimerHandle
from .transport import HttpTransport

logger = logging.getLogger(__name__)

REGISTRATION_WATCHDOG_SECONDS = 10.0
MAX_RETRY_DELAY_MS = 2000


class RegistrationLifecycleManager:
    """Owns the instance descriptor and its registration state."""

    def __init__(
        self,
        instance: InstanceDescriptor,
        endpoints: EndpointResolver,
        transport: HttpTransport,
        events: Optional[EventEmitter] = None,
        scheduler: Optional[Scheduler] = None,
        heartbeat_interval: float = 30.0,
        rng: Optional[random.Random] = None,
    ):
        self.instance = instance
        self.endpoints = endpoints
        self.transport = transport
        self.events = events or EventEmitter()
        self.heartbeat_interval = heartbeat_interval
        self._scheduler = scheduler or Scheduler()
        self._rng = rng or random.Random()

        self._lock = threading.RLock()
        self._state = LifecycleState.UNREGISTERED
        self._stopped = False
        self._heartbeat: Optional[TimerHandle] = None
        self._reregister: Optional[TimerHandle] = None
        self._pending: Optional[Future] = None

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def instance_path(self) -> str:
        return f"{self.instance.app}/{self.instance.id}"

    # ------------------------------------------------------------------
    # Metadata enrichment
    # ------------------------------------------------------------------

    def add_instance_metadata(self, provider: MetadataProvider, use_local: bool = False) -> None:
        metadata = provider.fetch_metadata()
        with self._lock:
            self.instance.apply_metadata(metadata, use_local=use_local)
        logger.debug("Instance metadata applied, host is now %s", self.instance.host_name)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self) -> Future:
        """Register the instance and start heartbeats on success.

        The returned future completes when the registry accepts the
        instance, or fails on a non-204 answer or a discovery error. It is
        cancelled if stop() runs while a retry is pending.
        """
        with self._lock:
            self._stopped = False
        return self._begin_registration()

    def _begin_registration(self) -> Future:
        future: Future = Future()
        with self._lock:
            self._pending = future
        self._attempt_registration(future)
        return future

    def _attempt_registration(self, future: Future) -> None:
        with self._lock:
            self._reregister = None
            if self._stopped or future.done():
                return
            self._state = LifecycleState.REGISTERING
            self.instance.status = InstanceStatus.UP.value

        watchdog = self._scheduler.call_later(REGISTRATION_WATCHDOG_SECONDS, self._warn_slow_registration)
        try:
            endpoint = self.endpoints.resolve()
            logger.info("Attempting to register with eureka at '%s'.", endpoint.base_url)
            response = self.transport.post(
                endpoint.url_for(self.instance.app),
                body=self.instance.to_dict(),
                headers=endpoint.headers,
            )
        except TransportError as exc:
            logger.warning("Error registering with eureka. Trying next server in list: %s", exc)
            self.endpoints.rotate()
            self._schedule_retry(future)
            return
        except BeaconError as exc:
            self._fail_registration(future, exc)
            return
        finally:
            watchdog.cancel()

        if response.status != 204:
            self._fail_registration(future, ProtocolError(
                f"eureka registration FAILED: status: {response.status} body: {response.text}",
                status=response.status, body=response.text,
            ))
            return

        with self._lock:
            superseded = future.done()
            if superseded:
                # stop() ran while the POST was in flight
                self._state = LifecycleState.UNREGISTERED
            else:
                self._state = LifecycleState.REGISTERED
                if not self._stopped:
                    self._start_heartbeats()
        if superseded:
            if self._stopped:
                self._withdraw_late_registration()
            return

        logger.info("registered with eureka: %s", self.instance_path)
        try:
            self.events.emit(REGISTERED)
        finally:
            with self._lock:
                if not future.done():
                    future.set_result(None)

    def _withdraw_late_registration(self) -> None:
        logger.info("Registration accepted after stop, de-registering %s", self.instance_path)
        try:
            self.deregister()
        except BeaconError as exc:
            logger.warning("Unable to withdraw registration accepted after stop: %s", exc)

    def _schedule_retry(self, future: Future) -> None:
        delay = self._rng.randrange(MAX_RETRY_DELAY_MS) / 1000.0
        with self._lock:
            if self._stopped:
                future.cancel()
                return
            logger.debug("Retrying registration in %.3fs", delay)
            self._reregister = self._scheduler.call_later(delay, self._attempt_registration, future)

    def _fail_registration(self, future: Future, exc: BeaconError) -> None:
        logger.error("Registration with eureka failed: %s", exc)
        with self._lock:
            self._state = LifecycleState.UNREGISTERED
            if not future.done():
                future.set_exception(exc)

    def _warn_slow_registration(self) -> None:
        logger.warning(
            "It looks like it's taking a while to register with Eureka. This usually "
            "means there is an issue connecting to the host specified."
        )

    # ------------------------------------------------------------------
    # Heartbeats
    # ------------------------------------------------------------------

    def _start_heartbeats(self) -> None:
        with self._lock:
            self._stop_heartbeats()
            self._heartbeat = self._scheduler.call_every(self.heartbeat_interval, self.renew)

    def _stop_heartbeats(self) -> None:
        with self._lock:
            if self._heartbeat is not None:
                self._heartbeat.cancel()
                self._heartbeat = None

    def renew(self) -> None:
        """Send one heartbeat. Failures re-register; nothing is raised."""
        try:
            endpoint = self.endpoints.resolve()
        except DiscoveryError as exc:
            logger.warning("eureka heartbeat FAILED, will retry: %s", exc)
            return

        try:
            response = self.transport.put(
                endpoint.url_for(self.instance.app, self.instance.id), headers=endpoint.headers,
            )
        except BeaconError as exc:
            logger.error("An error in the heartbeat request occurred: %s", exc)
            self._reregister_after_heartbeat(rotate=True)
            return

        if response.status == 200:
            logger.debug("eureka heartbeat success")
            with self._lock:
                if self._state == LifecycleState.REGISTERED:
                    self._state = LifecycleState.HEARTBEATING
            self.events.emit(HEARTBEAT)
        elif response.status == 404:
            logger.warning("eureka heartbeat FAILED, Re-registering app")
            self._reregister_after_heartbeat(rotate=False)
        else:
            logger.warning(
                "eureka heartbeat FAILED, will re-register with next server in list status: %s body: %s",
                response.status, response.text,
            )
            self._reregister_after_heartbeat(rotate=True)

    def _reregister_after_heartbeat(self, rotate: bool) -> None:
        with self._lock:
            self._stop_heartbeats()
            if self._stopped:
                return
            self._state = LifecycleState.UNREGISTERED
        if rotate:
            self.endpoints.rotate()
        self._begin_registration()

    # ------------------------------------------------------------------
    # Deregistration
    # ------------------------------------------------------------------

    def deregister(self) -> None:
        """Remove the instance from the registry. Raises on failure; not retried."""
        with self._lock:
            self._state = LifecycleState.DEREGISTERING
        try:
            endpoint = self.endpoints.resolve()
            response = self.transport.delete(
                endpoint.url_for(self.instance.app, self.instance.id), headers=endpoint.headers,
            )
        except BeaconError as exc:
            logger.warning("Error deregistering with eureka: %s", exc)
            raise
        finally:
            with self._lock:
                self._state = LifecycleState.UNREGISTERED

        if response.status != 200:
            raise ProtocolError(
                f"eureka deregistration FAILED: status: {response.status} body: {response.text}",
                status=response.status, body=response.text,
            )
        logger.info("de-registered with eureka: %s", self.instance_path)
        self.events.emit(DEREGISTERED)

    def stop(self) -> None:
        """Cancel heartbeats and pending re-registration, then deregister."""
        with self._lock:
            self._stopped = True
            self._stop_heartbeats()
            if self._reregister is not None:
                self._reregister.cancel()
                self._reregister = None
            if self._pending is not None and not self._pending.done():
                self._pending.cancel()
        self.deregister()
