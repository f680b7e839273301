import random
from concurrent.futures import CancelledError

import pytest

from conftest import SERVICE_URLS, make_config, response
from beacon.discovery import DnsEndpointResolver
from beacon.endpoints import EndpointResolver, ServiceUrlRing
from beacon.errors import DiscoveryError, ProtocolError, TransportError
from beacon.events import SIGNALS, EventEmitter
from beacon.instance import InstanceDescriptor, LifecycleState
from beacon.lifecycle import REGISTRATION_WATCHDOG_SECONDS, RegistrationLifecycleManager
from beacon.transport import HttpTransport

A, B, C = SERVICE_URLS


def make_manager(transport, scheduler, dns=None):
    config = make_config()
    ring = ServiceUrlRing(config.eureka.service_urls)
    events = EventEmitter()
    signals = []
    for name in SIGNALS:
        events.on(name, lambda name=name: signals.append(name))
    manager = RegistrationLifecycleManager(
        InstanceDescriptor.from_config(config.instance),
        EndpointResolver(ring, dns=dns),
        transport,
        events=events,
        scheduler=scheduler,
        heartbeat_interval=30.0,
        rng=random.Random(1),
    )
    return manager, ring, signals


def register_ok(manager, transport):
    transport.queue("POST", response(204))
    manager.register().result(timeout=1)


def test_register_success_starts_heartbeats(transport, scheduler):
    manager, ring, signals = make_manager(transport, scheduler)
    transport.queue("POST", response(204))

    future = manager.register()

    assert future.result(timeout=1) is None
    assert manager.state == LifecycleState.REGISTERED
    assert signals == ["registered"]
    (heartbeat,) = scheduler.pending("renew")
    assert heartbeat.repeating and heartbeat.delay == 30.0

    (call,) = transport.calls
    assert call.url == A + "orders"
    assert call.body["instance"]["status"] == "UP"
    assert call.body["instance"]["vipAddress"] == "orders.service"


def test_watchdog_is_armed_and_cancelled(transport, scheduler):
    manager, _, _ = make_manager(transport, scheduler)
    register_ok(manager, transport)

    watchdogs = [t for t in scheduler.timers if t.name == "_warn_slow_registration"]
    assert len(watchdogs) == 1
    assert watchdogs[0].delay == REGISTRATION_WATCHDOG_SECONDS
    assert watchdogs[0].cancelled


def test_watchdog_only_logs(transport, scheduler, caplog):
    manager, _, _ = make_manager(transport, scheduler)
    with caplog.at_level("WARNING"):
        manager._warn_slow_registration()
    assert "taking a while to register" in caplog.text
    assert transport.calls == []


def test_transport_failures_rotate_once_per_attempt_and_retry(transport, scheduler):
    manager, ring, signals = make_manager(transport, scheduler)
    transport.queue(
        "POST",
        TransportError("refused"), TransportError("refused"), TransportError("refused"),
        response(204),
    )

    future = manager.register()
    assert not future.done()
    assert ring.urls() == [B, C, A]

    retry = scheduler.pending("_attempt_registration")[0]
    assert 0 <= retry.delay < 2.0

    scheduler.fire_next("_attempt_registration")
    assert ring.urls() == [C, A, B]
    assert not future.done()

    scheduler.fire_next("_attempt_registration")
    assert ring.urls() == [A, B, C]

    scheduler.fire_next("_attempt_registration")
    assert future.result(timeout=1) is None
    assert ring.urls() == [A, B, C]
    assert [c.url for c in transport.calls] == [A + "orders", B + "orders", C + "orders", A + "orders"]
    assert signals == ["registered"]


def test_non_204_fails_without_retry(transport, scheduler):
    manager, ring, signals = make_manager(transport, scheduler)
    transport.queue("POST", response(500, {"error": "rejected"}))

    future = manager.register()

    with pytest.raises(ProtocolError) as excinfo:
        future.result(timeout=1)
    assert excinfo.value.status == 500
    assert manager.state == LifecycleState.UNREGISTERED
    assert scheduler.pending("_attempt_registration") == []
    assert scheduler.pending("renew") == []
    assert ring.urls() == [A, B, C]
    assert signals == []


def test_discovery_error_fails_registration(transport, scheduler):
    dns = DnsEndpointResolver(None, lookup_txt=lambda name: [])
    manager, _, _ = make_manager(transport, scheduler, dns=dns)

    future = manager.register()

    assert isinstance(future.exception(timeout=1), DiscoveryError)
    assert transport.calls == []


def test_heartbeat_ok_emits_signal(transport, scheduler):
    manager, ring, signals = make_manager(transport, scheduler)
    register_ok(manager, transport)
    transport.queue("PUT", response(200))

    scheduler.fire_next("renew")

    assert signals == ["registered", "heartbeat"]
    assert manager.state == LifecycleState.HEARTBEATING
    put = transport.calls_for("PUT")[0]
    assert put.url == A + "orders/orders-1.example.com"


def test_heartbeat_404_reregisters_with_same_server(transport, scheduler):
    manager, ring, signals = make_manager(transport, scheduler)
    register_ok(manager, transport)
    old_heartbeat = scheduler.pending("renew")[0]
    transport.queue("PUT", response(404))
    transport.queue("POST", response(204))

    scheduler.fire(old_heartbeat)

    assert old_heartbeat.cancelled
    assert ring.urls() == [A, B, C]
    posts = transport.calls_for("POST")
    assert [p.url for p in posts] == [A + "orders", A + "orders"]
    assert len(scheduler.pending("renew")) == 1
    assert signals == ["registered", "registered"]


@pytest.mark.parametrize("failure", [response(500), TransportError("reset by peer")])
def test_other_heartbeat_failures_rotate_then_reregister(transport, scheduler, failure):
    manager, ring, signals = make_manager(transport, scheduler)
    register_ok(manager, transport)
    old_heartbeat = scheduler.pending("renew")[0]
    transport.queue("PUT", failure)
    transport.queue("POST", response(204))

    scheduler.fire(old_heartbeat)

    assert old_heartbeat.cancelled
    assert ring.urls() == [B, C, A]
    assert transport.calls_for("POST")[-1].url == B + "orders"
    assert manager.state == LifecycleState.REGISTERED


def test_heartbeat_never_raises_on_dns_failure(transport, scheduler):
    manager, ring, _ = make_manager(transport, scheduler)
    register_ok(manager, transport)
    manager.endpoints.dns = DnsEndpointResolver(None)

    manager.renew()

    assert transport.calls_for("PUT") == []
    assert ring.urls() == [A, B, C]


def test_deregister_success(transport, scheduler):
    manager, _, signals = make_manager(transport, scheduler)
    transport.queue("DELETE", response(200))

    manager.deregister()

    assert transport.calls[0].url == A + "orders/orders-1.example.com"
    assert signals == ["deregistered"]
    assert manager.state == LifecycleState.UNREGISTERED


@pytest.mark.parametrize("failure, error", [
    (response(404), ProtocolError),
    (TransportError("refused"), TransportError),
])
def test_deregister_failures_are_raised_not_retried(transport, scheduler, failure, error):
    manager, ring, signals = make_manager(transport, scheduler)
    transport.queue("DELETE", failure)

    with pytest.raises(error):
        manager.deregister()

    assert len(transport.calls) == 1
    assert ring.urls() == [A, B, C]
    assert signals == []


def test_stop_cancels_heartbeats_and_deregisters(transport, scheduler):
    manager, _, signals = make_manager(transport, scheduler)
    register_ok(manager, transport)
    heartbeat = scheduler.pending("renew")[0]
    transport.queue("DELETE", response(200))

    manager.stop()

    assert heartbeat.cancelled
    assert transport.calls[-1].method == "DELETE"
    assert signals == ["registered", "deregistered"]


def test_stop_cancels_pending_reregistration(transport, scheduler):
    manager, _, _ = make_manager(transport, scheduler)
    transport.queue("POST", TransportError("refused"))
    transport.queue("DELETE", response(200))

    future = manager.register()
    retry = scheduler.pending("_attempt_registration")[0]
    manager.stop()

    assert retry.cancelled
    assert future.cancelled()
    with pytest.raises(CancelledError):
        future.result(timeout=1)
    assert transport.calls_for("POST") and len(transport.calls_for("POST")) == 1


def test_metadata_enrichment_updates_instance(transport, scheduler):
    manager, _, _ = make_manager(transport, scheduler)

    class Provider:
        def fetch_metadata(self):
            return {
                "public-hostname": "ec2-1.compute.amazonaws.com",
                "public-ipv4": "54.0.0.1",
                "local-hostname": "ip-10-0-0-1.ec2.internal",
                "local-ipv4": "10.0.0.1",
            }

    manager.add_instance_metadata(Provider(), use_local=True)

    assert manager.instance.host_name == "ip-10-0-0-1.ec2.internal"
    assert manager.instance.ip_addr == "10.0.0.1"
    assert manager.instance.data_center_metadata["public-ipv4"] == "54.0.0.1"


def test_server_speaking_garbage_is_retried_on_next_url(not_http_url, registry_server, scheduler):
    instance = InstanceDescriptor.from_config(make_config().instance)
    ring = ServiceUrlRing([not_http_url, registry_server.url])
    manager = RegistrationLifecycleManager(
        instance,
        EndpointResolver(ring),
        HttpTransport(timeout=5),
        scheduler=scheduler,
        rng=random.Random(1),
    )

    future = manager.register()

    assert not future.done()
    assert ring.current() == registry_server.url
    scheduler.fire_next("_attempt_registration")
    assert future.result(timeout=1) is None
    assert "orders-1.example.com" in registry_server.instances


def test_raising_registered_listener_still_resolves_retried_registration(transport, scheduler):
    manager, _, _ = make_manager(transport, scheduler)

    def broken_listener():
        raise RuntimeError("listener failed")

    manager.events.on("registered", broken_listener)
    transport.queue("POST", TransportError("refused"), response(204))

    future = manager.register()
    scheduler.fire_next("_attempt_registration")

    assert future.result(timeout=1) is None
    assert manager.state == LifecycleState.REGISTERED
    assert scheduler.pending("renew")


def test_registration_accepted_after_stop_is_withdrawn(transport, scheduler):
    manager, _, signals = make_manager(transport, scheduler)
    transport.queue("DELETE", response(404), response(200))

    def accepted_after_stop():
        with pytest.raises(ProtocolError):
            manager.stop()
        return response(204)

    transport.queue("POST", accepted_after_stop)

    future = manager.register()

    assert future.cancelled()
    assert manager.state == LifecycleState.UNREGISTERED
    assert scheduler.pending("renew") == []
    assert [c.method for c in transport.calls] == ["POST", "DELETE", "DELETE"]
    assert signals == ["deregistered"]
