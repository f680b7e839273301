import json
import socketserver
import threading
from collections import deque
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from beacon.config import build_config
from beacon.transport import HttpResponse


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

@dataclass
class Call:
    method: str
    url: str
    body: object = None
    headers: dict = field(default_factory=dict)


class FakeTransport:
    """Scripted transport: each call pops the next outcome queued for its method.

    An outcome is a response, an exception to raise, or a callable returning a response.
    """

    def __init__(self):
        self.calls: list[Call] = []
        self._outcomes: dict[str, deque] = {}

    def queue(self, method: str, *outcomes) -> None:
        self._outcomes.setdefault(method, deque()).extend(outcomes)

    def request(self, method, url, body=None, headers=None):
        self.calls.append(Call(method, url, body, dict(headers or {})))
        outcomes = self._outcomes.get(method)
        if not outcomes:
            raise AssertionError(f"unexpected {method} {url}")
        outcome = outcomes.popleft()
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome()
        return outcome

    def get(self, url, headers=None):
        return self.request("GET", url, headers=headers)

    def post(self, url, body=None, headers=None):
        return self.request("POST", url, body=body, headers=headers)

    def put(self, url, headers=None):
        return self.request("PUT", url, headers=headers)

    def delete(self, url, headers=None):
        return self.request("DELETE", url, headers=headers)

    def calls_for(self, method: str) -> list[Call]:
        return [c for c in self.calls if c.method == method]


class ManualTimer:
    def __init__(self, delay, fn, args, repeating):
        self.delay = delay
        self.fn = fn
        self.args = args
        self.repeating = repeating
        self.cancelled = False
        self.fired = 0

    def cancel(self):
        self.cancelled = True

    @property
    def name(self) -> str:
        return getattr(self.fn, "__name__", "")


class ManualScheduler:
    """Scheduler whose timers only run when a test fires them."""

    def __init__(self):
        self.timers: list[ManualTimer] = []

    def call_later(self, delay, fn, *args):
        timer = ManualTimer(delay, fn, args, repeating=False)
        self.timers.append(timer)
        return timer

    def call_every(self, interval, fn, *args):
        timer = ManualTimer(interval, fn, args, repeating=True)
        self.timers.append(timer)
        return timer

    def pending(self, name: str | None = None) -> list[ManualTimer]:
        return [
            t for t in self.timers
            if not t.cancelled
            and (t.repeating or not t.fired)
            and (name is None or t.name == name)
        ]

    def fire(self, timer: ManualTimer) -> None:
        assert not timer.cancelled, "timer was cancelled"
        timer.fired += 1
        timer.fn(*timer.args)

    def fire_next(self, name: str) -> None:
        timers = self.pending(name)
        assert timers, f"no pending {name} timer"
        self.fire(timers[0])


def response(status: int, payload=None) -> HttpResponse:
    body = b"" if payload is None else json.dumps(payload).encode()
    return HttpResponse(status=status, body=body)


def instance_record(app, instance_id, vip, status="UP", host=None):
    return {
        "instanceId": instance_id,
        "app": app.upper(),
        "hostName": host or f"{instance_id}.example.com",
        "ipAddr": "10.0.0.1",
        "vipAddress": vip,
        "status": status,
        "port": {"$": 8080, "@enabled": "true"},
    }


def registry_payload(*apps):
    """Build a registry payload from (name, instances) pairs."""
    return {
        "applications": {
            "application": [{"name": name, "instance": instances} for name, instances in apps],
        }
    }


SERVICE_URLS = [
    "http://eureka-a:8761/eureka/apps/",
    "http://eureka-b:8761/eureka/apps/",
    "http://eureka-c:8761/eureka/apps/",
]


def make_config_data(**eureka):
    data = {
        "instance": {
            "app": "orders",
            "vip_address": "orders.service",
            "port": 8080,
            "host_name": "orders-1.example.com",
            "ip_addr": "10.0.0.5",
            "data_center_info": {"name": "MyOwn"},
        },
        "eureka": {"service_urls": list(SERVICE_URLS)},
    }
    data["eureka"].update(eureka)
    return data


def make_config(**eureka):
    return build_config(make_config_data(**eureka))


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def scheduler():
    return ManualScheduler()


# ---------------------------------------------------------------------------
# In-process registry server
# ---------------------------------------------------------------------------

class FakeRegistryState:
    def __init__(self):
        self.lock = threading.Lock()
        self.requests: list[tuple[str, str]] = []
        self.instances: dict[str, dict] = {}
        self.heartbeat_status = 200

    def registry(self) -> dict:
        by_app: dict[str, list] = {}
        for inst in self.instances.values():
            by_app.setdefault(inst["app"].upper(), []).append(inst)
        return registry_payload(*by_app.items())


def _make_handler(state: FakeRegistryState):
    """Create a handler class bound to the given registry state."""

    class RegistryHTTPHandler(BaseHTTPRequestHandler):

        def log_message(self, format, *args):
            pass

        def _reply(self, status: int, data=None):
            body = json.dumps(data).encode() if data is not None else b""
            self.send_response(status)
            if data is not None:
                self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _record(self):
            with state.lock:
                state.requests.append((self.command, self.path))

        def _parts(self):
            return [p for p in self.path.split("/") if p][2:]  # strip eureka/apps

        def do_GET(self):
            self._record()
            self._reply(200, state.registry())

        def do_POST(self):
            self._record()
            length = int(self.headers.get("Content-Length", 0))
            payload = json.loads(self.rfile.read(length))
            inst = payload["instance"]
            inst_id = inst.get("instanceId") or inst["hostName"]
            with state.lock:
                state.instances[inst_id] = dict(inst, instanceId=inst_id)
            self._reply(204)

        def do_PUT(self):
            self._record()
            self._reply(state.heartbeat_status)

        def do_DELETE(self):
            self._record()
            parts = self._parts()
            with state.lock:
                found = state.instances.pop(parts[-1], None)
            self._reply(200 if found else 404)

    return RegistryHTTPHandler


@pytest.fixture
def registry_server():
    state = FakeRegistryState()
    server = ThreadingHTTPServer(("127.0.0.1", 0), _make_handler(state))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    state.url = f"http://127.0.0.1:{server.server_address[1]}/eureka/apps/"
    yield state
    server.shutdown()
    server.server_close()


class NotHttpHandler(socketserver.StreamRequestHandler):
    """Reads one request, then answers with a line that is not an HTTP status line."""

    def handle(self):
        length = 0
        for line in self.rfile:
            if line in (b"\r\n", b"\n", b""):
                break
            name, _, value = line.decode("latin-1").partition(":")
            if name.strip().lower() == "content-length":
                length = int(value.strip())
        if length:
            self.rfile.read(length)
        self.wfile.write(b"NOT-HTTP garbage\r\n\r\n")


@pytest.fixture
def not_http_url():
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), NotHttpHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}/eureka/apps/"
    server.shutdown()
    server.server_close()
