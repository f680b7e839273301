"""HTTP transport used for every call to the registry server."""

import gzip
import http.client
import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import ProtocolError, TransportError

logger = logging.getLogger(__name__)


@dataclass
class HttpResponse:
    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        try:
            return json.loads(self.body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ProtocolError(
                f"Response body is not valid JSON: {exc}",
                status=self.status, body=self.text[:200],
            ) from exc


class HttpTransport:
    """Blocking urllib transport.

    Any answer from the server, including 4xx/5xx, is returned as an
    HttpResponse. No response, or one that is not valid HTTP, raises
    TransportError.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        # Registry servers are internal; bypass http_proxy env vars
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def request(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> HttpResponse:
        headers = dict(headers or {})
        headers.setdefault("Accept-Encoding", "gzip")
        data = None
        if isinstance(body, bytes):
            data = body
        elif body is not None:
            data = json.dumps(body).encode()
            headers.setdefault("Content-Type", "application/json")

        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        logger.debug("%s %s", method, url)
        try:
            with self._opener.open(req, timeout=self.timeout) as resp:
                return self._to_response(resp.status, resp.read(), resp.headers)
        except urllib.error.HTTPError as exc:
            # The server answered; let the caller decide what the status means
            raw = exc.read() if exc.fp is not None else b""
            return self._to_response(exc.code, raw, exc.headers)
        except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
            reason = getattr(exc, "reason", exc)
            raise TransportError(f"{method} {url} failed: {reason}", url=url) from exc

    @staticmethod
    def _to_response(status: int, raw: bytes, headers) -> HttpResponse:
        header_map = {k.lower(): v for k, v in (headers or {}).items()}
        if header_map.get("content-encoding") == "gzip" and raw:
            try:
                raw = gzip.decompress(raw)
            except OSError as exc:
                raise ProtocolError(f"Invalid gzip body: {exc}", status=status) from exc
        return HttpResponse(status=status, body=raw, headers=header_map)

    def get(self, url: str, headers: Optional[Dict[str, str]] = None) -> HttpResponse:
        return self.request("GET", url, headers=headers)

    def post(self, url: str, body: Any = None, headers: Optional[Dict[str, str]] = None) -> HttpResponse:
        return self.request("POST", url, body=body, headers=headers)

    def put(self, url: str, headers: Optional[Dict[str, str]] = None) -> HttpResponse:
        return self.request("PUT", url, headers=headers)

    def delete(self, url: str, headers: Optional[Dict[str, str]] = None) -> HttpResponse:
        return self.request("DELETE", url, headers=headers)
