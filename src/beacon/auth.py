"""Bearer token providers consulted before each call to the registry."""

import base64
import logging
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from .config import OAuth2Credentials
from .errors import AuthError, BeaconError
from .transport import HttpTransport

logger = logging.getLogger(__name__)


@dataclass
class AuthToken:
    access_token: str
    token_type: str = "Bearer"
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def header_value(self) -> str:
        return f"Bearer {self.access_token}"


class AuthGateway(Protocol):
    def get_token(self) -> AuthToken:
        """Return a fresh token or raise AuthError."""
        ...


class OAuth2ClientCredentials:
    """OAuth2 client-credentials grant against a token endpoint.

    Tokens are not cached: a new one is requested for every call.
    """

    def __init__(self, credentials: OAuth2Credentials, transport: Optional[HttpTransport] = None):
        self.credentials = credentials
        self._transport = transport or HttpTransport()
        logger.debug("Initializing OAuth2 client credentials for %s", credentials.access_token_uri)

    def _request_body(self) -> bytes:
        form = {"grant_type": "client_credentials"}
        if self.credentials.scope:
            form["scope"] = self.credentials.scope
        return urllib.parse.urlencode(form).encode()

    def _basic_auth(self) -> str:
        pair = f"{self.credentials.client_id}:{self.credentials.client_secret}"
        return "Basic " + base64.b64encode(pair.encode()).decode()

    def get_token(self) -> AuthToken:
        headers = {
            "Authorization": self._basic_auth(),
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        try:
            response = self._transport.post(
                self.credentials.access_token_uri, body=self._request_body(), headers=headers,
            )
            if response.status != 200:
                raise AuthError(
                    f"Token endpoint returned status {response.status}: {response.text[:200]}"
                )
            payload = response.json()
        except AuthError:
            raise
        except BeaconError as exc:
            logger.warning("Error occurred while getting Access Token via OAuth2 Client Credentials: %s", exc)
            raise AuthError(str(exc)) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise AuthError("Token endpoint response has no access_token")
        logger.debug("Access Token has been fetched using Client Credentials")
        return AuthToken(
            access_token=access_token,
            token_type=payload.get("token_type", "Bearer"),
            raw=payload,
        )
