"""
Client for Vercel Edge Config.

Reads and writes go through an SDK-style transport first and fall back to a
raw authenticated HTTP transport when it fails. Initialization tries, in
order, the `EDGE_CONFIG` connection string, the explicit id + token pair and
finally a minimal raw HTTP client.
"""

from __future__ import annotations

import enum
import functools
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol
from urllib.parse import parse_qs, urlparse

import requests

from site_backend.retry import (
    DEFAULT_BASE_DELAY,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    request_with_retry,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://edge-config.vercel.com"
DEFAULT_API_URL = "https://api.vercel.com"
SIZE_LIMIT_MARKERS = ("too large", "size limit")


class EdgeConfigError(Exception):
    """Raised when an Edge Config call fails."""


class EdgeConfigUnavailableError(EdgeConfigError):
    """Raised when no transport could be initialized."""


class EdgeConfigSizeLimitError(EdgeConfigError):
    """Raised when a write is rejected because the store is full."""


class ClientState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    SDK_READY = "sdk-ready"
    RAW_HTTP_READY = "raw-http-ready"
    FAILED = "failed"


@dataclass(frozen=True)
class EdgeConfigConnection:
    config_id: str
    token: str
    base_url: str = DEFAULT_BASE_URL

    @classmethod
    def from_connection_string(cls, value: str) -> "EdgeConfigConnection":
        """Parse `https://edge-config.vercel.com/<id>?token=<token>`."""
        parsed = urlparse(value or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("connection string must be an http(s) URL")
        config_id = parsed.path.strip("/").split("/")[0]
        token = parse_qs(parsed.query).get("token", [""])[0]
        if not config_id or not token:
            raise ValueError("connection string needs an Edge Config id and token")
        return cls(
            config_id=config_id,
            token=token,
            base_url=f"{parsed.scheme}://{parsed.netloc}",
        )

    @property
    def url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.config_id}"

    def redacted(self) -> str:
        return f"{self.url}?token={self.token[:4]}..."


class EdgeConfigTransport(Protocol):
    """The two operations the storage layer needs from Edge Config."""

    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...


def _upsert_body(key: str, value: Any) -> dict:
    return {"items": [{"operation": "upsert", "key": key, "value": value}]}


class _HttpTransport:
    def __init__(
        self,
        connection: EdgeConfigConnection,
        *,
        api_url: str = DEFAULT_API_URL,
        api_token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        retries: int = DEFAULT_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.connection = connection
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.session = session or requests.Session()
        self.retries = retries
        self.base_delay = base_delay
        self.timeout = timeout
        self.sleep = sleep

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        return request_with_retry(
            method,
            url,
            session=self.session,
            retries=self.retries,
            base_delay=self.base_delay,
            timeout=self.timeout,
            sleep=self.sleep,
            **kwargs,
        )

    def _read_item(self, response: requests.Response, key: str) -> Any:
        if response.status_code == 404:
            return None
        if not response.ok:
            raise EdgeConfigError(
                f"Edge Config read of {key!r} failed: {response.status_code}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise EdgeConfigError(f"Edge Config returned invalid JSON: {exc}") from exc

    def _check_write(self, response: requests.Response, key: str) -> None:
        if response.ok:
            return
        text = response.text or ""
        if any(marker in text.lower() for marker in SIZE_LIMIT_MARKERS):
            raise EdgeConfigSizeLimitError(
                f"Edge Config size limit reached writing {key!r}: {text[:200]}"
            )
        raise EdgeConfigError(
            f"Edge Config write of {key!r} failed: {response.status_code} {text[:200]}"
        )

    def _patch_via_api(self, key: str, value: Any) -> None:
        response = self._request(
            "PATCH",
            f"{self.api_url}/v1/edge-config/{self.connection.config_id}/items",
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Content-Type": "application/json",
            },
            json=_upsert_body(key, value),
        )
        self._check_write(response, key)


class SdkTransport(_HttpTransport):
    """
    Mirrors what the Vercel SDK does: bearer-token reads against the Edge
    Config endpoint, writes through the Vercel REST API.
    """

    name = "sdk"

    def get(self, key: str) -> Any:
        response = self._request(
            "GET",
            f"{self.connection.url}/item/{key}",
            headers={
                "Authorization": f"Bearer {self.connection.token}",
                "Accept": "application/json",
            },
        )
        return self._read_item(response, key)

    def set(self, key: str, value: Any) -> None:
        if not self.api_token:
            raise EdgeConfigError("SDK writes require a Vercel API token")
        self._patch_via_api(key, value)


class RawHttpTransport(_HttpTransport):
    """Minimal client that passes the read token as a query parameter."""

    name = "raw-http"

    def get(self, key: str) -> Any:
        response = self._request(
            "GET",
            f"{self.connection.url}/item/{key}",
            params={"token": self.connection.token},
            headers={"Accept": "application/json"},
        )
        return self._read_item(response, key)

    def set(self, key: str, value: Any) -> None:
        if self.api_token:
            self._patch_via_api(key, value)
            return
        response = self._request(
            "PATCH",
            f"{self.connection.url}/items",
            params={"token": self.connection.token},
            headers={"Content-Type": "application/json"},
            json=_upsert_body(key, value),
        )
        self._check_write(response, key)


TransportFactory = Callable[[EdgeConfigConnection], EdgeConfigTransport]


class EdgeConfigClient:
    """
    Edge Config client with a small init state machine.

    UNINITIALIZED -> SDK_READY | RAW_HTTP_READY | FAILED. A failing SDK call
    degrades SDK_READY to RAW_HTTP_READY; only `reinitialize()` moves back.
    """

    def __init__(
        self,
        *,
        connection_string: Optional[str] = None,
        config_id: Optional[str] = None,
        token: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        api_url: str = DEFAULT_API_URL,
        api_token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        retries: int = DEFAULT_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        sdk_factory: Optional[TransportFactory] = None,
        raw_factory: Optional[TransportFactory] = None,
    ):
        self.connection_string = connection_string
        self.config_id = config_id
        self.token = token
        self.base_url = base_url
        http_options = dict(
            api_url=api_url,
            api_token=api_token,
            session=session,
            retries=retries,
            base_delay=base_delay,
            timeout=timeout,
            sleep=sleep,
        )
        self._sdk_factory = sdk_factory or functools.partial(
            SdkTransport, **http_options
        )
        self._raw_factory = raw_factory or functools.partial(
            RawHttpTransport, **http_options
        )
        self._sdk: Optional[EdgeConfigTransport] = None
        self._raw: Optional[EdgeConfigTransport] = None
        self.state = ClientState.UNINITIALIZED

    @property
    def ready(self) -> bool:
        return self.state in (ClientState.SDK_READY, ClientState.RAW_HTTP_READY)

    def initialize(self) -> bool:
        if self.ready:
            return True
        if self.state is ClientState.FAILED:
            return False
        return self._initialize()

    def reinitialize(self) -> bool:
        logger.info("Re-initializing Edge Config client")
        self.state = ClientState.UNINITIALIZED
        return self._initialize()

    def _explicit_connection(self) -> EdgeConfigConnection:
        if not self.config_id or not self.token:
            raise ValueError(
                "missing Edge Config credentials (id: %s, token: %s)"
                % (
                    "set" if self.config_id else "missing",
                    "set" if self.token else "missing",
                )
            )
        return EdgeConfigConnection(self.config_id, self.token, self.base_url)

    def _connection_from_env(self) -> EdgeConfigConnection:
        if not self.connection_string:
            raise ValueError("EDGE_CONFIG connection string is not set")
        return EdgeConfigConnection.from_connection_string(self.connection_string)

    def _initialize(self) -> bool:
        self._sdk = None
        self._raw = None
        fallback: Optional[EdgeConfigConnection] = None
        strategies = (
            ("connection string", self._connection_from_env),
            ("explicit id and token", self._explicit_connection),
        )
        for label, build in strategies:
            try:
                connection = build()
            except ValueError as exc:
                logger.info("Edge Config init via %s skipped: %s", label, exc)
                continue
            fallback = fallback or connection
            try:
                self._sdk = self._sdk_factory(connection)
            except (EdgeConfigError, ValueError) as exc:
                logger.warning("Edge Config SDK init via %s failed: %s", label, exc)
                continue
            self._raw = self._raw_factory(connection)
            self.state = ClientState.SDK_READY
            logger.info(
                "Edge Config client initialized using %s (%s)",
                label,
                connection.redacted(),
            )
            return True

        if fallback is not None:
            self._raw = self._raw_factory(fallback)
            self.state = ClientState.RAW_HTTP_READY
            logger.info("Created minimal raw HTTP Edge Config client")
            return True

        self.state = ClientState.FAILED
        logger.error("All Edge Config initialization strategies failed")
        return False

    def _ensure_ready(self) -> None:
        if self.state is ClientState.UNINITIALIZED:
            self.initialize()
        if not self.ready:
            raise EdgeConfigUnavailableError("Edge Config client is not initialized")

    def _degrade(self, operation: str, exc: Exception) -> None:
        logger.warning(
            "Edge Config SDK %s failed, falling back to raw HTTP: %s", operation, exc
        )
        self.state = ClientState.RAW_HTTP_READY

    def get(self, key: str) -> Any:
        """Return the value under `key`, or None when the item does not exist."""
        self._ensure_ready()
        if self.state is ClientState.SDK_READY and self._sdk is not None:
            try:
                return self._sdk.get(key)
            except (EdgeConfigError, requests.RequestException) as exc:
                self._degrade("read", exc)
        try:
            return self._raw.get(key)
        except requests.RequestException as exc:
            raise EdgeConfigError(f"Edge Config read of {key!r} failed: {exc}") from exc

    def set(self, key: str, value: Any) -> None:
        self._ensure_ready()
        if self.state is ClientState.SDK_READY and self._sdk is not None:
            try:
                self._sdk.set(key, value)
                return
            except EdgeConfigSizeLimitError:
                raise
            except (EdgeConfigError, requests.RequestException) as exc:
                self._degrade("write", exc)
        try:
            self._raw.set(key, value)
        except requests.RequestException as exc:
            raise EdgeConfigError(f"Edge Config write of {key!r} failed: {exc}") from exc


class InMemoryEdgeConfigTransport:
    """Test double holding items in a dict."""

    name = "memory"

    def __init__(self, items: Optional[dict] = None, size_limit: Optional[int] = None):
        self.items: dict[str, str] = {
            key: json.dumps(value, default=str) for key, value in (items or {}).items()
        }
        self.size_limit = size_limit
        self.fail_reads = False
        self.fail_writes = False
        self.writes = 0

    def get(self, key: str) -> Any:
        if self.fail_reads:
            raise EdgeConfigError("simulated read failure")
        if key not in self.items:
            return None
        return json.loads(self.items[key])

    def set(self, key: str, value: Any) -> None:
        if self.fail_writes:
            raise EdgeConfigError("simulated write failure")
        if self.size_limit is not None and len(value or []) > self.size_limit:
            raise EdgeConfigSizeLimitError("Edge Config item is too large")
        self.writes += 1
        # Stored serialized so callers never share mutable state with the store.
        self.items[key] = json.dumps(value, default=str)
