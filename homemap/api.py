"""HTTP client for the home automation controller REST API."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import ControllerConfig
from .const import (
    CONTROLLER_HEADERS,
    POLL_CLIENT_TIMEOUT,
    POLL_PATH,
    POLL_SERVER_TIMEOUT,
    SETTINGS_INFO_PATH,
)
from .errors import AuthenticationError, ProtocolDecodeError, TransportError
from .utils import render_body_template, substitute_device_id
from .widgets.models import Action

_LOGGER = logging.getLogger(__name__)

_AUTH_FAILURE_STATUSES = frozenset({401, 403})


@dataclass(slots=True)
class ChangeBatch:
    """Result of one long-poll request."""

    cursor: int | None
    events: list[dict[str, Any]] = field(default_factory=list)


class ControllerClient:
    """Thin async wrapper around the controller REST endpoints."""

    def __init__(
        self,
        config: ControllerConfig,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Store connection details and an optional pre-built HTTP client."""

        self._config = config
        self._client = client
        self._owns_client = client is None

    @property
    def config(self) -> ControllerConfig:
        """Return the active controller configuration."""

        return self._config

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(verify=self._config.verify_ssl)
        return self._client

    async def async_close(self) -> None:
        """Close the HTTP client if this instance created it."""

        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._config.base_url}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
        timeout: float | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """Issue a request and map failures onto the HomeMap error taxonomy."""

        client = self._require_client()
        request_headers = dict(headers or {})
        kwargs: dict[str, Any] = {"params": params, "headers": request_headers}
        if json_body is not None:
            kwargs["json"] = json_body
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await client.request(
                method,
                self._url(path),
                auth=httpx.BasicAuth(self._config.user, self._config.password),
                **kwargs,
            )
        except httpx.HTTPError as err:
            msg = f"{method} {path} failed: {err}"
            raise TransportError(msg) from err

        if response.status_code in _AUTH_FAILURE_STATUSES:
            msg = f"Controller rejected credentials (HTTP {response.status_code})"
            raise AuthenticationError(msg, status=response.status_code)
        if response.is_error:
            detail = response.reason_phrase or "Bad Request"
            if response.text:
                detail = f"{detail} - {response.text}"
            msg = f"HTTP {response.status_code}: {detail}"
            raise TransportError(msg, status=response.status_code)
        return response

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as err:
            msg = f"Controller returned invalid JSON for {response.request.url}"
            raise ProtocolDecodeError(msg) from err

    async def async_poll_changes(self, cursor: int) -> ChangeBatch:
        """Long-poll for events newer than ``cursor``."""

        response = await self._request(
            "GET",
            POLL_PATH,
            params={"last": cursor, "timeout": POLL_SERVER_TIMEOUT},
            timeout=POLL_CLIENT_TIMEOUT.total_seconds(),
        )
        payload = self._decode(response)
        if not isinstance(payload, Mapping):
            msg = "Long-poll response is not an object"
            raise ProtocolDecodeError(msg)
        raw_cursor = payload.get("last")
        try:
            next_cursor = int(raw_cursor) if raw_cursor is not None else None
        except (TypeError, ValueError) as err:
            msg = f"Long-poll cursor {raw_cursor!r} is not numeric"
            raise ProtocolDecodeError(msg) from err
        events = payload.get("events")
        if not isinstance(events, list):
            events = []
        return ChangeBatch(cursor=next_cursor, events=events)

    async def async_read(self, api: str) -> Any:
        """Return the decoded body of ``GET api``."""

        response = await self._request("GET", api)
        return self._decode(response)

    async def async_execute_action(
        self, device_id: int | str, action: Action, value: Any = None
    ) -> Any:
        """Invoke ``action`` for ``device_id`` and return the decoded reply."""

        api = substitute_device_id(action.api, device_id)
        body = render_body_template(action.body, value)
        headers = dict(CONTROLLER_HEADERS)
        _LOGGER.debug("Executing %s %s for device %s", action.method, api, device_id)
        response = await self._request(
            action.method, api, json_body=body, headers=headers
        )
        try:
            return self._decode(response)
        except ProtocolDecodeError:
            return response.text

    async def async_test_connection(self) -> str:
        """Return the controller software version."""

        response = await self._request("GET", SETTINGS_INFO_PATH)
        payload = self._decode(response)
        if isinstance(payload, Mapping) and payload.get("softVersion"):
            return str(payload["softVersion"])
        return "unknown"
