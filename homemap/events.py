"""Long-poll event dispatch from the controller to rendered devices."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .api import ControllerClient
from .const import BATCH_DELAY, PROPERTY_UPDATED_EVENT, RETRY_DELAY
from .devices import Device
from .errors import AuthenticationError, ProtocolDecodeError, TransportError
from .render import DeviceRenderer, RenderTarget
from .utils import normalize_state_value, resolve_path
from .widgets.models import EventRule, WidgetDefinition

_LOGGER = logging.getLogger(__name__)

_SINGLE_CONDITION = re.compile(r"^(\w+)\s*==\s*event\.property\s*\?\s*(.+)$")
_GROUP_CONDITION = re.compile(r"^\((.+?)\)\s*\?\s*(.+)$")
_GROUP_MEMBER = re.compile(r"(\w+)\s*==\s*event\.property")
_EVENT_DATA_PREFIX = "event."


@dataclass(frozen=True, slots=True)
class UpdatePath:
    """Where a state key is read from an event, optionally gated by property."""

    value_path: str
    properties: frozenset[str] | None = None

    def applies_to(self, event_property: str | None) -> bool:
        """Return whether the update runs for ``event_property``."""

        return self.properties is None or event_property in self.properties


def parse_update_path(raw: str) -> UpdatePath:
    """Parse ``prop == event.property ? path`` style update expressions.

    Both a single comparison and a parenthesised ``||`` group of comparisons
    are recognised. Anything else is a plain value path.
    """

    text = raw.strip()
    if "==" in text:
        match = _SINGLE_CONDITION.match(text)
        if match:
            return UpdatePath(match.group(2).strip(), frozenset({match.group(1)}))
        match = _GROUP_CONDITION.match(text)
        if match:
            members = frozenset(_GROUP_MEMBER.findall(match.group(1)))
            if members:
                return UpdatePath(match.group(2).strip(), members)
    return UpdatePath(text)


@dataclass(frozen=True, slots=True)
class DispatchEntry:
    """Device, widget and event rule wired to one event type."""

    device: Device
    widget: WidgetDefinition
    rule: EventRule


@dataclass(slots=True)
class EventRoute:
    """Devices interested in one event type, keyed by device id.

    Widgets may locate the device id at different paths; ``id_paths`` lists
    each of them once, in registration order.
    """

    id_paths: list[str] = field(default_factory=list)
    devices: dict[str, DispatchEntry] = field(default_factory=dict)

    def add(self, device: Device, widget: WidgetDefinition, rule: EventRule) -> None:
        """Register ``device`` under this event type."""

        if rule.id not in self.id_paths:
            self.id_paths.append(rule.id)
        self.devices[str(device.id)] = DispatchEntry(device, widget, rule)

    def match(self, event: Mapping[str, Any]) -> DispatchEntry | None:
        """Return the entry whose own id path addresses a known device."""

        for id_path in self.id_paths:
            device_id = resolve_path(event, id_path)
            if device_id is None:
                continue
            entry = self.devices.get(str(device_id))
            if entry is not None and entry.rule.id == id_path:
                return entry
        return None


DispatchTable = dict[str, EventRoute]


def widget_key(device: Device) -> str:
    """Return the key a device's resolved widget is stored under."""

    return device.widget or device.type


def build_dispatch_table(
    devices: Iterable[Device], widgets: Mapping[str, WidgetDefinition]
) -> DispatchTable:
    """Index ``devices`` by the event types their widgets subscribe to.

    The result only depends on the inputs; building twice from the same
    devices and widgets yields equal tables.
    """

    table: DispatchTable = {}
    for device in devices:
        widget = widgets.get(widget_key(device))
        if widget is None or not widget.events:
            continue
        for event_type, rule in widget.events.items():
            table.setdefault(event_type, EventRoute()).add(device, widget, rule)
    return table


TargetLookup = Callable[[Device], RenderTarget | None]
AuthFailureCallback = Callable[[AuthenticationError], Any]


class EventDispatcher:
    """Follow the controller change feed and route events to devices."""

    def __init__(
        self,
        client: ControllerClient,
        renderer: DeviceRenderer,
        *,
        target_lookup: TargetLookup | None = None,
        on_auth_failure: AuthFailureCallback | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        """Bind the controller client, renderer and visibility lookup."""

        self._client = client
        self._renderer = renderer
        self._target_lookup = target_lookup or (lambda _device: None)
        self._on_auth_failure = on_auth_failure
        self._sleep = sleep or asyncio.sleep
        self._table: DispatchTable = {}
        self._cursor = 0
        self._polling = False
        self._task: asyncio.Task[None] | None = None

    @property
    def cursor(self) -> int:
        """Return the id of the last event seen."""

        return self._cursor

    @property
    def is_polling(self) -> bool:
        """Return whether the poll loop is running or about to stop."""

        return self._polling

    @property
    def dispatch_table(self) -> DispatchTable:
        """Return the current dispatch table."""

        return self._table

    def rebuild(
        self, devices: Iterable[Device], widgets: Mapping[str, WidgetDefinition]
    ) -> DispatchTable:
        """Replace the dispatch table with one built from ``devices``."""

        self._table = build_dispatch_table(devices, widgets)
        _LOGGER.debug(
            "Event dispatch table built: %s",
            {event_type: len(route.devices) for event_type, route in self._table.items()},
        )
        return self._table

    def start(self) -> asyncio.Task[None]:
        """Start the poll loop as a background task."""

        if self._task is not None and not self._task.done():
            _LOGGER.debug("Event polling already running")
            return self._task
        self._polling = True
        self._task = asyncio.get_running_loop().create_task(self.async_run())
        return self._task

    def stop(self) -> None:
        """Ask the poll loop to exit after the in-flight request completes."""

        if self._polling:
            _LOGGER.info("Stopping event polling")
        self._polling = False

    async def async_wait_stopped(self) -> None:
        """Wait for the background poll task to finish."""

        if self._task is not None:
            await self._task

    async def async_run(self) -> None:
        """Poll the controller until :meth:`stop` is called."""

        self._polling = True
        _LOGGER.info("Starting event polling from cursor %s", self._cursor)
        while self._polling:
            try:
                batch = await self._client.async_poll_changes(self._cursor)
            except AuthenticationError as err:
                _LOGGER.error("Event polling stopped: %s", err)
                self._polling = False
                if self._on_auth_failure is not None:
                    self._on_auth_failure(err)
                break
            except (TransportError, ProtocolDecodeError) as err:
                if not self._polling:
                    break
                _LOGGER.error("Event polling failed: %s", err)
                await self._sleep(RETRY_DELAY.total_seconds())
                continue

            self._advance_cursor(batch.cursor)
            await self.async_process_events(batch.events)
            if batch.events and self._polling:
                await self._sleep(BATCH_DELAY.total_seconds())
        _LOGGER.info("Event polling stopped at cursor %s", self._cursor)

    def _advance_cursor(self, cursor: int | None) -> None:
        if cursor is None:
            return
        if cursor < self._cursor:
            _LOGGER.debug("Ignoring older cursor %s (at %s)", cursor, self._cursor)
            return
        self._cursor = cursor

    async def async_process_events(self, events: Iterable[Any]) -> None:
        """Dispatch ``events`` in arrival order, isolating per-event failures."""

        for event in events:
            try:
                await self.async_dispatch(event)
            except ProtocolDecodeError as err:
                _LOGGER.warning("Dropping malformed event: %s", err)
            except Exception:  # pragma: no cover - keep the feed alive
                _LOGGER.exception("Unexpected failure dispatching event %r", event)

    async def async_dispatch(self, event: Any) -> bool:
        """Apply one controller event; return whether a device was updated."""

        if not isinstance(event, Mapping) or not isinstance(event.get("type"), str):
            msg = f"Event without a type: {event!r}"
            raise ProtocolDecodeError(msg)
        route = self._table.get(event["type"])
        if route is None:
            return False

        entry = route.match(event)
        if entry is None:
            _LOGGER.debug("No tracked device for %s event", event["type"])
            return False

        device, widget, rule = entry.device, entry.widget, entry.rule
        state = self._renderer.ensure_state(device, widget)
        updates = {key: parse_update_path(path) for key, path in rule.updates.items()}

        event_property: str | None = None
        if event["type"] == PROPERTY_UPDATED_EVENT:
            event_property = resolve_path(event, "data.property")
            if event_property is not None and not _is_tracked(
                str(event_property), state, updates.values()
            ):
                _LOGGER.debug(
                    "Ignoring %s update for device %s", event_property, device.id
                )
                return False

        changed = False
        for key, update in updates.items():
            if key not in widget.state:
                _LOGGER.debug("Skipping undeclared state key %s of %s", key, device.id)
                continue
            if not update.applies_to(event_property):
                continue
            state[key] = normalize_state_value(key, _event_value(event, update.value_path))
            changed = True

        target = self._target_lookup(device)
        if target is not None:
            await self._renderer.async_render(device, widget, target)
        return changed


def _is_tracked(
    event_property: str, state: Mapping[str, Any], updates: Iterable[UpdatePath]
) -> bool:
    """Return whether a property change concerns the device."""

    if event_property in state:
        return True
    return any(
        update.properties is not None and event_property in update.properties
        for update in updates
    )


def _event_value(event: Mapping[str, Any], path: str) -> Any:
    """Read ``path`` from an event; ``event.`` paths address its ``data``."""

    if path.startswith(_EVENT_DATA_PREFIX):
        return resolve_path(event.get("data"), path[len(_EVENT_DATA_PREFIX) :])
    return resolve_path(event, path)
