"""Tests for the event dispatch engine and the long-poll loop."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from homemap.api import ChangeBatch
from homemap.devices import Device
from homemap.errors import AuthenticationError, ProtocolDecodeError, TransportError
from homemap.events import (
    EventDispatcher,
    build_dispatch_table,
    parse_update_path,
)
from homemap.render import DeviceRenderer, RenderSurface
from homemap.widgets.models import WidgetDefinition
from homemap.widgets.packages import PackageRegistry
from homemap.widgets.resolver import WidgetResolver

LAMP = WidgetDefinition.model_validate(
    {
        "type": "lamp",
        "widgetVersion": "0.1.5",
        "state": {"value": False},
        "render": {"subtext": {"template": "${value}"}},
        "events": {
            "DevicePropertyUpdatedEvent": {
                "id": "data.id",
                "updates": {"value": "event.newValue"},
            }
        },
    }
)

METER = WidgetDefinition.model_validate(
    {
        "type": "meter",
        "widgetVersion": "0.1.5",
        "state": {"value": 0, "energy": 0},
        "events": {
            "DevicePropertyUpdatedEvent": {
                "updates": {
                    "value": "value == event.property ? event.newValue",
                    "energy": "(energy == event.property || power == event.property) ? event.newValue",
                    "unknown": "event.newValue",
                }
            },
            "CentralSceneEvent": {"id": "data.deviceId", "updates": {"value": "data.keyId"}},
        },
    }
)


class ScriptedClient:
    """Controller client replaying scripted long-poll results."""

    def __init__(self, script: list[Any]) -> None:
        """Store the scripted batches and errors."""

        self.script = list(script)
        self.cursors: list[int] = []
        self.dispatcher: EventDispatcher | None = None

    async def async_poll_changes(self, cursor: int) -> ChangeBatch:
        """Return or raise the next scripted result."""

        self.cursors.append(cursor)
        if not self.script:
            assert self.dispatcher is not None
            self.dispatcher.stop()
            return ChangeBatch(cursor=None)
        result = self.script.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _property_event(device_id: Any, prop: str, value: Any) -> dict[str, Any]:
    return {
        "type": "DevicePropertyUpdatedEvent",
        "data": {"id": device_id, "property": prop, "newValue": value},
    }


async def _dispatcher(tmp_path: Path, client: Any, targets: dict[str, RenderSurface]):
    registry = PackageRegistry(tmp_path)
    renderer = DeviceRenderer(WidgetResolver(registry))
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    auth_failures: list[AuthenticationError] = []
    dispatcher = EventDispatcher(
        client,
        renderer,
        target_lookup=lambda device: targets.get(str(device.id)),
        on_auth_failure=auth_failures.append,
        sleep=fake_sleep,
    )
    return dispatcher, sleeps, auth_failures


def test_parse_update_path_forms() -> None:
    """Plain, single-condition and grouped paths are recognised."""

    assert parse_update_path("event.newValue").properties is None
    single = parse_update_path("value == event.property ? event.newValue")
    assert single.value_path == "event.newValue"
    assert single.applies_to("value") and not single.applies_to("energy")
    group = parse_update_path("(a == event.property || b == event.property) ? data.x")
    assert group.properties == frozenset({"a", "b"})


def test_dispatch_table_is_pure() -> None:
    """Building twice from the same inputs yields equal tables."""

    devices = [
        Device(id=7, name="Lamp", type="lamp"),
        Device(id=8, name="Meter", type="meter"),
        Device(id=9, name="Unknown", type="nothing"),
    ]
    widgets = {"lamp": LAMP, "meter": METER}

    first = build_dispatch_table(devices, widgets)
    second = build_dispatch_table(devices, widgets)

    assert first == second
    assert set(first) == {"DevicePropertyUpdatedEvent", "CentralSceneEvent"}
    assert set(first["DevicePropertyUpdatedEvent"].devices) == {"7", "8"}
    assert first["CentralSceneEvent"].id_paths == ["data.deviceId"]


@pytest.mark.asyncio
async def test_lamp_event_updates_state_and_visible_target(tmp_path: Path) -> None:
    """A property event updates state and renders only visible targets."""

    lamp = Device(id=7, name="Lamp", type="lamp")
    hidden = Device(id=10, name="Hidden lamp", type="lamp")
    surface = RenderSurface()
    dispatcher, _, _ = await _dispatcher(tmp_path, ScriptedClient([]), {"7": surface})
    dispatcher.rebuild([lamp, hidden], {"lamp": LAMP})

    assert await dispatcher.async_dispatch(_property_event(7, "value", True)) is True
    assert lamp.state == {"value": True}
    assert surface.text == "true"

    assert await dispatcher.async_dispatch(_property_event(10, "value", {"value": True})) is True
    assert hidden.state == {"value": True}


@pytest.mark.asyncio
async def test_irrelevant_events_are_ignored(tmp_path: Path) -> None:
    """Untracked properties, unknown devices and unknown types are ignored."""

    lamp = Device(id=7, name="Lamp", type="lamp")
    dispatcher, _, _ = await _dispatcher(tmp_path, ScriptedClient([]), {})
    dispatcher.rebuild([lamp], {"lamp": LAMP})

    assert await dispatcher.async_dispatch(_property_event(7, "energy", 5)) is False
    assert await dispatcher.async_dispatch(_property_event(99, "value", True)) is False
    assert await dispatcher.async_dispatch({"type": "RoomModifiedEvent", "data": {}}) is False
    assert await dispatcher.async_dispatch(
        {"type": "DevicePropertyUpdatedEvent", "data": {"property": "value"}}
    ) is False
    assert lamp.state in (None, {"value": False})

    with pytest.raises(ProtocolDecodeError):
        await dispatcher.async_dispatch({"data": {}})


@pytest.mark.asyncio
async def test_event_type_shared_by_widgets_with_different_id_paths(tmp_path: Path) -> None:
    """Each device is found through the id path its own widget declares."""

    scene = WidgetDefinition.model_validate(
        {
            "type": "scene",
            "widgetVersion": "0.1.5",
            "state": {"value": 0},
            "events": {"CentralSceneEvent": {"updates": {"value": "data.keyId"}}},
        }
    )
    meter = Device(id=2, name="Meter", type="meter")
    remote = Device(id=3, name="Remote", type="scene")
    dispatcher, _, _ = await _dispatcher(tmp_path, ScriptedClient([]), {})
    dispatcher.rebuild([remote, meter], {"meter": METER, "scene": scene})

    assert dispatcher.dispatch_table["CentralSceneEvent"].id_paths == ["data.id", "data.deviceId"]
    assert await dispatcher.async_dispatch(
        {"type": "CentralSceneEvent", "data": {"deviceId": 2, "keyId": 4}}
    ) is True
    assert meter.state["value"] == 4
    assert await dispatcher.async_dispatch(
        {"type": "CentralSceneEvent", "data": {"id": 3, "keyId": 1}}
    ) is True
    assert remote.state == {"value": 1}
    assert await dispatcher.async_dispatch(
        {"type": "CentralSceneEvent", "data": {"id": 2, "keyId": 9}}
    ) is False
    assert meter.state["value"] == 4


@pytest.mark.asyncio
async def test_conditional_update_paths(tmp_path: Path) -> None:
    """Conditional paths only apply to their property and never add keys."""

    meter = Device(id=8, name="Meter", type="meter")
    dispatcher, _, _ = await _dispatcher(tmp_path, ScriptedClient([]), {})
    dispatcher.rebuild([meter], {"meter": METER})

    await dispatcher.async_dispatch(_property_event(8, "energy", 12.5))
    assert meter.state == {"value": 0, "energy": 12.5}

    await dispatcher.async_dispatch(_property_event(8, "power", 3))
    assert meter.state == {"value": 0, "energy": 3}

    await dispatcher.async_dispatch(_property_event(8, "value", 40))
    assert meter.state == {"value": 40, "energy": 3}

    await dispatcher.async_dispatch(
        {"type": "CentralSceneEvent", "data": {"deviceId": 8, "keyId": 2}}
    )
    assert meter.state == {"value": 2, "energy": 3}


@pytest.mark.asyncio
async def test_poll_loop_advances_cursor_and_backs_off(tmp_path: Path) -> None:
    """The loop retries failures, pauses after batches and never regresses."""

    lamp = Device(id=7, name="Lamp", type="lamp")
    client = ScriptedClient(
        [
            ChangeBatch(cursor=10, events=[_property_event(7, "value", True)]),
            TransportError("timeout"),
            ChangeBatch(cursor=8, events=[]),
            ProtocolDecodeError("garbage"),
            ChangeBatch(cursor=15, events=[{"no": "type"}, _property_event(7, "value", False)]),
        ]
    )
    dispatcher, sleeps, _ = await _dispatcher(tmp_path, client, {})
    client.dispatcher = dispatcher
    dispatcher.rebuild([lamp], {"lamp": LAMP})

    await dispatcher.async_run()

    assert client.cursors == [0, 10, 10, 10, 10, 15]
    assert dispatcher.cursor == 15
    assert sleeps == [1.0, 5.0, 5.0, 1.0]
    assert lamp.state == {"value": False}
    assert dispatcher.is_polling is False


@pytest.mark.asyncio
async def test_poll_loop_stops_on_auth_failure(tmp_path: Path) -> None:
    """Rejected credentials stop polling instead of retrying."""

    error = AuthenticationError("denied", status=401)
    client = ScriptedClient([error, ChangeBatch(cursor=1)])
    dispatcher, sleeps, auth_failures = await _dispatcher(tmp_path, client, {})
    client.dispatcher = dispatcher

    await dispatcher.async_run()

    assert auth_failures == [error]
    assert client.cursors == [0]
    assert sleeps == []
    assert dispatcher.is_polling is False


@pytest.mark.asyncio
async def test_start_and_stop_background_task(tmp_path: Path) -> None:
    """start() runs the loop as a task that exits once stopped."""

    client = ScriptedClient([ChangeBatch(cursor=3)])
    dispatcher, _, _ = await _dispatcher(tmp_path, client, {})
    client.dispatcher = dispatcher

    task = dispatcher.start()
    assert dispatcher.start() is task
    await dispatcher.async_wait_stopped()

    assert task.done()
    assert dispatcher.cursor == 3
