"""Tests for the remote widget protocol engine."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pytest

from homemap.const import DEFAULT_REMOTE_ICON, STORAGE_VERSION
from homemap.errors import ProtocolDecodeError, ResolutionMiss, TransportError
from homemap.remote.manager import RemoteWidgetManager
from homemap.storage import Store
from homemap.widgets.packages import PackageRegistry
from homemap.widgets.resolver import WidgetResolver


class FakeTransport:
    """Peripheral transport recording outbound traffic."""

    def __init__(self) -> None:
        """Start stopped with no connections."""

        self.running = False
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.requests: list[str | None] = []
        self.clients: list[str] = []
        self.fail_send = False
        self.starts: list[tuple[int, str]] = []

    @property
    def is_running(self) -> bool:
        """Return whether start was called."""

        return self.running

    def connected_clients(self) -> list[str]:
        """Return the configured connection ids."""

        return list(self.clients)

    async def async_start(self, port: int, bind_address: str) -> None:
        """Record the start request."""

        self.starts.append((port, bind_address))
        self.running = True

    async def async_stop(self) -> None:
        """Record the stop request."""

        self.running = False

    async def async_send(self, connection_id: str, message: Mapping[str, Any]) -> None:
        """Record or fail a message."""

        if self.fail_send:
            raise TransportError(f"{connection_id} gone")
        self.sent.append((connection_id, dict(message)))

    async def async_request_widgets(self, connection_id: str | None = None) -> None:
        """Record a re-registration request."""

        self.requests.append(connection_id)


class Clock:
    """Deterministic clock."""

    def __init__(self, now: float = 1700000000.0) -> None:
        """Start at ``now`` seconds."""

        self.now = now

    def __call__(self) -> float:
        """Return the current time."""

        return self.now


def _register(peripheral_id: Any = 55, *widget_ids: str, name: str = "Panel") -> dict[str, Any]:
    return {
        "type": "register-widgets",
        "qaId": peripheral_id,
        "qaName": name,
        "widgets": [{"id": wid, "name": f"Widget {wid}"} for wid in widget_ids],
    }


def _manager(tmp_path: Path) -> tuple[RemoteWidgetManager, FakeTransport, list[tuple[str, str]]]:
    icon_dir = tmp_path / "icons" / "built-in" / "defaultButton"
    icon_dir.mkdir(parents=True, exist_ok=True)
    (icon_dir / "icon.png").write_text("png")
    resolver = WidgetResolver(PackageRegistry(tmp_path))
    transport = FakeTransport()
    notices: list[tuple[str, str]] = []
    manager = RemoteWidgetManager(
        resolver,
        store=Store(tmp_path, STORAGE_VERSION, "homemap_remote_widgets"),
        transport=transport,
        notifier=lambda message, level: notices.append((message, level)),
        clock=Clock(),
    )
    return manager, transport, notices


async def _saved(tmp_path: Path) -> list[dict[str, Any]]:
    data = await Store(tmp_path, STORAGE_VERSION, "homemap_remote_widgets").async_load()
    return data["remoteWidgets"] if data else []


@pytest.mark.asyncio
async def test_registration_and_palette(tmp_path: Path) -> None:
    """Registration records the peripheral and notifies success."""

    manager, _, notices = _manager(tmp_path)

    await manager.async_handle_message("client_1", _register(55, "A", "B"))

    assert notices == [("Connected: Panel (2 widgets)", "success")]
    palette = manager.palette()
    assert palette[0]["peripheralId"] == "55"
    assert [w["id"] for w in palette[0]["widgets"]] == ["A", "B"]


@pytest.mark.asyncio
async def test_place_widget_persists_and_renders(tmp_path: Path) -> None:
    """Placing creates a uniquely named instance and saves its placement."""

    manager, _, _ = _manager(tmp_path)
    await manager.async_handle_message("client_1", _register(55, "A"))

    first = await manager.async_place_widget("client_1", "A", "f1", 10.0, 20.0)
    second = await manager.async_place_widget("client_1", "A", "f1", 50.0, 50.0)

    assert first == "remote-client_1-A-1700000000000"
    assert second != first
    instance = manager.get_instance(first)
    assert instance.surface.icon == DEFAULT_REMOTE_ICON
    assert instance.surface.text == "Widget A"
    saved = await _saved(tmp_path)
    assert saved[0] == {"peripheralId": "55", "widgetId": "A", "floor": "f1", "x": 10.0, "y": 20.0, "parameters": {}}
    assert len(saved) == 2

    with pytest.raises(ResolutionMiss):
        await manager.async_place_widget("client_1", "Z", "f1", 0, 0)


@pytest.mark.asyncio
async def test_disconnect_keeps_instances(tmp_path: Path) -> None:
    """A closed connection marks instances disconnected without deleting them."""

    manager, _, notices = _manager(tmp_path)
    await manager.async_handle_message("client_1", _register(55, "A"))
    instance_id = await manager.async_place_widget("client_1", "A", "f1", 1, 1)

    await manager.async_handle_disconnected("client_1")

    instance = manager.get_instance(instance_id)
    assert instance.disconnected is True
    assert instance.surface.text == "Not connected"
    assert manager.clients == {}
    assert ("Disconnected: Panel", "warning") in notices
    assert len(await _saved(tmp_path)) == 1


@pytest.mark.asyncio
async def test_reregistration_reconciles_removed_widgets(tmp_path: Path) -> None:
    """Re-registering {A, C} after {A, B, C} deletes only B's instances."""

    manager, _, notices = _manager(tmp_path)
    await manager.async_handle_message("client_1", _register(55, "A", "B", "C"))
    ids = {
        wid: await manager.async_place_widget("client_1", wid, "f1", x, 10)
        for wid, x in (("A", 10), ("B", 20), ("C", 30))
    }
    await manager.async_configure_instance(ids["A"], label="Front door")
    await manager.async_handle_disconnected("client_1")

    await manager.async_handle_message("client_2", _register(55, "A", "C"))

    assert set(manager.instances) == {ids["A"], ids["C"]}
    for wid in ("A", "C"):
        instance = manager.get_instance(ids[wid])
        assert instance.connection_id == "client_2"
        assert instance.disconnected is False
    assert sorted(p["widgetId"] for p in await _saved(tmp_path)) == ["A", "C"]
    assert manager.get_instance(ids["A"]).custom_label == "Front door"
    assert any(level == "warning" and "obsolete" in message for message, level in notices)


@pytest.mark.asyncio
async def test_restore_is_idempotent_and_upgraded_by_registration(tmp_path: Path) -> None:
    """Placeholders are created once and upgraded in place on registration."""

    manager, _, _ = _manager(tmp_path)
    await manager.async_handle_message("client_1", _register(55, "A"))
    await manager.async_place_widget("client_1", "A", "f1", 10, 20)

    restarted, _, _ = _manager(tmp_path)
    await restarted.async_load()
    assert await restarted.async_restore_all_saved_widgets() == 1
    assert await restarted.async_restore_all_saved_widgets() == 0

    (placeholder,) = restarted.instances.values()
    assert placeholder.placeholder is True
    assert placeholder.surface.text == "Not connected"
    assert placeholder.widget.name == "Remote Widget"

    await restarted.async_handle_message("client_9", _register(55, "A"))

    (upgraded,) = restarted.instances.values()
    assert upgraded.instance_id == placeholder.instance_id
    assert upgraded.placeholder is False
    assert upgraded.connection_id == "client_9"
    assert upgraded.surface.text == "Widget A"


@pytest.mark.asyncio
async def test_registration_restores_saved_placements(tmp_path: Path) -> None:
    """Saved placements reappear when their peripheral registers."""

    manager, _, _ = _manager(tmp_path)
    await manager.async_handle_message("client_1", _register(55, "A"))
    await manager.async_place_widget("client_1", "A", "f1", 10, 20)

    restarted, _, _ = _manager(tmp_path)
    await restarted.async_load()
    await restarted.async_handle_message("client_2", _register(55, "A"))
    await restarted.async_handle_message("client_2", _register(55, "A"))

    assert len(restarted.instances) == 1
    (instance,) = restarted.instances.values()
    assert (instance.floor, instance.x, instance.y) == ("f1", 10, 20)


@pytest.mark.asyncio
async def test_legacy_placements_seed_empty_store(tmp_path: Path) -> None:
    """Placements from the floor-plan document seed an empty store."""

    manager, _, _ = _manager(tmp_path)

    records = await manager.async_load(
        [{"qaId": 7, "widgetId": "w", "floor": "f", "x": 1, "y": 2}, {"bad": True}]
    )

    assert [(r.peripheral_id, r.widget_id) for r in records] == [("7", "w")]


@pytest.mark.asyncio
async def test_widget_update_applies_partial_changes(tmp_path: Path) -> None:
    """Only the supplied visual fields are changed."""

    manager, _, _ = _manager(tmp_path)
    await manager.async_handle_message("client_1", _register(55, "A"))
    instance_id = await manager.async_place_widget("client_1", "A", "f1", 1, 1)

    await manager.async_handle_message(
        "client_1",
        {"type": "widget-update", "widgetId": "A", "changes": {"label": "21°C", "color": "#ff0000"}},
    )
    await manager.async_handle_message(
        "client_1", {"type": "widget-update", "widgetId": "A", "changes": {"backgroundColor": "#000"}}
    )

    surface = manager.get_instance(instance_id).surface
    assert surface.text == "21°C"
    assert surface.style == {"--widget-color": "#ff0000", "--widget-bg-color": "#000"}


@pytest.mark.asyncio
async def test_click_round_trip(tmp_path: Path) -> None:
    """Clicks send a widget-event; disconnected instances report an error."""

    manager, transport, notices = _manager(tmp_path)
    await manager.async_handle_message("client_1", _register(55, "A"))
    instance_id = await manager.async_place_widget("client_1", "A", "f1", 12.5, 40)
    await manager.async_configure_instance(instance_id, parameter_name="scene", parameter_value="movie")

    assert await manager.async_click(instance_id) is True
    connection_id, message = transport.sent[0]
    assert connection_id == "client_1"
    assert message == {
        "type": "widget-event",
        "widgetId": "A",
        "event": "click",
        "data": {
            "floor": "f1",
            "x": 12.5,
            "y": 40,
            "timestamp": 1700000000000,
            "parameters": {"scene": "movie"},
        },
    }

    transport.fail_send = True
    assert await manager.async_click(instance_id) is False
    assert notices[-1] == ('Widget "Widget A" disconnected', "error")

    await manager.async_handle_disconnected("client_1")
    assert await manager.async_click(instance_id) is False
    assert notices[-1] == ('Widget "Widget A" is not connected', "error")


@pytest.mark.asyncio
async def test_configure_and_clear_instance(tmp_path: Path) -> None:
    """Instance configuration validates parameters and parses package icons."""

    manager, _, notices = _manager(tmp_path)
    await manager.async_handle_message("client_1", _register(55, "A"))
    instance_id = await manager.async_place_widget("client_1", "A", "f1", 1, 1)

    assert await manager.async_configure_instance(instance_id, parameter_name="only") is False
    assert notices[-1][1] == "error"

    assert await manager.async_configure_instance(
        instance_id, label="Movie", icon="com.x:buttons"
    ) is True
    instance = manager.get_instance(instance_id)
    assert (instance.custom_icon_set, instance.custom_icon_package) == ("buttons", "com.x")
    assert instance.surface.text == "Movie"
    assert manager.icon_set_for(instance) == ("buttons", "com.x")
    saved = (await _saved(tmp_path))[0]
    assert saved["customLabel"] == "Movie"
    assert saved["customIconPackage"] == "com.x"

    assert await manager.async_clear_instance_config(instance_id) is True
    assert instance.custom_label is None
    assert instance.parameters == {}
    assert "customLabel" not in (await _saved(tmp_path))[0]


@pytest.mark.asyncio
async def test_move_and_remove_instance(tmp_path: Path) -> None:
    """Moving and removing persist the change."""

    manager, _, _ = _manager(tmp_path)
    await manager.async_handle_message("client_1", _register(55, "A"))
    instance_id = await manager.async_place_widget("client_1", "A", "f1", 1, 1)

    assert await manager.async_move_instance(instance_id, 30, 40, floor="f2") is True
    saved = (await _saved(tmp_path))[0]
    assert (saved["floor"], saved["x"], saved["y"]) == ("f2", 30, 40)
    assert manager.instances_on_floor("f2")

    assert await manager.async_remove_instance(instance_id) is True
    assert await manager.async_remove_instance(instance_id) is False
    assert await _saved(tmp_path) == []


@pytest.mark.asyncio
async def test_unregister_marks_instances_disconnected(tmp_path: Path) -> None:
    """unregister-widgets forgets the client but keeps its instances."""

    manager, _, _ = _manager(tmp_path)
    await manager.async_handle_message("client_1", _register(55, "A"))
    instance_id = await manager.async_place_widget("client_1", "A", "f1", 1, 1)

    await manager.async_handle_message("client_1", {"type": "unregister-widgets", "qaId": 55})

    assert manager.clients == {}
    assert manager.get_instance(instance_id).disconnected is True


@pytest.mark.asyncio
async def test_duplicate_peripheral_registration_replaces_old_connection(tmp_path: Path) -> None:
    """The latest connection of a peripheral wins."""

    manager, _, _ = _manager(tmp_path)
    await manager.async_handle_message("client_1", _register(55, "A"))
    await manager.async_handle_message("client_2", _register(55, "A"))

    assert list(manager.clients) == ["client_2"]


@pytest.mark.asyncio
async def test_malformed_messages(tmp_path: Path) -> None:
    """Invalid messages raise decode errors, unknown types are ignored."""

    manager, _, _ = _manager(tmp_path)

    with pytest.raises(ProtocolDecodeError):
        await manager.async_handle_message("client_1", {"qaId": 1})
    with pytest.raises(ProtocolDecodeError):
        await manager.async_handle_message("client_1", {"type": "register-widgets", "widgets": []})

    await manager.async_handle_message("client_1", {"type": "something-else"})
    await manager.async_handle_message("client_1", {"type": "heartbeat"})
    assert manager.clients == {}


@pytest.mark.asyncio
async def test_server_lifecycle(tmp_path: Path) -> None:
    """Start is idempotent, stop disconnects everything, sync re-requests."""

    manager, transport, notices = _manager(tmp_path)

    assert await manager.async_start_server(8765, "0.0.0.0") is True
    assert await manager.async_start_server(8765, "0.0.0.0") is True
    assert transport.starts == [(8765, "0.0.0.0")]
    assert notices[-1] == ("WebSocket server is already running", "info")

    await manager.async_handle_message("client_1", _register(55, "A"))
    instance_id = await manager.async_place_widget("client_1", "A", "f1", 1, 1)
    transport.clients = ["client_1"]
    assert await manager.async_sync_server_state() == ["client_1"]
    assert transport.requests == [None]

    await manager.async_stop_server()
    assert transport.running is False
    assert manager.clients == {}
    assert manager.get_instance(instance_id).disconnected is True


@pytest.mark.asyncio
async def test_concurrent_placement_during_registration_and_update(tmp_path: Path) -> None:
    """Placing a widget while another peripheral re-renders does not break either."""

    manager, _, _ = _manager(tmp_path)
    panel = _register(55, "A", "B")
    for widget in panel["widgets"]:
        widget["iconSet"] = "notInstalled"
    await manager.async_handle_message("client_1", panel)
    await manager.async_place_widget("client_1", "A", "f1", 1, 1)
    await manager.async_place_widget("client_1", "B", "f1", 2, 2)
    await manager.async_handle_message("client_b", _register(66, "C", name="Remote"))

    await asyncio.gather(
        manager.async_handle_message("client_1", panel),
        manager.async_place_widget("client_b", "C", "f1", 9, 9),
    )
    await asyncio.gather(
        manager.async_handle_message(
            "client_1", {"type": "widget-update", "widgetId": "A", "changes": {"label": "On"}}
        ),
        manager.async_place_widget("client_b", "C", "f2", 5, 5),
    )

    assert len(manager.instances) == 4
    assert len(await _saved(tmp_path)) == 4
    assert [i.surface.text for i in manager.instances.values() if i.widget.id == "A"] == ["On"]


@pytest.mark.asyncio
async def test_lamp_update_disconnect_and_reconnect(tmp_path: Path) -> None:
    """An icon set update, a disconnect and a re-registration keep one instance."""

    for icon_set in ("lamp-off", "lamp-on"):
        directory = tmp_path / "icons" / icon_set
        directory.mkdir(parents=True)
        (directory / "icon.svg").write_text("<svg/>")
    manager, _, _ = _manager(tmp_path)
    lamp_panel = {
        "type": "register-widgets",
        "qaId": 55,
        "qaName": "Panel",
        "widgets": [{"id": "lamp", "name": "Lamp", "iconSet": "lamp-off"}],
    }
    await manager.async_handle_message("client_1", lamp_panel)

    instance_id = await manager.async_place_widget("client_1", "lamp", "F1", 40, 60)
    instance = manager.get_instance(instance_id)
    assert instance.surface.icon == "icons/lamp-off/icon.svg"
    assert instance.surface.text == "Lamp"
    saved = await _saved(tmp_path)

    await manager.async_handle_message(
        "client_1",
        {"type": "widget-update", "widgetId": "lamp", "changes": {"iconSet": "lamp-on"}},
    )
    assert manager.icon_set_for(instance) == ("lamp-on", None)
    assert instance.surface.icon == "icons/lamp-on/icon.svg"
    assert instance.surface.text == "Lamp"

    await manager.async_handle_disconnected("client_1")
    assert instance.disconnected is True
    assert instance.surface.disconnected is True
    assert instance.surface.text == "Not connected"
    assert await _saved(tmp_path) == saved

    await manager.async_handle_message("client_2", lamp_panel)
    assert list(manager.instances) == [instance_id]
    assert instance.disconnected is False
    assert instance.connection_id == "client_2"
    assert instance.surface.text == "Lamp"
    assert await _saved(tmp_path) == saved
