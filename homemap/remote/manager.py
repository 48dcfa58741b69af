"""Lifecycle of widgets registered by push peripherals."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol

from pydantic import ValidationError

from ..const import (
    BUILT_IN_PACKAGE,
    DEFAULT_ICON_SET,
    DEFAULT_REMOTE_ICON,
    DISCONNECTED_LABEL,
    MSG_EVENT,
    MSG_HEARTBEAT,
    MSG_REGISTER,
    MSG_UNREGISTER,
    MSG_UPDATE,
    PLACEHOLDER_LABEL,
    PLACEMENTS_STORAGE_KEY,
    STORAGE_VERSION,
)
from ..errors import HomeMapError, ProtocolDecodeError, ResolutionMiss
from ..storage import Store
from ..widgets.resolver import WidgetResolver
from .models import (
    PlacementKey,
    PlacementRecord,
    RegisterWidgetsMessage,
    RemoteClient,
    RemoteWidget,
    UnregisterWidgetsMessage,
    WidgetChanges,
    WidgetInstance,
    WidgetUpdateMessage,
)

_LOGGER = logging.getLogger(__name__)

Notifier = Callable[[str, str], Any]


class PeripheralTransport(Protocol):
    """Message channel to connected peripherals."""

    @property
    def is_running(self) -> bool:
        """Return whether the transport accepts connections."""

    def connected_clients(self) -> list[str]:
        """Return the ids of open connections."""

    async def async_start(self, port: int, bind_address: str) -> None:
        """Start accepting peripheral connections."""

    async def async_stop(self) -> None:
        """Close every connection and stop listening."""

    async def async_send(self, connection_id: str, message: Mapping[str, Any]) -> None:
        """Send ``message`` to one connection."""

    async def async_request_widgets(self, connection_id: str | None = None) -> None:
        """Ask one or every connection to register its widgets again."""


def log_notification(message: str, level: str) -> None:
    """Default notifier writing notifications to the log."""

    log_level = {"error": logging.ERROR, "warning": logging.WARNING}.get(
        level, logging.INFO
    )
    _LOGGER.log(log_level, "[%s] %s", level, message)


class RemoteWidgetManager:
    """Own registered peripherals and the widget instances placed on floors.

    Instances live in an arena keyed by a generated instance id, which does
    not survive reconnects. A secondary index keyed by peripheral, widget and
    floor is used together with a position tolerance to find the instance for
    a persisted placement, so restoring the same placements twice never
    creates duplicates.
    """

    def __init__(
        self,
        resolver: WidgetResolver,
        *,
        store: Store | None = None,
        transport: PeripheralTransport | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Bind the icon resolver, persistence, transport and notifier."""

        self._resolver = resolver
        self._store = store or Store(
            resolver.data_path, STORAGE_VERSION, PLACEMENTS_STORAGE_KEY
        )
        self._transport = transport
        self._notify = notifier or log_notification
        self._clock = clock or time.time
        self._clients: dict[str, RemoteClient] = {}
        self._instances: dict[str, WidgetInstance] = {}
        self._index: dict[tuple[str, str, str], set[str]] = {}
        self._placements: list[PlacementRecord] = []

    # Accessors

    @property
    def clients(self) -> Mapping[str, RemoteClient]:
        """Return registered peripherals keyed by connection id."""

        return dict(self._clients)

    @property
    def instances(self) -> Mapping[str, WidgetInstance]:
        """Return placed instances keyed by instance id."""

        return dict(self._instances)

    @property
    def placements(self) -> list[PlacementRecord]:
        """Return the last persisted placement list."""

        return list(self._placements)

    def attach_transport(self, transport: PeripheralTransport) -> None:
        """Use ``transport`` to reach peripherals."""

        self._transport = transport

    def get_instance(self, instance_id: str) -> WidgetInstance | None:
        """Return the instance with ``instance_id``."""

        return self._instances.get(instance_id)

    def instances_on_floor(self, floor: str) -> list[WidgetInstance]:
        """Return the instances placed on ``floor``."""

        return [instance for instance in self._instances.values() if instance.floor == floor]

    def find_instance(self, key: PlacementKey) -> WidgetInstance | None:
        """Return the live instance matching a stable placement key."""

        for instance_id in self._index.get(key.bucket, ()):
            instance = self._instances[instance_id]
            if instance.key.matches(key):
                return instance
        return None

    def palette(self) -> list[dict[str, Any]]:
        """Summarise registered peripherals and their widgets."""

        return [
            {
                "connectionId": connection_id,
                "peripheralId": client.peripheral_id,
                "peripheralName": client.peripheral_name,
                "widgetCount": len(client.widgets),
                "widgets": [
                    {"id": widget.id, "name": widget.name} for widget in client.widgets
                ],
            }
            for connection_id, client in self._clients.items()
        ]

    # Persistence

    async def async_load(
        self, fallback: Iterable[Mapping[str, Any]] | None = None
    ) -> list[PlacementRecord]:
        """Load persisted placements.

        ``fallback`` seeds the placements when nothing was stored yet, which
        is how ``remoteWidgets`` from the floor-plan document are imported.
        """

        data = await self._store.async_load()
        if data is None:
            data = {"remoteWidgets": list(fallback or [])}
        records: list[PlacementRecord] = []
        for raw in data.get("remoteWidgets", []):
            try:
                records.append(PlacementRecord.model_validate(raw))
            except ValidationError as err:
                _LOGGER.warning("Skipping invalid saved placement %r: %s", raw, err)
        self._placements = records
        _LOGGER.debug("Loaded %d saved remote widget placements", len(records))
        return list(records)

    async def async_save(self) -> None:
        """Persist the placement of every live instance."""

        self._placements = [instance.to_record() for instance in self._instances.values()]
        try:
            await self._store.async_save(
                {"remoteWidgets": [record.to_dict() for record in self._placements]}
            )
        except OSError as err:
            _LOGGER.error("Failed to save remote widget placements: %s", err)
            self._notify(f"Failed to save remote widgets: {err}", "error")

    # Instance arena

    def _new_instance_id(self, connection_id: str | None, widget_id: str) -> str:
        stamp = int(self._clock() * 1000)
        owner = connection_id or "offline"
        instance_id = f"remote-{owner}-{widget_id}-{stamp}"
        while instance_id in self._instances:
            stamp += 1
            instance_id = f"remote-{owner}-{widget_id}-{stamp}"
        return instance_id

    def _add_instance(self, instance: WidgetInstance) -> None:
        self._instances[instance.instance_id] = instance
        self._index.setdefault(instance.key.bucket, set()).add(instance.instance_id)

    def _drop_instance(self, instance_id: str) -> WidgetInstance | None:
        instance = self._instances.pop(instance_id, None)
        if instance is None:
            return None
        bucket = self._index.get(instance.key.bucket)
        if bucket is not None:
            bucket.discard(instance_id)
            if not bucket:
                del self._index[instance.key.bucket]
        return instance

    def _reindex(self, instance: WidgetInstance, old_bucket: tuple[str, str, str]) -> None:
        if old_bucket == instance.key.bucket:
            return
        bucket = self._index.get(old_bucket)
        if bucket is not None:
            bucket.discard(instance.instance_id)
            if not bucket:
                del self._index[old_bucket]
        self._index.setdefault(instance.key.bucket, set()).add(instance.instance_id)

    def _create_instance(
        self,
        widget: RemoteWidget,
        peripheral_id: str,
        connection_id: str | None,
        floor: str,
        x: float,
        y: float,
        record: PlacementRecord | None = None,
        *,
        placeholder: bool = False,
    ) -> WidgetInstance:
        instance = WidgetInstance(
            instance_id=self._new_instance_id(connection_id, widget.id),
            peripheral_id=peripheral_id,
            widget=widget,
            connection_id=connection_id,
            floor=floor,
            x=x,
            y=y,
            placeholder=placeholder,
            disconnected=placeholder,
        )
        if record is not None:
            instance.parameters = dict(record.parameters)
            instance.custom_label = record.custom_label
            instance.custom_icon_set = record.custom_icon_set
            instance.custom_icon_package = record.custom_icon_package
        self._add_instance(instance)
        return instance

    async def async_place_widget(
        self, connection_id: str, widget_id: str, floor: str, x: float, y: float
    ) -> str:
        """Place a widget offered by ``connection_id`` and persist the placement."""

        client = self._clients.get(connection_id)
        widget = client.widget(widget_id) if client else None
        if client is None or widget is None:
            msg = f"Widget {widget_id} is not offered by {connection_id}"
            raise ResolutionMiss(msg)
        instance = self._create_instance(
            widget, client.peripheral_id, connection_id, floor, x, y
        )
        _LOGGER.info(
            "Placed %s on floor %s at %.1f%%, %.1f%%", widget.display_name, floor, x, y
        )
        await self.async_render_instance(instance)
        await self.async_save()
        return instance.instance_id

    async def async_remove_instance(self, instance_id: str) -> bool:
        """Remove an instance and persist the change."""

        if self._drop_instance(instance_id) is None:
            _LOGGER.error("Cannot remove widget %s: not found", instance_id)
            return False
        await self.async_save()
        self._notify("Widget removed", "info")
        return True

    async def async_move_instance(
        self, instance_id: str, x: float, y: float, floor: str | None = None
    ) -> bool:
        """Move an instance and persist the new position."""

        instance = self._instances.get(instance_id)
        if instance is None:
            return False
        old_bucket = instance.key.bucket
        instance.x = x
        instance.y = y
        if floor is not None:
            instance.floor = floor
        self._reindex(instance, old_bucket)
        await self.async_save()
        return True

    # Restore

    async def async_restore_all_saved_widgets(self) -> int:
        """Create placeholder instances for every persisted placement.

        Placeholders render as disconnected until their peripheral registers.
        Placements that already have a live instance are skipped.
        """

        created = 0
        for record in self._placements:
            if self.find_instance(record.key) is not None:
                continue
            placeholder = RemoteWidget(
                id=record.widget_id,
                name=record.custom_label or PLACEHOLDER_LABEL,
                label=record.custom_label or PLACEHOLDER_LABEL,
                icon_set=record.custom_icon_set or DEFAULT_ICON_SET,
                icon_package=record.custom_icon_package,
            )
            instance = self._create_instance(
                placeholder,
                record.peripheral_id,
                None,
                record.floor,
                record.x,
                record.y,
                record,
                placeholder=True,
            )
            await self.async_render_instance(instance)
            created += 1
        if created:
            _LOGGER.info("Restored %d saved remote widgets", created)
        return created

    async def async_restore_placed_widgets(self, connection_id: str) -> int:
        """Create instances for saved placements of a freshly registered peripheral."""

        client = self._clients.get(connection_id)
        if client is None:
            return 0
        created = 0
        for record in self._placements:
            if record.peripheral_id != client.peripheral_id:
                continue
            if self.find_instance(record.key) is not None:
                continue
            widget = client.widget(record.widget_id)
            if widget is None:
                continue
            instance = self._create_instance(
                widget,
                client.peripheral_id,
                connection_id,
                record.floor,
                record.x,
                record.y,
                record,
            )
            await self.async_render_instance(instance)
            created += 1
        if created:
            await self.async_save()
        return created

    # Protocol messages

    def handle_connected(self, connection_id: str, address: str | None = None) -> None:
        """Record a new connection; registration follows separately."""

        _LOGGER.info("Peripheral connection %s from %s", connection_id, address or "?")

    async def async_handle_message(
        self, connection_id: str, message: Mapping[str, Any]
    ) -> None:
        """Route one decoded peripheral message.

        Malformed messages raise :class:`ProtocolDecodeError`; they never
        affect other peripherals.
        """

        message_type = message.get("type")
        if not isinstance(message_type, str):
            msg = "Missing 'type' field"
            raise ProtocolDecodeError(msg)
        try:
            if message_type == MSG_REGISTER:
                await self.async_register(
                    connection_id, RegisterWidgetsMessage.model_validate(message)
                )
            elif message_type == MSG_UPDATE:
                await self.async_update_widget(
                    connection_id, WidgetUpdateMessage.model_validate(message)
                )
            elif message_type == MSG_UNREGISTER:
                await self.async_unregister(
                    connection_id, UnregisterWidgetsMessage.model_validate(message)
                )
            elif message_type == MSG_HEARTBEAT:
                _LOGGER.debug("Heartbeat from %s", connection_id)
            else:
                _LOGGER.warning(
                    "Unknown message type %s from %s", message_type, connection_id
                )
        except ValidationError as err:
            msg = f"Invalid {message_type} message from {connection_id}: {err}"
            raise ProtocolDecodeError(msg) from err

    async def async_register(
        self, connection_id: str, message: RegisterWidgetsMessage
    ) -> None:
        """Apply a widget registration, reconciling earlier placements."""

        peripheral_id = message.peripheral_id
        name = message.peripheral_name or peripheral_id
        widgets = list(message.widgets)

        for other_id, other in list(self._clients.items()):
            if other_id != connection_id and other.peripheral_id == peripheral_id:
                _LOGGER.warning(
                    "Peripheral %s registered again from %s; replacing %s",
                    peripheral_id,
                    connection_id,
                    other_id,
                )
                del self._clients[other_id]

        is_reconnect = (
            connection_id in self._clients
            or any(
                instance.peripheral_id == peripheral_id
                for instance in self._instances.values()
            )
        )
        if is_reconnect:
            await self._async_remove_obsolete(peripheral_id, {w.id for w in widgets})

        self._clients[connection_id] = RemoteClient(
            connection_id=connection_id,
            peripheral_id=peripheral_id,
            peripheral_name=name,
            widgets=widgets,
        )
        _LOGGER.info(
            "Registered %d widgets from %s%s",
            len(widgets),
            name,
            " (reconnect)" if is_reconnect else "",
        )
        self._notify(f"Connected: {name} ({len(widgets)} widgets)", "success")

        await self._async_restore_visuals(connection_id)
        await self.async_restore_placed_widgets(connection_id)

    async def _async_remove_obsolete(
        self, peripheral_id: str, widget_ids: set[str]
    ) -> None:
        """Delete instances whose widget the peripheral no longer offers."""

        obsolete = [
            instance_id
            for instance_id, instance in self._instances.items()
            if instance.peripheral_id == peripheral_id
            and instance.widget.id not in widget_ids
        ]
        if not obsolete:
            return
        for instance_id in obsolete:
            removed = self._drop_instance(instance_id)
            _LOGGER.warning(
                "Removing obsolete widget %s of %s",
                removed.widget.id if removed else instance_id,
                peripheral_id,
            )
        await self.async_save()
        self._notify(
            f"Removed {len(obsolete)} obsolete widget(s) from {peripheral_id}", "warning"
        )

    async def _async_restore_visuals(self, connection_id: str) -> None:
        client = self._clients[connection_id]
        for instance in list(self._instances.values()):
            if instance.peripheral_id != client.peripheral_id:
                continue
            instance.connection_id = connection_id
            instance.disconnected = False
            if instance.placeholder:
                widget = client.widget(instance.widget.id)
                if widget is not None:
                    instance.widget = widget
                    instance.placeholder = False
            await self.async_render_instance(instance)

    async def async_update_widget(
        self, connection_id: str, message: WidgetUpdateMessage
    ) -> int:
        """Apply a partial update to every instance of a connection's widget."""

        updated = 0
        for instance in list(self._instances.values()):
            if (
                instance.connection_id == connection_id
                and instance.widget.id == message.widget_id
            ):
                _apply_changes(instance, message.changes)
                await self.async_render_instance(instance)
                updated += 1
        _LOGGER.debug(
            "Applied update for %s to %d instance(s)", message.widget_id, updated
        )
        return updated

    async def async_unregister(
        self, connection_id: str, message: UnregisterWidgetsMessage | None = None
    ) -> None:
        """Forget a registration and show its instances as disconnected."""

        client = self._clients.pop(connection_id, None)
        if client is None:
            return
        if message is not None and message.peripheral_id not in (
            None,
            client.peripheral_id,
        ):
            _LOGGER.warning(
                "Unregister for %s arrived on connection of %s",
                message.peripheral_id,
                client.peripheral_id,
            )
        _LOGGER.info("Unregistering widgets of %s", client.peripheral_name)
        await self._async_mark_disconnected(
            instance
            for instance in self._instances.values()
            if instance.peripheral_id == client.peripheral_id
        )

    async def async_handle_disconnected(self, connection_id: str) -> None:
        """Handle a closed connection without deleting its instances."""

        client = self._clients.pop(connection_id, None)
        if client is None:
            _LOGGER.debug("Connection %s closed before registering", connection_id)
            return
        _LOGGER.info("Peripheral %s disconnected", client.peripheral_name)
        self._notify(f"Disconnected: {client.peripheral_name}", "warning")
        await self._async_mark_disconnected(
            instance
            for instance in self._instances.values()
            if instance.peripheral_id == client.peripheral_id
        )

    async def _async_mark_disconnected(self, instances: Iterable[WidgetInstance]) -> None:
        for instance in list(instances):
            instance.disconnected = True
            await self.async_render_instance(instance)

    # Interaction

    async def async_click(self, instance_id: str) -> bool:
        """Send a click ``widget-event`` for an instance to its peripheral."""

        instance = self._instances.get(instance_id)
        if instance is None:
            return False
        name = instance.widget.display_name
        if instance.disconnected or instance.connection_id is None:
            self._notify(f'Widget "{name}" is not connected', "error")
            return False
        message = {
            "type": MSG_EVENT,
            "widgetId": instance.widget.id,
            "event": "click",
            "data": {
                "floor": instance.floor,
                "x": instance.x,
                "y": instance.y,
                "timestamp": int(self._clock() * 1000),
                "parameters": dict(instance.parameters),
            },
        }
        if self._transport is None:
            self._notify(f'Widget "{name}" disconnected', "error")
            return False
        try:
            await self._transport.async_send(instance.connection_id, message)
        except (HomeMapError, ConnectionError) as err:
            _LOGGER.error("Failed to send widget event for %s: %s", name, err)
            self._notify(f'Widget "{name}" disconnected', "error")
            return False
        return True

    async def async_configure_instance(
        self,
        instance_id: str,
        *,
        label: str | None = None,
        icon: str | None = None,
        parameter_name: str | None = None,
        parameter_value: str | None = None,
    ) -> bool:
        """Set custom label, icon set and parameter of an instance.

        ``icon`` is either ``name`` or ``package:name``. The parameter name and
        value must be given together or both left empty.
        """

        instance = self._instances.get(instance_id)
        if instance is None:
            return False
        if bool(parameter_name) != bool(parameter_value):
            self._notify(
                "Please provide both parameter name and value, or leave both empty",
                "error",
            )
            return False
        icon_set, icon_package = _split_qualified_icon(icon)
        instance.custom_label = label or None
        instance.custom_icon_set = icon_set
        instance.custom_icon_package = icon_package
        instance.parameters = (
            {parameter_name: parameter_value} if parameter_name else {}
        )
        await self.async_render_instance(instance)
        await self.async_save()
        self._notify("Widget configuration saved", "success")
        return True

    async def async_clear_instance_config(self, instance_id: str) -> bool:
        """Reset an instance to its widget defaults."""

        instance = self._instances.get(instance_id)
        if instance is None:
            return False
        instance.parameters = {}
        instance.custom_label = None
        instance.custom_icon_set = None
        instance.custom_icon_package = None
        await self.async_render_instance(instance)
        await self.async_save()
        self._notify("Widget reset to defaults", "info")
        return True

    # Rendering

    def icon_set_for(self, instance: WidgetInstance) -> tuple[str, str | None]:
        """Return the ``(icon set, package)`` an instance is drawn with."""

        if instance.custom_icon_set:
            return instance.custom_icon_set, instance.custom_icon_package
        if instance.icon_set:
            return instance.icon_set, None
        if instance.widget.icon_set:
            return instance.widget.icon_set, instance.widget.icon_package
        return DEFAULT_ICON_SET, BUILT_IN_PACKAGE

    async def async_render_instance(self, instance: WidgetInstance) -> None:
        """Draw an instance into its render surface."""

        name, package_id = self.icon_set_for(instance)
        icons = await self._resolver.async_load_icon_set(name, package_id)
        surface = instance.surface
        surface.set_icon(icons.get("icon") or DEFAULT_REMOTE_ICON)
        surface.disconnected = instance.disconnected
        surface.set_text(DISCONNECTED_LABEL if instance.disconnected else instance.display_label)
        if instance.color:
            surface.set_style("--widget-color", instance.color)
        if instance.background_color:
            surface.set_style("--widget-bg-color", instance.background_color)
        for style_name, value in instance.style.items():
            surface.set_style(style_name, value)

    # Server lifecycle

    async def async_start_server(self, port: int, bind_address: str) -> bool:
        """Start the peripheral server unless it already runs."""

        if self._transport is None:
            self._notify("No peripheral transport configured", "error")
            return False
        if self._transport.is_running:
            self._notify("WebSocket server is already running", "info")
            return True
        try:
            await self._transport.async_start(port, bind_address)
        except OSError as err:
            _LOGGER.error("Failed to start WebSocket server: %s", err)
            self._notify(f"Failed to start server: {err}", "error")
            return False
        self._notify(f"WebSocket server started on port {port}", "success")
        return True

    async def async_stop_server(self) -> bool:
        """Stop the peripheral server and mark every instance disconnected."""

        if self._transport is not None and self._transport.is_running:
            await self._transport.async_stop()
        self._clients.clear()
        await self._async_mark_disconnected(self._instances.values())
        self._notify("WebSocket server stopped", "info")
        return True

    async def async_sync_server_state(self) -> list[str]:
        """Ask every connected peripheral to register again."""

        if self._transport is None or not self._transport.is_running:
            return []
        clients = self._transport.connected_clients()
        if clients:
            _LOGGER.info("Requesting widget registration from %d clients", len(clients))
            await self._transport.async_request_widgets()
        return clients


def _apply_changes(instance: WidgetInstance, changes: WidgetChanges) -> None:
    """Copy the fields present in ``changes`` onto ``instance``."""

    if changes.icon_set:
        instance.icon_set = changes.icon_set
    if changes.label is not None:
        instance.label = changes.label
    if changes.color:
        instance.color = changes.color
    if changes.background_color:
        instance.background_color = changes.background_color
    if changes.style:
        instance.style.update(changes.style)
    if changes.state is not None:
        instance.state = dict(changes.state)


def _split_qualified_icon(icon: str | None) -> tuple[str | None, str | None]:
    """Split ``package:name`` into ``(name, package)``."""

    if not icon:
        return None, None
    package_id, sep, name = icon.partition(":")
    if sep and package_id and name:
        return name, package_id
    return icon, None
