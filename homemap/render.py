"""Render device state into icon, text and style updates."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from .const import BUILT_IN_PACKAGE
from .devices import Device
from .errors import TransportError
from .expressions import UNDEFINED, evaluate_condition, interpolate
from .utils import normalize_state_value, resolve_path, substitute_device_id
from .widgets.models import IconRule, WidgetDefinition
from .widgets.resolver import WidgetResolver

_LOGGER = logging.getLogger(__name__)


class RenderTarget(Protocol):
    """Visual element a device or remote widget instance is drawn into."""

    def set_icon(self, path: str | None) -> None:
        """Show the icon stored at ``path`` relative to the data directory."""

    def set_text(self, text: str | None) -> None:
        """Show ``text`` below the icon, or hide the text when ``None``."""

    def set_style(self, name: str, value: str) -> None:
        """Apply one style property."""


class StateReader(Protocol):
    """Controller read access used by widget getters."""

    async def async_read(self, api: str) -> Any:
        """Return the decoded JSON body of ``GET api``."""


@dataclass(slots=True)
class RenderSurface:
    """In-memory render target recording what would be drawn."""

    icon: str | None = None
    text: str | None = None
    style: dict[str, str] = field(default_factory=dict)
    disconnected: bool = False

    def set_icon(self, path: str | None) -> None:
        """Record the icon path."""

        self.icon = path

    def set_text(self, text: str | None) -> None:
        """Record the text, ``None`` meaning hidden."""

        self.text = text

    def set_style(self, name: str, value: str) -> None:
        """Record a style property."""

        self.style[name] = value

    @property
    def text_visible(self) -> bool:
        """Return whether any text is shown."""

        return self.text is not None


def select_icon(state: Mapping[str, Any], rule: IconRule) -> str | None:
    """Return the icon name chosen by ``rule``.

    Conditional rules only see the property they are declared on, so a
    predicate can never match against an unrelated state key.
    """

    if rule.type == "static":
        return rule.icon
    if not rule.property:
        _LOGGER.warning("Conditional icon rule without a property")
        return None
    context = {rule.property: state.get(rule.property, UNDEFINED)}
    for condition in rule.conditions:
        if evaluate_condition(context, condition.when):
            return condition.icon
    return None


class DeviceRenderer:
    """Seed, refresh and draw device state through widget definitions."""

    def __init__(
        self, resolver: WidgetResolver, reader: StateReader | None = None
    ) -> None:
        """Bind the widget resolver and the controller used by getters."""

        self._resolver = resolver
        self._reader = reader

    @staticmethod
    def ensure_state(device: Device, widget: WidgetDefinition) -> dict[str, Any]:
        """Seed ``device.state`` from the widget defaults and drop foreign keys."""

        if device.state is None:
            device.state = widget.default_state()
            return device.state
        declared = widget.state
        for key in [key for key in device.state if key not in declared]:
            _LOGGER.debug("Dropping undeclared state key %s of %s", key, device.id)
            del device.state[key]
        for key, value in declared.items():
            device.state.setdefault(key, value)
        return device.state

    async def async_fetch_state(self, device: Device, widget: WidgetDefinition) -> None:
        """Populate ``device.state`` by running every getter of ``widget``."""

        state = self.ensure_state(device, widget)
        if self._reader is None or not widget.getters:
            return
        for key, getter in widget.getters.items():
            if key not in widget.state:
                _LOGGER.warning(
                    "Getter %s of %s targets an undeclared state key",
                    key,
                    widget.type or device.type,
                )
                continue
            api = substitute_device_id(getter.api, device.id)
            try:
                payload = await self._reader.async_read(api)
            except TransportError as err:
                _LOGGER.error("Failed to read %s for device %s: %s", api, device.id, err)
                continue
            value = resolve_path(payload, getter.path) if getter.path else payload
            state[key] = normalize_state_value(key, value)

    async def async_render(
        self, device: Device, widget: WidgetDefinition, target: RenderTarget
    ) -> None:
        """Draw the current state of ``device`` into ``target``."""

        render = widget.render
        if render is None:
            _LOGGER.debug("Widget for %s has no render rule", device.id)
            return
        state = self.ensure_state(device, widget)

        if render.icon is not None:
            icon_name = select_icon(state, render.icon)
            if icon_name:
                icons = await self._async_icon_set(device, widget)
                icon_path = icons.get(icon_name)
                if icon_path:
                    target.set_icon(icon_path)
                else:
                    _LOGGER.warning(
                        "Icon %s not found in icon set for device %s",
                        icon_name,
                        device.id,
                    )

        if render.subtext is not None:
            visible = (
                evaluate_condition(state, render.subtext.visible)
                if render.subtext.visible
                else True
            )
            target.set_text(interpolate(render.subtext.template, state) if visible else None)

        for name, template in render.style.items():
            target.set_style(name, interpolate(template, state))

    async def async_refresh(
        self, device: Device, widget: WidgetDefinition, target: RenderTarget
    ) -> None:
        """Fetch state through the getters and redraw ``device``."""

        await self.async_fetch_state(device, widget)
        await self.async_render(device, widget, target)

    async def _async_icon_set(
        self, device: Device, widget: WidgetDefinition
    ) -> dict[str, str]:
        """Load the icon set, honouring a per-device ``iconSet`` parameter."""

        override = device.params.get("iconSet")
        if override:
            return await self._resolver.async_load_icon_set(
                str(override), device.params.get("iconPackage")
            )
        if not widget.icon_set:
            return {}
        package_id = widget.icon_package or widget.package_id or BUILT_IN_PACKAGE
        return await self._resolver.async_load_icon_set(widget.icon_set, package_id)
