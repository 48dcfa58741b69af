"""Tests for the device render pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from homemap.devices import Device
from homemap.errors import TransportError
from homemap.render import DeviceRenderer, RenderSurface, select_icon
from homemap.widgets.models import IconRule, WidgetDefinition
from homemap.widgets.packages import PackageRegistry
from homemap.widgets.resolver import WidgetResolver

LAMP_WIDGET = {
    "type": "lamp",
    "widgetVersion": "0.1.5",
    "iconSet": "bulb",
    "state": {"power": False, "value": 0},
    "render": {
        "icon": {
            "type": "conditional",
            "property": "power",
            "conditions": [
                {"when": "power == true", "icon": "on"},
                {"when": "power == false", "icon": "off"},
            ],
        },
        "subtext": {"template": "${value}%", "visible": "power == true"},
        "style": {"opacity": "${value / 100}"},
    },
    "getters": {
        "power": {"api": "/api/devices/${id}", "path": "properties.value"},
        "value": {"api": "/api/devices/${id}/level"},
        "stray": {"api": "/api/devices/${id}/stray"},
    },
}


class FakeReader:
    """Controller reader returning canned payloads per API path."""

    def __init__(self, payloads: dict[str, Any], failing: set[str] | None = None) -> None:
        """Store canned payloads and paths that should fail."""

        self.payloads = payloads
        self.failing = failing or set()
        self.calls: list[str] = []

    async def async_read(self, api: str) -> Any:
        """Return the canned payload for ``api``."""

        self.calls.append(api)
        if api in self.failing:
            raise TransportError(f"boom {api}")
        return self.payloads.get(api)


async def _renderer(tmp_path: Path, reader: FakeReader | None = None) -> DeviceRenderer:
    for name in ("on.svg", "off.svg"):
        directory = tmp_path / "icons" / "built-in" / "bulb"
        directory.mkdir(parents=True, exist_ok=True)
        (directory / name).write_text("<svg/>")
    registry = PackageRegistry(tmp_path)
    await registry.async_load()
    return DeviceRenderer(WidgetResolver(registry), reader)


def test_select_icon_only_sees_its_property() -> None:
    """Conditional icon rules evaluate against their own property."""

    rule = IconRule.model_validate(
        {
            "type": "conditional",
            "property": "power",
            "conditions": [{"when": "value > 0", "icon": "dim"}, {"when": "power", "icon": "on"}],
        }
    )

    assert select_icon({"power": True, "value": 10}, rule) == "on"
    assert select_icon({"power": False, "value": 10}, rule) is None
    assert select_icon({}, IconRule(type="static", icon="fixed")) == "fixed"


def test_ensure_state_seeds_and_prunes() -> None:
    """Device state is seeded from defaults and never holds undeclared keys."""

    widget = WidgetDefinition.model_validate(LAMP_WIDGET)
    device = Device(id=1, name="Lamp", type="lamp")

    state = DeviceRenderer.ensure_state(device, widget)
    assert state == {"power": False, "value": 0}

    device.state = {"power": True, "junk": 1}
    state = DeviceRenderer.ensure_state(device, widget)
    assert state == {"power": True, "value": 0}


@pytest.mark.asyncio
async def test_refresh_fetches_and_renders(tmp_path: Path) -> None:
    """Getters populate declared keys and the surface reflects the state."""

    reader = FakeReader(
        {
            "/api/devices/7": {"properties": {"value": True}},
            "/api/devices/7/level": {"value": 50},
        }
    )
    renderer = await _renderer(tmp_path, reader)
    widget = WidgetDefinition.model_validate({**LAMP_WIDGET, "_package": "com.fibaro.built-in"})
    device = Device(id=7, name="Lamp", type="lamp")
    surface = RenderSurface()

    await renderer.async_refresh(device, widget, surface)

    assert device.state == {"power": True, "value": 50}
    assert "/api/devices/7/stray" not in reader.calls
    assert surface.icon == "icons/built-in/bulb/on.svg"
    assert surface.text == "50%"
    assert surface.style == {"opacity": "0.5"}


@pytest.mark.asyncio
async def test_hidden_subtext_and_failed_getter(tmp_path: Path) -> None:
    """Failing getters keep defaults and invisible subtext is hidden."""

    reader = FakeReader({}, failing={"/api/devices/3", "/api/devices/3/level"})
    renderer = await _renderer(tmp_path, reader)
    widget = WidgetDefinition.model_validate(LAMP_WIDGET)
    device = Device(id=3, name="Lamp", type="lamp")
    surface = RenderSurface(text="stale")

    await renderer.async_refresh(device, widget, surface)

    assert device.state == {"power": False, "value": 0}
    assert surface.icon == "icons/built-in/bulb/off.svg"
    assert surface.text is None
    assert surface.text_visible is False


@pytest.mark.asyncio
async def test_missing_icon_keeps_previous_icon(tmp_path: Path) -> None:
    """An icon name absent from the set leaves the target untouched."""

    renderer = await _renderer(tmp_path)
    payload = dict(LAMP_WIDGET)
    payload["render"] = {"icon": {"type": "static", "icon": "absent"}}
    widget = WidgetDefinition.model_validate(payload)
    device = Device(id=4, name="Lamp", type="lamp")
    surface = RenderSurface(icon="previous.svg")

    await renderer.async_render(device, widget, surface)

    assert surface.icon == "previous.svg"


@pytest.mark.asyncio
async def test_device_icon_set_override(tmp_path: Path) -> None:
    """A per-device iconSet parameter replaces the widget's set."""

    renderer = await _renderer(tmp_path)
    custom = tmp_path / "icons" / "custom"
    custom.mkdir(parents=True)
    (custom / "on.png").write_text("png")
    widget = WidgetDefinition.model_validate(LAMP_WIDGET)
    device = Device(id=5, name="Lamp", type="lamp", params={"iconSet": "custom"}, state={"power": True})
    surface = RenderSurface()

    await renderer.async_render(device, widget, surface)

    assert surface.icon == "icons/custom/on.png"
