"""Configuration loading and validation for HomeMap."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import voluptuous as vol
import yaml

from .const import (
    DEFAULT_HOST,
    DEFAULT_PASSWORD,
    DEFAULT_PROTOCOL,
    DEFAULT_USER,
    DEFAULT_WS_BIND,
    DEFAULT_WS_PORT,
)
from .errors import HomeMapError

_LOGGER = logging.getLogger(__name__)

ENV_HOST = "HC3_HOST"
ENV_USER = "HC3_USER"
ENV_PASSWORD = "HC3_PASSWORD"
ENV_PROTOCOL = "HC3_PROTOCOL"
ENV_DATA_PATH = "HOMEMAP_DATA_PATH"

_PROTOCOL = vol.All(vol.Lower, vol.In(["http", "https"]))

CONTROLLER_SCHEMA = vol.Schema(
    {
        vol.Required("host"): vol.All(str, vol.Length(min=1)),
        vol.Optional("user", default=DEFAULT_USER): str,  # type: ignore
        vol.Optional("password", default=DEFAULT_PASSWORD): str,  # type: ignore
        vol.Optional("protocol", default=DEFAULT_PROTOCOL): _PROTOCOL,  # type: ignore
        vol.Optional("verify_ssl", default=False): bool,  # type: ignore
    }
)

WEBSOCKET_SCHEMA = vol.Schema(
    {
        vol.Optional("enabled", default=False): bool,  # type: ignore
        vol.Optional("auto_start", default=False): bool,  # type: ignore
        vol.Optional("port", default=DEFAULT_WS_PORT): vol.All(  # type: ignore
            vol.Coerce(int), vol.Range(min=1, max=65535)
        ),
        vol.Optional("bind_address", default=DEFAULT_WS_BIND): str,  # type: ignore
    }
)

SETTINGS_SCHEMA = vol.Schema(
    {
        vol.Optional("hc3_host", default=""): str,  # type: ignore
        vol.Optional("hc3_user", default=""): str,  # type: ignore
        vol.Optional("hc3_password", default=""): str,  # type: ignore
        vol.Optional("hc3_protocol", default=""): str,  # type: ignore
        vol.Optional("hc3_verify_ssl", default=False): bool,  # type: ignore
        vol.Optional("homemap_path", default=""): str,  # type: ignore
        vol.Optional("websocket", default=dict): WEBSOCKET_SCHEMA,  # type: ignore
    },
    extra=vol.ALLOW_EXTRA,
)


class ConfigError(HomeMapError):
    """Raised when configuration cannot be read or validated."""


@dataclass(frozen=True, slots=True)
class ControllerConfig:
    """Connection parameters of the home automation controller."""

    host: str
    user: str = DEFAULT_USER
    password: str = DEFAULT_PASSWORD
    protocol: str = DEFAULT_PROTOCOL
    verify_ssl: bool = False

    @property
    def base_url(self) -> str:
        """Return ``protocol://host`` for the controller."""

        return f"{self.protocol}://{self.host}"

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ControllerConfig:
        """Validate ``payload`` against :data:`CONTROLLER_SCHEMA`."""

        try:
            data = CONTROLLER_SCHEMA(dict(payload))
        except vol.Invalid as err:
            msg = f"Invalid controller configuration: {err}"
            raise ConfigError(msg) from err
        return cls(**data)


@dataclass(frozen=True, slots=True)
class WebSocketConfig:
    """Settings of the peripheral WebSocket server."""

    enabled: bool = False
    auto_start: bool = False
    port: int = DEFAULT_WS_PORT
    bind_address: str = DEFAULT_WS_BIND


@dataclass(frozen=True, slots=True)
class HomeMapSettings:
    """Complete runtime configuration."""

    controller: ControllerConfig
    data_path: Path
    websocket: WebSocketConfig = field(default_factory=WebSocketConfig)


def default_data_path() -> Path:
    """Return the default ``homemapdata`` directory."""

    return Path.home() / "Documents" / "homemapdata"


def read_settings_file(path: Path) -> dict[str, Any]:
    """Parse a JSON or YAML settings file."""

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as err:
        msg = f"Unable to read settings file {path}: {err}"
        raise ConfigError(msg) from err
    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            payload = yaml.safe_load(text) or {}
        else:
            payload = json.loads(text) if text.strip() else {}
    except (yaml.YAMLError, json.JSONDecodeError) as err:
        msg = f"Settings file {path} is not valid: {err}"
        raise ConfigError(msg) from err
    if not isinstance(payload, dict):
        msg = f"Settings file {path} must contain a mapping"
        raise ConfigError(msg)
    return payload


def load_settings(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> HomeMapSettings:
    """Build settings from a settings file, the environment and defaults.

    Controller credentials come from the settings file when it names a host,
    otherwise from the ``HC3_*`` environment variables, otherwise from the
    factory defaults of the controller.
    """

    env = os.environ if environ is None else environ
    raw = read_settings_file(Path(path)) if path else {}
    try:
        settings = SETTINGS_SCHEMA(raw)
    except vol.Invalid as err:
        msg = f"Invalid settings: {err}"
        raise ConfigError(msg) from err

    if settings["hc3_host"]:
        _LOGGER.info("Using controller configuration from settings file")
        controller = ControllerConfig.from_dict(
            {
                "host": settings["hc3_host"],
                "user": settings["hc3_user"] or DEFAULT_USER,
                "password": settings["hc3_password"] or DEFAULT_PASSWORD,
                "protocol": settings["hc3_protocol"] or DEFAULT_PROTOCOL,
                "verify_ssl": settings["hc3_verify_ssl"],
            }
        )
    else:
        _LOGGER.info("Using controller configuration from environment")
        controller = ControllerConfig.from_dict(
            {
                "host": env.get(ENV_HOST, DEFAULT_HOST),
                "user": env.get(ENV_USER, DEFAULT_USER),
                "password": env.get(ENV_PASSWORD, DEFAULT_PASSWORD),
                "protocol": env.get(ENV_PROTOCOL, DEFAULT_PROTOCOL),
            }
        )

    data_path = Path(
        settings["homemap_path"] or env.get(ENV_DATA_PATH) or default_data_path()
    ).expanduser()
    websocket = WebSocketConfig(**settings["websocket"])
    return HomeMapSettings(controller=controller, data_path=data_path, websocket=websocket)
