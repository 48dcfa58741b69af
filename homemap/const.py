"""Constants for the HomeMap synchronization core."""

from __future__ import annotations

from datetime import timedelta
from typing import Final

APP_VERSION: Final = "0.1.4"
MIN_WIDGET_VERSION: Final = "0.1.5"

BUILT_IN_PACKAGE: Final = "com.fibaro.built-in"
DEFAULT_ICON_SET: Final = "defaultButton"
DEFAULT_REMOTE_ICON: Final = "icons/built-in/defaultButton/icon.png"
COLOR_COMPONENTS_KEY: Final = "colorComponents"
COLOR_COMPONENT_FIELDS: Final = ("red", "green", "blue", "warmWhite", "coldWhite")

PROPERTY_UPDATED_EVENT: Final = "DevicePropertyUpdatedEvent"

# Controller long-poll protocol
POLL_PATH: Final = "/api/refreshStates"
SETTINGS_INFO_PATH: Final = "/api/settings/info"
POLL_SERVER_TIMEOUT: Final = 30
POLL_CLIENT_TIMEOUT: Final = timedelta(seconds=35)
RETRY_DELAY: Final = timedelta(seconds=5)
BATCH_DELAY: Final = timedelta(seconds=1)
CONTROLLER_HEADERS: Final = {"X-Fibaro-Version": "2", "Accept-Language": "en"}

# Peripheral protocol
DEFAULT_WS_PORT: Final = 8765
DEFAULT_WS_BIND: Final = "0.0.0.0"
POSITION_TOLERANCE: Final = 0.1
DISCONNECTED_LABEL: Final = "Not connected"
PLACEHOLDER_LABEL: Final = "Remote Widget"

MSG_REGISTER: Final = "register-widgets"
MSG_UPDATE: Final = "widget-update"
MSG_UNREGISTER: Final = "unregister-widgets"
MSG_HEARTBEAT: Final = "heartbeat"
MSG_REQUEST: Final = "request-widgets"
MSG_EVENT: Final = "widget-event"

# Persisted store keys
STORAGE_VERSION: Final = 1
PLACEMENTS_STORAGE_KEY: Final = "homemap_remote_widgets"
INSTALLED_PACKAGES_FILE: Final = "installed-packages.json"
WIDGET_MAPPINGS_FILE: Final = "widget-mappings.json"

# Controller defaults
DEFAULT_HOST: Final = "192.168.1.1"
DEFAULT_USER: Final = "admin"
DEFAULT_PASSWORD: Final = "admin"
DEFAULT_PROTOCOL: Final = "http"
