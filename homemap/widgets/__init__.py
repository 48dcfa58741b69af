"""Widget definitions, package registry and resolution."""

from __future__ import annotations

from .models import WidgetDefinition
from .packages import PackageRegistry
from .resolver import IconSetInfo, WidgetResolver, normalize_icon_set_ref

__all__ = [
    "IconSetInfo",
    "PackageRegistry",
    "WidgetDefinition",
    "WidgetResolver",
    "normalize_icon_set_ref",
]
