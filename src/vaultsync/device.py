"""
Device identity provider -- what this device calls itself.

Display only. Nothing here participates in key derivation.
"""

from __future__ import annotations

import platform
import socket
from abc import ABC, abstractmethod
from typing import Optional

from .models import DeviceClass, DeviceInfo


class DeviceInfoProvider(ABC):
    """Source of the platform device name and class."""

    @abstractmethod
    def describe(self) -> DeviceInfo:
        """Return the display name and device class."""


class StaticDeviceInfo(DeviceInfoProvider):
    """Fixed name and class (tests, embedding)."""

    def __init__(self, name: str, device_class: DeviceClass = DeviceClass.DESKTOP):
        self._info = DeviceInfo(name=name, device_class=device_class)

    def describe(self) -> DeviceInfo:
        return self._info


class PlatformDeviceInfo(DeviceInfoProvider):
    """Hostname and platform, with optional overrides from config."""

    def __init__(
        self,
        name: Optional[str] = None,
        device_class: Optional[DeviceClass] = None,
    ):
        self._name = name
        self._device_class = device_class

    def describe(self) -> DeviceInfo:
        name = self._name or socket.gethostname() or platform.node() or "unknown"
        return DeviceInfo(
            name=name,
            device_class=self._device_class or _guess_class(),
        )


def _guess_class() -> DeviceClass:
    system = platform.system().lower()
    if system in ("android", "ios"):
        return DeviceClass.PHONE
    if system == "emscripten":
        return DeviceClass.WEB
    return DeviceClass.DESKTOP
