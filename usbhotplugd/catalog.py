import logging
from typing import Iterable, Iterator

import pyudev

from usbhotplugd.usb import USBDevice, list_usb_devices

logger = logging.getLogger("usbhotplugd")


class DeviceCatalog:
    """Point-in-time snapshot of the host's USB devices keyed by slug."""

    def __init__(self, devices: Iterable[USBDevice]) -> None:
        self._devices: dict[str, USBDevice] = {}
        for device in devices:
            slug = device.slug()
            if slug in self._devices:
                logger.warning("Duplicate USB device %s, ignoring %s", slug, device.friendly_name())
                continue
            self._devices[slug] = device

    @classmethod
    def from_udev(cls, context: pyudev.Context) -> "DeviceCatalog":
        """Raises EnumerationError if the devices cannot be listed."""
        return cls(list_usb_devices(context))

    def get(self, slug: str) -> USBDevice | None:
        return self._devices.get(slug)

    def __contains__(self, slug: object) -> bool:
        return slug in self._devices

    def __iter__(self) -> Iterator[USBDevice]:
        return iter(self._devices.values())

    def __len__(self) -> int:
        return len(self._devices)
