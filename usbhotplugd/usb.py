import hashlib
import logging
import os
from typing import Iterable, NamedTuple

import pyudev

from usbhotplugd.errors import EnumerationError

logger = logging.getLogger("usbhotplugd")

UDEV_DATA_PATH = "/run/udev/data"


class UdevAttributes(NamedTuple):
    """udev data of a device, read on a best-effort basis.

    current_tags is None when the udev database entry could not be read,
    which is not the same as a device without current tags.
    """

    env: dict[str, str]
    tags: frozenset[str] = frozenset()
    current_tags: frozenset[str] | None = None


class USBDevice(NamedTuple):
    busnum: int
    devnum: int
    vid: int
    pid: int
    vendor_name: str | None = None
    product_name: str | None = None
    # None if udev attributes are unavailable
    udev: UdevAttributes | None = None

    def slug(self) -> str:
        return f"{self.busnum:03d}/{self.devnum:03d} {self.vid:04x}:{self.pid:04x}"

    def description(self) -> str:
        return f"{self.vid:04x}:{self.pid:04x} {self.vendor_name or ''} {self.product_name or ''}".strip()

    def digest(self) -> str:
        """Content hash of the vendor/product identity, stable across bus renumbering."""
        return hashlib.sha256(self.description().encode("utf-8")).hexdigest()[:16]

    def friendly_name(self) -> str:
        names = " ".join(n for n in (self.vendor_name, self.product_name) if n)
        name = f"Bus {self.busnum:03d} Device {self.devnum:03d}: {self.vid:04x}:{self.pid:04x}"
        return f"{name} {names}" if names else name


def _hex_to_int(s: str | None) -> int | None:
    try:
        return int(s, 16) if s else None
    except (ValueError, TypeError):
        return None


def _dec_to_int(s: str | None) -> int | None:
    try:
        return int(s, 10) if s else None
    except (ValueError, TypeError):
        return None


def _vid_pid_from_product(product: str | None) -> tuple[int | None, int | None]:
    # Kernel PRODUCT property, e.g. "46d/c52b/1201"
    if not product:
        return None, None
    parts = product.split("/")
    if len(parts) < 2:
        return None, None
    return _hex_to_int(parts[0]), _hex_to_int(parts[1])


def read_current_tags(path: str) -> frozenset[str]:
    """Reads current tags ("Q:" lines) from a udev database file."""
    tags: set[str] = set()
    with open(path, encoding="utf-8", errors="replace") as file:
        for line in file:
            key, sep, value = line.rstrip("\n").partition(":")
            # Invalid lines are ignored
            if sep and key == "Q" and value:
                tags.add(value)
    return frozenset(tags)


def udev_data_path(device: pyudev.Device, base_path: str = UDEV_DATA_PATH) -> str | None:
    device_number = device.device_number
    if not device_number:
        return None
    return os.path.join(base_path, f"c{os.major(device_number)}:{os.minor(device_number)}")


def get_udev_attributes(device: pyudev.Device, base_path: str = UDEV_DATA_PATH) -> UdevAttributes | None:
    name = device.sys_name
    try:
        env = {str(k): str(v) for k, v in device.properties.items()}
        tags = frozenset(t for t in device.tags if t)
    except (OSError, AttributeError, KeyError) as e:
        logger.warning("Failed to read udev attributes for %s: %s", name, e)
        return None

    current_tags = None
    path = udev_data_path(device, base_path)
    if path is None:
        logger.warning("Device %s has no device number, current tags unavailable", name)
    else:
        try:
            current_tags = read_current_tags(path)
        except OSError as e:
            logger.warning("Failed to read udev database %s for %s: %s", path, name, e)

    return UdevAttributes(env, tags, current_tags)


def get_usb_device(device: pyudev.Device, base_path: str = UDEV_DATA_PATH) -> USBDevice:
    """Extracts the identity of a udev USB device, raises ValueError if the device is malformed."""
    props = device.properties
    busnum = _dec_to_int(props.get("BUSNUM"))
    devnum = _dec_to_int(props.get("DEVNUM"))
    vid = _hex_to_int(props.get("ID_VENDOR_ID"))
    pid = _hex_to_int(props.get("ID_MODEL_ID"))
    if vid is None or pid is None:
        vid, pid = _vid_pid_from_product(props.get("PRODUCT"))

    if busnum is None or devnum is None or vid is None or pid is None:
        raise ValueError(f"USB device {device.sys_name} has no bus, device number, vendor id or product id")
    if not (0 <= vid <= 0xFFFF and 0 <= pid <= 0xFFFF):
        raise ValueError(f"USB device {device.sys_name} has invalid ids {vid:x}:{pid:x}")

    vendor_name = props.get("ID_VENDOR_FROM_DATABASE") or props.get("ID_VENDOR")
    product_name = props.get("ID_MODEL_FROM_DATABASE") or props.get("ID_MODEL")

    return USBDevice(
        busnum,
        devnum,
        vid,
        pid,
        vendor_name,
        product_name,
        get_udev_attributes(device, base_path),
    )


def is_usb_device(device: pyudev.Device) -> bool:
    return bool(device.subsystem == "usb" and device.device_type == "usb_device")


def usb_devices_from_udev(devices: Iterable[pyudev.Device], base_path: str = UDEV_DATA_PATH) -> list[USBDevice]:
    result: list[USBDevice] = []
    for device in devices:
        if not is_usb_device(device):
            continue
        try:
            usb_device = get_usb_device(device, base_path)
        except ValueError as e:
            logger.warning("Skipping malformed USB device: %s", e)
            continue
        logger.debug("Found USB device %s", usb_device.friendly_name())
        result.append(usb_device)
    return result


def list_usb_devices(context: pyudev.Context) -> list[USBDevice]:
    """Returns all USB devices currently connected to the host."""
    try:
        devices = list(context.list_devices(subsystem="usb", DEVTYPE="usb_device"))
    except (OSError, pyudev.DeviceNotFoundError) as e:
        raise EnumerationError(f"Failed to list USB devices: {e}") from e
    return usb_devices_from_udev(devices)
