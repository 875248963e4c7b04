import logging
from dataclasses import dataclass, field
from typing import Any

from lxml import etree

from usbhotplugd.errors import SnapshotError
from usbhotplugd.usb import USBDevice

logger = logging.getLogger("usbhotplugd")


@dataclass
class MachineSnapshot:
    name: str
    domain: Any
    uuid: str
    # alias -> device attached under that alias
    devices: dict[str, USBDevice] = field(default_factory=dict)

    def attached_slugs(self) -> set[str]:
        return {device.slug() for device in self.devices.values()}

    def __str__(self) -> str:
        return f"{self.name} (UUID={self.uuid}): {len(self.devices)} attached devices"


def _required(element: Any, path: str, attr: str) -> str:
    node = element.find(path)
    if node is None:
        raise SnapshotError(f"hostdev has no '{path}' element")
    value = node.get(attr)
    if value is None:
        raise SnapshotError(f"hostdev element '{path}' has no '{attr}' attribute")
    return str(value)


def _parse_int(value: str, base: int, what: str) -> int:
    if value.lower().startswith("0x"):
        base = 16
    try:
        return int(value, base)
    except ValueError as e:
        raise SnapshotError(f"hostdev has invalid {what}: {value!r}") from e


def hostdev_to_device(hostdev: Any) -> USBDevice:
    vid = _parse_int(_required(hostdev, "source/vendor", "id"), 16, "vendor id")
    pid = _parse_int(_required(hostdev, "source/product", "id"), 16, "product id")
    bus = _parse_int(_required(hostdev, "source/address", "bus"), 10, "bus")
    dev = _parse_int(_required(hostdev, "source/address", "device"), 10, "device")
    if not (0 <= vid <= 0xFFFF and 0 <= pid <= 0xFFFF):
        raise SnapshotError(f"hostdev has out of range ids {vid:x}:{pid:x}")
    return USBDevice(bus, dev, vid, pid)


def parse_hostdevs(domain_xml: str) -> dict[str, USBDevice]:
    """Returns alias -> device for all USB hostdevs in a live domain description."""
    try:
        root = etree.fromstring(domain_xml.encode("utf-8"))
    except etree.XMLSyntaxError as e:
        raise SnapshotError(f"Failed to parse domain XML: {e}") from e

    devices: dict[str, USBDevice] = {}
    for idx, hostdev in enumerate(root.findall("./devices/hostdev[@type='usb']")):
        device = hostdev_to_device(hostdev)
        alias_node = hostdev.find("alias")
        alias = alias_node.get("name") if alias_node is not None else None
        if not alias:
            alias = f"hostdev{idx}"
        if alias in devices:
            raise SnapshotError(f"Duplicate hostdev alias {alias}")
        logger.debug("Hostdev %s: %s", alias, device.slug())
        devices[alias] = device
    return devices
