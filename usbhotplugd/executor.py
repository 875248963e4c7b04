import logging
from typing import TYPE_CHECKING, Any, Iterable

from lxml import etree

from usbhotplugd.errors import HypervisorError
from usbhotplugd.reconciler import Action, ActionKind
from usbhotplugd.usb import USBDevice

if TYPE_CHECKING:
    from usbhotplugd.libvirtlink import LibvirtLink

logger = logging.getLogger("usbhotplugd")

# libvirt only keeps user defined aliases that start with "ua-"
ALIAS_PREFIX = "ua-usbhotplugd-"


def attach_alias(device: USBDevice) -> str:
    return ALIAS_PREFIX + device.digest()


def hostdev_xml(device: USBDevice, alias: str) -> str:
    """Builds a USB hostdev element that does not block VM startup if the device is missing."""
    hostdev = etree.Element("hostdev", mode="subsystem", type="usb", managed="yes")
    source = etree.SubElement(hostdev, "source", startupPolicy="optional")
    etree.SubElement(source, "vendor", id=f"0x{device.vid:04x}")
    etree.SubElement(source, "product", id=f"0x{device.pid:04x}")
    etree.SubElement(source, "address", bus=str(device.busnum), device=str(device.devnum))
    etree.SubElement(hostdev, "alias", name=alias)
    return str(etree.tostring(hostdev, encoding="unicode"))


class ActionExecutor:
    """Applies attach/detach actions to one machine, failures are logged and reported."""

    def __init__(
        self,
        link: "LibvirtLink",
        domain: Any,
        log: logging.Logger | None = None,
        aliases: Iterable[str] = (),
        reported: set[tuple[str, str]] | None = None,
    ) -> None:
        self.link = link
        self.domain = domain
        self.log = log or logger
        # Aliases currently in use on the machine
        self.aliases = set(aliases)
        self.reported = reported if reported is not None else set()

    def _alias_conflict(self, action: Action, alias: str) -> None:
        # Identical devices share a digest, so only one of them can be attached
        key = (action.machine, action.device.slug())
        level = logging.DEBUG if key in self.reported else logging.WARNING
        self.reported.add(key)
        self.log.log(
            level,
            "Not attaching %s to %s, alias %s is already in use by another device",
            action.device.friendly_name(),
            action.machine,
            alias,
        )

    def attach(self, action: Action) -> bool:
        alias = attach_alias(action.device)
        if alias in self.aliases:
            self._alias_conflict(action, alias)
            return False
        xml = hostdev_xml(action.device, alias)
        self.log.info("Attaching %s to %s as %s", action.device.friendly_name(), action.machine, alias)
        self.log.debug("Hostdev XML: %s", xml)
        try:
            self.link.attach_hostdev(self.domain, xml)
        except HypervisorError as e:
            self.log.error("Failed to attach %s to %s: %s", action.device.slug(), action.machine, e)
            return False
        self.aliases.add(alias)
        self.reported.discard((action.machine, action.device.slug()))
        return True

    def detach(self, action: Action) -> bool:
        alias = action.alias or attach_alias(action.device)
        xml = hostdev_xml(action.device, alias)
        self.log.info("Detaching %s (%s) from %s", action.device.slug(), alias, action.machine)
        self.log.debug("Hostdev XML: %s", xml)
        try:
            self.link.detach_hostdev(self.domain, xml)
        except HypervisorError as e:
            self.log.error("Failed to detach %s (%s) from %s: %s", action.device.slug(), alias, action.machine, e)
            return False
        self.aliases.discard(alias)
        return True

    def apply(self, action: Action) -> bool:
        if action.kind is ActionKind.ATTACH:
            return self.attach(action)
        return self.detach(action)
