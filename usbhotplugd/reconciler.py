import logging
from enum import Enum
from typing import NamedTuple

from usbhotplugd.catalog import DeviceCatalog
from usbhotplugd.config import MachineConfig
from usbhotplugd.machine import MachineSnapshot
from usbhotplugd.matcher import device_matches
from usbhotplugd.usb import USBDevice

logger = logging.getLogger("usbhotplugd")


class ActionKind(Enum):
    ATTACH = "attach"
    DETACH = "detach"


class Action(NamedTuple):
    kind: ActionKind
    machine: str
    device: USBDevice
    # Set for detach, chosen by the executor for attach
    alias: str | None = None

    def __str__(self) -> str:
        alias = f" ({self.alias})" if self.alias else ""
        return f"{self.kind.value} {self.device.slug()}{alias} {'to' if self.kind is ActionKind.ATTACH else 'from'} {self.machine}"


def plan_attach(machine: MachineConfig, snapshot: MachineSnapshot, catalog: DeviceCatalog) -> list[Action]:
    """Devices matched by any of the machine's matchers and not attached yet."""
    actions: list[Action] = []
    attached = snapshot.attached_slugs()
    for idx, matcher in enumerate(machine.matchers):
        for device in catalog:
            if not device_matches(device, matcher):
                continue
            slug = device.slug()
            if slug in attached:
                logger.debug("Device %s is already attached to %s", slug, machine.name)
                continue
            logger.debug("Device %s matches matcher %s of %s", slug, idx, machine.name)
            actions.append(Action(ActionKind.ATTACH, machine.name, device))
            # Queued devices count as attached for the rest of the pass
            attached.add(slug)
    return actions


def plan_detach(snapshot: MachineSnapshot, catalog: DeviceCatalog) -> list[Action]:
    """Attached devices that are no longer physically present."""
    actions: list[Action] = []
    for alias, device in snapshot.devices.items():
        if device.slug() in catalog:
            continue
        logger.debug("Device %s (%s) attached to %s is gone", device.slug(), alias, snapshot.name)
        actions.append(Action(ActionKind.DETACH, snapshot.name, device, alias))
    return actions


def plan_machine(machine: MachineConfig, snapshot: MachineSnapshot, catalog: DeviceCatalog) -> list[Action]:
    # Detach first so that a replugged device can reuse its alias.
    # Devices that still exist but no longer match are left attached.
    return plan_detach(snapshot, catalog) + plan_attach(machine, snapshot, catalog)
