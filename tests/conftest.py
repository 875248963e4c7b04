from typing import Any, NamedTuple

import pytest
from lxml import etree

from usbhotplugd.appcontext import AppContext
from usbhotplugd.config import Config, MachineConfig
from usbhotplugd.errors import HypervisorError, SnapshotError
from usbhotplugd.machine import MachineSnapshot, parse_hostdevs
from usbhotplugd.usb import UdevAttributes, USBDevice


class StaticConfig(Config):
    """Config built in memory instead of loaded from a file."""

    def __init__(self, machines: list[MachineConfig]) -> None:
        self.path = "unused"
        self.interval = 5.0
        self.machines = {m.name: m for m in machines}


class RunningMachine(NamedTuple):
    name: str


class FakeHypervisor:
    """In-memory stand-in for libvirt that keeps one live hostdev list per domain."""

    def __init__(self) -> None:
        self.hostdevs: dict[str, list[str]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.fail_xml: set[str] = set()
        self.broken: set[str] = set()
        self.crashing: set[str] = set()
        self.list_error = False
        self.connections = 0

    def add_machine(self, name: str, *hostdevs: str) -> None:
        self.hostdevs[name] = list(hostdevs)

    def domain_xml(self, name: str) -> str:
        devices = "".join(self.hostdevs[name])
        return f"<domain type='kvm'><name>{name}</name><devices>{devices}</devices></domain>"

    def link(self) -> "FakeLink":
        return FakeLink(self)


class FakeLink:
    def __init__(self, hypervisor: FakeHypervisor) -> None:
        self.hypervisor = hypervisor

    def __enter__(self) -> "FakeLink":
        self.hypervisor.connections += 1
        return self

    def __exit__(self, *args: Any) -> None:
        return None

    def list_running_machines(self) -> list[RunningMachine]:
        if self.hypervisor.list_error:
            raise HypervisorError("connection refused")
        return [RunningMachine(name) for name in self.hypervisor.hostdevs]

    def lookup_machine(self, name: str) -> str | None:
        return name if name in self.hypervisor.hostdevs else None

    def snapshot(self, name: str, domain: str) -> MachineSnapshot:
        if name in self.hypervisor.broken:
            raise SnapshotError("hostdev has no 'source/vendor' element")
        if name in self.hypervisor.crashing:
            raise RuntimeError("unexpected reply from hypervisor")
        return MachineSnapshot(name, domain, f"uuid-{name}", parse_hostdevs(self.hypervisor.domain_xml(name)))

    def attach_hostdev(self, domain: str, xml: str) -> None:
        self.hypervisor.calls.append(("attach", domain, xml))
        if xml in self.hypervisor.fail_xml:
            raise HypervisorError("internal error: unable to attach")
        self.hypervisor.hostdevs[domain].append(xml)

    def detach_hostdev(self, domain: str, xml: str) -> None:
        self.hypervisor.calls.append(("detach", domain, xml))
        if xml in self.hypervisor.fail_xml:
            raise HypervisorError("internal error: unable to detach")
        alias = etree.fromstring(xml).find("alias").get("name")
        self.hypervisor.hostdevs[domain] = [
            h for h in self.hypervisor.hostdevs[domain] if etree.fromstring(h).find("alias").get("name") != alias
        ]


class FakeUdevDevice:
    """Just enough of pyudev.Device for identity extraction."""

    def __init__(
        self,
        properties: dict[str, str],
        tags: list[str] | None = None,
        device_number: int = 0,
        subsystem: str = "usb",
        device_type: str = "usb_device",
        sys_name: str = "1-2",
    ) -> None:
        self.properties = properties
        self.tags = tags or []
        self.device_number = device_number
        self.subsystem = subsystem
        self.device_type = device_type
        self.sys_name = sys_name


def hostdev(bus: int, dev: int, vid: int, pid: int, alias: str | None = None) -> str:
    alias_xml = f"<alias name='{alias}'/>" if alias else ""
    return (
        "<hostdev mode='subsystem' type='usb' managed='yes'>"
        "<source startupPolicy='optional'>"
        f"<vendor id='0x{vid:04x}'/><product id='0x{pid:04x}'/>"
        f"<address bus='{bus}' device='{dev}'/>"
        f"</source>{alias_xml}</hostdev>"
    )


def udev_device(
    bus: int,
    dev: int,
    vid: int,
    pid: int,
    env: dict[str, str] | None = None,
    tags: list[str] | None = None,
    current_tags: list[str] | None = None,
) -> USBDevice:
    return USBDevice(
        bus,
        dev,
        vid,
        pid,
        "Vendor",
        "Product",
        UdevAttributes(env or {}, frozenset(tags or []), frozenset(current_tags or [])),
    )


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def app_context(hypervisor: FakeHypervisor) -> AppContext:
    return AppContext(None, hypervisor.link)  # type: ignore[arg-type]


@pytest.fixture
def host_devices(monkeypatch: pytest.MonkeyPatch) -> list[USBDevice]:
    """Mutable list of devices returned by udev enumeration."""
    devices: list[USBDevice] = []
    monkeypatch.setattr("usbhotplugd.catalog.list_usb_devices", lambda context: list(devices))
    return devices
