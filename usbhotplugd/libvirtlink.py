import logging
from types import TracebackType
from typing import NamedTuple

import libvirt

from usbhotplugd.errors import HypervisorError
from usbhotplugd.machine import MachineSnapshot, parse_hostdevs

logger = logging.getLogger("usbhotplugd")

DEFAULT_URI = "qemu:///system"


def _ignore_libvirt_error(_ctx: object, _err: object) -> None:
    # Errors are reported through exceptions, don't print them to stderr
    return None


libvirt.registerErrorHandler(_ignore_libvirt_error, None)


class MachineInfo(NamedTuple):
    name: str
    uuid: str
    id: int


class LibvirtLink:
    """A single libvirt connection, not meant to be shared between threads."""

    def __init__(self, uri: str = DEFAULT_URI) -> None:
        self.uri = uri
        self._conn: libvirt.virConnect | None = None

    def connect(self) -> None:
        if self._conn is not None:
            return
        try:
            self._conn = libvirt.open(self.uri)
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to connect to {self.uri}: {e}") from e
        logger.debug("Connected to %s", self.uri)

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.close()
        except libvirt.libvirtError as e:
            logger.warning("Failed to disconnect from %s: %s", self.uri, e)
        finally:
            self._conn = None

    def __enter__(self) -> "LibvirtLink":
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def conn(self) -> libvirt.virConnect:
        if self._conn is None:
            raise HypervisorError(f"Not connected to {self.uri}")
        return self._conn

    def version(self) -> int:
        try:
            return int(self.conn.getLibVersion())
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to retrieve libvirt version: {e}") from e

    def list_running_machines(self) -> list[MachineInfo]:
        try:
            domains = self.conn.listAllDomains(libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE)
            return [MachineInfo(d.name(), d.UUIDString(), d.ID()) for d in domains]
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to retrieve domains: {e}") from e

    def lookup_machine(self, name: str) -> libvirt.virDomain | None:
        """Returns the domain if it exists and is running."""
        try:
            domain = self.conn.lookupByName(name)
            if not domain.isActive():
                return None
            return domain
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                return None
            raise HypervisorError(f"Failed to look up domain {name}: {e}") from e

    def get_live_xml(self, domain: libvirt.virDomain) -> str:
        try:
            return str(domain.XMLDesc(0))
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to get XML description of {domain.name()}: {e}") from e

    def snapshot(self, name: str, domain: libvirt.virDomain) -> MachineSnapshot:
        """Raises HypervisorError or SnapshotError."""
        devices = parse_hostdevs(self.get_live_xml(domain))
        try:
            uuid = domain.UUIDString()
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to get UUID of {name}: {e}") from e
        return MachineSnapshot(name, domain, uuid, devices)

    def attach_hostdev(self, domain: libvirt.virDomain, xml: str) -> None:
        try:
            domain.attachDeviceFlags(xml, libvirt.VIR_DOMAIN_AFFECT_LIVE)
        except libvirt.libvirtError as e:
            raise HypervisorError(str(e)) from e

    def detach_hostdev(self, domain: libvirt.virDomain, xml: str) -> None:
        try:
            domain.detachDeviceFlags(xml, libvirt.VIR_DOMAIN_AFFECT_LIVE)
        except libvirt.libvirtError as e:
            raise HypervisorError(str(e)) from e
