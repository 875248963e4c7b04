import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

import pyudev

if TYPE_CHECKING:
    from usbhotplugd.libvirtlink import LibvirtLink


@dataclass
class AppContext:
    udev_context: pyudev.Context
    link_factory: Callable[[], "LibvirtLink"]
    log: logging.Logger = field(default_factory=lambda: logging.getLogger("usbhotplugd"))
    # (machine, slug) pairs already warned about an alias conflict
    alias_conflicts: set[tuple[str, str]] = field(default_factory=set)
