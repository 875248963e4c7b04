class USBHotplugError(Exception):
    """Base class for all daemon errors."""


class ConfigError(USBHotplugError):
    """The configuration file or one of its snippets is invalid."""


class EnumerationError(USBHotplugError):
    """Listing USB devices on the host failed, the current cycle is abandoned."""


class HypervisorError(USBHotplugError):
    """A libvirt call failed."""


class SnapshotError(USBHotplugError):
    """The live USB hostdevs of a machine could not be parsed."""
