import logging

from usbhotplugd.config import DeviceMatcher, MachineConfig, UdevEnvMatcher
from usbhotplugd.usb import UdevAttributes, USBDevice

logger = logging.getLogger("usbhotplugd")


def _match_udev_env(env: dict[str, str], rule: UdevEnvMatcher) -> bool:
    value = env.get(rule.name)
    if value is None:
        logger.debug("udev env %s not set", rule.name)
        return False
    if rule.equals is not None:
        return value == rule.equals
    # Patterns are not anchored implicitly
    return bool(rule.regex and rule.regex.search(value))


def _match_udev(udev: UdevAttributes | None, matcher: DeviceMatcher) -> bool:
    if not matcher.needs_udev():
        return True
    if udev is None:
        logger.debug("udev attributes are unavailable")
        return False

    for rule in matcher.udev_env:
        if not _match_udev_env(udev.env, rule):
            logger.debug("udev env %s does not match", rule.name)
            return False

    if matcher.tags and not set(matcher.tags).issubset(udev.tags):
        logger.debug("Checking tags %s against %s", matcher.tags, sorted(udev.tags))
        return False

    if matcher.current_tags:
        if udev.current_tags is None:
            logger.debug("Current tags are unavailable")
            return False
        if not set(matcher.current_tags).issubset(udev.current_tags):
            logger.debug("Checking current tags %s against %s", matcher.current_tags, sorted(udev.current_tags))
            return False

    return True


def device_matches(device: USBDevice, matcher: DeviceMatcher) -> bool:
    """Returns True if every field set in the matcher agrees with the device."""
    if matcher.bus is not None and matcher.bus != device.busnum:
        return False
    if matcher.device is not None and matcher.device != device.devnum:
        return False
    if matcher.vendor_id is not None and matcher.vendor_id != device.vid:
        return False
    if matcher.product_id is not None and matcher.product_id != device.pid:
        return False
    if matcher.vendor_name is not None and matcher.vendor_name != device.vendor_name:
        return False
    if matcher.product_name is not None and matcher.product_name != device.product_name:
        return False
    return _match_udev(device.udev, matcher)


def machine_matches(device: USBDevice, machine: MachineConfig) -> bool:
    for idx, matcher in enumerate(machine.matchers):
        if device_matches(device, matcher):
            logger.debug("Device %s matches matcher %s of %s", device.friendly_name(), idx, machine.name)
            return True
    return False
