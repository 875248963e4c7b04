import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

import yaml

from usbhotplugd.errors import ConfigError

logger = logging.getLogger("usbhotplugd")

DEFAULT_INTERVAL = 5.0
MACHINES_DIR = "machines.d"

_TOP_KEYS = {"interval", "machines"}
_MACHINE_KEYS = {"devices"}
_MATCHER_KEYS = {"bus", "device", "vendor-id", "product-id", "vendor-name", "product-name", "udev"}
_UDEV_KEYS = {"env", "tags", "current-tags"}
_UDEV_ENV_KEYS = {"name", "equals", "pattern"}

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


@dataclass
class UdevEnvMatcher:
    name: str
    equals: str | None = None
    pattern: str | None = None
    regex: re.Pattern[str] | None = None


@dataclass
class DeviceMatcher:
    bus: int | None = None
    device: int | None = None
    vendor_id: int | None = None
    product_id: int | None = None
    vendor_name: str | None = None
    product_name: str | None = None
    udev_env: list[UdevEnvMatcher] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    current_tags: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return (
            self.bus is None
            and self.device is None
            and self.vendor_id is None
            and self.product_id is None
            and self.vendor_name is None
            and self.product_name is None
            and not self.tags
            and not self.current_tags
        )

    def needs_udev(self) -> bool:
        return bool(self.udev_env or self.tags or self.current_tags)


@dataclass
class MachineConfig:
    name: str
    matchers: list[DeviceMatcher]


def parse_duration(value: Any) -> float:
    """Parses a number of seconds or a Go-style duration string like "1m30s"."""
    if isinstance(value, bool):
        raise ConfigError(f"Invalid interval: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ConfigError(f"Invalid interval: {value!r}")

    text = value.strip()
    if text in ("0", ""):
        return 0.0
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ConfigError(f"Invalid interval: {value!r}")
    return total


def _check_keys(node: Any, allowed: set[str], where: str) -> dict[str, Any]:
    if node is None:
        return {}
    if not isinstance(node, dict):
        raise ConfigError(f"{where}: expected a mapping")
    unknown = sorted(str(k) for k in node if k not in allowed)
    if unknown:
        raise ConfigError(f"{where}: unknown field(s) {', '.join(unknown)}")
    return node


def _int_field(node: dict[str, Any], key: str, where: str) -> int | None:
    value = node.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{where}: '{key}' must be an integer")
    return value


def _id_field(node: dict[str, Any], key: str, where: str) -> int | None:
    value = node.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"{where}: '{key}' must be a 16-bit id")
    if isinstance(value, str):
        try:
            value = int(value, 16)
        except ValueError as e:
            raise ConfigError(f"{where}: '{key}' is not a hex number: {node.get(key)!r}") from e
    if not isinstance(value, int) or not 0 <= value <= 0xFFFF:
        raise ConfigError(f"{where}: '{key}' must be a 16-bit id")
    return value


def _str_field(node: dict[str, Any], key: str, where: str) -> str | None:
    value = node.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{where}: '{key}' must be a string")
    return value


def _str_list(node: dict[str, Any], key: str, where: str) -> list[str]:
    value = node.get(key) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{where}: '{key}' must be a list of strings")
    return list(value)


def _parse_udev_env(node: Any, where: str) -> UdevEnvMatcher:
    node = _check_keys(node, _UDEV_ENV_KEYS, where)
    name = _str_field(node, "name", where)
    if not name:
        raise ConfigError(f"{where}: udev-env name must not be empty")
    equals = _str_field(node, "equals", where)
    pattern = _str_field(node, "pattern", where)
    if equals is not None and pattern is not None:
        raise ConfigError(f"{where}: 'equals' and 'pattern' are mutually exclusive")
    if equals is None and pattern is None:
        raise ConfigError(f"{where}: udev-env needs at least one of 'equals' or 'pattern'")

    regex = None
    if pattern is not None:
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise ConfigError(f"{where}: failed to compile pattern: {e}") from e
    return UdevEnvMatcher(name, equals, pattern, regex)


def parse_matcher(node: Any, where: str) -> DeviceMatcher:
    node = _check_keys(node, _MATCHER_KEYS, where)
    udev = _check_keys(node.get("udev"), _UDEV_KEYS, f"{where}, udev")

    env_nodes = udev.get("env") or []
    if not isinstance(env_nodes, list):
        raise ConfigError(f"{where}: 'udev.env' must be a list")

    matcher = DeviceMatcher(
        bus=_int_field(node, "bus", where),
        device=_int_field(node, "device", where),
        vendor_id=_id_field(node, "vendor-id", where),
        product_id=_id_field(node, "product-id", where),
        vendor_name=_str_field(node, "vendor-name", where),
        product_name=_str_field(node, "product-name", where),
        udev_env=[_parse_udev_env(env, f"{where}, udev-env {i}") for i, env in enumerate(env_nodes)],
        tags=_str_list(udev, "tags", where),
        current_tags=_str_list(udev, "current-tags", where),
    )

    # A matcher without any criteria would match every device
    if not matcher.udev_env and matcher.is_empty():
        raise ConfigError(f"{where}: empty matcher is not allowed")
    return matcher


def parse_machine(name: str, node: Any) -> MachineConfig:
    node = _check_keys(node, _MACHINE_KEYS, f"machine {name}")
    devices = node.get("devices") or []
    if not isinstance(devices, list):
        raise ConfigError(f"machine {name}: 'devices' must be a list")
    if not devices:
        raise ConfigError(f"machine {name} has no device matchers")
    matchers = [parse_matcher(m, f"device matcher {idx} of machine {name}") for idx, m in enumerate(devices)]
    return MachineConfig(name, matchers)


def _load_yaml(path: str) -> Any:
    try:
        with open(path, encoding="utf-8") as file:
            return yaml.safe_load(file)
    except OSError as e:
        raise ConfigError(f"Failed to open config file {path}: {e}") from e
    except UnicodeDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid UTF-8: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


class Config:
    """Main configuration file plus per-machine snippets from machines.d."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.interval = DEFAULT_INTERVAL
        self.machines: dict[str, MachineConfig] = {}
        self.load()

    def load(self) -> None:
        root = _check_keys(_load_yaml(self.path), _TOP_KEYS, self.path)

        # An empty "interval:" means the default, like an absent one
        raw_interval = root.get("interval")
        interval = parse_duration(0 if raw_interval is None else raw_interval)
        if interval < 0:
            raise ConfigError(f"Invalid interval: {root.get('interval')!r}")
        nodes = root.get("machines") or {}
        if not isinstance(nodes, dict):
            raise ConfigError(f"{self.path}: 'machines' must be a mapping")
        nodes = {str(name): node for name, node in nodes.items()}
        nodes.update(self._load_snippets(nodes))

        machines = {name: parse_machine(name, node) for name, node in nodes.items()}

        self.interval = interval or DEFAULT_INTERVAL
        self.machines = machines
        logger.debug("Loaded %s machine(s) from %s, interval %ss", len(self.machines), self.path, self.interval)

    def machines_dir(self) -> str:
        return os.path.join(os.path.dirname(os.path.abspath(self.path)), MACHINES_DIR)

    def _load_snippets(self, existing: dict[str, Any]) -> dict[str, Any]:
        directory = self.machines_dir()
        if not os.path.isdir(directory):
            return {}

        logger.debug("Looking for additional config files in %s", directory)
        result: dict[str, Any] = {}
        try:
            filenames = sorted(os.listdir(directory))
        except OSError as e:
            raise ConfigError(f"Failed to read {directory}: {e}") from e

        for filename in filenames:
            path = os.path.join(directory, filename)
            name, ext = os.path.splitext(filename)
            if ext != ".yml" or not os.path.isfile(path):
                continue
            logger.debug("Loading machine config from %s", filename)
            if name in existing:
                logger.warning(
                    "Machine %s is defined in the main config file and in %s, the latter takes precedence",
                    name,
                    directory,
                )
            result[name] = _load_yaml(path)
        return result

    def machine_names(self) -> list[str]:
        return list(self.machines)
