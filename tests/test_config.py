import os

import pytest

from usbhotplugd.config import DEFAULT_INTERVAL, Config, parse_duration
from usbhotplugd.errors import ConfigError


def write_config(tmp_path, text: str, snippets: dict[str, str] | None = None) -> str:
    path = tmp_path / "config.yml"
    path.write_text(text, encoding="utf-8")
    if snippets:
        machines_dir = tmp_path / "machines.d"
        machines_dir.mkdir()
        for name, content in snippets.items():
            (machines_dir / name).write_text(content, encoding="utf-8")
    return str(path)


def test_vid_pid(tmp_path) -> None:
    path = write_config(
        tmp_path,
        """
machines:
  build1:
    devices:
      - vendor-id: 0x1234
        product-id: 0x5678
""",
    )
    config = Config(path)
    matcher = config.machines["build1"].matchers[0]
    assert matcher.vendor_id == 0x1234 and matcher.product_id == 0x5678
    assert config.interval == DEFAULT_INTERVAL


def test_vid_pid_hex_strings(tmp_path) -> None:
    path = write_config(
        tmp_path,
        """
machines:
  build1:
    devices:
      - vendor-id: "046d"
        product-id: "0xc52b"
""",
    )
    matcher = Config(path).machines["build1"].matchers[0]
    assert matcher.vendor_id == 0x046D and matcher.product_id == 0xC52B


def test_vid_out_of_range(tmp_path) -> None:
    path = write_config(tmp_path, "machines: {vm1: {devices: [{vendor-id: 0x12345}]}}")
    with pytest.raises(ConfigError, match="16-bit"):
        Config(path)


def test_interval(tmp_path) -> None:
    path = write_config(tmp_path, "interval: 1m30s\nmachines: {}\n")
    assert Config(path).interval == 90.0


def test_interval_zero_uses_default(tmp_path) -> None:
    path = write_config(tmp_path, "interval: 0\n")
    assert Config(path).interval == DEFAULT_INTERVAL


def test_interval_empty_uses_default(tmp_path) -> None:
    path = write_config(tmp_path, "interval:\n")
    assert Config(path).interval == DEFAULT_INTERVAL


def test_interval_bool_is_rejected(tmp_path) -> None:
    path = write_config(tmp_path, "interval: false\n")
    with pytest.raises(ConfigError):
        Config(path)


def test_invalid_utf8_is_config_error(tmp_path) -> None:
    path = tmp_path / "config.yml"
    path.write_bytes(b'machines: {build1: {devices: [{vendor-name: "\xff\xfe"}]}}\n')
    with pytest.raises(ConfigError, match="UTF-8"):
        Config(str(path))


def test_parse_duration() -> None:
    assert parse_duration("500ms") == 0.5
    assert parse_duration("2h") == 7200.0
    assert parse_duration(3) == 3.0
    with pytest.raises(ConfigError):
        parse_duration("5 seconds")
    with pytest.raises(ConfigError):
        parse_duration("5")


def test_udev_env_pattern_compiled(tmp_path) -> None:
    path = write_config(
        tmp_path,
        """
machines:
  vm1:
    devices:
      - udev:
          env:
            - name: ID_BUS
              pattern: "^usb$"
""",
    )
    env = Config(path).machines["vm1"].matchers[0].udev_env[0]
    assert env.regex is not None and env.regex.pattern == "^usb$"


def test_udev_env_equals_and_pattern(tmp_path) -> None:
    path = write_config(
        tmp_path,
        """
machines:
  vm1:
    devices:
      - udev:
          env:
            - name: ID_BUS
              equals: usb
              pattern: usb
""",
    )
    with pytest.raises(ConfigError, match="mutually exclusive"):
        Config(path)


def test_udev_env_neither_equals_nor_pattern(tmp_path) -> None:
    path = write_config(tmp_path, "machines: {vm1: {devices: [{udev: {env: [{name: ID_BUS}]}}]}}")
    with pytest.raises(ConfigError, match="at least one"):
        Config(path)


def test_udev_env_empty_name(tmp_path) -> None:
    path = write_config(tmp_path, "machines: {vm1: {devices: [{udev: {env: [{name: '', equals: x}]}}]}}")
    with pytest.raises(ConfigError, match="must not be empty"):
        Config(path)


def test_invalid_pattern(tmp_path) -> None:
    path = write_config(tmp_path, "machines: {vm1: {devices: [{udev: {env: [{name: A, pattern: '(['}]}}]}}")
    with pytest.raises(ConfigError, match="failed to compile"):
        Config(path)


def test_empty_matcher(tmp_path) -> None:
    path = write_config(tmp_path, "machines: {vm1: {devices: [{}]}}")
    with pytest.raises(ConfigError, match="empty matcher"):
        Config(path)


def test_empty_tag_lists_are_empty_matcher(tmp_path) -> None:
    path = write_config(tmp_path, "machines: {vm1: {devices: [{udev: {tags: [], current-tags: []}}]}}")
    with pytest.raises(ConfigError, match="empty matcher"):
        Config(path)


def test_tags_only_matcher(tmp_path) -> None:
    path = write_config(tmp_path, "machines: {vm1: {devices: [{udev: {current-tags: [seat]}}]}}")
    assert Config(path).machines["vm1"].matchers[0].current_tags == ["seat"]


def test_machine_without_matchers(tmp_path) -> None:
    path = write_config(tmp_path, "machines: {vm1: {devices: []}}")
    with pytest.raises(ConfigError, match="no device matchers"):
        Config(path)


def test_unknown_field(tmp_path) -> None:
    path = write_config(tmp_path, "machines: {vm1: {devices: [{vendor: 0x1234}]}}")
    with pytest.raises(ConfigError, match="unknown field"):
        Config(path)


def test_invalid_yaml(tmp_path) -> None:
    path = write_config(tmp_path, "machines: [")
    with pytest.raises(ConfigError, match="Failed to parse"):
        Config(path)


def test_missing_file(tmp_path) -> None:
    with pytest.raises(ConfigError, match="Failed to open"):
        Config(os.path.join(str(tmp_path), "missing.yml"))


def test_machines_dir_snippets(tmp_path) -> None:
    path = write_config(
        tmp_path,
        "machines: {vm1: {devices: [{bus: 1}]}, vm2: {devices: [{bus: 2}]}}",
        {
            "vm2.yml": "devices: [{bus: 3}]\n",
            "vm3.yml": "devices: [{device: 7}]\n",
            "notes.txt": "ignored",
        },
    )
    config = Config(path)
    assert sorted(config.machine_names()) == ["vm1", "vm2", "vm3"]
    assert config.machines["vm1"].matchers[0].bus == 1
    assert config.machines["vm2"].matchers[0].bus == 3
    assert config.machines["vm3"].matchers[0].device == 7


def test_invalid_snippet(tmp_path) -> None:
    path = write_config(tmp_path, "machines: {}", {"vm1.yml": "devices: [{}]\n"})
    with pytest.raises(ConfigError, match="machine vm1"):
        Config(path)
