import argparse
import asyncio
import logging
import os
import signal
import sys

import pyudev

from usbhotplugd.appcontext import AppContext
from usbhotplugd.config import Config
from usbhotplugd.daemon import Daemon
from usbhotplugd.errors import ConfigError, HypervisorError
from usbhotplugd.libvirtlink import DEFAULT_URI, LibvirtLink

logger = logging.getLogger("usbhotplugd")

DEBUG_ENV = "USBHOTPLUGD_DEBUG"


def setup_logging(debug: bool) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)


async def async_main(args: argparse.Namespace) -> int:
    try:
        config = Config(args.config)
    except ConfigError as e:
        logger.error("Failed to load configuration: %s", e)
        return 1

    try:
        with LibvirtLink(args.uri) as link:
            logger.info("Connected to %s, libvirt version %s", args.uri, link.version())
    except HypervisorError as e:
        logger.warning("%s", e)

    app_context = AppContext(pyudev.Context(), lambda: LibvirtLink(args.uri))
    daemon = Daemon(app_context, config)

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGHUP, daemon.request_reload)
    loop.add_signal_handler(signal.SIGINT, daemon.request_stop)
    loop.add_signal_handler(signal.SIGTERM, daemon.request_stop)

    logger.info("Starting, %s machine(s) configured, interval %ss", len(config.machines), config.interval)
    await daemon.run()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Keeps USB devices attached to libvirt virtual machines")
    parser.add_argument("config", type=str, help="Path to the configuration file")
    parser.add_argument("--uri", type=str, default=DEFAULT_URI, help="libvirt connection URI")
    parser.add_argument(
        "-d",
        "--debug",
        default=False,
        action=argparse.BooleanOptionalAction,
        help="Enable debug messages",
    )
    args = parser.parse_args()

    setup_logging(args.debug or DEBUG_ENV in os.environ)

    exit_code = asyncio.run(async_main(args))
    logger.info("Exiting")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
