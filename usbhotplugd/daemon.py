import asyncio
import logging

from usbhotplugd.appcontext import AppContext
from usbhotplugd.config import Config
from usbhotplugd.cycle import run_cycle
from usbhotplugd.errors import ConfigError, EnumerationError

logger = logging.getLogger("usbhotplugd")


class Daemon:
    """Runs reconciliation cycles until stopped, one cycle at a time."""

    def __init__(self, app_context: AppContext, config: Config) -> None:
        self.app_context = app_context
        self.config = config
        self._wakeup = asyncio.Event()
        self._reload_requested = False
        self._stopping = False

    def request_reload(self) -> None:
        logger.info("Reload requested")
        self._reload_requested = True
        self._wakeup.set()

    def request_stop(self) -> None:
        logger.info("Shutdown requested")
        self._stopping = True
        self._wakeup.set()

    def reload(self) -> bool:
        """Replaces the configuration, keeps the current one if the new one is invalid."""
        self._reload_requested = False
        try:
            config = Config(self.config.path)
        except ConfigError as e:
            logger.error("Failed to reload configuration, keeping the previous one: %s", e)
            return False
        self.config = config
        logger.info("Configuration reloaded: %s machine(s)", len(config.machines))
        return True

    async def run_once(self) -> None:
        if self._reload_requested:
            self.reload()
        try:
            await run_cycle(self.app_context, self.config)
        except EnumerationError as e:
            logger.error("Cycle abandoned: %s", e)
        except Exception:
            logger.exception("Cycle failed unexpectedly")

    async def run(self) -> None:
        while not self._stopping:
            await self.run_once()
            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

