import asyncio
import logging
from dataclasses import dataclass, field

from usbhotplugd.appcontext import AppContext
from usbhotplugd.catalog import DeviceCatalog
from usbhotplugd.config import Config, MachineConfig
from usbhotplugd.errors import HypervisorError, SnapshotError
from usbhotplugd.executor import ActionExecutor
from usbhotplugd.reconciler import Action, plan_machine


@dataclass
class MachineResult:
    name: str
    applied: list[Action] = field(default_factory=list)
    failed: list[Action] = field(default_factory=list)
    skipped: bool = False
    error: str | None = None


@dataclass
class CycleReport:
    devices: int = 0
    machines: dict[str, MachineResult] = field(default_factory=dict)
    error: str | None = None

    def applied(self) -> list[Action]:
        return [a for r in self.machines.values() for a in r.applied]

    def failed(self) -> list[Action]:
        return [a for r in self.machines.values() for a in r.failed]


def reconcile_machine(
    app_context: AppContext, machine: MachineConfig, catalog: DeviceCatalog, log: logging.Logger
) -> MachineResult:
    """Snapshots one machine and applies its actions over a dedicated connection."""
    result = MachineResult(machine.name)
    with app_context.link_factory() as link:
        domain = link.lookup_machine(machine.name)
        if domain is None:
            log.debug("Machine %s is not running, skipping", machine.name)
            result.skipped = True
            return result

        snapshot = link.snapshot(machine.name, domain)
        log.debug("Machine %s", snapshot)

        actions = plan_machine(machine, snapshot, catalog)
        if not actions:
            log.debug("Machine %s is up to date", machine.name)
            return result

        executor = ActionExecutor(link, domain, log, snapshot.devices, app_context.alias_conflicts)
        for action in actions:
            if executor.apply(action):
                result.applied.append(action)
            else:
                result.failed.append(action)
    return result


async def _reconcile_machine_task(
    app_context: AppContext, machine: MachineConfig, catalog: DeviceCatalog, log: logging.Logger
) -> MachineResult:
    try:
        return await asyncio.to_thread(reconcile_machine, app_context, machine, catalog, log)
    except (HypervisorError, SnapshotError) as e:
        log.error("Failed to reconcile machine %s: %s", machine.name, e)
        return MachineResult(machine.name, error=str(e))
    except Exception as e:
        log.exception("Unexpected error while reconciling machine %s", machine.name)
        return MachineResult(machine.name, error=str(e))


def _list_running(app_context: AppContext) -> set[str]:
    with app_context.link_factory() as link:
        return {m.name for m in link.list_running_machines()}


async def run_cycle(app_context: AppContext, config: Config, log: logging.Logger | None = None) -> CycleReport:
    """Runs one reconciliation pass, raises EnumerationError if USB devices cannot be listed."""
    log = log or app_context.log
    report = CycleReport()

    catalog = await asyncio.to_thread(DeviceCatalog.from_udev, app_context.udev_context)
    report.devices = len(catalog)
    log.debug("Found %s USB devices", len(catalog))

    try:
        running = await asyncio.to_thread(_list_running, app_context)
    except HypervisorError as e:
        log.error("Failed to list running machines: %s", e)
        report.error = str(e)
        return report

    tasks = []
    for name, machine in config.machines.items():
        if name not in running:
            log.debug("Machine %s is not running, skipping", name)
            report.machines[name] = MachineResult(name, skipped=True)
            continue
        tasks.append(_reconcile_machine_task(app_context, machine, catalog, log))

    for result in await asyncio.gather(*tasks):
        report.machines[result.name] = result

    applied = report.applied()
    failed = report.failed()
    if applied or failed:
        log.info("Cycle finished: %s action(s) applied, %s failed", len(applied), len(failed))
    return report
