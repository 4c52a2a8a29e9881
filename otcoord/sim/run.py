from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import httpx

from otcoord.channel.client import SimulatorChannel
from otcoord.channel.events import EventPayload
from otcoord.channel.server import EventServer
from otcoord.config import Settings
from otcoord.core.errors import ConfigurationError, SimulatorNotReadyError
from otcoord.core.infrastructure import Infrastructure
from otcoord.overtaking.coordinator import OvertakingCoordinator
from otcoord.overtaking.modules.registry import ConfiguredModule
from otcoord.overtaking.overtaking_data import OvertakingData, get_overtaking_data
from otcoord.sim.audit import CommunicationLog
from otcoord.sim.retry import retry_forever, retry_run, wait_for_port
from otcoord.sim.train_counter import TrainCounter

logger = logging.getLogger(__name__)

MAX_DELAY_SCENARIO = 200


@dataclass
class Session:
    """Everything one run attempt talks to the simulator through."""

    channel: SimulatorChannel
    train_counter: TrainCounter
    # Resolved once the simulation paused at (or after) the end time, or stopped without one
    simulation_running: asyncio.Future
    process: Optional[asyncio.subprocess.Process] = None
    _cleanup: List[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    def on_close(self, callback: Callable[[], Awaitable[Any]]) -> None:
        self._cleanup.append(callback)

    async def close(self) -> None:
        while self._cleanup:
            callback = self._cleanup.pop()
            try:
                await callback()
            except Exception:
                logger.exception("Cleanup after a run failed.")


class SimulationRunner:
    """Drives whole simulation runs: prepare, start the simulator, run, clean up, retry."""

    def __init__(
        self,
        settings: Settings,
        infrastructure: Infrastructure,
        transport: httpx.AsyncBaseTransport | None = None,
        serve_events: bool = True,
    ):
        self.settings = settings
        self.infrastructure = infrastructure
        self._transport = transport
        self._serve_events = serve_events
        self._overtaking_data: Optional[OvertakingData] = None

    @property
    def overtaking_data(self) -> OvertakingData:
        if self._overtaking_data is None:
            self._overtaking_data = get_overtaking_data(self.infrastructure)
        return self._overtaking_data

    # Preparation ----------------------------------------------------------------

    async def _prepare_once(self) -> Session:
        settings = self.settings
        closers: List[Callable[[], Awaitable[Any]]] = []
        try:
            communication_log = CommunicationLog(settings.communication_log) if settings.communication_log else None
            if communication_log is not None:
                closers.append(_as_async(communication_log.close))

            channel = SimulatorChannel(settings, transport=self._transport, communication_log=communication_log)
            closers.append(channel.kill)

            train_counter = TrainCounter(channel)
            closers.append(_as_async(train_counter.start()))

            simulation_running: asyncio.Future = asyncio.get_running_loop().create_future()
            closers.append(_as_async(lambda: simulation_running.cancel() if not simulation_running.done() else None))
            end_time = settings.end_time

            def on_sim_paused(_name: str, payload: EventPayload) -> None:
                if simulation_running.done():
                    return
                if payload.time >= end_time:
                    simulation_running.set_result(None)
                else:
                    # Our own pauses end up here too
                    channel.spawn(channel.set_simulation_pause_time(end_time), "moving the pause time to the end")

            def on_sim_stopped(_name: str, _payload: EventPayload) -> None:
                if not simulation_running.done():
                    simulation_running.set_result(None)

            if end_time is None:
                channel.on("simStopped", on_sim_stopped)
            else:
                channel.on("simPaused", on_sim_paused)

            if self._serve_events:
                server = EventServer(channel, settings.app_host, settings.port_app)
                await server.start()
                closers.append(server.stop)

            logger.info(f"Ports: OT {settings.port_ot} <-> App {settings.port_app}")
            session = Session(channel=channel, train_counter=train_counter, simulation_running=simulation_running)
            session._cleanup.extend(closers)
            return session
        except BaseException:
            for closer in reversed(closers):
                try:
                    await closer()
                except Exception:
                    logger.exception("Cleanup after failed preparations failed.")
            raise

    async def prepare(self) -> Session:
        return await retry_forever(lambda _attempt: self._prepare_once(), self.settings.cooldown)

    # Startup --------------------------------------------------------------------

    def _simulator_args(self, delay_scenario: Optional[int], suffix: str) -> List[str]:
        values = {"delay_scenario": delay_scenario if delay_scenario is not None else "", "run": suffix}
        try:
            return [arg.format(**values) for arg in self.settings.ot_args]
        except (KeyError, IndexError) as e:
            raise ConfigurationError(f"Unknown placeholder {e} in simulator arguments.") from e

    async def _spawn_simulator(self, session: Session, delay_scenario: Optional[int], suffix: str) -> None:
        args = self._simulator_args(delay_scenario, suffix)
        logger.info(f"Simulator command line: {[self.settings.ot_binary, *args]}")
        process = await asyncio.create_subprocess_exec(
            self.settings.ot_binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        session.process = process
        output: List[str] = []

        async def pump(stream: asyncio.StreamReader, level: int, name: str) -> None:
            async for raw in stream:
                line = raw.decode(errors="replace").rstrip()
                output.append(f"{name}: {line}")
                logger.log(level, f"OT: {line}")

        async def watch() -> None:
            await asyncio.gather(
                pump(process.stdout, logging.INFO, "STDOUT"), pump(process.stderr, logging.WARNING, "STDERR")
            )
            code = await process.wait()
            logger.info(f"Simulator exited with exit code {code}.")
            if self.settings.ot_log:
                Path(self.settings.ot_log).write_text(
                    f"Simulator exited with exit code {code}.\n\n" + "\n".join(output), encoding="utf-8"
                )
            if not session.simulation_running.done():
                session.simulation_running.set_exception(SimulatorNotReadyError(f"Simulator exited with {code}."))
            await session.channel.kill()

        watcher = asyncio.ensure_future(watch())

        async def terminate() -> None:
            if process.returncode is None:
                logger.info("Waiting for the simulator process to terminate...")
                process.terminate()
            await asyncio.gather(watcher, return_exceptions=True)

        session.on_close(terminate)

    async def startup(self, delay_scenario: Optional[int] = None, suffix: str = "") -> Session:
        """Prepare, start the simulator and wait for it, as many times as it takes."""
        return await retry_forever(
            lambda _attempt: self._startup_once(delay_scenario, suffix), self.settings.cooldown
        )

    async def _startup_once(self, delay_scenario: Optional[int], suffix: str) -> Session:
        session = await self.prepare()
        try:
            channel = session.channel
            sim_started = channel.once("simStarted")
            sim_paused = channel.once("simPaused")
            if self.settings.manages_simulator:
                logger.info("Starting the simulator...")
                await self._spawn_simulator(session, delay_scenario, suffix)
            try:
                await asyncio.wait_for(
                    asyncio.gather(
                        sim_started,
                        sim_paused,
                        wait_for_port(self.settings.ot_host, self.settings.port_ot, self.settings.port_wait_timeout),
                    ),
                    timeout=self.settings.port_wait_timeout,
                )
            except asyncio.TimeoutError as e:
                raise SimulatorNotReadyError("The simulator didn't become ready in time.") from e
            logger.info("The simulator is ready for simulation.")
            await channel.open_simulation_panel("Simulation")
            logger.info("The simulator responds to requests.")
            return session
        except BaseException:
            await session.close()
            raise

    # Runs -----------------------------------------------------------------------

    async def _start_unless(self, channel: SimulatorChannel) -> None:
        if self.settings.pause_before_each_run:
            logger.info("Resume in the simulator to continue...")
        else:
            await channel.start_simulation()

    async def _continue_unless(self, channel: SimulatorChannel, train_counter: TrainCounter) -> None:
        train_counter.log_stuck()
        if not self.settings.pause_after_each_run and (
            train_counter.size == 0 or not self.settings.pause_with_stuck_trains
        ):
            await channel.start_simulation()
        else:
            logger.info("Resume in the simulator to continue...")

    async def _run_attempt(self, configured: ConfiguredModule, delay_scenario: Optional[int], attempt: int) -> None:
        if attempt > 1:
            logger.warning(f"Starting rerun (attempt {attempt})...")
        else:
            logger.info("Starting run...")
        started = time.monotonic()

        session = await self.startup(delay_scenario, configured.output_dir_name)
        channel = session.channel
        coordinator = OvertakingCoordinator(
            self.infrastructure,
            channel,
            configured.module,
            position_report_frequency=self.settings.position_report_frequency,
            allow_reserved_routes=self.settings.allow_reserved_routes,
            overtaking_data=self.overtaking_data,
        )
        try:
            await coordinator.setup()
            if self.settings.end_time is not None:
                # Pausing right before the end lets us see stuck trains.
                await channel.set_simulation_pause_time(self.settings.end_time)

            logger.info("Starting simulation...")
            simulation_end = channel.once("simStopped")
            simulation_continued = channel.once("simContinued")
            await self._start_unless(channel)
            await simulation_continued
            logger.info("Simulating...")

            await session.simulation_running
            logger.info("Simulation ended.")
            await coordinator.cleanup()
            if self.settings.end_time is not None:
                await self._continue_unless(channel, session.train_counter)
                await simulation_end
            else:
                session.train_counter.log_stuck()

            if session.process is not None:
                # It closes on its own after the run; killing the channel earlier confuses it.
                logger.info("Waiting for the simulator to terminate...")
                await session.process.wait()
                logger.info("Simulator closed.")
        finally:
            await coordinator.cleanup()
            await session.close()
            logger.info(f"Run attempt took {time.monotonic() - started:.1f}s.")

    async def do_one_run(self, configured: ConfiguredModule, delay_scenario: Optional[int] = None) -> None:
        if delay_scenario is not None:
            logger.info(f"Delay scenario {delay_scenario} with {configured.conf_string}")
        await retry_run(
            lambda attempt: self._run_attempt(configured, delay_scenario, attempt),
            self.settings.max_attempts,
            self.settings.cooldown,
        )

    async def run_batch(self, modules: Sequence[ConfiguredModule]) -> int:
        """Run every module for every delay scenario; returns the number of finished runs."""
        first, last = self.settings.delay_scenario_first, self.settings.delay_scenario_last
        stop_file = Path(self.settings.stop_file) if self.settings.stop_file else None
        if stop_file is not None and stop_file.exists():
            stop_file.unlink()

        if first is None and last is None:
            for configured in modules:
                await self.do_one_run(configured)
            return len(modules)

        scenarios = delay_scenarios(first, last)
        finished = 0
        for scenario in scenarios:
            for configured in modules:
                await self.do_one_run(configured, scenario)
                finished += 1
            if stop_file is not None and stop_file.exists():
                logger.info(f"Found {stop_file}, stopping after delay scenario {scenario}.")
                stop_file.unlink()
                break
        return finished

    async def run_attached(self, configured: ConfiguredModule, runs: Optional[int] = None) -> None:
        """Coordinate a simulator started by hand, one simulation after another."""
        session = await self.prepare()
        try:
            logger.info("Waiting for the simulator...")
            await retry_forever(
                lambda _attempt: wait_for_port(
                    self.settings.ot_host, self.settings.port_ot, self.settings.port_wait_timeout
                ),
                self.settings.cooldown,
            )
            done = 0
            while runs is None or done < runs:
                coordinator = OvertakingCoordinator(
                    self.infrastructure,
                    session.channel,
                    configured.module,
                    position_report_frequency=self.settings.position_report_frequency,
                    allow_reserved_routes=self.settings.allow_reserved_routes,
                    overtaking_data=self.overtaking_data,
                )
                await coordinator.setup()
                try:
                    simulation_start = session.channel.once("simStarted")
                    logger.info("Simulation can be started now.")
                    await simulation_start
                    simulation_end = session.channel.once("simStopped")
                    logger.info("Simulating...")
                    await simulation_end
                    logger.info("Simulation ended.")
                finally:
                    await coordinator.cleanup()
                done += 1
        finally:
            await session.close()


def delay_scenarios(first: Optional[int], last: Optional[int]) -> List[int]:
    """Inclusive range from first to last, counting down when last < first."""
    if first is None or last is None:
        raise ConfigurationError("Both the first and the last delay scenario have to be set.")
    if not (1 <= min(first, last) and max(first, last) <= MAX_DELAY_SCENARIO):
        raise ConfigurationError(f"First and last delay scenario have to be in <1, {MAX_DELAY_SCENARIO}> range.")
    step = 1 if first <= last else -1
    return list(range(first, last + step, step))


def _as_async(callback: Callable[[], Any]) -> Callable[[], Awaitable[None]]:
    async def run() -> None:
        callback()

    return run
