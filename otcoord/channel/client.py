from __future__ import annotations
import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from otcoord.channel.events import EventPayload, create_payload
from otcoord.channel.soap import build_request
from otcoord.config import Settings
from otcoord.core.errors import CommunicationError, NotFoundError
from otcoord.sim.audit import CommunicationLog

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, EventPayload], Any]
SendFn = Callable[[str, Dict[str, Any]], None]


class SimulatorChannel:
    """Request/response channel to the simulator plus the inbound event fan-out.

    Outbound commands go through `send`, which never retries: transport
    failures and timeouts surface as `CommunicationError`. Inbound events are
    fed to `dispatch` (by the HTTP endpoint in `otcoord.channel.server`) and
    delivered synchronously, in order, to subscribers.
    """

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        communication_log: CommunicationLog | None = None,
    ) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(timeout=settings.request_timeout, transport=transport)
        self._semaphore = asyncio.Semaphore(max(1, settings.max_simultaneous_requests))
        self._communication_log = communication_log

        self._listeners: Dict[str, List[EventCallback]] = {}
        self._any_listeners: List[EventCallback] = []
        self._onces: Dict[Optional[str], List[asyncio.Future]] = {}
        self._tasks: set[asyncio.Task] = set()

        self._pause_depth = 0
        self._pause_request: Optional[asyncio.Future] = None
        self._resume_request: Optional[asyncio.Future] = None
        self._killed = False

    # Requests ---------------------------------------------------------------

    async def send(self, command: str, params: Mapping[str, Any] | None = None) -> None:
        if self._killed:
            raise CommunicationError(f"Can't send {command}, this session has been killed.")
        params = dict(params or {})
        body = build_request(command, params)
        if self._communication_log is not None:
            self._communication_log.request(command, params)
        async with self._semaphore:
            try:
                r = await self._client.post(
                    self.settings.ot_url,
                    content=body,
                    headers={"Content-Type": "application/xml; charset=utf-8", "Connection": "close"},
                )
                r.raise_for_status()
            except httpx.TimeoutException as e:
                raise CommunicationError(f"Request {command} {params} timed out.") from e
            except httpx.HTTPError as e:
                raise CommunicationError(f"Request {command} {params} failed: {e}") from e
        logger.debug(f"Sent {command} {params}")

    async def set_route_allowed(self, train_id: str, route_id: str) -> None:
        await self.send("setRouteAllowed", {"trainID": train_id, "routeID": route_id})

    async def set_route_disallowed(self, train_id: str, route_id: str) -> None:
        await self.send("setRouteDisallowed", {"trainID": train_id, "routeID": route_id})

    async def set_send_position_reports(self, train_id: str, flag: bool = True, time: float = 1) -> None:
        await self.send("setSendPositionReports", {"trainID": train_id, "flag": flag, "time": time})

    async def pause_simulation(self) -> None:
        await self.send("pauseSimulation")

    async def start_simulation(self) -> None:
        await self.send("startSimulation")

    async def set_simulation_pause_time(self, time: float) -> None:
        await self.send("setSimulationPauseTime", {"time": time})

    async def open_simulation_panel(self, mode: str = "Simulation") -> None:
        await self.send("openSimulationPanel", {"mode": mode})

    async def terminate_application(self) -> None:
        await self.send("terminateApplication")

    # Batches ------------------------------------------------------------------

    @asynccontextmanager
    async def paused(self) -> AsyncIterator[None]:
        """Keep simulated time still for the duration of the block.

        Reference counted: the first entrant pauses the simulator, the last one
        to leave resumes it, whatever way the blocks exit. A pause never goes
        out while the previous resume is still in flight.
        """
        self._pause_depth += 1
        if self._pause_depth == 1:
            self._pause_request = asyncio.ensure_future(self._pause_after(self._resume_request))
        pause_request = self._pause_request
        try:
            await asyncio.shield(pause_request)
            yield
        finally:
            self._pause_depth -= 1
            if self._pause_depth == 0:
                self._pause_request = None
                if not self._killed:
                    resume_request = asyncio.ensure_future(self.start_simulation())
                    self._resume_request = resume_request
                    await asyncio.shield(resume_request)

    async def _pause_after(self, resume_request: Optional[asyncio.Future]) -> None:
        if resume_request is not None:
            # Whoever sent the resume reports its failure
            await asyncio.gather(resume_request, return_exceptions=True)
        await self.pause_simulation()

    async def send_in_pause(self, build: Callable[[SendFn], None]) -> None:
        """Collect commands through `build(send)` and send them as one paused batch."""
        commands: List[Tuple[str, Dict[str, Any]]] = []
        build(lambda command, params: commands.append((command, params)))
        if not commands:
            return
        async with self.paused():
            results = await asyncio.gather(*(self.send(c, p) for c, p in commands), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise errors[0]

    # Events -------------------------------------------------------------------

    def on(self, event_name: str, callback: EventCallback) -> Callable[[], None]:
        self._listeners.setdefault(event_name, []).append(callback)
        return lambda: self.off(event_name, callback)

    def off(self, event_name: str, callback: EventCallback) -> None:
        callbacks = self._listeners.get(event_name)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)

    def on_any(self, callback: EventCallback) -> Callable[[], None]:
        self._any_listeners.append(callback)
        return lambda: self._any_listeners.remove(callback) if callback in self._any_listeners else None

    def once(self, event_name: str | None = None) -> Awaitable[Tuple[str, EventPayload]]:
        """Future resolved with (name, payload) of the next matching event."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        if self._killed:
            future.set_exception(CommunicationError("This session has been killed."))
        else:
            self._onces.setdefault(event_name, []).append(future)
        return future

    def dispatch(self, event_name: str, attributes: Mapping[str, Any] | EventPayload) -> None:
        if isinstance(attributes, EventPayload):
            payload = attributes
        else:
            try:
                payload = create_payload(event_name, dict(attributes))
            except KeyError:
                logger.debug(f"Ignoring unknown event {event_name} {dict(attributes)}")
                return
        if self._communication_log is not None:
            self._communication_log.event(event_name, payload.model_dump(by_alias=True))

        for callback in [*self._any_listeners, *self._listeners.get(event_name, [])]:
            try:
                result = callback(event_name, payload)
            except NotFoundError as e:
                logger.error(f"Handler for {event_name} at {payload.time} failed: {e}")
                continue
            except Exception:
                logger.exception(f"Handler for {event_name} at {payload.time} failed ({payload!r}).")
                continue
            if inspect.isawaitable(result):
                self.spawn(result, f"handler for {event_name}")

        for key in (None, event_name):
            for future in self._onces.pop(key, []):
                if not future.done():
                    future.set_result((event_name, payload))

    # Tasks ----------------------------------------------------------------------

    def spawn(self, awaitable: Awaitable[Any], description: str) -> asyncio.Task:
        """Run in the background; failures are logged, never raised."""

        async def runner() -> None:
            try:
                await awaitable
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Background task failed: {description}.")

        task = asyncio.ensure_future(runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait until no background task is left (including ones spawned meanwhile)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Lifecycle --------------------------------------------------------------------

    @property
    def killed(self) -> bool:
        return self._killed

    async def kill(self) -> None:
        if self._killed:
            return
        self._killed = True
        self._listeners.clear()
        self._any_listeners.clear()
        for futures in self._onces.values():
            for future in futures:
                if not future.done():
                    future.set_exception(CommunicationError("This session has been killed."))
        self._onces.clear()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._client.aclose()
