from __future__ import annotations
import asyncio
import inspect
import logging
from typing import Callable, Dict, List, Optional

from otcoord.channel.client import SendFn, SimulatorChannel
from otcoord.channel.events import TrainEvent
from otcoord.core.infrastructure import Infrastructure
from otcoord.core.models import OvertakingArea, Train
from otcoord.logs import format_simulation_time
from otcoord.overtaking.api import DecisionModule, DecisionModuleAPI, NewTrainEnteredParams
from otcoord.overtaking.overtaking_data import OvertakingData, get_overtaking_data
from otcoord.overtaking.train_overtaking import TrainOvertaking
from otcoord.tracker.train_tracker import TRAIN_ENTERED_AREA, TRAIN_LEFT_AREA, TrackerEvent, TrainTracker

logger = logging.getLogger(__name__)


class OvertakingCoordinator:
    """Runs a decision module whenever a train enters an overtaking area.

    `setup` builds a fresh tracker and overtaking state for one simulation run
    and subscribes everything to the channel; `cleanup` removes every
    subscription again. Decisions and releases for one area never overlap and
    each is carried out while the simulation is paused.
    """

    def __init__(
        self,
        infrastructure: Infrastructure,
        channel: SimulatorChannel,
        module: DecisionModule,
        position_report_frequency: float = 1,
        allow_reserved_routes: bool = True,
        overtaking_data: Optional[OvertakingData] = None,
    ):
        self.infrastructure = infrastructure
        self.channel = channel
        self.module = module
        self.position_report_frequency = position_report_frequency
        self.allow_reserved_routes = allow_reserved_routes
        self.overtaking_data = overtaking_data if overtaking_data is not None else get_overtaking_data(infrastructure)

        self.tracker: Optional[TrainTracker] = None
        self.train_overtaking: Optional[TrainOvertaking] = None
        self._locks: Dict[OvertakingArea, asyncio.Lock] = {}
        self._cleanup_callbacks: List[Callable[[], None]] = []
        self._module_log = logging.getLogger(f"otcoord.decision.{module.name}")

    @property
    def areas(self) -> List[OvertakingArea]:
        return self.overtaking_data.areas

    async def setup(self) -> None:
        tracker = TrainTracker(self.channel, self.infrastructure, self.areas).start_tracking(
            self.position_report_frequency
        )
        self._cleanup_callbacks.append(tracker.stop_tracking)
        train_overtaking = TrainOvertaking(self.infrastructure, self.channel, tracker)
        if self.allow_reserved_routes:
            self._cleanup_callbacks.append(train_overtaking.allow_reserved_routes())

        self.tracker = tracker
        self.train_overtaking = train_overtaking
        self._locks = {area: asyncio.Lock() for area in self.areas}

        for area in self.areas:
            self._cleanup_callbacks.append(tracker.on_area(TRAIN_ENTERED_AREA, area, self._entered_handler(area)))
            self._cleanup_callbacks.append(tracker.on_area(TRAIN_LEFT_AREA, area, self._left_handler(area)))
        self._cleanup_callbacks.append(self.channel.on("trainCreated", self._handle_train_created))
        self._cleanup_callbacks.append(self.channel.on("trainDeleted", self._handle_train_deleted))
        logger.info(f"Overtaking with {self.module.name} in {len(self.areas)} areas.")

    async def cleanup(self) -> None:
        while self._cleanup_callbacks:
            self._cleanup_callbacks.pop()()

    # Area events --------------------------------------------------------------

    def _entered_handler(self, area: OvertakingArea) -> Callable[[TrackerEvent], None]:
        def handler(event: TrackerEvent) -> None:
            self.channel.spawn(
                self.decide(area, event),
                f"overtaking decision for {event.train.train_id} in {area.overtaking_area_id}",
            )

        return handler

    def _left_handler(self, area: OvertakingArea) -> Callable[[TrackerEvent], None]:
        def handler(event: TrackerEvent) -> None:
            self.channel.spawn(
                self.release(area, event.train),
                f"releasing trains blocked by {event.train.train_id} in {area.overtaking_area_id}",
            )

        return handler

    async def decide(self, area: OvertakingArea, event: TrackerEvent) -> None:
        if self.tracker is None or self.train_overtaking is None:
            raise RuntimeError("setup() wasn't called")
        async with self._locks[area]:
            async with self.channel.paused():
                api = DecisionModuleAPI(
                    self.infrastructure,
                    self.overtaking_data,
                    self.tracker,
                    self.train_overtaking,
                    area,
                    self._module_log,
                )
                params = NewTrainEnteredParams(
                    entry_route=event.route, new_train=event.train, overtaking_area=area, time=event.time
                )
                try:
                    result = self.module.new_train_entered_overtaking_area(api, params)
                    if inspect.isawaitable(result):
                        result = await result
                    for decision in result or ():
                        api.plan_overtaking(decision.overtaking, decision.waiting)
                    await api.commit()
                except Exception:
                    logger.exception(
                        f"Overtaking decision module {self.module.name} failed for train {event.train.train_id} "
                        f"which just entered {area.overtaking_area_id} through {event.route.route_id} "
                        f"at {format_simulation_time(event.time)}."
                    )

    async def release(self, area: OvertakingArea, train: Train) -> None:
        if self.train_overtaking is None:
            raise RuntimeError("setup() wasn't called")
        async with self._locks[area]:
            async with self.channel.paused():
                logger.info(f"Train {train.train_id} left area {area.overtaking_area_id}, release blocked trains.")
                await self._release_logged(area, train)

    async def _release_logged(self, area: OvertakingArea, train: Train) -> None:
        try:
            await self.train_overtaking.release_trains(area, train)
        except Exception:
            logger.exception(
                f"Failed to release trains blocked by {train.train_id} after overtaking in {area.overtaking_area_id}."
            )

    # Train lifecycle ------------------------------------------------------------

    def _handle_train_created(self, _name: str, payload: TrainEvent) -> None:
        train = self.infrastructure.get_or_throw("train", payload.train_id)
        logger.info(f"Train {train.train_id} was created, enable its routes.")

        def build(send: SendFn) -> None:
            for route in sorted(train.routes, key=lambda r: r.route_id):
                send("setRouteAllowed", {"trainID": train.train_id, "routeID": route.route_id})

        self.channel.spawn(self.channel.send_in_pause(build), f"allowing routes for {train.train_id}")

    def _handle_train_deleted(self, _name: str, payload: TrainEvent) -> None:
        train = self.infrastructure.get_or_throw("train", payload.train_id)
        logger.info(f"Train {train.train_id} was deleted, release blocked trains.")
        self.channel.spawn(self._release_everywhere(train), f"releasing trains blocked by deleted {train.train_id}")

    async def _release_everywhere(self, train: Train) -> None:
        async def release_in(area: OvertakingArea) -> None:
            async with self._locks[area]:
                await self._release_logged(area, train)

        async with self.channel.paused():
            await asyncio.gather(*(release_in(area) for area in self.areas))
