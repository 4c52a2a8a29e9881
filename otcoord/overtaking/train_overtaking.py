from __future__ import annotations
import logging
from typing import Callable, Dict, List

from otcoord.channel.client import SendFn, SimulatorChannel
from otcoord.channel.events import RouteEvent
from otcoord.core.blocking import Blocking, BlockingQuery
from otcoord.core.infrastructure import Infrastructure
from otcoord.core.models import OvertakingArea, Route, Train
from otcoord.tracker.train_tracker import TrainTracker

logger = logging.getLogger(__name__)


class TrainOvertaking:
    """Turns overtaking plans into route permissions sent to the simulator.

    The ledger is keyed by ids: place is the outflow station id, blocker and
    blocked are train ids. Every change to it is followed by the matching
    batch of route commands, sent while the simulation is paused.
    """

    def __init__(
        self,
        infrastructure: Infrastructure,
        channel: SimulatorChannel,
        tracker: TrainTracker,
        blocking: Blocking | None = None,
    ):
        self._infrastructure = infrastructure
        self._channel = channel
        self._tracker = tracker
        self.blocking = blocking if blocking is not None else Blocking()

    def allow_reserved_routes(self) -> Callable[[], None]:
        """Re-allow every route right after the simulator reports it reserved.

        Works around the simulator occasionally keeping a route disallowed for
        a train that already holds it.
        """

        def on_route_reserved(_name: str, payload: RouteEvent) -> None:
            self._channel.spawn(
                self._channel.set_route_allowed(payload.train_id, payload.route_id),
                f"allowing reserved route {payload.route_id} for {payload.train_id}",
            )

        return self._channel.on("routeReserved", on_route_reserved)

    def _get_block_routes(self, area: OvertakingArea, train: Train) -> List[Route]:
        candidates: Dict[Route, None] = {}
        for route in sorted(area.exit_routes, key=lambda r: r.route_id):
            candidates[route] = None
        for route in sorted(area.outflow_station.outflow_routes, key=lambda r: r.route_id):
            candidates[route] = None
        return [route for route in candidates if route in train.routes]

    async def _send_block_requests(self, area: OvertakingArea, waiting: Train) -> None:
        def build(send: SendFn) -> None:
            for route in self._get_block_routes(area, waiting):
                if self._tracker.is_reserved_by(waiting, route):
                    logger.warning(
                        f"Can't block route {route.route_id} for train {waiting.train_id} "
                        "because it's already reserved by this train."
                    )
                    continue
                send("setRouteDisallowed", {"trainID": waiting.train_id, "routeID": route.route_id})

        await self._channel.send_in_pause(build)
        self.blocking.dump_state()

    async def _send_release_requests(self, area: OvertakingArea, waiting: Train) -> None:
        def build(send: SendFn) -> None:
            for route in self._get_block_routes(area, waiting):
                send("setRouteAllowed", {"trainID": waiting.train_id, "routeID": route.route_id})

        await self._channel.send_in_pause(build)
        self.blocking.dump_state()

    async def plan_overtaking(self, area: OvertakingArea, overtaking: Train, waiting: Train) -> None:
        station_id = area.outflow_station.station_id

        if self.blocking.is_blocked(station_id, overtaking.train_id, waiting.train_id):
            return

        if self.blocking.is_blocked(station_id, waiting.train_id, overtaking.train_id):
            logger.warning(
                f"Deadlock overtaking between {waiting.train_id} and {overtaking.train_id} requested at "
                f"{station_id}. Overtaking {waiting.train_id} by {overtaking.train_id}."
            )
            await self.cancel_overtaking(area, waiting, overtaking)

        # A train that already waits here doesn't take any more room.
        if not self.blocking.is_blocked_query(BlockingQuery(place=station_id, blocked=waiting.train_id)):
            waiting_count = self.blocking.count_blocked_at_place(station_id)
            if waiting_count >= area.max_waiting:
                logger.info(
                    f"Can't plan overtaking of {waiting.train_id} by {overtaking.train_id} as too many trains "
                    f"would be waiting at {station_id} ({waiting_count + 1} when the max is {area.max_waiting})."
                )
                return

            shortest_track = min(
                (
                    route.end_signal_to_reverse_signal_distance
                    if route.end_signal_to_reverse_signal_distance is not None
                    else float("inf")
                    for route in area.waiting_routes
                    if route in waiting.routes
                ),
                default=float("inf"),
            )
            if shortest_track < waiting.length:
                # It would stick out and could block the overtaking train.
                logger.info(
                    f"Can't plan overtaking of {waiting.train_id} by {overtaking.train_id} as the train is too "
                    f"long to wait at {station_id} (the train has {waiting.length}m when the shortest track "
                    f"has {shortest_track}m)."
                )
                return

        self.blocking.block(station_id, overtaking.train_id, waiting.train_id)
        logger.info(f"Planned overtaking of {waiting.train_id} by {overtaking.train_id} at {station_id}.")
        await self._send_block_requests(area, waiting)

    async def cancel_overtaking(self, area: OvertakingArea, overtaking: Train, waiting: Train) -> None:
        station_id = area.outflow_station.station_id

        if not self.blocking.is_blocked(station_id, overtaking.train_id, waiting.train_id):
            return

        self.blocking.unblock(station_id, overtaking.train_id, waiting.train_id)
        logger.info(f"Cancelled overtaking of {waiting.train_id} by {overtaking.train_id} at {station_id}.")

        if self.blocking.is_blocked_query(BlockingQuery(place=station_id, blocked=waiting.train_id)):
            # Someone else still has it waiting here.
            return

        await self._send_release_requests(area, waiting)

    async def release_trains(self, area: OvertakingArea, overtaking: Train) -> None:
        station_id = area.outflow_station.station_id
        released = self.blocking.unblock_all(BlockingQuery(place=station_id, blocker=overtaking.train_id))

        for entry in released:
            if self.blocking.is_blocked_query(BlockingQuery(place=station_id, blocked=entry.blocked)):
                continue
            waiting = self._infrastructure.get_or_throw("train", entry.blocked)
            logger.info(f"Releasing {waiting.train_id} at {station_id} after {overtaking.train_id} passed.")
            await self._send_release_requests(area, waiting)

    def dump_state(self) -> None:
        self.blocking.dump_state()
