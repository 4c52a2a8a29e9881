from __future__ import annotations
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set

from otcoord.channel.client import SimulatorChannel
from otcoord.channel.events import RouteEvent, StationEvent, TrainEvent, TrainPositionReport
from otcoord.core.errors import Bug, log_bug
from otcoord.core.infrastructure import Infrastructure
from otcoord.core.models import Area, Meters, Route, Seconds, Station, Train

logger = logging.getLogger(__name__)

TRAIN_ENTERED_AREA = "train-entered-area"
TRAIN_LEFT_AREA = "train-left-area"
TRAIN_RESERVED_ROUTE = "train-reserved-route"
TRAIN_RELEASED_ROUTE = "train-released-route"

AREA_EVENTS = (TRAIN_ENTERED_AREA, TRAIN_LEFT_AREA)
ROUTE_EVENTS = (TRAIN_RESERVED_ROUTE, TRAIN_RELEASED_ROUTE)


@dataclass(frozen=True)
class TrackerEvent:
    train: Train
    route: Route
    time: Seconds


@dataclass(frozen=True)
class TrainPositionInArea:
    train: Train
    # Remaining distance to the end of the area
    position: Meters


TrackerHandler = Callable[[TrackerEvent], None]


class TrainTracker:
    """Derived per-train state and area entry/exit events built from raw simulator events.

    All state is keyed by train and thrown away when the simulator deletes the
    train. Areas are fixed at construction; their reverse indexes and
    distance-to-exit maps are computed once.
    """

    def __init__(self, channel: SimulatorChannel, infrastructure: Infrastructure, areas: Iterable[Area] = ()):
        self._channel = channel
        self._infrastructure = infrastructure
        self._unsubscribes: List[Callable[[], None]] = []

        self._areas: Dict[Area, None] = {}
        self._areas_by_entry_route: Dict[Route, List[Area]] = defaultdict(list)
        self._areas_by_route: Dict[Route, List[Area]] = defaultdict(list)
        self._distances_to_end: Dict[Area, Dict[Route, Meters]] = {}

        for area in areas:
            self._areas[area] = None
            self._distances_to_end[area] = infrastructure.compute_distance_map(area.routes, area.exit_routes)
            for route in area.entry_routes:
                self._areas_by_entry_route[route].append(area)
            for route in area.routes:
                self._areas_by_route[route].append(area)

        self._reports: Dict[Train, TrainPositionReport] = {}
        self._first_stop_reports: Dict[Train, TrainPositionReport] = {}
        self._last_routes: Dict[Train, Route] = {}
        self._last_stations: Dict[Train, Station] = {}
        self._occupied_routes: Dict[Train, Set[Route]] = defaultdict(set)
        self._reserved_routes: Dict[Train, Set[Route]] = defaultdict(set)
        self._entered_areas: Dict[Train, List[Area]] = defaultdict(list)
        self._left_areas: Dict[Train, List[Area]] = defaultdict(list)
        # dict as an insertion ordered set
        self._trains_in_area: Dict[Area, Dict[Train, None]] = {area: {} for area in self._areas}

        self._area_listeners: Dict[str, Dict[Area, List[TrackerHandler]]] = {
            name: defaultdict(list) for name in AREA_EVENTS
        }
        self._listeners: Dict[str, List[TrackerHandler]] = {name: [] for name in ROUTE_EVENTS}

    # Queries ------------------------------------------------------------------

    @property
    def areas(self) -> List[Area]:
        return list(self._areas)

    @property
    def size(self) -> int:
        return len(self._reports)

    @property
    def train_ids(self) -> List[str]:
        return [train.train_id for train in self._reports]

    def _train(self, train: Train | str) -> Train:
        return self._infrastructure.get_or_throw("train", train) if isinstance(train, str) else train

    def _route(self, route: Route | str) -> Route:
        return self._infrastructure.get_or_throw("route", route) if isinstance(route, str) else route

    def get_report(self, train: Train | str) -> Optional[TrainPositionReport]:
        return self._reports.get(self._train(train))

    def get_first_stop_report(self, train: Train | str) -> Optional[TrainPositionReport]:
        return self._first_stop_reports.get(self._train(train))

    def get_trains_last_station(self, train: Train | str) -> Optional[Station]:
        return self._last_stations.get(self._train(train))

    def get_trains_entered_areas(self, train: Train | str) -> List[Area]:
        return list(self._entered_areas.get(self._train(train), ()))

    def get_trains_left_areas(self, train: Train | str) -> List[Area]:
        return list(self._left_areas.get(self._train(train), ()))

    def get_trains_routes(self, train: Train | str) -> Set[Route]:
        return set(self._occupied_routes.get(self._train(train), ()))

    def get_delay(self, train: Train | str) -> Seconds:
        report = self.get_report(train)
        return report.delay if report is not None else 0

    def get_current_stop_duration(self, train: Train | str) -> Seconds:
        report = self.get_report(train)
        first_stop_report = self.get_first_stop_report(train)
        if report is None or first_stop_report is None:
            return 0
        return report.time - first_stop_report.time

    def is_reserved_by(self, train: Train | str, route: Route | str) -> bool:
        return self._route(route) in self._reserved_routes.get(self._train(train), ())

    def get_trains_in_area_in_order(self, area: Area) -> List[TrainPositionInArea]:
        """Trains in the area, the one closest to its end first.

        Recomputed on every call from the latest reports.
        """
        if area not in self._areas:
            raise ValueError(f"Unknown area {area.area_id}.")

        distances = self._distances_to_end[area]
        positions: List[TrainPositionInArea] = []
        for train in self._trains_in_area[area]:
            route = self._last_routes.get(train)
            if route is None:
                raise Bug(f"Couldn't find last route of {train.train_id}.")

            # Reports lag behind route events. Without a report on this route
            # assume the train is at its very beginning.
            report = self._reports.get(train)
            offset = report.route_offset if report is not None and report.route_id == route.route_id else 0

            # Can't reach any exit route: it's about to leave.
            distance = distances.get(route)
            position = 0 if distance is None else distance - offset
            positions.append(TrainPositionInArea(train=train, position=position))

        positions.sort(key=lambda p: p.position)
        return positions

    def get_trains_in_area(self, area: Area) -> List[Train]:
        return list(self._trains_in_area.get(area, ()))

    def get_train_position_on_main_itinerary(self, train_id: str) -> Optional[Meters]:
        """Distance from the start of the main itinerary, None when the train isn't on it."""
        train = self._infrastructure.get_or_throw("train", train_id)
        report = self._reports.get(train)
        if report is None:
            raise ValueError(f"There's no report available for {train_id}.")
        if train.main_itinerary is None:
            return None
        return self._infrastructure.get_itinerary_offset(train.main_itinerary, report.route_id, report.route_offset)

    def get_distance_between_trains(self, first_train_id: str, second_train_id: str) -> Optional[Meters]:
        """Meters from the first to the second train, negative when the second is ahead.

        None if they don't share a main itinerary or one of them is off it.
        """
        first = self._infrastructure.get_or_throw("train", first_train_id)
        second = self._infrastructure.get_or_throw("train", second_train_id)
        if first.main_itinerary is not second.main_itinerary:
            return None

        first_position = self.get_train_position_on_main_itinerary(first_train_id)
        if first_position is None:
            return None
        second_position = self.get_train_position_on_main_itinerary(second_train_id)
        if second_position is None:
            return None
        return second_position - first_position

    # Subscriptions ------------------------------------------------------------

    def start_tracking(self, frequency: float) -> "TrainTracker":
        def on_train_created(_name: str, payload: TrainEvent) -> None:
            self._handle_train_created(frequency, payload)

        self._unsubscribes.extend(
            [
                self._channel.on("trainCreated", on_train_created),
                self._channel.on("trainDeleted", lambda _n, p: self._handle_train_deleted(p)),
                self._channel.on("trainPositionReport", lambda _n, p: self._handle_train_position_report(p)),
                self._channel.on("trainArrival", lambda _n, p: self._handle_train_pass(p)),
                self._channel.on("trainDeparture", lambda _n, p: self._handle_train_pass(p)),
                self._channel.on("trainPass", lambda _n, p: self._handle_train_pass(p)),
                self._channel.on("routeEntry", lambda _n, p: self._handle_route_entry(p)),
                self._channel.on("routeExit", lambda _n, p: self._handle_route_exit(p)),
                self._channel.on("routeReserved", lambda _n, p: self._handle_route_reserved(p)),
                self._channel.on("routeReleased", lambda _n, p: self._handle_route_released(p)),
            ]
        )
        return self

    def stop_tracking(self) -> "TrainTracker":
        while self._unsubscribes:
            self._unsubscribes.pop()()
        return self

    def on_area(self, event_name: str, area: Area, handler: TrackerHandler) -> Callable[[], None]:
        if event_name not in self._area_listeners:
            raise ValueError(f"Unknown area event {event_name}.")
        if area not in self._areas:
            raise ValueError(f"Unknown area {area.area_id}.")
        handlers = self._area_listeners[event_name][area]
        handlers.append(handler)
        return lambda: handlers.remove(handler) if handler in handlers else None

    def on(self, event_name: str, handler: TrackerHandler) -> Callable[[], None]:
        if event_name not in self._listeners:
            raise ValueError(f"Unknown event {event_name}.")
        handlers = self._listeners[event_name]
        handlers.append(handler)
        return lambda: handlers.remove(handler) if handler in handlers else None

    def _emit(self, handlers: Iterable[TrackerHandler], event_name: str, event: TrackerEvent) -> None:
        for handler in list(handlers):
            try:
                handler(event)
            except Bug as e:
                log_bug(logger, e)
            except Exception:
                logger.exception(
                    f"Listener of {event_name} failed for {event.train.train_id} on {event.route.route_id}."
                )

    # Event handlers -----------------------------------------------------------

    def _handle_train_created(self, frequency: float, payload: TrainEvent) -> None:
        train_id = payload.train_id
        self._channel.spawn(
            self._channel.set_send_position_reports(train_id, flag=True, time=frequency),
            f"requesting position reports for {train_id}",
        )

    def _handle_train_deleted(self, payload: TrainEvent) -> None:
        train = self._infrastructure.get_or_throw("train", payload.train_id)
        for state in (
            self._reports,
            self._first_stop_reports,
            self._last_routes,
            self._last_stations,
            self._occupied_routes,
            self._reserved_routes,
            self._entered_areas,
            self._left_areas,
        ):
            state.pop(train, None)
        for trains in self._trains_in_area.values():
            trains.pop(train, None)

    def _handle_train_position_report(self, report: TrainPositionReport) -> None:
        train = self._infrastructure.get_or_throw("train", report.train_id)
        self._reports[train] = report
        if report.speed == 0 and report.acceleration == 0:
            self._first_stop_reports.setdefault(train, report)
        else:
            self._first_stop_reports.pop(train, None)

    def _handle_train_pass(self, payload: StationEvent) -> None:
        station = self._infrastructure.get_or_throw("station", payload.station_id)
        train = self._infrastructure.get_or_throw("train", payload.train_id)
        self._last_stations[train] = station

    def _handle_route_entry(self, payload: RouteEvent) -> None:
        route = self._infrastructure.get_or_throw("route", payload.route_id)
        train = self._infrastructure.get_or_throw("train", payload.train_id)

        self._last_routes[train] = route
        self._occupied_routes[train].add(route)

        # Listeners only see the state after the whole update.
        entered: List[Area] = []
        for area in self._areas_by_entry_route.get(route, ()):
            if train not in self._trains_in_area[area]:
                self._trains_in_area[area][train] = None
                self._entered_areas[train].append(area)
                entered.append(area)

        event = TrackerEvent(train=train, route=route, time=payload.time)
        for area in entered:
            self._emit(self._area_listeners[TRAIN_ENTERED_AREA].get(area, ()), TRAIN_ENTERED_AREA, event)

    def _handle_route_exit(self, payload: RouteEvent) -> None:
        route = self._infrastructure.get_or_throw("route", payload.route_id)
        train = self._infrastructure.get_or_throw("train", payload.train_id)

        occupied = self._occupied_routes.get(train)
        if occupied is None:
            return
        occupied.discard(route)

        left: List[Area] = []
        for area in self._areas_by_route.get(route, ()):
            if not occupied.isdisjoint(area.routes):
                continue
            if train in self._trains_in_area[area]:
                del self._trains_in_area[area][train]
                self._left_areas[train].append(area)
                left.append(area)

        event = TrackerEvent(train=train, route=route, time=payload.time)
        for area in left:
            self._emit(self._area_listeners[TRAIN_LEFT_AREA].get(area, ()), TRAIN_LEFT_AREA, event)

    def _handle_route_reserved(self, payload: RouteEvent) -> None:
        route = self._infrastructure.get_or_throw("route", payload.route_id)
        train = self._infrastructure.get_or_throw("train", payload.train_id)
        self._reserved_routes[train].add(route)
        self._emit(self._listeners[TRAIN_RESERVED_ROUTE], TRAIN_RESERVED_ROUTE, TrackerEvent(train, route, payload.time))

    def _handle_route_released(self, payload: RouteEvent) -> None:
        route = self._infrastructure.get_or_throw("route", payload.route_id)
        train = self._infrastructure.get_or_throw("train", payload.train_id)
        reserved = self._reserved_routes.get(train)
        if reserved is None:
            return
        reserved.discard(route)
        self._emit(self._listeners[TRAIN_RELEASED_ROUTE], TRAIN_RELEASED_ROUTE, TrackerEvent(train, route, payload.time))
