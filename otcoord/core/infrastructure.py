from __future__ import annotations
import heapq
import itertools
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel

from otcoord.core.errors import ConfigurationError, NotFoundError
from otcoord.core.models import (
    Itinerary,
    Meters,
    Route,
    Seconds,
    Station,
    Timetable,
    TimetableEntry,
    Train,
)

CommonTimetableEntry = Tuple[TimetableEntry, TimetableEntry]


class Infrastructure:
    """Read-only network model shared by every component for the whole process."""

    def __init__(
        self,
        routes: Mapping[str, Route],
        stations: Mapping[str, Station],
        itineraries: Mapping[str, Itinerary],
        trains: Mapping[str, Train],
    ) -> None:
        self.routes = dict(routes)
        self.stations = dict(stations)
        self.itineraries = dict(itineraries)
        self.trains = dict(trains)
        self.timetables = {t.timetable.timetable_id: t.timetable for t in self.trains.values()}
        self._collections: Dict[str, Mapping[str, Any]] = {
            "itinerary": self.itineraries,
            "route": self.routes,
            "station": self.stations,
            "timetable": self.timetables,
            "train": self.trains,
        }

    @property
    def main_itineraries(self) -> set:
        return {t.main_itinerary for t in self.trains.values() if t.main_itinerary is not None}

    def get_or_throw(self, kind: str, key: str) -> Any:
        collection = self._collections.get(kind)
        if collection is None:
            raise ValueError(f"Invalid kind {kind}.")
        value = collection.get(key)
        if value is None:
            raise NotFoundError(kind, key)
        return value

    def get_common_timetable_entries(
        self, from_station: Station, timetable1: Timetable, timetable2: Timetable
    ) -> List[CommonTimetableEntry]:
        """Entries both timetables share, walking forward in lockstep from `from_station`."""
        i1 = _index_of_station(timetable1, from_station)
        i2 = _index_of_station(timetable2, from_station)
        if i1 is None or i2 is None:
            return []
        common: List[CommonTimetableEntry] = []
        for entry1, entry2 in zip(timetable1.entries[i1:], timetable2.entries[i2:]):
            if entry1.station is not entry2.station:
                break
            common.append((entry1, entry2))
        return common

    def get_timetable_reserve(
        self, timetable: Timetable, from_station: Station, to_station: Station, inclusive: bool = False
    ) -> Optional[Seconds]:
        """Sum of (planned - minimal) dwell time between two stations.

        Both end stations are excluded unless `inclusive`. None when the
        timetable doesn't visit one of them.
        """
        i_from = _index_of_station(timetable, from_station)
        i_to = _index_of_station(timetable, to_station)
        if i_from is None or i_to is None:
            return None
        entries = timetable.entries[i_from:i_to + 1] if inclusive else timetable.entries[i_from + 1:i_to]
        return sum(e.planned_dwell_time - e.minimal_dwell_time for e in entries)

    def get_timetable_duration(self, train: Train, from_station: Station, to_station: Station) -> Optional[Seconds]:
        e_from = _entry_of_station(train.timetable, from_station)
        e_to = _entry_of_station(train.timetable, to_station)
        departure = None if e_from is None else _first_not_none(e_from.departure, e_from.arrival)
        arrival = None if e_to is None else _first_not_none(e_to.departure, e_to.arrival)
        if departure is None or arrival is None:
            return None
        return arrival - departure

    def get_fastest(self, *trains: Train) -> Train:
        return max(trains, key=lambda t: t.max_speed)

    def get_itinerary_offset(self, itinerary: Itinerary, route_id: str, offset: Meters) -> Optional[Meters]:
        for index, route in enumerate(itinerary.routes):
            if route.route_id == route_id:
                return offset + sum(r.length for r in itinerary.routes[:index])
        return None

    def get_trains_arrival_at_station(self, train: Train, station_id: str) -> Optional[Seconds]:
        entry = _entry_of_station(train.timetable, self.get_or_throw("station", station_id))
        return None if entry is None else entry.arrival

    def get_trains_departure_from_station(self, train: Train, station_id: str) -> Optional[Seconds]:
        entry = _entry_of_station(train.timetable, self.get_or_throw("station", station_id))
        return None if entry is None else entry.departure

    def compute_distance_map(self, all_routes: Iterable[Route], zero_routes: Iterable[Route]) -> Dict[Route, Meters]:
        """Shortest remaining distance from each route to the end of any of `zero_routes`.

        Dijkstra run backwards over the route graph restricted to `all_routes`.
        A zero route's own length counts, so a train at the start of an exit
        route is `exit.length` away from leaving. Routes that can't reach any
        zero route are absent from the result.
        """
        routes_by_last_vertex: Dict[str, List[Route]] = {}
        for route in all_routes:
            routes_by_last_vertex.setdefault(route.last_vertex, []).append(route)

        distances: Dict[Route, Meters] = {}
        counter = itertools.count()  # tie breaker, routes aren't orderable
        queue: List[Tuple[Meters, int, Route]] = []
        for route in zero_routes:
            if route.length < distances.get(route, float("inf")):
                distances[route] = route.length
                heapq.heappush(queue, (route.length, next(counter), route))

        while queue:
            length, _, route = heapq.heappop(queue)
            if length > distances.get(route, float("inf")):
                continue  # stale
            for prev_route in routes_by_last_vertex.get(route.first_vertex, []):
                candidate = length + prev_route.length
                if candidate < distances.get(prev_route, float("inf")):
                    distances[prev_route] = candidate
                    heapq.heappush(queue, (candidate, next(counter), prev_route))
        return distances


def _index_of_station(timetable: Timetable, station: Station) -> Optional[int]:
    for i, entry in enumerate(timetable.entries):
        if entry.station is station:
            return i
    return None


def _entry_of_station(timetable: Timetable, station: Station) -> Optional[TimetableEntry]:
    i = _index_of_station(timetable, station)
    return None if i is None else timetable.entries[i]


def _first_not_none(*values):
    for v in values:
        if v is not None:
            return v
    return None


# JSON export shape -----------------------------------------------------------

class StationIn(BaseModel):
    id: str
    name: str = ""
    outflow_routes: list[str] | None = None


class RouteIn(BaseModel):
    id: str
    length: float
    vertexes: list[str]
    stations: list[str] = []
    end_signal_to_reverse_signal_distance: float | None = None


class ItineraryIn(BaseModel):
    id: str
    routes: list[str]
    stations: list[str] | None = None
    overtaking: bool = False
    max_waiting: int | None = None


class TimetableEntryIn(BaseModel):
    station: str
    arrival: float | None = None
    departure: float | None = None
    type: str = "stop"
    planned_dwell_time: float = 0
    minimal_dwell_time: float = 0


class TimetableIn(BaseModel):
    id: str | None = None
    entries: list[TimetableEntryIn] = []


class TrainIn(BaseModel):
    id: str
    length: float
    max_speed: float
    category: str = ""
    itineraries: list[str] = []
    routes: list[str] = []
    timetable: TimetableIn = TimetableIn()


class InfrastructureIn(BaseModel):
    stations: list[StationIn] = []
    routes: list[RouteIn] = []
    itineraries: list[ItineraryIn] = []
    trains: list[TrainIn] = []


def _unique(kind: str, ids: Iterable[str]) -> None:
    seen: set[str] = set()
    for i in ids:
        if i in seen:
            raise ConfigurationError(f"Duplicate {kind} id {i}.")
        seen.add(i)


def build_infrastructure(data: Dict[str, Any]) -> Infrastructure:
    doc = InfrastructureIn.model_validate(data)
    _unique("station", (s.id for s in doc.stations))
    _unique("route", (r.id for r in doc.routes))
    _unique("itinerary", (i.id for i in doc.itineraries))
    _unique("train", (t.id for t in doc.trains))

    stations = {s.id: Station(station_id=s.id, name=s.name) for s in doc.stations}

    def station(sid: str) -> Station:
        if sid not in stations:
            raise ConfigurationError(f"Unknown station {sid}.")
        return stations[sid]

    routes: Dict[str, Route] = {}
    for r in doc.routes:
        if not r.vertexes:
            raise ConfigurationError(f"Route {r.id} has no vertexes.")
        for sid in r.stations:
            station(sid)
        routes[r.id] = Route(
            route_id=r.id,
            length=r.length,
            vertexes=tuple(r.vertexes),
            stations=tuple(r.stations),
            end_signal_to_reverse_signal_distance=r.end_signal_to_reverse_signal_distance,
        )

    def route(rid: str) -> Route:
        if rid not in routes:
            raise ConfigurationError(f"Unknown route {rid}.")
        return routes[rid]

    for s in doc.stations:
        if s.outflow_routes is not None:
            outflow = frozenset(route(rid) for rid in s.outflow_routes)
        else:
            outflow = frozenset(r for r in routes.values() if r.stations and r.stations[0] == s.id)
        stations[s.id].outflow_routes = outflow

    itineraries: Dict[str, Itinerary] = {}
    for i in doc.itineraries:
        its_routes = tuple(route(rid) for rid in i.routes)
        if i.stations is not None:
            its_stations = tuple(station(sid) for sid in i.stations)
        else:
            # Stations in travel order as the routes touch them
            ordered: Dict[str, None] = {}
            for r in its_routes:
                for sid in r.stations:
                    ordered.setdefault(sid, None)
            its_stations = tuple(stations[sid] for sid in ordered)
        itineraries[i.id] = Itinerary(
            itinerary_id=i.id,
            routes=its_routes,
            stations=its_stations,
            overtaking=i.overtaking,
            max_waiting=i.max_waiting,
        )

    trains: Dict[str, Train] = {}
    for t in doc.trains:
        its = []
        for iid in t.itineraries:
            if iid not in itineraries:
                raise ConfigurationError(f"Unknown itinerary {iid} of train {t.id}.")
            its.append(itineraries[iid])
        _check_secondary_itineraries(t.id, its)
        assigned = {route(rid) for rid in t.routes}
        for it in its:
            assigned.update(it.routes)
        timetable = Timetable(
            timetable_id=t.timetable.id or t.id,
            entries=[
                TimetableEntry(
                    station=station(e.station),
                    arrival=e.arrival,
                    departure=e.departure,
                    type=e.type,
                    planned_dwell_time=e.planned_dwell_time,
                    minimal_dwell_time=e.minimal_dwell_time,
                )
                for e in t.timetable.entries
            ],
        )
        trains[t.id] = Train(
            train_id=t.id,
            length=t.length,
            max_speed=t.max_speed,
            category=t.category,
            routes=frozenset(assigned),
            itineraries=tuple(its),
            timetable=timetable,
        )

    return Infrastructure(routes=routes, stations=stations, itineraries=itineraries, trains=trains)


def _check_secondary_itineraries(train_id: str, itineraries: List[Itinerary]) -> None:
    if len(itineraries) < 2:
        return
    main_vertexes = set(itineraries[0].vertexes)
    for secondary in itineraries[1:]:
        ends = secondary.vertexes
        if not ends or ends[0] not in main_vertexes or ends[-1] not in main_vertexes:
            raise ConfigurationError(
                f"Itinerary {secondary.itinerary_id} of train {train_id} doesn't start and end "
                f"on its main itinerary {itineraries[0].itinerary_id}."
            )


def load_infrastructure(path: Path | str) -> Infrastructure:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return build_infrastructure(data)
