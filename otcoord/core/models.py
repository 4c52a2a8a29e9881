from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Tuple

Seconds = float
Meters = float

# Network entities are built once per process and shared by reference, so they
# compare and hash by identity (eq=False).


@dataclass(eq=False)
class Route:
    route_id: str
    length: Meters
    # Ordered vertex ids; route A leads into route B when A ends where B starts.
    vertexes: Tuple[str, ...]
    # Station ids the route touches, in travel order
    stations: Tuple[str, ...] = ()
    # Usable track length for a waiting train, None when unknown
    end_signal_to_reverse_signal_distance: Optional[Meters] = None

    @property
    def first_vertex(self) -> str:
        return self.vertexes[0]

    @property
    def last_vertex(self) -> str:
        return self.vertexes[-1]

    def __repr__(self) -> str:
        return f"Route({self.route_id!r})"


@dataclass(eq=False)
class Station:
    station_id: str
    name: str = ""
    # Routes a train takes to leave this station
    outflow_routes: FrozenSet[Route] = frozenset()

    def __repr__(self) -> str:
        return f"Station({self.station_id!r})"


@dataclass(eq=False)
class Itinerary:
    itinerary_id: str
    routes: Tuple[Route, ...]
    stations: Tuple[Station, ...] = ()
    overtaking: bool = False
    max_waiting: Optional[int] = None

    @property
    def vertexes(self) -> Tuple[str, ...]:
        if not self.routes:
            return ()
        return tuple(r.first_vertex for r in self.routes) + (self.routes[-1].last_vertex,)

    @property
    def length(self) -> Meters:
        return sum(r.length for r in self.routes)

    def __repr__(self) -> str:
        return f"Itinerary({self.itinerary_id!r})"


@dataclass(eq=False)
class TimetableEntry:
    station: Station
    arrival: Optional[Seconds] = None
    departure: Optional[Seconds] = None
    type: str = "stop"  # "stop" | "pass"
    planned_dwell_time: Seconds = 0
    minimal_dwell_time: Seconds = 0


@dataclass(eq=False)
class Timetable:
    timetable_id: str
    entries: List[TimetableEntry] = field(default_factory=list)


@dataclass(eq=False)
class Train:
    train_id: str
    length: Meters
    max_speed: float  # km/h
    category: str = ""
    routes: FrozenSet[Route] = frozenset()
    itineraries: Tuple[Itinerary, ...] = ()
    timetable: Timetable = field(default_factory=lambda: Timetable(timetable_id=""))

    @property
    def main_itinerary(self) -> Optional[Itinerary]:
        return self.itineraries[0] if self.itineraries else None

    def __repr__(self) -> str:
        return f"Train({self.train_id!r})"


@dataclass(eq=False)
class Area:
    area_id: str
    entry_routes: FrozenSet[Route]
    exit_routes: FrozenSet[Route]
    routes: FrozenSet[Route]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.area_id!r})"


@dataclass(eq=False, repr=False)
class OvertakingArea(Area):
    overtaking_area_id: str = ""
    outflow_station: Optional[Station] = None
    waiting_routes: FrozenSet[Route] = frozenset()
    max_waiting: int = 1
    inflow_stations: FrozenSet[Station] = frozenset()
    stations: FrozenSet[Station] = frozenset()
    itineraries: FrozenSet[Itinerary] = frozenset()
    entry_vertexes: FrozenSet[str] = frozenset()
    exit_vertex: str = ""
