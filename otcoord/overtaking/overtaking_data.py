from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from otcoord.core.errors import ConfigurationError
from otcoord.core.infrastructure import Infrastructure
from otcoord.core.models import Itinerary, OvertakingArea, Route, Station


@dataclass
class OvertakingData:
    areas: List[OvertakingArea] = field(default_factory=list)
    # outflow station -> areas
    by_station: Dict[Station, Set[OvertakingArea]] = field(default_factory=dict)
    # inflow station -> outflow station -> areas
    by_stations: Dict[Station, Dict[Station, Set[OvertakingArea]]] = field(default_factory=dict)

    def get_by_station(self, station: Station) -> Set[OvertakingArea]:
        return set(self.by_station.get(station, ()))

    def get_by_stations(self, inflow_station: Optional[Station], station: Station) -> Set[OvertakingArea]:
        if inflow_station is None:
            return set()
        return set(self.by_stations.get(inflow_station, {}).get(station, ()))


def get_overtaking_areas(infrastructure: Infrastructure) -> List[OvertakingArea]:
    """One area per final vertex shared by itineraries flagged for overtaking."""
    groups: Dict[str, List[Itinerary]] = {}
    for itinerary in infrastructure.itineraries.values():
        if not itinerary.overtaking:
            continue
        if not itinerary.stations:
            raise ConfigurationError(f"No station to facilitate overtaking was found in {itinerary.itinerary_id}.")
        if not itinerary.routes:
            raise ConfigurationError(f"No routes were found in {itinerary.itinerary_id}.")
        groups.setdefault(itinerary.vertexes[-1], []).append(itinerary)

    def stations_of(route: Route) -> List[Station]:
        return [infrastructure.get_or_throw("station", sid) for sid in route.stations]

    areas: List[OvertakingArea] = []
    for exit_vertex, itineraries in groups.items():
        outflow_station = itineraries[0].stations[-1]
        for itinerary in itineraries:
            if itinerary.stations[-1] is not outflow_station:
                raise ConfigurationError(
                    "All overtaking itineraries in the same overtaking area have to go through the same "
                    f"final station ({itinerary.itinerary_id} ends in {itinerary.stations[-1].station_id}, "
                    f"expected {outflow_station.station_id})."
                )

        entry_routes = {route for itinerary in itineraries for route in itinerary.routes}
        exit_routes = {itinerary.routes[-1] for itinerary in itineraries}
        stations = {station for route in entry_routes for station in stations_of(route)}
        routes = set(entry_routes)
        for route in infrastructure.routes.values():
            if any(station in stations for station in stations_of(route)):
                routes.add(route)
        area_id = " + ".join(itinerary.itinerary_id.split(" --", 1)[0] for itinerary in itineraries)
        max_waiting = min((i.max_waiting for i in itineraries if i.max_waiting is not None), default=1)

        areas.append(
            OvertakingArea(
                area_id=area_id,
                entry_routes=frozenset(entry_routes),
                exit_routes=frozenset(exit_routes),
                routes=frozenset(routes),
                overtaking_area_id=area_id,
                outflow_station=outflow_station,
                waiting_routes=frozenset(r for r in routes if outflow_station.station_id in r.stations),
                max_waiting=max_waiting,
                inflow_stations=frozenset(s for s in stations if s is not outflow_station),
                stations=frozenset(stations),
                itineraries=frozenset(itineraries),
                entry_vertexes=frozenset(i.vertexes[0] for i in itineraries),
                exit_vertex=exit_vertex,
            )
        )
    return areas


def get_overtaking_data(infrastructure: Infrastructure) -> OvertakingData:
    areas = get_overtaking_areas(infrastructure)
    by_station: Dict[Station, Set[OvertakingArea]] = defaultdict(set)
    by_stations: Dict[Station, Dict[Station, Set[OvertakingArea]]] = defaultdict(lambda: defaultdict(set))
    for area in areas:
        by_station[area.outflow_station].add(area)
        for inflow_station in area.inflow_stations:
            by_stations[inflow_station][area.outflow_station].add(area)
    return OvertakingData(areas=areas, by_station=dict(by_station), by_stations={k: dict(v) for k, v in by_stations.items()})
