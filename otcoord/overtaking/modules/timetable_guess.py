from typing import Any, Dict, List, Optional

from otcoord.core.errors import Bug, log_bug
from otcoord.core.models import OvertakingArea, Station, Train
from otcoord.overtaking.api import DecisionModuleAPI, ModuleFactory, NewTrainEnteredParams, reject_superfluous
from otcoord.overtaking.util import get_all_overtaking_candidates, get_consecutive_pairs


def find_next_station(api: DecisionModuleAPI, common_stations: List[Station]) -> Station:
    """First common station that is the outflow of another overtaking area, else the last common one."""
    for inflow_station, station in get_consecutive_pairs(common_stations):
        if api.get_overtaking_areas_by_stations(inflow_station, station):
            return station
    return common_stations[-1]


def common_stations_of(api: DecisionModuleAPI, area: OvertakingArea, train1: Train, train2: Train) -> Optional[List[Station]]:
    entries = api.get_common_timetable_entries(area.outflow_station, train1.timetable, train2.timetable)
    if len(entries) <= 1:
        return None
    return [entry1.station for entry1, _ in entries]


class TimetableGuess:
    """Overtake when the train behind would reach the next relevant station sooner by more than `threshold`."""

    name = "timetable-guess"

    def __init__(self, threshold: float = 60):
        self.threshold = threshold

    def new_train_entered_overtaking_area(self, api: DecisionModuleAPI, params: NewTrainEnteredParams) -> None:
        area = params.overtaking_area
        trains = api.get_trains_in_area(area)
        if len(trains) <= 1:
            return

        fmt = api.format_simulation_time
        station_id = area.outflow_station.station_id
        for ahead, behind in get_all_overtaking_candidates(trains):
            train1, train2 = ahead.train, behind.train
            common_stations = common_stations_of(api, area, train1, train2)
            if common_stations is None:
                continue
            next_station = find_next_station(api, common_stations)

            arrival1 = api.get_trains_delayed_arrival_at_station(train1, next_station)
            arrival2 = api.get_trains_delayed_arrival_at_station(train2, next_station)
            if arrival1 == float("inf") or arrival2 == float("inf"):
                log_bug(api.log, Bug("ETA of some train is not a finite number."))

            if arrival1 - arrival2 > self.threshold:
                api.log.info(
                    f"Overtake {train1.train_id} by {train2.train_id} at {station_id} "
                    f"({fmt(arrival1)} vs {fmt(arrival2)} at {next_station.station_id})."
                )
                api.plan_overtaking(train2, train1)
            else:
                api.log.info(
                    f"Don't overtake {train1.train_id} by {train2.train_id} at {station_id}, "
                    f"{fmt(arrival1)} vs {fmt(arrival2)} at {next_station.station_id}."
                )
                api.cancel_overtaking(train2, train1)


def create(params: Dict[str, Any]) -> TimetableGuess:
    params = dict(params)
    threshold = float(params.pop("threshold", 60))
    reject_superfluous(params)
    return TimetableGuess(threshold=threshold)


decision_module_factory = ModuleFactory(name=TimetableGuess.name, build=create)
