from typing import Any, Dict

from otcoord.core.errors import Bug, ConfigurationError, log_bug
from otcoord.core.models import OvertakingArea, Train
from otcoord.overtaking.api import DecisionModuleAPI, ModuleFactory, NewTrainEnteredParams, reject_superfluous
from otcoord.overtaking.modules.timetable_guess import common_stations_of, find_next_station
from otcoord.overtaking.util import get_all_overtaking_candidates


class TimetableCategoryGuess:
    """Timetable guess with per-category bonuses and a penalty for trains stopping at the outflow station.

    Parameters (all optional):
      - perCategoryThresholdBonus: seconds added to the estimate of a train by category,
      - stopPenalty: seconds added when the train has a stop at the outflow station,
      - stopTime: count the time a train has been standing as delay,
      - threshold: how much sooner the train behind has to arrive to overtake.
    """

    name = "timetable-category-guess"

    def __init__(
        self,
        per_category_threshold_bonus: Dict[str, float] | None = None,
        stop_penalty: float = 0,
        stop_time: bool = False,
        threshold: float = 60,
    ):
        self.per_category_threshold_bonus = dict(per_category_threshold_bonus or {})
        self.stop_penalty = stop_penalty
        self.stop_time = stop_time
        self.threshold = threshold

    def _stop_penalty(self, train: Train, area: OvertakingArea) -> float:
        entry = next((e for e in train.timetable.entries if e.station is area.outflow_station), None)
        return self.stop_penalty if entry is not None and entry.type == "stop" else 0

    def _adjusted_arrival(self, api: DecisionModuleAPI, train: Train, area: OvertakingArea, next_station) -> float:
        arrival = api.get_trains_delayed_arrival_at_station(train, next_station, self.stop_time)
        bonus = self.per_category_threshold_bonus.get(train.category, 0)
        return arrival + self._stop_penalty(train, area) + bonus

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

            arrival1 = self._adjusted_arrival(api, train1, area, next_station)
            arrival2 = self._adjusted_arrival(api, train2, area, next_station)
            sooner_by = arrival1 - arrival2
            api.log.debug(
                f"{train1.train_id} at {arrival1}, {train2.train_id} at {arrival2}, "
                f"{train2.train_id} sooner by {sooner_by} (needs {self.threshold})"
            )
            if arrival1 == float("inf") or arrival2 == float("inf"):
                log_bug(api.log, Bug("ETA of some train is not a finite number."))

            if sooner_by >= self.threshold:
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


def create(params: Dict[str, Any]) -> TimetableCategoryGuess:
    params = dict(params)
    bonus = params.pop("perCategoryThresholdBonus", {})
    if not isinstance(bonus, dict):
        raise ConfigurationError("perCategoryThresholdBonus has to be an object mapping categories to seconds.")
    module = TimetableCategoryGuess(
        per_category_threshold_bonus={str(k): float(v) for k, v in bonus.items()},
        stop_penalty=float(params.pop("stopPenalty", 0)),
        stop_time=bool(params.pop("stopTime", False)),
        threshold=float(params.pop("threshold", 60)),
    )
    reject_superfluous(params)
    return module


decision_module_factory = ModuleFactory(name=TimetableCategoryGuess.name, build=create)
