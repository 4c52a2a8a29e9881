from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Union

from otcoord.core.errors import ConfigurationError
from otcoord.core.infrastructure import CommonTimetableEntry, Infrastructure
from otcoord.core.models import OvertakingArea, Route, Seconds, Station, Timetable, Train
from otcoord.logs import format_simulation_time
from otcoord.overtaking.overtaking_data import OvertakingData
from otcoord.overtaking.train_overtaking import TrainOvertaking
from otcoord.tracker.train_tracker import TrainPositionInArea, TrainTracker


@dataclass(frozen=True)
class OvertakingDecision:
    overtaking: Train
    waiting: Train


@dataclass(frozen=True)
class NewTrainEnteredParams:
    entry_route: Route
    new_train: Train
    overtaking_area: OvertakingArea
    time: Seconds


DecisionResult = Optional[List[OvertakingDecision]]


class DecisionModule(Protocol):
    name: str

    def new_train_entered_overtaking_area(
        self, api: "DecisionModuleAPI", params: NewTrainEnteredParams
    ) -> Union[DecisionResult, Awaitable[DecisionResult]]:
        ...


class DecisionModuleFactory(Protocol):
    name: str

    def create(self, params: Dict[str, Any]) -> DecisionModule:
        ...


@dataclass(frozen=True)
class ModuleFactory:
    name: str
    build: Callable[[Dict[str, Any]], DecisionModule]

    def create(self, params: Dict[str, Any]) -> DecisionModule:
        return self.build(dict(params))


def reject_superfluous(params: Dict[str, Any]) -> None:
    if params:
        raise ConfigurationError(f"Superfluous parameters: {', '.join(params)}.")


class DecisionModuleAPI:
    """What a decision module may see and do during one invocation.

    Reads go straight to the tracker and the infrastructure. Plans and
    cancellations are only queued; `commit` applies them, cancellations first.
    A new instance is made for every invocation.
    """

    def __init__(
        self,
        infrastructure: Infrastructure,
        overtaking_data: OvertakingData,
        tracker: TrainTracker,
        train_overtaking: TrainOvertaking,
        overtaking_area: OvertakingArea,
        log: logging.Logger,
    ):
        self._infrastructure = infrastructure
        self._overtaking_data = overtaking_data
        self._tracker = tracker
        self._train_overtaking = train_overtaking
        self.overtaking_area = overtaking_area
        self.log = log
        self._planned: List[OvertakingDecision] = []
        self._cancelled: List[OvertakingDecision] = []

    @staticmethod
    def format_simulation_time(seconds: Seconds, ms: bool = False) -> str:
        return format_simulation_time(seconds, ms)

    def plan_overtaking(self, overtaking: Train, waiting: Train) -> None:
        self._planned.append(OvertakingDecision(overtaking, waiting))

    def cancel_overtaking(self, overtaking: Train, waiting: Train) -> None:
        self._cancelled.append(OvertakingDecision(overtaking, waiting))

    @property
    def pending(self) -> tuple[List[OvertakingDecision], List[OvertakingDecision]]:
        """(cancellations, plans) not committed yet."""
        return list(self._cancelled), list(self._planned)

    async def commit(self) -> None:
        cancelled, self._cancelled = self._cancelled, []
        planned, self._planned = self._planned, []
        for decision in cancelled:
            await self._train_overtaking.cancel_overtaking(self.overtaking_area, decision.overtaking, decision.waiting)
        for decision in planned:
            await self._train_overtaking.plan_overtaking(self.overtaking_area, decision.overtaking, decision.waiting)

    def get_train(self, train_id: str) -> Train:
        return self._infrastructure.get_or_throw("train", train_id)

    def get_trains_delayed_arrival_at_station(self, train: Train, station: Station, stop_time: bool = False) -> Seconds:
        """Planned arrival pushed back by the part of the delay the timetable reserve can't absorb.

        With `stop_time` the time the train has been standing still counts as
        delay too.
        """
        entry = next((e for e in train.timetable.entries if e.station is station), None)
        if entry is None:
            raise ValueError(f"Train {train.train_id} doesn't go through {station.station_id}.")

        planned = entry.arrival
        if entry.type == "pass" and planned is None:
            planned = entry.departure
        if planned is None:
            planned = float("inf")

        last_station = self._tracker.get_trains_last_station(train)
        if last_station is not None:
            # Stations already passed don't help anymore.
            reserve = self._infrastructure.get_timetable_reserve(train.timetable, last_station, station) or 0
        elif train.timetable.entries:
            first_station = train.timetable.entries[0].station
            reserve = self._infrastructure.get_timetable_reserve(train.timetable, first_station, station) or 0
        else:
            reserve = 0

        delay = self._tracker.get_delay(train)
        if stop_time:
            delay += self._tracker.get_current_stop_duration(train)

        return planned + max(0, delay - reserve)

    def get_trains_last_station(self, train: Train) -> Optional[Station]:
        return self._tracker.get_trains_last_station(train)

    def get_trains_in_area(self, area: OvertakingArea) -> List[TrainPositionInArea]:
        return self._tracker.get_trains_in_area_in_order(area)

    def get_trains_timetable_reserve(
        self, train: Train, from_station: Station, to_station: Station, inclusive: bool = False
    ) -> Seconds:
        reserve = self._infrastructure.get_timetable_reserve(train.timetable, from_station, to_station, inclusive)
        if reserve is None:
            raise ValueError(
                f"Train {train.train_id} doesn't go between {from_station.station_id} and {to_station.station_id}."
            )
        return reserve

    def get_common_timetable_entries(
        self, from_station: Station, timetable1: Timetable, timetable2: Timetable
    ) -> List[CommonTimetableEntry]:
        return self._infrastructure.get_common_timetable_entries(from_station, timetable1, timetable2)

    def get_overtaking_areas_by_station(self, station: Station) -> Set[OvertakingArea]:
        return self._overtaking_data.get_by_station(station)

    def get_overtaking_areas_by_stations(self, inflow_station: Optional[Station], station: Station) -> Set[OvertakingArea]:
        return self._overtaking_data.get_by_stations(inflow_station, station)
