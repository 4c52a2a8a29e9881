from __future__ import annotations
from typing import Any, Dict, Type

from pydantic import BaseModel, ConfigDict, Field


class EventPayload(BaseModel):
    # Attributes arrive as strings from the SOAP body; lax mode coerces them.
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    time: float = 0.0


class TrainEvent(EventPayload):
    train_id: str = Field(alias="trainID")


class RouteEvent(TrainEvent):
    route_id: str = Field(alias="routeID")


class StationEvent(TrainEvent):
    station_id: str = Field(alias="stationID")
    delay: float = 0.0


class TrainPositionReport(TrainEvent):
    route_id: str = Field(alias="routeID")
    route_offset: float = Field(0.0, alias="routeOffset")
    delay: float = 0.0
    speed: float = 0.0
    acceleration: float = 0.0


class TrainStopped(TrainEvent):
    route_id: str = Field(alias="routeID")
    route_offset: float = Field(0.0, alias="routeOffset")
    stop_type: str = Field("stopUnknown", alias="stopType")


class SimulationEvent(EventPayload):
    pass


EVENT_PAYLOADS: Dict[str, Type[EventPayload]] = {
    "ping": SimulationEvent,
    "routeEntry": RouteEvent,
    "routeExit": RouteEvent,
    "routeReleased": RouteEvent,
    "routeReserved": RouteEvent,
    "simContinued": SimulationEvent,
    "simPaused": SimulationEvent,
    "simReadyForSimulation": SimulationEvent,
    "simServerStarted": SimulationEvent,
    "simStarted": SimulationEvent,
    "simStopped": SimulationEvent,
    "trainArrival": StationEvent,
    "trainCreated": TrainEvent,
    "trainDeleted": TrainEvent,
    "trainDeparture": StationEvent,
    "trainPass": StationEvent,
    "trainPositionReport": TrainPositionReport,
    "trainStopped": TrainStopped,
}


def create_payload(name: str, attributes: Dict[str, Any]) -> EventPayload:
    model = EVENT_PAYLOADS.get(name)
    if model is None:
        raise KeyError(name)
    return model.model_validate(attributes)
