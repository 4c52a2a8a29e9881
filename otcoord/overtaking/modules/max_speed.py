from typing import Any, Dict

from otcoord.overtaking.api import DecisionModuleAPI, ModuleFactory, NewTrainEnteredParams, reject_superfluous


class MaxSpeed:
    """Let the second train in the area pass the first one if it's faster."""

    name = "max-speed"

    def new_train_entered_overtaking_area(self, api: DecisionModuleAPI, params: NewTrainEnteredParams) -> None:
        trains = api.get_trains_in_area(params.overtaking_area)
        if len(trains) < 2:
            return

        first, second = trains[0].train, trains[1].train
        if first.max_speed < second.max_speed:
            api.plan_overtaking(second, first)


def create(params: Dict[str, Any]) -> MaxSpeed:
    reject_superfluous(params)
    return MaxSpeed()


decision_module_factory = ModuleFactory(name=MaxSpeed.name, build=create)
