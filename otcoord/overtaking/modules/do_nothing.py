from typing import Any, Dict

from otcoord.overtaking.api import DecisionModuleAPI, ModuleFactory, NewTrainEnteredParams


class DoNothing:
    """Never plans anything; the simulator dispatches on its own."""

    name = "do-nothing"

    def new_train_entered_overtaking_area(self, api: DecisionModuleAPI, params: NewTrainEnteredParams) -> None:
        return None


def create(params: Dict[str, Any]) -> DoNothing:
    # Accepts and ignores any parameters
    return DoNothing()


decision_module_factory = ModuleFactory(name=DoNothing.name, build=create)
