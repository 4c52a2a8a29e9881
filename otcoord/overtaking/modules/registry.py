from __future__ import annotations
import importlib.util
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

from otcoord.core.errors import ConfigurationError
from otcoord.overtaking.api import DecisionModule, DecisionModuleFactory
from otcoord.overtaking.modules import do_nothing, max_speed, timetable_category_guess, timetable_guess

DECISION_MODULE_FACTORIES: Dict[str, DecisionModuleFactory] = {
    factory.name: factory
    for factory in (
        do_nothing.decision_module_factory,
        max_speed.decision_module_factory,
        timetable_category_guess.decision_module_factory,
        timetable_guess.decision_module_factory,
    )
}


@dataclass
class ConfiguredModule:
    """A decision module together with the string it was configured by."""

    conf_string: str
    output_dir_name: str
    module: DecisionModule
    params: Dict[str, Any] = field(default_factory=dict)


def parse_module_conf(conf_string: str) -> tuple[str, str, Dict[str, Any]]:
    """Split `name?output-dir?json-params` (the last two parts are optional)."""
    name, _, rest = conf_string.partition("?")
    output_dir_name, _, params_string = rest.partition("?")
    if not name:
        raise ConfigurationError(f"Missing module name in {conf_string!r}.")
    params: Dict[str, Any] = {}
    if params_string:
        try:
            params = json.loads(params_string)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON parameters in {conf_string!r}: {e}") from e
        if not isinstance(params, dict):
            raise ConfigurationError(f"Module parameters have to be a JSON object in {conf_string!r}.")
    return name, output_dir_name or name, params


def load_factory_from_path(path: str | Path) -> DecisionModuleFactory:
    """Import a Python file that defines `decision_module_factory`."""
    resolved = Path(path).resolve()
    if not resolved.is_file():
        raise ConfigurationError(f"Decision module file {resolved} doesn't exist.")
    spec = importlib.util.spec_from_file_location(f"otcoord_user_module_{resolved.stem}", resolved)
    if spec is None or spec.loader is None:
        raise ConfigurationError(f"Can't import decision module from {resolved}.")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    factory = getattr(module, "decision_module_factory", None)
    if factory is None or not callable(getattr(factory, "create", None)):
        raise ConfigurationError(f"{resolved} doesn't define decision_module_factory with a create method.")
    return factory


def create_decision_module(conf_string: str) -> ConfiguredModule:
    name, output_dir_name, params = parse_module_conf(conf_string)
    if "/" in name or "\\" in name:
        factory = load_factory_from_path(name)
    elif name in DECISION_MODULE_FACTORIES:
        factory = DECISION_MODULE_FACTORIES[name]
    else:
        known = ", ".join(sorted(DECISION_MODULE_FACTORIES))
        raise ConfigurationError(f'Unknown module "{name}" (known: {known}).')

    module = factory.create(dict(params))
    if not getattr(module, "name", None) or not callable(getattr(module, "new_train_entered_overtaking_area", None)):
        raise ConfigurationError(
            f"Module {name} has to have a name and a new_train_entered_overtaking_area method."
        )
    return ConfiguredModule(conf_string=conf_string, output_dir_name=output_dir_name, module=module, params=params)
