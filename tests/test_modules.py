import logging

import pytest

from otcoord.core.errors import ConfigurationError
from otcoord.overtaking.api import DecisionModuleAPI, NewTrainEnteredParams, OvertakingDecision
from otcoord.overtaking.modules.registry import DECISION_MODULE_FACTORIES, create_decision_module, parse_module_conf
from otcoord.overtaking.overtaking_data import get_overtaking_data
from otcoord.overtaking.train_overtaking import TrainOvertaking
from otcoord.overtaking.util import get_all_overtaking_candidates, get_consecutive_pairs
from otcoord.tracker.train_tracker import TrainTracker

USER_MODULE = '''
from otcoord.overtaking.api import ModuleFactory


class Always:
    name = "always"

    def __init__(self, waiting):
        self.waiting = waiting

    def new_train_entered_overtaking_area(self, api, params):
        return None


decision_module_factory = ModuleFactory(name="always", build=lambda params: Always(params.get("waiting")))
'''


@pytest.fixture
def situation(channel, infrastructure):
    """T1 halfway through the area, T2 just behind it on the entry route."""
    data = get_overtaking_data(infrastructure)
    area = data.areas[0]
    tracker = TrainTracker(channel, infrastructure, data.areas).start_tracking(1)
    for train_id, route_id in (("T2", "R1"), ("T1", "R1"), ("T1", "R2")):
        channel.dispatch("routeEntry", {"trainID": train_id, "routeID": route_id, "time": "0"})
    channel.dispatch(
        "trainPositionReport",
        {"trainID": "T1", "routeID": "R2", "routeOffset": "100", "speed": "20", "time": "0"},
    )
    api = DecisionModuleAPI(
        infrastructure,
        data,
        tracker,
        TrainOvertaking(infrastructure, channel, tracker),
        area,
        logging.getLogger("otcoord.decision.test"),
    )
    params = NewTrainEnteredParams(
        entry_route=infrastructure.routes["R1"],
        new_train=infrastructure.trains["T2"],
        overtaking_area=area,
        time=0,
    )
    return api, params


def decide(conf, situation):
    api, params = situation
    create_decision_module(conf).module.new_train_entered_overtaking_area(api, params)
    return api.pending


def test_builtin_modules_are_registered():
    assert sorted(DECISION_MODULE_FACTORIES) == [
        "do-nothing",
        "max-speed",
        "timetable-category-guess",
        "timetable-guess",
    ]


def test_module_conf_string_parts():
    assert parse_module_conf("max-speed") == ("max-speed", "max-speed", {})
    assert parse_module_conf("timetable-guess?tg-90?{\"threshold\": 90}") == (
        "timetable-guess",
        "tg-90",
        {"threshold": 90},
    )
    assert parse_module_conf("timetable-guess??{\"note\": \"a?b\"}") == ("timetable-guess", "timetable-guess", {"note": "a?b"})


@pytest.mark.parametrize(
    "conf, message",
    [
        ("", "Missing module name"),
        ("max-speed??{oops", "Invalid JSON"),
        ("max-speed??[1, 2]", "JSON object"),
        ("warp-drive", 'Unknown module "warp-drive"'),
        ("max-speed??{\"threshold\": 10}", "Superfluous parameters: threshold."),
        ("timetable-guess??{\"threshold\": 10, \"speed\": 1}", "Superfluous parameters: speed."),
        ("timetable-category-guess??{\"perCategoryThresholdBonus\": 5}", "perCategoryThresholdBonus"),
    ],
)
def test_bad_module_configurations(conf, message):
    with pytest.raises(ConfigurationError, match=message):
        create_decision_module(conf)


def test_do_nothing_ignores_parameters(situation):
    configured = create_decision_module("do-nothing?baseline?{\"anything\": true}")
    assert configured.output_dir_name == "baseline"
    assert configured.params == {"anything": True}
    assert decide("do-nothing", situation) == ([], [])


def test_module_loaded_from_file(tmp_path):
    path = tmp_path / "always_module.py"
    path.write_text(USER_MODULE, encoding="utf-8")

    configured = create_decision_module(f"{path}?custom?{{\"waiting\": \"T1\"}}")

    assert configured.module.name == "always"
    assert configured.module.waiting == "T1"
    assert configured.output_dir_name == "custom"


def test_missing_module_file(tmp_path):
    with pytest.raises(ConfigurationError, match="doesn't exist"):
        create_decision_module(str(tmp_path / "nope.py"))


def test_file_without_factory(tmp_path):
    path = tmp_path / "empty_module.py"
    path.write_text("x = 1\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="decision_module_factory"):
        create_decision_module(str(path))


def test_max_speed_lets_faster_train_behind_pass(situation, infrastructure):
    t1, t2 = infrastructure.trains["T1"], infrastructure.trains["T2"]
    assert decide("max-speed", situation) == ([], [OvertakingDecision(t2, t1)])


def test_timetable_guess_compares_arrivals_at_last_common_station(situation, infrastructure):
    t1, t2 = infrastructure.trains["T1"], infrastructure.trains["T2"]
    api, _ = situation
    d = infrastructure.stations["D"]
    # 900 planned, the 30s reserve at B covers no delay yet
    assert api.get_trains_delayed_arrival_at_station(t1, d) == 900
    assert api.get_trains_delayed_arrival_at_station(t2, d) == 600

    assert decide("timetable-guess", situation) == ([], [OvertakingDecision(t2, t1)])


def test_timetable_guess_cancels_below_threshold(situation, infrastructure):
    t1, t2 = infrastructure.trains["T1"], infrastructure.trains["T2"]
    assert decide("timetable-guess??{\"threshold\": 300}", situation) == ([OvertakingDecision(t2, t1)], [])


def test_category_bonus_and_inclusive_threshold(situation, infrastructure):
    t1, t2 = infrastructure.trains["T1"], infrastructure.trains["T2"]
    # IC gets 300s added and is exactly as early as T1 now
    conf = "timetable-category-guess??{\"perCategoryThresholdBonus\": {\"IC\": 300}, \"threshold\": 0}"
    assert decide(conf, situation) == ([], [OvertakingDecision(t2, t1)])


def test_category_stop_penalty_applies_to_stopping_train(situation, infrastructure):
    t1, t2 = infrastructure.trains["T1"], infrastructure.trains["T2"]
    # T1 stops at B and gets pushed back, T2 passes B
    conf = "timetable-category-guess??{\"perCategoryThresholdBonus\": {\"IC\": 300}, \"stopPenalty\": 100, \"threshold\": 90}"
    assert decide(conf, situation) == ([], [OvertakingDecision(t2, t1)])

    conf = "timetable-category-guess??{\"perCategoryThresholdBonus\": {\"IC\": 300}, \"threshold\": 90}"
    api, params = situation
    create_decision_module(conf).module.new_train_entered_overtaking_area(api, params)
    assert api.pending[0] == [OvertakingDecision(t2, t1)]


def test_delay_beyond_reserve_pushes_arrival_back(situation, infrastructure, channel):
    api, _ = situation
    t1, d = infrastructure.trains["T1"], infrastructure.stations["D"]
    channel.dispatch(
        "trainPositionReport",
        {"trainID": "T1", "routeID": "R2", "routeOffset": "300", "speed": "0", "time": "100", "delay": "50"},
    )
    channel.dispatch(
        "trainPositionReport",
        {"trainID": "T1", "routeID": "R2", "routeOffset": "300", "speed": "0", "time": "140", "delay": "50"},
    )
    assert api.get_trains_delayed_arrival_at_station(t1, d) == 900 + 50 - 30
    assert api.get_trains_delayed_arrival_at_station(t1, d, stop_time=True) == 900 + 90 - 30

    with pytest.raises(ValueError):
        api.get_trains_delayed_arrival_at_station(infrastructure.trains["T4"], d)


def test_candidate_pairs():
    assert get_consecutive_pairs([1, 2, 3]) == [(1, 2), (2, 3)]
    assert get_consecutive_pairs([1]) == []
    assert get_all_overtaking_candidates(["a", "b", "c"]) == [("a", "b"), ("a", "c"), ("b", "c")]
