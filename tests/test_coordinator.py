import logging

import pytest

from otcoord.core.blocking import BlockingEntry
from otcoord.overtaking.api import OvertakingDecision
from otcoord.overtaking.coordinator import OvertakingCoordinator
from otcoord.overtaking.modules.max_speed import MaxSpeed
from otcoord.tracker.train_tracker import TrackerEvent


class ScriptedModule:
    """Decision module driven by a test function."""

    name = "scripted"

    def __init__(self, decide):
        self._decide = decide
        self.calls = []

    def new_train_entered_overtaking_area(self, api, params):
        self.calls.append(params.new_train.train_id)
        return self._decide(api, params)


async def start(channel, infrastructure, module):
    coordinator = OvertakingCoordinator(infrastructure, channel, module)
    await coordinator.setup()
    return coordinator


def enter(channel, train_id, route_id, time=0):
    channel.dispatch("routeEntry", {"trainID": train_id, "routeID": route_id, "time": str(time)})


def leave(channel, train_id, route_id, time=0):
    channel.dispatch("routeExit", {"trainID": train_id, "routeID": route_id, "time": str(time)})


@pytest.mark.asyncio
async def test_faster_train_overtakes_with_max_speed(channel, simulator, infrastructure):
    coordinator = await start(channel, infrastructure, MaxSpeed())

    enter(channel, "T1", "R1", 10)
    await channel.drain()
    assert simulator.route_commands() == []

    enter(channel, "T2", "R1", 20)
    await channel.drain()

    assert list(coordinator.train_overtaking.blocking) == [BlockingEntry("B", "T2", "T1")]
    assert simulator.route_commands() == [("setRouteDisallowed", "T1", "R3")]
    # every decision ran inside a pause
    assert simulator.names.count("pauseSimulation") == simulator.names.count("startSimulation") == 2
    assert simulator.names[-1] == "startSimulation"


@pytest.mark.asyncio
async def test_leaving_without_blocking_anyone_sends_no_route_commands(channel, simulator, infrastructure):
    coordinator = await start(channel, infrastructure, MaxSpeed())

    enter(channel, "T1", "R1")
    leave(channel, "T1", "R1")
    await channel.drain()

    assert simulator.route_commands() == []
    assert len(coordinator.train_overtaking.blocking) == 0
    assert coordinator.tracker.get_trains_in_area(coordinator.areas[0]) == []


@pytest.mark.asyncio
async def test_leaving_releases_the_waiting_train(channel, simulator, infrastructure):
    coordinator = await start(channel, infrastructure, MaxSpeed())
    enter(channel, "T1", "R1")
    enter(channel, "T2", "R1")
    await channel.drain()
    simulator.clear()

    enter(channel, "T2", "R4")
    leave(channel, "T2", "R1")
    await channel.drain()

    assert simulator.route_commands() == [("setRouteAllowed", "T1", "R3")]
    assert len(coordinator.train_overtaking.blocking) == 0


@pytest.mark.asyncio
async def test_failing_module_is_logged_and_coordination_goes_on(channel, simulator, infrastructure, caplog):
    def decide(api, params):
        if params.new_train.train_id == "T1":
            raise RuntimeError("module exploded")
        api.plan_overtaking(api.get_train("T2"), api.get_train("T1"))

    module = ScriptedModule(decide)
    coordinator = await start(channel, infrastructure, module)

    with caplog.at_level(logging.ERROR):
        enter(channel, "T1", "R1", 10)
        await channel.drain()
    assert "Overtaking decision module scripted failed for train T1 which just entered OA-B1 + OA-B2 through R1" in (
        caplog.text
    )
    assert "module exploded" in caplog.text
    # the pause was given back
    assert simulator.names == ["pauseSimulation", "startSimulation"]

    enter(channel, "T2", "R1", 20)
    await channel.drain()
    assert module.calls == ["T1", "T2"]
    assert coordinator.train_overtaking.blocking.is_blocked("B", "T2", "T1")


@pytest.mark.asyncio
async def test_cancellations_are_applied_before_plans(channel, simulator, infrastructure):
    def decide(api, params):
        t1, t2 = api.get_train("T1"), api.get_train("T2")
        api.plan_overtaking(t2, t1)
        api.cancel_overtaking(t2, t1)
        assert api.pending == ([OvertakingDecision(t2, t1)], [OvertakingDecision(t2, t1)])

    coordinator = await start(channel, infrastructure, ScriptedModule(decide))
    enter(channel, "T1", "R1")
    await channel.drain()

    assert list(coordinator.train_overtaking.blocking) == [BlockingEntry("B", "T2", "T1")]
    assert simulator.route_commands() == [("setRouteDisallowed", "T1", "R3")]


@pytest.mark.asyncio
async def test_returned_decisions_are_planned(channel, simulator, infrastructure):
    async def decide(api, params):
        return [OvertakingDecision(api.get_train("T4"), api.get_train("T1"))]

    module = ScriptedModule(lambda api, params: decide(api, params))
    coordinator = await start(channel, infrastructure, module)
    enter(channel, "T1", "R1")
    await channel.drain()

    assert list(coordinator.train_overtaking.blocking) == [BlockingEntry("B", "T4", "T1")]


@pytest.mark.asyncio
async def test_created_train_gets_all_its_routes_allowed(channel, simulator, infrastructure):
    await start(channel, infrastructure, MaxSpeed())

    channel.dispatch("trainCreated", {"trainID": "T1", "time": "0"})
    await channel.drain()

    assert simulator.route_commands() == [
        ("setRouteAllowed", "T1", r) for r in ("R1", "R2", "R2S", "R3", "R4", "R5")
    ]
    assert "setSendPositionReports" in simulator.names


@pytest.mark.asyncio
async def test_deleted_train_releases_what_it_was_blocking(channel, simulator, infrastructure):
    coordinator = await start(channel, infrastructure, MaxSpeed())
    enter(channel, "T1", "R1")
    enter(channel, "T2", "R1")
    await channel.drain()
    simulator.clear()

    channel.dispatch("trainDeleted", {"trainID": "T2", "time": "50"})
    await channel.drain()

    assert simulator.route_commands() == [("setRouteAllowed", "T1", "R3")]
    assert len(coordinator.train_overtaking.blocking) == 0


@pytest.mark.asyncio
async def test_reserved_route_is_allowed_again(channel, simulator, infrastructure):
    await start(channel, infrastructure, MaxSpeed())
    channel.dispatch("routeReserved", {"trainID": "T1", "routeID": "R2", "time": "3"})
    await channel.drain()
    assert simulator.route_commands() == [("setRouteAllowed", "T1", "R2")]


@pytest.mark.asyncio
async def test_cleanup_unsubscribes_everything(channel, simulator, infrastructure):
    module = ScriptedModule(lambda api, params: None)
    coordinator = await start(channel, infrastructure, module)
    await coordinator.cleanup()

    enter(channel, "T1", "R1")
    channel.dispatch("trainCreated", {"trainID": "T2"})
    channel.dispatch("routeReserved", {"trainID": "T1", "routeID": "R2"})
    await channel.drain()

    assert module.calls == []
    assert simulator.commands == []


@pytest.mark.asyncio
async def test_decisions_need_setup(channel, infrastructure):
    coordinator = OvertakingCoordinator(infrastructure, channel, MaxSpeed())
    area = coordinator.areas[0]
    event = TrackerEvent(infrastructure.trains["T1"], infrastructure.routes["R1"], 0)

    with pytest.raises(RuntimeError, match="setup"):
        await coordinator.decide(area, event)
    with pytest.raises(RuntimeError, match="setup"):
        await coordinator.release(area, event.train)
