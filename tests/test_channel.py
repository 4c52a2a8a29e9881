import asyncio
import json
import logging
from dataclasses import replace

import httpx
import pytest

from otcoord.channel.client import SimulatorChannel
from otcoord.channel.events import RouteEvent, TrainPositionReport
from otcoord.channel.soap import build_request, parse_event
from otcoord.core.errors import CommunicationError
from otcoord.sim.audit import CommunicationLog


def test_soap_request_carries_command_and_attributes():
    body = build_request("setRouteDisallowed", {"trainID": "T<1>", "routeID": "R1", "skip": None, "flag": False})
    assert "SOAP-ENV:Envelope" in body
    assert parse_event(body) == ("setRouteDisallowed", {"trainID": "T<1>", "routeID": "R1", "flag": "false"})


def test_soap_without_body_element_is_rejected():
    with pytest.raises(ValueError):
        parse_event(
            '<SOAP-ENV:Envelope xmlns:SOAP-ENV="http://schemas.xmlsoap.org/soap/envelope/">'
            "<SOAP-ENV:Body/></SOAP-ENV:Envelope>"
        )


def test_event_attributes_are_coerced():
    report = TrainPositionReport.model_validate(
        {"trainID": "T1", "routeID": "R2", "routeOffset": "12.5", "speed": "3", "time": "7"}
    )
    assert report.route_offset == 12.5
    assert report.speed == 3
    assert report.acceleration == 0
    assert RouteEvent(train_id="T1", route_id="R1").time == 0


@pytest.mark.asyncio
async def test_send_posts_soap_to_the_simulator(settings):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200)

    channel = SimulatorChannel(settings, transport=httpx.MockTransport(handler))
    await channel.set_send_position_reports("T1", time=2)

    assert str(requests[0].url) == settings.ot_url
    assert parse_event(requests[0].content) == ("setSendPositionReports", {"trainID": "T1", "flag": "true", "time": "2"})


@pytest.mark.asyncio
async def test_transport_failures_become_communication_errors(settings):
    def timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    channel = SimulatorChannel(settings, transport=httpx.MockTransport(timeout))
    with pytest.raises(CommunicationError, match="timed out"):
        await channel.pause_simulation()

    channel = SimulatorChannel(settings, transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    with pytest.raises(CommunicationError, match="startSimulation"):
        await channel.start_simulation()


@pytest.mark.asyncio
async def test_nested_pauses_pause_and_resume_once(channel, simulator):
    async with channel.paused():
        async with channel.paused():
            await channel.set_route_allowed("T1", "R1")
        assert simulator.names == ["pauseSimulation", "setRouteAllowed"]
    assert simulator.names == ["pauseSimulation", "setRouteAllowed", "startSimulation"]


@pytest.mark.asyncio
async def test_concurrent_pauses_share_one_pause(channel, simulator):
    async def work(train_id):
        async with channel.paused():
            await asyncio.sleep(0)
            await channel.set_route_allowed(train_id, "R1")

    await asyncio.gather(work("T1"), work("T2"))
    assert simulator.names.count("pauseSimulation") == 1
    assert simulator.names.count("startSimulation") == 1
    assert simulator.names[-1] == "startSimulation"


@pytest.mark.asyncio
async def test_pause_waits_for_the_previous_resume(settings):
    log = []
    resume_sent = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        name, _ = parse_event(request.content)
        log.append(("begin", name))
        if name == "startSimulation":
            resume_sent.set()
            await asyncio.sleep(0.05)
        log.append(("end", name))
        return httpx.Response(200)

    channel = SimulatorChannel(
        replace(settings, max_simultaneous_requests=4), transport=httpx.MockTransport(handler)
    )

    async def batch():
        async with channel.paused():
            await asyncio.sleep(0)

    first = asyncio.ensure_future(batch())
    await resume_sent.wait()
    await asyncio.gather(first, batch())

    assert log == [
        ("begin", "pauseSimulation"),
        ("end", "pauseSimulation"),
        ("begin", "startSimulation"),
        ("end", "startSimulation"),
        ("begin", "pauseSimulation"),
        ("end", "pauseSimulation"),
        ("begin", "startSimulation"),
        ("end", "startSimulation"),
    ]


@pytest.mark.asyncio
async def test_pause_is_released_when_the_block_fails(channel, simulator):
    with pytest.raises(RuntimeError):
        async with channel.paused():
            raise RuntimeError("inside")
    assert simulator.names == ["pauseSimulation", "startSimulation"]


@pytest.mark.asyncio
async def test_send_in_pause_batches_and_skips_empty_batches(channel, simulator):
    await channel.send_in_pause(lambda send: None)
    assert simulator.commands == []

    def build(send):
        send("setRouteAllowed", {"trainID": "T1", "routeID": "R1"})
        send("setRouteAllowed", {"trainID": "T1", "routeID": "R2"})

    await channel.send_in_pause(build)
    assert simulator.names[0] == "pauseSimulation"
    assert simulator.names[-1] == "startSimulation"
    assert simulator.route_commands() == [("setRouteAllowed", "T1", "R1"), ("setRouteAllowed", "T1", "R2")]


@pytest.mark.asyncio
async def test_send_in_pause_raises_after_resuming(channel, simulator):
    simulator.failing.add("setRouteDisallowed")

    def build(send):
        send("setRouteDisallowed", {"trainID": "T1", "routeID": "R3"})
        send("setRouteAllowed", {"trainID": "T1", "routeID": "R2"})

    with pytest.raises(CommunicationError):
        await channel.send_in_pause(build)
    assert "setRouteAllowed" in simulator.names
    assert simulator.names[-1] == "startSimulation"


@pytest.mark.asyncio
async def test_once_resolves_after_subscribers_ran(channel):
    seen = []
    channel.on("simStarted", lambda name, payload: seen.append(name))
    started = channel.once("simStarted")
    anything = channel.once()

    channel.dispatch("simStarted", {"time": "5"})

    name, payload = await started
    assert (name, payload.time) == ("simStarted", 5)
    assert (await anything)[0] == "simStarted"
    assert seen == ["simStarted"]


@pytest.mark.asyncio
async def test_subscriber_failures_are_contained(channel, caplog):
    seen = []

    def explode(name, payload):
        raise RuntimeError("broken subscriber")

    channel.on("trainCreated", explode)
    unsubscribe = channel.on("trainCreated", lambda name, payload: seen.append(payload.train_id))
    with caplog.at_level(logging.ERROR):
        channel.dispatch("trainCreated", {"trainID": "T1"})
    assert seen == ["T1"]
    assert "broken subscriber" in caplog.text

    unsubscribe()
    channel.dispatch("trainCreated", {"trainID": "T2"})
    assert seen == ["T1"]


@pytest.mark.asyncio
async def test_async_subscribers_are_spawned(channel, simulator):
    async def on_created(name, payload):
        await channel.set_route_allowed(payload.train_id, "R1")

    channel.on("trainCreated", on_created)
    channel.dispatch("trainCreated", {"trainID": "T1"})
    await channel.drain()
    assert simulator.route_commands() == [("setRouteAllowed", "T1", "R1")]


def test_unknown_events_are_ignored(channel, caplog):
    calls = []
    channel.on_any(lambda name, payload: calls.append(name))
    with caplog.at_level(logging.DEBUG, logger="otcoord.channel.client"):
        channel.dispatch("trainJumped", {"trainID": "T1"})
    assert calls == []
    assert "Ignoring unknown event trainJumped" in caplog.text


@pytest.mark.asyncio
async def test_kill_stops_everything(channel, simulator):
    waiting = channel.once("simStopped")
    calls = []
    channel.on("trainCreated", lambda name, payload: calls.append(name))

    async with channel.paused():
        await channel.kill()
    # no resume on a killed session
    assert simulator.names == ["pauseSimulation"]
    assert channel.killed

    with pytest.raises(CommunicationError):
        await waiting
    with pytest.raises(CommunicationError):
        await channel.once("simStarted")
    with pytest.raises(CommunicationError):
        await channel.start_simulation()
    channel.dispatch("trainCreated", {"trainID": "T1"})
    assert calls == []


@pytest.mark.asyncio
async def test_communication_log_records_both_directions(settings, simulator, tmp_path):
    log = CommunicationLog(tmp_path / "logs" / "communication.jsonl")
    channel = SimulatorChannel(settings, transport=httpx.MockTransport(simulator), communication_log=log)

    await channel.set_route_allowed("T1", "R1")
    channel.dispatch("routeEntry", {"trainID": "T1", "routeID": "R1", "time": "3"})
    log.close()
    log.write({"ignored": True})

    lines = [json.loads(line) for line in (tmp_path / "logs" / "communication.jsonl").read_text().splitlines()]
    assert [(e["direction"], e["name"]) for e in lines] == [("out", "setRouteAllowed"), ("in", "routeEntry")]
    assert lines[0]["params"] == {"trainID": "T1", "routeID": "R1"}
    assert lines[1]["params"]["routeID"] == "R1"
