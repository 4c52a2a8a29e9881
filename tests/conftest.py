import json
from pathlib import Path
from typing import Dict, List, Tuple

import httpx
import pytest

from otcoord.channel.client import SimulatorChannel
from otcoord.channel.soap import parse_event
from otcoord.config import Settings
from otcoord.core.infrastructure import build_infrastructure

DATA_DIR = Path(__file__).parents[1] / "otcoord" / "data"

ROUTE_COMMANDS = ("setRouteAllowed", "setRouteDisallowed")


def load_sample_data() -> dict:
    return json.loads((DATA_DIR / "sample_infrastructure.json").read_text(encoding="utf-8"))


class RecordingSimulator:
    """httpx MockTransport handler standing in for the simulator's command endpoint."""

    def __init__(self):
        self.commands: List[Tuple[str, Dict[str, str]]] = []
        self.failing: set = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        name, attributes = parse_event(request.content)
        self.commands.append((name, attributes))
        if name in self.failing:
            return httpx.Response(500, text="busy")
        return httpx.Response(200, text="<ok/>")

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.commands]

    def route_commands(self) -> List[Tuple[str, str, str]]:
        return [(name, a["trainID"], a["routeID"]) for name, a in self.commands if name in ROUTE_COMMANDS]

    def clear(self) -> None:
        self.commands.clear()


@pytest.fixture
def sample_data():
    return load_sample_data()


@pytest.fixture
def infrastructure(sample_data):
    return build_infrastructure(sample_data)


@pytest.fixture
def simulator():
    return RecordingSimulator()


@pytest.fixture
def settings():
    return Settings(request_timeout=1, cooldown=0)


@pytest.fixture
def channel(settings, simulator):
    return SimulatorChannel(settings, transport=httpx.MockTransport(simulator))
