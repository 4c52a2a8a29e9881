from __future__ import annotations
import logging
from typing import Callable, Dict, List

from otcoord.channel.client import SimulatorChannel
from otcoord.channel.events import TrainEvent

logger = logging.getLogger(__name__)


class TrainCounter:
    """Trains the simulator created but hasn't deleted yet.

    Anything left at the end of a run is stuck somewhere in the model.
    """

    def __init__(self, channel: SimulatorChannel):
        self._channel = channel
        self._trains: Dict[str, float] = {}

    @property
    def size(self) -> int:
        return len(self._trains)

    @property
    def train_ids(self) -> List[str]:
        return list(self._trains)

    def start(self) -> Callable[[], None]:
        """Subscribe; returns the callback undoing it."""
        unsubscribes = [
            self._channel.on("trainCreated", self._on_created),
            self._channel.on("trainDeleted", self._on_deleted),
        ]

        def stop() -> None:
            for unsubscribe in unsubscribes:
                unsubscribe()

        return stop

    def _on_created(self, _name: str, payload: TrainEvent) -> None:
        self._trains[payload.train_id] = payload.time

    def _on_deleted(self, _name: str, payload: TrainEvent) -> None:
        self._trains.pop(payload.train_id, None)

    def log_stuck(self) -> None:
        if self._trains:
            logger.warning(f"{self.size} stuck trains: {', '.join(sorted(self._trains))}.")
