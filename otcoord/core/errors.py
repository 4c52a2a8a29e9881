from __future__ import annotations
import logging
from typing import Any


class NotFoundError(KeyError):
    """Lookup of an unknown train/route/station/itinerary/area."""

    def __init__(self, kind: str, key: Any):
        super().__init__(f"Can't find {kind} {key}.")
        self.kind = kind
        self.key = key

    def __str__(self) -> str:
        # KeyError would repr() the message otherwise
        return str(self.args[0])


class Bug(Exception):
    """Derived state that should be structurally impossible."""

    def __init__(self, message: str):
        super().__init__(
            message
            + "\n\nIf you see this you've found a bug. "
            "Report it and include as much information as possible (stacktrace, configuration, model etc.), thanks."
        )


class TransientError(Exception):
    """This attempt failed, another one may succeed."""


class CommunicationError(TransientError):
    pass


class SimulatorNotReadyError(TransientError):
    pass


class UnrecoverableError(Exception):
    """Retrying will not help, give up right away."""


class ConfigurationError(UnrecoverableError):
    pass


def log_bug(logger: logging.Logger, error: Bug | str) -> None:
    # Kept apart from ordinary errors so it stands out in long run logs.
    logger.error("=== BUG === %s", error)
