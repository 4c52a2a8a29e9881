from __future__ import annotations
import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

from otcoord.core.errors import SimulatorNotReadyError, UnrecoverableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[int], Awaitable[T]]


async def retry_run(operation: Operation[T], attempts: int, cooldown: float) -> T:
    """Run `operation(attempt)` until it succeeds, at most `attempts` times.

    Unrecoverable errors and cancellation are never retried. The last error is
    raised once the attempts are used up.
    """
    if attempts < 1:
        raise ValueError("attempts has to be at least 1")
    for attempt in range(1, attempts + 1):
        try:
            return await operation(attempt)
        except UnrecoverableError:
            raise
        except Exception as e:
            if attempt >= attempts:
                logger.error(f"Attempt {attempt} of {attempts} failed, giving up: {e}")
                raise
            logger.warning(f"Attempt {attempt} of {attempts} failed: {e}", exc_info=True)
            await asyncio.sleep(cooldown)
            logger.info("Trying again...")
    raise AssertionError("unreachable")


async def retry_forever(operation: Operation[T], cooldown: float) -> T:
    """Like `retry_run` without an attempt limit, for waiting on the simulator to come up."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation(attempt)
        except UnrecoverableError:
            raise
        except Exception as e:
            logger.error(f"Preparations failed (attempt {attempt}): {e}")
            await asyncio.sleep(cooldown)
            logger.info("Trying again...")


async def wait_for_port(host: str, port: int, timeout: float, interval: float = 0.5) -> None:
    """Wait until something accepts TCP connections on host:port."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            _, writer = await asyncio.open_connection(host, port)
        except OSError:
            if time.monotonic() >= deadline:
                raise SimulatorNotReadyError(f"Nothing is listening on {host}:{port} after {timeout}s.")
            await asyncio.sleep(interval)
            continue
        writer.close()
        await writer.wait_closed()
        return
