from __future__ import annotations
import asyncio
import logging
from typing import Optional
from xml.etree.ElementTree import ParseError

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import Response

from otcoord.channel.client import SimulatorChannel
from otcoord.channel.soap import parse_event

logger = logging.getLogger(__name__)


def create_app(channel: SimulatorChannel) -> FastAPI:
    """Endpoint the simulator POSTs its SOAP event messages to."""
    app = FastAPI(title="otcoord event receiver")

    @app.get("/health")
    def health():
        return {"status": "ok", "killed": channel.killed}

    @app.post("/{path:path}")
    async def receive_event(request: Request, path: str = ""):
        raw = await request.body()
        try:
            name, attributes = parse_event(raw)
        except (ParseError, ValueError) as e:
            logger.warning(f"Dropping malformed event message on /{path}: {e}")
            return Response(status_code=400)
        channel.dispatch(name, attributes)
        return Response(status_code=200)

    return app


class EventServer:
    """Runs the event endpoint with uvicorn inside the current event loop."""

    def __init__(self, channel: SimulatorChannel, host: str, port: int):
        config = uvicorn.Config(create_app(channel), host=host, port=port, log_level="warning", lifespan="off")
        self._server = uvicorn.Server(config)
        self._task: Optional[asyncio.Task] = None

    async def _serve(self) -> None:
        try:
            await self._server.serve()
        except SystemExit as e:
            # uvicorn exits when it can't bind
            raise OSError(f"Event server could not start on port {self._server.config.port}.") from e

    async def start(self) -> None:
        self._task = asyncio.ensure_future(self._serve())
        while not self._server.started:
            if self._task.done():
                # serve() returned early, e.g. the port is taken
                self._task.result()
                raise OSError("Event server stopped during startup.")
            await asyncio.sleep(0.05)
        logger.info(f"Listening for simulator events on {self._server.config.host}:{self._server.config.port}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        await self._task
        self._task = None
