"""Run the relay agent with its health server: ``python -m relay_agent [URL]``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging

import uvicorn

from .agent import RelayAgent
from .config import load_config
from .errors import RelayError
from .logging_setup import configure_logging
from .web import create_app

logger = logging.getLogger(__name__)


def build_app(url=None):
    config = load_config()
    configure_logging(config.log_level)
    agent = RelayAgent(config)

    async def play_initial(source: str) -> None:
        try:
            await agent.play(source)
        except RelayError as exc:
            logger.error("Could not start %s: %s", source, exc)

    @contextlib.asynccontextmanager
    async def lifespan(app):
        await agent.start()
        task = asyncio.ensure_future(play_initial(url)) if url else None
        try:
            yield
        finally:
            if task is not None and not task.done():
                task.cancel()
            await agent.shutdown()

    return create_app(agent.health, lifespan=lifespan), config


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(prog="relay_agent", description="Adaptive stream relay agent")
    parser.add_argument("url", nargs="?", help="Source URL to start relaying immediately")
    args = parser.parse_args(argv)

    app, config = build_app(args.url)
    server = config.health_server
    uvicorn.run(app, host=server.host, port=server.port, log_config=None)


if __name__ == "__main__":
    main()
