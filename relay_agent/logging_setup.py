"""Root logger configuration for the relay agent process."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # per-tick job chatter from the scheduler drowns the agent's own logs
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
