"""Logging helpers for the async dispatch service."""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once, from the entry point only.

    ``force=True`` drops handlers installed by uvicorn or a previous call so
    log lines are never duplicated.
    """
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        force=True,
    )


def get_logger(name: str = "AsyncDispatchService") -> logging.Logger:
    """Return the named :class:`logging.Logger` used by a component."""
    return logging.getLogger(name)
