"""
Rank-aware logging.

Library modules log through `get_rank_logger`, which tags every record with
the rank that emitted it. `setup_logging` routes the `pipesplit` logger
through rich so log lines and the metrics display share one console style.
"""

import logging
from typing import Optional

from rich.logging import RichHandler

ROOT_LOGGER = "pipesplit"


class RankAdapter(logging.LoggerAdapter):
    """Prefixes log messages with the rank of the calling process/thread."""

    def process(self, msg, kwargs):
        rank = self.extra.get("rank")
        if rank is None:
            return msg, kwargs
        return f"[rank {rank}] {msg}", kwargs


def setup_logging(level: int = logging.WARNING, rank: Optional[int] = None) -> logging.Logger:
    """
    Install a RichHandler on the package logger (once per process).

    Args:
        level: Logging level for the `pipesplit` logger.
        rank: Rank of the calling process, logged once at DEBUG.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(show_path=False, markup=False, rich_tracebacks=True)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(handler)
        logger.propagate = False
    if rank is not None:
        logger.debug("[rank %d] logging initialized", rank)
    return logger


def get_rank_logger(name: str, rank: Optional[int] = None) -> RankAdapter:
    """Return a logger for module `name` that tags records with `rank`."""
    return RankAdapter(logging.getLogger(name), {"rank": rank})
