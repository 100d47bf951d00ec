"""swarm-conductor logging configuration.

Every module logs through `logging.getLogger(__name__)` under the
`swarm_conductor` namespace. Entry points call `setup_logging()` once.

Environment:
    CONDUCTOR_LOG_LEVEL: overrides the level (default INFO)
    CONDUCTOR_LOG_FILE: optional path of an additional log file
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_ROOT_LOGGER = "swarm_conductor"


def setup_logging(level: Optional[str] = None) -> None:
    """Configure swarm-conductor logging.

    Args:
        level: Optional override for `CONDUCTOR_LOG_LEVEL`.
    """
    if level:
        os.environ["CONDUCTOR_LOG_LEVEL"] = level

    resolved = os.getenv("CONDUCTOR_LOG_LEVEL", "INFO").upper()
    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(resolved)
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(_LOG_FORMAT)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    log_file = os.getenv("CONDUCTOR_LOG_FILE")
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
