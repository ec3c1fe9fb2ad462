from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Tuple

ROOT_LOGGER = "mcphost"
DEBUG_ENV = "MCPHOST_DEBUG"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def debug_from_env() -> bool:
    return os.environ.get(DEBUG_ENV, "").strip().lower() in {"1", "true", "yes", "on"}


def create_session_logger(*, log_dir: str, debug: bool) -> Tuple[logging.Logger, str]:
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = directory / f"session_{timestamp}.log"

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_FORMAT))
    logger.addHandler(handler)

    if debug or debug_from_env():
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.DEBUG)
        console.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(console)

    return logger, str(log_path)
