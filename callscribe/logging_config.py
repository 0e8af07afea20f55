"""Process-wide logging setup from LOG_LEVEL / LOG_FILE."""
from __future__ import annotations

import logging
import os

from callscribe.config import Settings, get_settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    s = settings or get_settings()
    level = getattr(logging, (s.LOG_LEVEL or "INFO").upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if s.LOG_FILE:
        os.makedirs(os.path.dirname(s.LOG_FILE) or ".", exist_ok=True)
        handlers.append(logging.FileHandler(s.LOG_FILE, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))
