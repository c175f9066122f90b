from __future__ import annotations

import logging
import sys

_HANDLER_NAME = "ledgerfolio-stdout"


def setup_logging(level: str | int = "INFO") -> None:
    """Configure root logging to stdout once, quieting chatty libraries."""
    root_logger = logging.getLogger()
    if not any(getattr(h, "name", None) == _HANDLER_NAME for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(handler)

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root_logger.setLevel(level)

    for noisy in ("sqlalchemy", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
