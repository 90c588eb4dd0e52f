"""Logging helpers shared by the service entry points."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILE_NAME = "conversation_module.log"


def setup_logging(log_dir: Optional[str] = None, level: int = logging.INFO) -> logging.Logger:
    """Configure root logging to the console and, if given, a rotating file in ``log_dir``.

    Calling it again replaces the handlers installed by a previous call
    rather than stacking duplicates.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, "_conversation_module", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console._conversation_module = True  # type: ignore[attr-defined]
    root.addHandler(console)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            path / LOG_FILE_NAME, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        file_handler._conversation_module = True  # type: ignore[attr-defined]
        root.addHandler(file_handler)

    # httpx logs every request at INFO; keep it quieter than our own records.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    return root
