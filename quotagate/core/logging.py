from __future__ import annotations

import logging
import sys

from quotagate.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Install a single stream handler on the package logger; repeated calls only adjust the level.
    settings = get_settings()
    resolved = (level or settings.log_level).upper()
    root = logging.getLogger("quotagate")
    root.setLevel(resolved)
    if not any(getattr(handler, "_quotagate", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._quotagate = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    # Keep driver chatter out of quota decision logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
