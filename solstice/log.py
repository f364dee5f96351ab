import logging
from typing import Optional

from .config import get_settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Attach a stream handler to the ``solstice`` logger tree once."""
    root = logging.getLogger("solstice")
    root.setLevel((level or get_settings().log_level or "INFO").upper())
    if any(getattr(h, "_solstice", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._solstice = True  # type: ignore[attr-defined]
    root.addHandler(handler)


__all__ = ["configure_logging"]
