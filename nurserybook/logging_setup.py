from __future__ import annotations
import logging
import sys

_FORMAT = "%(asctime)s %(levelname)s %(name)s — %(message)s"


def setup_logging(level: str = "INFO") -> logging.Handler:
    """Configure the root logger with one stream handler (idempotent)."""
    root = logging.getLogger()
    root.setLevel(level)

    # avoid duplicate handlers on reload
    for h in root.handlers:
        if getattr(h, "_nurserybook", False):
            h.setLevel(level)
            return h

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.setLevel(level)
    handler._nurserybook = True
    root.addHandler(handler)

    # also wire uvicorn loggers (if present)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        lg = logging.getLogger(name)
        lg.setLevel(level)
        lg.propagate = False
        if handler not in lg.handlers:
            lg.addHandler(handler)

    return handler
