# Centralized logging configuration
import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level="INFO"):
    """Attach a console handler to the root logger once."""
    root = logging.getLogger()
    root.setLevel(level)

    # Avoid adding handlers multiple times
    if not any(getattr(h, "_e2recycle", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._e2recycle = True
        root.addHandler(handler)

    return root
