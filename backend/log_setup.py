import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    """
    Configure root logging with a single stderr handler.
    Safe to call more than once (existing handlers are replaced).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root.addHandler(handler)

    logging.captureWarnings(True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
