import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the kartops logger tree."""
    root = logging.getLogger("kartops")
    root.setLevel(level)
    if any(getattr(h, "_kartops_handler", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._kartops_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
