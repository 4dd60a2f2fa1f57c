import logging
import sys

LEVEL_TAGS = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "FATAL",
}


class TaggedFormatter(logging.Formatter):
    """Renders records as ``[LEVEL] message``."""

    def format(self, record):
        message = super().format(record)
        tag = LEVEL_TAGS.get(record.levelno, record.levelname)
        return f"[{tag}] {message}"


def setup_logging(debug=False, stream=None):
    root = logging.getLogger("vcall_tracer")
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(TaggedFormatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    root.propagate = False
    return root
