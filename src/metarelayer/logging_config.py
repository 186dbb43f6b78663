import copy
import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/metarelayer.log")

HANDLERS = ["console", "file"]

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": sys.stdout,
        },
        "file": {
            "class": "logging.FileHandler",
            "formatter": "default",
            "filename": LOG_FILE,
            "mode": "a",
        },
    },
    "loggers": {
        "metarelayer": {"level": LOG_LEVEL, "handlers": HANDLERS, "propagate": False},
        # Per-request lines from the server and the HTTP/ledger clients are noise at INFO.
        "uvicorn.access": {"level": "WARNING", "handlers": HANDLERS, "propagate": False},
        "httpx": {"level": "WARNING", "handlers": HANDLERS, "propagate": False},
        "xrpl": {"level": "WARNING", "handlers": HANDLERS, "propagate": False},
    },
    "root": {
        "level": "WARNING",
        "handlers": HANDLERS,
    },
}


def setup_logging(level: str | None = None, log_file: str | None = None) -> dict:
    """Apply the logging configuration. Returns the dict that was applied.

    `level` and `log_file` override LOG_LEVEL / LOG_FILE for this process;
    an empty `log_file` ("") drops the file handler entirely.
    """
    cfg = copy.deepcopy(LOGGING_CONFIG)
    level = level or os.getenv("LOG_LEVEL")
    if level:
        cfg["loggers"]["metarelayer"]["level"] = level.upper()
    if log_file is not None:
        if log_file:
            cfg["handlers"]["file"]["filename"] = log_file
        else:
            del cfg["handlers"]["file"]
            for logger in (*cfg["loggers"].values(), cfg["root"]):
                logger["handlers"] = ["console"]
    logging.config.dictConfig(cfg)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
    return cfg
