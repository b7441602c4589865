import logging
import logging.config
import os
import sys

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "/tmp/inscriber.log")
# The run log as the API shows it: one line per LogEvent, no source location
EVENTS_FILE = os.getenv("EVENTS_FILE", "/tmp/inscriber-events.log")

_QUIET = ("uvicorn.access", "httpx", "websockets")


def build_logging_config(log_file: str = LOG_FILE, events_file: str = EVENTS_FILE, level: str = LOG_LEVEL) -> dict:
    """dictConfig for the service.

    ``inscriber.engine`` carries the run's events and goes to its own file
    with a short format; everything else under ``inscriber`` gets the
    diagnostic format with logger name and line number.
    """
    handlers = ["console", "file"]
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)-6s %(name)8s:%(lineno)d %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "events": {
                "format": "%(asctime)s.%(msecs)03d %(levelname)-7s %(message)s",
                "datefmt": "%H:%M:%S",
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
                "filename": log_file,
                "mode": "a",
            },
            "events": {
                "class": "logging.FileHandler",
                "formatter": "events",
                "filename": events_file,
                "mode": "a",
            },
        },
        "loggers": {
            "inscriber": {
                "level": level,
                "handlers": handlers,
                "propagate": False,
            },
            "inscriber.engine": {
                "level": level,
                "handlers": ["console", "events"],
                "propagate": False,
            },
            "fastapi": {
                "level": "INFO",
                "handlers": handlers,
                "propagate": False,
            },
        },
        "root": {
            "level": "WARNING",
            "handlers": handlers,
        },
    }
    # every RPC call is a request; keep these to warnings
    for name in _QUIET:
        config["loggers"][name] = {"level": "WARNING", "handlers": handlers, "propagate": False}
    return config


LOGGING_CONFIG = build_logging_config()


def setup_logging(config: dict | None = None):
    """ Apply the logging configuration. """
    logging.config.dictConfig(config or LOGGING_CONFIG)
    os.environ.setdefault("PYTHONUNBUFFERED", "1")
