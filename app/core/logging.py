"""
Logging setup shared by the API process and the background jobs.

Every module logs through `logging.getLogger(__name__)`; this installs a
single stdout handler on the `app` logger so gunicorn / the platform log
collector picks everything up.
"""
import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger("app")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)

    # Uvicorn / gunicorn own the root logger; don't double-print.
    logger.propagate = False
    return logger
