"""Logging configuration for the shield CLI and services."""

import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: int | str = logging.INFO, format_string: str | None = None) -> None:
    # stdout carries verdicts and tables; diagnostics go to stderr.
    logging.basicConfig(
        level=level,
        format=format_string or LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    for name in ("shield", "alerting"):
        logging.getLogger(name).setLevel(level)
    # Third-party chatter stays at WARNING unless we are debugging.
    noisy = logging.DEBUG if level == logging.DEBUG else logging.WARNING
    for name in ("urllib3", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(noisy)
