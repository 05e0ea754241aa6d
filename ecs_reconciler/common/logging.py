#  SPDX-License-Identifier: MPL-2.0
#  Copyright 2020-2022 John Mille <john@compose-x.io>


from __future__ import annotations

import logging as logthings
import sys

LOGGER_NAME = "ecs-reconciler"
VALID_LEVELS = [
    "FATAL",
    "CRITICAL",
    "ERROR",
    "WARNING",
    "WARN",
    "INFO",
    "DEBUG",
]


class ReconcilerFormatter(logthings.Formatter):
    """
    DEBUG records show the thread running the step, named after its batch.
    """

    default_format = "%(asctime)s [%(levelname)8s] %(message)s"
    debug_format = "%(asctime)s [%(levelname)8s] (%(threadName)s %(filename)s.%(lineno)d , %(funcName)s,) %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    def format(self, record) -> str:
        if record.levelno == logthings.DEBUG:
            formatter = logthings.Formatter(self.debug_format, self.date_format)
        else:
            formatter = logthings.Formatter(self.default_format, self.date_format)
        return formatter.format(record)


class InfoFilter(logthings.Filter):
    """Lets through the plan and apply progress, sent to stdout"""

    def filter(self, rec):
        return rec.levelno <= logthings.INFO


class ErrorFilter(logthings.Filter):
    """Lets through failed steps, skips and retries, sent to stderr"""

    def filter(self, rec):
        return rec.levelno > logthings.INFO


def setup_logging():
    """
    Sets up the application logger, with INFO and DEBUG going to stdout and the rest to stderr.
    Handlers are attached to the application logger only, so libraries logging (boto3) is left untouched.
    """
    app_logger = logthings.getLogger(LOGGER_NAME)

    for h in list(app_logger.handlers):
        app_logger.removeHandler(h)

    stdout_handler = logthings.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(ReconcilerFormatter())
    stdout_handler.setLevel(logthings.DEBUG)
    stdout_handler.addFilter(InfoFilter())

    stderr_handler = logthings.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(ReconcilerFormatter())
    stderr_handler.setLevel(logthings.WARNING)
    stderr_handler.addFilter(ErrorFilter())

    app_logger.addHandler(stdout_handler)
    app_logger.addHandler(stderr_handler)
    app_logger.setLevel(logthings.INFO)
    return app_logger


def set_log_level(level: str) -> None:
    """
    Changes the application logger level.

    :param str level: name of the level, i.e. DEBUG
    :raises ValueError: if the level name is not valid
    """
    if not isinstance(level, str) or level.upper() not in VALID_LEVELS:
        raise ValueError(f"Log level value {level} is invalid. Must be one of {VALID_LEVELS}")
    LOG.setLevel(logthings.getLevelName(level.upper()))


LOG = setup_logging()
