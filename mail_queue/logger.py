"""Logging helpers for the mail queue service."""

import logging

ROOT_LOGGER_NAME = "MailQueue"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a :class:`logging.Logger` living under the service namespace.

    Handlers and levels are configured once via ``logging.basicConfig()`` in
    the ``main.py`` entry point, so this helper never attaches handlers.
    """
    if not name:
        return logging.getLogger(ROOT_LOGGER_NAME)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
