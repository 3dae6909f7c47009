import logging
import os

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_logger(name: str, level: str | int | None = None) -> logging.Logger:
    """
    Returns a named logger.

    When the application has not configured the root logger, a single stream handler is attached and
    propagation is turned off; otherwise records propagate to the application's handlers.
    The level defaults to the ``PLANGRAPH_LOG_LEVEL`` environment variable, falling back to ``INFO``.

    :param name: Dotted logger name, e.g. ``plangraph.scheduler``.
    :param level: Optional explicit level overriding the environment.
    :return: The configured logger.
    """
    logger = logging.getLogger(name)

    if not logger.handlers and not logging.getLogger().handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False

    logger.setLevel(level or os.getenv("PLANGRAPH_LOG_LEVEL", "INFO").upper())
    return logger
