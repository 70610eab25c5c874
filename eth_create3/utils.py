"""Script utilities."""

import logging
import os
from pathlib import Path

import coloredlogs


def setup_console_logging(
    default_log_level="info",
    log_file: Path | None = None,
) -> logging.Logger:
    """Set up coloured log output for scripts.

    - Log level comes from the ``LOG_LEVEL`` environment variable

    - Tune down some noisy dependency library logging

    :param log_file:
        Also write the log to this file, always at least at ``INFO`` level

    :return:
        Root logger
    """
    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert isinstance(numeric_level, int), f"No log level: {level}"

    fmt = "%(asctime)s %(name)-30s %(message)s"
    date_fmt = "%H:%M:%S"
    coloredlogs.install(level=numeric_level, fmt=fmt, datefmt=date_fmt)

    if log_file:
        assert isinstance(log_file, Path), "log_file must be a Path"
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(min(logging.INFO, numeric_level))
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))
        root = logging.getLogger()
        root.setLevel(min(logging.INFO, numeric_level))
        root.addHandler(file_handler)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return logging.getLogger()
