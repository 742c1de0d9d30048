"""Logging setup for tabstream."""

import logging
import sys

from tabstream.config import CONFIG

# Third-party loggers that follow CDP_LOGGING_LEVEL instead of the tabstream level
THIRD_PARTY_LOGGERS = ('cdp_use', 'websockets', 'httpx', 'httpcore', 'bubus')

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _parse_level(level: str | int | None, default: int) -> int:
    if level is None:
        return default
    if isinstance(level, int):
        return level
    return getattr(logging, level.upper(), default)


def setup_logging(
    level: str | int | None = None,
    stream=None,
    debug_log_file: str | None = None,
    info_log_file: str | None = None,
    force: bool = False,
) -> logging.Logger:
    """Configure the `tabstream` logger tree.

    Args:
        level: Log level for tabstream loggers. Defaults to TABSTREAM_LOGGING_LEVEL.
        stream: Stream for the console handler. Defaults to stderr.
        debug_log_file: Optional file receiving DEBUG and above.
        info_log_file: Optional file receiving INFO and above.
        force: Replace handlers installed by an earlier call.

    Returns:
        The configured `tabstream` logger.
    """
    log_level = _parse_level(level or CONFIG.LOGGING_LEVEL, logging.INFO)
    cdp_level = _parse_level(CONFIG.CDP_LOGGING_LEVEL, logging.WARNING)
    debug_log_file = debug_log_file or CONFIG.DEBUG_LOG_FILE
    info_log_file = info_log_file or CONFIG.INFO_LOG_FILE

    root_logger = logging.getLogger('tabstream')
    if root_logger.handlers and not force:
        root_logger.setLevel(log_level)
        return root_logger

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(stream or sys.stderr)
    console.setFormatter(formatter)
    console.setLevel(log_level)
    root_logger.addHandler(console)

    if debug_log_file:
        debug_handler = logging.FileHandler(debug_log_file, encoding='utf-8')
        debug_handler.setFormatter(formatter)
        debug_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(debug_handler)

    if info_log_file:
        info_handler = logging.FileHandler(info_log_file, encoding='utf-8')
        info_handler.setFormatter(formatter)
        info_handler.setLevel(logging.INFO)
        root_logger.addHandler(info_handler)

    # File handlers may want more detail than the console
    root_logger.setLevel(logging.DEBUG if debug_log_file else log_level)
    root_logger.propagate = False

    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(cdp_level)

    return root_logger
