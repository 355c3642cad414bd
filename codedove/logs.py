"""Centralized logging configuration for codedove - file logging plus an in-memory buffer of recent entries."""
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Deque, List, Optional

# Global state for logging configuration
_log_enabled = False
_log_file = None
_is_configured = False

MAX_BUFFER = 1000


@dataclass
class LogEntry:
    """One buffered log line, as shown by dashboard-style consumers"""
    time: str
    message: str
    chat_id: Optional[int] = None
    direction: Optional[str] = None  # "in" | "out"


_buffer: Deque[LogEntry] = deque(maxlen=MAX_BUFFER)
_listeners: List[Callable[[LogEntry], None]] = []


class MillisecondFormatter(logging.Formatter):
    def formatTime(self, record, datefmt=None):
        ct = datetime.fromtimestamp(record.created)
        if datefmt:
            s = ct.strftime(datefmt)[:-3]  # Remove last 3 digits to get milliseconds
        else:
            s = ct.strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
        return s


def setup_logging(log_file_path: Optional[str] = None, mode: str = 'w') -> None:
    """Set up centralized logging configuration with optional file output."""
    global _log_enabled, _log_file, _is_configured

    if _is_configured:
        return

    if log_file_path:
        _log_enabled = True
        _log_file = Path(log_file_path)

    if not _log_enabled:
        return

    _log_file.parent.mkdir(parents=True, exist_ok=True)

    # Clear any existing handlers on the root logger to prevent console output
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    file_handler = logging.FileHandler(str(_log_file), mode=mode)
    file_handler.setLevel(logging.DEBUG)
    formatter = MillisecondFormatter('[%(asctime)s] [%(levelname)s] %(message)s', datefmt='%Y-%m-%d %H:%M:%S.%f')
    file_handler.setFormatter(formatter)

    root_logger.addHandler(file_handler)
    root_logger.setLevel(logging.DEBUG)

    # Observer threads and the event loop are chatty at DEBUG
    logging.getLogger('watchdog').setLevel(logging.WARNING)
    logging.getLogger('watchdog.observers').setLevel(logging.WARNING)
    logging.getLogger('watchdog.observers.inotify_buffer').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    _is_configured = True

    logger = get_logger(__name__)
    logger.info("Logging initialized")


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the specified module name."""
    return logging.getLogger(name)


def _record(message: str, chat_id: Optional[int] = None, direction: Optional[str] = None) -> None:
    entry = LogEntry(
        time=datetime.now().strftime('%H:%M:%S'),
        message=message,
        chat_id=chat_id,
        direction=direction,
    )
    _buffer.append(entry)
    for listener in list(_listeners):
        try:
            listener(entry)
        except Exception as e:
            get_logger(__name__).warning(f"Log listener failed: {e}")


def log_message(level: str, message: str, logger_name: Optional[str] = None,
                chat_id: Optional[int] = None, direction: Optional[str] = None) -> None:
    """Log a message, buffer it for listeners, and echo errors to stdout."""

    if level in ["ERROR", "CRITICAL"]:
        print(message)

    if level.upper() != "DEBUG":
        _record(message, chat_id, direction)

    if not _log_enabled:
        return

    logger = get_logger(logger_name or __name__)

    # Get caller information
    import inspect
    frame = inspect.currentframe()
    try:
        caller_frame = frame.f_back

        # Skip our own wrappers so the caller of log_error shows up instead
        if caller_frame and caller_frame.f_code.co_name in ('log_message', 'handler'):
            caller_frame = caller_frame.f_back

        if caller_frame:
            filename = caller_frame.f_code.co_filename.split('/')[-1]
            formatted_message = f"[{filename}:{caller_frame.f_lineno}] {message}"
        else:
            formatted_message = message

        if level.upper() == "DEBUG":
            logger.debug(formatted_message)
        else:
            getattr(logger, level.lower(), logger.info)(formatted_message)
    finally:
        del frame


def log_error(context: str) -> Callable[[BaseException], None]:
    """Return a handler that logs an absorbed exception with context.

    Example::

        try:
            await on_waiting(state)
        except Exception as e:
            log_error("notification")(e)
    """
    def handler(exc: BaseException) -> None:
        log_message("WARNING", f"{context} error: {exc}")
    return handler


def get_recent_logs() -> List[LogEntry]:
    """Return a snapshot of the buffered log entries, oldest first."""
    return list(_buffer)


def clear_logs() -> None:
    _buffer.clear()


def add_log_listener(listener: Callable[[LogEntry], None]) -> None:
    _listeners.append(listener)


def remove_log_listener(listener: Callable[[LogEntry], None]) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


def is_logging_enabled() -> bool:
    """Check if logging is enabled."""
    return _log_enabled


def get_log_file() -> Optional[Path]:
    """Get the current log file path."""
    return _log_file
