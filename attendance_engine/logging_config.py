"""
Logging configuration for the Attendance Engine.

Every record carries the service name and device id of the engine that
emitted it; session-scoped components log through a SessionLogAdapter so
their messages are tagged with the capture session.
"""

import logging
import sys
from typing import Any, MutableMapping, Tuple

# Third-party loggers that are chatty at INFO (request lines, connection pool)
NOISY_LOGGERS = ('werkzeug', 'urllib3')


class EngineContextFilter(logging.Filter):
    """Add service and device context to log records."""

    def __init__(self, service_name: str, device_id: str):
        super().__init__()
        self.service_name = service_name
        self.device_id = device_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service_name
        record.device_id = self.device_id
        if not hasattr(record, 'session_id'):
            record.session_id = '-'
        return True


class SessionLogAdapter(logging.LoggerAdapter):
    """Logger adapter that tags messages with a capture session id."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get('extra') or {})
        extra['session_id'] = self.extra['session_id']
        kwargs['extra'] = extra
        return f"[session={self.extra['session_id']}] {msg}", kwargs


def setup_logging(device_id: str, debug: bool = False, service_name: str = 'attendance-engine') -> None:
    """
    Configure logging for the engine.

    Args:
        device_id: Device identifier for log context
        debug: Enable debug level logging (also for third-party loggers)
        service_name: Service name for log context
    """
    level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Clear existing handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] [%(service)s/%(device_id)s] %(name)s: %(message)s'
    ))
    console_handler.addFilter(EngineContextFilter(service_name, device_id))
    root_logger.addHandler(console_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level if debug else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def get_session_logger(logger: logging.Logger, session_id: str) -> SessionLogAdapter:
    """
    Wrap a module logger for one capture session.

    Args:
        logger: Module logger
        session_id: Session to tag messages with

    Returns:
        Adapter prefixing messages with the session id
    """
    return SessionLogAdapter(logger, {'session_id': session_id})
