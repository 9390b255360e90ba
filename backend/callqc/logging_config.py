"""
Logging configuration for CallQC.
Rotating file output plus console, with one named logger per pipeline component.
"""
import functools
import logging
import logging.handlers
import time
from pathlib import Path

COMPONENT_LOGGERS = (
    'callqc.api',
    'callqc.webhook',
    'callqc.queue',
    'callqc.workers',
    'callqc.stt',
    'callqc.llm',
    'callqc.notifications',
    'callqc.digest',
    'callqc.database',
    'callqc.storage',
    'callqc.scheduler',
    'callqc.startup',
)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'


def setup_logging(log_level: str = "INFO", log_file: str = "logs/callqc.log"):
    """
    Set up logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file

    Returns:
        Mapping of component logger names to loggers
    """
    log_dir = Path(log_file).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=10*1024*1024,  # 10MB
        backupCount=5
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    # Replace handlers installed by a previous call (reloads, tests)
    for handler in list(root_logger.handlers):
        if getattr(handler, "_callqc", False):
            root_logger.removeHandler(handler)
            handler.close()
    for handler in (file_handler, console_handler):
        handler._callqc = True
        root_logger.addHandler(handler)

    loggers = {name: logging.getLogger(name) for name in COMPONENT_LOGGERS}
    for logger in loggers.values():
        logger.setLevel(level)

    return loggers


def log_app_error(logger: logging.Logger, error: Exception, context: str = "") -> None:
    """Log operational errors as warnings and everything else with a stack."""
    prefix = f"{context}: " if context else ""
    if getattr(error, "is_operational", False):
        logger.warning(f"{prefix}{error}")
    else:
        logger.error(f"{prefix}{error}", exc_info=error)


def log_function_call(func):
    """
    Decorator to log function calls with parameters and return values.
    Useful for debugging store and service operations.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(f'callqc.{func.__module__.rsplit(".", 1)[-1]}')
        logger.debug(f"Entering {func.__name__} with args={args[1:]}, kwargs={kwargs}")
        try:
            result = func(*args, **kwargs)
            logger.debug(f"Exiting {func.__name__}")
            return result
        except Exception as e:
            log_app_error(logger, e, f"Error in {func.__name__}")
            raise

    return wrapper


class PerformanceMonitor:
    """Time an operation; `duration_ms` is available after the block exits."""

    def __init__(self, operation_name: str, logger_name: str = 'callqc.performance'):
        self.operation_name = operation_name
        self.start_time = None
        self.duration_ms = 0
        self.logger = logging.getLogger(logger_name)

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"Starting {self.operation_name}")
        return self

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.start_time) * 1000)

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = self.elapsed_ms()
        if exc_type:
            self.logger.debug(f"Failed {self.operation_name} after {self.duration_ms}ms: {exc_val}")
        else:
            self.logger.info(f"Completed {self.operation_name} in {self.duration_ms}ms")
        return False
