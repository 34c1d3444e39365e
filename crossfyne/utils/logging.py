#!/usr/bin/env python3
"""
crossfyne - Logging Utilities

Console-first logging for the cross-compilation driver.

Key Responsibilities:
- Verbosity modes (silent, info, debug) shared by every component
- Marker-prefixed console output ([i], [✓], [!])
- Optional rotating log file configured from YAML
- Timing and exception-logging decorators for pipeline steps
"""

import sys
import logging
import logging.handlers
import threading
import time
import functools
from pathlib import Path
from typing import Dict, Optional, Any, Union
from dataclasses import dataclass
from enum import Enum

import yaml


# ============================================================================
# ENUMS AND CONSTANTS
# ============================================================================

class LogLevel(Enum):
    """Driver log levels"""
    DEBUG = 10
    INFO = 20
    SUCCESS = 25  # Custom level for completed steps
    WARNING = 30
    ERROR = 40
    CRITICAL = 50


class Verbosity(Enum):
    """User-facing verbosity modes"""
    SILENT = "silent"
    INFO = "info"
    DEBUG = "debug"


class LogFormat(Enum):
    """Log output formats"""
    MINIMAL = "minimal"
    STANDARD = "standard"
    DETAILED = "detailed"


VERBOSITY_LEVELS = {
    Verbosity.SILENT: LogLevel.ERROR,
    Verbosity.INFO: LogLevel.INFO,
    Verbosity.DEBUG: LogLevel.DEBUG,
}

MARKERS = {
    logging.DEBUG: "[i]",
    logging.INFO: "[i]",
    LogLevel.SUCCESS.value: "[✓]",
    logging.WARNING: "[!]",
    logging.ERROR: "[!]",
    logging.CRITICAL: "[!]",
}

ROOT_LOGGER = "crossfyne"


# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass
class LoggerConfig:
    """Configuration for the driver loggers"""
    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.MINIMAL
    file_path: Optional[str] = None
    file_format: LogFormat = LogFormat.DETAILED
    max_file_size_mb: int = 10
    backup_count: int = 3


# ============================================================================
# CUSTOM FORMATTERS
# ============================================================================

class StructuredFormatter(logging.Formatter):
    """Formatter switching between marker, standard and detailed layouts"""

    def __init__(self, format_type: LogFormat = LogFormat.MINIMAL):
        super().__init__()
        self.format_type = format_type

        self.formats = {
            LogFormat.STANDARD: "%(asctime)s - %(name)s - [%(levelname)s] - %(message)s",
            LogFormat.DETAILED: "%(asctime)s - %(name)s - [%(levelname)s] - %(filename)s:%(lineno)d - %(funcName)s() - %(message)s",
            LogFormat.MINIMAL: None,  # Special handling
        }

    def format(self, record: logging.LogRecord) -> str:
        if self.format_type == LogFormat.MINIMAL:
            marker = MARKERS.get(record.levelno, "[i]")
            message = f"{marker} {record.getMessage()}"
            if record.exc_info and record.levelno >= logging.ERROR and \
                    logging.getLogger(ROOT_LOGGER).isEnabledFor(logging.DEBUG):
                message += "\n" + self.formatException(record.exc_info)
            return message

        formatter = logging.Formatter(self.formats[self.format_type], datefmt='%Y-%m-%d %H:%M:%S')
        return formatter.format(record)


# ============================================================================
# LOGGING MANAGER
# ============================================================================

class LoggingManager:
    """
    Logging manager for the crossfyne driver.

    All driver loggers live below the ``crossfyne`` logger; handlers are attached
    there once so module loggers only propagate.
    """

    def __init__(self):
        self.config = LoggerConfig()
        self._handlers: list = []
        self._initialized = False
        self._lock = threading.Lock()

        logging.addLevelName(LogLevel.SUCCESS.value, "SUCCESS")

    def initialize(self, config_file: Optional[Path] = None,
                   default_level: LogLevel = LogLevel.INFO):
        """
        Initialize the logging system.

        Args:
            config_file: Optional YAML file with a ``logging`` section
            default_level: Default logging level
        """
        with self._lock:
            if self._initialized:
                return

            self.config.level = default_level
            if config_file and Path(config_file).exists():
                self._load_config_file(Path(config_file))

            self._setup_root_logger()
            self._initialized = True

    def _load_config_file(self, config_file: Path):
        """Load the logging section of a YAML configuration file"""
        with open(config_file, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        settings = config_data.get('logging', {}) or {}
        if 'format' in settings:
            self.config.format = LogFormat(settings['format'])
        if 'file' in settings:
            self.config.file_path = settings['file']
        self.config.max_file_size_mb = settings.get('max_file_size_mb', self.config.max_file_size_mb)
        self.config.backup_count = settings.get('backup_count', self.config.backup_count)

    def _setup_root_logger(self):
        logger = logging.getLogger(ROOT_LOGGER)

        for handler in self._handlers:
            logger.removeHandler(handler)
            handler.close()
        self._handlers = []

        logger.setLevel(self.config.level.value)
        logger.propagate = False

        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(StructuredFormatter(self.config.format))
        self._handlers.append(console)

        if self.config.file_path:
            log_file = Path(self.config.file_path)
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=self.config.max_file_size_mb * 1024 * 1024,
                backupCount=self.config.backup_count
            )
            file_handler.setFormatter(StructuredFormatter(self.config.file_format))
            file_handler.setLevel(logging.DEBUG)
            self._handlers.append(file_handler)

        for handler in self._handlers:
            logger.addHandler(handler)

    def get_logger(self, name: str) -> logging.Logger:
        """
        Get a logger below the driver root.

        Args:
            name: Logger name, usually ``__name__``

        Returns:
            logging.Logger: Logger propagating to the driver handlers
        """
        if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
            name = f"{ROOT_LOGGER}.{name}"
        logger = logging.getLogger(name)
        self._add_success_method(logger)
        return logger

    @staticmethod
    def _add_success_method(logger: logging.Logger):
        if hasattr(logger, 'success'):
            return

        def success(message: str, *args, **kwargs):
            if logger.isEnabledFor(LogLevel.SUCCESS.value):
                logger._log(LogLevel.SUCCESS.value, message, args, **kwargs)

        logger.success = success

    def set_global_level(self, level: LogLevel):
        """Set the level of the driver root logger"""
        with self._lock:
            self.config.level = level
            logging.getLogger(ROOT_LOGGER).setLevel(level.value)

    def set_verbosity(self, verbosity: Union[str, Verbosity]):
        if isinstance(verbosity, str):
            verbosity = Verbosity(verbosity.lower())
        self.set_global_level(VERBOSITY_LEVELS[verbosity])

    def cleanup(self):
        """Detach and close the driver handlers"""
        with self._lock:
            logger = logging.getLogger(ROOT_LOGGER)
            for handler in self._handlers:
                logger.removeHandler(handler)
                handler.close()
            self._handlers = []
            self._initialized = False


# ============================================================================
# GLOBAL LOGGING MANAGER INSTANCE
# ============================================================================

_logging_manager: Optional[LoggingManager] = None


def setup_logging(config_file: Optional[Path] = None,
                  level: Union[str, LogLevel] = LogLevel.INFO) -> LoggingManager:
    """
    Setup driver logging.

    Args:
        config_file: Optional YAML configuration file
        level: Default logging level

    Returns:
        LoggingManager: Configured logging manager
    """
    global _logging_manager

    if _logging_manager is None:
        _logging_manager = LoggingManager()

    if isinstance(level, str):
        level = LogLevel[level.upper()]

    if config_file is not None:
        # reload handlers with the file settings
        _logging_manager.cleanup()
    _logging_manager.initialize(config_file=config_file, default_level=level)
    return _logging_manager


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Get a driver logger, initializing logging with defaults on first use"""
    global _logging_manager

    if _logging_manager is None:
        _logging_manager = setup_logging()

    return _logging_manager.get_logger(name)


def set_verbosity(verbosity: Union[str, Verbosity]):
    setup_logging().set_verbosity(verbosity)


# ============================================================================
# DECORATORS
# ============================================================================

def log_performance(logger_name: str = ROOT_LOGGER, threshold_ms: float = 1000.0):
    """
    Decorator logging slow calls at debug level.

    Args:
        logger_name: Logger name to use
        threshold_ms: Minimum execution time to log
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                execution_time = (time.perf_counter() - start_time) * 1000
                if execution_time >= threshold_ms:
                    get_logger(logger_name).debug(
                        f"{func.__name__} took {execution_time:.2f}ms"
                    )
        return wrapper
    return decorator



def log_exceptions(logger_name: str = ROOT_LOGGER, expected: tuple = ()):
    """
    Decorator logging unexpected exceptions with their traceback.

    The exception is always re-raised. Exceptions listed in ``expected`` are
    reported by the caller and pass through unlogged.

    Args:
        logger_name: Logger name to use
        expected: Exception types not to log
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except expected:
                raise
            except Exception as e:
                get_logger(logger_name).error(
                    f"Exception in {func.__name__}: {e}",
                    exc_info=True,
                    extra={
                        'function_name': func.__name__,
                        'module_name': func.__module__,
                        'exception_type': type(e).__name__
                    }
                )
                raise
        return wrapper
    return decorator
