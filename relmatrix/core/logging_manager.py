from __future__ import annotations

import logging
import logging.handlers
import os
import pathlib
import sys
from typing import Any, Dict, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from relmatrix.core.base import RelmatrixManager
from relmatrix.utils.exceptions import ManagerInitializationError


def get_logger(name: str) -> Any:
    """Get a structured logger for a component."""
    return structlog.get_logger(name)


class LoggingManager(RelmatrixManager):
    """Manages logging configuration for a release run.

    Configures Python's logging module with console and file handlers based
    on the ``logging`` configuration section, and routes structlog through
    the standard library so component loggers share those handlers. Each
    record carries the bound context (target, tag) as extra fields.
    """

    # Mapping from string log levels to logging module constants
    LOG_LEVELS = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    def __init__(self, config_manager: Any) -> None:
        """Initialize the Logging Manager.

        Args:
            config_manager: The Configuration Manager to use for logging settings.
        """
        super().__init__(name="logging_manager")
        self._config_manager = config_manager
        self._root_logger: Optional[logging.Logger] = None
        self._file_handler: Optional[logging.Handler] = None
        self._console_handler: Optional[logging.Handler] = None
        self._handlers: List[logging.Handler] = []

    def initialize(self) -> None:
        """Set up handlers and structlog.

        Raises:
            ManagerInitializationError: If initialization fails.
        """
        try:
            logging_config = self._config_manager.get("logging", {}) or {}
            log_level = self._level(logging_config.get("level", "INFO"))
            log_format = str(logging_config.get("format", "text")).lower()

            self._root_logger = logging.getLogger()
            self._root_logger.setLevel(log_level)

            for handler in list(self._root_logger.handlers):
                self._root_logger.removeHandler(handler)

            json_output = log_format == "json"
            formatter = self._create_formatter(json_output)

            console_config = logging_config.get("console", {})
            if console_config.get("enabled", True):
                self._console_handler = logging.StreamHandler(sys.stderr)
                self._console_handler.setLevel(self._level(console_config.get("level", "INFO")))
                self._console_handler.setFormatter(formatter)
                self._add_handler(self._console_handler)

            file_config = logging_config.get("file", {})
            if file_config.get("enabled", False):
                file_path = pathlib.Path(file_config.get("path", "logs/relmatrix.log"))
                os.makedirs(file_path.parent, exist_ok=True)

                rotation = file_config.get("rotation", "10 MB")
                retention = file_config.get("retention", "5 days")

                # Parse rotation (e.g., "10 MB")
                if isinstance(rotation, str) and "MB" in rotation:
                    max_bytes = int(rotation.split()[0]) * 1024 * 1024
                else:
                    max_bytes = 10 * 1024 * 1024

                # Parse retention (e.g., "5 days")
                if isinstance(retention, str) and "days" in retention:
                    backup_count = int(retention.split()[0])
                else:
                    backup_count = 5

                self._file_handler = logging.handlers.RotatingFileHandler(
                    file_path,
                    maxBytes=max_bytes,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
                self._file_handler.setLevel(log_level)
                self._file_handler.setFormatter(formatter)
                self._add_handler(self._file_handler)

            self._configure_structlog(json_output)

            self._root_logger.debug(
                "Logging Manager initialized",
                extra={"manager": "LoggingManager", "event": "initialization"},
            )

            self._initialized = True
            self._healthy = True

        except Exception as e:
            raise ManagerInitializationError(
                f"Failed to initialize LoggingManager: {str(e)}",
                manager_name=self.name,
            ) from e

    def _level(self, name: Any) -> int:
        return self.LOG_LEVELS.get(str(name).lower(), logging.INFO)

    def _add_handler(self, handler: logging.Handler) -> None:
        self._root_logger.addHandler(handler)
        self._handlers.append(handler)

    def _create_formatter(self, json_output: bool) -> logging.Formatter:
        """Create the formatter shared by all handlers.

        Args:
            json_output: Emit one JSON object per record instead of text.

        Returns:
            logging.Formatter: The formatter for console and file handlers.
        """
        if json_output:
            return jsonlogger.JsonFormatter(
                fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S%z",
                json_ensure_ascii=False,
            )
        return structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=False),
            foreign_pre_chain=[
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
            ],
        )

    def _configure_structlog(self, json_output: bool) -> None:
        """Configure structlog for structured logging.

        In JSON mode the bound context is passed to the JSON formatter as
        record extras; otherwise structlog renders the record itself.
        """
        if json_output:
            processors = [
                structlog.stdlib.filter_by_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.stdlib.render_to_log_kwargs,
            ]
        else:
            processors = [
                structlog.stdlib.filter_by_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ]
        structlog.configure(
            processors=processors,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    def get_logger(self, name: str) -> Any:
        """Get a logger for a specific component.

        Args:
            name: The name of the component requesting a logger.

        Returns:
            A structlog logger bound to the standard library handlers.
        """
        return get_logger(name)

    def shutdown(self) -> None:
        """Flush and close every handler this manager installed."""
        if not self._initialized:
            return

        for handler in self._handlers:
            try:
                handler.flush()
                handler.close()
            finally:
                if self._root_logger:
                    self._root_logger.removeHandler(handler)
        self._handlers.clear()

        self._initialized = False
        self._healthy = False

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status["handlers"] = [type(h).__name__ for h in self._handlers]
        return status
