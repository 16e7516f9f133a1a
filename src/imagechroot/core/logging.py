"""
imagechroot structured logging.

Provides structured logging for every pipeline stage and external command,
so a failed mount or teardown can be reconstructed from the log afterwards.

Log lines carry the id of the session that produced them (bound through
structlog context variables), commands are rendered as a single shell-like
string, and values under secret-looking keys never reach a handler.
"""

from __future__ import annotations

import logging
import shlex
import sys
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import EventDict, WrappedLogger

if TYPE_CHECKING:
    from imagechroot.core.config import LoggingConfig


_configured = False

SECRET_KEY_PARTS = ("pass", "secret", "token", "keyfile_content")

REDACTED = "<redacted>"


def add_timestamp(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add ISO format timestamp to log events."""
    event_dict["timestamp"] = datetime.now().isoformat()
    return event_dict


def add_log_level(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add log level to event dict."""
    event_dict["level"] = method_name.upper()
    return event_dict


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in SECRET_KEY_PARTS)


def redact_secrets(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Replace the value of any passphrase-like field."""
    for key in list(event_dict):
        if key != "event" and is_secret_key(key):
            event_dict[key] = REDACTED
    return event_dict


def format_command(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Render an argv list as one quoted command line."""
    command = event_dict.get("command")
    if isinstance(command, (list, tuple)):
        event_dict["command"] = shlex.join(str(part) for part in command)
    return event_dict


def bind_session(session_id: str) -> None:
    """Tag every following log line with ``session_id``."""
    structlog.contextvars.bind_contextvars(session=session_id[:8])


def clear_session() -> None:
    structlog.contextvars.unbind_contextvars("session")


def _build_handlers(config: LoggingConfig) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []

    if config.console_enabled:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, config.level))
        handlers.append(console_handler)

    if config.file_enabled:
        config.log_directory.mkdir(parents=True, exist_ok=True)
        log_file = config.log_directory / f"imagechroot_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)  # Always log everything to file
        handlers.append(file_handler)

    return handlers


def setup_logging(config: LoggingConfig) -> None:
    """Configure structured logging for imagechroot. Only the first call applies."""
    global _configured

    if _configured:
        return

    logging.basicConfig(
        level=logging.DEBUG,
        handlers=_build_handlers(config),
        format="%(message)s",
    )

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_timestamp,
        add_log_level,
        redact_secrets,
        format_command,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if config.json_format:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name or "imagechroot")


class OperationLogger:
    """
    Logs the start, completion or failure of one pipeline stage.

    Context passed at construction or through ``update()`` is attached to the
    closing line together with the stage duration.
    """

    def __init__(
        self,
        operation: str,
        logger: structlog.stdlib.BoundLogger | None = None,
        **context: Any,
    ):
        self.operation = operation
        self.logger = logger or get_logger()
        self.context = context
        self.start_time: datetime | None = None

    def __enter__(self) -> OperationLogger:
        self.start_time = datetime.now()
        self.logger.info(
            f"Starting {self.operation}",
            operation=self.operation,
            **self.context,
        )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        if exc_type is not None:
            self.logger.error(
                f"Failed {self.operation}",
                operation=self.operation,
                duration_seconds=self.duration_seconds,
                error_type=exc_type.__name__,
                error=str(exc_val),
                **self.context,
            )
        else:
            self.logger.info(
                f"Completed {self.operation}",
                operation=self.operation,
                duration_seconds=self.duration_seconds,
                **self.context,
            )

    @property
    def duration_seconds(self) -> float:
        if self.start_time is None:
            return 0.0
        return (datetime.now() - self.start_time).total_seconds()

    def update(self, **additional_context: Any) -> None:
        """Update the operation context."""
        self.context.update(additional_context)
