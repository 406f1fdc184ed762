import logging
import sys
import json
from datetime import datetime, timezone

_CONTEXT_FIELDS = ("request_id", "subject_id", "job_id", "ledger_id")


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for production environments"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for field in _CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        # Audit records carry their own structured payload
        if hasattr(record, "audit_action"):
            log_data["audit_action"] = record.audit_action
            log_data["actor_id"] = getattr(record, "actor_id", "")
            log_data["detail"] = getattr(record, "detail", "")

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable format for development"""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        reset = self.COLORS["RESET"]

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        context_parts = []
        if hasattr(record, "request_id"):
            context_parts.append(f"req={record.request_id}")
        if hasattr(record, "subject_id"):
            context_parts.append(f"subject={record.subject_id}")
        if hasattr(record, "job_id"):
            context_parts.append(f"job={record.job_id}")
        if hasattr(record, "ledger_id"):
            context_parts.append(f"ledger={record.ledger_id}")

        context = f" [{' '.join(context_parts)}]" if context_parts else ""

        message = (
            f"{color}[{timestamp}] {record.levelname:8}{reset} "
            f"{record.name}{context} - {record.getMessage()}"
        )
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Configure application logging

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: If True, use JSON format (for production)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if use_json:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ConsoleFormatter())

    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)

    logging.info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name"""
    return logging.getLogger(name)


class LogContext:
    """Add context to log records"""

    def __init__(
            self,
            logger: logging.Logger,
            request_id: str | None = None,
            subject_id: str | None = None,
            job_id: str | None = None,
            ledger_id: str | None = None,
    ):
        self.logger = logger
        self.context = {
            k: v for k, v in {
                "request_id": request_id,
                "subject_id": subject_id,
                "job_id": job_id,
                "ledger_id": ledger_id,
            }.items() if v is not None
        }

    def _log(self, level: int, msg: str, *args, **kwargs):
        extra = kwargs.pop("extra", {})
        extra.update(self.context)
        self.logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)


def mask_token(token: str | None) -> str:
    """Mask an opaque session token for logging.

    Example: ``mask_token("57b6fa7f-df0e-444b")`` → ``"57b6***"``
    """
    if not token:
        return "-"
    return token[:4] + "***" if len(token) > 4 else "***"


def mask_coordinates(lat: float, lng: float) -> str:
    """Mask GPS coordinates for logging.

    Example: ``mask_coordinates(34.0012, -82.0456)`` → ``"34.0**, -82.0**"``

    Shows only the first decimal digit (roughly ±7 miles precision),
    which is enough for debugging without exposing a technician's home.
    """
    return f"{lat:.1f}**, {lng:.1f}**"
