"""
HealLoop - Centralized Logging Configuration
Supports both development (plain text) and production (JSON structured) logging
"""

import logging
import sys
import json
import traceback
import uuid
from datetime import datetime
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional
from contextvars import ContextVar

from healloop.core.config import settings


# Context variables for request tracing
request_id_var: ContextVar[str] = ContextVar('request_id', default='')
project_id_var: ContextVar[str] = ContextVar('project_id', default='')
cycle_id_var: ContextVar[str] = ContextVar('cycle_id', default='')

# LogRecord attributes that are never copied into the JSON payload
_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'taskName',
])


def get_request_id() -> str:
    """Get current request ID from context"""
    return request_id_var.get() or ''


def set_request_id(request_id: str) -> None:
    """Set request ID in context"""
    request_id_var.set(request_id)


def get_project_id() -> str:
    """Get current project ID from context"""
    return project_id_var.get() or ''


def set_project_id(project_id: str) -> None:
    """Set project ID in context"""
    project_id_var.set(project_id)


def get_cycle_id() -> str:
    """Get current generation cycle ID from context"""
    return cycle_id_var.get() or ''


def set_cycle_id(cycle_id: str) -> None:
    """Set generation cycle ID in context"""
    cycle_id_var.set(cycle_id)


def generate_request_id() -> str:
    """Generate a unique request ID"""
    return str(uuid.uuid4())[:8]


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging in production
    One object per line so sandbox and heal events can be shipped to any aggregator
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = get_request_id()
        if request_id:
            log_data["request_id"] = request_id

        project_id = get_project_id()
        if project_id:
            log_data["project_id"] = project_id

        cycle_id = get_cycle_id()
        if cycle_id:
            log_data["cycle_id"] = cycle_id

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info) if record.exc_info[0] else None
            }

        # Add extra fields from record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ContextualFormatter(logging.Formatter):
    """
    Formatter that injects request/project/cycle context into the record
    Used for development with readable output
    """

    def format(self, record: logging.LogRecord) -> str:
        record.request_id = get_request_id() or '-'
        record.project_id = get_project_id() or '-'
        record.cycle_id = get_cycle_id() or '-'

        return super().format(record)


class HealLoopLogger(logging.Logger):
    """
    Custom logger with convenience methods for structured logging
    """

    def log_request(self, method: str, path: str, status_code: int,
                    duration_ms: float, **kwargs) -> None:
        """Log HTTP request details"""
        self.info(
            f"HTTP {method} {path} - {status_code} ({duration_ms:.2f}ms)",
            extra={
                "event_type": "http_request",
                "http_method": method,
                "http_path": path,
                "http_status": status_code,
                "duration_ms": duration_ms,
                **kwargs
            }
        )

    def log_sandbox_event(self, project_id: str, event: str,
                          state: Optional[str] = None, **kwargs) -> None:
        """Log sandbox lifecycle events (boot, sync, install, start)"""
        self.info(
            f"[Sandbox:{project_id}] {event}" + (f" (state: {state})" if state else ""),
            extra={
                "event_type": "sandbox",
                "sandbox_project": project_id,
                "sandbox_event": event,
                "sandbox_state": state,
                **kwargs
            }
        )

    def log_pain_signal(self, signal_type: str, severity: str, message: str,
                        **kwargs) -> None:
        """Log a detected pain signal, critical ones at warning level"""
        level = logging.WARNING if severity == "critical" else logging.INFO
        self.log(
            level,
            f"Pain detected: {signal_type} - {message[:80]}",
            extra={
                "event_type": "pain_signal",
                "pain_type": signal_type,
                "pain_severity": severity,
                **kwargs
            }
        )

    def log_heal_event(self, project_id: str, triggered: bool,
                       reason: Optional[str] = None, **kwargs) -> None:
        """Log auto-heal decisions"""
        self.info(
            f"[AutoHeal:{project_id}] " + ("heal triggered" if triggered else "heal skipped") +
            (f" - {reason}" if reason else ""),
            extra={
                "event_type": "auto_heal",
                "heal_triggered": triggered,
                "heal_reason": reason,
                **kwargs
            }
        )

    def log_retry(self, attempt: int, max_attempts: int, error_type: str,
                  retry_after_ms: int, **kwargs) -> None:
        """Log an execution retry"""
        self.warning(
            f"Execution retry {attempt}/{max_attempts} after {error_type} "
            f"(waiting {retry_after_ms}ms)",
            extra={
                "event_type": "execution_retry",
                "attempt": attempt,
                "max_attempts": max_attempts,
                "error_type": error_type,
                "retry_after_ms": retry_after_ms,
                **kwargs
            }
        )

    def log_agent_event(self, agent_name: str, event: str,
                        tokens_used: int = 0, **kwargs) -> None:
        """Log AI agent events"""
        self.info(
            f"Agent {agent_name}: {event}" +
            (f" (tokens: {tokens_used})" if tokens_used else ""),
            extra={
                "event_type": "agent",
                "agent_name": agent_name,
                "agent_event": event,
                "tokens_used": tokens_used,
                **kwargs
            }
        )

    def log_error_with_context(self, error: Exception, context: str = None,
                               **kwargs) -> None:
        """Log error with full context"""
        self.error(
            f"Error in {context}: {type(error).__name__}: {str(error)}",
            exc_info=True,
            extra={
                "event_type": "error",
                "error_type": type(error).__name__,
                "error_message": str(error),
                "error_context": context,
                **kwargs
            }
        )

    def log_performance(self, operation: str, duration_ms: float,
                        threshold_ms: float = 1000, **kwargs) -> None:
        """Log performance metrics, warn if over threshold"""
        level = logging.WARNING if duration_ms > threshold_ms else logging.DEBUG
        self.log(
            level,
            f"Performance: {operation} took {duration_ms:.2f}ms" +
            (f" (threshold: {threshold_ms}ms)" if duration_ms > threshold_ms else ""),
            extra={
                "event_type": "performance",
                "operation": operation,
                "duration_ms": duration_ms,
                "threshold_ms": threshold_ms,
                "exceeded_threshold": duration_ms > threshold_ms,
                **kwargs
            }
        )


def setup_logging() -> HealLoopLogger:
    """Setup logging configuration based on environment"""

    logging.setLoggerClass(HealLoopLogger)

    logger = logging.getLogger("healloop")
    logger.__class__ = HealLoopLogger  # Ensure it's our custom class
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    logger.handlers.clear()

    is_production = settings.is_production

    if is_production:
        json_formatter = JSONFormatter()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(json_formatter)
        logger.addHandler(console_handler)

        if settings.LOG_FILE:
            log_file = Path(settings.LOG_FILE)
            log_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10485760,  # 10MB
                backupCount=10
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(json_formatter)
            logger.addHandler(file_handler)

    else:
        detailed_format = (
            "%(asctime)s | %(levelname)-8s | "
            "[%(request_id)s] [%(project_id)s] [%(cycle_id)s] | "
            "%(funcName)s:%(lineno)d | %(message)s"
        )
        simple_format = "%(levelname)-8s | %(message)s"

        detailed_formatter = ContextualFormatter(detailed_format)
        simple_formatter = ContextualFormatter(simple_format)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(simple_formatter)
        logger.addHandler(console_handler)

        if settings.LOG_FILE:
            log_file = Path(settings.LOG_FILE)
            log_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10485760,  # 10MB
                backupCount=5
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(detailed_formatter)
            logger.addHandler(file_handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logger.debug(
        "Logging initialized",
        extra={
            "environment": settings.ENVIRONMENT,
            "log_level": settings.LOG_LEVEL,
            "json_logging": is_production
        }
    )

    return logger


# Create logger instance
logger: HealLoopLogger = setup_logging()


__all__ = [
    'logger',
    'setup_logging',
    'get_request_id',
    'set_request_id',
    'get_project_id',
    'set_project_id',
    'get_cycle_id',
    'set_cycle_id',
    'generate_request_id',
    'HealLoopLogger',
    'JSONFormatter',
    'ContextualFormatter',
]
