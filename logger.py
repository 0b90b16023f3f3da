"""
Structured logging with configurable levels and operation counters
"""

import os
import json
import logging
import sys
from datetime import datetime
from typing import Dict, Any, Optional


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured JSON logging"""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON"""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }

        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable console formatter"""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


class Logger:
    """Structured logger with domain helpers and counters"""

    def __init__(self, name: str = "hosts-router"):
        self.name = name
        self.logger = logging.getLogger(name)
        self._setup_logging()
        self._metrics = {
            "store_mutations": 0,
            "recomputes": 0,
            "policies_applied": 0,
            "policies_cleared": 0,
            "messenger_attempts": 0,
            "errors": 0,
            "warnings": 0
        }

    def _setup_logging(self):
        """Setup logging configuration"""
        self.logger.handlers.clear()

        log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        self.logger.setLevel(getattr(logging, log_level, logging.INFO))

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ConsoleFormatter())
        self.logger.addHandler(console_handler)

        if os.getenv('JSON_LOGGING', 'false').lower() == 'true':
            json_handler = logging.StreamHandler(sys.stderr)
            json_handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(json_handler)

        self.logger.propagate = False

    def _log_with_extra(self, level: int, message: str, extra_fields: Optional[Dict[str, Any]] = None):
        """Log with extra structured fields"""
        if extra_fields:
            self.logger.log(level, message, extra={'extra_fields': extra_fields})
        else:
            self.logger.log(level, message)

    def debug(self, message: str, **kwargs):
        self._log_with_extra(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        self._log_with_extra(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        self._metrics["warnings"] += 1
        self._log_with_extra(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        self._metrics["errors"] += 1
        self._log_with_extra(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        self._metrics["errors"] += 1
        self._log_with_extra(logging.CRITICAL, message, kwargs)

    def store_mutation(self, operation: str, revision: int, **kwargs):
        """Log a committed Rule Store mutation"""
        self._metrics["store_mutations"] += 1
        self.info(f"Store mutation {operation} committed at revision {revision}",
                  operation="store_mutation",
                  store_operation=operation,
                  revision=revision,
                  **kwargs)

    def store_rejected(self, operation: str, reason: str, **kwargs):
        """Log a mutation refused at the store boundary"""
        self.info(f"Store mutation {operation} rejected: {reason}",
                  operation="store_rejected",
                  store_operation=operation,
                  reason=reason,
                  **kwargs)

    def recompute(self, mapping_size: int, proxy_configured: bool):
        """Log a supervisor recompute"""
        self._metrics["recomputes"] += 1
        self.info(f"Recomputed effective mapping: {mapping_size} domains",
                  operation="recompute",
                  mapping_size=mapping_size,
                  proxy_configured=proxy_configured)

    def policy_applied(self, digest: str, mapping_size: int, duration_ms: float = None):
        """Log a policy installed on the host"""
        self._metrics["policies_applied"] += 1
        extra_fields = {
            "operation": "policy_applied",
            "digest": digest,
            "mapping_size": mapping_size
        }
        if duration_ms is not None:
            extra_fields["duration_ms"] = duration_ms
        self._log_with_extra(logging.INFO, f"Applied routing policy {digest[:12]}", extra_fields)

    def policy_cleared(self, reason: str):
        """Log a routing override removed from the host"""
        self._metrics["policies_cleared"] += 1
        self.info(f"Cleared routing policy: {reason}",
                  operation="policy_cleared",
                  reason=reason)

    def messenger_attempt(self, action: str, attempt: int, max_attempts: int, success: bool,
                          duration_ms: float = None, error: str = None):
        """Log a single messenger attempt"""
        self._metrics["messenger_attempts"] += 1
        level = logging.INFO if success else logging.WARNING
        message = f"Message {action} attempt {attempt}/{max_attempts}: {'success' if success else 'failed'}"

        extra_fields = {
            "operation": "messenger_attempt",
            "action": action,
            "attempt": attempt,
            "max_attempts": max_attempts,
            "success": success
        }
        if duration_ms is not None:
            extra_fields["duration_ms"] = duration_ms
        if error:
            extra_fields["error"] = error

        self._log_with_extra(level, message, extra_fields)

    def health_check(self, component: str, healthy: bool, details: str = None):
        """Log health check result"""
        level = logging.DEBUG if healthy else logging.WARNING
        message = f"Health check {component}: {'healthy' if healthy else 'unhealthy'}"

        extra_fields = {
            "operation": "health_check",
            "component": component,
            "healthy": healthy
        }
        if details:
            extra_fields["details"] = details

        self._log_with_extra(level, message, extra_fields)

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics"""
        return {
            **self._metrics,
            "uptime_seconds": (datetime.now() - self._start_time).total_seconds() if hasattr(self, '_start_time') else 0
        }

    def reset_metrics(self):
        """Reset metrics counters"""
        for key in self._metrics:
            self._metrics[key] = 0

    def set_start_time(self):
        """Set application start time for uptime calculation"""
        self._start_time = datetime.now()


# Global logger instance
logger = Logger()
