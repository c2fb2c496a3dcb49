# Core - Audit Logging
#
# Append-only audit trail for vault protection events: backup lifecycle,
# device sync runs, conflict resolution and expiration alerts.
# Events are rendered as structured JSON (structlog) into a daily
# audit_YYYY-MM-DD.log file.

import logging
import os
import socket
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog


class EventType(str, Enum):
    """Types of engine events that can be logged."""

    # Backup lifecycle
    BACKUP_CREATED = "backup.created"
    BACKUP_COMPLETED = "backup.completed"
    BACKUP_FAILED = "backup.failed"
    BACKUP_RESTORED = "backup.restored"
    BACKUP_VERIFIED = "backup.verified"
    BACKUP_DELETED = "backup.deleted"

    # Device sync
    SYNC_INITIATED = "sync.initiated"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"
    SYNC_CANCELLED = "sync.cancelled"
    SYNC_CONFLICT_RESOLVED = "sync.conflict_resolved"

    # Devices
    DEVICE_REGISTERED = "device.registered"
    DEVICE_REMOVED = "device.removed"

    # Expiration alerts
    ALERT_CREATED = "alert.created"
    ALERT_RESOLVED = "alert.resolved"

    # System
    SYSTEM_START = "system.start"
    SYSTEM_STOP = "system.stop"


class EventSeverity(str, Enum):
    """Severity levels for audit events."""

    INFO = "info"
    INVESTIGATE = "investigate"
    ALERT = "alert"
    CRITICAL = "critical"


class AuditLogger:
    """
    Append-only audit logger for engine events.

    Features:
    - Structured JSON logging
    - Automatic timestamp and event ID
    - Host/user context capture
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./audit_logs)
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self._setup_file_handler()

        self.logger = structlog.get_logger("passvault.audit")

    def _setup_file_handler(self):
        """Attach a daily log file to the audit logger."""
        today = datetime.now().strftime("%Y-%m-%d")
        log_file = self.log_dir / f"audit_{today}.log"

        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(message)s"))

        audit_logger = logging.getLogger("passvault.audit")
        audit_logger.addHandler(file_handler)
        audit_logger.setLevel(logging.INFO)
        self.log_file = log_file

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        user_context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Log an engine event (append-only).

        Args:
            event_type: Type of event (from EventType enum)
            severity: Severity level (from EventSeverity enum)
            message: Human-readable event description
            details: Additional event details (never secrets or key material)
            user_context: Owner context (owner_id, device_id, etc.)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())

        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details or {},
            "user_context": user_context or self._get_default_user_context(),
        }

        self.logger.info("engine_event", **event_data)

        return event_id

    def log_owner_event(
        self,
        event_type: EventType,
        owner_id: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> str:
        """Log an event scoped to one vault owner."""
        context = self._get_default_user_context()
        context["owner_id"] = owner_id
        return self.log_event(
            event_type=event_type,
            severity=severity,
            message=message,
            details=details,
            user_context=context,
        )

    def _get_default_user_context(self) -> Dict[str, Any]:
        """Get default context (OS user, hostname, platform)."""
        return {
            "os_user": os.getenv("USERNAME") or os.getenv("USER"),
            "hostname": socket.gethostname(),
            "platform": sys.platform,
        }


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        from .config import get_config
        _audit_logger = AuditLogger(get_config().audit_log_dir)
    return _audit_logger


def log_engine_event(
    event_type: EventType,
    severity: EventSeverity,
    message: str,
    **kwargs,
) -> str:
    """
    Convenience function for logging engine events.

    Usage:
        log_engine_event(
            EventType.BACKUP_FAILED,
            EventSeverity.ALERT,
            "Backup failed",
            details={"backup_id": "ab12", "code": "BACKUP_ERROR"},
        )
    """
    return get_audit_logger().log_event(event_type, severity, message, **kwargs)


def audit_owner_event(
    event_type: EventType,
    owner_id: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    severity: EventSeverity = EventSeverity.INFO,
) -> Optional[str]:
    """Best-effort audit logging for background jobs.

    A failing audit sink must never turn a completed backup or sync into
    a failed one, so errors are logged and swallowed here.
    """
    try:
        return get_audit_logger().log_owner_event(
            event_type, owner_id, message, details=details, severity=severity
        )
    except Exception:
        logging.getLogger(__name__).warning(
            "Audit log failed: %s", message, exc_info=True
        )
        return None
