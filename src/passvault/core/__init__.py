# Core Module - Shared Utilities
#
# Core module provides shared functionality across all PassVault subsystems:
# - Audit logging
# - Configuration
# - Error taxonomy
# - Background job execution

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    audit_owner_event,
    get_audit_logger,
    log_engine_event,
)
from .config import EngineConfig, get_config, load_config, set_config
from .errors import (
    ConflictError,
    CorruptPayloadError,
    DependencyFailureError,
    InvalidStateError,
    NotFoundError,
    VaultEngineError,
)
from .jobs import JobRunner, JobStore, get_job_runner, set_job_runner

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "audit_owner_event",
    "get_audit_logger",
    "log_engine_event",
    # Configuration
    "EngineConfig",
    "get_config",
    "load_config",
    "set_config",
    # Errors
    "VaultEngineError",
    "ConflictError",
    "NotFoundError",
    "InvalidStateError",
    "CorruptPayloadError",
    "DependencyFailureError",
    # Jobs
    "JobRunner",
    "JobStore",
    "get_job_runner",
    "set_job_runner",
]
