# Engine configuration
#
# Settings come from environment variables. A `.env` file in the working
# directory is loaded first (python-dotenv) so local development does not
# need exported variables; real environment variables always win.

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "PASSVAULT_"

# Development-only fallback. Backups encrypted with it are readable by
# anyone holding the source, so production deployments must override it.
_DEV_MASTER_SECRET = "passvault-dev-master-secret"


@dataclass
class EngineConfig:
    """Runtime settings shared by the backup, sync and alert subsystems."""

    data_dir: Path = field(default_factory=lambda: Path("data"))
    backup_dir: Optional[Path] = None
    audit_log_dir: Optional[Path] = None
    master_secret: str = _DEV_MASTER_SECRET
    alert_window_days: int = 30
    job_ttl_seconds: int = 3600
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        if self.backup_dir is None:
            self.backup_dir = self.data_dir / "backups"
        self.backup_dir = Path(self.backup_dir)
        if self.audit_log_dir is None:
            self.audit_log_dir = self.data_dir.parent / "audit_logs"
        self.audit_log_dir = Path(self.audit_log_dir)

    @property
    def uses_dev_secret(self) -> bool:
        return self.master_secret == _DEV_MASTER_SECRET

    def db_path(self, name: str) -> Path:
        """Path of a subsystem database inside data_dir (e.g. 'backups.db')."""
        return self.data_dir / name


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(ENV_PREFIX + name, default)


def load_config(env_file: Optional[str] = None) -> EngineConfig:
    """Build an EngineConfig from `.env` + environment variables."""
    load_dotenv(env_file, override=False)

    backup_dir = _env("BACKUP_DIR")
    audit_dir = _env("AUDIT_LOG_DIR")
    config = EngineConfig(
        data_dir=Path(_env("DATA_DIR", "data")),
        backup_dir=Path(backup_dir) if backup_dir else None,
        audit_log_dir=Path(audit_dir) if audit_dir else None,
        master_secret=_env("MASTER_SECRET", _DEV_MASTER_SECRET),
        alert_window_days=int(_env("ALERT_WINDOW_DAYS", "30")),
        job_ttl_seconds=int(_env("JOB_TTL_SECONDS", "3600")),
        api_host=_env("API_HOST", "127.0.0.1"),
        api_port=int(_env("API_PORT", "8000")),
    )
    if config.uses_dev_secret:
        logger.warning(
            "PASSVAULT_MASTER_SECRET not set; using the development secret"
        )
    return config


# ── Singleton ────────────────────────────────────────────────────────

_config: Optional[EngineConfig] = None


def get_config() -> EngineConfig:
    """Get or load the process-wide configuration."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[EngineConfig]) -> None:
    """Replace the configuration (for testing)."""
    global _config
    _config = config
