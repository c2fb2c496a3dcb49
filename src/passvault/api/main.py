# PassVault Engine - FastAPI Backend
#
# Thin HTTP adapter over the backup, sync and expiration alert engines.
# Every engine endpoint requires the per-instance session token and an
# owner id; /api/session and /api/health are open.

import logging
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI

from .. import __version__
from ..core.audit_log import EventSeverity, EventType, log_engine_event
from ..core.jobs import get_job_runner
from .alert_routes import router as alert_router
from .backup_routes import router as backup_router
from .device_routes import notifications_router, router as device_router
from .security import get_session_token, initialize_session_token
from .sync_routes import router as sync_router

logger = logging.getLogger(__name__)

# Seconds shutdown waits for running backup/sync bodies
SHUTDOWN_JOB_TIMEOUT = 10

app = FastAPI(
    title="PassVault Engine API",
    description="Encrypted backups, device sync and expiration alerts for vault owners",
    version=__version__,
)

app.include_router(backup_router)
app.include_router(sync_router)
app.include_router(alert_router)
app.include_router(device_router)
app.include_router(notifications_router)


@app.on_event("startup")
async def startup_event():
    """Create the session token and start the job sweeper."""
    initialize_session_token()
    get_job_runner().store.start()

    log_engine_event(
        EventType.SYSTEM_START,
        EventSeverity.INFO,
        "PassVault engine API started",
        details={"version": __version__},
    )
    logger.info("PassVault engine API started")


@app.on_event("shutdown")
async def shutdown_event():
    """Let running bodies reach a terminal state, then stop the sweeper."""
    runner = get_job_runner()
    if not runner.wait_all(timeout=SHUTDOWN_JOB_TIMEOUT):
        logger.warning("Shutdown with background jobs still running: %d",
                       len(runner.store.running()))
    runner.store.stop()

    log_engine_event(
        EventType.SYSTEM_STOP,
        EventSeverity.INFO,
        "PassVault engine API shutting down",
    )


@app.get("/api/session")
async def get_session():
    """
    Get the session token for API authentication.

    Unprotected: the local client needs it to authenticate. The token is
    random (256 bits) and changes on every restart.
    """
    return {"session_token": get_session_token()}


@app.get("/api/health")
async def health_check():
    return {
        "status": "ok",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def start_api_server(host: str = "127.0.0.1", port: int = 8000):
    """
    Start FastAPI server.

    Args:
        host: Host to bind to (default: localhost only)
        port: Port to listen on
    """
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    start_api_server()
