# PassVault Engine - HTTP API
# FastAPI routers over the backup, sync and alert engines.

from .main import app, start_api_server

__all__ = ["app", "start_api_server"]
