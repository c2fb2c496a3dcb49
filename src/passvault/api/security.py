# API Security - session token + owner scoping
#
# A random session token is generated on startup; every engine endpoint
# requires it in the X-Session-Token header. The vault owner is taken
# from the X-Owner-Id header, which the upstream auth layer sets after
# authenticating the user. Every query and mutation is scoped to it.

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

# Global session token (generated once per engine instance)
_SESSION_TOKEN: Optional[str] = None


def initialize_session_token() -> str:
    """
    Generate a new session token for this engine instance.

    Returns:
        The generated token (256 bits, URL-safe)
    """
    global _SESSION_TOKEN
    _SESSION_TOKEN = secrets.token_urlsafe(32)
    return _SESSION_TOKEN


def get_session_token() -> str:
    """
    Get the current session token.

    Raises:
        RuntimeError: If the token hasn't been initialized
    """
    if _SESSION_TOKEN is None:
        raise RuntimeError("Session token not initialized. Call initialize_session_token() first.")
    return _SESSION_TOKEN


async def verify_session_token(x_session_token: str = Header(None)) -> str:
    """
    FastAPI dependency to verify the session token.

    Usage in routes:
        @router.get("/x", dependencies=[Depends(verify_session_token)])

    Raises:
        HTTPException: 503 before startup, 401 if the token is missing or wrong
    """
    if _SESSION_TOKEN is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session token not initialized"
        )

    if x_session_token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Session-Token header"
        )

    # Constant-time comparison
    if not secrets.compare_digest(x_session_token, _SESSION_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session token"
        )

    return x_session_token


async def require_owner(
    x_owner_id: str = Header(None),
    _token: str = Depends(verify_session_token),
) -> str:
    """FastAPI dependency: verified session + the calling owner's id."""
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Owner-Id header"
        )
    return x_owner_id.strip()
