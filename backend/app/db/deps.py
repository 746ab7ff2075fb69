# backend/app/db/deps.py
from __future__ import annotations
from fastapi import Header, HTTPException, Request, status
import logging

logger = logging.getLogger("geo.db")


def get_container(request: Request):
    """FastAPI dependency returning the wired services built at startup."""
    container = getattr(request.app.state, "container", None)
    if container is None:
        logger.error("Container requested before startup completed.")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service starting up")
    return container


def get_actor_id(x_user_id: str | None = Header(default=None)) -> int:
    """Actor identity attached by the upstream authentication layer."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    try:
        return int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid X-User-Id header")
