"""
Caller identity for the HTTP surface.

Authentication is handled upstream (gateway / auth middleware); by the time a
request reaches these routers the verified user id is forwarded in the
``X-User-Id`` header.
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException, status

logger = logging.getLogger(__name__)


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """FastAPI dependency returning the authenticated user id."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header.",
        )
    return x_user_id.strip()
