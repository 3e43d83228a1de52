"""
Request identity.

Authentication happens upstream (gateway or auth middleware), which sets
request.state.user_id. Routes only read it.
"""

import logging

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


async def get_current_user_id(request: Request) -> str:
    """
    Extract the authenticated user ID from request state.

    Raises:
        HTTPException 401: No upstream identity on the request
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        logger.debug("request without upstream identity", extra={"path": request.url.path})
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id
