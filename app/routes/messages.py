"""
Bot Framework messaging endpoint.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, Response, status

from app.auth.verify import bot_auth_dependency
from app.infrastructure.observability.logging import get_logger
from app.services.bot.activity_handler import activity_handler

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["bot"])


@router.post("/messages")
async def receive_activity(
    activity: dict[str, Any] = Body(...),
    claims: dict | None = Depends(bot_auth_dependency),
):
    """
    Receive an activity from Teams and handle it.

    Replies are posted back through the Connector API, so the HTTP response
    carries no body.
    """
    logger.debug(
        "Activity received",
        activity_type=activity.get("type"),
        activity_id=activity.get("id"),
        authenticated=claims is not None,
    )

    try:
        await activity_handler.handle(activity)
    except Exception as e:
        logger.error(
            "Error handling activity",
            activity_type=activity.get("type"),
            activity_id=activity.get("id"),
            error=str(e),
            error_type=type(e).__name__,
        )
        return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    return Response(status_code=status.HTTP_200_OK)
