import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request

from aarogya.config import Settings
from aarogya.services.chat import ChatService
from aarogya.services.provider import ChatProvider
from aarogya.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything a request handler needs, built once per app."""

    settings: Settings
    provider: ChatProvider
    rate_limiter: RateLimiter


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_chat_service(context: AppContext = Depends(get_context)) -> ChatService:
    return ChatService(context.settings, context.provider)


async def enforce_rate_limit(
    request: Request,
    context: AppContext = Depends(get_context),
) -> None:
    """FastAPI dependency: per-client sliding-window limit.

    Raises:
        HTTPException 429 if the client exceeded its budget.
    """
    limiter = context.rate_limiter
    client = request.client.host if request.client else "unknown"
    if not limiter.is_allowed(client):
        logger.warning("Rate limit exceeded for %s", client)
        raise HTTPException(
            status_code=429,
            detail=(
                "Too many requests from this IP, please try again after "
                f"{limiter.window_minutes} minutes"
            ),
        )
