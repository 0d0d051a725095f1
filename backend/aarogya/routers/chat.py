import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from aarogya.dependencies import enforce_rate_limit, get_chat_service
from aarogya.errors import MESSAGE_BY_KIND, ErrorKind
from aarogya.models.chat import ChatRequest, ErrorResponse
from aarogya.services.chat import ChatService
from aarogya.services.framing import EventFramer, Framer, select_framer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}

ERROR_RESPONSES = {
    status: {"model": ErrorResponse}
    for status in (400, 401, 429, 500, 504)
}


async def _stream_answer(
    chat_request: ChatRequest, framer: Framer, chat_service: ChatService
) -> StreamingResponse:
    # Provider errors before the first fragment propagate to the exception handlers
    opened = await chat_service.open(chat_request)
    return StreamingResponse(
        chat_service.relay(opened, framer),
        media_type=framer.media_type,
        headers=STREAM_HEADERS,
    )


@router.post("", responses=ERROR_RESPONSES, dependencies=[Depends(enforce_rate_limit)])
async def chat(
    chat_request: ChatRequest,
    request: Request,
    chat_service: ChatService = Depends(get_chat_service),
):
    """Stream the assistant's answer.

    ``Accept: text/event-stream`` selects ``data:`` frames closed by
    ``data: [DONE]``; otherwise the answer is streamed as plain text.
    """
    framer = select_framer(request.headers.get("accept"))
    return await _stream_answer(chat_request, framer, chat_service)


@router.get("", responses=ERROR_RESPONSES, dependencies=[Depends(enforce_rate_limit)])
async def chat_get(
    message: str | None = None,
    chat_history: str | None = Query(default=None, alias="chatHistory"),
    chat_service: ChatService = Depends(get_chat_service),
):
    """EventSource-friendly variant; without ``message`` it describes the API."""
    if message is None:
        return {
            "message": "Welcome to the Health Chatbot API",
            "availableEndpoints": [
                {
                    "methods": ["GET", "POST"],
                    "path": "/api/chat",
                    "description": "Send a message to the AI",
                    "parameters": {
                        "query": "string (required, POST body)",
                        "message": "string (required, GET query string)",
                        "chatHistory": "JSON string (optional) for GET, array for POST",
                    },
                    "headers": {
                        "Accept": (
                            "POST only: send text/event-stream to receive data: frames "
                            "ending with data: [DONE]; any other value streams plain text"
                        ),
                    },
                }
            ],
        }

    try:
        history = json.loads(chat_history) if chat_history else []
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="chatHistory must be a JSON array")

    try:
        chat_request = ChatRequest(query=message, chatHistory=history)
    except ValidationError as e:
        first = e.errors()[0]
        if first["loc"] and first["loc"][0] == "query":
            detail = MESSAGE_BY_KIND[ErrorKind.INVALID_REQUEST]
        else:
            detail = "chatHistory must be a list of {role, content} messages"
        raise HTTPException(status_code=400, detail=detail)

    return await _stream_answer(chat_request, EventFramer(), chat_service)
