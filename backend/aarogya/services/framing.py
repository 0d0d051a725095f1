"""Wire formats for streamed chat answers.

Both framers turn one text fragment into at most one transport frame, so
nothing is held back between provider output and the socket.
"""

import json
import logging
from typing import Protocol

from sse_starlette import ServerSentEvent

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
EVENT_STREAM = "text/event-stream"


class Framer(Protocol):
    media_type: str

    def frame(self, fragment: object) -> bytes | None:
        """Encode one fragment, or return None to skip it."""

    def close(self) -> bytes | None:
        """Bytes that mark a successful end of stream, if any."""


class RawFramer:
    """Fragments written verbatim; the connection close ends the answer."""

    media_type = "text/plain; charset=utf-8"

    def frame(self, fragment: object) -> bytes | None:
        if not isinstance(fragment, str):
            logger.warning("Skipping non-text fragment of type %s", type(fragment).__name__)
            return None
        if not fragment:
            return None
        try:
            return fragment.encode("utf-8")
        except UnicodeEncodeError:
            logger.warning("Skipping fragment that is not valid UTF-8")
            return None

    def close(self) -> bytes | None:
        return None


class EventFramer:
    """``data: {"content": ...}`` frames closed by ``data: [DONE]``."""

    media_type = EVENT_STREAM

    def _event(self, data: str) -> bytes:
        return ServerSentEvent(data=data, sep="\n").encode()

    def frame(self, fragment: object) -> bytes | None:
        if not isinstance(fragment, str):
            logger.warning("Skipping non-text fragment of type %s", type(fragment).__name__)
            return None
        if not fragment:
            return None
        try:
            payload = json.dumps({"content": fragment}, ensure_ascii=False, separators=(",", ":"))
            return self._event(payload)
        except (TypeError, ValueError) as e:
            logger.warning("Skipping fragment that could not be encoded: %s", e)
            return None

    def close(self) -> bytes | None:
        return self._event(DONE_SENTINEL)


def select_framer(accept: str | None) -> Framer:
    """Pick the wire format from an Accept header."""
    if accept and EVENT_STREAM in accept.lower():
        return EventFramer()
    return RawFramer()
