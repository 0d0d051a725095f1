import asyncio
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass
from datetime import date

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from aarogya.config import Settings
from aarogya.errors import ErrorKind, ProviderError, wrap_provider_exception
from aarogya.models.chat import ChatMessage, ChatRequest
from aarogya.services.framing import Framer
from aarogya.services.provider import ChatProvider

logger = logging.getLogger(__name__)

DISCLAIMER = (
    "**Disclaimer: This is not medical advice. "
    "Please consult a doctor at your nearest health center.**"
)

MEDICAL_TOPICS = (
    "symptoms", "fever", "pain", "illness", "disease", "infection", "injury",
    "medicine", "medication", "dosage", "treatment", "diagnosis", "pregnancy",
)

SYSTEM_PROMPT = """You are 'Aarogya Sahayak', a helpful and empathetic AI health assistant for rural communities in India (current date: {today}).
- Your purpose is to provide clear, simple health information.
- Respond in the same language as the user's query (simple Hindi or English).
- CRITICAL SAFETY RULE: You are NOT a doctor. You MUST end every single response that mentions symptoms or medical advice (for example: {topics}) with this exact disclaimer: '{disclaimer}'"""


def build_system_prompt(today: date | None = None) -> str:
    today = today or date.today()
    return SYSTEM_PROMPT.format(
        today=today.strftime("%d/%m/%Y"),
        topics=", ".join(MEDICAL_TOPICS),
        disclaimer=DISCLAIMER,
    )


@dataclass
class OpenStream:
    """A provider stream whose first fragment has already arrived."""

    first: str | None
    rest: AsyncIterator[str]


class ChatService:
    def __init__(self, settings: Settings, provider: ChatProvider):
        self.settings = settings
        self.provider = provider

    def _build_messages(self, history: list[ChatMessage], query: str) -> list[BaseMessage]:
        """Build the message list for the LLM."""
        messages: list[BaseMessage] = [SystemMessage(content=build_system_prompt())]

        limit = self.settings.max_history_turns
        recent = history[-limit:] if limit > 0 else []
        for msg in recent:
            if msg.role == "user":
                messages.append(HumanMessage(content=msg.content))
            elif msg.role == "assistant":
                messages.append(AIMessage(content=msg.content))

        messages.append(HumanMessage(content=query))
        return messages

    async def _next(self, stream: AsyncIterator[str]) -> str:
        try:
            return await asyncio.wait_for(
                stream.__anext__(), timeout=self.settings.stream_idle_timeout
            )
        except asyncio.TimeoutError as e:
            raise ProviderError(ErrorKind.TIMEOUT) from e

    async def open(self, request: ChatRequest) -> OpenStream:
        """Start the provider call and wait for its first fragment.

        Errors raised here happen before any response bytes are written, so
        the caller can still answer with a proper status code.
        """
        logger.info(
            "Processing query: %s%s (history: %d)",
            request.query[:50],
            "..." if len(request.query) > 50 else "",
            len(request.chat_history),
        )
        messages = self._build_messages(request.chat_history, request.query)
        stream = aiter(self.provider.stream(messages))
        try:
            first = await self._next(stream)
        except StopAsyncIteration:
            return OpenStream(first=None, rest=stream)
        except ProviderError:
            await _close(stream)
            raise
        except Exception as e:
            await _close(stream)
            raise wrap_provider_exception(e) from e
        return OpenStream(first=first, rest=stream)

    async def relay(self, opened: OpenStream, framer: Framer) -> AsyncGenerator[bytes, None]:
        """Yield wire frames for an opened stream.

        Failures after the first frame end the body without the closing
        frame. Closing this generator (client went away) closes the provider
        stream as well.
        """
        stream = opened.rest
        try:
            if opened.first is not None:
                data = framer.frame(opened.first)
                if data:
                    yield data
                while True:
                    try:
                        fragment = await self._next(stream)
                    except StopAsyncIteration:
                        break
                    data = framer.frame(fragment)
                    if data:
                        yield data
            tail = framer.close()
            if tail:
                yield tail
        except ProviderError as e:
            logger.error("Stream aborted after it started (%s): %s", e.kind.value, e)
        except Exception:
            logger.exception("Stream aborted after it started")
        finally:
            await _close(stream)


async def _close(stream: AsyncIterator[str]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.exception("Error while closing provider stream")
