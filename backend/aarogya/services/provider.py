import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Protocol

from langchain_core.messages import BaseMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from aarogya.config import Settings
from aarogya.errors import wrap_provider_exception

logger = logging.getLogger(__name__)

MOCK_RESPONSE = (
    "I'm a mock response from the AI. This confirms that the frontend and backend "
    "are communicating correctly. Set CHAT_PROVIDER=gemini to talk to the real model."
)


class ChatProvider(Protocol):
    def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[str]:
        """Yield text fragments of the assistant's answer as they arrive."""


def chunk_text(content) -> str | None:
    """Extract the text of one streamed chunk.

    Gemini chunks carry either a plain string or a list of content parts.
    Returns None when the chunk has no text representation.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return None


class GeminiProvider:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.llm = ChatGoogleGenerativeAI(
            model=settings.gemini_model,
            google_api_key=settings.gemini_api_key,
            temperature=settings.temperature,
            top_k=settings.top_k,
            top_p=settings.top_p,
            max_output_tokens=settings.max_output_tokens,
            # one attempt only; 0 would fall back to the SDK default of 6
            max_retries=1,
        )

    async def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[str]:
        try:
            async for chunk in self.llm.astream(list(messages)):
                text = chunk_text(chunk.content)
                if text is None:
                    logger.warning("Gemini chunk without text content: %r", chunk.content)
                    continue
                if text:
                    yield text
        except asyncio.CancelledError:
            logger.info("Gemini stream cancelled")
            raise
        except Exception as e:
            raise wrap_provider_exception(e) from e


class MockProvider:
    """Streams a canned answer in small pieces, like a slow model would."""

    def __init__(self, text: str = MOCK_RESPONSE, chunk_size: int = 10, delay: float = 0.02):
        self.text = text
        self.chunk_size = chunk_size
        self.delay = delay

    async def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[str]:
        for i in range(0, len(self.text), self.chunk_size):
            if i and self.delay:
                await asyncio.sleep(self.delay)
            yield self.text[i:i + self.chunk_size]


def build_provider(settings: Settings) -> ChatProvider:
    if settings.chat_provider == "mock":
        logger.warning("CHAT_PROVIDER=mock: answers are canned, Gemini is not called")
        return MockProvider()
    return GeminiProvider(settings)
