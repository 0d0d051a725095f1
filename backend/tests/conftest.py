import asyncio

import pytest
from fastapi.testclient import TestClient

from aarogya.config import Settings
from aarogya.main import create_app

TEST_API_KEY = "test-gemini-key"

# Placed in a StubProvider script: wait far longer than any test timeout
HANG = object()


class StubProvider:
    """Deterministic provider that plays back a script of fragments.

    Script entries are yielded in order; an exception instance is raised
    instead, and ``HANG`` blocks until the consumer gives up.
    """

    def __init__(self, script=("Hello", " world")):
        self.script = list(script)
        self.calls: list[list] = []
        self.cancelled = False
        self.finished = False

    async def stream(self, messages):
        self.calls.append(list(messages))
        try:
            for item in self.script:
                if item is HANG:
                    await asyncio.sleep(3600)
                elif isinstance(item, BaseException):
                    raise item
                else:
                    yield item
            self.finished = True
        except (asyncio.CancelledError, GeneratorExit):
            self.cancelled = True
            raise


def make_settings(**overrides) -> Settings:
    """Settings that never read the developer's .env file."""
    values = {"gemini_api_key": TEST_API_KEY, "environment": "test"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_client(provider=None, **overrides) -> TestClient:
    app = create_app(make_settings(**overrides), provider=provider or StubProvider())
    return TestClient(app)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def stub() -> StubProvider:
    return StubProvider()


@pytest.fixture
def client(stub):
    """Test client wired to the default Hello/world stub provider."""
    return make_client(stub)
