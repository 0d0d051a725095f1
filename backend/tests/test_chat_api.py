"""End-to-end tests for /api/chat against a stub provider."""

import json

import pytest

from aarogya.errors import MESSAGE_BY_KIND, ErrorKind, ProviderError
from aarogya.models.chat import ErrorResponse
from tests.conftest import HANG, StubProvider, make_client

EVENT_HEADERS = {"Accept": "text/event-stream"}


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


def test_raw_mode_streams_plain_text(client, stub):
    resp = client.post("/api/chat", json={"query": "I have a fever"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.text == "Hello world"
    assert len(stub.calls) == 1


def test_event_mode_streams_data_frames(client):
    resp = client.post("/api/chat", json={"query": "I have a fever"}, headers=EVENT_HEADERS)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.text == (
        'data: {"content":"Hello"}\n\n'
        'data: {"content":" world"}\n\n'
        "data: [DONE]\n\n"
    )


def test_event_frames_are_json_with_content():
    stub = StubProvider(["Bukhar ", 'with "quotes"', "\nand newline", "नमस्ते"])
    resp = make_client(stub).post("/api/chat", json={"query": "hi"}, headers=EVENT_HEADERS)

    frames = [f for f in resp.text.split("\n\n") if f]
    assert frames[-1] == "data: [DONE]"
    for frame in frames[:-1]:
        assert frame.startswith("data: ")
        assert "content" in json.loads(frame.removeprefix("data: "))


def test_event_contents_concatenate_to_raw_body():
    script = ["Drink ", "plenty of ", "water.", " ", "Rest well."]
    raw = make_client(StubProvider(script)).post("/api/chat", json={"query": "cold"})
    events = make_client(StubProvider(script)).post(
        "/api/chat", json={"query": "cold"}, headers=EVENT_HEADERS
    )

    contents = [
        json.loads(frame.removeprefix("data: "))["content"]
        for frame in events.text.split("\n\n")
        if frame and frame != "data: [DONE]"
    ]
    assert "".join(contents) == raw.text == "".join(script)


def test_non_text_fragments_are_skipped():
    stub = StubProvider(["Hello", None, 42, " world"])
    resp = make_client(stub).post("/api/chat", json={"query": "hi"}, headers=EVENT_HEADERS)
    assert resp.status_code == 200
    assert resp.text.endswith("data: [DONE]\n\n")
    assert resp.text.count("data: ") == 3


def test_empty_answer_still_terminates_event_stream():
    resp = make_client(StubProvider([])).post(
        "/api/chat", json={"query": "hi"}, headers=EVENT_HEADERS
    )
    assert resp.status_code == 200
    assert resp.text == "data: [DONE]\n\n"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("body", [{"query": ""}, {"query": "   \n\t"}, {}, {"query": 12}])
def test_invalid_query_is_rejected_without_provider_call(client, stub, body):
    resp = client.post("/api/chat", json=body)
    assert resp.status_code == 400
    assert resp.json()["error"] == MESSAGE_BY_KIND[ErrorKind.INVALID_REQUEST]
    assert stub.calls == []


def test_malformed_history_is_rejected(client, stub):
    resp = client.post("/api/chat", json={"query": "hi", "chatHistory": [{"role": "system"}]})
    assert resp.status_code == 400
    body = ErrorResponse.model_validate(resp.json())
    assert body.error == "Invalid request body"
    assert isinstance(body.details, list)
    assert body.details[0]["loc"][:2] == ["body", "chatHistory"]
    assert stub.calls == []


def test_history_is_truncated_to_recent_turns(client, stub):
    history = [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"turn {i}"}
        for i in range(14)
    ]
    resp = client.post("/api/chat", json={"query": "latest", "chatHistory": history})
    assert resp.status_code == 200

    messages = stub.calls[0]
    # system prompt + 10 history turns + current query
    assert len(messages) == 12
    assert messages[1].content == "turn 4"
    assert messages[-1].content == "latest"


def test_dashboard_history_shape_is_coerced(client, stub):
    history = [
        {"sender": "user", "text": "mujhe sir dard hai"},
        {"sender": "bot", "text": "Kab se?"},
    ]
    resp = client.post("/api/chat", json={"query": "do din se", "chatHistory": history})
    assert resp.status_code == 200

    messages = stub.calls[0]
    assert [m.type for m in messages] == ["system", "human", "ai", "human"]
    assert messages[2].content == "Kab se?"


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, status",
    [
        (ProviderError(ErrorKind.AUTHENTICATION), 401),
        (RuntimeError("API key not valid. Please pass a valid API key. [reason: API_KEY_INVALID]"), 401),
        (ProviderError(ErrorKind.RATE_LIMITED), 429),
        (RuntimeError("429 Resource has been exhausted (e.g. check quota)."), 429),
        (RuntimeError("connection reset by peer"), 500),
    ],
)
def test_errors_before_first_fragment_map_to_status(error, status):
    resp = make_client(StubProvider([error])).post("/api/chat", json={"query": "hi"})
    assert resp.status_code == status
    assert resp.headers["content-type"].startswith("application/json")
    assert resp.json()["error"]


def test_no_first_fragment_within_idle_timeout_is_504():
    stub = StubProvider([HANG])
    resp = make_client(stub, stream_idle_timeout=0.05).post("/api/chat", json={"query": "hi"})
    assert resp.status_code == 504
    assert stub.cancelled


def test_error_mid_stream_truncates_without_done_frame():
    stub = StubProvider(["Hello", ProviderError(ErrorKind.UPSTREAM, "stream broke")])
    client = make_client(stub)

    raw = client.post("/api/chat", json={"query": "hi"})
    assert raw.status_code == 200
    assert raw.text == "Hello"

    events = client.post("/api/chat", json={"query": "hi"}, headers=EVENT_HEADERS)
    assert events.status_code == 200
    assert events.text == 'data: {"content":"Hello"}\n\n'


def test_idle_timeout_mid_stream_cancels_upstream():
    stub = StubProvider(["Hello", HANG, " never sent"])
    resp = make_client(stub, stream_idle_timeout=0.05).post("/api/chat", json={"query": "hi"})
    assert resp.status_code == 200
    assert resp.text == "Hello"
    assert stub.cancelled
    assert not stub.finished


def test_debug_fields_only_in_development():
    error = ProviderError(ErrorKind.UPSTREAM, "boom")
    prod = make_client(StubProvider([error]), environment="production")
    assert "stack" not in prod.post("/api/chat", json={"query": "hi"}).json()

    dev = make_client(StubProvider([ProviderError(ErrorKind.UPSTREAM, "boom")]),
                      environment="development")
    body = dev.post("/api/chat", json={"query": "hi"}).json()
    assert body["type"] == "ProviderError"
    assert "stack" in body


# ---------------------------------------------------------------------------
# GET variant
# ---------------------------------------------------------------------------


def test_get_variant_uses_event_frames(client, stub):
    history = json.dumps([{"role": "user", "content": "namaste"}])
    resp = client.get("/api/chat", params={"message": "I have a fever", "chatHistory": history})
    assert resp.status_code == 200
    assert resp.text.endswith("data: [DONE]\n\n")
    assert len(stub.calls[0]) == 3


def test_get_without_message_describes_api(client, stub):
    resp = client.get("/api/chat")
    assert resp.status_code == 200
    assert resp.json()["message"] == "Welcome to the Health Chatbot API"
    headers = resp.json()["availableEndpoints"][0]["headers"]
    assert "text/event-stream" in headers["Accept"]
    assert stub.calls == []


def test_get_with_blank_message_is_rejected(client, stub):
    resp = client.get("/api/chat", params={"message": "  "})
    assert resp.status_code == 400
    assert stub.calls == []


def test_get_with_invalid_history_json_is_rejected(client, stub):
    resp = client.get("/api/chat", params={"message": "hi", "chatHistory": "[not json"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "chatHistory must be a JSON array"
    assert stub.calls == []


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


def test_rate_limit_per_client():
    client = make_client(rate_limit_requests=2)
    assert client.post("/api/chat", json={"query": "one"}).status_code == 200
    assert client.post("/api/chat", json={"query": "two"}).status_code == 200

    resp = client.post("/api/chat", json={"query": "three"})
    assert resp.status_code == 429
    assert "Too many requests" in resp.json()["error"]


def test_oversized_body_is_rejected(client, stub):
    resp = client.post("/api/chat", json={"query": "x" * 20_000})
    assert resp.status_code == 413
    assert stub.calls == []


def test_chunked_oversized_body_is_rejected(client, stub):
    payload = json.dumps({"query": "x" * 20_000}).encode()

    def chunks():
        for i in range(0, len(payload), 4096):
            yield payload[i:i + 4096]

    resp = client.post("/api/chat", content=chunks(), headers={"Content-Type": "application/json"})
    assert resp.status_code == 413
    assert resp.json() == {"error": "Request body too large"}
    assert stub.calls == []


def test_small_chunked_body_is_accepted(client):
    payload = json.dumps({"query": "I have a fever"}).encode()
    resp = client.post("/api/chat", content=iter([payload[:5], payload[5:]]),
                       headers={"Content-Type": "application/json"})
    assert resp.status_code == 200
    assert resp.text == "Hello world"
