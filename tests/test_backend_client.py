import json
from datetime import datetime, timezone

import httpx
import pytest

from bewerbungstrainer.errors import AuthFailed, ConnectionFailed, ServerError
from bewerbungstrainer.orchestrator.schemas import TranscriptEntry, TranscriptRole
from bewerbungstrainer.services.backend import BackendClient, transcript_to_json

BASE_URL = "http://backend.test/wp-json/bewerbungstrainer/v1"


def _client(handler) -> BackendClient:  # noqa: ANN001
    return BackendClient(
        BASE_URL,
        nonce="abc123",
        transport=httpx.MockTransport(handler),
        audio_retry_attempts=3,
        audio_retry_delay=0,
    )


@pytest.mark.asyncio
async def test_create_session_sends_nonce_and_returns_id() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"id": 41}})

    client = _client(handler)
    record_id = await client.create_session({"agent_id": "a1"})

    assert record_id == "41"
    assert seen[0].headers["X-WP-Nonce"] == "abc123"
    assert seen[0].url.path == "/wp-json/bewerbungstrainer/v1/roleplays/sessions"
    assert json.loads(seen[0].content) == {"agent_id": "a1"}
    await client.close()


@pytest.mark.asyncio
async def test_http_errors_are_classified() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/start"):
            return httpx.Response(403, json={"message": "Nonce ungültig"})
        return httpx.Response(200, json={"success": False, "message": "Szenario fehlt"})

    client = _client(handler)

    with pytest.raises(AuthFailed, match="Nonce ungültig"):
        await client.start_corporate_interview(
            scenario_id=1, scenario_content="", initial_message="", variables={}, interviewer_profile=None
        )
    with pytest.raises(ServerError, match="Szenario fehlt"):
        await client.corporate_turn(session_id="s1", audio_base64="")
    await client.close()


@pytest.mark.asyncio
async def test_network_failure_is_connection_failed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)

    with pytest.raises(ConnectionFailed):
        await client.create_session({})
    await client.close()


@pytest.mark.asyncio
async def test_session_audio_is_retried_until_ready() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) < 3:
            return httpx.Response(404, json={"message": "not ready"})
        return httpx.Response(200, content=b"RIFFdata", headers={"content-type": "audio/wav"})

    client = _client(handler)

    assert await client.fetch_session_audio("41") == b"RIFFdata"
    assert len(calls) == 3
    await client.close()


@pytest.mark.asyncio
async def test_update_session_serializes_transcript_and_feedback() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True, "data": {"id": 41}})

    client = _client(handler)
    entry = TranscriptEntry(
        role=TranscriptRole.USER,
        text="Ich bringe Erfahrung mit.",
        start_seconds=75,
        arrival_timestamp=datetime.now(timezone.utc),
    )

    await client.update_session(
        "41",
        transcript=[entry],
        feedback={"summary": "gut"},
        audio_analysis=None,
        duration=120,
        conversation_id="conv_1",
    )

    body = bodies[0]
    assert json.loads(body["transcript"]) == [
        {"role": "user", "text": "Ich bringe Erfahrung mit.", "timestamp": 75, "time_label": "01:15"}
    ]
    assert json.loads(body["feedback_json"]) == {"summary": "gut"}
    assert body["duration"] == 120
    assert body["conversation_id"] == "conv_1"
    assert "audio_analysis_json" not in body
    assert transcript_to_json([]) == "[]"
    await client.close()
