"""
WordPress REST backend client.

Session persistence, recording retrieval and the HTTP turn endpoints all
live under the plugin's versioned REST namespace.
"""

import json
import logging
from typing import Any

import httpx

from bewerbungstrainer.config import get_settings
from bewerbungstrainer.errors import AuthFailed, ConnectionFailed, ServerError, Timeout
from bewerbungstrainer.orchestrator.schemas import TranscriptEntry
from bewerbungstrainer.services.retry import retry_audio_download

logger = logging.getLogger(__name__)


def transcript_to_json(entries: list[TranscriptEntry]) -> str:
    """Serialize transcript entries the way the session record stores them."""
    return json.dumps(
        [
            {
                "role": entry.role.value,
                "text": entry.text,
                "timestamp": entry.start_seconds,
                "time_label": entry.time_label,
            }
            for entry in entries
        ],
        ensure_ascii=False,
    )


class BackendClient:
    """Async client for the bewerbungstrainer REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        nonce: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        audio_retry_attempts: int | None = None,
        audio_retry_delay: float | None = None,
    ) -> None:
        """
        Initialize the backend client.

        Args:
            base_url: REST namespace URL (uses config if not provided).
            nonce: WordPress REST nonce sent as ``X-WP-Nonce``.
            timeout: Request timeout in seconds (uses config if not provided).
            transport: Optional httpx transport, e.g. ``httpx.MockTransport`` in tests.
            audio_retry_attempts: Attempts when fetching a session recording.
            audio_retry_delay: Initial delay between recording fetch attempts.
        """
        settings = get_settings()
        self._base_url = (base_url or settings.api_base_url).rstrip("/")
        self._nonce = nonce if nonce is not None else settings.wp_nonce
        self._timeout = timeout or settings.api_timeout
        self._transport = transport
        self._audio_retry_attempts = audio_retry_attempts or settings.audio_retry_attempts
        self._audio_retry_delay = audio_retry_delay if audio_retry_delay is not None else settings.audio_retry_delay
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self._nonce:
                headers["X-WP-Nonce"] = self._nonce
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise Timeout(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise ConnectionFailed(f"{method} {path} failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthFailed(self._error_message(response), status_code=response.status_code)
        if response.status_code >= 400:
            raise ServerError(self._error_message(response), status_code=response.status_code)
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return f"HTTP {response.status_code}"

    async def _request_json(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._send(method, path, **kwargs)
        try:
            data = response.json()
        except ValueError as e:
            raise ServerError(f"{method} {path} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise ServerError(f"{method} {path} returned unexpected payload")
        if data.get("success") is False:
            raise ServerError(str(data.get("message") or "Request failed"))
        return data

    # Session persistence

    async def create_session(self, payload: dict[str, Any]) -> str:
        """Create a roleplay session record and return its id."""
        data = await self._request_json("POST", "/roleplays/sessions", json=payload)
        record = data.get("data") or {}
        session_id = record.get("id")
        if session_id is None:
            raise ServerError("Session creation returned no id")
        logger.info(f"[BACKEND] created session id={session_id}")
        return str(session_id)

    async def update_session(
        self,
        session_id: str,
        *,
        transcript: list[TranscriptEntry],
        feedback: dict[str, Any] | None,
        audio_analysis: dict[str, Any] | None,
        duration: int,
        conversation_id: str | None = None,
    ) -> dict[str, Any]:
        """Store transcript, feedback and duration on a session record."""
        body: dict[str, Any] = {
            "transcript": transcript_to_json(transcript),
            "feedback_json": json.dumps(feedback or {}, ensure_ascii=False),
            "duration": duration,
        }
        if audio_analysis:
            body["audio_analysis_json"] = json.dumps(audio_analysis, ensure_ascii=False)
        if conversation_id:
            body["conversation_id"] = conversation_id

        data = await self._request_json("PUT", f"/roleplays/sessions/{session_id}", json=body)
        logger.info(f"[BACKEND] saved analysis session_id={session_id}")
        return data.get("data") or {}

    async def save_conversation_audio(self, conversation_id: str, session_id: str | None = None) -> dict[str, Any]:
        """Ask the backend to archive the agent-side recording of a conversation."""
        data = await self._request_json(
            "POST",
            "/audio/save-elevenlabs",
            json={"conversation_id": conversation_id, "session_id": session_id},
        )
        return data.get("data") or data

    async def _fetch_session_audio_once(self, session_id: str) -> bytes:
        response = await self._send("GET", f"/roleplays/sessions/{session_id}/audio")
        if not response.content:
            raise ServerError("Session audio is empty", status_code=404)
        return response.content

    async def fetch_session_audio(self, session_id: str) -> bytes:
        """
        Download the full-session recording.

        The recording is usually not available right after the call, so
        404 responses are retried with a mild backoff.

        Raises:
            SessionError: When the recording could not be fetched.
        """
        return await retry_audio_download(
            lambda attempt: self._fetch_session_audio_once(session_id),
            max_attempts=self._audio_retry_attempts,
            initial_delay=self._audio_retry_delay,
        )

    # HTTP turn endpoints

    async def start_corporate_interview(
        self,
        *,
        scenario_id: int | str | None,
        scenario_content: str,
        initial_message: str,
        variables: dict[str, str],
        interviewer_profile: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Open a turn-based interview. Returns ``session_id`` and the greeting."""
        return await self._request_json(
            "POST",
            "/corporate-interview/start",
            json={
                "scenario_id": scenario_id,
                "scenario_content": scenario_content,
                "initial_message": initial_message,
                "variables": variables,
                "interviewer_profile": interviewer_profile,
            },
        )

    async def corporate_turn(
        self,
        *,
        session_id: str,
        audio_base64: str,
        end_conversation: bool = False,
    ) -> dict[str, Any]:
        """Submit one recorded user utterance and receive the interviewer's reply."""
        return await self._request_json(
            "POST",
            "/corporate-interview/turn",
            json={
                "session_id": session_id,
                "audio_base64": audio_base64,
                "end_conversation": end_conversation,
            },
        )

    async def fetch_audio_url(self, url: str) -> tuple[bytes, str]:
        """Download synthesized reply audio. Returns (bytes, content type)."""
        response = await self._send("GET", url)
        content_type = response.headers.get("content-type", "audio/mpeg").split(";", 1)[0].strip()
        return response.content, content_type
