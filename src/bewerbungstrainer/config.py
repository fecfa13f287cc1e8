"""
Application configuration using pydantic-settings.

Loads configuration from environment variables and .env files.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # WordPress REST backend
    api_base_url: str = Field(
        default="http://localhost/wp-json/bewerbungstrainer/v1",
        description="Base URL of the bewerbungstrainer REST namespace",
    )
    wp_nonce: str | None = Field(
        default=None,
        description="Optional X-WP-Nonce header sent with backend requests",
    )
    api_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for backend requests",
    )

    # ElevenLabs Conversational AI
    elevenlabs_api_key: str | None = Field(
        default=None,
        description="API key for private agents (public agents need none)",
    )
    elevenlabs_agent_id: str = Field(
        default="",
        description="Default conversational agent id",
    )
    elevenlabs_ws_url: str = Field(
        default="wss://api.elevenlabs.io/v1/convai/conversation",
        description="Direct conversational WebSocket endpoint (used by the probe)",
    )
    proxy_ws_url: str = Field(
        default="wss://karriereheld-ws-proxy.onrender.com/ws",
        description="Self-hosted WebSocket relay for firewalled networks",
    )
    use_proxy: bool = Field(
        default=False,
        description="Prefer the WebSocket relay over the native SDK when WebSockets work",
    )
    default_voice_id: str = Field(
        default="kaGxVtjLwllv1bi2GFag",
        description="Voice used when the scenario does not name one",
    )
    default_first_message: str = Field(
        default="Hallo! Ich freue mich auf unser Gespräch.",
        description="Agent greeting used when the scenario does not provide one",
    )

    # Timing
    handshake_timeout: float = Field(
        default=10.0,
        description="Seconds allowed for establishing a conversational connection",
    )
    probe_timeout_ms: int = Field(
        default=5000,
        description="Connectivity probe timeout in milliseconds",
    )
    probe_cache_ttl: float = Field(
        default=300.0,
        description="Seconds a connectivity probe result stays cached",
    )
    should_end_delay: float = Field(
        default=3.0,
        description="Seconds to wait before ending after the agent concluded (HTTP turns)",
    )
    audio_retry_attempts: int = Field(
        default=10,
        description="Attempts when fetching the session recording after a call",
    )
    audio_retry_delay: float = Field(
        default=3.0,
        description="Initial delay in seconds between recording fetch attempts",
    )

    # Audio
    sample_rate: int = Field(
        default=16000,
        description="Capture sample rate in Hz",
    )
    chunk_interval_ms: int = Field(
        default=250,
        description="Capture chunk cadence in milliseconds",
    )

    # Feedback (Ollama)
    feedback_model_name: str = Field(
        default="gpt-oss:20b",
        description="Ollama model used for post-session feedback",
    )
    feedback_timeout: int = Field(
        default=120,
        description="Timeout in seconds for feedback generation",
    )
    feedback_max_retries: int = Field(
        default=1,
        description="Number of retries on feedback generation failure",
    )

    # Application
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
