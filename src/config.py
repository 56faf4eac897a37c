from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Application version
VERSION = "0.3.0"


class Settings(BaseSettings):
    """
    Relay configuration loaded from environment variables (RELAY_ prefix) or .env.
    Command-line options override these values when the relay config is built.
    """

    # Advertised endpoint: transport://host:listen_port
    TRANSPORT: str = "tcp"
    HOST: str = "localhost"
    LISTEN_PORT: int = 9600
    LISTEN_BACKLOG: int = 10

    # Transcoder always runs locally, only its port can change
    TRANSCODER_HOST: str = "127.0.0.1"
    TRANSCODER_PORT: int = 9601
    # Receives: $1 video file, $2 transport://ip:port, $3 video size, $4 bit rate
    TRANSCODER_COMMAND: str = "./streamer_ffmpeg.sh"
    TRANSCODER_STOP_TIMEOUT: float = 5.0

    # Default stream properties
    VIDEO_SIZE: str = "480x270"
    BIT_RATE: str = "400k"
    KEYWORDS: str = ""  # comma separated

    # Relay loop timing
    CHUNK_SIZE: int = 256
    CYCLE_SLEEP_MS: int = 20
    TICK_BUDGET_MS: int = 30
    CONNECT_RETRY_INTERVAL: float = 0.5
    CONNECT_TIMEOUT: float = 2.0
    READ_POLL_INTERVAL: float = 0.5

    # Directory portal
    PORTAL_URL: Optional[str] = None
    PORTAL_TIMEOUT: float = 5.0

    # Shared by the portal client and the status API
    API_TOKEN: Optional[str] = None

    LOG_LEVEL: str = "info"

    # Status API (read-only)
    STATUS_ENABLED: bool = False
    STATUS_HOST: str = "0.0.0.0"
    STATUS_PORT: int = 9602

    # Single webhook receiving every relay event
    WEBHOOK_URL: Optional[str] = None
    # Time allowed at shutdown to deliver queued events
    EVENT_DRAIN_TIMEOUT: float = 0.5

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="RELAY_",
        extra="ignore"
    )


# Global settings instance
settings = Settings()
