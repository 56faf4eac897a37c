from pydantic import BaseModel, ConfigDict, Field, HttpUrl
from typing import List, Optional, Dict, Any, Tuple
from enum import Enum
from datetime import datetime, timezone
import uuid


class RelayState(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class StopReason(str, Enum):
    CANCELLED = "cancelled"
    UPSTREAM_CLOSED = "upstream_closed"
    UPSTREAM_ERROR = "upstream_error"


class EventType(str, Enum):
    STREAM_STARTED = "stream_started"
    STREAM_STOPPED = "stream_stopped"
    STREAM_FAILED = "stream_failed"
    CLIENT_CONNECTED = "client_connected"
    CLIENT_DISCONNECTED = "client_disconnected"


def parse_keywords(keywords: Optional[str]) -> Tuple[str, ...]:
    """Split a comma separated keyword list, dropping empty entries."""
    if not keywords:
        return ()
    return tuple(k.strip() for k in keywords.split(",") if k.strip())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StreamDescriptor(BaseModel):
    """
    Immutable description of the relayed stream, sent verbatim to the portal
    on registration and deregistration.

    Field aliases are the portal's wire names.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(alias="streamName", min_length=1)
    endpoint: str
    video_size: str = Field(alias="videoSize")
    bit_rate: str = Field(alias="bitRate")
    keywords: Tuple[str, ...] = Field(default=(), alias="keyword")

    @classmethod
    def build(cls, name: str, transport: str, host: str, port: int,
              video_size: str, bit_rate: str, keywords: Optional[str] = None) -> "StreamDescriptor":
        return cls(
            name=name,
            endpoint=f"{transport}://{host}:{port}",
            video_size=video_size,
            bit_rate=bit_rate,
            keywords=parse_keywords(keywords),
        )

    def to_wire(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True)
        data["keyword"] = list(self.keywords)
        return data


class RelayConfig(BaseModel):
    """Fully resolved relay configuration (settings merged with CLI options)."""
    model_config = ConfigDict(frozen=True)

    source_path: str = Field(min_length=1)
    stream_name: str = Field(min_length=1)
    transport: str = "tcp"
    host: str = "localhost"
    listen_port: int = Field(default=9600, ge=0, le=65535)
    listen_backlog: int = Field(default=10, ge=1)
    transcoder_host: str = "127.0.0.1"
    transcoder_port: int = Field(default=9601, ge=1, le=65535)
    transcoder_command: str = "./streamer_ffmpeg.sh"
    transcoder_stop_timeout: float = Field(default=5.0, gt=0)
    video_size: str = "480x270"
    bit_rate: str = "400k"
    keywords: str = ""
    chunk_size: int = Field(default=256, gt=0)
    cycle_sleep: float = Field(default=0.020, ge=0)  # seconds
    tick_budget: float = Field(default=0.030, gt=0)  # seconds
    connect_retry_interval: float = Field(default=0.5, gt=0)
    connect_timeout: float = Field(default=2.0, gt=0)
    read_poll_interval: float = Field(default=0.5, gt=0)

    @property
    def descriptor(self) -> StreamDescriptor:
        return StreamDescriptor.build(
            self.stream_name, self.transport, self.host, self.listen_port,
            self.video_size, self.bit_rate, self.keywords)

    @property
    def transcoder_endpoint(self) -> str:
        return f"{self.transport}://{self.transcoder_host}:{self.transcoder_port}"

    @classmethod
    def from_settings(cls, source_path: str, stream_name: str, settings, **overrides) -> "RelayConfig":
        """Build a config from a Settings object; non-None overrides win."""
        values = dict(
            source_path=source_path,
            stream_name=stream_name,
            transport=settings.TRANSPORT,
            host=settings.HOST,
            listen_port=settings.LISTEN_PORT,
            listen_backlog=settings.LISTEN_BACKLOG,
            transcoder_host=settings.TRANSCODER_HOST,
            transcoder_port=settings.TRANSCODER_PORT,
            transcoder_command=settings.TRANSCODER_COMMAND,
            transcoder_stop_timeout=settings.TRANSCODER_STOP_TIMEOUT,
            video_size=settings.VIDEO_SIZE,
            bit_rate=settings.BIT_RATE,
            keywords=settings.KEYWORDS,
            chunk_size=settings.CHUNK_SIZE,
            cycle_sleep=settings.CYCLE_SLEEP_MS / 1000.0,
            tick_budget=settings.TICK_BUDGET_MS / 1000.0,
            connect_retry_interval=settings.CONNECT_RETRY_INTERVAL,
            connect_timeout=settings.CONNECT_TIMEOUT,
            read_poll_interval=settings.READ_POLL_INTERVAL,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class ViewerInfo(BaseModel):
    address: str
    connected_at: datetime
    bytes_sent: int = 0


class RelayEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    stream_name: str
    timestamp: datetime = Field(default_factory=_utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


class WebhookConfig(BaseModel):
    url: HttpUrl
    events: List[EventType] = Field(default_factory=lambda: list(EventType))
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: int = Field(default=10, ge=1)
    retry_attempts: int = Field(default=3, ge=0)


class RelayStats(BaseModel):
    state: RelayState
    stream_name: str
    endpoint: str
    active_clients: int
    total_clients_accepted: int
    total_clients_dropped: int
    chunks_relayed: int
    bytes_relayed: int
    uptime_seconds: float
    transcoder_pid: Optional[int] = None
    stop_reason: Optional[StopReason] = None


class HealthCheck(BaseModel):
    status: str
    version: str
    state: RelayState
    uptime_seconds: float
    active_clients: int
    timestamp: datetime = Field(default_factory=_utcnow)
