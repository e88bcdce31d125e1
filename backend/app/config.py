import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_STUN_URL = "stun:stun.l.google.com:19302"


def _as_list(value: Any) -> list[Any]:
    """Accept JSON arrays, comma separated strings or single values."""

    if value in (None, "", Ellipsis):
        return []
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                return list(json.loads(text))
            except json.JSONDecodeError:
                pass
        return [part.strip() for part in text.split(",") if part.strip()]
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


class IceServer(BaseModel):
    """One entry of the ``iceServers`` list handed to ``RTCPeerConnection``."""

    urls: list[str] = Field(default_factory=list)
    username: str | None = None
    credential: str | None = None

    @field_validator("urls", mode="before")
    @classmethod
    def normalise_urls(cls, value: Any) -> list[str]:
        return [str(url) for url in _as_list(value)]

    @classmethod
    def from_entry(cls, entry: Any) -> "IceServer":
        if isinstance(entry, cls):
            return entry
        if isinstance(entry, dict):
            return cls.model_validate(entry)
        return cls(urls=entry)


class Settings(BaseSettings):
    """Runtime configuration of the realtime backend, read from the environment."""

    app_name: str = Field(default="Beacon API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")
    log_level: str = Field(default="INFO", env="LOG_LEVEL", description="Root logging level")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"],
        env="CORS_ORIGINS",
        description="Origins allowed to call the HTTP API from a browser",
    )

    database_user: str = Field(default="beacon", env="DB_USER")
    database_password: str = Field(default="beacon", env="DB_PASSWORD")
    database_host: str = Field(default="db", env="DB_HOST")
    database_port: int = Field(default=3306, env="DB_PORT")
    database_name: str = Field(default="beacon", env="DB_NAME")

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, env="ACCESS_TOKEN_EXPIRE_MINUTES")

    call_history_default_limit: int = Field(default=20, env="CALL_HISTORY_DEFAULT_LIMIT")
    call_history_max_limit: int = Field(default=100, env="CALL_HISTORY_MAX_LIMIT")

    websocket_keepalive_timeout_seconds: float = Field(
        default=20,
        env="WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS",
        description="How long to wait for a client frame before checking whether to ping.",
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=20,
        env="WEBSOCKET_KEEPALIVE_PING_INTERVAL_SECONDS",
        description="Idle time after which the server pings the client.",
    )

    realtime_reaper_interval_seconds: float = Field(
        default=30,
        env="REALTIME_REAPER_INTERVAL_SECONDS",
        description="Interval between stale state sweeps.",
    )
    realtime_connection_stale_seconds: float = Field(
        default=300,
        env="REALTIME_CONNECTION_STALE_SECONDS",
        description="Connections silent for longer than this are dropped by the reaper.",
    )
    realtime_call_stale_seconds: float = Field(
        default=600,
        env="REALTIME_CALL_STALE_SECONDS",
        description="Calls without progress for longer than this are ended with reason timeout.",
    )
    realtime_typing_ttl_seconds: float = Field(
        default=5,
        env="REALTIME_TYPING_TTL_SECONDS",
        description="Lifetime of a typing indicator without a refresh.",
    )
    call_join_stale_seconds: float = Field(
        default=300,
        env="CALL_JOIN_STALE_SECONDS",
        description="Existing calls older than this are replaced instead of joined on re-initiation.",
    )
    call_rate_limit_count: int = Field(
        default=5,
        env="CALL_RATE_LIMIT_COUNT",
        description="Call initiations allowed per initiator within the rate limit window.",
    )
    call_rate_limit_window_seconds: float = Field(
        default=60,
        env="CALL_RATE_LIMIT_WINDOW_SECONDS",
        description="Length of the rolling call initiation window.",
    )

    webrtc_ice_servers: Annotated[list[IceServer], NoDecode] = Field(
        default_factory=list,
        env="WEBRTC_ICE_SERVERS",
        description="Explicit ICE server entries, as JSON objects or bare URLs.",
    )
    webrtc_stun_servers: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        env="WEBRTC_STUN_SERVERS",
        description="STUN URLs offered to call peers.",
    )
    webrtc_turn_servers: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        env="WEBRTC_TURN_SERVERS",
        description="TURN URLs offered to call peers together with the shared credentials.",
    )
    webrtc_turn_username: str | None = Field(default=None, env="WEBRTC_TURN_USERNAME")
    webrtc_turn_credential: str | None = Field(default=None, env="WEBRTC_TURN_CREDENTIAL")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @field_validator("cors_origins", "webrtc_stun_servers", "webrtc_turn_servers", mode="before")
    @classmethod
    def split_lists(cls, value: Any) -> list[Any]:
        return _as_list(value)

    @field_validator("webrtc_ice_servers", mode="before")
    @classmethod
    def parse_ice_servers(cls, value: Any) -> list[IceServer]:
        return [IceServer.from_entry(entry) for entry in _as_list(value)]

    @field_validator("log_level", mode="before")
    @classmethod
    def normalise_log_level(cls, value: Any) -> str:
        return str(value or "INFO").strip().upper()

    def ice_servers(self) -> list[IceServer]:
        """Explicit entries first, then STUN, then TURN with credentials."""

        servers = list(self.webrtc_ice_servers)
        if self.webrtc_stun_servers:
            servers.append(IceServer(urls=self.webrtc_stun_servers))
        if self.webrtc_turn_servers:
            servers.append(
                IceServer(
                    urls=self.webrtc_turn_servers,
                    username=self.webrtc_turn_username,
                    credential=self.webrtc_turn_credential,
                )
            )
        return servers or [IceServer(urls=[DEFAULT_STUN_URL])]

    @property
    def webrtc_ice_servers_payload(self) -> list[dict[str, Any]]:
        return [server.model_dump(mode="json") for server in self.ice_servers()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
