from typing import List, Optional
from urllib.parse import urlsplit, urlunsplit
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import InvalidSignalingUrl

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}

class Settings(BaseSettings):
    # Signaling
    SIGNALING_URL: str = "ws://localhost:8080"
    SIGNALING_ACK_TIMEOUT_SECONDS: float = 10.0
    ROOM_ID_LENGTH: int = 6
    ROOM_ID_ALPHABET: str = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O, 1/I
    ICE_SERVERS: List[str] = [
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
    ]

    # Sync Logic
    TIMESYNC_INTERVAL_MS: int = 2000
    DRIFT_THRESHOLD_SECONDS: float = 0.5
    RATE_THRESHOLD: float = 0.01
    SEEK_DEBOUNCE_MS: int = 300
    CONNECTION_POLL_INTERVAL_SECONDS: float = 1.0
    CONNECTION_TIMEOUT_SECONDS: float = 30.0

    # Rendezvous
    ROOM_TTL_SECONDS: int = 3600  # 1h
    ROOM_SWEEP_INTERVAL_SECONDS: int = 300  # 5min

    # System
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_HOST: str = "0.0.0.0"
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()

def normalize_signaling_url(url: str) -> str:
    """
    Returns a ws:// or wss:// URL for the signaling endpoint.
    Plain ws:// is only accepted for loopback hosts.
    """
    raw = (url or "").strip()
    if not raw:
        raise InvalidSignalingUrl("Signaling URL is empty")

    if "://" not in raw:
        host = urlsplit(f"//{raw}").hostname or ""
        scheme = "ws" if host in LOOPBACK_HOSTS else "wss"
        raw = f"{scheme}://{raw}"

    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    if scheme == "http":
        scheme = "ws"
    elif scheme == "https":
        scheme = "wss"

    if scheme not in ("ws", "wss"):
        raise InvalidSignalingUrl(f"Unsupported signaling URL scheme: {parts.scheme}")

    host = parts.hostname
    if not host:
        raise InvalidSignalingUrl(f"Signaling URL has no host: {url}")
    if scheme == "ws" and host not in LOOPBACK_HOSTS:
        raise InvalidSignalingUrl(f"Insecure signaling URL for non-local host: {url}")

    return urlunsplit((scheme, parts.netloc, parts.path, parts.query, ""))
