from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import DeliveryError, InvalidMessage

# Opaque handle of a player-owning context (a tab id, a process name, ...)
PlayerRef = Union[int, str]

class ActionType(str, Enum):
    PLAY = "play"
    PAUSE = "pause"
    SEEK = "seek"
    RATE_CHANGE = "ratechange"
    TIME_SYNC = "timesync"

class SyncMode(str, Enum):
    NONE = "none"
    LOCAL = "local"
    REMOTE = "remote"

class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"

class PlaybackAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: ActionType
    primary_time: Optional[float] = Field(default=None, alias="primaryTime")
    rate: Optional[float] = None
    paused: Optional[bool] = None

    # Sequencing, stamped by the sending adapter
    sync_seq: Optional[int] = Field(default=None, alias="syncSeq")
    sent_at: Optional[float] = Field(default=None, alias="sentAt")

    # Added by the relaying coordinator
    time_offset: Optional[float] = Field(default=None, alias="timeOffset")
    received_at: Optional[float] = Field(default=None, alias="receivedAt")

    @model_validator(mode="after")
    def _check_payload(self):
        if self.type in (ActionType.SEEK, ActionType.TIME_SYNC) and self.primary_time is None:
            raise ValueError(f"{self.type.value} action requires primaryTime")
        if self.type == ActionType.RATE_CHANGE and self.rate is None:
            raise ValueError("ratechange action requires rate")
        if self.type == ActionType.TIME_SYNC and self.paused is None:
            raise ValueError("timesync action requires paused")
        return self

    @classmethod
    def from_wire(cls, data: Any) -> "PlaybackAction":
        if isinstance(data, PlaybackAction):
            return data
        if not isinstance(data, dict):
            raise InvalidMessage(f"Playback action must be an object, got {type(data).__name__}")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidMessage(f"Invalid playback action: {e.errors()[0]['msg']}") from e

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def target_time(self) -> Optional[float]:
        """Position the receiver should be at: sender time shifted by the offset."""
        if self.primary_time is None:
            return None
        return self.primary_time + (self.time_offset or 0.0)

class VideoInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    url: str = ""
    has_player: bool = Field(default=False, alias="hasPlayer")

class LocalSyncState(BaseModel):
    is_active: bool = False
    primary_ref: Optional[PlayerRef] = None
    secondary_ref: Optional[PlayerRef] = None
    time_offset_seconds: float = 0.0  # secondary - primary
    last_action: Optional[PlaybackAction] = None
    pending_primary_time: Optional[float] = None
    pending_secondary_time: Optional[float] = None

class RemoteSyncState(BaseModel):
    is_active: bool = False
    local_ref: Optional[PlayerRef] = None
    room_id: Optional[str] = None
    is_host: bool = False
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    signaling_url: Optional[str] = None

class SyncSession(BaseModel):
    mode: SyncMode = SyncMode.NONE
    local: LocalSyncState = Field(default_factory=LocalSyncState)
    remote: RemoteSyncState = Field(default_factory=RemoteSyncState)

@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of handing one action to its receiver. Never raised, only returned."""

    delivered: bool
    error: Optional[DeliveryError] = None
    reason: str = ""

    @classmethod
    def ok(cls) -> "DeliveryResult":
        return cls(delivered=True)

    @classmethod
    def failed(cls, error: DeliveryError) -> "DeliveryResult":
        return cls(delivered=False, error=error, reason=error.message)

    @classmethod
    def skipped(cls, reason: str) -> "DeliveryResult":
        return cls(delivered=False, reason=reason)
