"""
Error types shared by the coordinators, the peer link and the rendezvous service.

Room lifecycle and negotiation errors are raised to whoever started the
operation. Delivery errors are returned inside a DeliveryResult instead.
"""

from typing import Any, Dict, Optional


class DualSyncError(Exception):
    """Base error for all DualSync exceptions."""

    code = "DUALSYNC_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


# Room lifecycle
class RoomExists(DualSyncError):
    code = "ROOM_EXISTS"

    def __init__(self, message: str = "Room already exists"):
        super().__init__(message)


class RoomNotFound(DualSyncError):
    code = "ROOM_NOT_FOUND"

    def __init__(self, message: str = "Room not found"):
        super().__init__(message)


class RoomFull(DualSyncError):
    code = "ROOM_FULL"

    def __init__(self, message: str = "Room is full"):
        super().__init__(message)


# Transport / negotiation
class SignalingUnavailable(DualSyncError):
    """Signaling transport could not be opened or written to."""

    code = "SIGNALING_UNAVAILABLE"


class NegotiationFailed(DualSyncError):
    """Peer connection failed or closed before it was connected."""

    code = "NEGOTIATION_FAILED"


class InvalidMessage(DualSyncError):
    code = "INVALID_MESSAGE"


class InvalidSignalingUrl(InvalidMessage):
    code = "INVALID_SIGNALING_URL"


# Delivery
class DeliveryError(DualSyncError):
    """A single action could not be handed to its receiver."""

    code = "DELIVERY_ERROR"


class PeerUnreachable(DeliveryError):
    code = "PEER_UNREACHABLE"


class ChannelClosed(DeliveryError):
    """The transport handle of the receiver is no longer live."""

    code = "CHANNEL_CLOSED"


_BY_CODE = {
    cls.code: cls
    for cls in (
        RoomExists,
        RoomNotFound,
        RoomFull,
        SignalingUnavailable,
        NegotiationFailed,
        InvalidMessage,
    )
}

_BY_TEXT = {
    "room already exists": RoomExists,
    "room not found": RoomNotFound,
    "room is full": RoomFull,
}


def error_from_wire(payload: Optional[Dict[str, Any]]) -> DualSyncError:
    """Map a signaling `error` reply onto the matching exception."""
    payload = payload or {}
    message = str(payload.get("error") or "Unknown signaling error")
    cls = _BY_CODE.get(payload.get("code") or "") or _BY_TEXT.get(message.strip().lower())
    if cls is None:
        return DualSyncError(message)
    return cls(message)
