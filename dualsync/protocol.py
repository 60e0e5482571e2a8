"""
Signaling Protocol

Message types exchanged with the rendezvous service and over the peer data
channel. Every message is a JSON object with a `type` discriminator.
"""

import json
import secrets
import time
from typing import Any, Dict, Optional

from .config import settings
from .errors import DualSyncError, InvalidMessage
from .models import PlaybackAction

# Client -> server
CREATE_ROOM = "create-room"
JOIN_ROOM = "join-room"

# Server -> client
ROOM_CREATED = "room-created"
ROOM_JOINED = "room-joined"
GUEST_JOINED = "guest-joined"
HOST_LEFT = "host-left"
GUEST_LEFT = "guest-left"
ERROR = "error"

# Relayed verbatim between the two parties of a room
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
RELAYED_TYPES = frozenset({OFFER, ANSWER, ICE_CANDIDATE})

# Data channel
SYNC_ACTION = "sync-action"


def encode(message: Dict[str, Any]) -> str:
    return json.dumps(message)


def decode(raw: Any) -> Dict[str, Any]:
    """Parse one inbound frame. Raises InvalidMessage for anything but a typed object."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise InvalidMessage(f"Malformed JSON: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise InvalidMessage("Message must be an object with a string 'type'")
    return data


def generate_room_id() -> str:
    """Random room code. Uniqueness is enforced by the rendezvous service, not here."""
    alphabet = settings.ROOM_ID_ALPHABET
    return "".join(secrets.choice(alphabet) for _ in range(settings.ROOM_ID_LENGTH))


def normalize_room_id(room_id: Optional[str]) -> str:
    code = (room_id or "").strip().upper()
    if len(code) != settings.ROOM_ID_LENGTH or any(c not in settings.ROOM_ID_ALPHABET for c in code):
        raise InvalidMessage(f"Invalid room code: {room_id!r}")
    return code


# Message factory functions

def create_room(room_id: str) -> Dict[str, Any]:
    return {"type": CREATE_ROOM, "roomId": room_id}


def join_room(room_id: str) -> Dict[str, Any]:
    return {"type": JOIN_ROOM, "roomId": room_id}


def room_created(room_id: str) -> Dict[str, Any]:
    return {"type": ROOM_CREATED, "roomId": room_id}


def room_joined(room_id: str) -> Dict[str, Any]:
    return {"type": ROOM_JOINED, "roomId": room_id}


def guest_joined() -> Dict[str, Any]:
    return {"type": GUEST_JOINED}


def host_left() -> Dict[str, Any]:
    return {"type": HOST_LEFT}


def guest_left() -> Dict[str, Any]:
    return {"type": GUEST_LEFT}


def offer(room_id: str, sdp: str, sdp_type: str = "offer") -> Dict[str, Any]:
    return {"type": OFFER, "roomId": room_id, "offer": {"type": sdp_type, "sdp": sdp}}


def answer(room_id: str, sdp: str, sdp_type: str = "answer") -> Dict[str, Any]:
    return {"type": ANSWER, "roomId": room_id, "answer": {"type": sdp_type, "sdp": sdp}}


def ice_candidate(room_id: str, candidate: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": ICE_CANDIDATE, "roomId": room_id, "candidate": candidate}


def error(err: DualSyncError) -> Dict[str, Any]:
    return {"type": ERROR, **err.to_dict()}


def sync_action(action: PlaybackAction) -> Dict[str, Any]:
    return {
        "type": SYNC_ACTION,
        "action": action.to_wire(),
        "timestamp": int(time.time() * 1000),
    }
