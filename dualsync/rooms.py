"""
Rendezvous room registry.

Pairs two clients (host and guest) under a room code and relays their
handshake messages. Knows nothing about playback.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import protocol
from .config import settings
from .errors import DualSyncError, InvalidMessage, RoomExists, RoomFull, RoomNotFound

logger = logging.getLogger(__name__)

Outbox = List[Tuple["Participant", str]]


@dataclass(eq=False)
class Participant:
    """One signaling connection. `websocket` needs an async `send_text(str)`."""

    websocket: Any
    room_id: Optional[str] = None
    is_host: bool = False
    connected_at: float = field(default_factory=time.time)

    @property
    def role(self) -> str:
        if self.room_id is None:
            return "unpaired"
        return "host" if self.is_host else "guest"


@dataclass(eq=False)
class Room:
    room_id: str
    host: Participant
    guest: Optional[Participant] = None
    created_at: float = field(default_factory=time.time)


class RoomRegistry:
    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.time):
        self.ttl_seconds = settings.ROOM_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.clock = clock
        self.rooms: Dict[str, Room] = {}
        self.connections = 0
        self._lock = asyncio.Lock()

    def connected(self, websocket: Any) -> Participant:
        self.connections += 1
        logger.info("New client connected")
        return Participant(websocket=websocket, connected_at=self.clock())

    async def handle_raw(self, participant: Participant, raw: Any):
        """Entry point for one inbound frame. Errors go back to the sender as `error` messages."""
        try:
            message = protocol.decode(raw)
            logger.debug(f"Received: {message['type']} {message.get('roomId')}")
            await self.handle_message(participant, message, raw)
        except DualSyncError as e:
            logger.info(f"Rejected {participant.role} request: {e.message}")
            await self._send(participant, protocol.encode(protocol.error(e)))

    async def handle_message(self, participant: Participant, message: Dict[str, Any], raw: Optional[str] = None):
        kind = message["type"]
        if kind == protocol.CREATE_ROOM:
            await self.create_room(participant, self._room_id(message))
        elif kind == protocol.JOIN_ROOM:
            await self.join_room(participant, self._room_id(message))
        elif kind in protocol.RELAYED_TYPES:
            await self.relay(participant, message, raw)
        else:
            logger.warning(f"Unknown message type: {kind}")

    def _check_unpaired(self, participant: Participant):
        # One live room per connection. A room closed under the participant no longer counts
        room = self.rooms.get(participant.room_id) if participant.room_id else None
        if room is not None and participant in (room.host, room.guest):
            raise InvalidMessage(f"Already in room {participant.room_id}")

    @staticmethod
    def _room_id(message: Dict[str, Any]) -> str:
        room_id = message.get("roomId")
        if not isinstance(room_id, str) or not room_id:
            raise InvalidMessage(f"{message['type']} requires a roomId")
        return room_id

    async def create_room(self, participant: Participant, room_id: str) -> Room:
        async with self._lock:
            self._check_unpaired(participant)
            if room_id in self.rooms:
                raise RoomExists()
            room = Room(room_id=room_id, host=participant, created_at=self.clock())
            self.rooms[room_id] = room
            participant.room_id = room_id
            participant.is_host = True

        await self._send(participant, protocol.encode(protocol.room_created(room_id)))
        logger.info(f"Room created: {room_id}")
        return room

    async def join_room(self, participant: Participant, room_id: str) -> Room:
        async with self._lock:
            self._check_unpaired(participant)
            room = self.rooms.get(room_id)
            if room is None:
                raise RoomNotFound()
            if room.guest is not None:
                raise RoomFull()
            room.guest = participant
            participant.room_id = room_id
            participant.is_host = False
            host = room.host

        await self._send(participant, protocol.encode(protocol.room_joined(room_id)))
        await self._send(host, protocol.encode(protocol.guest_joined()))
        logger.info(f"Guest joined room: {room_id}")
        return room

    async def relay(self, sender: Participant, message: Dict[str, Any], raw: Optional[str] = None) -> bool:
        """Forwards to the other party of the room. Misses are logged, never reported back."""
        room_id = message.get("roomId")
        async with self._lock:
            room = self.rooms.get(room_id)
            if room is None:
                target, problem = None, f"room {room_id} not found"
            elif sender is room.host:
                target, problem = room.guest, None
            elif sender is room.guest:
                target, problem = room.host, None
            else:
                target, problem = None, f"sender is not in room {room_id}"

        if problem is not None:
            logger.warning(f"Cannot relay {message['type']}: {problem}")
            return False
        if target is None:
            logger.debug(f"No peer yet in room {room_id}, dropping {message['type']}")
            return False
        await self._send(target, raw if isinstance(raw, str) else protocol.encode(message))
        return True

    async def disconnect(self, participant: Participant):
        outbox: Outbox = []
        async with self._lock:
            self.connections = max(0, self.connections - 1)
            room = self.rooms.get(participant.room_id) if participant.room_id else None
            if room is not None:
                if participant.is_host and room.host is participant:
                    if room.guest is not None:
                        outbox.append((room.guest, protocol.encode(protocol.host_left())))
                    del self.rooms[room.room_id]
                    logger.info(f"Room deleted: {room.room_id}")
                elif not participant.is_host and room.guest is participant:
                    outbox.append((room.host, protocol.encode(protocol.guest_left())))
                    room.guest = None
                    logger.info(f"Guest left room: {room.room_id}")
            participant.room_id = None

        logger.info("Client disconnected")
        for target, text in outbox:
            await self._send(target, text)

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        """Deletes rooms strictly older than the TTL, whatever their activity."""
        now = self.clock() if now is None else now
        async with self._lock:
            expired = [rid for rid, room in self.rooms.items() if now - room.created_at > self.ttl_seconds]
            for room_id in expired:
                del self.rooms[room_id]
        for room_id in expired:
            logger.info(f"Cleaned up old room: {room_id}")
        return expired

    def stats(self) -> Dict[str, int]:
        return {
            "rooms": len(self.rooms),
            "paired_rooms": sum(1 for r in self.rooms.values() if r.guest is not None),
            "connections": self.connections,
        }

    async def _send(self, participant: Participant, text: str) -> bool:
        try:
            await participant.websocket.send_text(text)
            return True
        except Exception as e:
            logger.warning(f"Send to {participant.role} failed: {e}")
            return False
