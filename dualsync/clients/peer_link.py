import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from .. import protocol
from ..config import normalize_signaling_url, settings
from ..errors import (
    DualSyncError,
    InvalidMessage,
    NegotiationFailed,
    SignalingUnavailable,
    error_from_wire,
)
from ..models import ConnectionState

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Dict[str, Any]], None]
StateCallback = Callable[[ConnectionState], None]

_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED},
    ConnectionState.CONNECTED: {ConnectionState.DISCONNECTED},
}

def default_peer_factory() -> RTCPeerConnection:
    servers = [RTCIceServer(urls=url) for url in settings.ICE_SERVERS]
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))

async def default_connect(url: str):
    return await websockets.connect(url, open_timeout=settings.SIGNALING_ACK_TIMEOUT_SECONDS)

def local_candidates(sdp: str) -> List[Dict[str, Any]]:
    """Candidates embedded in a local description, as RTCIceCandidateInit dicts."""
    sections: List[Dict[str, Any]] = []
    for line in sdp.splitlines():
        line = line.strip()
        if line.startswith("m="):
            sections.append({"mid": None, "candidates": []})
        elif not sections:
            continue
        elif line.startswith("a=mid:"):
            sections[-1]["mid"] = line[len("a=mid:"):]
        elif line.startswith("a=candidate:"):
            sections[-1]["candidates"].append(line[len("a="):])

    result = []
    for index, section in enumerate(sections):
        for text in section["candidates"]:
            result.append({"candidate": text, "sdpMid": section["mid"], "sdpMLineIndex": index})
    return result

def parse_candidate(init: Any):
    """RTCIceCandidateInit dict -> aiortc candidate. None for end-of-candidates."""
    if not isinstance(init, dict):
        raise InvalidMessage("ice-candidate without a candidate object")
    text = (init.get("candidate") or "").strip()
    if text.startswith("candidate:"):
        text = text[len("candidate:"):]
    if not text:
        return None
    try:
        candidate = candidate_from_sdp(text)
    except (AssertionError, IndexError, ValueError) as e:
        raise InvalidMessage(f"Malformed ICE candidate: {init.get('candidate')!r}") from e
    candidate.sdpMid = init.get("sdpMid")
    candidate.sdpMLineIndex = init.get("sdpMLineIndex")
    return candidate

class PeerLinkManager:
    """
    Owns one signaling socket, one peer connection and one data channel.

    Host is the offerer, guest the answerer. connection_state goes
    disconnected -> connecting -> connected -> disconnected.
    """

    def __init__(
        self,
        connect: Optional[Callable[[str], Awaitable[Any]]] = None,
        peer_factory: Optional[Callable[[], Any]] = None,
        ack_timeout: Optional[float] = None,
    ):
        self._connect = connect or default_connect
        self._peer_factory = peer_factory or default_peer_factory
        self.ack_timeout = settings.SIGNALING_ACK_TIMEOUT_SECONDS if ack_timeout is None else ack_timeout

        self.peer_connection = None
        self.data_channel = None
        self.signaling_socket = None
        self.room_id: Optional[str] = None
        self.is_host = False
        self.connection_state = ConnectionState.DISCONNECTED
        self.last_error: Optional[DualSyncError] = None

        self._reader_task: Optional[asyncio.Task] = None
        self._pending_ack: Optional[asyncio.Future] = None
        self._expected_ack: Optional[str] = None
        self._pending_candidates: List[Any] = []
        self._message_callbacks: List[MessageCallback] = []
        self._state_callbacks: List[StateCallback] = []

    def on_message(self, callback: MessageCallback):
        self._message_callbacks.append(callback)

    def on_state_change(self, callback: StateCallback):
        self._state_callbacks.append(callback)

    @property
    def is_connected(self) -> bool:
        return self.connection_state == ConnectionState.CONNECTED

    def get_state(self) -> Dict[str, Any]:
        return {
            "connectionState": self.connection_state.value,
            "roomId": self.room_id,
            "isHost": self.is_host,
            "error": self.last_error.message if self.last_error else None,
        }

    def _set_state(self, new_state: ConnectionState):
        current = self.connection_state
        if new_state == current:
            return
        if new_state not in _TRANSITIONS[current]:
            logger.debug(f"Ignoring peer link transition {current.value} -> {new_state.value}")
            return
        self.connection_state = new_state
        logger.info(f"Peer link state changed: {new_state.value}")
        for callback in self._state_callbacks:
            try:
                callback(new_state)
            except Exception as e:
                logger.error(f"State callback error: {e}", exc_info=True)

    # Room lifecycle

    async def create_room(self, signaling_url: str) -> str:
        """Registers as host under a fresh room code and returns it once the server acked."""
        if self.connection_state != ConnectionState.DISCONNECTED:
            await self.disconnect()

        self.is_host = True
        self.room_id = protocol.generate_room_id()
        self.last_error = None
        self._set_state(ConnectionState.CONNECTING)

        try:
            await self._open_signaling(signaling_url)
            self._create_peer_connection()
            self._open_local_channel()
            await self._request(protocol.create_room(self.room_id), protocol.ROOM_CREATED)
        except (Exception, asyncio.CancelledError) as e:
            logger.error(f"Failed to create room: {e}")
            await self.disconnect()
            raise

        logger.info(f"Room created: {self.room_id}, waiting for guest to join...")
        return self.room_id

    async def join_room(self, room_id: str, signaling_url: str) -> str:
        room_id = protocol.normalize_room_id(room_id)
        if self.connection_state != ConnectionState.DISCONNECTED:
            await self.disconnect()

        self.is_host = False
        self.room_id = room_id
        self.last_error = None
        self._set_state(ConnectionState.CONNECTING)

        try:
            await self._open_signaling(signaling_url)
            self._create_peer_connection()
            await self._request(protocol.join_room(room_id), protocol.ROOM_JOINED)
        except (Exception, asyncio.CancelledError) as e:
            logger.error(f"Failed to join room: {e}")
            await self.disconnect()
            raise

        logger.info(f"Joined room: {room_id}")
        return room_id

    async def disconnect(self):
        """Releases data channel, peer connection and signaling socket, in that order. Idempotent."""
        channel, self.data_channel = self.data_channel, None
        pc, self.peer_connection = self.peer_connection, None
        socket, self.signaling_socket = self.signaling_socket, None
        task, self._reader_task = self._reader_task, None

        if channel is not None or pc is not None or socket is not None:
            logger.info("Disconnecting peer link...")

        if channel is not None:
            try:
                channel.close()
            except Exception as e:
                logger.debug(f"Data channel close failed: {e}")
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.debug(f"Peer connection close failed: {e}")
        if socket is not None:
            try:
                await socket.close()
            except Exception as e:
                logger.debug(f"Signaling socket close failed: {e}")

        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        self._fail_pending(SignalingUnavailable("Peer link disconnected"))
        self._pending_candidates = []
        self.room_id = None
        self.is_host = False
        self._set_state(ConnectionState.DISCONNECTED)

    # Data channel

    def send_sync_message(self, payload: Dict[str, Any]) -> bool:
        """Hands the payload to an open data channel. Never blocks or buffers."""
        channel = self.data_channel
        if channel is None or channel.readyState != "open":
            logger.warning("Data channel not ready")
            return False
        try:
            channel.send(json.dumps(payload))
        except Exception as e:
            logger.error(f"Data channel send failed: {e}")
            return False
        return True

    def _open_local_channel(self):
        self.data_channel = self.peer_connection.createDataChannel("sync")
        self._setup_data_channel(self.data_channel)

    def _setup_data_channel(self, channel):
        def on_open():
            if channel is self.data_channel:
                logger.info("Data channel opened")
                self._set_state(ConnectionState.CONNECTED)

        def on_close():
            if channel is self.data_channel:
                logger.info("Data channel closed")
                self._set_state(ConnectionState.DISCONNECTED)

        def on_message(data):
            if channel is not self.data_channel:
                return
            try:
                message = json.loads(data)
            except (TypeError, ValueError) as e:
                logger.error(f"Failed to parse data channel message: {e}")
                return
            if not isinstance(message, dict):
                logger.error("Data channel message is not an object")
                return
            for callback in self._message_callbacks:
                try:
                    callback(message)
                except Exception as e:
                    logger.error(f"Message callback error: {e}", exc_info=True)

        channel.on("open", on_open)
        channel.on("close", on_close)
        channel.on("message", on_message)

    # Peer connection

    def _create_peer_connection(self):
        pc = self._peer_factory()
        self.peer_connection = pc
        self._pending_candidates = []

        def on_connection_state_change():
            if pc is not self.peer_connection:
                return
            state = pc.connectionState
            logger.info(f"Peer connection state: {state}")
            if state == "connected":
                self._set_state(ConnectionState.CONNECTED)
            elif state in ("disconnected", "failed", "closed"):
                if self.connection_state == ConnectionState.CONNECTING:
                    self.last_error = NegotiationFailed(f"Peer connection {state} before it was connected")
                    logger.error(self.last_error.message)
                self._set_state(ConnectionState.DISCONNECTED)

        def on_datachannel(channel):
            if pc is not self.peer_connection:
                return
            logger.info("Data channel received")
            self.data_channel = channel
            self._setup_data_channel(channel)
            if channel.readyState == "open":
                self._set_state(ConnectionState.CONNECTED)

        pc.on("connectionstatechange", on_connection_state_change)
        pc.on("datachannel", on_datachannel)

    async def _reset_peer(self):
        """Fresh peer connection for the next guest of a room we still host."""
        channel, self.data_channel = self.data_channel, None
        pc, self.peer_connection = self.peer_connection, None
        if channel is not None:
            channel.close()
        if pc is not None:
            await pc.close()
        self._create_peer_connection()
        self._open_local_channel()

    # Signaling

    async def _open_signaling(self, signaling_url: str):
        url = normalize_signaling_url(signaling_url)
        try:
            self.signaling_socket = await self._connect(url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise SignalingUnavailable(f"Could not reach signaling server at {url}: {e}") from e
        logger.info(f"Connected to signaling server {url}")
        self._reader_task = asyncio.create_task(self._read_signaling(self.signaling_socket))

    async def _send_signaling(self, message: Dict[str, Any], required: bool = False) -> bool:
        socket = self.signaling_socket
        if socket is None:
            err = SignalingUnavailable("Signaling socket not ready")
        else:
            try:
                await socket.send(protocol.encode(message))
                return True
            except (ConnectionClosed, OSError) as e:
                err = SignalingUnavailable(f"Failed to send {message['type']}: {e}")
        if required:
            raise err
        logger.error(err.message)
        return False

    async def _request(self, message: Dict[str, Any], expected: str) -> Dict[str, Any]:
        self._pending_ack = asyncio.get_running_loop().create_future()
        self._expected_ack = expected
        try:
            await self._send_signaling(message, required=True)
            return await asyncio.wait_for(self._pending_ack, timeout=self.ack_timeout)
        except asyncio.TimeoutError as e:
            raise SignalingUnavailable(f"Timed out waiting for {expected}") from e
        finally:
            self._pending_ack = None
            self._expected_ack = None

    def _fail_pending(self, err: DualSyncError):
        if self._pending_ack is not None and not self._pending_ack.done():
            self._pending_ack.set_exception(err)

    async def _read_signaling(self, socket):
        try:
            async for raw in socket:
                try:
                    message = protocol.decode(raw)
                except InvalidMessage as e:
                    logger.warning(f"Ignoring signaling frame: {e}")
                    continue
                await self._handle_signaling_message(message)
        except ConnectionClosed as e:
            logger.info(f"Signaling connection lost: {e}")
        finally:
            if socket is self.signaling_socket:
                logger.info("Signaling socket closed")
                self._fail_pending(SignalingUnavailable("Signaling connection closed"))
                if self.connection_state == ConnectionState.CONNECTING:
                    self._set_state(ConnectionState.DISCONNECTED)

    async def _handle_signaling_message(self, message: Dict[str, Any]):
        kind = message["type"]
        logger.debug(f"Signaling message: {kind}")

        pending = self._pending_ack
        if pending is not None and not pending.done():
            if kind == self._expected_ack:
                pending.set_result(message)
                return
            if kind == protocol.ERROR:
                pending.set_exception(error_from_wire(message))
                return

        try:
            if kind == protocol.ERROR:
                self.last_error = error_from_wire(message)
                logger.error(f"Signaling error: {self.last_error.message}")
                self._set_state(ConnectionState.DISCONNECTED)
            elif kind == protocol.GUEST_JOINED:
                if self.is_host:
                    await self._create_and_send_offer()
            elif kind == protocol.OFFER:
                if not self.is_host:
                    await self._handle_offer(message.get("offer"))
            elif kind == protocol.ANSWER:
                if self.is_host:
                    await self._handle_answer(message.get("answer"))
            elif kind == protocol.ICE_CANDIDATE:
                await self._handle_remote_candidate(message.get("candidate"))
            elif kind == protocol.HOST_LEFT:
                logger.info("Host left the room")
                if self.connection_state == ConnectionState.CONNECTING:
                    self._set_state(ConnectionState.DISCONNECTED)
            elif kind == protocol.GUEST_LEFT:
                logger.info("Guest left the room")
                if self.is_host and self.connection_state == ConnectionState.CONNECTING:
                    await self._reset_peer()
            else:
                logger.debug(f"Unhandled signaling message type: {kind}")
        except Exception as e:
            logger.error(f"Failed to handle {kind}: {e}", exc_info=True)

    async def _create_and_send_offer(self):
        pc = self.peer_connection
        if pc is None:
            return
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        description = pc.localDescription
        await self._send_signaling(protocol.offer(self.room_id, description.sdp, description.type))
        await self._announce_candidates(description.sdp)

    async def _handle_offer(self, offer: Any):
        pc = self.peer_connection
        if pc is None:
            return
        if not isinstance(offer, dict) or not offer.get("sdp"):
            raise InvalidMessage("offer without SDP")
        await pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer.get("type") or "offer"))
        await self._flush_candidates()

        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        description = pc.localDescription
        await self._send_signaling(protocol.answer(self.room_id, description.sdp, description.type))
        await self._announce_candidates(description.sdp)

    async def _handle_answer(self, answer: Any):
        pc = self.peer_connection
        if pc is None:
            return
        if not isinstance(answer, dict) or not answer.get("sdp"):
            raise InvalidMessage("answer without SDP")
        await pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer.get("type") or "answer"))
        await self._flush_candidates()

    async def _handle_remote_candidate(self, init: Any):
        pc = self.peer_connection
        if pc is None:
            return
        candidate = parse_candidate(init)
        if candidate is None:
            return
        # Held back until the remote description exists
        if pc.remoteDescription is None:
            self._pending_candidates.append(candidate)
            return
        await pc.addIceCandidate(candidate)

    async def _flush_candidates(self):
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            try:
                await self.peer_connection.addIceCandidate(candidate)
            except Exception as e:
                logger.error(f"Failed to add ICE candidate: {e}")

    async def _announce_candidates(self, sdp: str):
        """Trickle-style announcement of the candidates gathered into our description."""
        for candidate in local_candidates(sdp):
            await self._send_signaling(protocol.ice_candidate(self.room_id, candidate))
