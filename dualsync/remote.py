import logging
from typing import Any, Callable, Dict, Optional
from . import protocol
from .clients.peer_link import PeerLinkManager
from .config import normalize_signaling_url
from .errors import InvalidMessage, PeerUnreachable
from .models import ConnectionState, DeliveryResult, PlaybackAction, PlayerRef, SyncMode
from .player import PlayerDirectory
from .state import SessionState

logger = logging.getLogger(__name__)

LinkFactory = Callable[[], PeerLinkManager]

class RemoteSyncCoordinator:
    """
    Mirrors the local player onto a player in another process over a peer link.
    The link's callbacks are wired by the caller (the router) through `bind_link`.
    """

    def __init__(
        self,
        state: SessionState,
        players: PlayerDirectory,
        link_factory: Optional[LinkFactory] = None,
        bind_link: Optional[Callable[[PeerLinkManager], None]] = None,
    ):
        self.state = state
        self.players = players
        self.link_factory = link_factory or PeerLinkManager
        self.bind_link = bind_link
        self.link: Optional[PeerLinkManager] = None

    @property
    def is_active(self) -> bool:
        return self.state.mode == SyncMode.REMOTE and self.state.remote.is_active

    def _new_link(self) -> PeerLinkManager:
        link = self.link_factory()
        if self.bind_link is not None:
            self.bind_link(link)
        self.link = link
        return link

    async def create_room(self, local_ref: PlayerRef, signaling_url: str) -> str:
        url = normalize_signaling_url(signaling_url)
        await self._drop_link()
        remote = self.state.begin_remote(local_ref, url, is_host=True)
        link = self._new_link()
        try:
            room_id = await link.create_room(url)
        except Exception as e:
            logger.error(f"[Remote] Failed to create room: {e}")
            await self._unwind(link)
            raise

        remote.room_id = room_id
        remote.is_active = True
        remote.connection_state = ConnectionState.CONNECTING
        logger.info(f"[Remote] Hosting room {room_id} for player {local_ref}")
        return room_id

    async def join_room(self, local_ref: PlayerRef, room_id: str, signaling_url: str) -> str:
        url = normalize_signaling_url(signaling_url)
        code = protocol.normalize_room_id(room_id)
        await self._drop_link()
        remote = self.state.begin_remote(local_ref, url, is_host=False, room_id=code)
        link = self._new_link()
        try:
            await link.join_room(code, url)
        except Exception as e:
            logger.error(f"[Remote] Failed to join room {code}: {e}")
            await self._unwind(link)
            raise

        remote.is_active = True
        remote.connection_state = ConnectionState.CONNECTING
        logger.info(f"[Remote] Joined room {code} for player {local_ref}")
        return code

    async def stop(self):
        await self._drop_link()
        if self.state.mode == SyncMode.REMOTE:
            logger.info("[Remote] Session stopped")
        self.state.reset_remote()

    async def _unwind(self, link: PeerLinkManager):
        await link.disconnect()
        if self.link is link:
            self.link = None
        self.state.reset_remote()

    async def _drop_link(self):
        link, self.link = self.link, None
        if link is not None:
            await link.disconnect()

    def relay_action(self, sender_ref: PlayerRef, action: PlaybackAction) -> DeliveryResult:
        if not self.is_active:
            return DeliveryResult.skipped("no active remote session")

        remote = self.state.remote
        if sender_ref != remote.local_ref:
            logger.debug(f"[Remote] Ignoring action from non-synced player {sender_ref}")
            return DeliveryResult.skipped(f"{sender_ref} is not the synced player")

        # No queue: actions produced while not connected are lost
        if remote.connection_state != ConnectionState.CONNECTED or self.link is None:
            return DeliveryResult.skipped(f"peer link is {remote.connection_state.value}")

        if not self.link.send_sync_message(protocol.sync_action(action)):
            return DeliveryResult.failed(PeerUnreachable("Failed to send sync message to peer"))
        return DeliveryResult.ok()

    async def on_peer_message(self, message: Dict[str, Any]) -> DeliveryResult:
        if not self.is_active:
            return DeliveryResult.skipped("no active remote session")
        if message.get("type") != protocol.SYNC_ACTION:
            logger.debug(f"[Remote] Ignoring peer message of type {message.get('type')}")
            return DeliveryResult.skipped("not a sync action")

        try:
            action = PlaybackAction.from_wire(message.get("action"))
        except InvalidMessage as e:
            logger.warning(f"[Remote] {e.message}")
            return DeliveryResult.skipped(e.message)

        logger.debug(f"[Remote] Received {action.type.value} from peer")
        return await self.players.deliver(self.state.remote.local_ref, action)

    def on_link_state(self, link: PeerLinkManager, new_state: ConnectionState):
        if link is not self.link or self.state.mode != SyncMode.REMOTE:
            return
        remote = self.state.remote
        if remote.connection_state != new_state:
            logger.info(f"[Remote] Connection state: {remote.connection_state.value} -> {new_state.value}")
        remote.connection_state = new_state
