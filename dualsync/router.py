import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
from .clients.peer_link import PeerLinkManager
from .config import settings
from .engine import LocalSyncCoordinator
from .errors import PeerUnreachable
from .models import ConnectionState, DeliveryResult, PlaybackAction, PlayerRef, SyncMode
from .player import LocalPlayerControl, PlayerAdapter, PlayerDirectory
from .remote import LinkFactory, RemoteSyncCoordinator
from .state import SessionState

logger = logging.getLogger(__name__)

@dataclass
class _Event:
    handler: Callable[..., Any]
    args: Tuple[Any, ...]
    future: Optional[asyncio.Future] = None

class SyncSessionRouter:
    """
    The one actor of a host process that owns the SyncSession.

    Every inbound event (player actions, time reports, peer messages, link
    state changes, control commands) is queued and handled one at a time.
    """

    def __init__(self, players: Optional[PlayerDirectory] = None, link_factory: Optional[LinkFactory] = None):
        self.players = players or PlayerDirectory()
        self.state = SessionState()
        self.local = LocalSyncCoordinator(self.state, self.players)
        self.remote = RemoteSyncCoordinator(
            self.state,
            self.players,
            link_factory=link_factory or PeerLinkManager,
            bind_link=self._bind_link,
        )
        self._queue: "asyncio.Queue[Optional[_Event]]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def shutdown(self):
        """Stops whatever session is active, then the actor."""
        if self._task is None:
            return
        await self.stop_sync()
        self._queue.put_nowait(None)
        await self._task
        self._task = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.shutdown()

    async def _run(self):
        while True:
            event = await self._queue.get()
            if event is None:
                break
            try:
                result = await event.handler(*event.args)
            except Exception as e:
                if event.future is None:
                    logger.error(f"Error handling {event.handler.__name__}: {e}", exc_info=True)
                elif not event.future.done():
                    event.future.set_exception(e)
            else:
                if event.future is not None and not event.future.done():
                    event.future.set_result(result)

    async def _call(self, handler: Callable[..., Any], *args) -> Any:
        if self._task is None:
            raise RuntimeError("SyncSessionRouter is not started")
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Event(handler, args, future))
        return await future

    def _post(self, handler: Callable[..., Any], *args):
        """Fire-and-forget; failures are logged by the actor."""
        self._queue.put_nowait(_Event(handler, args))

    # Player wiring

    def attach_player(self, ref: PlayerRef, control: LocalPlayerControl):
        self.players.register(ref, control)
        control.on_user_action(lambda action: self.submit_player_action(ref, action))
        if isinstance(control, PlayerAdapter):
            control.on_time_report(lambda current: self.submit_time_report(ref, current))

    def submit_player_action(self, ref: PlayerRef, action: PlaybackAction):
        self._post(self._handle_player_action, ref, action)

    def submit_time_report(self, ref: PlayerRef, current_time: float):
        self._post(self._handle_report_time, ref, current_time)

    def _bind_link(self, link: PeerLinkManager):
        link.on_message(lambda message: self._post(self._handle_peer_message, message))
        link.on_state_change(lambda new_state: self._post(self._handle_link_state, link, new_state))

    # Public commands

    async def start_local(self, primary_ref: PlayerRef, secondary_ref: PlayerRef):
        return await self._call(self._handle_start_local, primary_ref, secondary_ref)

    async def stop_sync(self):
        return await self._call(self._handle_stop_sync)

    async def create_room(self, local_ref: PlayerRef, signaling_url: Optional[str] = None) -> str:
        return await self._call(self._handle_create_room, local_ref, signaling_url or settings.SIGNALING_URL)

    async def join_room(self, local_ref: PlayerRef, room_id: str, signaling_url: Optional[str] = None) -> str:
        return await self._call(self._handle_join_room, local_ref, room_id, signaling_url or settings.SIGNALING_URL)

    async def stop_remote(self):
        return await self._call(self._handle_stop_remote)

    async def player_action(self, sender_ref: PlayerRef, action: PlaybackAction) -> DeliveryResult:
        return await self._call(self._handle_player_action, sender_ref, action)

    async def report_time(self, sender_ref: PlayerRef, current_time: float) -> Optional[float]:
        return await self._call(self._handle_report_time, sender_ref, current_time)

    async def peer_message(self, message: Dict[str, Any]) -> DeliveryResult:
        return await self._call(self._handle_peer_message, message)

    async def player_removed(self, ref: PlayerRef):
        return await self._call(self._handle_player_removed, ref)

    async def get_state(self) -> Dict[str, Any]:
        return await self._call(self._handle_get_state)

    async def await_connection(self, timeout: Optional[float] = None, poll_interval: Optional[float] = None) -> bool:
        """
        Polls the remote connection state until connected.
        On timeout, or if the attempt falls back to disconnected, the remote session is torn down.
        """
        timeout = settings.CONNECTION_TIMEOUT_SECONDS if timeout is None else timeout
        poll_interval = settings.CONNECTION_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        deadline = time.monotonic() + timeout

        while True:
            snapshot = await self.get_state()
            if snapshot["mode"] != SyncMode.REMOTE.value:
                return False
            connection = snapshot["remote"]["connection_state"]
            if connection == ConnectionState.CONNECTED.value:
                return True
            if connection == ConnectionState.DISCONNECTED.value and snapshot["remote"]["is_active"]:
                logger.warning("Remote connection attempt dropped, tearing down")
                await self.stop_remote()
                return False
            if time.monotonic() >= deadline:
                logger.warning(f"Remote connection not established within {timeout:.0f}s, tearing down")
                await self.stop_remote()
                return False
            await asyncio.sleep(poll_interval)

    # Handlers (run on the actor task only)

    async def _teardown(self):
        if self.state.mode == SyncMode.LOCAL:
            local = self.state.local
            for ref in (local.primary_ref, local.secondary_ref):
                if ref is not None:
                    self._log_delivery("disable", await self.players.disable(ref))
            self.local.stop()
        elif self.state.mode == SyncMode.REMOTE:
            ref = self.state.remote.local_ref
            if ref is not None:
                self._log_delivery("disable", await self.players.disable(ref))
        await self.remote.stop()
        self.state.reset()

    async def _handle_start_local(self, primary_ref: PlayerRef, secondary_ref: PlayerRef):
        await self._teardown()
        self.local.start(primary_ref, secondary_ref)

        results = await asyncio.gather(
            self.players.enable(primary_ref, True),
            self.players.enable(secondary_ref, False),
        )
        failures = [r for r in results if not r.delivered]
        if len(failures) == len(results):
            self.local.stop()
            raise PeerUnreachable(f"Could not enable sync on either player: {failures[0].reason}")
        for failure in failures:
            logger.warning(f"Continuing with partial sync, one player did not respond: {failure.reason}")
        return self.state.snapshot()

    async def _handle_stop_sync(self):
        await self._teardown()

    async def _handle_create_room(self, local_ref: PlayerRef, signaling_url: str) -> str:
        await self._teardown()
        room_id = await self.remote.create_room(local_ref, signaling_url)
        self._log_delivery("enable", await self.players.enable(local_ref, True))
        return room_id

    async def _handle_join_room(self, local_ref: PlayerRef, room_id: str, signaling_url: str) -> str:
        await self._teardown()
        code = await self.remote.join_room(local_ref, room_id, signaling_url)
        self._log_delivery("enable", await self.players.enable(local_ref, False))
        return code

    async def _handle_stop_remote(self):
        if self.state.mode == SyncMode.REMOTE:
            await self._teardown()
        else:
            await self.remote.stop()

    async def _handle_player_action(self, sender_ref: PlayerRef, action: PlaybackAction) -> DeliveryResult:
        if self.state.mode == SyncMode.LOCAL:
            result = await self.local.relay_action(sender_ref, action)
        elif self.state.mode == SyncMode.REMOTE:
            result = self.remote.relay_action(sender_ref, action)
        else:
            result = DeliveryResult.skipped("no active session")
        self._log_delivery(action.type.value, result)
        return result

    async def _handle_report_time(self, sender_ref: PlayerRef, current_time: float) -> Optional[float]:
        if self.state.mode == SyncMode.LOCAL:
            return self.local.report_time(sender_ref, current_time)
        return None

    async def _handle_peer_message(self, message: Dict[str, Any]) -> DeliveryResult:
        result = await self.remote.on_peer_message(message)
        self._log_delivery("peer message", result)
        return result

    async def _handle_link_state(self, link: PeerLinkManager, new_state: ConnectionState):
        self.remote.on_link_state(link, new_state)

    async def _handle_player_removed(self, ref: PlayerRef):
        control = self.players.unregister(ref)
        if isinstance(control, PlayerAdapter):
            control.close()
        if ref in self.state.participants():
            logger.info(f"Player {ref} of the active session went away, stopping sync")
            await self._teardown()

    async def _handle_get_state(self) -> Dict[str, Any]:
        snapshot = self.state.snapshot()
        if self.remote.link is not None:
            snapshot["link"] = self.remote.link.get_state()
        return snapshot

    @staticmethod
    def _log_delivery(what: str, result: DeliveryResult):
        if result.error is not None:
            logger.warning(f"Failed to deliver {what}: {result.error.message}")
        elif not result.delivered:
            logger.debug(f"Dropped {what}: {result.reason}")
