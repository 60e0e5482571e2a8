import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Protocol, runtime_checkable
from .config import settings
from .errors import ChannelClosed, PeerUnreachable
from .models import ActionType, DeliveryResult, PlaybackAction, PlayerRef, VideoInfo

logger = logging.getLogger(__name__)

ActionCallback = Callable[[PlaybackAction], None]
TimeCallback = Callable[[float], None]

def now_ms() -> float:
    return time.time() * 1000.0

@runtime_checkable
class MediaElement(Protocol):
    """The actual player (a video element, a media backend...)."""

    current_time: float
    paused: bool
    playback_rate: float

    def play(self) -> None: ...
    def pause(self) -> None: ...
    def seek(self, position: float) -> None: ...
    def set_rate(self, rate: float) -> None: ...

@runtime_checkable
class LocalPlayerControl(Protocol):
    """What the coordinators need from a player-owning context."""

    closed: bool

    async def enable_sync(self, is_primary: bool) -> bool: ...
    async def disable_sync(self) -> None: ...
    async def get_video_info(self) -> VideoInfo: ...
    def on_user_action(self, callback: ActionCallback) -> None: ...
    async def apply(self, action: PlaybackAction) -> bool: ...

class PlayerAdapter:
    """
    Bridges one MediaElement to the sync layer.

    Outbound: user events on the primary become sequenced PlaybackActions
    (seeks debounced, periodic timesync). Inbound: actions are applied with
    sequence filtering and threshold-based corrections.
    """

    def __init__(
        self,
        media: Optional[MediaElement] = None,
        title: str = "",
        url: str = "",
        seek_debounce_s: Optional[float] = None,
        timesync_interval_s: Optional[float] = None,
    ):
        self.media = media
        self.title = title
        self.url = url
        self.seek_debounce_s = settings.SEEK_DEBOUNCE_MS / 1000.0 if seek_debounce_s is None else seek_debounce_s
        self.timesync_interval_s = settings.TIMESYNC_INTERVAL_MS / 1000.0 if timesync_interval_s is None else timesync_interval_s

        self.is_syncing = False
        self.is_primary = False
        self.closed = False

        self._outbound_seq = 0
        self._last_applied_seq = 0
        self._seek_timer: Optional[asyncio.TimerHandle] = None
        self._timesync_task: Optional[asyncio.Task] = None
        self._action_callbacks: List[ActionCallback] = []
        self._time_callbacks: List[TimeCallback] = []

    def on_user_action(self, callback: ActionCallback) -> None:
        self._action_callbacks.append(callback)

    def on_time_report(self, callback: TimeCallback) -> None:
        self._time_callbacks.append(callback)

    def attach_media(self, media: MediaElement):
        """Player showed up after the adapter was created."""
        self.media = media
        if self.is_syncing:
            self._report_time()

    async def enable_sync(self, is_primary: bool) -> bool:
        """Returns whether a media element is present (player ready)."""
        self.is_syncing = True
        self.is_primary = is_primary
        self._outbound_seq = 0
        self._last_applied_seq = 0
        logger.info(f"Player enabled as {'PRIMARY' if is_primary else 'SECONDARY'}")

        if self.media is not None:
            self._report_time()
        else:
            logger.info("Player not found yet, sync stays enabled in case it loads later")

        self._stop_periodic_sync()
        if is_primary:
            self._timesync_task = asyncio.create_task(self._timesync_loop())
        return self.media is not None

    async def disable_sync(self) -> None:
        self.is_syncing = False
        self.is_primary = False
        self._outbound_seq = 0
        self._last_applied_seq = 0
        self._cancel_seek_timer()
        self._stop_periodic_sync()

    async def get_video_info(self) -> VideoInfo:
        return VideoInfo(title=self.title, url=self.url, has_player=self.media is not None)

    def close(self):
        """The context owning this player went away."""
        self.closed = True
        self.is_syncing = False
        self._cancel_seek_timer()
        self._stop_periodic_sync()

    # Events raised by the media layer

    def notify_play(self):
        self._emit(PlaybackAction(type=ActionType.PLAY))

    def notify_pause(self):
        self._emit(PlaybackAction(type=ActionType.PAUSE))

    def notify_seeked(self):
        if not self._can_send():
            return
        self._cancel_seek_timer()
        loop = asyncio.get_running_loop()
        self._seek_timer = loop.call_later(self.seek_debounce_s, self._flush_seek)

    def notify_rate_change(self):
        if self.media is None:
            return
        self._emit(PlaybackAction(type=ActionType.RATE_CHANGE, rate=self.media.playback_rate))

    def _flush_seek(self):
        self._seek_timer = None
        if self.media is None:
            return
        self._emit(PlaybackAction(type=ActionType.SEEK, primary_time=self.media.current_time))

    def _can_send(self) -> bool:
        return self.is_syncing and self.is_primary and not self.closed

    def _emit(self, action: PlaybackAction):
        if not self._can_send():
            return
        self._outbound_seq += 1
        stamped = action.model_copy(update={"sync_seq": self._outbound_seq, "sent_at": now_ms()})
        for callback in self._action_callbacks:
            try:
                callback(stamped)
            except Exception as e:
                logger.error(f"Failed to send player action: {e}", exc_info=True)

    def _report_time(self):
        current = self.media.current_time
        for callback in self._time_callbacks:
            try:
                callback(current)
            except Exception as e:
                logger.error(f"Failed to report time: {e}", exc_info=True)

    async def _timesync_loop(self):
        while True:
            await asyncio.sleep(self.timesync_interval_s)
            if self.media is None:
                continue
            try:
                self._emit(PlaybackAction(
                    type=ActionType.TIME_SYNC,
                    primary_time=self.media.current_time,
                    paused=self.media.paused,
                    rate=self.media.playback_rate,
                ))
            except Exception as e:
                logger.error(f"Timesync failed: {e}", exc_info=True)

    def _stop_periodic_sync(self):
        if self._timesync_task is not None:
            self._timesync_task.cancel()
            self._timesync_task = None

    def _cancel_seek_timer(self):
        if self._seek_timer is not None:
            self._seek_timer.cancel()
            self._seek_timer = None

    # Inbound

    async def apply(self, action: PlaybackAction) -> bool:
        """Apply an action from the other side. Returns False when it was dropped."""
        if self.media is None:
            return False

        if action.sync_seq is not None:
            if action.sync_seq <= self._last_applied_seq:
                logger.debug(f"Dropping stale action seq={action.sync_seq} (last applied {self._last_applied_seq})")
                return False
            self._last_applied_seq = action.sync_seq

        # Don't echo a seek we are about to cause
        self._cancel_seek_timer()

        media = self.media
        if action.type == ActionType.PLAY:
            self._play()
        elif action.type == ActionType.PAUSE:
            media.pause()
        elif action.type == ActionType.SEEK:
            self._correct_position(action.target_time())
        elif action.type == ActionType.RATE_CHANGE:
            self._correct_rate(action.rate)
        elif action.type == ActionType.TIME_SYNC:
            drift = self._correct_position(action.target_time())
            if drift is not None:
                logger.info(f"Corrected offset drift of {drift:.2f}s")
            if action.paused and not media.paused:
                media.pause()
            elif not action.paused and media.paused:
                self._play()
            if action.rate:
                self._correct_rate(action.rate)
        return True

    def _play(self):
        try:
            self.media.play()
        except Exception as e:
            logger.error(f"Play failed: {e}")

    def _correct_position(self, target: Optional[float]) -> Optional[float]:
        """Seeks iff the drift is strictly above the threshold. Returns the corrected drift."""
        if target is None:
            return None
        drift = abs(self.media.current_time - target)
        if drift > settings.DRIFT_THRESHOLD_SECONDS:
            self.media.seek(target)
            return drift
        return None

    def _correct_rate(self, rate: Optional[float]):
        if rate is None:
            return
        if abs(self.media.playback_rate - rate) > settings.RATE_THRESHOLD:
            self.media.set_rate(rate)

class PlayerDirectory:
    """Live player handles of this process, by ref."""

    def __init__(self):
        self._players: Dict[PlayerRef, LocalPlayerControl] = {}

    def register(self, ref: PlayerRef, control: LocalPlayerControl):
        self._players[ref] = control

    def unregister(self, ref: PlayerRef) -> Optional[LocalPlayerControl]:
        return self._players.pop(ref, None)

    def get(self, ref: PlayerRef) -> Optional[LocalPlayerControl]:
        return self._players.get(ref)

    def __contains__(self, ref) -> bool:
        return ref in self._players

    def refs(self) -> List[PlayerRef]:
        return list(self._players.keys())

    def _live(self, ref: PlayerRef):
        control = self._players.get(ref)
        if control is None:
            return None, PeerUnreachable(f"No player registered for {ref}")
        if control.closed:
            return None, ChannelClosed(f"Channel to player {ref} is closed")
        return control, None

    async def deliver(self, ref: PlayerRef, action: PlaybackAction) -> DeliveryResult:
        control, err = self._live(ref)
        if err is not None:
            return DeliveryResult.failed(err)
        try:
            await control.apply(action)
        except Exception as e:
            return DeliveryResult.failed(PeerUnreachable(f"Delivery to {ref} failed: {e}"))
        return DeliveryResult.ok()

    async def enable(self, ref: PlayerRef, is_primary: bool) -> DeliveryResult:
        control, err = self._live(ref)
        if err is not None:
            return DeliveryResult.failed(err)
        try:
            ready = await control.enable_sync(is_primary)
        except Exception as e:
            return DeliveryResult.failed(PeerUnreachable(f"Could not enable sync on {ref}: {e}"))
        if not ready:
            logger.warning(f"Player {ref} is not ready yet, sync may start once it loads")
        return DeliveryResult.ok()

    async def disable(self, ref: PlayerRef) -> DeliveryResult:
        control, err = self._live(ref)
        if err is not None:
            return DeliveryResult.failed(err)
        try:
            await control.disable_sync()
        except Exception as e:
            return DeliveryResult.failed(PeerUnreachable(f"Could not disable sync on {ref}: {e}"))
        return DeliveryResult.ok()
