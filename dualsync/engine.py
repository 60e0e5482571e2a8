import logging
from typing import Optional
from .models import DeliveryResult, PlaybackAction, PlayerRef, SyncMode
from .player import PlayerDirectory, now_ms
from .state import SessionState

logger = logging.getLogger(__name__)

class LocalSyncCoordinator:
    """Mirrors the primary player onto the secondary within this process."""

    def __init__(self, state: SessionState, players: PlayerDirectory):
        self.state = state
        self.players = players

    @property
    def is_active(self) -> bool:
        return self.state.mode == SyncMode.LOCAL and self.state.local.is_active

    def start(self, primary_ref: PlayerRef, secondary_ref: PlayerRef):
        self.state.begin_local(primary_ref, secondary_ref)

    def stop(self):
        if self.is_active:
            logger.info("[Local] Session stopped")
        self.state.reset_local()

    def report_time(self, sender_ref: PlayerRef, current_time: float) -> Optional[float]:
        """
        Stores a position sample under the sender's slot.
        Once both slots are filled the offset is recomputed (not averaged) and the slots are cleared.
        Returns the new offset when one was computed.
        """
        if not self.is_active:
            return None

        local = self.state.local
        if sender_ref == local.primary_ref:
            local.pending_primary_time = current_time
        elif sender_ref == local.secondary_ref:
            local.pending_secondary_time = current_time
        else:
            logger.debug(f"[Local] Ignoring time report from non-participant {sender_ref}")
            return None

        if local.pending_primary_time is None or local.pending_secondary_time is None:
            return None

        local.time_offset_seconds = local.pending_secondary_time - local.pending_primary_time
        direction = "ahead" if local.time_offset_seconds > 0 else "behind"
        logger.info(f"[Local] Time offset calculated: {local.time_offset_seconds:.2f}s (secondary {direction})")

        local.pending_primary_time = None
        local.pending_secondary_time = None
        return local.time_offset_seconds

    async def relay_action(self, sender_ref: PlayerRef, action: PlaybackAction) -> DeliveryResult:
        if not self.is_active:
            return DeliveryResult.skipped("no active local session")

        local = self.state.local
        # Only the primary drives
        if sender_ref != local.primary_ref:
            logger.debug(f"[Local] Ignoring action from non-primary {sender_ref}")
            return DeliveryResult.skipped(f"{sender_ref} is not the primary")

        stamped = action.model_copy(update={"received_at": now_ms()})
        local.last_action = stamped
        logger.debug(f"[Local] Player action from primary {sender_ref}: {action.type.value}")

        outbound = stamped.model_copy(update={"time_offset": local.time_offset_seconds})
        return await self.players.deliver(local.secondary_ref, outbound)
