import logging
from typing import Any, Dict, Optional
from .models import (
    ConnectionState,
    LocalSyncState,
    PlayerRef,
    RemoteSyncState,
    SyncMode,
    SyncSession,
)

logger = logging.getLogger(__name__)

class SessionState:
    """
    Owner of the one SyncSession of this process.
    Handed explicitly to the coordinators; only the router's actor task mutates it.
    """

    def __init__(self):
        self.session = SyncSession()

    @property
    def mode(self) -> SyncMode:
        return self.session.mode

    @property
    def local(self) -> LocalSyncState:
        return self.session.local

    @property
    def remote(self) -> RemoteSyncState:
        return self.session.remote

    def begin_local(self, primary_ref: PlayerRef, secondary_ref: PlayerRef) -> LocalSyncState:
        self.reset()
        self.session.mode = SyncMode.LOCAL
        self.session.local = LocalSyncState(
            is_active=True,
            primary_ref=primary_ref,
            secondary_ref=secondary_ref,
        )
        logger.info(f"Local session started: primary={primary_ref} secondary={secondary_ref}")
        return self.session.local

    def begin_remote(self, local_ref: PlayerRef, signaling_url: str, is_host: bool, room_id: Optional[str] = None) -> RemoteSyncState:
        self.reset()
        self.session.mode = SyncMode.REMOTE
        self.session.remote = RemoteSyncState(
            local_ref=local_ref,
            signaling_url=signaling_url,
            is_host=is_host,
            room_id=room_id,
        )
        return self.session.remote

    def reset_local(self):
        self.session.local = LocalSyncState()
        if self.session.mode == SyncMode.LOCAL:
            self.session.mode = SyncMode.NONE

    def reset_remote(self):
        self.session.remote = RemoteSyncState(connection_state=ConnectionState.DISCONNECTED)
        if self.session.mode == SyncMode.REMOTE:
            self.session.mode = SyncMode.NONE

    def reset(self):
        self.reset_local()
        self.reset_remote()
        self.session.mode = SyncMode.NONE

    def participants(self) -> set:
        """Player refs the active session depends on."""
        if self.mode == SyncMode.LOCAL:
            return {r for r in (self.local.primary_ref, self.local.secondary_ref) if r is not None}
        if self.mode == SyncMode.REMOTE and self.remote.local_ref is not None:
            return {self.remote.local_ref}
        return set()

    def snapshot(self) -> Dict[str, Any]:
        return self.session.model_dump(mode="json", exclude={"local": {"last_action"}})
