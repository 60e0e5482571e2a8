import unittest
from dualsync.errors import PeerUnreachable, RoomNotFound
from dualsync.models import ActionType, ConnectionState, PlaybackAction
from dualsync.player import PlayerAdapter
from dualsync.router import SyncSessionRouter

from fakes import MemoryMedia, RecordingControl, ScriptedLink, wait_until

class TestRouterLocalSession(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.router = SyncSessionRouter()
        await self.router.start()
        self.primary_media = MemoryMedia(current_time=10.0)
        self.secondary_media = MemoryMedia(current_time=12.5)
        self.primary = PlayerAdapter(self.primary_media, seek_debounce_s=0.01, timesync_interval_s=60)
        self.secondary = PlayerAdapter(self.secondary_media, seek_debounce_s=0.01, timesync_interval_s=60)
        self.router.attach_player(1, self.primary)
        self.router.attach_player(2, self.secondary)

    async def asyncTearDown(self):
        await self.router.shutdown()

    async def test_seek_mirrors_with_offset(self):
        await self.router.start_local(1, 2)
        state = await self.router.get_state()
        self.assertEqual(state["mode"], "local")
        self.assertAlmostEqual(state["local"]["time_offset_seconds"], 2.5)
        self.assertTrue(self.primary.is_primary)
        self.assertFalse(self.secondary.is_primary)

        self.primary_media.seek(20.0)
        self.primary.notify_seeked()

        await wait_until(lambda: self.secondary_media.seeks)
        self.assertEqual(self.secondary_media.current_time, 22.5)

    async def test_play_and_pause_mirror(self):
        await self.router.start_local(1, 2)
        self.primary.notify_play()
        await wait_until(lambda: not self.secondary_media.paused)
        self.primary.notify_pause()
        await wait_until(lambda: self.secondary_media.paused)

    async def test_secondary_actions_do_not_drive(self):
        await self.router.start_local(1, 2)
        result = await self.router.player_action(2, PlaybackAction(type=ActionType.PLAY))
        self.assertFalse(result.delivered)
        self.assertTrue(self.primary_media.paused)

    async def test_removed_participant_ends_session(self):
        await self.router.start_local(1, 2)
        await self.router.player_removed(2)

        state = await self.router.get_state()
        self.assertEqual(state["mode"], "none")
        self.assertTrue(self.secondary.closed)
        self.assertFalse(self.primary.is_syncing)

    async def test_stop_sync_disables_players(self):
        await self.router.start_local(1, 2)
        await self.router.stop_sync()
        self.assertFalse(self.primary.is_syncing)
        self.assertFalse(self.secondary.is_syncing)
        self.assertEqual((await self.router.get_state())["mode"], "none")

    async def test_no_session_skips(self):
        result = await self.router.player_action(1, PlaybackAction(type=ActionType.PLAY))
        self.assertFalse(result.delivered)
        self.assertIsNone(await self.router.report_time(1, 3.0))

class TestRouterPartialStart(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.router = SyncSessionRouter()
        await self.router.start()

    async def asyncTearDown(self):
        await self.router.shutdown()

    async def test_both_players_unreachable(self):
        self.router.attach_player(1, RecordingControl(fail=True))
        self.router.attach_player(2, RecordingControl(fail=True))
        with self.assertRaises(PeerUnreachable):
            await self.router.start_local(1, 2)
        self.assertEqual((await self.router.get_state())["mode"], "none")

    async def test_one_player_unreachable_continues(self):
        primary = RecordingControl()
        self.router.attach_player(1, primary)
        self.router.attach_player(2, RecordingControl(fail=True))
        await self.router.start_local(1, 2)
        self.assertTrue(primary.enabled)
        self.assertEqual((await self.router.get_state())["mode"], "local")

    async def test_calls_require_start(self):
        router = SyncSessionRouter()
        with self.assertRaises(RuntimeError):
            await router.get_state()

class TestRouterRemoteSession(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.links = []
        self.fail_with = None
        self.router = SyncSessionRouter(link_factory=self.make_link)
        await self.router.start()
        self.media = MemoryMedia(current_time=3.0)
        self.adapter = PlayerAdapter(self.media, timesync_interval_s=60)
        self.router.attach_player("tab", self.adapter)

    async def asyncTearDown(self):
        await self.router.shutdown()

    def make_link(self):
        link = BoundLink(fail_with=self.fail_with)
        self.links.append(link)
        return link

    async def test_host_flow(self):
        room_id = await self.router.create_room("tab", "ws://localhost:8080")
        self.assertEqual(room_id, "ABC234")
        self.assertTrue(self.adapter.is_primary)

        link = self.links[0]
        link.fire_state(ConnectionState.CONNECTED)
        self.assertTrue(await self.router.await_connection(timeout=1.0, poll_interval=0.01))

        self.adapter.notify_play()
        await wait_until(lambda: link.sent)
        self.assertEqual(link.sent[0]["action"]["type"], "play")

        state = await self.router.get_state()
        self.assertEqual(state["remote"]["connection_state"], "connected")
        self.assertEqual(state["link"], {"connectionState": "connected"})

    async def test_guest_applies_peer_messages(self):
        await self.router.join_room("tab", "abc234", "ws://localhost:8080")
        self.assertFalse(self.adapter.is_primary)

        self.links[0].fire_message({"type": "sync-action", "action": {"type": "seek", "primaryTime": 61.0, "syncSeq": 1}})
        await wait_until(lambda: self.media.seeks)
        self.assertEqual(self.media.current_time, 61.0)

    async def test_await_connection_times_out(self):
        await self.router.create_room("tab", "ws://localhost:8080")
        connected = await self.router.await_connection(timeout=0.05, poll_interval=0.01)

        self.assertFalse(connected)
        self.assertEqual(self.links[0].disconnects, 1)
        self.assertEqual((await self.router.get_state())["mode"], "none")
        self.assertFalse(self.adapter.is_syncing)

    async def test_await_connection_gives_up_when_dropped(self):
        await self.router.create_room("tab", "ws://localhost:8080")
        self.links[0].fire_state(ConnectionState.DISCONNECTED)
        self.assertFalse(await self.router.await_connection(timeout=1.0, poll_interval=0.01))
        self.assertEqual((await self.router.get_state())["mode"], "none")

    async def test_join_failure_surfaces(self):
        self.fail_with = RoomNotFound()
        with self.assertRaises(RoomNotFound):
            await self.router.join_room("tab", "ABC234", "ws://localhost:8080")
        self.assertEqual((await self.router.get_state())["mode"], "none")
        self.assertFalse(self.adapter.is_syncing)

    async def test_stop_remote(self):
        await self.router.create_room("tab", "ws://localhost:8080")
        await self.router.stop_remote()
        self.assertEqual(self.links[0].disconnects, 1)
        self.assertFalse(self.adapter.is_syncing)

class BoundLink(ScriptedLink):
    def __init__(self, fail_with=None):
        super().__init__(fail_with=fail_with)
        self.message_callbacks = []
        self.state_callbacks = []

    def on_message(self, callback):
        self.message_callbacks.append(callback)

    def on_state_change(self, callback):
        self.state_callbacks.append(callback)

    def fire_message(self, message):
        for callback in self.message_callbacks:
            callback(message)

    def fire_state(self, state):
        self.connected = state == ConnectionState.CONNECTED
        for callback in self.state_callbacks:
            callback(state)

if __name__ == '__main__':
    unittest.main()
