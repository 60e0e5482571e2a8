import unittest
from dualsync import protocol
from dualsync.config import settings
from dualsync.errors import DualSyncError, InvalidMessage, RoomFull, RoomNotFound, error_from_wire
from dualsync.models import ActionType, PlaybackAction

class TestRoomCodes(unittest.TestCase):
    def test_generated_codes_use_alphabet(self):
        for _ in range(50):
            code = protocol.generate_room_id()
            self.assertEqual(len(code), settings.ROOM_ID_LENGTH)
            self.assertTrue(set(code) <= set(settings.ROOM_ID_ALPHABET))
            self.assertFalse(set(code) & set("01OI"))

    def test_normalize(self):
        self.assertEqual(protocol.normalize_room_id(" k7m2pq "), "K7M2PQ")
        for bad in (None, "", "ABC", "ABCDEFG", "ABC10O"):
            with self.subTest(code=bad):
                with self.assertRaises(InvalidMessage):
                    protocol.normalize_room_id(bad)

class TestMessages(unittest.TestCase):
    def test_decode(self):
        self.assertEqual(protocol.decode(b'{"type": "guest-joined"}'), {"type": "guest-joined"})
        for raw in ("nope", "[]", '{"roomId": "X"}', '{"type": 3}'):
            with self.subTest(raw=raw):
                with self.assertRaises(InvalidMessage):
                    protocol.decode(raw)

    def test_offer_shape(self):
        self.assertEqual(
            protocol.offer("ABC234", "v=0"),
            {"type": "offer", "roomId": "ABC234", "offer": {"type": "offer", "sdp": "v=0"}},
        )

    def test_error_round_trip(self):
        message = protocol.error(RoomFull())
        self.assertEqual(message, {"type": "error", "error": "Room is full", "code": "ROOM_FULL"})
        self.assertIsInstance(error_from_wire(message), RoomFull)

    def test_error_without_code(self):
        self.assertIsInstance(error_from_wire({"type": "error", "error": "Room not found"}), RoomNotFound)
        err = error_from_wire({"type": "error", "error": "Something odd"})
        self.assertIs(type(err), DualSyncError)
        self.assertEqual(err.message, "Something odd")

class TestPlaybackAction(unittest.TestCase):
    def test_wire_aliases(self):
        action = PlaybackAction.from_wire({"type": "timesync", "primaryTime": 4.0, "paused": False, "rate": 1.0, "syncSeq": 7})
        self.assertEqual(action.type, ActionType.TIME_SYNC)
        self.assertEqual(action.sync_seq, 7)
        wire = action.to_wire()
        self.assertEqual(wire["primaryTime"], 4.0)
        self.assertNotIn("timeOffset", wire)

    def test_missing_offset_counts_as_zero(self):
        action = PlaybackAction(type=ActionType.SEEK, primary_time=20.0)
        self.assertEqual(action.target_time(), 20.0)
        self.assertIsNone(PlaybackAction(type=ActionType.PLAY).target_time())

    def test_payload_required_per_type(self):
        for data in (
            {"type": "seek"},
            {"type": "ratechange"},
            {"type": "timesync", "primaryTime": 1.0},
            {"type": "rewind"},
            "play",
        ):
            with self.subTest(data=data):
                with self.assertRaises(InvalidMessage):
                    PlaybackAction.from_wire(data)

if __name__ == '__main__':
    unittest.main()
