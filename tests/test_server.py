import unittest
from fastapi.testclient import TestClient
from dualsync import server
from dualsync.config import settings
from dualsync.rooms import RoomRegistry

class TestRendezvousServer(unittest.TestCase):
    def setUp(self):
        server.registry = RoomRegistry()
        self.token = settings.HTTP_SERVER_TOKEN

    def tearDown(self):
        settings.HTTP_SERVER_TOKEN = self.token

    def test_healthz(self):
        with TestClient(server.app) as client:
            response = client.get("/healthz")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_pairing_relay_and_guest_leaving(self):
        with TestClient(server.app) as client:
            with client.websocket_connect("/") as host:
                host.send_json({"type": "create-room", "roomId": "ABC234"})
                self.assertEqual(host.receive_json(), {"type": "room-created", "roomId": "ABC234"})

                with client.websocket_connect("/") as guest:
                    guest.send_json({"type": "join-room", "roomId": "ABC234"})
                    self.assertEqual(guest.receive_json(), {"type": "room-joined", "roomId": "ABC234"})
                    self.assertEqual(host.receive_json(), {"type": "guest-joined"})

                    offer = {"type": "offer", "roomId": "ABC234", "offer": {"type": "offer", "sdp": "v=0\r\n"}}
                    host.send_json(offer)
                    self.assertEqual(guest.receive_json(), offer)

                    answer = {"type": "answer", "roomId": "ABC234", "answer": {"type": "answer", "sdp": "v=0\r\n"}}
                    guest.send_json(answer)
                    self.assertEqual(host.receive_json(), answer)

                self.assertEqual(host.receive_json(), {"type": "guest-left"})
                self.assertIn("ABC234", server.registry.rooms)

        self.assertEqual(server.registry.rooms, {})

    def test_host_leaving_notifies_guest(self):
        with TestClient(server.app) as client:
            with client.websocket_connect("/ws") as guest:
                with client.websocket_connect("/ws") as host:
                    host.send_json({"type": "create-room", "roomId": "ABC234"})
                    host.receive_json()
                    guest.send_json({"type": "join-room", "roomId": "ABC234"})
                    guest.receive_json()
                    host.receive_json()
                self.assertEqual(guest.receive_json(), {"type": "host-left"})
                self.assertNotIn("ABC234", server.registry.rooms)

    def test_errors_are_replied(self):
        with TestClient(server.app) as client:
            with client.websocket_connect("/") as ws:
                ws.send_json({"type": "join-room", "roomId": "ZZZ999"})
                self.assertEqual(ws.receive_json(), {"type": "error", "error": "Room not found", "code": "ROOM_NOT_FOUND"})
                ws.send_text("garbage")
                self.assertEqual(ws.receive_json()["code"], "INVALID_MESSAGE")

    def test_binary_frames_are_accepted(self):
        with TestClient(server.app) as client:
            with client.websocket_connect("/") as host:
                host.send_bytes(b'{"type": "create-room", "roomId": "ABC234"}')
                self.assertEqual(host.receive_json(), {"type": "room-created", "roomId": "ABC234"})
                host.send_bytes(b"\xff\xfe")
                self.assertEqual(host.receive_json()["code"], "INVALID_MESSAGE")
        self.assertEqual(server.registry.rooms, {})

    def test_metrics(self):
        with TestClient(server.app) as client:
            with client.websocket_connect("/") as host:
                host.send_json({"type": "create-room", "roomId": "ABC234"})
                host.receive_json()
                body = client.get("/metrics").text
        self.assertIn("dualsync_rooms 1", body)
        self.assertIn("dualsync_paired_rooms 0", body)
        self.assertIn("dualsync_connections 1", body)

    def test_status_requires_token(self):
        settings.HTTP_SERVER_TOKEN = "secret"
        with TestClient(server.app) as client:
            self.assertEqual(client.get("/status").status_code, 401)
            response = client.get("/status", headers={"X-Token": "secret"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["rooms"], 0)
        self.assertEqual(response.json()["config"]["room_ttl"], settings.ROOM_TTL_SECONDS)

if __name__ == '__main__':
    unittest.main()
