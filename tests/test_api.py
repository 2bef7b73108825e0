"""Tests for api.py — FastAPI REST endpoints over a fake backend."""

import base64
import threading
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from fakes import FakeBackend, fast_config, stm32_backend, wait_until
from hidbridge.api import MAX_FRAME_BYTES, app, configure_auth, get_bridge, set_bridge
from hidbridge.bridge import Bridge


class ApiTestCase(unittest.TestCase):
    """Fresh bridge over the reference board for every test."""

    backend_factory = staticmethod(stm32_backend)

    def setUp(self):
        configure_auth(None)
        self.backend = self.backend_factory()
        self.bridge = Bridge(self.backend, config=fast_config())
        set_bridge(self.bridge)
        self.client = TestClient(app)

    def tearDown(self):
        set_bridge(None)
        configure_auth(None)


class TestHealthEndpoint(ApiTestCase):
    """GET /health always returns 200."""

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["status"], "ok")
        self.assertIn("version", data)


class TestAuthMiddleware(ApiTestCase):
    """Token auth middleware."""

    def test_no_token_required(self):
        resp = self.client.get("/devices")
        self.assertEqual(resp.status_code, 200)

    def test_token_required_rejects_missing(self):
        configure_auth("secret123")
        resp = self.client.get("/devices")
        self.assertEqual(resp.status_code, 401)

    def test_token_required_rejects_wrong(self):
        configure_auth("secret123")
        resp = self.client.get("/bridge", headers={"X-API-Token": "wrong"})
        self.assertEqual(resp.status_code, 401)

    def test_token_required_accepts_correct(self):
        configure_auth("secret123")
        resp = self.client.get("/devices", headers={"X-API-Token": "secret123"})
        self.assertEqual(resp.status_code, 200)

    def test_health_bypasses_auth(self):
        configure_auth("secret123")
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)


class TestDeviceEndpoints(ApiTestCase):

    def test_list_devices(self):
        resp = self.client.get("/devices")
        self.assertEqual(resp.status_code, 200)
        devices = resp.json()
        self.assertEqual(len(devices), 1)
        self.assertEqual(devices[0]["vid"], 1155)
        self.assertEqual(devices[0]["pid"], 22336)
        self.assertEqual(devices[0]["vid_pid"], "0483:5740")
        self.assertEqual(devices[0]["path"], "/dev/bus/usb/001/004")


class TestBridgeEndpoints(ApiTestCase):

    def test_status_idle(self):
        data = self.client.get("/bridge").json()
        self.assertEqual(data["state"], "IDLE")
        self.assertIsNone(data["device"])
        self.assertIsNone(data["permission"])

    def test_open(self):
        resp = self.client.post("/bridge/open")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["state"], "AUTHORIZED")
        self.assertEqual(data["permission"], "granted")
        self.assertEqual([e["address"] for e in data["bulk_in"]], [0x81])
        self.assertEqual(data["bulk_out"][0]["direction"], "OUT")

    def test_open_pending_permission(self):
        self.backend.defer_permission = True
        data = self.client.post("/bridge/open").json()
        self.assertEqual(data["state"], "PERMISSION_REQUESTED")
        self.assertEqual(data["permission"], "pending")

    def test_start_without_device(self):
        resp = self.client.post("/bridge/reading/start")
        self.assertEqual(resp.status_code, 409)

    def test_read_frames(self):
        self.client.post("/bridge/open")
        self.backend.queue_read(0x81, b"ABCDEFGHIJKL")
        resp = self.client.post("/bridge/reading/start", json={"mode": "per_endpoint"})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["reading"])
        self.assertTrue(wait_until(self.bridge.has_data))

        frames = self.client.get("/bridge/frames").json()
        self.assertEqual(len(frames), 1)
        self.assertEqual(frames[0]["endpoint"], 0x81)
        self.assertEqual(frames[0]["length"], 12)
        self.assertEqual(bytes.fromhex(frames[0]["hex"]), b"ABCDEFGHIJKL")

        data = self.client.post("/bridge/reading/stop").json()
        self.assertFalse(data["reading"])
        self.assertEqual(data["state"], "AUTHORIZED")

    def test_start_is_idempotent(self):
        self.client.post("/bridge/open")
        self.client.post("/bridge/reading/start")
        resp = self.client.post("/bridge/reading/start", json={"mode": "sweep"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(self.bridge.workers), 1)

    def test_bad_mode(self):
        self.client.post("/bridge/open")
        resp = self.client.post("/bridge/reading/start", json={"mode": "interrupt"})
        self.assertEqual(resp.status_code, 422)

    def test_frames_limit(self):
        self.assertEqual(self.client.get("/bridge/frames", params={"limit": 0}).status_code, 400)
        self.assertEqual(self.client.get("/bridge/frames").json(), [])


class TestWriteEndpoint(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.client.post("/bridge/open")

    def test_text(self):
        resp = self.client.post("/bridge/write", json={"data": "Hello"})
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data["ok"])
        self.assertEqual(data["length"], 5)
        self.assertEqual(data["endpoints"], {"0x01": 5})
        self.assertEqual(self.backend.writes, [(0x01, b"Hello")])

    def test_hex(self):
        self.client.post("/bridge/write", json={"data": "00ff10", "encoding": "hex"})
        self.assertEqual(self.backend.writes_to(0x01), [b"\x00\xff\x10"])

    def test_base64(self):
        payload = base64.b64encode(b"\x01\x02\x03").decode()
        self.client.post("/bridge/write", json={"data": payload, "encoding": "base64"})
        self.assertEqual(self.backend.writes_to(0x01), [b"\x01\x02\x03"])

    def test_invalid_hex(self):
        resp = self.client.post("/bridge/write", json={"data": "zz", "encoding": "hex"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.backend.writes, [])

    def test_too_large(self):
        resp = self.client.post("/bridge/write",
                                json={"data": "00" * (MAX_FRAME_BYTES + 1), "encoding": "hex"})
        self.assertEqual(resp.status_code, 413)

    def test_endpoint_failure_reported(self):
        self.backend.write_outcomes[0x01] = 2
        data = self.client.post("/bridge/write", json={"data": "Hello"}).json()
        self.assertFalse(data["ok"])
        self.assertIn("short write", data["errors"]["0x01"])

    def test_concurrent_writes_report_own_frame(self):
        start = threading.Barrier(4)
        responses = {}

        def post(n):
            client = TestClient(app)
            start.wait()
            responses[n] = client.post("/bridge/write", json={"data": "x" * n}).json()

        threads = [threading.Thread(target=post, args=(n,)) for n in (1, 2, 3, 4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10.0)
        self.assertEqual(sorted(responses), [1, 2, 3, 4])
        for n, data in responses.items():
            self.assertTrue(data["ok"])
            self.assertEqual(data["length"], n)
            self.assertEqual(data["endpoints"], {"0x01": n})


class TestWriteWithoutDevice(ApiTestCase):

    backend_factory = staticmethod(FakeBackend)

    def test_open_not_found(self):
        resp = self.client.post("/bridge/open")
        self.assertEqual(resp.status_code, 404)
        self.assertIn("0483:5740", resp.json()["detail"])

    def test_write_unavailable(self):
        resp = self.client.post("/bridge/write", json={"data": "Hello"})
        self.assertEqual(resp.status_code, 503)


class TestLazyBridge(unittest.TestCase):

    def tearDown(self):
        set_bridge(None)

    def test_no_pyusb_is_503(self):
        set_bridge(None)
        with patch('hidbridge.usb_backend.PyUsbBackend', side_effect=ImportError("no pyusb")):
            resp = TestClient(app).get("/bridge")
        self.assertEqual(resp.status_code, 503)

    def test_created_from_settings(self):
        set_bridge(None)
        with patch('hidbridge.usb_backend.PyUsbBackend', return_value=stm32_backend()), \
             patch('hidbridge.conf.settings') as mock_settings:
            mock_settings.bridge_config.return_value = fast_config(vendor_id=0x1234)
            bridge = get_bridge()
        self.assertEqual(bridge.config.vendor_id, 0x1234)
        self.assertIs(get_bridge(), bridge)


if __name__ == '__main__':
    unittest.main()
