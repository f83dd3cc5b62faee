import unittest
from unittest.mock import MagicMock, patch

import requests

from health_check import start_health_server

RUNNING_STATS = {
    "uptime": "0:01:00",
    "cycles": 3,
    "processed_messages": 5,
    "delivered_codes": 4,
    "failed_accounts": 0,
    "last_cycle": None,
    "running": True,
    "shutdown_requested": False,
}


class HealthServerTest(unittest.TestCase):

    def setUp(self):
        self.scheduler = MagicMock()
        self.scheduler.is_running.return_value = False
        self.server = start_health_server(self.scheduler, host="127.0.0.1", port=0)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def tearDown(self):
        self.server.shutdown()
        self.server.server_close()

    @patch('health_check.get_stats', return_value=RUNNING_STATS)
    def test_health_when_running(self, mock_stats):
        response = requests.get(f"{self.base_url}/health", timeout=5)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "healthy")
        self.assertEqual(body["delivered_codes"], 4)
        self.assertFalse(body["scan_running"])
        self.assertIn("memory_mb", body)

    @patch('health_check.get_stats', return_value=dict(RUNNING_STATS, running=False))
    def test_unhealthy_when_loop_stopped(self, mock_stats):
        response = requests.get(f"{self.base_url}/health", timeout=5)
        self.assertEqual(response.status_code, 503)

    def test_scan_started(self):
        self.scheduler.trigger_now.return_value = True
        response = requests.post(f"{self.base_url}/scan", timeout=5)
        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.json()["status"], "started")

    def test_scan_already_running(self):
        self.scheduler.trigger_now.return_value = False
        response = requests.post(f"{self.base_url}/scan", timeout=5)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "already_running")

    def test_unknown_path(self):
        self.assertEqual(requests.get(f"{self.base_url}/nope", timeout=5).status_code, 404)
        self.assertEqual(requests.post(f"{self.base_url}/nope", timeout=5).status_code, 404)


if __name__ == "__main__":
    unittest.main()
