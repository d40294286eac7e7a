"""Tests for the chatrelay-verify entry point."""
from unittest.mock import AsyncMock, patch

from chatrelay.client import verify


class TestWsUrl:
    def test_http_becomes_ws(self):
        assert verify._ws_url("http://localhost:8000") == "ws://localhost:8000"

    def test_https_becomes_wss(self):
        assert verify._ws_url("https://chat.example.com") == "wss://chat.example.com"

    def test_ws_url_left_alone(self):
        assert verify._ws_url("ws://localhost:8000") == "ws://localhost:8000"


class TestMain:
    @patch("chatrelay.client.verify.run_verification", new_callable=AsyncMock)
    def test_success_exit_code(self, mock_run):
        mock_run.return_value = {"conversationId": "c1", "messageId": "m1", "readBy": "b"}

        assert verify.main(["--url", "http://localhost:9000"]) == 0
        mock_run.assert_awaited_once_with(
            "http://localhost:9000", "verify-alice", "verify-bob", timeout=5.0
        )

    @patch("chatrelay.client.verify.run_verification", new_callable=AsyncMock)
    def test_failure_exit_code(self, mock_run):
        mock_run.side_effect = ConnectionRefusedError("server down")

        assert verify.main([]) == 1
