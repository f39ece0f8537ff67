"""Tests for keyword_notifier.alerts."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx

from keyword_notifier.alerts import send_source_failed_alert


def _ok_response(message_id=123):
    resp = MagicMock()
    resp.json.return_value = {"ok": True, "result": {"message_id": message_id}}
    return resp


def _error_response(description="Bad Request: chat not found"):
    resp = MagicMock()
    resp.json.return_value = {"ok": False, "description": description}
    return resp


class TestSourceFailedAlert:
    @patch("keyword_notifier.alerts.httpx.post")
    def test_not_configured_is_noop(self, mock_post):
        assert send_source_failed_alert(None, "chat", "twitter", "bad token") is False
        assert send_source_failed_alert("token", None, "twitter", "bad token") is False
        mock_post.assert_not_called()

    @patch("keyword_notifier.alerts.httpx.post")
    def test_message_names_source_and_reason(self, mock_post):
        mock_post.return_value = _ok_response()

        assert send_source_failed_alert("token", "chat", "twitter", "UpstreamPermanentError: 401") is True

        url = mock_post.call_args.args[0]
        assert url.endswith("/bottoken/sendMessage")
        payload = mock_post.call_args.kwargs["json"]
        assert payload["chat_id"] == "chat"
        assert payload["text"].startswith("[KEYWORD NOTIFIER ALERT]")
        assert "twitter" in payload["text"]
        assert "UpstreamPermanentError: 401" in payload["text"]

    @patch("keyword_notifier.alerts.time.sleep")
    @patch("keyword_notifier.alerts.httpx.post")
    def test_retries_after_network_error(self, mock_post, mock_sleep):
        mock_post.side_effect = [httpx.ConnectError("down"), _ok_response()]
        assert send_source_failed_alert("token", "chat", "twitter", "x") is True
        assert mock_post.call_count == 2
        mock_sleep.assert_called_once()

    @patch("keyword_notifier.alerts.time.sleep")
    @patch("keyword_notifier.alerts.httpx.post")
    def test_gives_up_when_telegram_refuses(self, mock_post, mock_sleep):
        mock_post.return_value = _error_response()
        assert send_source_failed_alert("token", "chat", "twitter", "x") is False
        assert mock_post.call_count == 2
        assert mock_sleep.call_count == 1
