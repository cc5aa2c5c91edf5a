"""Unit tests for the HTTP clients that talk to the ingestion service."""

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
import requests

from analytics.adapters.event_client import HTTPEventClient
from changefeed.adapters.resync_client import HTTPResyncClient, ResyncError
from shared.domain.errors import TerminalProcessingError, TransientProcessingError

STORED = {
    "event_key": "github/42/20240501T120000000000Z-abcd1234",
    "partition": "github",
    "correlation_id": "42",
    "event_type": "opened",
    "payload": {"action": "opened"},
    "received_at": "2024-05-01T12:00:00+00:00",
    "sequence_hint": 7,
}


def response(status_code, body=None):
    resp = Mock()
    resp.status_code = status_code
    resp.json.return_value = body
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(response=resp)
    else:
        resp.raise_for_status.return_value = None
    return resp


class TestHTTPEventClient:

    @patch("analytics.adapters.event_client.requests.get")
    def test_get_event_parses_received_at(self, mock_get):
        mock_get.return_value = response(200, STORED)

        stored = HTTPEventClient(base_url="http://ingestion").get_event(STORED["event_key"])

        assert stored["received_at"] == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert stored["sequence_hint"] == 7
        mock_get.assert_called_once_with(
            "http://ingestion/api/v1/events/github/42/20240501T120000000000Z-abcd1234", timeout=10
        )

    @patch("analytics.adapters.event_client.requests.get")
    def test_not_found_is_terminal(self, mock_get):
        mock_get.return_value = response(404)

        with pytest.raises(TerminalProcessingError):
            HTTPEventClient(base_url="http://ingestion").get_event("github/42/k")

    @pytest.mark.parametrize("status", [429, 500, 503])
    @patch("analytics.adapters.event_client.requests.get")
    def test_throttling_and_server_errors_are_transient(self, mock_get, status):
        mock_get.return_value = response(status)

        with pytest.raises(TransientProcessingError):
            HTTPEventClient(base_url="http://ingestion").get_event("github/42/k")

    @patch("analytics.adapters.event_client.requests.get")
    def test_network_errors_are_transient(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("connection refused")

        with pytest.raises(TransientProcessingError):
            HTTPEventClient(base_url="http://ingestion").get_event("github/42/k")

    @patch("analytics.adapters.event_client.requests.get")
    def test_lists_correlation_events(self, mock_get):
        mock_get.return_value = response(200, {"correlation_id": "42", "events": [STORED]})

        events = HTTPEventClient(base_url="http://ingestion").list_events_for_correlation("42")

        assert [e["event_key"] for e in events] == [STORED["event_key"]]
        assert mock_get.call_args[0][0] == "http://ingestion/api/v1/correlations/42/events"


class TestHTTPResyncClient:

    @patch("changefeed.adapters.resync_client.requests.post")
    def test_returns_emitted_count(self, mock_post):
        mock_post.return_value = response(200, {"partition": "github", "emitted": 3})

        emitted = HTTPResyncClient(base_url="http://ingestion").resync("github", "1714564800000-3")

        assert emitted == 3
        mock_post.assert_called_once_with(
            "http://ingestion/api/v1/changes/github/resync", params={"after_position": "1714564800000-3"}, timeout=30
        )

    @patch("changefeed.adapters.resync_client.requests.post")
    def test_failures_raise_resync_error(self, mock_post):
        mock_post.return_value = response(503)

        with pytest.raises(ResyncError):
            HTTPResyncClient(base_url="http://ingestion").resync("github", "0-0")
