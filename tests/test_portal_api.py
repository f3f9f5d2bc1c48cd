"""Tests for the control endpoint and byte proxy routes."""

from unittest.mock import patch

import pytest
import requests

import portal_api
from stalker import (
    HandshakeExhausted,
    HandshakeProber,
    HandshakeResult,
    LinkResolutionFailed,
    NetworkError,
    PortalClient,
    StreamLink,
    StreamUnavailable,
    UpstreamBlocked,
)
from tests.helpers import make_response

MAC = "00:1A:79:12:34:56"
REAL_URL = "http://portal.example/c/server/load.php"


@pytest.fixture
def client():
    portal_api.app.config["TESTING"] = True
    with portal_api.app.test_client() as test_client:
        yield test_client


class TestStalkerValidation:
    """Tests for parameter checks done before any portal call."""

    def test_missing_parameters(self, client):
        response = client.get("/api/stalker", query_string={"action": "handshake", "mac": MAC})
        assert response.status_code == 400
        assert response.get_json()["error"] == "Missing required parameters"

    def test_invalid_action(self, client):
        response = client.get("/api/stalker", query_string={"action": "reboot", "mac": MAC, "url": REAL_URL})
        assert response.status_code == 400

    def test_create_link_needs_cmd(self, client):
        response = client.get("/api/stalker", query_string={
            "action": "create_link", "mac": MAC, "url": REAL_URL, "token": "T",
        })
        assert response.status_code == 400

    @patch("stalker.requests.Session.get")
    def test_missing_token_never_calls_portal(self, get, client):
        response = client.get("/api/stalker", query_string={
            "action": "get_channels", "mac": MAC, "url": REAL_URL,
        })

        assert response.status_code == 400
        assert response.get_json()["category"] == "missing_token"
        get.assert_not_called()


class TestStalkerActions:
    """Tests for the four actions with the core patched out."""

    @patch.object(HandshakeProber, "handshake")
    def test_handshake_echoes_payload_and_real_url(self, handshake, client):
        payload = {"js": {"token": "TOK", "random": "r"}}
        handshake.return_value = HandshakeResult("TOK", REAL_URL, payload)

        response = client.get("/api/stalker", query_string={
            "action": "handshake", "mac": MAC, "url": "http://portal.example/c/",
        })

        assert response.status_code == 200
        assert response.get_json() == {"js": {"token": "TOK", "random": "r"}, "real_url": REAL_URL}
        session, candidates = handshake.call_args.args
        assert session.mac == MAC
        assert candidates[0].api_url == REAL_URL

    @patch.object(HandshakeProber, "handshake")
    def test_handshake_exhausted(self, handshake, client):
        last = NetworkError("timed out")
        handshake.side_effect = HandshakeExhausted("All 3 candidate URLs failed", last)

        response = client.get("/api/stalker", query_string={
            "action": "handshake", "mac": MAC, "url": "http://portal.example",
        })

        assert response.status_code == 502
        body = response.get_json()
        assert body["category"] == "handshake_exhausted"
        assert body["lastErrorCategory"] == "network_error"

    @patch.object(HandshakeProber, "handshake")
    def test_handshake_blocked(self, handshake, client):
        handshake.side_effect = UpstreamBlocked("blocked", status=884, body="")

        response = client.get("/api/stalker", query_string={
            "action": "handshake", "mac": MAC, "url": "http://portal.example",
        })

        assert response.status_code == 403
        assert response.get_json()["category"] == "provider_blocked"
        assert response.get_json()["upstreamStatus"] == 884

    @patch.object(PortalClient, "get_profile")
    def test_get_profile(self, get_profile, client):
        get_profile.return_value = {"id": "1"}

        response = client.get("/api/stalker", query_string={
            "action": "get_profile", "mac": MAC, "url": REAL_URL, "token": "TOK",
        })

        assert response.get_json() == {"js": {"id": "1"}}
        session, api_url = get_profile.call_args.args
        assert session.token == "TOK"
        assert api_url == REAL_URL

    @patch.object(PortalClient, "get_channels")
    def test_get_channels_bare_url_is_normalized(self, get_channels, client):
        get_channels.return_value = [{"id": "1", "name": "One", "logo": "", "cmd": "c"}]

        response = client.get("/api/stalker", query_string={
            "action": "get_channels", "mac": MAC, "url": "http://portal.example/c/", "token": "TOK",
        })

        assert response.get_json() == {"js": {"data": [{"id": "1", "name": "One", "logo": "", "cmd": "c"}]}}
        assert get_channels.call_args.args[1] == REAL_URL

    @patch.object(PortalClient, "create_link")
    def test_create_link(self, create_link, client):
        create_link.return_value = StreamLink("ffmpeg http://s/1", "http://s/1?token=x")

        response = client.get("/api/stalker", query_string={
            "action": "create_link", "mac": MAC, "url": REAL_URL, "token": "TOK", "cmd": "ffmpeg http://s/1",
        })

        assert response.get_json() == {"url": "http://s/1?token=x", "cmd": "ffmpeg http://s/1"}

    @patch.object(PortalClient, "create_link")
    def test_create_link_offline(self, create_link, client):
        create_link.side_effect = StreamUnavailable("Stream unavailable (link_fault)", status=200, body="link_fault")

        response = client.get("/api/stalker", query_string={
            "action": "create_link", "mac": MAC, "url": REAL_URL, "token": "TOK", "cmd": "/ch/1",
        })

        assert response.status_code == 503
        assert response.get_json()["category"] == "stream_unavailable"

    @patch.object(PortalClient, "create_link")
    def test_create_link_failed_has_details(self, create_link, client):
        create_link.side_effect = LinkResolutionFailed("Failed to generate link", status=200, body={"js": {}})

        response = client.get("/api/stalker", query_string={
            "action": "create_link", "mac": MAC, "url": REAL_URL, "token": "TOK", "cmd": "/ch/1",
        })

        assert response.status_code == 500
        assert response.get_json()["details"] == {"js": {}}

    @patch("stalker.requests.Session.get")
    def test_upstream_status_is_passed_through(self, get, client):
        get.return_value = make_response(status=404, text="Not Found")

        response = client.get("/api/stalker", query_string={
            "action": "get_channels", "mac": MAC, "url": REAL_URL, "token": "TOK",
        })

        assert response.status_code == 404
        body = response.get_json()
        assert body["upstreamStatus"] == 404
        assert body["details"] == "Not Found"


class TestProxy:
    """Tests for the byte proxy."""

    def test_missing_url(self, client):
        assert client.get("/api/proxy").status_code == 400

    @patch("portal_api.requests.get")
    def test_passthrough(self, get, client):
        upstream = make_response(status=200, text="#EXTM3U", headers={"Content-Type": "audio/x-mpegurl"})
        upstream.content = b"#EXTM3U\n"
        get.return_value = upstream

        response = client.get("/api/proxy", query_string={"url": "http://lists.example/a.m3u"},
                              headers={"X-User-Agent": "VLC/3.0", "X-Referer": "http://lists.example/"})

        assert response.status_code == 200
        assert response.data == b"#EXTM3U\n"
        assert response.headers["Content-Type"] == "audio/x-mpegurl"
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        sent = get.call_args.kwargs["headers"]
        assert sent["User-Agent"] == "VLC/3.0"
        assert sent["Referer"] == "http://lists.example/"

    @patch("portal_api.requests.get")
    def test_blocked_884(self, get, client):
        get.return_value = make_response(status=884)

        response = client.get("/api/proxy", query_string={"url": "http://lists.example/a.m3u"})

        assert response.status_code == 403
        assert response.get_json()["upstreamStatus"] == 884

    @patch("portal_api.requests.get")
    def test_connection_error(self, get, client):
        get.side_effect = requests.exceptions.ConnectionError("refused")

        response = client.get("/api/proxy", query_string={"url": "http://lists.example/a.m3u"})

        assert response.status_code == 502

    @patch("portal_api.requests.get")
    def test_upstream_server_error(self, get, client):
        get.return_value = make_response(status=503, text="Service Unavailable")

        response = client.get("/api/proxy", query_string={"url": "http://lists.example/a.m3u"})

        assert response.status_code == 502
        assert response.get_json()["upstreamStatus"] == 503
