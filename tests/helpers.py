"""Fake portal responses shared by the tests."""

import json
from unittest.mock import MagicMock

import requests
from requests.cookies import cookiejar_from_dict


def make_response(status=200, payload=None, text=None, cookies=None, headers=None):
    """Build a MagicMock standing in for requests.Response."""
    response = MagicMock()
    response.status_code = status
    if payload is not None:
        response.json.return_value = payload
        response.text = json.dumps(payload)
    else:
        response.json.side_effect = ValueError("No JSON object could be decoded")
        response.text = text or ""
    response.cookies = cookiejar_from_dict(cookies or {})
    response.headers = headers or {}
    return response


def token_response(token="ABC123"):
    return make_response(payload={"js": {"token": token, "random": "deadbeef"}})


def timeout_error():
    return requests.exceptions.ConnectTimeout("timed out")
