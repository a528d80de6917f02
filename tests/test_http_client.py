"""Tests for the shared HTTP helpers."""

from unittest.mock import MagicMock, patch

import requests

from fhirpkg.common.http_client import get_bytes, get_json, get_text, robust_get
from fhirpkg.constants import Constants


def response(status, text="", content=b""):
    mock = MagicMock()
    mock.status_code = status
    mock.headers = {"Content-Type": "application/json"}
    mock.text = text
    mock.content = content
    return mock


@patch("fhirpkg.common.http_client.requests.get")
def test_responses_are_cached(mock_get):
    mock_get.return_value = response(200, '{"name": "x"}')
    assert get_json("https://packages.fhir.org/x") == (200, {"Content-Type": "application/json"}, {"name": "x"})
    assert get_json("https://packages.fhir.org/x")[2] == {"name": "x"}
    assert mock_get.call_count == 1


@patch("fhirpkg.common.http_client.requests.get")
def test_cache_can_be_bypassed(mock_get):
    mock_get.return_value = response(200, "[FHIR]")
    get_text("https://build.fhir.org/version.info", use_cache=False)
    get_text("https://build.fhir.org/version.info", use_cache=False)
    assert mock_get.call_count == 2


@patch("fhirpkg.common.http_client.requests.get")
def test_server_errors_are_not_cached(mock_get):
    mock_get.return_value = response(503, "busy")
    assert robust_get("https://packages.fhir.org/x")[0] == 503
    robust_get("https://packages.fhir.org/x")
    assert mock_get.call_count == 2


@patch("fhirpkg.common.http_client.requests.get")
def test_transport_failure_is_status_zero(mock_get):
    mock_get.side_effect = requests.ConnectionError("refused")
    status, _, text = robust_get("https://packages.fhir.org/x")
    assert status == 0
    assert "refused" in text
    assert mock_get.call_count == Constants.HTTP_RETRY_MAX


@patch("fhirpkg.common.http_client.requests.get")
def test_invalid_json_body(mock_get):
    mock_get.return_value = response(200, "<html>")
    assert get_json("https://packages.fhir.org/x")[2] is None


@patch("fhirpkg.common.http_client.requests.get")
def test_get_text_not_found(mock_get):
    mock_get.return_value = response(404, "missing")
    assert get_text("https://build.fhir.org/x") == (404, None)


@patch("fhirpkg.common.http_client.requests.get")
def test_get_bytes(mock_get):
    mock_get.return_value = response(200, content=b"\x1f\x8b")
    assert get_bytes("https://packages.fhir.org/x/1.0.0") == (200, b"\x1f\x8b", None)

    mock_get.return_value = response(404)
    assert get_bytes("https://packages.fhir.org/x/1.0.0") == (404, None, "HTTP 404")

    mock_get.side_effect = requests.Timeout()
    status, content, error = get_bytes("https://packages.fhir.org/x/1.0.0")
    assert (status, content) == (0, None)
    assert "timed out" in error
