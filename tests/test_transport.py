import json

import httpx
import pytest

from streamqueue.errors import (
    AppConfigError,
    RequestContentError,
    RequestNetworkError,
    RequestResultNotJsonError,
    RequestResultSizeError,
    RequestServerError,
)
from streamqueue.transport import ObjectFetcher

from conftest import REMOTE_URL, note_doc


def _fetcher(settings, handler):
    return ObjectFetcher(settings, client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_retrieve_object(settings):
    seen = {}

    def handler(request):
        seen["accept"] = request.headers.get("accept")
        return httpx.Response(200, json=note_doc())

    data = _fetcher(settings, handler).retrieve_object(REMOTE_URL)
    assert data["id"] == REMOTE_URL
    assert "application/activity+json" in seen["accept"]


@pytest.mark.parametrize("status, error", [
    (404, RequestContentError),
    (410, RequestContentError),
    (500, RequestServerError),
    (503, RequestServerError),
])
def test_status_classification(settings, status, error):
    fetcher = _fetcher(settings, lambda request: httpx.Response(status))
    with pytest.raises(error):
        fetcher.retrieve_object(REMOTE_URL)


def test_not_json(settings):
    fetcher = _fetcher(settings, lambda request: httpx.Response(200, content=b"<html></html>"))
    with pytest.raises(RequestResultNotJsonError):
        fetcher.retrieve_object(REMOTE_URL)


def test_json_that_is_not_an_object(settings):
    fetcher = _fetcher(settings, lambda request: httpx.Response(200, content=json.dumps([1, 2]).encode()))
    with pytest.raises(RequestResultNotJsonError):
        fetcher.retrieve_object(REMOTE_URL)


def test_empty_body(settings):
    fetcher = _fetcher(settings, lambda request: httpx.Response(200, content=b""))
    with pytest.raises(RequestContentError):
        fetcher.retrieve_object(REMOTE_URL)


def test_oversized_body(settings):
    body = json.dumps(note_doc(content="x" * 4096)).encode()
    fetcher = _fetcher(settings, lambda request: httpx.Response(200, content=body))
    with pytest.raises(RequestResultSizeError):
        fetcher.retrieve_object(REMOTE_URL)


def test_network_error(settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RequestNetworkError):
        _fetcher(settings, handler).retrieve_object(REMOTE_URL)


def test_proxy_error_is_configuration(settings):
    def handler(request):
        raise httpx.ProxyError("proxy refused", request=request)

    with pytest.raises(AppConfigError):
        _fetcher(settings, handler).retrieve_object(REMOTE_URL)


@pytest.mark.parametrize("url", ["ftp://remote.example/x", "notaurl", "https:///nohost"])
def test_rejects_non_remote_urls(settings, url):
    fetcher = _fetcher(settings, lambda request: httpx.Response(200, json=note_doc()))
    with pytest.raises(RequestContentError):
        fetcher.fetch(url)
