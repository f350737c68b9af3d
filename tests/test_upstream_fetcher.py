from datetime import date

import httpx
import pytest

from config import UpstreamConfig
from date_chunker import DateChunk
from exceptions import UpstreamLogicalError, UpstreamTransportError
from upstream_fetcher import UpstreamFetcher

CHUNK = DateChunk(date(2026, 1, 1), date(2026, 1, 3))


def make_fetcher(handler):
    config = UpstreamConfig(base_url="https://upstream.test/feedback")
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return UpstreamFetcher(config, client=client)


def test_returns_data_and_sends_range_params():
    seen = {}

    def handler(request):
        seen.update(request.url.params)
        return httpx.Response(200, json={"code": 0, "data": [{"id": 1}, {"id": 2}]})

    with make_fetcher(handler) as fetcher:
        data = fetcher.fetch_chunk(CHUNK)

    assert data == [{"id": 1}, {"id": 2}]
    assert seen == {"from": "2026-01-01", "to": "2026-01-03"}


def test_missing_data_means_no_items():
    fetcher = make_fetcher(lambda request: httpx.Response(200, json={"code": 0, "data": None}))
    assert fetcher.fetch_chunk(CHUNK) == []


def test_nonzero_code_is_logical_error():
    fetcher = make_fetcher(lambda request: httpx.Response(200, json={"code": 1001, "msg": "denied"}))

    with pytest.raises(UpstreamLogicalError) as exc_info:
        fetcher.fetch_chunk(CHUNK)

    assert exc_info.value.code == 1001


def test_http_error_status_is_transport_error():
    fetcher = make_fetcher(lambda request: httpx.Response(502, text="bad gateway"))

    with pytest.raises(UpstreamTransportError) as exc_info:
        fetcher.fetch_chunk(CHUNK)

    assert exc_info.value.status_code == 502


def test_timeout_is_transport_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(UpstreamTransportError):
        make_fetcher(handler).fetch_chunk(CHUNK)


def test_connection_error_is_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamTransportError):
        make_fetcher(handler).fetch_chunk(CHUNK)


def test_invalid_json_is_logical_error():
    fetcher = make_fetcher(lambda request: httpx.Response(200, text="<html>oops</html>"))

    with pytest.raises(UpstreamLogicalError):
        fetcher.fetch_chunk(CHUNK)


def test_missing_envelope_is_logical_error():
    fetcher = make_fetcher(lambda request: httpx.Response(200, json=[{"id": 1}]))

    with pytest.raises(UpstreamLogicalError):
        fetcher.fetch_chunk(CHUNK)
