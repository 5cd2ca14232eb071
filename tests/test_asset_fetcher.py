"""
Tests for image/media reference resolution.
"""

import base64

import pytest
import requests
from google.api_core import exceptions as google_exceptions

import asset_fetcher
from errors import ElementRenderError, UpstreamFetchError
from tests.conftest import PNG_BASE64


class FakeResponse:
    def __init__(self, chunks, status_code=200):
        self.chunks = chunks
        self.status_code = status_code

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error")

    def iter_content(self, chunk_size=1):
        yield from self.chunks


def test_data_reference_is_decoded(png_reference):
    data = asset_fetcher.fetch_asset(png_reference, timeout=1, max_bytes=1024)
    prefixed = asset_fetcher.fetch_asset(f"data:{png_reference}", timeout=1, max_bytes=1024)

    assert data == base64.b64decode(PNG_BASE64)
    assert prefixed == data


def test_data_reference_over_limit_is_rejected(png_reference):
    with pytest.raises(ElementRenderError):
        asset_fetcher.fetch_asset(png_reference, timeout=1, max_bytes=10)


def test_http_fetch(monkeypatch):
    calls = []

    def fake_get(url, timeout, stream):
        calls.append((url, timeout, stream))
        return FakeResponse([b"abc", b"def"])

    monkeypatch.setattr(asset_fetcher.requests, "get", fake_get)
    data = asset_fetcher.fetch_asset("https://example.com/a.png", timeout=2.5, max_bytes=1024)

    assert data == b"abcdef"
    assert calls == [("https://example.com/a.png", 2.5, True)]


@pytest.mark.parametrize("failure", [
    requests.exceptions.Timeout("timed out"),
    requests.exceptions.ConnectionError("refused"),
])
def test_http_failures_raise_upstream_error(monkeypatch, failure):
    def fake_get(url, timeout, stream):
        raise failure

    monkeypatch.setattr(asset_fetcher.requests, "get", fake_get)
    with pytest.raises(UpstreamFetchError):
        asset_fetcher.fetch_asset("http://example.com/a.png", timeout=1, max_bytes=1024)


def test_http_error_status_raises_upstream_error(monkeypatch):
    monkeypatch.setattr(asset_fetcher.requests, "get", lambda url, timeout, stream: FakeResponse([], 404))
    with pytest.raises(UpstreamFetchError):
        asset_fetcher.fetch_asset("http://example.com/missing.png", timeout=1, max_bytes=1024)


def test_http_size_limit(monkeypatch):
    monkeypatch.setattr(asset_fetcher.requests, "get", lambda url, timeout, stream: FakeResponse([b"x" * 10] * 3))
    with pytest.raises(UpstreamFetchError):
        asset_fetcher.fetch_asset("http://example.com/big.png", timeout=1, max_bytes=25)


class FakeBlob:
    def __init__(self, data=None, error=None):
        self.data = data
        self.error = error

    def download_as_bytes(self, timeout=None):
        if self.error:
            raise self.error
        return self.data


class FakeStorageClient:
    blob_factory = None

    def bucket(self, name):
        self.bucket_name = name
        return self

    def blob(self, name):
        return self.blob_factory(name)


def test_gcs_fetch(monkeypatch):
    FakeStorageClient.blob_factory = staticmethod(lambda name: FakeBlob(data=f"blob:{name}".encode()))
    monkeypatch.setattr(asset_fetcher.storage, "Client", FakeStorageClient)

    data = asset_fetcher.fetch_asset("gs://assets/images/logo.png", timeout=1, max_bytes=1024)

    assert data == b"blob:images/logo.png"


def test_gcs_not_found_raises_upstream_error(monkeypatch):
    FakeStorageClient.blob_factory = staticmethod(lambda name: FakeBlob(error=google_exceptions.NotFound("missing")))
    monkeypatch.setattr(asset_fetcher.storage, "Client", FakeStorageClient)

    with pytest.raises(UpstreamFetchError):
        asset_fetcher.fetch_asset("gs://assets/missing.png", timeout=1, max_bytes=1024)


@pytest.mark.parametrize("source", ["/etc/passwd", "ftp://example.com/a.png", "gs://bucket-only"])
def test_unsupported_references(source):
    with pytest.raises(ElementRenderError) as exc:
        asset_fetcher.fetch_asset(source, timeout=1, max_bytes=1024)
    assert not isinstance(exc.value, UpstreamFetchError)
