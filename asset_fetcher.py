import base64
import binascii
import logging
import re
import time
from urllib.parse import urlparse

import requests
from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import storage

from errors import ElementRenderError, UpstreamFetchError

# "image/png;base64,...." with or without a leading "data:"
_DATA_REFERENCE = re.compile(r"^(?:data:)?[\w.+-]+/[\w.+-]+;base64,", re.IGNORECASE)

CHUNK_SIZE = 64 * 1024


def is_data_reference(source: str) -> bool:
    return bool(_DATA_REFERENCE.match(source))


def decode_data_reference(source: str, max_bytes: int) -> bytes:
    """Decodes an inline base64 reference."""
    payload = source.split(",", 1)[1]
    try:
        data = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ElementRenderError(f"Invalid base64 data reference: {e}") from e
    if not data:
        raise ElementRenderError("Empty data reference")
    if len(data) > max_bytes:
        raise ElementRenderError(f"Inline asset exceeds {max_bytes} bytes")
    return data


def _fetch_http(url: str, timeout: float, max_bytes: int) -> bytes:
    deadline = time.monotonic() + timeout
    chunks = []
    size = 0
    try:
        with requests.get(url, timeout=timeout, stream=True) as response:
            response.raise_for_status()
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                size += len(chunk)
                if size > max_bytes:
                    raise UpstreamFetchError(f"Asset at {url} exceeds {max_bytes} bytes")
                if time.monotonic() > deadline:
                    raise UpstreamFetchError(f"Timed out after {timeout}s fetching {url}")
                chunks.append(chunk)
    except requests.exceptions.RequestException as e:
        raise UpstreamFetchError(f"Failed to fetch {url}: {e}") from e
    return b"".join(chunks)


def _fetch_gcs(uri: str, timeout: float, max_bytes: int) -> bytes:
    parsed = urlparse(uri)
    bucket_name, blob_name = parsed.netloc, parsed.path.lstrip("/")
    if not bucket_name or not blob_name:
        raise ElementRenderError(f"Malformed GCS reference '{uri}'")
    try:
        storage_client = storage.Client()
        blob = storage_client.bucket(bucket_name).blob(blob_name)
        data = blob.download_as_bytes(timeout=timeout)
    except (google_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError,
            requests.exceptions.RequestException) as e:
        raise UpstreamFetchError(f"Failed to fetch {uri}: {e}") from e
    if len(data) > max_bytes:
        raise UpstreamFetchError(f"Asset at {uri} exceeds {max_bytes} bytes")
    return data


def fetch_asset(source: str, timeout: float, max_bytes: int) -> bytes:
    """
    Returns the bytes behind an image or media reference.

    Supports inline base64 data, http(s) URLs and gs://bucket/object URIs.
    Fetch failures raise UpstreamFetchError; unsupported references raise
    ElementRenderError.
    """
    if is_data_reference(source):
        return decode_data_reference(source, max_bytes)

    scheme = urlparse(source).scheme.lower()
    if scheme in ("http", "https"):
        logging.info(f"Fetching asset {source}")
        return _fetch_http(source, timeout, max_bytes)
    if scheme == "gs":
        logging.info(f"Fetching asset {source} from GCS")
        return _fetch_gcs(source, timeout, max_bytes)
    raise ElementRenderError(f"Unsupported asset reference '{source[:80]}'")
