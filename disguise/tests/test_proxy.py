"""
Unit Tests for Proxy Routes
============================

Tests for disguise/proxy/routes.py

Test Coverage:
--------------
1. Method enforcement (everything but GET is 405)
2. Route shape and hex decoding (404 / 400)
3. Signature enforcement (401)
4. Content-Type gate on upstream responses (406)
5. Upstream failures and unusable URLs (500)
6. Header allowlist towards the upstream
7. Header and body pass-through from the upstream

Run tests:
----------
    pytest disguise/tests/test_proxy.py -v
"""

from typing import List

import httpx
import pytest
from fastapi import status
from fastapi.testclient import TestClient

from disguise.auth import decode_signed_path, sign_url
from disguise.config import Settings
from disguise.main import create_application
from disguise.proxy.routes import build_upstream_headers, forward_image, stream_upstream_body


SECRET = b"secret"
UPSTREAM = "http://upstream"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class TrackingStream(httpx.AsyncByteStream):
    """Upstream body that records whether it was closed."""

    def __init__(self, chunks: List[bytes], fail_with: Exception = None):
        self.chunks = chunks
        self.fail_with = fail_with
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.fail_with is not None:
            raise self.fail_with

    async def aclose(self):
        self.closed = True


def upstream_response(status_code: int, headers=None, body: bytes = b"") -> httpx.Response:
    """Fake upstream response whose body is still unread, as off the wire."""
    return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(body))


def upstream_routes(request: httpx.Request, streams: dict) -> httpx.Response:
    """Fake upstream image host."""
    if request.url.host == "unreachable":
        raise httpx.ConnectError("connection refused", request=request)

    path = request.url.path.lstrip("/")

    if path == "image":
        return upstream_response(
            200,
            headers={
                "Content-Type": "image/png",
                "Content-Length": str(len(PNG_BYTES)),
                "X-Upstream": "yes",
            },
            body=PNG_BYTES,
        )
    if path == "cookies":
        return upstream_response(
            200,
            headers=[
                ("Content-Type", "image/gif"),
                ("Set-Cookie", "a=1"),
                ("Set-Cookie", "b=2"),
            ],
            body=b"GIF89a",
        )
    if path == "text":
        return upstream_response(200, headers={"Content-Type": "text/plain; charset=utf-8"}, body=b"hi")
    if path == "html":
        return upstream_response(200, headers={"Content-Type": "text/html; charset=utf-8"}, body=b"<p>")
    if path == "untyped":
        return upstream_response(200, body=b"???")
    if path == "tracked-html":
        streams["tracked-html"] = TrackingStream([b"<html>"])
        return httpx.Response(200, headers={"Content-Type": "text/html"}, stream=streams["tracked-html"])
    if path == "tracked-image":
        streams["tracked-image"] = TrackingStream([PNG_BYTES])
        return httpx.Response(200, headers={"Content-Type": "image/png"}, stream=streams["tracked-image"])
    if path == "missing-image":
        return upstream_response(404, headers={"Content-Type": "image/png"}, body=PNG_BYTES)
    if path == "redirect":
        return httpx.Response(302, headers={"Location": f"{UPSTREAM}/image"})

    return upstream_response(404, headers={"Content-Type": "text/plain"}, body=b"not found")


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_settings():
    """Create settings for testing"""
    return Settings(_env_file=None, CAMO_KEY=SECRET.decode())


@pytest.fixture
def upstream_requests():
    """Requests received by the fake upstream"""
    return []


@pytest.fixture
def upstream_streams():
    """Tracked upstream bodies, keyed by path"""
    return {}


@pytest.fixture
def upstream_client(upstream_requests, upstream_streams):
    """Upstream HTTP client backed by the fake image host"""
    def handler(request: httpx.Request) -> httpx.Response:
        upstream_requests.append(request)
        return upstream_routes(request, upstream_streams)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)


@pytest.fixture
def app(mock_settings, upstream_client):
    """Create test FastAPI application"""
    return create_application(mock_settings, upstream_client)


@pytest.fixture
def client(app):
    """Create test client"""
    return TestClient(app)


def signed(url: str) -> str:
    return sign_url(SECRET, url)


# ============================================================================
# Method Tests
# ============================================================================

@pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
def test_non_get_methods_rejected(client, method):
    """Test that any method other than GET is rejected"""
    response = client.request(method, "/")

    assert response.status_code == status.HTTP_405_METHOD_NOT_ALLOWED
    assert response.headers["allow"] == "GET"


def test_head_rejected(client):
    """Test that HEAD is not served as an implicit GET"""
    response = client.head("/")

    assert response.status_code == status.HTTP_405_METHOD_NOT_ALLOWED


def test_method_checked_before_signature(client, upstream_requests):
    """Test that a validly signed path is still rejected for POST"""
    response = client.post(signed(f"{UPSTREAM}/image"))

    assert response.status_code == status.HTTP_405_METHOD_NOT_ALLOWED
    assert upstream_requests == []


# ============================================================================
# Route Shape Tests
# ============================================================================

@pytest.mark.parametrize("path", ["/", "/something", "/something else", "/onepiece", "/abcd/", "//abcd"])
def test_404_for_non_api_requests(client, path):
    """Test that paths without exactly two non-empty segments are not found"""
    response = client.get(path)

    assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.parametrize("path", ["/a/b", "/c/d", "/not-hex/also-not-hex", "/00/zz", "/abc/00", "/00/0a/0b"])
def test_400_for_bad_hex(client, path):
    """Test that two segments with invalid hex are a bad request"""
    response = client.get(path)

    assert response.status_code == status.HTTP_400_BAD_REQUEST


# ============================================================================
# Signature Tests
# ============================================================================

@pytest.mark.parametrize("path", ["/0a/b0", "/0000/aaaa", "/0123/4567"])
def test_401_for_digest_url_mismatch(client, path):
    """Test that well-formed but unsigned paths are unauthorized"""
    response = client.get(path)

    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_401_for_tampered_digest(client, upstream_requests):
    """Test that changing the last digest character invalidates the request"""
    _, digest_hex, url_hex = signed(f"{UPSTREAM}/image").split("/")
    tampered = digest_hex[:-1] + ("0" if digest_hex[-1] != "0" else "1")

    response = client.get(f"/{tampered}/{url_hex}")

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert digest_hex not in response.text
    assert upstream_requests == []


def test_401_for_url_signed_with_other_secret(client):
    """Test that a digest made with another secret is rejected"""
    response = client.get(sign_url(b"not-the-secret", f"{UPSTREAM}/image"))

    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_uppercase_hex_accepted(client):
    """Test that hex segments are case-insensitive"""
    response = client.get(signed(f"{UPSTREAM}/image").upper())

    assert response.status_code == status.HTTP_200_OK


# ============================================================================
# Forwarding Tests
# ============================================================================

def test_200_for_valid_requests(client):
    """Test the signed round trip to an image upstream"""
    response = client.get(signed(f"{UPSTREAM}/image"))

    assert response.status_code == status.HTTP_200_OK
    assert response.content == PNG_BYTES
    assert response.headers["content-type"] == "image/png"
    assert response.headers["x-upstream"] == "yes"
    assert response.headers["content-length"] == str(len(PNG_BYTES))


def test_repeated_upstream_headers_preserved(client):
    """Test that every Set-Cookie value is relayed"""
    response = client.get(signed(f"{UPSTREAM}/cookies"))

    assert response.status_code == status.HTTP_200_OK
    assert response.headers.get_list("set-cookie") == ["a=1", "b=2"]


def test_redirects_followed(client, upstream_requests):
    """Test that upstream redirects are followed to the image"""
    response = client.get(signed(f"{UPSTREAM}/redirect"))

    assert response.status_code == status.HTTP_200_OK
    assert response.content == PNG_BYTES
    assert [r.url.path for r in upstream_requests] == ["/redirect", "/image"]


def test_upstream_status_not_relayed(client):
    """Test that an image body is served with 200 whatever the upstream status"""
    response = client.get(signed(f"{UPSTREAM}/missing-image"))

    assert response.status_code == status.HTTP_200_OK
    assert response.content == PNG_BYTES


@pytest.mark.parametrize("path, content_type", [
    ("text", "text/plain; charset=utf-8"),
    ("html", "text/html; charset=utf-8"),
    ("nowhere", "text/plain"),
    ("untyped", ""),
])
def test_406_for_wrong_content_type(client, path, content_type):
    """Test that non-image upstream responses are refused"""
    response = client.get(signed(f"{UPSTREAM}/{path}"))

    assert response.status_code == status.HTTP_406_NOT_ACCEPTABLE
    assert response.json()["detail"] == content_type


def test_406_discards_upstream_body(client, upstream_streams):
    """Test that a refused upstream response is closed, not relayed"""
    response = client.get(signed(f"{UPSTREAM}/tracked-html"))

    assert response.status_code == status.HTTP_406_NOT_ACCEPTABLE
    assert "<html>" not in response.text
    assert upstream_streams["tracked-html"].closed


# ============================================================================
# Upstream Failure Tests
# ============================================================================

def test_500_for_unreachable_upstream(client):
    """Test that transport errors become a generic 500"""
    response = client.get(signed("http://unreachable/image"))

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json()["detail"] == "Internal server error"
    assert "refused" not in response.text


@pytest.mark.parametrize("url", [
    "not a url",
    "/relative/image.png",
    "ftp://upstream/image.png",
    "file:///etc/passwd",
    b"\xff\xfe\xfd",
])
def test_500_for_unusable_signed_url(client, upstream_requests, url):
    """Test that correctly signed but unusable URLs are a server error"""
    response = client.get(signed(url))

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert upstream_requests == []


# ============================================================================
# Header Allowlist Tests
# ============================================================================

def test_allowlisted_headers_forwarded(client, upstream_requests):
    """Test that only allowlisted headers reach the upstream"""
    response = client.get(
        signed(f"{UPSTREAM}/image"),
        headers={
            "User-Agent": "test-agent/1.0",
            "Via": "1.1 edge",
            "Accept-Encoding": "gzip",
            "Accept": "text/html",
            "Authorization": "Bearer token",
            "X-Forwarded-For": "10.0.0.1",
        }
    )

    assert response.status_code == status.HTTP_200_OK

    sent = upstream_requests[0].headers
    assert sent["user-agent"] == "test-agent/1.0"
    assert sent["via"] == "1.1 edge"
    assert sent["accept-encoding"] == "gzip"
    assert sent["accept"] == "image/*"
    assert "authorization" not in sent
    assert "x-forwarded-for" not in sent


def test_configured_allowlist_used(upstream_client, upstream_requests):
    """Test that DISGUISE_FORWARDED_HEADERS replaces the default allowlist"""
    settings = Settings(
        _env_file=None,
        CAMO_KEY=SECRET.decode(),
        DISGUISE_FORWARDED_HEADERS="X-Trace-Id",
    )
    client = TestClient(create_application(settings, upstream_client))

    response = client.get(
        signed(f"{UPSTREAM}/image"),
        headers={"X-Trace-Id": "abc", "Via": "1.1 edge"}
    )

    assert response.status_code == status.HTTP_200_OK
    sent = upstream_requests[0].headers
    assert sent["x-trace-id"] == "abc"
    assert "via" not in sent
    assert sent["accept-encoding"] == "identity"


def test_build_upstream_headers_skips_missing_headers():
    """Test that absent allowlisted headers are not sent empty"""
    from starlette.datastructures import Headers

    headers = build_upstream_headers(["Via", "User-Agent"], Headers({"user-agent": "ua"}))

    assert headers["user-agent"] == "ua"
    assert "via" not in headers
    assert headers["accept"] == "image/*"


# ============================================================================
# Streaming Tests
# ============================================================================

@pytest.mark.asyncio
async def test_mid_stream_failure_logged_and_raised(caplog):
    """Test that a body read failure after headers aborts the stream"""
    stream = TrackingStream([b"partial"], fail_with=httpx.ReadError("connection reset"))
    upstream = httpx.Response(200, headers={"Content-Type": "image/png"}, stream=stream)

    chunks = []
    with pytest.raises(httpx.ReadError):
        async for chunk in stream_upstream_body(upstream, f"{UPSTREAM}/image"):
            chunks.append(chunk)

    assert chunks == [b"partial"]
    assert stream.closed
    assert "Upstream body copy failed" in caplog.text


@pytest.mark.asyncio
async def test_stream_closes_upstream_when_complete():
    """Test that a fully relayed upstream body is closed"""
    stream = TrackingStream([b"a", b"b"])
    upstream = httpx.Response(200, headers={"Content-Type": "image/png"}, stream=stream)

    chunks = [chunk async for chunk in stream_upstream_body(upstream, f"{UPSTREAM}/image")]

    assert chunks == [b"a", b"b"]
    assert stream.closed


@pytest.mark.asyncio
async def test_upstream_closed_when_body_never_pulled(upstream_client, upstream_streams):
    """Test that the response's background task closes an unread upstream"""
    from starlette.datastructures import Headers

    request = decode_signed_path(signed(f"{UPSTREAM}/tracked-image"))
    response = await forward_image(upstream_client, request, Headers(), ["Via"])

    assert not upstream_streams["tracked-image"].closed

    await response.background()

    assert upstream_streams["tracked-image"].closed


# ============================================================================
# Application State Tests
# ============================================================================

def test_500_without_upstream_client(app, client, upstream_requests):
    """Test that a missing upstream client is reported as a generic 500"""
    app.state.app_state.upstream_client = None

    response = client.get(signed(f"{UPSTREAM}/image"))

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json()["detail"] == "Internal server error"
    assert upstream_requests == []
