"""
Proxy Routes - Signed Image Forwarding
======================================

This module implements the single proxy endpoint. A request is forwarded to
its upstream only after the HMAC in its path has been verified, and the
upstream response is relayed only if it is an image.

Security Model:
---------------
1. Only GET is served; every other method is rejected before the path is read
2. The path carries hex(HMAC(secret, url)) and hex(url); both are decoded
3. The HMAC is recomputed and compared in constant time
4. Only allowlisted request headers reach the upstream, plus Accept: image/*
5. Upstream responses without an image/* Content-Type are discarded

Endpoints:
----------
- GET /<hex digest>/<hex url>: Fetch url and stream it back
"""

import logging
from typing import AsyncIterator, Sequence

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response, StreamingResponse
import httpx
from starlette.background import BackgroundTask
from starlette.datastructures import Headers

from ..auth import decode_signed_path, verify_signature
from ..config import Settings
from ..models import SignedPathRequest

logger = logging.getLogger(__name__)

# Create router
proxy_router = APIRouter()

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]
IMAGE_CONTENT_TYPE_PREFIX = "image/"
UPSTREAM_ACCEPT = "image/*"


# ============================================================================
# Dependencies
# ============================================================================

def get_app_settings(request: Request) -> Settings:
    """
    Dependency returning the Settings the application was created with.

    Args:
        request: FastAPI request object

    Returns:
        Frozen Settings instance stored on app.state
    """
    return request.app.state.settings


def get_upstream_client(request: Request) -> httpx.AsyncClient:
    """
    Return the shared upstream HTTP client from app state.

    Args:
        request: FastAPI request object

    Returns:
        httpx.AsyncClient used for every upstream fetch
    """
    client = getattr(request.app.state.app_state, "upstream_client", None)
    if client is None:
        logger.error("Upstream client not available; application lifespan did not run")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    return client


# ============================================================================
# Header Functions
# ============================================================================

def build_upstream_headers(
    forwarded_headers: Sequence[str],
    original_headers: Headers
) -> httpx.Headers:
    """
    Build headers for the upstream request.

    Only allowlisted headers present on the inbound request are copied.
    Accept is always image/*. Without a forwarded Accept-Encoding the upstream
    is asked for an identity body, since the body is relayed byte for byte.

    Args:
        forwarded_headers: Allowlisted header names
        original_headers: Inbound request headers

    Returns:
        Headers for the upstream request
    """
    upstream_headers = httpx.Headers()

    for name in forwarded_headers:
        value = original_headers.get(name)
        if value is not None:
            upstream_headers[name] = value

    upstream_headers["Accept"] = UPSTREAM_ACCEPT

    if "accept-encoding" not in upstream_headers:
        upstream_headers["Accept-Encoding"] = "identity"

    return upstream_headers


def replace_response_headers(response: Response, upstream_headers: httpx.Headers) -> None:
    """
    Drop every header staged on response and copy all upstream headers.

    Repeated headers such as Set-Cookie keep every value.
    """
    del response.raw_headers[:]
    response.raw_headers.extend(
        (key.lower(), value) for key, value in upstream_headers.raw
    )


# ============================================================================
# Upstream Fetch
# ============================================================================

def build_upstream_request(
    client: httpx.AsyncClient,
    signed: SignedPathRequest,
    headers: httpx.Headers
) -> httpx.Request:
    """
    Build the GET request for a verified target URL.

    Raises:
        UnicodeDecodeError: If the URL bytes are not UTF-8
        httpx.InvalidURL: If the URL is not an absolute http(s) URL
    """
    url = httpx.URL(signed.target_url_text)
    if url.scheme not in ("http", "https") or not url.host:
        raise httpx.InvalidURL(f"Not an absolute http(s) URL: {url}")

    return client.build_request("GET", url, headers=headers)


async def stream_upstream_body(
    upstream: httpx.Response,
    target_url: str
) -> AsyncIterator[bytes]:
    """
    Relay the raw upstream body, closing the upstream response when done.

    Headers are already on the wire when this runs, so a read failure can
    only be logged and re-raised to abort the client connection.
    """
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        logger.error(f"Upstream body copy failed for {target_url}: {e}")
        raise
    finally:
        await upstream.aclose()


async def forward_image(
    client: httpx.AsyncClient,
    signed: SignedPathRequest,
    original_headers: Headers,
    forwarded_headers: Sequence[str]
) -> StreamingResponse:
    """
    Fetch a verified target URL and relay it if it is an image.

    Flow:
    1. Build the GET request (500 if the URL is unusable)
    2. Send it, following redirects (500 on any transport failure)
    3. Require an image/* Content-Type (406 otherwise, body discarded)
    4. Replace the outgoing headers with the upstream headers
    5. Stream the raw upstream body

    Raises:
        HTTPException: 500 or 406 as above
    """
    headers = build_upstream_headers(forwarded_headers, original_headers)

    try:
        upstream_request = build_upstream_request(client, signed, headers)
    except (UnicodeDecodeError, httpx.InvalidURL) as e:
        logger.error(f"Cannot build upstream request for {signed.target_url!r}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    target_url = str(upstream_request.url)
    logger.info(f"Fetching upstream image: {target_url}")

    try:
        upstream = await client.send(upstream_request, stream=True)
    except httpx.HTTPError as e:
        logger.error(f"Upstream fetch failed for {target_url}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

    content_type = upstream.headers.get("content-type", "")
    if not content_type.startswith(IMAGE_CONTENT_TYPE_PREFIX):
        await upstream.aclose()
        logger.warning(
            f"Refusing non-image upstream response for {target_url}",
            extra={
                "content_type": content_type,
                "upstream_status": upstream.status_code,
            }
        )
        raise HTTPException(
            status_code=status.HTTP_406_NOT_ACCEPTABLE,
            detail=content_type
        )

    # The generator closes the upstream once iterated; the background task
    # covers clients that disconnect before the first chunk.
    response = StreamingResponse(
        stream_upstream_body(upstream, target_url),
        status_code=status.HTTP_200_OK,
        background=BackgroundTask(upstream.aclose),
    )
    replace_response_headers(response, upstream.headers)

    return response


# ============================================================================
# Proxy Endpoint
# ============================================================================

@proxy_router.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy_image(
    request: Request,
    path: str,
    settings: Settings = Depends(get_app_settings)
):
    """
    Serve GET /<hex digest>/<hex url>.

    Pipeline: method check, path decoding, signature verification, upstream
    fetch. Every failure is terminal for the request; nothing is retried.

    Args:
        request: FastAPI request
        path: Request path below the router mount point
        settings: Application settings

    Returns:
        StreamingResponse carrying the upstream image

    Raises:
        HTTPException: 405, 404, 400, 401, 406 or 500
    """
    try:
        if request.method != "GET":
            raise HTTPException(
                status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
                detail="Method Not Allowed",
                headers={"Allow": "GET"}
            )

        signed = decode_signed_path(path)

        if not verify_signature(settings.secret_bytes, signed.target_url, signed.digest):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized"
            )

        return await forward_image(
            get_upstream_client(request),
            signed,
            request.headers,
            settings.forwarded_headers_list,
        )

    except HTTPException as e:
        if e.status_code < status.HTTP_500_INTERNAL_SERVER_ERROR:
            logger.info(
                f"Rejected {request.method} request: {e.status_code} {e.detail}",
                extra={"path": request.url.path}
            )
        raise
