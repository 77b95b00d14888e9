"""
Signed path decoding.

Splits an inbound request path into its digest and target URL segments and
hex-decodes both. A path of the wrong shape is treated as a missing resource;
a path of the right shape with bad hex is a malformed request.
"""

import binascii
import logging

from fastapi import HTTPException, status

from ..models import SignedPathRequest

logger = logging.getLogger(__name__)

SEGMENTS = 2


def split_signed_path(path: str) -> list:
    """
    Split a request path into the hex digest and hex URL segments.

    Leading slashes are trimmed, then the path is split on the first "/"
    only, so any further slashes end up in the URL segment.

    Raises:
        HTTPException: 404 unless there are exactly two non-empty segments
    """
    pieces = path.lstrip("/").split("/", SEGMENTS - 1)
    if len(pieces) != SEGMENTS or not all(pieces):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not Found",
        )
    return pieces


def decode_hex_segment(segment: str) -> bytes:
    """
    Decode one hex path segment.

    Both letter cases are accepted; whitespace and odd lengths are not.

    Raises:
        HTTPException: 400 if the segment is not valid hex
    """
    try:
        return binascii.unhexlify(segment)
    except (binascii.Error, ValueError) as e:
        logger.debug(f"Invalid hex segment: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Path segments must be hex encoded",
        ) from e


def decode_signed_path(path: str) -> SignedPathRequest:
    """
    Decode a request path of the form "/<hex digest>/<hex url>".

    Args:
        path: Request path as seen by the server (percent-decoded)

    Returns:
        SignedPathRequest with the raw digest and URL bytes

    Raises:
        HTTPException: 404 for a malformed route, 400 for bad hex
    """
    digest_hex, url_hex = split_signed_path(path)
    return SignedPathRequest(
        digest=decode_hex_segment(digest_hex),
        target_url=decode_hex_segment(url_hex),
    )
