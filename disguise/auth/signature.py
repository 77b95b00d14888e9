"""
URL Signature Module
====================

Computes and verifies the HMAC digests that authorize the proxy to fetch a
URL. A signed route has the shape::

    /<hex(HMAC-SHA1(secret, url_bytes))>/<hex(url_bytes)>

The MAC covers the raw URL bytes, never their hex encoding. Signatures carry no
expiry or nonce: a signed URL stays valid for as long as the secret does.
"""

import hashlib
import hmac
import logging
from typing import Union

logger = logging.getLogger(__name__)

DIGEST_ALGORITHM = hashlib.sha1
DIGEST_SIZE = DIGEST_ALGORITHM().digest_size


def compute_digest(secret: bytes, target_url: bytes) -> bytes:
    """
    Compute the HMAC digest of a target URL.

    Args:
        secret: Shared secret
        target_url: Raw URL bytes exactly as they appear in the signed path

    Returns:
        Raw digest bytes (DIGEST_SIZE long)
    """
    return hmac.new(secret, target_url, DIGEST_ALGORITHM).digest()


def verify_signature(secret: bytes, target_url: bytes, digest: bytes) -> bool:
    """
    Check a client supplied digest against the URL it claims to authorize.

    The comparison is constant-time so response timing does not reveal how
    much of the digest matched.

    Args:
        secret: Shared secret
        target_url: Raw URL bytes decoded from the request path
        digest: Raw digest bytes decoded from the request path

    Returns:
        True if digest is the HMAC of target_url under secret
    """
    expected = compute_digest(secret, target_url)
    valid = hmac.compare_digest(expected, digest)

    if not valid:
        logger.debug(f"Digest mismatch ({len(digest)} byte digest supplied)")

    return valid


def sign_url(secret: bytes, url: Union[str, bytes]) -> str:
    """
    Build the signed request path for a URL.

    Args:
        secret: Shared secret
        url: Absolute URL to authorize; str values are encoded as UTF-8

    Returns:
        Path of the form "/<hex digest>/<hex url>"

    Example:
        >>> sign_url(b"secret", "http://example.com/cat.png")  # doctest: +SKIP
        '/6b2f.../687474703a2f2f6578616d706c652e636f6d2f6361742e706e67'
    """
    url_bytes = url.encode("utf-8") if isinstance(url, str) else url
    return f"/{compute_digest(secret, url_bytes).hex()}/{url_bytes.hex()}"
