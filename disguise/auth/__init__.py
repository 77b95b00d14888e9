"""
Authentication Package

This package decides whether a request is authorized to make the proxy fetch
a URL. There are no users or sessions: authorization is a keyed HMAC over the
target URL, computed by whoever holds the shared secret.

Modules:
- decoder: Splits the request path into its hex digest and hex URL segments
- signature: HMAC computation, constant-time verification and URL signing

The authentication flow:
1. Operator signs a URL with the shared secret (sign_url)
2. Client requests /<hex digest>/<hex url>
3. decode_signed_path recovers the raw digest and URL bytes
4. verify_signature recomputes the HMAC and compares in constant time
"""

from .decoder import decode_signed_path
from .signature import DIGEST_SIZE, compute_digest, sign_url, verify_signature

__all__ = [
    "DIGEST_SIZE",
    "compute_digest",
    "decode_signed_path",
    "sign_url",
    "verify_signature",
]
