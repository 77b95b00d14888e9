"""
disguise - signed image proxy.

Fetches an upstream image on behalf of a client only when the request path
carries an HMAC of the URL computed with the operator's shared secret, and
only relays the response when it is an image.
"""

__version__ = "1.0.0"
