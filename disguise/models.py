"""
Data Models Module

Pydantic models shared by the signing and forwarding layers.
"""

from pydantic import BaseModel, ConfigDict, Field


class SignedPathRequest(BaseModel):
    """Digest and target URL decoded from a signed request path."""

    model_config = ConfigDict(frozen=True)

    digest: bytes = Field(..., description="HMAC digest supplied by the client")
    target_url: bytes = Field(..., description="Raw bytes of the URL to fetch")

    @property
    def target_url_text(self) -> str:
        """
        Target URL decoded as UTF-8.

        Raises:
            UnicodeDecodeError: If the signed bytes are not valid UTF-8
        """
        return self.target_url.decode("utf-8")
