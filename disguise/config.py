"""
Configuration module for the disguise image proxy.

This module uses Pydantic Settings to load and validate environment variables
for the listener, the shared signing secret, the forwarded header allowlist
and the shutdown grace period.

Environment variables are loaded from .env file or system environment. The
resulting Settings object is frozen: it is built once at process start and
passed explicitly to the application factory and the server.
"""

from functools import lru_cache
from typing import List, Literal, Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Listener, signing and upstream fetch configuration are defined here.
    """

    # =========================================================================
    # Listener Configuration
    # =========================================================================

    DISGUISE_NETWORK: Literal["tcp", "tcp4", "tcp6", "unix"] = Field(
        default="tcp",
        description="Network type to listen on (tcp, tcp4, tcp6 or unix)",
    )

    DISGUISE_ADDRESS: str = Field(
        default="[::1]:8081",
        description="Listen address: host:port for tcp networks, a path or @name for unix",
        min_length=1,
    )

    DISGUISE_SHUTDOWN_TIMEOUT: float = Field(
        default=10.0,
        description="Seconds in-flight requests may take to finish after an interrupt",
        gt=0,
    )

    # =========================================================================
    # Signing Configuration
    # =========================================================================

    CAMO_KEY: str = Field(
        default="",
        description="Shared secret used to compute HMAC digests of signed URLs",
    )

    # =========================================================================
    # Upstream Fetch Configuration
    # =========================================================================

    DISGUISE_FORWARDED_HEADERS: str = Field(
        default="Via,User-Agent,Accept-Encoding",
        description="Comma-separated request headers copied to the upstream fetch",
    )

    DISGUISE_UPSTREAM_TIMEOUT: Optional[float] = Field(
        default=None,
        description="Deadline for upstream fetches in seconds (unset means no deadline)",
        gt=0,
    )

    DISGUISE_MAX_REDIRECTS: int = Field(
        default=10,
        description="Redirects followed when fetching an upstream image",
        ge=0,
        le=50,
    )

    # =========================================================================
    # Logging
    # =========================================================================

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def secret_bytes(self) -> bytes:
        """Shared secret as the raw bytes fed to HMAC."""
        return self.CAMO_KEY.encode("utf-8")

    @property
    def forwarded_headers_list(self) -> List[str]:
        """
        Parse and return DISGUISE_FORWARDED_HEADERS as a clean list.

        Returns:
            List of header names without whitespace, in configured order.
        """
        return [
            header.strip()
            for header in self.DISGUISE_FORWARDED_HEADERS.split(",")
            if header.strip()
        ]

    @property
    def tcp_host_port(self) -> Tuple[str, int]:
        """
        Split a tcp listen address into host and port.

        IPv6 hosts may be bracketed ("[::1]:8081"). An empty host means all
        interfaces.

        Raises:
            ValueError: If the network is unix
        """
        if self.DISGUISE_NETWORK == "unix":
            raise ValueError("unix listeners have no host:port address")
        host, _, port = self.DISGUISE_ADDRESS.rpartition(":")
        return host.strip("[]"), int(port)

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("DISGUISE_ADDRESS")
    @classmethod
    def validate_address(cls, v: str, info) -> str:
        """
        Validate the listen address against the network type.

        Args:
            v: Raw address string
            info: Validation info carrying previously validated fields

        Returns:
            Validated address string

        Raises:
            ValueError: If a tcp address has no valid port
        """
        network = info.data.get("DISGUISE_NETWORK", "tcp")
        if network == "unix":
            if v == "@":
                raise ValueError("Abstract unix socket name cannot be empty")
            return v

        host, sep, port = v.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(
                f"Invalid tcp address: '{v}'. Expected format: 'host:port'"
            )
        if not 0 <= int(port) <= 65535:
            raise ValueError(f"Port out of range in address: '{v}'")
        if host.startswith("[") != host.endswith("]"):
            raise ValueError(f"Unbalanced brackets in address: '{v}'")
        return v

    @field_validator("DISGUISE_FORWARDED_HEADERS")
    @classmethod
    def validate_forwarded_headers(cls, v: str) -> str:
        """Reject header names with characters not allowed in HTTP tokens."""
        for header in (h.strip() for h in v.split(",")):
            if not header:
                continue
            if any(c in header for c in " \t:\r\n"):
                raise ValueError(f"Invalid header name: '{header}'")
            if header.lower() == "accept":
                raise ValueError("Accept is always set to image/* and cannot be forwarded")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        if v.upper() not in allowed_levels:
            raise ValueError(
                f"LOG_LEVEL must be one of {allowed_levels}, got: {v}"
            )

        return v.upper()


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the process lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If environment variables are invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    Called during startup so an unusable configuration stops the process
    before the listener is bound.

    Returns:
        Dictionary with validation status and any warnings.

    Example:
        >>> status = validate_configuration(get_settings())
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    errors = []
    warnings = []

    if not settings.CAMO_KEY:
        errors.append("CAMO_KEY is empty (anyone could sign URLs)")
    elif len(settings.secret_bytes) < 16:
        warnings.append("CAMO_KEY is shorter than recommended (16+ bytes)")

    if not settings.forwarded_headers_list:
        warnings.append("No forwarded headers configured")

    if settings.DISGUISE_UPSTREAM_TIMEOUT is None:
        warnings.append("DISGUISE_UPSTREAM_TIMEOUT is not set (slow upstreams can hold requests open)")

    if settings.DISGUISE_NETWORK != "unix":
        host, _ = settings.tcp_host_port
        if host in ("", "0.0.0.0", "::"):
            warnings.append("Listening on all interfaces")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "network": settings.DISGUISE_NETWORK,
        "address": settings.DISGUISE_ADDRESS,
        "forwarded_headers": settings.forwarded_headers_list,
    }


if __name__ == "__main__":
    """
    Print the loaded configuration (without the secret):
        python -m disguise.config
    """
    print("=" * 80)
    print("DISGUISE CONFIGURATION")
    print("=" * 80)

    try:
        config = get_settings()
    except Exception as e:
        print(f"\n✗ Configuration error: {e}")
        raise SystemExit(1)

    print(f"  Network:           {config.DISGUISE_NETWORK}")
    print(f"  Address:           {config.DISGUISE_ADDRESS}")
    print(f"  Shutdown timeout:  {config.DISGUISE_SHUTDOWN_TIMEOUT}s")
    print(f"  Forwarded headers: {', '.join(config.forwarded_headers_list)}")
    print(f"  Upstream timeout:  {config.DISGUISE_UPSTREAM_TIMEOUT or 'none'}")
    print(f"  Secret configured: {'yes' if config.CAMO_KEY else 'no'}")

    status = validate_configuration(config)
    for error in status["errors"]:
        print(f"  ✗ {error}")
    for warning in status["warnings"]:
        print(f"  ⚠ {warning}")
