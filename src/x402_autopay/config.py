"""
Runtime Settings

Resolves the engine's tunables from the environment (with ``.env`` support
via python-dotenv) into a single validated pydantic model.

Core Classes:
    - Settings: Validated configuration view consumed by the executor,
      the pending-payment service, the audit writer, the outbound HTTP
      client and the on-chain balance source (see their ``from_settings``).

Environment Variables:
    - X402_DEFAULT_CHAIN_ID: Tie-breaker chain for auto-selection (default 8453, Base)
    - X402_PENDING_TTL_SECONDS: Upper bound on a pending payment's lifetime
    - X402_AUTHORIZATION_VALIDITY_SECONDS: ``validBefore`` window of signed authorizations
    - X402_REQUEST_TIMEOUT: Outbound HTTP timeout in seconds
    - X402_MAX_REDIRECTS: Maximum redirects followed per outbound request
    - X402_RESPONSE_EXCERPT_CHARS: Length of response bodies kept in error details
    - X402_AUDIT_WRITE_ATTEMPTS: Attempts made before an audit write is reported failed
    - EVM_RPC_KEY: Optional infrastructure key for premium RPC endpoints

Dependencies:
    - pydantic: Validation of the resolved values
    - python-dotenv: Loading of a local ``.env`` file
"""

import os
from typing import Optional

import dotenv
from pydantic import BaseModel, Field, field_validator

from .engine.exceptions import ConfigurationError


class Settings(BaseModel):
    """Resolved configuration for the payment engine."""

    default_chain_id: int = Field(default=8453, description="Tie-breaker chain for auto-selection")
    pending_ttl_seconds: int = Field(default=1800, description="Maximum lifetime of a pending payment")
    authorization_validity_seconds: int = Field(default=300, description="validBefore window for signed authorizations")
    request_timeout: float = Field(default=30.0, description="Outbound HTTP timeout in seconds")
    max_redirects: int = Field(default=5, description="Redirects followed per outbound request")
    response_excerpt_chars: int = Field(default=500, description="Characters of a failed response kept as error detail")
    audit_write_attempts: int = Field(default=3, description="Attempts before an audit write failure propagates")
    rpc_key: Optional[str] = Field(default=None, description="Infrastructure key for premium RPC endpoints")

    @field_validator(
        "pending_ttl_seconds",
        "authorization_validity_seconds",
        "response_excerpt_chars",
        "audit_write_attempts",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ConfigurationError(f"Expected a positive value, got {value}")
        return value

    @field_validator("request_timeout")
    @classmethod
    def _ensure_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ConfigurationError(f"Request timeout must be positive, got {value}")
        return value

    @field_validator("max_redirects")
    @classmethod
    def _ensure_redirect_range(cls, value: int) -> int:
        if not 0 <= value <= 20:
            raise ConfigurationError(f"max_redirects must be within [0, 20], got {value}")
        return value

    @classmethod
    def load(cls, env_file: Optional[str] = None) -> "Settings":
        """
        Build settings from environment variables, loading ``.env`` first.

        Args:
            env_file: Optional explicit path to a dotenv file.

        Returns:
            Settings: Validated settings instance.

        Raises:
            ConfigurationError: If a variable cannot be parsed or is out of range.
        """
        dotenv.load_dotenv(env_file)
        fields = cls.model_fields

        def _read(name: str, field: str, cast):
            raw = os.getenv(name)
            if raw is None or raw == "":
                return fields[field].default
            try:
                return cast(raw)
            except ValueError as exc:
                raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from exc

        return cls(
            default_chain_id=_read("X402_DEFAULT_CHAIN_ID", "default_chain_id", int),
            pending_ttl_seconds=_read("X402_PENDING_TTL_SECONDS", "pending_ttl_seconds", int),
            authorization_validity_seconds=_read(
                "X402_AUTHORIZATION_VALIDITY_SECONDS", "authorization_validity_seconds", int
            ),
            request_timeout=_read("X402_REQUEST_TIMEOUT", "request_timeout", float),
            max_redirects=_read("X402_MAX_REDIRECTS", "max_redirects", int),
            response_excerpt_chars=_read("X402_RESPONSE_EXCERPT_CHARS", "response_excerpt_chars", int),
            audit_write_attempts=_read("X402_AUDIT_WRITE_ATTEMPTS", "audit_write_attempts", int),
            rpc_key=os.getenv("EVM_RPC_KEY") or None,
        )
