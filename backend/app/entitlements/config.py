"""Configuration helpers for the entitlement provider and token verification."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os

from .exceptions import ConfigurationError

DEFAULT_REVENUECAT_BASE_URL = "https://api.revenuecat.com/v1"


@dataclass(frozen=True)
class ProviderConfig:
    """Settings for the remote entitlement provider."""

    api_secret_key: str
    base_url: str
    timeout_seconds: float


@dataclass(frozen=True)
class AuthConfig:
    """Settings used to verify caller access tokens."""

    jwt_secret: str
    jwt_audience: str
    jwt_algorithm: str = "HS256"


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Expected float value, got {value!r}") from exc


def load_provider_config(env: Optional[Mapping[str, str]] = None) -> ProviderConfig:
    """Load :class:`ProviderConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    api_secret_key = (env_mapping.get("REVENUECAT_API_SECRET_KEY") or "").strip()
    if not api_secret_key:
        raise ConfigurationError("Missing environment variables: REVENUECAT_API_SECRET_KEY")

    base_url = env_mapping.get("REVENUECAT_API_BASE_URL") or DEFAULT_REVENUECAT_BASE_URL
    timeout_seconds = _to_float(env_mapping.get("REVENUECAT_TIMEOUT_SECONDS"), default=10.0)
    if timeout_seconds <= 0:
        raise ConfigurationError("REVENUECAT_TIMEOUT_SECONDS must be positive")

    return ProviderConfig(
        api_secret_key=api_secret_key,
        base_url=base_url.rstrip("/"),
        timeout_seconds=timeout_seconds,
    )


def load_auth_config(env: Optional[Mapping[str, str]] = None) -> AuthConfig:
    """Load :class:`AuthConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    jwt_secret = env_mapping.get("SUPABASE_JWT_SECRET") or ""
    if not jwt_secret:
        raise ConfigurationError("Missing environment variables: SUPABASE_JWT_SECRET")
    audience = (env_mapping.get("SUPABASE_JWT_AUDIENCE") or "authenticated").strip()

    return AuthConfig(jwt_secret=jwt_secret, jwt_audience=audience)


__all__ = [
    "AuthConfig",
    "DEFAULT_REVENUECAT_BASE_URL",
    "ProviderConfig",
    "load_auth_config",
    "load_provider_config",
]
