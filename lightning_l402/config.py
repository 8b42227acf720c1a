"""
Configuration objects for the issuer, the LND gateway and the agent.

Each config is a frozen dataclass. ``from_env()`` reads the same
environment variables the Node.js deployment uses, with keyword overrides
taking precedence.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .errors import ConfigError

__all__ = [
    "MIN_SECRET_LENGTH",
    "IssuerConfig",
    "LndConfig",
    "AgentConfig",
]

MIN_SECRET_LENGTH = 32


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc


def _pick(overrides: Mapping[str, Any], name: str, fallback: Any) -> Any:
    value = overrides.get(name)
    return fallback if value is None else value


@dataclass(frozen=True)
class IssuerConfig:
    """Issuer-side settings: the macaroon secret, pricing and token lifetime."""

    secret: str
    location: str = "localhost"
    price_sats: int = 10
    expiry_seconds: int = 1800
    invoice_expiry_seconds: int = 3600

    def __post_init__(self) -> None:
        if not self.secret:
            raise ConfigError("L402_SECRET is required for macaroon signing")
        if len(self.secret) < MIN_SECRET_LENGTH:
            raise ConfigError(
                f"L402_SECRET is too short (minimum {MIN_SECRET_LENGTH} characters)"
            )
        if self.price_sats <= 0:
            raise ConfigError("price_sats must be greater than zero")
        if self.expiry_seconds <= 0:
            raise ConfigError("expiry_seconds must be greater than zero")
        if self.invoice_expiry_seconds <= 0:
            raise ConfigError("invoice_expiry_seconds must be greater than zero")

    @property
    def secret_bytes(self) -> bytes:
        return self.secret.encode("utf-8")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides: Any) -> "IssuerConfig":
        env = os.environ if env is None else env
        return cls(
            secret=_pick(overrides, "secret", env.get("L402_SECRET", "")),
            location=_pick(overrides, "location", env.get("L402_LOCATION") or "localhost"),
            price_sats=_pick(overrides, "price_sats", _env_int(env, "L402_PRICE_SATS", 10)),
            expiry_seconds=_pick(
                overrides, "expiry_seconds", _env_int(env, "L402_EXPIRY_SECONDS", 1800)
            ),
            invoice_expiry_seconds=_pick(
                overrides,
                "invoice_expiry_seconds",
                _env_int(env, "L402_INVOICE_EXPIRY_SECONDS", 3600),
            ),
        )


@dataclass(frozen=True)
class LndConfig:
    """Connection settings for an LND node's REST API."""

    macaroon_path: str
    host: str = "https://localhost:8080"
    tls_cert_path: Optional[str] = None
    timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        if not self.macaroon_path:
            raise ConfigError("LND_MACAROON_PATH is required")
        if not self.host.startswith(("https://", "http://")):
            raise ConfigError(f"LND_REST_HOST must be an http(s) URL, got {self.host!r}")
        if self.timeout_seconds <= 0:
            raise ConfigError("timeout_seconds must be greater than zero")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides: Any) -> "LndConfig":
        env = os.environ if env is None else env
        return cls(
            macaroon_path=_pick(overrides, "macaroon_path", env.get("LND_MACAROON_PATH", "")),
            host=_pick(overrides, "host", env.get("LND_REST_HOST") or "https://localhost:8080"),
            tls_cert_path=_pick(overrides, "tls_cert_path", env.get("LND_TLS_CERT_PATH") or None),
            timeout_seconds=_pick(
                overrides, "timeout_seconds", _env_int(env, "LND_TIMEOUT_SECONDS", 30)
            ),
        )


@dataclass(frozen=True)
class AgentConfig:
    """Spending ceiling and ledger location for the budget-enforced agent."""

    budget_sats: int = 1000
    ledger_path: str = "spending-log.json"

    def __post_init__(self) -> None:
        if self.budget_sats < 0:
            raise ConfigError("budget_sats must not be negative")
        if not self.ledger_path:
            raise ConfigError("SPENDING_LOG_PATH must not be empty")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides: Any) -> "AgentConfig":
        env = os.environ if env is None else env
        return cls(
            budget_sats=_pick(overrides, "budget_sats", _env_int(env, "BUDGET_SATS", 1000)),
            ledger_path=_pick(
                overrides, "ledger_path", env.get("SPENDING_LOG_PATH") or "spending-log.json"
            ),
        )
