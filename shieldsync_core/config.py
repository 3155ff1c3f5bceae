"""
TOML-based configuration for ShieldSync clients.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from shieldsync_core.config import load_config
    cfg = load_config("shieldsync.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class EngineConfig:
    """Options forwarded to the wallet engine on start."""
    wallet_source: str = "shieldsync"
    poi_node_urls: list[str] = field(default_factory=list)
    should_debug: bool = False
    skip_merkletree_scans: bool = False
    verbose_scan_logging: bool = False


@dataclass
class NetworkConfig:
    """Target network and RPC providers.

    ``skip_external_validation`` lists networks for which the engine is told
    to skip external (POI) validation.  The flag is re-applied on every
    bootstrap, including when the engine was already running.
    """
    name: str = "Ethereum_Sepolia"
    chain_id: int = 11155111
    rpc_urls: list[str] = field(default_factory=list)
    polling_interval_ms: int = 5 * 60 * 1000   # 5 minutes
    skip_external_validation: list[str] = field(default_factory=list)


@dataclass
class ProviderConfig:
    """Provider registration retry policy (bounded count, fixed delay)."""
    verify_attempts: int = 3
    retry_delay_seconds: float = 1.0


@dataclass
class WatchdogConfig:
    budget_seconds: float = 120.0


@dataclass
class SessionConfig:
    """Persisted wallet session."""
    db_path: str = "data/shieldsync.db"
    store_key: str = "shieldsync.wallet"


@dataclass
class DiagnosticsConfig:
    """Read-only diagnostics HTTP endpoint."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8765


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class ShieldSyncConfig:
    """Top-level configuration container."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def providers_json(self) -> dict:
        """Provider list in the shape the engine's ``load_provider`` expects."""
        return {
            "chainId": self.network.chain_id,
            "providers": [
                {"provider": url.strip(), "priority": i + 1, "weight": 1}
                for i, url in enumerate(self.network.rpc_urls)
                if url.strip()
            ],
        }


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _split_csv(value: str) -> list[str]:
    return [p.strip() for p in value.split(",") if p.strip()]


def load_config(path: str | None = None) -> ShieldSyncConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        SHIELDSYNC_NETWORK          -> network.name
        SHIELDSYNC_CHAIN_ID         -> network.chain_id
        SHIELDSYNC_RPC_URLS         -> network.rpc_urls      (comma-separated)
        SHIELDSYNC_SKIP_VALIDATION  -> network.skip_external_validation (comma-separated)
        SHIELDSYNC_POI_NODES        -> engine.poi_node_urls  (comma-separated)
        SHIELDSYNC_VERBOSE          -> engine.should_debug / verbose_scan_logging
        SHIELDSYNC_SKIP_SCANS       -> engine.skip_merkletree_scans
        SHIELDSYNC_VERIFY_ATTEMPTS  -> provider.verify_attempts
        SHIELDSYNC_RETRY_DELAY      -> provider.retry_delay_seconds
        SHIELDSYNC_SCAN_BUDGET      -> watchdog.budget_seconds
        SHIELDSYNC_DB_PATH          -> session.db_path
        SHIELDSYNC_DIAG_PORT        -> diagnostics.port      (enables diagnostics)
        SHIELDSYNC_LOG_LEVEL        -> logging.level
        SHIELDSYNC_LOG_FMT          -> logging.format
    """
    cfg = ShieldSyncConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("engine", cfg.engine),
                ("network", cfg.network),
                ("provider", cfg.provider),
                ("watchdog", cfg.watchdog),
                ("session", cfg.session),
                ("diagnostics", cfg.diagnostics),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("SHIELDSYNC_NETWORK"):
        cfg.network.name = v
    if v := os.environ.get("SHIELDSYNC_CHAIN_ID"):
        cfg.network.chain_id = int(v)
    if v := os.environ.get("SHIELDSYNC_RPC_URLS"):
        cfg.network.rpc_urls = _split_csv(v)
    if v := os.environ.get("SHIELDSYNC_SKIP_VALIDATION"):
        cfg.network.skip_external_validation = _split_csv(v)
    if v := os.environ.get("SHIELDSYNC_POI_NODES"):
        cfg.engine.poi_node_urls = _split_csv(v)
    if v := os.environ.get("SHIELDSYNC_VERBOSE"):
        verbose = v.lower() in ("1", "true", "yes")
        cfg.engine.should_debug = verbose
        cfg.engine.verbose_scan_logging = verbose
    if v := os.environ.get("SHIELDSYNC_SKIP_SCANS"):
        cfg.engine.skip_merkletree_scans = v.lower() in ("1", "true", "yes")
    if v := os.environ.get("SHIELDSYNC_VERIFY_ATTEMPTS"):
        cfg.provider.verify_attempts = int(v)
    if v := os.environ.get("SHIELDSYNC_RETRY_DELAY"):
        cfg.provider.retry_delay_seconds = float(v)
    if v := os.environ.get("SHIELDSYNC_SCAN_BUDGET"):
        cfg.watchdog.budget_seconds = float(v)
    if v := os.environ.get("SHIELDSYNC_DB_PATH"):
        cfg.session.db_path = v
    if v := os.environ.get("SHIELDSYNC_DIAG_PORT"):
        cfg.diagnostics.port = int(v)
        cfg.diagnostics.enabled = True
    if v := os.environ.get("SHIELDSYNC_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("SHIELDSYNC_LOG_FMT"):
        cfg.logging.format = v

    return cfg
