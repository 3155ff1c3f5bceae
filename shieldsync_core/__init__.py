"""
ShieldSync - client-side reconciliation layer for a shielded-balance wallet engine.

Key features:
- Balance cache keyed by wallet, engine-assigned bucket and token
- ShieldPending -> Spendable transition detection
- Single-flight engine bootstrap with provider verification and retry
- Wallet load with argument-order fallback, creation from a mnemonic
- Sealed session persistence and owner-checked restore
- Passive scan-progress watchdog
"""

__version__ = "0.3.0"
__all__ = [
    "models",
    "normalizer",
    "balance_cache",
    "watchdog",
    "context",
    "engine",
    "orchestrator",
    "client",
    "config",
    "crypto",
    "session_store",
    "diagnostics",
    "logging_config",
]
