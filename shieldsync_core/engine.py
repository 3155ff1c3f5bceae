"""
Interface of the external wallet engine.

The engine (a third-party SDK that scans shielded balances and generates
proofs) is not part of this package.  ShieldSync only talks to it through
the methods below; any object providing them can be plugged into
:class:`~shieldsync_core.client.ShieldedWalletClient`.  Every call may fail
with an implementation-defined exception.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

BalanceCallback = Callable[[dict], Any]
ScanCallback = Callable[[dict], Any]


@dataclass
class EngineOptions:
    """Arguments for :meth:`WalletEngine.start`."""
    wallet_source: str = "shieldsync"
    poi_node_urls: list[str] = field(default_factory=list)
    should_debug: bool = False
    skip_merkletree_scans: bool = False
    verbose_scan_logging: bool = False


class WalletEngine(Protocol):

    # ── lifecycle ────────────────────────────────────────────────

    async def is_started(self) -> bool: ...

    async def start(self, options: EngineOptions) -> None: ...

    def set_balance_callback(self, callback: BalanceCallback) -> None: ...

    def set_utxo_scan_callback(self, callback: ScanCallback) -> None: ...

    def set_txid_scan_callback(self, callback: ScanCallback) -> None: ...

    async def configure_network(
        self, network: str, *, skip_external_validation: bool
    ) -> None: ...

    # ── providers ────────────────────────────────────────────────

    async def load_provider(
        self, providers: dict, network: str, polling_interval_ms: int
    ) -> Any: ...

    async def set_polling_provider(self, network: str, providers: dict) -> Any: ...

    async def get_provider(self, network: str) -> Any: ...

    # ── wallets ──────────────────────────────────────────────────

    async def load_wallet_by_id(self, *args: Any) -> Any: ...

    async def create_wallet(
        self,
        encryption_key: str,
        mnemonic: str,
        creation_block_numbers: Optional[dict] = None,
        derivation_index: int = 0,
    ) -> dict: ...

    async def wallet_for_id(self, wallet_id: str) -> Any: ...

    async def refresh_balances(self, wallet_id: str) -> None: ...

    async def unload_wallet(self, wallet_id: str) -> None: ...


def derive_address(handle: Any) -> Optional[str]:
    """
    Best-effort shielded address of a wallet handle.

    Handles are SDK objects exposing ``get_address()`` / ``getAddress()``,
    or plain result dicts carrying ``railgunAddress``.
    """
    if handle is None:
        return None
    for name in ("get_address", "getAddress"):
        fn = getattr(handle, name, None)
        if callable(fn):
            addr = fn()
            if isinstance(addr, str) and addr:
                return addr
    if isinstance(handle, dict):
        addr = handle.get("railgunAddress") or handle.get("address")
        if isinstance(addr, str) and addr:
            return addr
    addr = getattr(handle, "railgun_address", None) or getattr(handle, "address", None)
    if isinstance(addr, str) and addr:
        return addr
    return None
