"""
ShieldSync wallet client.

The object calling code holds on to.  It owns one engine connection: the
:class:`ConnectionContext`, the balance cache fed by engine callbacks, the
scan watchdog and the connection orchestrator.

Usage:
    client = ShieldedWalletClient(engine, load_config("shieldsync.toml"))
    result = await client.connect(Credentials(owner=eoa, encryption_key=key,
                                              mnemonic=phrase))
    client.get_balance(bucket="Spendable", token_address=usdc)
    await client.disconnect()
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from shieldsync_core.balance_cache import BalanceCache
from shieldsync_core.config import ShieldSyncConfig
from shieldsync_core.context import ConnectionContext
from shieldsync_core.engine import WalletEngine
from shieldsync_core.models import (
    BalanceBucket,
    Credentials,
    ScanKind,
    TransitionEvent,
    WalletSession,
)
from shieldsync_core.normalizer import TokenNormalizer
from shieldsync_core.orchestrator import (
    ConnectionOrchestrator,
    ConnectResult,
    RestoreResult,
)
from shieldsync_core.session_store import SessionStore
from shieldsync_core.watchdog import ScanWatchdog

logger = logging.getLogger("shieldsync.client")


class ShieldedWalletClient:
    """Facade over one external wallet engine."""

    def __init__(
        self,
        engine: WalletEngine,
        config: Optional[ShieldSyncConfig] = None,
        store: Optional[SessionStore] = None,
    ):
        self.engine = engine
        self.config = config or ShieldSyncConfig()
        if store is None:
            store = SessionStore(self.config.session.db_path, self.config.session.store_key)
        self.store = store

        self.context = ConnectionContext()
        self.normalizer = TokenNormalizer(hasher=getattr(engine, "token_data_hash", None))
        self.cache = BalanceCache(self.normalizer, self.context)
        self.watchdog = ScanWatchdog(self.config.watchdog.budget_seconds)
        self.orchestrator = ConnectionOrchestrator(
            engine,
            self.context,
            self.config,
            self.store,
            on_balance=self._on_balance,
            on_utxo_scan=self._on_utxo_scan,
            on_txid_scan=self._on_txid_scan,
        )

    # ── Engine callbacks ─────────────────────────────────────────────

    def _on_balance(self, payload: dict) -> None:
        self.cache.apply_event(payload)

    def _on_utxo_scan(self, payload: dict) -> None:
        self.watchdog.observe(ScanKind.UTXO, payload)

    def _on_txid_scan(self, payload: dict) -> None:
        self.watchdog.observe(ScanKind.TXID, payload)

    # ── Connection ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Bootstrap the engine without attaching a wallet."""
        await self.orchestrator.bootstrap()

    async def connect(self, credentials: Credentials) -> ConnectResult:
        return await self.orchestrator.connect(credentials)

    async def restore(self, identity: str, signature: Optional[str] = None) -> RestoreResult:
        result = await self.orchestrator.restore(identity, signature)
        logger.info(f"Restore for {identity}: {result.status.value}")
        return result

    async def disconnect(self) -> Optional[WalletSession]:
        session = await self.orchestrator.disconnect()
        if session is not None:
            self.cache.drop_wallet(session.wallet_id)
            logger.info(f"Disconnected wallet {session.wallet_id[:12]}")
        return session

    def refresh_balances(self) -> Awaitable[bool]:
        return self.orchestrator.refresh_balances()

    @property
    def session(self) -> Optional[WalletSession]:
        return self.context.session

    def is_connected_for(self, identity: str) -> bool:
        """True when the live session, or failing that the stored one, belongs to *identity*."""
        owner = (identity or "").strip().lower()
        if not owner:
            return False
        if self.context.session is not None:
            return self.context.session.owner == owner
        try:
            record = self.store.load()
        except Exception as exc:
            logger.warning(f"Could not read stored session: {exc}")
            return False
        return record is not None and record.owner == owner

    # ── Reads ────────────────────────────────────────────────────────

    def get_balance(
        self,
        wallet_id: Optional[str] = None,
        bucket: Any = None,
        token_address: Optional[str] = None,
    ) -> Any:
        """
        With *token_address*: the amount string in *bucket* (default
        Spendable).  Otherwise a snapshot as described by
        :meth:`BalanceCache.read`.
        """
        if token_address is not None:
            return self.cache.amount_of(
                bucket if bucket is not None else BalanceBucket.SPENDABLE,
                token_address,
                wallet_id,
            )
        return self.cache.read(wallet_id, bucket)

    def on_transition(self, listener: Callable[[TransitionEvent], Any]) -> Callable[[], None]:
        return self.cache.on_transition(listener)

    def get_state(self) -> dict:
        state = self.context.status()
        state["scans"] = {k.value: self.watchdog.state(k).to_dict() for k in ScanKind}
        return state

    def diagnostics(self) -> dict:
        """Non-authoritative dump for operators."""
        return {
            "connection": self.context.status(),
            "cache": self.cache.stats(),
            "balances": self.cache.dump(),
            "watchdog": self.watchdog.status(),
            "transitions": [
                {
                    "wallet_id": t.wallet_id,
                    "token_key": t.token_key,
                    "token_address": t.token_address,
                    "amount": t.amount,
                    "detected_at": t.detected_at,
                }
                for t in self.cache.transitions
            ],
        }

    def close(self) -> None:
        self.watchdog.stop()
        self.store.close()
