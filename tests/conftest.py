"""
Shared pytest fixtures for the ShieldSync test suite.

``FakeEngine`` stands in for the external wallet SDK.  Every async method
yields to the loop once so concurrency behaves as it would against the
real engine, and every call is recorded for assertions.
"""

import asyncio

import pytest

from shieldsync_core.client import ShieldedWalletClient
from shieldsync_core.config import ShieldSyncConfig
from shieldsync_core.context import ConnectionContext
from shieldsync_core.orchestrator import ConnectionOrchestrator
from shieldsync_core.session_store import SessionStore


class FakeWallet:
    def __init__(self, wallet_id: str, key: str, address: str):
        self.id = wallet_id
        self.key = key
        self.address = address

    def get_address(self) -> str:
        return self.address


class FakeEngine:
    """In-memory wallet engine with switchable failure modes."""

    def __init__(self):
        self.started = False
        self.start_calls = 0
        self.start_failures = 0        # raise on this many start() calls
        self.start_delay = 0.0

        self.balance_callback = None
        self.utxo_callback = None
        self.txid_callback = None
        self.network_configs: list[tuple[str, bool]] = []

        self.providers: dict[str, dict] = {}
        self.load_provider_calls = 0
        self.polling_provider_calls = 0
        self.fail_load_provider = False
        self.drop_registrations = False  # accept registration but never expose it

        self.wallets: dict[str, FakeWallet] = {}
        self.load_order = "A"           # "A": (key, id), "B": (id, key), "none"
        self.load_calls: list[tuple] = []
        self.create_calls = 0
        self.fail_create = False
        self.refresh_calls: list[str] = []
        self.unloaded: list[str] = []

    # ── lifecycle ────────────────────────────────────────────────

    async def is_started(self) -> bool:
        await asyncio.sleep(0)
        return self.started

    async def start(self, options) -> None:
        self.start_calls += 1
        await asyncio.sleep(self.start_delay)
        if self.start_failures > 0:
            self.start_failures -= 1
            raise ConnectionError("engine database locked")
        self.started = True
        self.options = options

    def set_balance_callback(self, callback) -> None:
        self.balance_callback = callback

    def set_utxo_scan_callback(self, callback) -> None:
        self.utxo_callback = callback

    def set_txid_scan_callback(self, callback) -> None:
        self.txid_callback = callback

    async def configure_network(self, network, *, skip_external_validation) -> None:
        await asyncio.sleep(0)
        self.network_configs.append((network, skip_external_validation))

    # ── providers ────────────────────────────────────────────────

    async def load_provider(self, providers, network, polling_interval_ms):
        self.load_provider_calls += 1
        await asyncio.sleep(0)
        if self.fail_load_provider:
            raise RuntimeError("fallback provider rejected")
        if not self.drop_registrations:
            self.providers[network] = providers
        return {"feesSerialized": {}}

    async def set_polling_provider(self, network, providers):
        self.polling_provider_calls += 1
        await asyncio.sleep(0)
        if not self.drop_registrations:
            self.providers[network] = providers

    async def get_provider(self, network):
        await asyncio.sleep(0)
        return self.providers.get(network)

    # ── wallets ──────────────────────────────────────────────────

    def add_wallet(self, wallet_id: str, key: str, address: str = "") -> FakeWallet:
        wallet = FakeWallet(wallet_id, key, address or f"0zk1q{wallet_id}")
        self.wallets[wallet_id] = wallet
        return wallet

    async def load_wallet_by_id(self, first, second, _is_view_only):
        self.load_calls.append((first, second))
        await asyncio.sleep(0)
        if self.load_order == "A":
            key, wallet_id = first, second
        elif self.load_order == "B":
            wallet_id, key = first, second
        else:
            raise RuntimeError("wallet loading unavailable")
        wallet = self.wallets.get(wallet_id)
        if wallet is None or wallet.key != key:
            raise LookupError(f"no wallet {wallet_id!r} for that key")
        return wallet

    async def create_wallet(self, encryption_key, mnemonic, creation_block_numbers=None,
                            derivation_index=0):
        self.create_calls += 1
        await asyncio.sleep(0)
        if self.fail_create:
            raise RuntimeError("wallet creation failed")
        wallet_id = f"{self.create_calls:064x}"
        wallet = self.add_wallet(wallet_id, encryption_key)
        return {"id": wallet_id, "railgunAddress": wallet.address}

    async def wallet_for_id(self, wallet_id):
        await asyncio.sleep(0)
        if wallet_id not in self.wallets:
            raise LookupError(wallet_id)
        return self.wallets[wallet_id]

    async def refresh_balances(self, wallet_id) -> None:
        await asyncio.sleep(0)
        self.refresh_calls.append(wallet_id)

    async def unload_wallet(self, wallet_id) -> None:
        await asyncio.sleep(0)
        self.unloaded.append(wallet_id)

    # ── test helpers ─────────────────────────────────────────────

    def emit_balance(self, payload) -> None:
        self.balance_callback(payload)

    def emit_scan(self, kind: str, payload) -> None:
        cb = self.utxo_callback if kind == "UTXO" else self.txid_callback
        cb(payload)


@pytest.fixture
def engine():
    """Fresh fake engine, not started."""
    return FakeEngine()


@pytest.fixture
def config():
    """Config with one RPC URL, the validation bypass on, and no retry delay."""
    cfg = ShieldSyncConfig()
    cfg.network.rpc_urls = ["https://rpc.sepolia.example"]
    cfg.network.skip_external_validation = ["Ethereum_Sepolia"]
    cfg.provider.verify_attempts = 3
    cfg.provider.retry_delay_seconds = 0.0
    return cfg


@pytest.fixture
def store():
    """In-memory session store."""
    s = SessionStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def context():
    return ConnectionContext()


@pytest.fixture
def orchestrator(engine, context, config, store):
    return ConnectionOrchestrator(engine, context, config, store)


@pytest.fixture
def client(engine, config, store):
    c = ShieldedWalletClient(engine, config, store)
    yield c
    c.watchdog.stop()
