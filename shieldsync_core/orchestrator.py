"""
Connection lifecycle orchestrator.

Coordinates the one shared engine bootstrap that many call sites depend on,
and attaches a wallet session once the engine is ready.

Lifecycle of :meth:`ConnectionOrchestrator.connect`:

1. **Single flight**: the first caller starts a task stored on the
   :class:`~shieldsync_core.context.ConnectionContext`; concurrent callers
   with the same identity (owner, wallet id, mnemonic) await that same
   task.  A caller with a different identity waits for it to finish and
   then runs its own attempt.  The guard is cleared in a ``finally`` so a
   failed attempt never blocks the next one.  Callers are shielded from
   each other's cancellation.  A :meth:`disconnect` during an attempt bumps
   the context epoch, and the attempt then unloads its wallet instead of
   installing it.

2. **Bootstrap**: start the engine unless it already reports started,
   register the scan/balance callbacks, re-apply the configured network
   patches and (re-)verify the RPC provider.  Patches and verification run
   on every bootstrap, independent of engine freshness.

3. **Provider verification**: after registering, the provider is queried
   back through ``engine.get_provider``.  Failures are retried a bounded
   number of times with a fixed delay, then degrade to a warning.

4. **Wallet**: load by id (argument order A, then order B), create from a
   mnemonic, or reuse the stored record for the same owner.  A session is
   only established once a handle resolves *and* an address is derivable.

Expected failures come back as :class:`ConnectResult` / :class:`RestoreResult`;
engine start failures (after retries) propagate to the callers.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from shieldsync_core.config import ShieldSyncConfig
from shieldsync_core.context import ConnectionContext
from shieldsync_core.crypto import seal_secret, unseal_secret
from shieldsync_core.engine import EngineOptions, WalletEngine, derive_address
from shieldsync_core.models import Credentials, SessionState, WalletSession
from shieldsync_core.session_store import SessionRecord, SessionStore

logger = logging.getLogger("shieldsync_orchestrator")

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")

# Mnemonics accepted by the engine.
MNEMONIC_WORD_COUNTS = (12, 24)


class WalletResolutionError(RuntimeError):
    """Both argument orders failed to load a wallet."""

    def __init__(self, wallet_id: str, first: BaseException, second: BaseException):
        self.wallet_id = wallet_id
        self.first_error = first
        self.second_error = second
        super().__init__(
            f"Could not load wallet {wallet_id}: "
            f"order A failed ({type(first).__name__}: {first}); "
            f"order B failed ({type(second).__name__}: {second})"
        )


class EngineNotStartedError(RuntimeError):
    """A wallet operation was attempted before the engine was bootstrapped."""


@dataclass
class ConnectResult:
    success: bool
    session: Optional[WalletSession] = None
    error: Optional[str] = None
    exception: Optional[BaseException] = field(default=None, repr=False)
    created: bool = False
    reused: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "wallet_id": self.session.wallet_id if self.session else None,
            "derived_address": self.session.derived_address if self.session else None,
            "error": self.error,
            "created": self.created,
        }


class RestoreStatus(str, enum.Enum):
    RESTORED = "restored"
    NOTHING_TO_RESTORE = "nothing_to_restore"
    LOCKED = "locked"
    FAILED = "failed"


@dataclass
class RestoreResult:
    status: RestoreStatus
    session: Optional[WalletSession] = None
    reason: str = ""

    @property
    def success(self) -> bool:
        return self.status is RestoreStatus.RESTORED


async def with_retry(
    fn: Callable[[], Awaitable[Any]],
    attempts: int = 3,
    base_delay: float = 1.0,
    what: str = "operation",
) -> Any:
    """Await ``fn()`` up to *attempts* times, sleeping ``base_delay * n`` between."""
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            logger.warning(f"{what} attempt {attempt}/{attempts} failed: {exc}")
            if attempt == attempts:
                raise
            await asyncio.sleep(base_delay * attempt)


def normalize_encryption_key(key: str) -> str:
    """Strip an optional ``0x`` prefix; the key must be 32 bytes of hex."""
    k = key[2:] if key.startswith(("0x", "0X")) else key
    if not _HEX_KEY.match(k):
        raise ValueError(
            f"encryption key must be 64 hex characters (got {len(k)})"
        )
    return k.lower()


def validate_mnemonic(mnemonic: str) -> bool:
    return len(mnemonic.split()) in MNEMONIC_WORD_COUNTS


class ConnectionOrchestrator:
    """Single-flight bootstrap and wallet attachment for one client."""

    def __init__(
        self,
        engine: WalletEngine,
        context: ConnectionContext,
        config: Optional[ShieldSyncConfig] = None,
        store: Optional[SessionStore] = None,
        *,
        on_balance: Optional[Callable[[dict], Any]] = None,
        on_utxo_scan: Optional[Callable[[dict], Any]] = None,
        on_txid_scan: Optional[Callable[[dict], Any]] = None,
    ):
        self.engine = engine
        self.ctx = context
        self.config = config or ShieldSyncConfig()
        self.store = store
        self._on_balance = on_balance
        self._on_utxo_scan = on_utxo_scan
        self._on_txid_scan = on_txid_scan

    # ── Bootstrap ────────────────────────────────────────────────────

    def _engine_options(self) -> EngineOptions:
        ec = self.config.engine
        return EngineOptions(
            wallet_source=ec.wallet_source,
            poi_node_urls=list(ec.poi_node_urls),
            should_debug=ec.should_debug,
            skip_merkletree_scans=ec.skip_merkletree_scans,
            verbose_scan_logging=ec.verbose_scan_logging,
        )

    async def bootstrap(self) -> None:
        """Start (or re-verify) the engine.  Safe to call repeatedly."""
        try:
            already = bool(await self.engine.is_started())
        except Exception as exc:
            logger.debug(f"is_started query failed, assuming fresh engine: {exc}")
            already = False

        if already:
            logger.info("Engine already started; skipping initialisation")
        else:
            options = self._engine_options()
            await with_retry(
                lambda: self.engine.start(options),
                attempts=self.config.provider.verify_attempts,
                base_delay=self.config.provider.retry_delay_seconds,
                what="Engine start",
            )
            self.ctx.bootstrap_count += 1
            logger.info(f"Engine started (wallet source {options.wallet_source!r})")
        self.ctx.engine_started = True

        self._wire_callbacks()
        await self.apply_network_patches()
        await self.ensure_provider()

    def _wire_callbacks(self) -> None:
        if self._on_balance is not None:
            self.engine.set_balance_callback(self._on_balance)
        if self._on_utxo_scan is not None:
            self.engine.set_utxo_scan_callback(self._on_utxo_scan)
        if self._on_txid_scan is not None:
            self.engine.set_txid_scan_callback(self._on_txid_scan)

    async def apply_network_patches(self) -> None:
        for network in self.config.network.skip_external_validation:
            try:
                await self.engine.configure_network(network, skip_external_validation=True)
            except Exception as exc:
                logger.warning(f"Could not disable external validation for {network}: {exc}")
                continue
            if network not in self.ctx.applied_patches:
                logger.info(f"External validation disabled for {network}")
            self.ctx.applied_patches.add(network)

    async def _provider_visible(self, network: str) -> bool:
        try:
            return await self.engine.get_provider(network) is not None
        except Exception as exc:
            logger.debug(f"Provider query for {network} failed: {exc}")
            return False

    async def _register_provider(self, network: str, providers: dict) -> None:
        try:
            await self.engine.load_provider(
                providers, network, self.config.network.polling_interval_ms
            )
        except Exception as exc:
            logger.info(f"load_provider failed ({exc}); falling back to polling provider")
            await self.engine.set_polling_provider(network, providers)

    async def ensure_provider(self) -> bool:
        """
        Make sure an RPC provider is registered and visible to the engine.
        Returns False (and logs a warning) after exhausting retries.
        """
        network = self.config.network.name
        if await self._provider_visible(network):
            self.ctx.provider_verified = True
            return True

        providers = self.config.providers_json()
        if not providers["providers"]:
            logger.warning(f"No RPC URLs configured for {network}; provider not registered")
            self.ctx.provider_verified = False
            return False

        attempts = max(1, self.config.provider.verify_attempts)
        delay = self.config.provider.retry_delay_seconds
        for attempt in range(1, attempts + 1):
            try:
                await self._register_provider(network, providers)
                if await self._provider_visible(network):
                    self.ctx.provider_verified = True
                    logger.info(f"Provider for {network} registered and verified")
                    return True
                logger.warning(
                    f"Provider for {network} not visible after registration "
                    f"(attempt {attempt}/{attempts})"
                )
            except Exception as exc:
                logger.warning(
                    f"Provider registration for {network} failed "
                    f"(attempt {attempt}/{attempts}): {exc}"
                )
            if attempt < attempts:
                await asyncio.sleep(delay)

        self.ctx.provider_verified = False
        logger.warning(f"Continuing without a verified provider for {network}")
        return False

    # ── Wallet resolution ────────────────────────────────────────────

    def resolve_wallet(self, wallet_id: str, secret: str) -> Awaitable[Any]:
        """
        Load *wallet_id* trying both argument orders.  Raises
        :class:`EngineNotStartedError` immediately if the engine is not up;
        the returned awaitable raises :class:`WalletResolutionError`.
        """
        if not self.ctx.engine_started:
            raise EngineNotStartedError("engine must be started before loading a wallet")
        return self._resolve_wallet(wallet_id, secret)

    async def _resolve_wallet(self, wallet_id: str, secret: str) -> Any:
        try:
            handle = await self.engine.load_wallet_by_id(secret, wallet_id, False)
            if handle is None:
                raise LookupError("engine returned no wallet")
            return handle
        except Exception as first:
            logger.info(f"Wallet load (key, id) failed for {wallet_id}: {first}; trying (id, key)")
            try:
                handle = await self.engine.load_wallet_by_id(wallet_id, secret, False)
                if handle is None:
                    raise LookupError("engine returned no wallet")
                return handle
            except Exception as second:
                raise WalletResolutionError(wallet_id, first, second) from second

    async def _address_for(self, wallet_id: str, handle: Any) -> Optional[str]:
        try:
            address = derive_address(handle)
        except Exception as exc:
            logger.debug(f"Address derivation from handle failed: {exc}")
            address = None
        if address:
            return address
        try:
            return derive_address(await self.engine.wallet_for_id(wallet_id))
        except Exception as exc:
            logger.debug(f"wallet_for_id({wallet_id}) failed: {exc}")
            return None

    async def _create_wallet(self, key: str, mnemonic: str) -> tuple[str, Any]:
        result = await self.engine.create_wallet(key, mnemonic, None, 0)
        wallet_id = None
        if isinstance(result, dict):
            wallet_id = result.get("id") or result.get("walletID")
        else:
            wallet_id = getattr(result, "id", None)
        if not wallet_id:
            raise RuntimeError("engine did not return a wallet id")
        try:
            handle = await self.engine.wallet_for_id(wallet_id)
        except Exception as exc:
            logger.debug(f"wallet_for_id after create failed: {exc}")
            handle = None
        return str(wallet_id), handle if handle is not None else result

    # ── Connect (single flight) ──────────────────────────────────────

    @staticmethod
    def _validate(credentials: Credentials) -> None:
        if not isinstance(credentials, Credentials):
            raise TypeError("credentials must be a Credentials instance")
        if not credentials.owner or not credentials.owner.strip():
            raise ValueError("credentials.owner is required")
        if credentials.encryption_key:
            normalize_encryption_key(credentials.encryption_key)

    @staticmethod
    def _identity(credentials: Credentials) -> tuple:
        mnemonic = credentials.mnemonic.strip() if credentials.mnemonic else None
        return (
            credentials.owner.strip().lower(),
            credentials.wallet_id,
            hash(mnemonic) if mnemonic else None,
        )

    async def connect(self, credentials: Credentials) -> ConnectResult:
        self._validate(credentials)
        identity = self._identity(credentials)
        while True:
            task = self.ctx.connect_task
            if task is None:
                task = asyncio.get_running_loop().create_task(self._guarded_connect(credentials))
                self.ctx.connect_task = task
                self.ctx.connect_identity = identity
                return await asyncio.shield(task)
            if self.ctx.connect_identity == identity:
                logger.debug("Connect already in flight; joining it")
                return await asyncio.shield(task)
            # A different identity is connecting: let it finish, then start our own.
            logger.info("Connect for another identity in flight; waiting for it to finish")
            try:
                await asyncio.shield(task)
            except Exception as exc:
                logger.debug(f"In-flight connect for another identity failed: {exc}")

    async def _guarded_connect(self, credentials: Credentials) -> ConnectResult:
        try:
            return await self._connect_once(credentials)
        finally:
            if self.ctx.connect_task is asyncio.current_task():
                self.ctx.connect_task = None
                self.ctx.connect_identity = None

    async def _connect_once(self, credentials: Credentials) -> ConnectResult:
        owner = credentials.owner.strip().lower()
        current = self.ctx.session
        if (
            current is not None
            and current.owner == owner
            and credentials.wallet_id in (None, current.wallet_id)
            and not credentials.mnemonic
        ):
            return ConnectResult(True, session=current, reused=True)

        epoch = self.ctx.epoch
        await self.bootstrap()

        try:
            session, created = await self._establish(owner, credentials)
        except WalletResolutionError as exc:
            logger.error(str(exc))
            self.ctx.last_error = str(exc)
            return ConnectResult(False, error=str(exc), exception=exc)
        except Exception as exc:
            logger.error(f"Wallet attach failed for {owner}: {exc}")
            self.ctx.last_error = str(exc)
            return ConnectResult(False, error=str(exc), exception=exc)

        if self.ctx.epoch != epoch:
            logger.warning(
                f"Disconnected while attaching wallet {session.wallet_id[:12]}; discarding it",
                extra={"wallet_id": session.wallet_id},
            )
            await self._unload(session.wallet_id)
            return ConnectResult(False, error="disconnected while connecting")

        self.ctx.session = session
        self.ctx.last_error = None
        self._persist(session, credentials.signature)
        logger.info(
            f"Wallet {'created' if created else 'loaded'}: "
            f"{session.wallet_id[:12]} -> {session.derived_address[:16]}",
            extra={"wallet_id": session.wallet_id},
        )
        return ConnectResult(True, session=session, created=created)

    async def _establish(self, owner: str, credentials: Credentials) -> tuple[WalletSession, bool]:
        key = normalize_encryption_key(credentials.encryption_key) if credentials.encryption_key else ""
        created = False

        if credentials.wallet_id:
            if not key:
                raise ValueError("encryption key required to load a wallet by id")
            wallet_id = credentials.wallet_id
            handle = await self.resolve_wallet(wallet_id, key)
        elif credentials.mnemonic:
            if not key:
                raise ValueError("encryption key required to create a wallet")
            if not validate_mnemonic(credentials.mnemonic):
                raise ValueError(
                    f"mnemonic must be 12 or 24 words, got {len(credentials.mnemonic.split())}"
                )
            wallet_id, handle = await self._create_wallet(key, credentials.mnemonic)
            created = True
        else:
            record = self.store.load() if self.store is not None else None
            if record is None or record.owner != owner:
                raise LookupError(f"no stored wallet for {owner}")
            wallet_id = record.wallet_id
            if not key:
                key = unseal_secret(record.secret, credentials.signature)
            handle = await self.resolve_wallet(wallet_id, key)

        address = await self._address_for(wallet_id, handle)
        if not address:
            raise LookupError(f"no address derivable for wallet {wallet_id}")
        session = WalletSession(
            wallet_id=wallet_id,
            derived_address=address,
            secret_material=key,
            owner=owner,
            handle=handle,
        )
        return session, created

    def _persist(self, session: WalletSession, signature: Optional[str]) -> None:
        if self.store is None:
            return
        try:
            self.store.save(SessionRecord(
                wallet_id=session.wallet_id,
                derived_address=session.derived_address,
                owner=session.owner,
                secret=seal_secret(session.secret_material, signature),
            ))
        except Exception:
            logger.exception("Failed to persist wallet session")

    # ── Restore / disconnect ─────────────────────────────────────────

    async def restore(self, identity: str, signature: Optional[str] = None) -> RestoreResult:
        """Re-attach the stored session if it belongs to *identity*."""
        if self.store is None:
            return RestoreResult(RestoreStatus.NOTHING_TO_RESTORE, reason="no session store")
        owner = (identity or "").strip().lower()
        record = self.store.load()
        if record is None:
            return RestoreResult(RestoreStatus.NOTHING_TO_RESTORE, reason="no stored session")
        if record.owner != owner:
            logger.info("Stored session belongs to a different owner; discarding it")
            self.store.delete()
            return RestoreResult(
                RestoreStatus.NOTHING_TO_RESTORE,
                reason="stored session belongs to a different owner",
            )

        try:
            secret = unseal_secret(record.secret, signature)
        except ValueError as exc:
            return RestoreResult(RestoreStatus.LOCKED, reason=str(exc))

        result = await self.connect(Credentials(
            owner=owner,
            encryption_key=secret,
            wallet_id=record.wallet_id,
            signature=signature,
        ))
        if result.success and result.session is not None and result.session.owner == owner:
            return RestoreResult(RestoreStatus.RESTORED, session=result.session)
        if result.success:
            logger.warning("Connect returned a session for a different owner; not restoring it")
            return RestoreResult(RestoreStatus.FAILED, reason="session belongs to a different owner")
        return RestoreResult(RestoreStatus.FAILED, reason=result.error or "restore failed")

    async def disconnect(self) -> Optional[WalletSession]:
        """Detach the active session and delete the stored record."""
        self.ctx.epoch += 1
        session = self.ctx.session
        self.ctx.session = None
        if self.store is not None:
            self.store.delete()
        if self.ctx.connecting:
            logger.info("Disconnect requested while a connect is in flight; its wallet will be discarded")
        if session is not None:
            session.state = SessionState.CLOSED
            await self._unload(session.wallet_id)
        return session

    async def _unload(self, wallet_id: str) -> None:
        try:
            await self.engine.unload_wallet(wallet_id)
        except Exception as exc:
            logger.warning(
                f"Engine failed to unload wallet {wallet_id}: {exc}",
                extra={"wallet_id": wallet_id},
            )

    def refresh_balances(self) -> Awaitable[bool]:
        """Ask the engine to rescan the active wallet."""
        if not self.ctx.engine_started:
            raise EngineNotStartedError("engine must be started before refreshing balances")
        return self._refresh()

    async def _refresh(self) -> bool:
        session = self.ctx.session
        if session is None:
            return False
        await self.engine.refresh_balances(session.wallet_id)
        return True
