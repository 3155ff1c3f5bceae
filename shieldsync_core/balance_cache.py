"""
Balance reconciliation cache.

Three-level store ``wallet_id -> bucket -> token_key -> TokenEntry`` fed by
the engine's balance callbacks.  Each callback carries the complete token
list for one (wallet, bucket); the bucket's map is replaced wholesale, never
patched.  A bucket that has been refreshed to empty is kept as an empty map,
which is distinct from a bucket that has never been received.

Transition detection
--------------------
When ``Spendable`` is refreshed, every token aggregate that is new in
``Spendable`` (absent from the previous ``Spendable`` snapshot) and present
in the current ``ShieldPending`` map is reported once through
:meth:`BalanceCache.on_transition`.  This is a heuristic for "external
validation finished", not a guarantee per note.

Aggregates are compared by canonical identity: the token-data hash when one
is derivable, else the ``addr:`` address key.  A hashed entry and an
address-only entry for the same contract are therefore *not* matched.

``apply_event`` contains no suspension point, so readers on the same event
loop never observe a half-installed bucket.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from shieldsync_core.models import (
    BalanceBucket,
    BalanceUpdateEvent,
    TokenEntry,
    TransitionEvent,
)
from shieldsync_core.normalizer import TokenNormalizer, address_key, parse_balance_event

if TYPE_CHECKING:
    from shieldsync_core.context import ConnectionContext

logger = logging.getLogger("shieldsync_cache")

# Number of transition events kept for diagnostics.
TRANSITION_HISTORY = 256

TransitionListener = Callable[[TransitionEvent], Any]


class BalanceCache:
    """Per-wallet, per-bucket token balances with transition detection."""

    def __init__(
        self,
        normalizer: Optional[TokenNormalizer] = None,
        context: Optional[ConnectionContext] = None,
        history_size: int = TRANSITION_HISTORY,
    ):
        self.normalizer = normalizer or TokenNormalizer()
        self.context = context

        self._balances: dict[str, dict[BalanceBucket, dict[str, TokenEntry]]] = {}
        self._previous: dict[tuple[str, BalanceBucket], dict[str, TokenEntry]] = {}
        self._listeners: list[TransitionListener] = []

        self.transitions: deque[TransitionEvent] = deque(maxlen=history_size)
        self.applied_events = 0
        self.dropped_events = 0

    # ── Signals ──────────────────────────────────────────────────────

    def on_transition(self, listener: TransitionListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event: TransitionEvent) -> None:
        self.transitions.append(event)
        logger.info(
            f"Transition ShieldPending -> Spendable for wallet "
            f"{event.wallet_id[:12]}: {event.token_address or event.token_key} "
            f"amount={event.amount}",
            extra={"wallet_id": event.wallet_id},
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Transition listener failed", extra={"wallet_id": event.wallet_id})

    # ── Mutation ─────────────────────────────────────────────────────

    def _resolve_wallet_id(self, event: BalanceUpdateEvent) -> Optional[str]:
        if event.wallet_id:
            return event.wallet_id
        if self.context is not None:
            return self.context.active_wallet_id
        return None

    def apply_event(self, event: Union[BalanceUpdateEvent, dict]) -> bool:
        """
        Apply one balance callback.  Returns True when a bucket was
        installed, False when the event was dropped.  Never raises for
        malformed input.
        """
        if not isinstance(event, BalanceUpdateEvent):
            event = parse_balance_event(event)
            if event is None:
                self.dropped_events += 1
                return False

        wallet_id = self._resolve_wallet_id(event)
        if not wallet_id:
            self.dropped_events += 1
            logger.warning(
                f"Dropping {event.bucket.value} balance event: no wallet id "
                f"and no active wallet"
            )
            return False

        if not event.explicit_list:
            logger.debug(
                f"{event.bucket.value} event for {wallet_id[:12]} carries no "
                f"token list; refreshing bucket to empty",
                extra={"wallet_id": wallet_id},
            )
        new_map = self.normalizer.normalize(event.records)

        # Snapshot and install in one synchronous step.
        buckets = self._balances.setdefault(wallet_id, {})
        prior = buckets.get(event.bucket, {})
        self._previous[(wallet_id, event.bucket)] = prior
        buckets[event.bucket] = new_map
        self.applied_events += 1

        if event.bucket is BalanceBucket.SPENDABLE:
            self._detect_transitions(wallet_id, new_map, prior)
        return True

    def _detect_transitions(
        self,
        wallet_id: str,
        spendable: dict[str, TokenEntry],
        prior_spendable: dict[str, TokenEntry],
    ) -> None:
        pending = self._balances.get(wallet_id, {}).get(BalanceBucket.SHIELD_PENDING)
        if not pending:
            return
        pending_ids = {e.identity for e in pending.values()}
        prior_ids = {e.identity for e in prior_spendable.values()}

        reported: set[str] = set()
        now = time.time()
        for entry in spendable.values():
            ident = entry.identity
            if ident in reported or ident in prior_ids or ident not in pending_ids:
                continue
            reported.add(ident)
            self._emit(TransitionEvent(
                wallet_id=wallet_id,
                token_key=ident,
                token_address=entry.token_address,
                amount=entry.amount,
                detected_at=now,
            ))

    def drop_wallet(self, wallet_id: str) -> None:
        """Forget every bucket and snapshot for *wallet_id*."""
        self._balances.pop(wallet_id, None)
        for key in [k for k in self._previous if k[0] == wallet_id]:
            del self._previous[key]
        logger.debug(f"Cache cleared for wallet {wallet_id[:12]}", extra={"wallet_id": wallet_id})

    def clear(self) -> None:
        self._balances.clear()
        self._previous.clear()

    # ── Reads (exception-free) ───────────────────────────────────────

    def read(self, wallet_id: Optional[str] = None, bucket: Any = None) -> dict:
        """
        Snapshot of cached balances.

        * ``wallet_id`` and ``bucket``: that bucket's token map
        * ``wallet_id`` only: ``{bucket: token_map}`` for received buckets
        * ``bucket`` only: the bucket of the active wallet
        * neither: the whole cache

        Returned dicts are copies; entries are immutable.
        """
        try:
            b = BalanceBucket.coerce(bucket) if bucket is not None else None
            if bucket is not None and b is None:
                return {}
            if wallet_id is None and b is not None and self.context is not None:
                wallet_id = self.context.active_wallet_id
                if wallet_id is None:
                    return {}
            if wallet_id is not None:
                buckets = self._balances.get(wallet_id, {})
                if b is not None:
                    return dict(buckets.get(b, {}))
                return {k: dict(v) for k, v in buckets.items()}
            return {
                w: {k: dict(v) for k, v in buckets.items()}
                for w, buckets in self._balances.items()
            }
        except Exception:
            logger.exception("Balance read failed")
            return {}

    def is_refreshed(self, wallet_id: str, bucket: Any) -> bool:
        """True once *bucket* has been received for *wallet_id*, even if empty."""
        try:
            b = BalanceBucket.coerce(bucket)
            return b is not None and b in self._balances.get(wallet_id, {})
        except Exception:
            logger.exception("Balance read failed")
            return False

    def previous(self, wallet_id: str, bucket: Any) -> dict:
        """The token map that was replaced by the latest refresh of *bucket*."""
        try:
            b = BalanceBucket.coerce(bucket)
            return dict(self._previous.get((wallet_id, b), {}))
        except Exception:
            logger.exception("Balance read failed")
            return {}

    def amount_of(
        self,
        bucket: Any,
        token_address: str,
        wallet_id: Optional[str] = None,
    ) -> str:
        """
        Amount of *token_address* in *bucket*, as an integer decimal string.
        Returns ``"0"`` when nothing matches.
        """
        try:
            b = BalanceBucket.coerce(bucket)
            if b is None or not isinstance(token_address, str):
                return "0"
            if wallet_id is None and self.context is not None:
                wallet_id = self.context.active_wallet_id
            if wallet_id is None:
                return "0"
            token_map = self._balances.get(wallet_id, {}).get(b)
            if not token_map:
                return "0"
            addr = token_address.strip().lower()
            entry = token_map.get(addr) or token_map.get(address_key(addr))
            if entry is None:
                for candidate in token_map.values():
                    if candidate.token_address == addr:
                        entry = candidate
                        break
            if entry is None:
                return "0"
            return entry.amount
        except Exception:
            logger.exception("Balance read failed")
            return "0"

    def wallet_ids(self) -> list[str]:
        return list(self._balances)

    def dump(self) -> dict:
        """JSON-safe view: ``{wallet: {bucket: {identity: amount}}}``."""
        try:
            out: dict[str, dict[str, dict[str, str]]] = {}
            for wallet_id, buckets in self._balances.items():
                out[wallet_id] = {}
                for b, token_map in buckets.items():
                    out[wallet_id][b.value] = {
                        e.identity: e.amount for e in token_map.values()
                    }
            return out
        except Exception:
            logger.exception("Balance dump failed")
            return {}

    def stats(self) -> dict:
        return {
            "wallets": len(self._balances),
            "applied_events": self.applied_events,
            "dropped_events": self.dropped_events,
            "dropped_records": self.normalizer.dropped_records,
            "hash_failures": self.normalizer.hash_failures,
            "rejected_amounts": self.normalizer.rejected_amounts,
            "transitions": len(self.transitions),
        }
