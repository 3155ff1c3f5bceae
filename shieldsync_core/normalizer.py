"""
Ingress normalisation for engine callbacks.

The engine's balance and scan callbacks are not contractually fixed to one
payload shape: the token list may live under several field names, token
addresses may be nested or flat, the token-data hash may be present or
need computing.  This module is the only place that inspects raw shapes.
Everything downstream works on :class:`~shieldsync_core.models.TokenEntry`,
:class:`~shieldsync_core.models.BalanceUpdateEvent` and
:class:`~shieldsync_core.models.ScanProgressEvent`.

Malformed payloads never raise out of this module; they are dropped and
counted so the diagnostics surface can report them.

Usage:
    norm = TokenNormalizer(hasher=engine.token_data_hash)
    event = parse_balance_event(raw)
    tokens = norm.normalize(event.records)
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

from shieldsync_core.models import (
    BalanceBucket,
    BalanceUpdateEvent,
    ScanKind,
    ScanProgressEvent,
    TokenEntry,
)

logger = logging.getLogger("shieldsync_normalizer")

# Priority order for the token list.  The first field present as a list
# wins, an explicit empty list included.
TOKEN_LIST_FIELDS = (
    "erc20Amounts",
    "erc20_amounts",
    "tokenAmounts",
    "token_amounts",
    "tokens",
)

WALLET_ID_FIELDS = ("railgunWalletID", "walletID", "walletId", "wallet_id")
BUCKET_FIELDS = ("balanceBucket", "bucket", "balance_bucket")
HASH_FIELDS = ("tokenHash", "tokenDataHash", "token_data_hash", "token_hash")
ADDRESS_FIELDS = ("tokenAddress", "token_address", "address")

ADDR_PREFIX = "addr:"

# ERC20 token type as used in token-data structures.
ERC20_TOKEN_TYPE = 0


def _first_present(raw: dict, names: Iterable[str]) -> Any:
    for name in names:
        value = raw.get(name)
        if value is not None and value != "":
            return value
    return None


def address_key(address: str) -> str:
    return f"{ADDR_PREFIX}{address}"


def coerce_amount(value: Any) -> Optional[str]:
    """
    Parse an engine amount into a non-negative integer decimal string.

    Accepts ints, digit strings, ``0x`` hex strings and integral decimal
    strings (``"1000.0"``).  A missing or blank amount is ``"0"``.  Anything
    else (floats, negatives, fractions, garbage) is rejected with None.

    >>> coerce_amount("000123")
    '123'
    >>> coerce_amount("0x10")
    '16'
    >>> coerce_amount(1.5) is None
    True
    """
    if value is None:
        return "0"
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value) if value >= 0 else None
    if isinstance(value, Decimal):
        dec = value
    elif isinstance(value, str):
        s = value.strip()
        if not s:
            return "0"
        if s.isascii() and s.isdigit():
            return str(int(s))
        if s[:2].lower() == "0x":
            try:
                return str(int(s, 16))
            except ValueError:
                return None
        try:
            dec = Decimal(s)
        except InvalidOperation:
            return None
    else:
        # Floats included: amounts are never taken from binary floating point.
        return None
    if not dec.is_finite() or dec < 0 or dec != dec.to_integral_value():
        return None
    return str(int(dec))


# ── Ingress: tagged union construction ───────────────────────────────


def parse_balance_event(raw: Any) -> Optional[BalanceUpdateEvent]:
    """
    Build a :class:`BalanceUpdateEvent` from a raw balance callback.

    Returns None when the payload is not a mapping or names no known
    bucket; the caller counts the drop.
    """
    if not isinstance(raw, dict):
        logger.warning(f"Ignoring non-mapping balance payload: {type(raw).__name__}")
        return None

    bucket = BalanceBucket.coerce(_first_present(raw, BUCKET_FIELDS))
    if bucket is None:
        logger.warning(
            f"Ignoring balance payload with unknown bucket "
            f"{_first_present(raw, BUCKET_FIELDS)!r}"
        )
        return None

    records: tuple = ()
    explicit = False
    source_field = None
    for name in TOKEN_LIST_FIELDS:
        value = raw.get(name)
        if isinstance(value, (list, tuple)):
            records = tuple(value)
            explicit = True
            source_field = name
            break

    wallet_id = _first_present(raw, WALLET_ID_FIELDS)
    return BalanceUpdateEvent(
        bucket=bucket,
        records=records,
        wallet_id=str(wallet_id) if wallet_id is not None else None,
        explicit_list=explicit,
        source_field=source_field,
        chain=raw.get("chain"),
    )


def parse_scan_event(kind: ScanKind, raw: Any) -> Optional[ScanProgressEvent]:
    """Build a :class:`ScanProgressEvent`; progress is clamped to [0, 1]."""
    if not isinstance(raw, dict):
        logger.warning(f"Ignoring non-mapping {kind.value} scan payload")
        return None
    try:
        progress = float(raw.get("progress", 0.0) or 0.0)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring {kind.value} scan payload with bad progress {raw.get('progress')!r}")
        return None
    if progress != progress:  # NaN
        return None
    progress = min(1.0, max(0.0, progress))
    error = raw.get("error")
    return ScanProgressEvent(
        kind=kind,
        progress=progress,
        status=str(raw.get("scanStatus") or raw.get("status") or ""),
        chain=raw.get("chain"),
        error=str(error) if error else None,
    )


# ── Token records ────────────────────────────────────────────────────


class TokenNormalizer:
    """
    Converts a token-amount list into a keyed map of :class:`TokenEntry`.

    Every entry is indexed under each key derivable for it: the token-data
    hash, the bare lower-cased address and the ``addr:`` prefixed address.
    All keys of one record point at the *same* object.

    Key collisions inside one list: the entry's canonical identity (hash,
    else ``addr:`` address) is authoritative.  A later record with the same
    identity replaces the earlier one under every key; address aliases of
    a hashed entry never displace an entry that already owns them.
    """

    def __init__(self, hasher: Optional[Callable[[dict], Any]] = None):
        self.hasher = hasher
        self.dropped_records = 0
        self.hash_failures = 0
        self.collisions = 0
        self.rejected_amounts = 0

    # ── per-record helpers ───────────────────────────────────────

    @staticmethod
    def _extract_address(record: dict) -> Optional[str]:
        nested = record.get("tokenData") or record.get("token_data")
        if isinstance(nested, dict):
            addr = _first_present(nested, ADDRESS_FIELDS)
            if isinstance(addr, str) and addr.strip():
                return addr.strip().lower()
        addr = _first_present(record, ADDRESS_FIELDS)
        if isinstance(addr, str) and addr.strip():
            return addr.strip().lower()
        return None

    def _extract_hash(self, record: dict, address: Optional[str]) -> Optional[str]:
        direct = _first_present(record, HASH_FIELDS)
        if isinstance(direct, str) and direct.strip():
            return direct.strip().lower()
        if self.hasher is None or address is None:
            return None

        nested = record.get("tokenData") or record.get("token_data")
        nested = nested if isinstance(nested, dict) else {}
        token_data = {
            "tokenType": nested.get("tokenType", record.get("tokenType", ERC20_TOKEN_TYPE)),
            "tokenAddress": address,
            "tokenSubID": nested.get("tokenSubID", record.get("tokenSubID", "0x00")),
        }
        try:
            computed = self.hasher(token_data)
        except Exception as exc:
            self.hash_failures += 1
            logger.debug(f"Token-data hash unavailable for {address}: {exc}")
            return None
        if isinstance(computed, bytes):
            computed = computed.hex()
        if isinstance(computed, str) and computed.strip():
            return computed.strip().lower()
        return None

    def build_entry(self, record: Any) -> Optional[TokenEntry]:
        """Return the canonical entry for *record*, or None if unkeyable."""
        if not isinstance(record, dict):
            return None
        address = self._extract_address(record)
        token_hash = self._extract_hash(record, address)
        if address is None and token_hash is None:
            return None
        amount = coerce_amount(record.get("amount"))
        if amount is None:
            self.rejected_amounts += 1
            logger.warning(
                f"Unparseable amount {record.get('amount')!r} for token "
                f"{token_hash or address}; recorded as 0"
            )
            amount = "0"
        return TokenEntry(
            amount=amount,
            token_address=address,
            token_data_hash=token_hash,
            raw=dict(record),
        )

    @staticmethod
    def keys_for(entry: TokenEntry) -> list[str]:
        keys = []
        if entry.token_data_hash:
            keys.append(entry.token_data_hash)
        if entry.token_address:
            keys.append(entry.token_address)
            keys.append(address_key(entry.token_address))
        return keys

    # ── batch ────────────────────────────────────────────────────

    def normalize(self, records: Iterable[Any]) -> dict[str, TokenEntry]:
        out: dict[str, TokenEntry] = {}
        dropped = 0
        for record in records:
            entry = self.build_entry(record)
            if entry is None:
                dropped += 1
                continue

            primary = entry.identity
            displaced = out.get(primary)
            if displaced is not None and displaced.identity == primary:
                self.collisions += 1
                logger.debug(f"Duplicate token record for {primary}; later record wins")
                for k, v in list(out.items()):
                    if v is displaced:
                        out[k] = entry
            out[primary] = entry
            for key in self.keys_for(entry):
                out.setdefault(key, entry)

        if dropped:
            self.dropped_records += dropped
            logger.info(f"Dropped {dropped} token record(s) with no derivable key")
        return out
