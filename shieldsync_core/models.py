"""
Core data types shared by the ShieldSync cache, watchdog and orchestrator.

Everything the engine hands us is loosely shaped; these types are the
canonical internal representation once a payload has passed through
:mod:`shieldsync_core.normalizer`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional


class BalanceBucket(str, enum.Enum):
    """Engine-assigned spend/validation state of a set of shielded notes."""
    SPENDABLE = "Spendable"
    SHIELD_PENDING = "ShieldPending"
    SHIELD_BLOCKED = "ShieldBlocked"
    PROOF_SUBMITTED = "ProofSubmitted"
    MISSING_INTERNAL_POI = "MissingInternalPOI"
    MISSING_EXTERNAL_POI = "MissingExternalPOI"
    SPENT = "Spent"

    @classmethod
    def coerce(cls, value: Any) -> Optional[BalanceBucket]:
        """Return the bucket for *value* (enum, name or value), else None."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            pass
        try:
            return cls[value.upper()]
        except KeyError:
            return None


class ScanKind(str, enum.Enum):
    UTXO = "UTXO"
    TXID = "TXID"


class ScanPhase(str, enum.Enum):
    IDLE = "Idle"
    IN_PROGRESS = "InProgress"
    COMPLETE = "Complete"


class SessionState(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(frozen=True)
class TokenEntry:
    """
    One token aggregate inside a (wallet, bucket).

    ``amount`` is a non-negative integer in base units, kept as a decimal
    string so arbitrarily large values survive untouched.
    """
    amount: str = "0"
    token_address: Optional[str] = None
    token_data_hash: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False, hash=False, repr=False)

    @property
    def identity(self) -> str:
        """Canonical key: the token-data hash, else the prefixed address."""
        if self.token_data_hash:
            return self.token_data_hash
        return f"addr:{self.token_address}"


@dataclass(frozen=True)
class BalanceUpdateEvent:
    """Canonical form of one engine balance callback."""
    bucket: BalanceBucket
    records: tuple = ()
    wallet_id: Optional[str] = None
    explicit_list: bool = False
    source_field: Optional[str] = None
    chain: Any = None


@dataclass(frozen=True)
class ScanProgressEvent:
    """Canonical form of one UTXO/TXID merkletree scan callback."""
    kind: ScanKind
    progress: float
    status: str = ""
    chain: Any = None
    error: Optional[str] = None


@dataclass
class ScanState:
    kind: ScanKind
    progress: float = 0.0
    status: str = ""
    phase: ScanPhase = ScanPhase.IDLE
    last_event_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "progress": self.progress,
            "status": self.status,
            "phase": self.phase.value,
            "last_event_at": self.last_event_at,
        }


@dataclass(frozen=True)
class TransitionEvent:
    """A token aggregate seen in ShieldPending that reappeared as Spendable."""
    wallet_id: str
    token_key: str
    token_address: Optional[str]
    amount: str
    detected_at: float


@dataclass
class WalletSession:
    """A live wallet attached to the engine."""
    wallet_id: str
    derived_address: str
    secret_material: Any = field(repr=False)
    owner: str = ""
    state: SessionState = SessionState.ACTIVE
    handle: Any = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict:
        return {
            "wallet_id": self.wallet_id,
            "derived_address": self.derived_address,
            "owner": self.owner,
            "state": self.state.value,
        }


@dataclass(frozen=True)
class Credentials:
    """
    Input to :meth:`ShieldedWalletClient.connect`.

    ``owner`` is the public identity (EOA) the wallet belongs to.
    ``encryption_key`` is the engine's 32-byte wallet key as hex.
    ``signature`` seals the persisted secret when present.
    """
    owner: str
    encryption_key: str = ""
    mnemonic: Optional[str] = field(default=None, repr=False)
    wallet_id: Optional[str] = None
    signature: Optional[str] = field(default=None, repr=False)
