"""
Explicit per-client connection context.

Holds the state that would otherwise live in module globals: whether the
engine has been started, the active wallet session, the single-flight
connect guard and which network patches have been applied.  One context is
created per :class:`~shieldsync_core.client.ShieldedWalletClient` and handed
to the orchestrator and the balance cache.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from shieldsync_core.models import WalletSession


@dataclass
class ConnectionContext:
    engine_started: bool = False
    provider_verified: bool = False
    session: Optional[WalletSession] = None
    # Single-flight guard: the one in-flight connect task, if any, and the
    # identity it was started for.  Only callers with the same identity join it.
    connect_task: Optional[asyncio.Task] = None
    connect_identity: Optional[tuple] = None
    # Bumped by every disconnect; a connect started in an older epoch never
    # installs its session.
    epoch: int = 0
    applied_patches: set[str] = field(default_factory=set)
    bootstrap_count: int = 0
    last_error: Optional[str] = None

    @property
    def active_wallet_id(self) -> Optional[str]:
        return self.session.wallet_id if self.session is not None else None

    @property
    def connecting(self) -> bool:
        return self.connect_task is not None and not self.connect_task.done()

    def status(self) -> dict:
        return {
            "engine_started": self.engine_started,
            "provider_verified": self.provider_verified,
            "connected": self.session is not None,
            "connecting": self.connecting,
            "session": self.session.to_dict() if self.session else None,
            "applied_patches": sorted(self.applied_patches),
            "bootstrap_count": self.bootstrap_count,
            "epoch": self.epoch,
            "last_error": self.last_error,
        }
