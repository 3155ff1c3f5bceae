"""
Scan progress watchdog.

Observes the engine's UTXO and TXID merkletree scan callbacks and raises a
*soft* timeout when a scan stops reporting progress for longer than the
configured budget.  The watchdog never cancels, restarts or fails a scan:
scans are owned by the engine and may legitimately run for a long time.

Per scan kind::

    Idle --(0 < p < 1)--> InProgress --(p == 1)--> Complete --(p == 0)--> Idle
                             |  ^
                             +--+  every InProgress event re-arms the timer

Each InProgress event re-arms a single debounced ``loop.call_later`` timer;
Complete cancels it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from shieldsync_core.models import ScanKind, ScanPhase, ScanProgressEvent, ScanState
from shieldsync_core.normalizer import parse_scan_event

logger = logging.getLogger("shieldsync_watchdog")

DEFAULT_BUDGET_SECONDS = 120.0

# Number of soft-timeout records kept for diagnostics.
TIMEOUT_HISTORY = 64


@dataclass(frozen=True)
class SoftTimeout:
    kind: ScanKind
    progress: float
    idle_seconds: float
    fired_at: float


class ScanWatchdog:
    """Passive inactivity observer for the two scan streams."""

    def __init__(
        self,
        budget_seconds: float = DEFAULT_BUDGET_SECONDS,
        on_timeout: Optional[Callable[[SoftTimeout], Any]] = None,
    ):
        self.budget_seconds = budget_seconds
        self.on_timeout = on_timeout
        self._states: dict[ScanKind, ScanState] = {k: ScanState(kind=k) for k in ScanKind}
        self._timers: dict[ScanKind, asyncio.TimerHandle] = {}
        self.timeouts: deque[SoftTimeout] = deque(maxlen=TIMEOUT_HISTORY)

    # ── Event intake ─────────────────────────────────────────────────

    def observe(self, kind: ScanKind, event: Union[ScanProgressEvent, dict]) -> Optional[ScanState]:
        """Record one scan callback and update the timer for *kind*."""
        if not isinstance(event, ScanProgressEvent):
            event = parse_scan_event(kind, event)
            if event is None:
                return None

        state = self._states[kind]
        state.progress = event.progress
        state.status = event.status
        state.last_event_at = time.time()

        if event.error:
            logger.warning(f"{kind.value} scan reported error: {event.error}")

        if event.progress >= 1.0:
            if state.phase is not ScanPhase.COMPLETE:
                logger.info(f"{kind.value} scan complete")
            state.phase = ScanPhase.COMPLETE
            self._cancel(kind)
        elif event.progress > 0.0:
            state.phase = ScanPhase.IN_PROGRESS
            self._arm(kind)
        else:
            state.phase = ScanPhase.IDLE
            self._cancel(kind)
        return state

    # ── Timer management ─────────────────────────────────────────────

    def _arm(self, kind: ScanKind) -> None:
        self._cancel(kind)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop; {kind.value} watchdog not armed")
            return
        self._timers[kind] = loop.call_later(self.budget_seconds, self._fire, kind)

    def _cancel(self, kind: ScanKind) -> None:
        handle = self._timers.pop(kind, None)
        if handle is not None:
            handle.cancel()

    def _fire(self, kind: ScanKind) -> None:
        self._timers.pop(kind, None)
        state = self._states[kind]
        if state.phase is not ScanPhase.IN_PROGRESS:
            return
        idle = time.time() - state.last_event_at
        record = SoftTimeout(
            kind=kind,
            progress=state.progress,
            idle_seconds=idle,
            fired_at=time.time(),
        )
        self.timeouts.append(record)
        logger.warning(
            f"{kind.value} scan has not progressed for {idle:.0f}s "
            f"(at {state.progress:.0%}); still waiting on the engine"
        )
        if self.on_timeout is not None:
            try:
                self.on_timeout(record)
            except Exception:
                logger.exception("Watchdog timeout callback failed")

    def armed(self, kind: ScanKind) -> bool:
        return kind in self._timers

    def stop(self) -> None:
        """Cancel all pending timers; states are kept."""
        for kind in list(self._timers):
            self._cancel(kind)

    # ── Reads ────────────────────────────────────────────────────────

    def state(self, kind: ScanKind) -> ScanState:
        return self._states[kind]

    def status(self) -> dict:
        return {
            "budget_seconds": self.budget_seconds,
            "scans": {k.value: s.to_dict() for k, s in self._states.items()},
            "armed": sorted(k.value for k in self._timers),
            "soft_timeouts": len(self.timeouts),
        }
