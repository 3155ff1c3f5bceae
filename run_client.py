#!/usr/bin/env python3
"""
ShieldSync client runner: bootstraps a wallet engine, restores the stored
session for an owner and serves the diagnostics endpoint.

The engine is an external SDK binding, named as ``module:attribute``; the
attribute is either an engine instance or a zero-argument factory.

Usage:
    python run_client.py --engine my_sdk.binding:Engine \\
                         --owner 0xAbC... --diag-port 8765

Environment variables (alternative to flags):
    SHIELDSYNC_ENGINE, SHIELDSYNC_OWNER, SHIELDSYNC_SIGNATURE
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import importlib
import logging
import os
import sys
from typing import Any

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from shieldsync_core.client import ShieldedWalletClient  # noqa: E402
from shieldsync_core.config import load_config  # noqa: E402
from shieldsync_core.diagnostics import DiagnosticsServer  # noqa: E402
from shieldsync_core.logging_config import setup_logging_from_config  # noqa: E402

logger = logging.getLogger("shieldsync.runner")


def load_engine(target: str) -> Any:
    """Import ``module:attribute`` and return the engine it names."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"engine must be given as module:attribute, got {target!r}")
    obj = getattr(importlib.import_module(module_name), attr)
    if isinstance(obj, type) or (callable(obj) and not hasattr(obj, "start")):
        obj = obj()
    return obj


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="ShieldSync wallet client")
    p.add_argument("--config", default=None, help="Path to shieldsync.toml")
    p.add_argument("--engine", default=os.environ.get("SHIELDSYNC_ENGINE", ""),
                   help="Engine binding as module:attribute")
    p.add_argument("--owner", default=os.environ.get("SHIELDSYNC_OWNER", ""),
                   help="Restore the stored session for this identity")
    p.add_argument("--signature", default=os.environ.get("SHIELDSYNC_SIGNATURE"),
                   help="Owner signature unsealing the stored secret")
    p.add_argument("--diag-port", type=int, default=None,
                   help="Serve diagnostics on this port")
    return p.parse_args(argv)


async def run(args: argparse.Namespace) -> None:
    cfg = load_config(args.config)
    if args.diag_port is not None:
        cfg.diagnostics.port = args.diag_port
        cfg.diagnostics.enabled = True
    setup_logging_from_config(cfg.logging)

    if not args.engine:
        raise SystemExit("no engine given (--engine or SHIELDSYNC_ENGINE)")
    client = ShieldedWalletClient(load_engine(args.engine), cfg)

    diag = None
    if cfg.diagnostics.enabled:
        diag = DiagnosticsServer(client, cfg.diagnostics.host, cfg.diagnostics.port)
        await diag.start()

    try:
        if args.owner:
            result = await client.restore(args.owner, args.signature)
            if not result.success:
                logger.warning(f"Session not restored: {result.reason}")
        else:
            await client.start()
        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        pass
    finally:
        if diag is not None:
            await diag.stop()
        client.close()


def main_sync() -> None:
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run(parse_args()))


if __name__ == "__main__":
    main_sync()
