"""
Read-only diagnostics HTTP server.

Built on ``aiohttp``; exposes the client's non-authoritative state so an
operator can see what the cache and watchdog believe without attaching a
debugger.

Endpoints
---------
GET  /health                  Engine / provider / session summary
GET  /status                  Full connection state and scan states
GET  /balances                Whole cache as ``{wallet: {bucket: {key: amount}}}``
GET  /balances/{wallet_id}    One wallet (``?bucket=`` and ``?token=`` narrow it)
GET  /scan                    Watchdog state and soft-timeout count
GET  /transitions             Recent ShieldPending -> Spendable transitions

Usage:
    diag = DiagnosticsServer(client, host="127.0.0.1", port=8765)
    await diag.start()
    ...
    await diag.stop()
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiohttp import web

from shieldsync_core.models import BalanceBucket

if TYPE_CHECKING:
    from shieldsync_core.client import ShieldedWalletClient

logger = logging.getLogger("shieldsync_diagnostics")


class DiagnosticsServer:
    """Thin aiohttp wrapper around a :class:`ShieldedWalletClient`."""

    def __init__(
        self,
        client: ShieldedWalletClient,
        host: str = "127.0.0.1",
        port: int = 8765,
    ):
        self.client = client
        self.host = host
        self.port = port
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        app = web.Application()
        self._register_routes(app)
        return app

    async def start(self) -> None:
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"Diagnostics listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/status", self._status)
        app.router.add_get("/balances", self._balances)
        app.router.add_get("/balances/{wallet_id}", self._wallet_balances)
        app.router.add_get("/scan", self._scan)
        app.router.add_get("/transitions", self._transitions)

    async def _health(self, _request: web.Request) -> web.Response:
        ctx = self.client.context
        healthy = ctx.engine_started and ctx.provider_verified
        return web.json_response({
            "ok": healthy,
            "connected": ctx.session is not None,
            "checks": {
                "engine": "ok" if ctx.engine_started else "down",
                "provider": "ok" if ctx.provider_verified else "degraded",
            },
        }, status=200 if healthy else 503)

    async def _status(self, _request: web.Request) -> web.Response:
        return web.json_response(self.client.get_state())

    async def _balances(self, _request: web.Request) -> web.Response:
        return web.json_response({
            "balances": self.client.cache.dump(),
            "stats": self.client.cache.stats(),
        })

    async def _wallet_balances(self, request: web.Request) -> web.Response:
        wallet_id = request.match_info["wallet_id"]
        dump = self.client.cache.dump()
        if wallet_id not in dump:
            raise web.HTTPNotFound(text=f"No balances for wallet {wallet_id}")

        bucket_name = request.query.get("bucket")
        token = request.query.get("token")
        if bucket_name is not None and BalanceBucket.coerce(bucket_name) is None:
            raise web.HTTPBadRequest(text=f"Unknown bucket {bucket_name}")

        if token:
            bucket = BalanceBucket.coerce(bucket_name) or BalanceBucket.SPENDABLE
            return web.json_response({
                "wallet_id": wallet_id,
                "bucket": bucket.value,
                "token": token.lower(),
                "amount": self.client.cache.amount_of(bucket, token, wallet_id),
            })
        buckets = dump[wallet_id]
        if bucket_name is not None:
            bucket = BalanceBucket.coerce(bucket_name)
            buckets = {bucket.value: buckets.get(bucket.value, {})}
        return web.json_response({"wallet_id": wallet_id, "buckets": buckets})

    async def _scan(self, _request: web.Request) -> web.Response:
        return web.json_response(self.client.watchdog.status())

    async def _transitions(self, request: web.Request) -> web.Response:
        try:
            limit = int(request.query.get("limit", "50"))
        except ValueError:
            raise web.HTTPBadRequest(text="limit must be an integer")
        limit = max(0, min(limit, 256))
        items = self.client.diagnostics()["transitions"]
        return web.json_response({
            "count": len(items),
            "transitions": items[-limit:] if limit else [],
        })
