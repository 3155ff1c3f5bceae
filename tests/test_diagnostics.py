"""
Tests for shieldsync_core.diagnostics: read-only HTTP endpoints.
"""

from __future__ import annotations

import pytest
from aiohttp.test_utils import TestClient, TestServer

from shieldsync_core.diagnostics import DiagnosticsServer
from shieldsync_core.models import Credentials

KEY = "ef" * 32
OWNER = "0x00000000000000000000000000000000000000d1"
MNEMONIC = " ".join(["zoo"] * 11 + ["wrong"])


async def _make_test_client(wallet_client):
    """Create an aiohttp TestClient from a DiagnosticsServer."""
    diag = DiagnosticsServer(wallet_client, host="127.0.0.1", port=0)
    return TestClient(TestServer(diag.build_app()))


async def _connected(client, engine):
    result = await client.connect(Credentials(owner=OWNER, encryption_key=KEY, mnemonic=MNEMONIC))
    wallet_id = result.session.wallet_id
    engine.emit_balance({"railgunWalletID": wallet_id, "balanceBucket": "ShieldPending",
                         "erc20Amounts": [{"tokenAddress": "0xAAA", "amount": "42"}]})
    engine.emit_balance({"railgunWalletID": wallet_id, "balanceBucket": "Spendable",
                         "erc20Amounts": [{"tokenAddress": "0xAAA", "amount": "42"}]})
    return wallet_id


class TestHealth:
    @pytest.mark.asyncio
    async def test_unhealthy_before_bootstrap(self, client):
        http = await _make_test_client(client)
        async with http:
            resp = await http.get("/health")
            assert resp.status == 503
            body = await resp.json()
            assert body["checks"]["engine"] == "down"

    @pytest.mark.asyncio
    async def test_healthy_after_connect(self, client, engine):
        await _connected(client, engine)
        http = await _make_test_client(client)
        async with http:
            resp = await http.get("/health")
            assert resp.status == 200
            assert (await resp.json())["connected"] is True


class TestBalances:
    @pytest.mark.asyncio
    async def test_all_balances(self, client, engine):
        wallet_id = await _connected(client, engine)
        http = await _make_test_client(client)
        async with http:
            body = await (await http.get("/balances")).json()
            assert body["balances"][wallet_id]["Spendable"] == {"addr:0xaaa": "42"}
            assert body["stats"]["applied_events"] == 2

    @pytest.mark.asyncio
    async def test_wallet_bucket_and_token(self, client, engine):
        wallet_id = await _connected(client, engine)
        http = await _make_test_client(client)
        async with http:
            body = await (await http.get(f"/balances/{wallet_id}?bucket=ShieldPending")).json()
            assert list(body["buckets"]) == ["ShieldPending"]

            body = await (await http.get(f"/balances/{wallet_id}?token=0xAAA")).json()
            assert body["bucket"] == "Spendable"
            assert body["amount"] == "42"

    @pytest.mark.asyncio
    async def test_unknown_wallet_404(self, client):
        http = await _make_test_client(client)
        async with http:
            resp = await http.get("/balances/nope")
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_bad_bucket_400(self, client, engine):
        wallet_id = await _connected(client, engine)
        http = await _make_test_client(client)
        async with http:
            resp = await http.get(f"/balances/{wallet_id}?bucket=Frozen")
            assert resp.status == 400


class TestStatusScanTransitions:
    @pytest.mark.asyncio
    async def test_status(self, client, engine):
        await _connected(client, engine)
        http = await _make_test_client(client)
        async with http:
            body = await (await http.get("/status")).json()
            assert body["connected"] is True
            assert body["applied_patches"] == ["Ethereum_Sepolia"]

    @pytest.mark.asyncio
    async def test_scan(self, client, engine):
        await client.start()
        engine.emit_scan("UTXO", {"progress": 0.5})
        http = await _make_test_client(client)
        async with http:
            body = await (await http.get("/scan")).json()
            assert body["scans"]["UTXO"]["phase"] == "InProgress"
            assert body["armed"] == ["UTXO"]

    @pytest.mark.asyncio
    async def test_transitions(self, client, engine):
        await _connected(client, engine)
        http = await _make_test_client(client)
        async with http:
            body = await (await http.get("/transitions")).json()
            assert body["count"] == 1
            assert body["transitions"][0]["token_address"] == "0xaaa"

            resp = await http.get("/transitions?limit=abc")
            assert resp.status == 400

            body = await (await http.get("/transitions?limit=0")).json()
            assert body["transitions"] == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self, client, unused_tcp_port):
        diag = DiagnosticsServer(client, host="127.0.0.1", port=unused_tcp_port)
        await diag.start()
        await diag.stop()
        await diag.stop()
