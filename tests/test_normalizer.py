"""
Tests for shieldsync_core.normalizer: payload parsing and token keying.

Covers:
  - coerce_amount: ints, digit/hex/decimal strings, rejection of floats
  - parse_balance_event: bucket/wallet field aliases, list field priority
  - parse_scan_event: clamping, NaN, status aliases
  - TokenNormalizer: multi-key indexing, hashing, drops, collisions
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from shieldsync_core.models import BalanceBucket, ScanKind
from shieldsync_core.normalizer import (
    TOKEN_LIST_FIELDS,
    TokenNormalizer,
    coerce_amount,
    parse_balance_event,
    parse_scan_event,
)

ADDR = "0xAbCdEf0000000000000000000000000000000001"
ADDR_LC = ADDR.lower()


# ═══════════════════════════════════════════════════════════════════
#  Amounts
# ═══════════════════════════════════════════════════════════════════

class TestParseAmount:
    @pytest.mark.parametrize("raw, expected", [
        ("1000", "1000"),
        ("000123", "123"),
        (42, "42"),
        ("0x10", "16"),
        ("1000.0", "1000"),
        (Decimal("7"), "7"),
        ("123456789012345678901234567890", "123456789012345678901234567890"),
    ])
    def test_accepted(self, raw, expected):
        assert coerce_amount(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "  "])
    def test_missing_is_zero(self, raw):
        assert coerce_amount(raw) == "0"

    @pytest.mark.parametrize("raw", [
        -5, "-5", "1.5", 1.0, True, "abc", "0xZZ", "NaN", "Infinity", [1],
    ])
    def test_rejected(self, raw):
        assert coerce_amount(raw) is None

    def test_huge_hex_has_no_precision_loss(self):
        value = 2 ** 200 + 1
        assert coerce_amount(hex(value)) == str(value)


# ═══════════════════════════════════════════════════════════════════
#  Balance events
# ═══════════════════════════════════════════════════════════════════

class TestParseBalanceEvent:
    def test_non_mapping_is_none(self):
        assert parse_balance_event(["Spendable"]) is None
        assert parse_balance_event(None) is None

    def test_unknown_bucket_is_none(self):
        assert parse_balance_event({"balanceBucket": "Frozen", "tokens": []}) is None
        assert parse_balance_event({"tokens": []}) is None

    def test_bucket_by_value_and_name(self):
        assert parse_balance_event({"bucket": "ShieldPending"}).bucket is BalanceBucket.SHIELD_PENDING
        assert parse_balance_event({"bucket": "spendable"}).bucket is BalanceBucket.SPENDABLE

    def test_wallet_id_aliases(self):
        for field_name in ("railgunWalletID", "walletID", "walletId", "wallet_id"):
            ev = parse_balance_event({field_name: "w1", "balanceBucket": "Spendable"})
            assert ev.wallet_id == "w1"

    def test_missing_list_is_not_explicit(self):
        ev = parse_balance_event({"balanceBucket": "Spendable"})
        assert ev.records == ()
        assert ev.explicit_list is False
        assert ev.source_field is None

    def test_explicit_empty_list(self):
        ev = parse_balance_event({"balanceBucket": "Spendable", "erc20Amounts": []})
        assert ev.records == ()
        assert ev.explicit_list is True
        assert ev.source_field == "erc20Amounts"

    def test_first_present_list_wins_even_when_empty(self):
        ev = parse_balance_event({
            "balanceBucket": "Spendable",
            "erc20Amounts": [],
            "tokens": [{"address": ADDR, "amount": "1"}],
        })
        assert ev.records == ()
        assert ev.source_field == "erc20Amounts"

    def test_non_list_field_is_skipped(self):
        ev = parse_balance_event({
            "balanceBucket": "Spendable",
            "erc20Amounts": "oops",
            "tokenAmounts": [{"address": ADDR, "amount": "1"}],
        })
        assert ev.source_field == "tokenAmounts"
        assert len(ev.records) == 1


# ═══════════════════════════════════════════════════════════════════
#  Scan events
# ═══════════════════════════════════════════════════════════════════

class TestParseScanEvent:
    def test_basic(self):
        ev = parse_scan_event(ScanKind.UTXO, {"progress": 0.25, "scanStatus": "Incomplete"})
        assert ev.kind is ScanKind.UTXO
        assert ev.progress == 0.25
        assert ev.status == "Incomplete"

    def test_clamped(self):
        assert parse_scan_event(ScanKind.TXID, {"progress": 3}).progress == 1.0
        assert parse_scan_event(ScanKind.TXID, {"progress": -1}).progress == 0.0

    def test_bad_progress(self):
        assert parse_scan_event(ScanKind.UTXO, {"progress": "half"}) is None
        assert parse_scan_event(ScanKind.UTXO, {"progress": float("nan")}) is None
        assert parse_scan_event(ScanKind.UTXO, "0.5") is None

    def test_error_and_status_alias(self):
        ev = parse_scan_event(ScanKind.UTXO, {"progress": 0.5, "status": "x", "error": "rpc down"})
        assert ev.status == "x"
        assert ev.error == "rpc down"


# ═══════════════════════════════════════════════════════════════════
#  TokenNormalizer
# ═══════════════════════════════════════════════════════════════════

class TestTokenNormalizer:
    def test_address_only_record_keys(self):
        out = TokenNormalizer().normalize([{"tokenAddress": ADDR, "amount": "5"}])
        assert set(out) == {ADDR_LC, f"addr:{ADDR_LC}"}
        assert out[ADDR_LC] is out[f"addr:{ADDR_LC}"]
        assert out[ADDR_LC].amount == "5"

    def test_hash_and_address_resolve_to_same_object(self):
        out = TokenNormalizer().normalize([
            {"tokenAddress": ADDR, "tokenHash": "0xHASH1", "amount": "9"},
        ])
        assert out["0xhash1"] is out[ADDR_LC] is out[f"addr:{ADDR_LC}"]

    def test_nested_token_data_address(self):
        out = TokenNormalizer().normalize([
            {"tokenData": {"tokenAddress": ADDR, "tokenType": 0}, "amount": "3"},
        ])
        assert out[ADDR_LC].amount == "3"

    def test_hasher_used_when_no_direct_hash(self):
        seen = []

        def hasher(token_data):
            seen.append(token_data)
            return b"\x01\x02"

        out = TokenNormalizer(hasher).normalize([{"address": ADDR, "amount": "1"}])
        assert "0102" in out
        assert seen[0]["tokenAddress"] == ADDR_LC
        assert seen[0]["tokenType"] == 0

    def test_hasher_failure_is_absorbed(self):
        def hasher(_):
            raise ValueError("bad token data")

        norm = TokenNormalizer(hasher)
        out = norm.normalize([
            {"address": ADDR, "amount": "1"},
            {"address": "0xbeef", "amount": "2"},
        ])
        assert norm.hash_failures == 2
        assert out[ADDR_LC].amount == "1"
        assert out["0xbeef"].amount == "2"

    def test_unkeyable_records_are_counted(self):
        norm = TokenNormalizer()
        out = norm.normalize([{"amount": "1"}, "junk", None, {"address": ADDR, "amount": "4"}])
        assert norm.dropped_records == 3
        assert out[ADDR_LC].amount == "4"

    def test_unparseable_amounts_are_counted(self):
        norm = TokenNormalizer()
        out = norm.normalize([
            {"address": ADDR, "amount": 1.5},
            {"address": "0xbeef", "amount": "-3"},
            {"address": "0xcafe"},
        ])
        assert norm.rejected_amounts == 2
        assert norm.dropped_records == 0
        assert out[ADDR_LC].amount == "0"
        assert out["0xbeef"].amount == "0"
        assert out["0xcafe"].amount == "0"

    def test_duplicate_identity_later_wins(self):
        norm = TokenNormalizer()
        out = norm.normalize([
            {"address": ADDR, "amount": "1"},
            {"address": ADDR.upper().replace("0X", "0x"), "amount": "2"},
        ])
        assert norm.collisions == 1
        assert out[ADDR_LC].amount == "2"
        assert out[f"addr:{ADDR_LC}"] is out[ADDR_LC]

    def test_address_only_record_does_not_merge_into_hashed(self):
        out = TokenNormalizer().normalize([
            {"address": ADDR, "tokenHash": "h1", "amount": "1"},
            {"address": ADDR, "amount": "2"},
        ])
        assert out["h1"].amount == "1"
        assert out[ADDR_LC] is out["h1"]
        assert out[f"addr:{ADDR_LC}"].amount == "2"
        assert out[f"addr:{ADDR_LC}"] is not out["h1"]

    def test_field_name_invariance(self):
        records = [{"tokenAddress": ADDR, "amount": "77"}, {"tokenHash": "h9", "amount": "1"}]
        norm = TokenNormalizer()
        outputs = []
        for name in TOKEN_LIST_FIELDS:
            ev = parse_balance_event({"balanceBucket": "Spendable", name: list(records)})
            outputs.append(norm.normalize(ev.records))
        assert all(o == outputs[0] for o in outputs)
