"""
Tests for shieldsync_core.crypto: sealing of persisted wallet secrets.
"""

from __future__ import annotations

import pytest

from shieldsync_core.crypto import (
    PBKDF2_ITERATIONS,
    SCHEME_AES_GCM,
    SCHEME_PLAIN,
    derive_key,
    is_sealed,
    seal_secret,
    unseal_secret,
)

SECRET = "9f" * 32
SIG = "0x" + "ab" * 65


class TestSeal:
    def test_plain_without_signature(self):
        blob = seal_secret(SECRET)
        assert blob == {"scheme": SCHEME_PLAIN, "value": SECRET}
        assert not is_sealed(blob)
        assert unseal_secret(blob) == SECRET

    def test_sealed_roundtrip(self):
        blob = seal_secret(SECRET, SIG)
        assert blob["scheme"] == SCHEME_AES_GCM
        assert blob["kdf_iterations"] == PBKDF2_ITERATIONS
        assert SECRET not in str(blob)
        assert is_sealed(blob)
        assert unseal_secret(blob, SIG) == SECRET

    def test_fresh_salt_and_nonce(self):
        a, b = seal_secret(SECRET, SIG), seal_secret(SECRET, SIG)
        assert a["salt"] != b["salt"]
        assert a["nonce"] != b["nonce"]
        assert a["data"] != b["data"]

    def test_derive_key_deterministic(self):
        salt = b"\x00" * 16
        assert derive_key(SIG, salt, 1000) == derive_key(SIG, salt, 1000)
        assert derive_key(SIG, salt, 1000) != derive_key(SIG + "0", salt, 1000)
        assert len(derive_key(SIG, salt, 1000)) == 32


class TestUnsealErrors:
    def test_missing_signature(self):
        with pytest.raises(ValueError, match="signature required"):
            unseal_secret(seal_secret(SECRET, SIG))

    def test_wrong_signature(self):
        with pytest.raises(ValueError):
            unseal_secret(seal_secret(SECRET, SIG), "0xnotit")

    def test_tampered_ciphertext(self):
        blob = seal_secret(SECRET, SIG)
        data = bytearray(bytes.fromhex(blob["data"]))
        data[0] ^= 0xFF
        blob["data"] = data.hex()
        with pytest.raises(ValueError):
            unseal_secret(blob, SIG)

    @pytest.mark.parametrize("blob", [
        "not a dict",
        {"scheme": "rot13", "value": SECRET},
        {"scheme": SCHEME_PLAIN},
        {"scheme": SCHEME_AES_GCM, "salt": "00"},
    ])
    def test_malformed(self, blob):
        with pytest.raises(ValueError):
            unseal_secret(blob, SIG)
