"""
Sealing of persisted wallet secrets.

The wallet's secret material is stored locally so a session can be
restored without re-entering credentials.  When the owner supplies a
signature (over a fixed message, so it is deterministic per owner) the
secret is sealed with AES-256-GCM under a PBKDF2-HMAC-SHA256 key derived
from that signature.  Without a signature the ``plain`` scheme is used.

Sealed blob (JSON-compatible)::

    {"scheme": "aes-256-gcm", "salt": hex, "nonce": hex, "tag": hex,
     "data": hex, "kdf": "pbkdf2-hmac-sha256", "kdf_iterations": int}
"""

from __future__ import annotations

import hashlib
import os
from typing import Optional

from Crypto.Cipher import AES

SCHEME_PLAIN = "plain"
SCHEME_AES_GCM = "aes-256-gcm"

PBKDF2_ITERATIONS = 100_000


def derive_key(signature: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", signature.encode("utf-8"), salt, iterations)


def _aes_gcm_encrypt(key: bytes, data: bytes) -> tuple[bytes, bytes, bytes]:
    """Encrypt *data* with AES-256-GCM. Returns (ciphertext, nonce, tag)."""
    nonce = os.urandom(12)
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    ciphertext, tag = cipher.encrypt_and_digest(data)
    return ciphertext, nonce, tag


def _aes_gcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes) -> bytes:
    """Decrypt and verify AES-256-GCM ciphertext. Raises ValueError on tamper."""
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    return cipher.decrypt_and_verify(ciphertext, tag)


def seal_secret(secret: str, signature: Optional[str] = None) -> dict:
    """Seal *secret*; falls back to the plain scheme without a signature."""
    if not signature:
        return {"scheme": SCHEME_PLAIN, "value": secret}
    salt = os.urandom(16)
    key = derive_key(signature, salt)
    data, nonce, tag = _aes_gcm_encrypt(key, secret.encode("utf-8"))
    return {
        "scheme": SCHEME_AES_GCM,
        "salt": salt.hex(),
        "nonce": nonce.hex(),
        "tag": tag.hex(),
        "data": data.hex(),
        "kdf": "pbkdf2-hmac-sha256",
        "kdf_iterations": PBKDF2_ITERATIONS,
    }


def is_sealed(blob: dict) -> bool:
    return isinstance(blob, dict) and blob.get("scheme") == SCHEME_AES_GCM


def unseal_secret(blob: dict, signature: Optional[str] = None) -> str:
    """
    Recover the secret from *blob*.

    Raises ValueError when the blob is malformed, the signature is missing
    for a sealed blob, or authentication fails (wrong signature / tamper).
    """
    if not isinstance(blob, dict):
        raise ValueError("secret blob must be a mapping")
    scheme = blob.get("scheme")
    if scheme == SCHEME_PLAIN:
        value = blob.get("value")
        if not isinstance(value, str):
            raise ValueError("plain secret blob has no value")
        return value
    if scheme != SCHEME_AES_GCM:
        raise ValueError(f"unknown secret scheme {scheme!r}")
    if not signature:
        raise ValueError("signature required to unseal secret")
    try:
        salt = bytes.fromhex(blob["salt"])
        nonce = bytes.fromhex(blob["nonce"])
        tag = bytes.fromhex(blob["tag"])
        data = bytes.fromhex(blob["data"])
    except (KeyError, TypeError) as exc:
        raise ValueError(f"malformed sealed secret: {exc}") from exc
    key = derive_key(signature, salt, int(blob.get("kdf_iterations", PBKDF2_ITERATIONS)))
    return _aes_gcm_decrypt(key, nonce, data, tag).decode("utf-8")
