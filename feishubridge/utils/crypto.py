"""AES-256-CBC decryption of Feishu encrypted event callbacks.

Feishu has shipped more than one variant of its callback encryption: the AES
key is either the raw 32-byte Encrypt Key or ``sha256(encrypt_key)``, and the
IV is either the first 16 bytes of that key or prefixed to the ciphertext.
We try every variant in a fixed order and accept the first one whose
plaintext is a JSON object.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from feishubridge.errors import ConfigurationError, DecryptFailure

_MAX_REPORTED_ATTEMPTS = 4


@dataclass(frozen=True, slots=True)
class _Candidate:
    name: str
    key: bytes
    iv: bytes
    data: bytes


def normalize_encrypt_key(raw: str) -> bytes:
    """Trim quotes/whitespace from a configured key and check it is 32 bytes."""
    key = (raw or "").strip()
    if len(key) >= 2 and key[0] == key[-1] and key[0] in "\"'":
        key = key[1:-1].strip()
    encoded = key.encode("utf-8")
    if len(encoded) != 32:
        raise ConfigurationError(f"FEISHU_ENCRYPT_KEY must be 32 bytes (got {len(encoded)})")
    return encoded


def _candidates(key: bytes, blob: bytes) -> list[_Candidate]:
    hashed = hashlib.sha256(key).digest()
    out: list[_Candidate] = []
    for label, k in (("keyRaw", key), ("keySha", hashed)):
        out.append(_Candidate(f"{label}+ivFromKey", k, k[:16], blob))
        if len(blob) > 16:
            out.append(_Candidate(f"{label}+ivPrefixed", k, blob[:16], blob[16:]))
    return out


def _attempt(c: _Candidate) -> tuple[dict[str, Any] | None, str]:
    """Run one candidate; returns ``(payload, "")`` or ``(None, reason)``."""
    try:
        decryptor = Cipher(algorithms.AES(c.key), modes.CBC(c.iv)).decryptor()
        padded = decryptor.update(c.data) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        payload = json.loads(plain.decode("utf-8"))
    except ValueError as exc:
        return None, f"{c.name}: {exc}"
    if not isinstance(payload, dict):
        return None, f"{c.name}: decrypted JSON is {type(payload).__name__}, not an object"
    return payload, ""


def decrypt_payload(encrypt: str, key: bytes) -> dict[str, Any]:
    """Decrypt an ``encrypt`` field into the plain event payload."""
    if not encrypt or not isinstance(encrypt, str):
        raise DecryptFailure("missing encrypt string")
    try:
        blob = base64.b64decode(encrypt)
    except (binascii.Error, ValueError) as exc:
        raise DecryptFailure(f"encrypt is not valid base64: {exc}") from exc
    if not blob:
        raise DecryptFailure("encrypt is not valid base64 or is empty")

    candidates = _candidates(key, blob)
    errors: list[str] = []
    for c in candidates:
        payload, reason = _attempt(c)
        if payload is not None:
            return payload
        errors.append(reason)

    raise DecryptFailure(
        f"bad decrypt (tried {len(candidates)} variants)",
        errors[:_MAX_REPORTED_ATTEMPTS],
    )


def decode_body(body: dict[str, Any], encrypt_key: bytes | None) -> dict[str, Any]:
    """Turn an inbound webhook body into a plain event payload.

    Challenge probes and plaintext events pass through unchanged; bodies
    carrying an ``encrypt`` string are decrypted.
    """
    encrypt = body.get("encrypt")
    if not isinstance(encrypt, str):
        return body
    if encrypt_key is None:
        raise ConfigurationError("received encrypted payload but FEISHU_ENCRYPT_KEY is not set")
    return decrypt_payload(encrypt, encrypt_key)
