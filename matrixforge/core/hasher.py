"""Canonical hashing helpers for content addressing and report chaining.

Expected hashes arrive in several notations (release manifests mix them):

- ``sha256:<hex>`` or a bare 64-character hex digest
- SRI: ``sha256-<base64>``
- Nix base32: 52 characters from the Nix alphabet

``normalize_sha256`` turns any of them into a lowercase hex digest so that
comparisons and cache keys never depend on the notation used.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import re
from typing import Any

from matrixforge.core.errors import InvalidHashNotation

_NIX32_ALPHABET = "0123456789abcdfghijklmnpqrsvwxyz"
_HEX_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_SHA256_BYTES = 32


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(data: bytes) -> str:
    """Return the ``sha256:<hex>`` content address of raw bytes."""
    return f"sha256:{sha256_hex(data)}"


def object_address(obj: Any) -> str:
    """Content-address a JSON-serializable object."""
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


def nix32_decode(text: str) -> bytes:
    """Decode a Nix base32 string into raw bytes.

    Nix base32 uses its own alphabet (no ``e o t u``) and reads the string
    from the last character to the first, packing 5 bits at a time.
    """
    length = len(text)
    size = length * 5 // 8
    out = bytearray(size)
    for n in range(length):
        char = text[length - n - 1]
        digit = _NIX32_ALPHABET.find(char)
        if digit < 0:
            raise InvalidHashNotation(f"Invalid Nix base32 character {char!r} in {text!r}")
        bit = n * 5
        i, j = divmod(bit, 8)
        out[i] |= (digit << j) & 0xFF
        carry = digit >> (8 - j)
        if i < size - 1:
            out[i + 1] |= carry
        elif carry:
            raise InvalidHashNotation(f"Nix base32 string {text!r} overflows {size} bytes")
    return bytes(out)


def nix32_encode(data: bytes) -> str:
    """Encode raw bytes as Nix base32 (inverse of ``nix32_decode``)."""
    length = (len(data) * 8 - 1) // 5 + 1
    chars = []
    for n in range(length - 1, -1, -1):
        bit = n * 5
        i, j = divmod(bit, 8)
        c = data[i] >> j
        if i + 1 < len(data):
            c |= data[i + 1] << (8 - j)
        chars.append(_NIX32_ALPHABET[c & 0x1F])
    return "".join(chars)


def normalize_sha256(expected: str) -> str:
    """Normalize any supported SHA-256 notation into a lowercase hex digest."""
    value = expected.strip()
    if value.startswith("sha256:"):
        value = value.removeprefix("sha256:")
        if _HEX_RE.match(value):
            return value.lower()
        if len(value) == 52:
            return nix32_decode(value).hex()
        raise InvalidHashNotation(f"Unrecognized sha256 digest: {expected!r}")

    if value.startswith("sha256-"):
        try:
            raw = base64.b64decode(value.removeprefix("sha256-"), validate=True)
        except binascii.Error as exc:
            raise InvalidHashNotation(f"Invalid SRI hash {expected!r}: {exc}") from exc
        if len(raw) != _SHA256_BYTES:
            raise InvalidHashNotation(
                f"SRI hash {expected!r} decodes to {len(raw)} bytes, expected {_SHA256_BYTES}"
            )
        return raw.hex()

    if _HEX_RE.match(value):
        return value.lower()

    if len(value) == 52:
        return nix32_decode(value).hex()

    raise InvalidHashNotation(f"Unrecognized hash notation: {expected!r}")


def compute_record_hash(record_dict: dict[str, Any]) -> str:
    """SHA-256 of a report record (excluding the record_hash field itself).

    This is the seal that makes each sink line tamper-evident.
    """
    d = {k: v for k, v in record_dict.items() if k != "record_hash"}
    return sha256_hex(canonical_json_bytes(d))
