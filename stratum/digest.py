"""Digests and the Nix base32 alphabet.

Store path hashes are SHA-256 digests XOR-folded down to 160 bits and
printed in Nix's own base32. That base32 differs from RFC 4648 twice
over: the alphabet drops e, o, t and u, and 5-bit groups are taken from
the last position down to the first, so the output reads reversed.

    20 bytes (store path hash) -> 32 chars
    32 bytes (SHA-256 digest)  -> 52 chars

See: nix/src/libutil/hash.cc (compressHash, printHash32)
"""

import hashlib

CHARS = "0123456789abcdfghijklmnpqrsvwxyz"
_DIGITS = {c: i for i, c in enumerate(CHARS)}


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def compress_hash(digest: bytes, size: int) -> bytes:
    """XOR-fold ``digest`` into ``size`` bytes.

    Byte i of the input lands in slot ``i % size``, so every input byte
    contributes (unlike truncation).
    """
    folded = bytearray(size)
    for i, b in enumerate(digest):
        folded[i % size] ^= b
    return bytes(folded)


def b32encode(data: bytes) -> str:
    """Encode bytes as Nix base32 (``ceil(len * 8 / 5)`` characters)."""
    n = len(data)
    width = (n * 8 + 4) // 5
    chars = []
    for pos in range(width - 1, -1, -1):
        bit = pos * 5
        byte, shift = divmod(bit, 8)
        c = data[byte] >> shift
        if byte + 1 < n:
            c |= data[byte + 1] << (8 - shift)
        chars.append(CHARS[c & 0x1F])
    return "".join(chars)


def b32decode(text: str) -> bytes:
    """Inverse of :func:`b32encode`."""
    size = len(text) * 5 // 8
    out = bytearray(size)
    for pos, ch in enumerate(reversed(text)):
        digit = _DIGITS.get(ch)
        if digit is None:
            raise ValueError(f"invalid nix base32 character: {ch!r}")
        byte, shift = divmod(pos * 5, 8)
        out[byte] |= (digit << shift) & 0xFF
        carry = digit >> (8 - shift)
        if carry and byte + 1 < size:
            out[byte + 1] |= carry
    return bytes(out)


def is_b32(text: str) -> bool:
    return all(ch in _DIGITS for ch in text)
