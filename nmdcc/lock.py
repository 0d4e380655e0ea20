from __future__ import annotations

from .constants import KEY_ESCAPED_BYTES


def nibble_swap(b: int) -> int:
    return ((b << 4) & 0xF0) | ((b >> 4) & 0x0F)


def render_key_byte(b: int) -> str:
    if b in KEY_ESCAPED_BYTES:
        return f"/%DCN{b:03d}%/"
    return chr(b)


def lock_challenge(rem: str) -> str:
    """Return the challenge part of a ``$Lock`` payload (drops `` Pk=...``)."""
    challenge, _, _ = rem.partition(" Pk=")
    return challenge


def derive_key(lock: str) -> str:
    """Compute the ``$Key`` response for a hub or peer ``$Lock`` challenge."""
    codes = [ord(ch) & 0xFF for ch in lock]
    n = len(codes)
    if n < 2:
        raise ValueError(f"lock too short ({n} chars)")

    key = [nibble_swap(codes[0] ^ codes[n - 1] ^ codes[n - 2] ^ 5)]
    for i in range(1, n):
        key.append(nibble_swap(codes[i] ^ codes[i - 1]))
    return "".join(render_key_byte(b) for b in key)
