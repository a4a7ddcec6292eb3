"""Lexicographically sortable ``id57`` identifiers for identities and tokens."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Callable

__all__ = ["ALPHABET", "base57_encode", "decode57", "generate_id57"]


# The alphabet drops look-alike characters and is ordered by code point so that
# padded identifiers sort by creation time.
ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BASE = len(ALPHABET)
_TIMESTAMP_WIDTH = 11
_RANDOM_WIDTH = 22


def base57_encode(value: int, *, pad_to: int | None = None) -> str:
    """Encode ``value`` as a base57 string using the ``id57`` alphabet."""

    if value < 0:
        raise ValueError("id57 only supports unsigned integers")
    digits: list[str] = []
    number = value
    while number:
        number, remainder = divmod(number, _BASE)
        digits.append(ALPHABET[remainder])
    encoded = "".join(reversed(digits)) or ALPHABET[0]
    if pad_to is not None and pad_to > len(encoded):
        encoded = ALPHABET[0] * (pad_to - len(encoded)) + encoded
    return encoded


def decode57(value: str) -> int:
    number = 0
    for char in value:
        digit = ALPHABET.find(char)
        if digit < 0:
            raise ValueError(f"Character {char!r} is not valid for id57")
        number = number * _BASE + digit
    return number


def generate_id57(
    *,
    timestamp: dt.datetime | None = None,
    random_source: Callable[[], uuid.UUID] | None = None,
) -> str:
    """Return a 33 character identifier: microsecond timestamp then 128 random bits."""

    moment = timestamp or dt.datetime.now(dt.timezone.utc)
    entropy = (random_source or uuid.uuid4)().int
    micros = int(moment.timestamp() * 1_000_000)
    return base57_encode(micros, pad_to=_TIMESTAMP_WIDTH) + base57_encode(entropy, pad_to=_RANDOM_WIDTH)
