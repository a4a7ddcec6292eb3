import datetime as dt
import uuid

import pytest

from portalgate.id57 import ALPHABET, base57_encode, decode57, generate_id57

EPOCH = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)


def test_generate_id57_lexicographically_sorted() -> None:
    first = generate_id57(timestamp=EPOCH, random_source=lambda: uuid.UUID(int=0))
    second = generate_id57(timestamp=EPOCH, random_source=lambda: uuid.UUID(int=1))
    third = generate_id57(timestamp=EPOCH + dt.timedelta(microseconds=1), random_source=lambda: uuid.UUID(int=0))
    assert first < second < third
    assert len(first) == len(second) == len(third) == 33
    assert all(char in ALPHABET for char in first + second + third)


def test_base57_round_trip() -> None:
    for value in (0, 1, 57, 58, 2**32, 2**63 - 1):
        encoded = base57_encode(value)
        assert decode57(encoded) == value


def test_base57_rejects_negative_and_foreign_characters() -> None:
    with pytest.raises(ValueError):
        base57_encode(-5)
    with pytest.raises(ValueError):
        decode57("O0")


def test_generate_id57_embeds_timestamp_and_entropy() -> None:
    custom = uuid.UUID(int=987654321)
    token = generate_id57(timestamp=EPOCH, random_source=lambda: custom)
    assert decode57(token[:11]) == int(EPOCH.timestamp() * 1_000_000)
    assert decode57(token[11:]) == custom.int


def test_generated_ids_are_unique_within_one_instant() -> None:
    tokens = {generate_id57(timestamp=EPOCH) for _ in range(100)}
    assert len(tokens) == 100
