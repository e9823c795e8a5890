"""Unit tests for canonical ID helpers."""

from __future__ import annotations

import random

import pytest

from execguard.domain import ids


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_generate_ulid_no_collision_10000() -> None:
    generated = {ids.generate_ulid() for _ in range(10_000)}
    assert len(generated) == 10_000


def test_ulid_charset_length_and_reject_invalid_chars() -> None:
    ulid_value = ids.generate_ulid(timestamp_ms=123_456, randbytes=_ff_bytes)
    assert len(ulid_value) == ids.ULID_LENGTH
    assert ulid_value == ulid_value.upper()
    assert all(char in ids.CROCKFORD_BASE32_ALPHABET for char in ulid_value)
    ids.validate_ulid(ulid_value.lower())

    with pytest.raises(ValueError, match="ulid length must be"):
        ids.validate_ulid("0" * 25)

    for invalid in ["I" + "0" * 25, "O" + "0" * 25, "u" + "0" * 25, "*" + "0" * 25]:
        with pytest.raises(ValueError, match="invalid ULID character"):
            ids.validate_ulid(invalid)


def test_ulid_overflow_and_timestamp_boundaries() -> None:
    ids.validate_ulid("7" + "Z" * 25)

    with pytest.raises(ValueError, match="overflow"):
        ids.validate_ulid("8" + "0" * 25)

    assert ids.parse_ulid_timestamp_ms("0" * 26) == 0
    top = ids.generate_ulid(timestamp_ms=ids.ULID_MAX_TIMESTAMP_MS, randbytes=_zero_bytes)
    assert ids.parse_ulid_timestamp_ms(top) == ids.ULID_MAX_TIMESTAMP_MS

    with pytest.raises(ValueError, match="out of range"):
        ids.generate_ulid(timestamp_ms=-1)


def test_prefixed_ids_and_short_id() -> None:
    error_id = ids.generate_error_record_id(timestamp_ms=1)
    execution_id = ids.generate_execution_id(timestamp_ms=1)

    ids.validate_prefixed_id(error_id, ids.ERROR_RECORD_ID_PREFIX)
    ids.validate_prefixed_id(execution_id, ids.EXECUTION_ID_PREFIX)
    with pytest.raises(ValueError, match="expected prefix"):
        ids.validate_prefixed_id(error_id, ids.EXECUTION_ID_PREFIX)
    with pytest.raises(ValueError, match="must not contain"):
        ids.generate_prefixed_id("a-b")

    assert ids.short_id(error_id) == error_id[-8:]
    with pytest.raises(ValueError, match="at least 8"):
        ids.short_id("short")


def test_sandbox_ids_are_lowercase_container_names() -> None:
    sandbox_id = ids.generate_sandbox_id()

    assert sandbox_id.startswith("sbx-")
    assert sandbox_id == sandbox_id.lower()
    ids.validate_prefixed_id(sandbox_id, ids.SANDBOX_ID_PREFIX)


def test_holder_ids_are_opaque_hex() -> None:
    holders = {ids.generate_holder_id() for _ in range(1_000)}

    assert len(holders) == 1_000
    for holder in holders:
        ids.validate_holder_id(holder)
    assert ids.generate_holder_id(randbytes=_ff_bytes) == "ff" * ids.HOLDER_ID_BYTES

    with pytest.raises(ValueError, match="lowercase hex"):
        ids.validate_holder_id("AB" * ids.HOLDER_ID_BYTES)
    with pytest.raises(ValueError, match="exactly"):
        ids.generate_holder_id(randbytes=lambda _size: b"\x00")


def test_random_seed_does_not_change_ulid_engine() -> None:
    random.seed(123)

    def _boom(_: int) -> int:
        raise AssertionError("global random.getrandbits must not be used")

    previous = random.getrandbits
    random.getrandbits = _boom
    try:
        ulid_value = ids.generate_ulid(timestamp_ms=42)
    finally:
        random.getrandbits = previous

    ids.validate_ulid(ulid_value)
    assert ids.generate_ulid(timestamp_ms=42, randbytes=_zero_bytes) == ids.generate_ulid(
        timestamp_ms=42, randbytes=_zero_bytes
    )
