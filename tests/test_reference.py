import threading

import pytest

from datarelay.utils.locks import KeyedLock
from datarelay.utils.reference import _base36, generate_reference, is_valid_reference


def test_generate_reference_shape():
    reference = generate_reference("MTN_DATA", now=1_700_000_000)
    prefix, stamp, suffix = reference.rsplit("_", 2)
    assert prefix == "MTN_DATA"
    assert stamp == _base36(1_700_000_000)
    assert len(suffix) == 8
    assert is_valid_reference(reference)


def test_generate_reference_fits_with_long_prefix():
    reference = generate_reference("A_VERY_LONG_NETWORK_PREFIX_DATA", now=1_700_000_000)
    assert len(reference) <= 25
    assert is_valid_reference(reference)


def test_generate_reference_regenerates_on_collision():
    seen = []

    def exists(candidate):
        seen.append(candidate)
        return len(seen) < 3

    reference = generate_reference("AT_DATA", exists=exists)
    assert reference == seen[-1]
    assert len(seen) == 3


def test_generate_reference_gives_up_after_attempts():
    with pytest.raises(RuntimeError):
        generate_reference("AT_DATA", exists=lambda candidate: True, attempts=3)


def test_is_valid_reference_bounds():
    assert not is_valid_reference("ABC")
    assert not is_valid_reference("X" * 26)
    assert not is_valid_reference("MTN DATA 123")
    assert is_valid_reference("MTN_DATA-123")


def test_keyed_lock_serializes_same_key_and_cleans_up():
    locks = KeyedLock()
    with locks.hold("MTN_DATA_a") as first:
        assert first is True
        with locks.hold("MTN_DATA_b") as other:
            assert other is True
        result = []

        def _try():
            with locks.hold("MTN_DATA_a", blocking=False) as acquired:
                result.append(acquired)

        worker = threading.Thread(target=_try)
        worker.start()
        worker.join()
        assert result == [False]
    assert len(locks) == 0
