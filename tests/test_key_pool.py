import pytest

from generation.errors import ConfigurationError, NoApiKeysError
from generation.key_pool import (
    GEMINI_KEY_PATTERN,
    MAX_CONSECUTIVE_ERRORS,
    MAX_KEYS,
    ApiKeyPool,
    KeyLease,
    parse_api_keys,
)


def test_round_robin_order():
    pool = ApiKeyPool(["k0", "k1", "k2"])
    assert [pool.next_key().index for _ in range(6)] == [0, 1, 2, 0, 1, 2]


def test_configure_trims_and_drops_blanks():
    pool = ApiKeyPool()
    assert pool.configure(["  a  ", "", "   ", "b"]) == 2
    assert [pool.next_key().key for _ in range(2)] == ["a", "b"]


def test_configure_with_nothing_usable_keeps_old_pool():
    pool = ApiKeyPool(["a"])
    with pytest.raises(ConfigurationError):
        pool.configure(["", "  "])
    assert pool.size == 1


def test_empty_pool_raises():
    with pytest.raises(NoApiKeysError):
        ApiKeyPool().next_key()


def _fail(pool, lease, times, message="HTTP 500"):
    for _ in range(times):
        pool.record_failure(lease, message)


def test_key_deactivated_after_consecutive_errors_and_skipped():
    pool = ApiKeyPool(["k0", "k1"])
    _fail(pool, pool.next_key(), MAX_CONSECUTIVE_ERRORS)
    assert pool.active_count == 1
    assert [pool.next_key().index for _ in range(3)] == [1, 1, 1]


def test_success_resets_error_count():
    pool = ApiKeyPool(["k0"])
    lease = pool.next_key()
    _fail(pool, lease, 2, "boom")
    pool.record_success(lease)
    pool.record_failure(lease, "boom")
    assert pool.active_count == 1
    assert pool.stats()[0]["error_count"] == 1


def test_all_inactive_triggers_reset():
    pool = ApiKeyPool(["k0", "k1"])
    for lease in (pool.next_key(), pool.next_key()):
        _fail(pool, lease, MAX_CONSECUTIVE_ERRORS, "HTTP 429")
    assert pool.active_count == 0

    lease = pool.next_key()
    assert lease.key in ("k0", "k1")
    assert pool.active_count == 2
    assert all(s["error_count"] == 0 for s in pool.stats())


def test_stats_never_expose_key():
    pool = ApiKeyPool(["super-secret-key"])
    pool.next_key()
    stats = pool.stats()
    assert stats[0]["usage_count"] == 1
    assert "super-secret-key" not in str(stats)


def test_out_of_range_health_updates_are_ignored():
    pool = ApiKeyPool(["k0"])
    generation = pool.next_key().generation
    pool.record_failure(KeyLease(key="k0", index=5, generation=generation), "nope")
    pool.record_success(KeyLease(key="k0", index=-1, generation=generation))
    assert pool.stats()[0]["error_count"] == 0


def test_updates_from_replaced_key_set_are_ignored():
    pool = ApiKeyPool(["old0", "old1"])
    stale = pool.next_key()
    pool.configure(["new0", "new1"])

    _fail(pool, stale, MAX_CONSECUTIVE_ERRORS, "HTTP 500 from old0")
    assert pool.active_count == 2
    assert all(s["error_count"] == 0 and s["last_error"] is None for s in pool.stats())

    fresh = pool.next_key()
    pool.record_failure(fresh, "HTTP 500")
    pool.record_success(stale)
    assert pool.stats()[0]["error_count"] == 1
    assert fresh.key == "new0"


def test_parse_keys_split_and_dedupe():
    text = "key-a, key-b\nkey-a,,, key-c   key-b"
    assert parse_api_keys(text) == ["key-a", "key-b", "key-c"]


def test_parse_keys_with_gemini_pattern():
    text = (
        "GEMINI_API_KEY=AIzaSyA1b2C3d4_e5-F6\n"
        "junk line\n"
        "other=AIzaSyZZZ999"
    )
    assert parse_api_keys(text, GEMINI_KEY_PATTERN) == ["AIzaSyA1b2C3d4_e5-F6", "AIzaSyZZZ999"]


def test_parse_keys_capped():
    text = " ".join(f"k{i}" for i in range(MAX_KEYS + 20))
    assert len(parse_api_keys(text)) == MAX_KEYS


def test_parse_keys_empty_text():
    assert parse_api_keys("") == []
    assert parse_api_keys(None) == []
