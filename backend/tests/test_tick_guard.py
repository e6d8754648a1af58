from unittest.mock import MagicMock

from leadflow.services.tick_guard import LocalTickGuard, RedisTickGuard


def test_local_guard_skips_overlapping_tick():
    guard = LocalTickGuard()

    with guard.hold("sequences") as outer:
        with guard.hold("sequences") as inner:
            assert outer is True
            assert inner is False
        with guard.hold("lyrics") as other:
            assert other is True

    with guard.hold("sequences") as again:
        assert again is True


def test_redis_guard_releases_only_what_it_took():
    lock = MagicMock()
    lock.acquire.return_value = True
    client = MagicMock()
    client.lock.return_value = lock
    guard = RedisTickGuard(client=client, ttl_seconds=30)

    with guard.hold("clip") as acquired:
        assert acquired is True

    client.lock.assert_called_once_with("leadflow:tick:clip", timeout=30)
    lock.acquire.assert_called_once_with(blocking=False)
    lock.release.assert_called_once()


def test_redis_guard_skips_when_lock_held():
    lock = MagicMock()
    lock.acquire.return_value = False
    client = MagicMock()
    client.lock.return_value = lock

    with RedisTickGuard(client=client, ttl_seconds=30).hold("clip") as acquired:
        assert acquired is False

    lock.release.assert_not_called()
