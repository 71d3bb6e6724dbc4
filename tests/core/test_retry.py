import pytest

from clipstream_core.pipeline.lease import LeaseManager
from clipstream_core.pipeline.retry import RetryPolicy


def test_backoff_doubles_until_cap():
    policy = RetryPolicy(max_attempts=5, base_delay_seconds=2.0, max_delay_seconds=30.0)
    assert policy.delay_for(0) == 2.0
    assert policy.delay_for(1) == 4.0
    assert policy.delay_for(2) == 8.0
    assert policy.delay_for(4) == 30.0
    assert policy.delay_for(500) == 30.0


def test_backoff_rejects_negative_attempts():
    policy = RetryPolicy(max_attempts=5, base_delay_seconds=2.0, max_delay_seconds=30.0)
    with pytest.raises(ValueError):
        policy.delay_for(-1)


def test_should_retry_until_max_attempts():
    policy = RetryPolicy(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=10.0)
    assert policy.should_retry(1)
    assert policy.should_retry(2)
    assert not policy.should_retry(3)


def test_lease_is_exclusive_until_expiry(clock):
    leases = LeaseManager(ttl_seconds=10.0, now_fn=clock)
    first = leases.acquire("video-1", "worker-a")
    assert first is not None
    assert leases.acquire("video-1", "worker-b") is None
    assert leases.is_held("video-1")
    assert leases.active_count() == 1

    clock.advance(11.0)
    assert not leases.is_held("video-1")
    second = leases.acquire("video-1", "worker-b")
    assert second is not None
    assert second.holder == "worker-b"
    # The expired holder can no longer release the new lease.
    assert not leases.release(first)
    assert leases.release(second)
    assert not leases.is_held("video-1")


def test_release_all_drops_every_lease(clock):
    leases = LeaseManager(ttl_seconds=10.0, now_fn=clock)
    leases.acquire("video-1", "worker-a")
    leases.acquire("video-2", "worker-a")
    assert leases.release_all() == 2
    assert leases.active_count() == 0
