"""Tests for mkdir-based enrollment and workflow leases."""

import threading
import time

import pytest

from crm_automation.core.errors import LeaseUnavailableError
from crm_automation.store.leases import LeaseManager, enrollment_lease_key


@pytest.fixture
def lease_dir(tmp_path):
    return tmp_path / "leases"


def _manager(lease_dir, holder, ttl_seconds=300):
    return LeaseManager(lease_dir, holder=holder, ttl_seconds=ttl_seconds)


class TestLeaseManager:
    def test_acquire_and_release(self, lease_dir):
        leases = _manager(lease_dir, "worker-1")
        lease = leases.try_acquire("enrollment-1")

        assert lease is not None
        assert lease.holder == "worker-1"
        assert leases.is_held("enrollment-1")

        leases.release(lease)
        assert not leases.is_held("enrollment-1")

    def test_second_holder_is_refused(self, lease_dir):
        first = _manager(lease_dir, "worker-1")
        second = _manager(lease_dir, "worker-2")

        assert first.try_acquire("enrollment-1") is not None
        assert second.try_acquire("enrollment-1") is None

    def test_expired_lease_is_reclaimed(self, lease_dir):
        crashed = _manager(lease_dir, "worker-1", ttl_seconds=0)
        survivor = _manager(lease_dir, "worker-2")

        crashed.try_acquire("enrollment-1")
        lease = survivor.try_acquire("enrollment-1")

        assert lease is not None
        assert lease.holder == "worker-2"

    def test_release_does_not_remove_a_reclaimed_lease(self, lease_dir):
        slow = _manager(lease_dir, "worker-1", ttl_seconds=0)
        fast = _manager(lease_dir, "worker-2")

        stale = slow.try_acquire("enrollment-1")
        fast.try_acquire("enrollment-1")
        slow.release(stale)

        assert fast.is_held("enrollment-1")

    def test_renew_fails_once_lease_is_lost(self, lease_dir):
        slow = _manager(lease_dir, "worker-1", ttl_seconds=0)
        fast = _manager(lease_dir, "worker-2")

        stale = slow.try_acquire("enrollment-1")
        fast.try_acquire("enrollment-1")

        assert not slow.renew(stale)

    def test_renew_extends_past_the_original_ttl(self, lease_dir):
        holder = _manager(lease_dir, "worker-1", ttl_seconds=1)
        rival = _manager(lease_dir, "worker-2")

        lease = holder.try_acquire("enrollment-1")
        time.sleep(0.6)
        assert holder.renew(lease)
        time.sleep(0.6)

        assert rival.try_acquire("enrollment-1") is None

    def test_hold_raises_when_busy(self, lease_dir):
        _manager(lease_dir, "worker-1").try_acquire("workflow-wf")
        with pytest.raises(LeaseUnavailableError):
            with _manager(lease_dir, "worker-2").hold("workflow-wf"):
                pass

    def test_hold_releases_on_exit(self, lease_dir):
        leases = _manager(lease_dir, "worker-1")
        with leases.hold("workflow-wf"):
            assert leases.is_held("workflow-wf")
        assert not leases.is_held("workflow-wf")

    def test_keys_are_sanitized_for_the_filesystem(self, lease_dir):
        leases = _manager(lease_dir, "worker-1")
        lease = leases.try_acquire(enrollment_lease_key("../enr/1"))
        assert lease is not None
        assert all(p.parent == lease_dir for p in lease_dir.iterdir())

    def test_only_one_thread_wins(self, lease_dir):
        winners = []
        barrier = threading.Barrier(8)

        def contend(i):
            leases = _manager(lease_dir, f"worker-{i}")
            barrier.wait()
            if leases.try_acquire("enrollment-race") is not None:
                winners.append(i)

        threads = [threading.Thread(target=contend, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
