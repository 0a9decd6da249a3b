"""Tests for exclusive run leases."""

import json
import threading
import time

from repo_conductor.engine.leases import RunLeaseRegistry


class TestRunLeaseRegistry:
    def test_acquire_creates_lease_file(self, lease_registry):
        lease = lease_registry.acquire("run-1")

        assert lease is not None
        assert lease.path.exists()
        assert json.loads(lease.path.read_text())["owner"] == lease.owner
        assert lease_registry.is_held("run-1")

    def test_second_acquire_is_refused(self, lease_registry):
        first = lease_registry.acquire("run-1")

        assert first is not None
        assert lease_registry.acquire("run-1") is None

    def test_leases_are_per_run(self, lease_registry):
        assert lease_registry.acquire("run-1") is not None
        assert lease_registry.acquire("run-2") is not None

    def test_release_allows_reacquire(self, lease_registry):
        lease = lease_registry.acquire("run-1")
        lease_registry.release(lease)

        assert not lease_registry.is_held("run-1")
        assert lease_registry.acquire("run-1") is not None

    def test_release_twice_is_harmless(self, lease_registry):
        lease = lease_registry.acquire("run-1")
        lease_registry.release(lease)
        lease_registry.release(lease)

        assert not lease.path.exists()

    def test_release_does_not_remove_foreign_lease(self, lease_registry):
        lease = lease_registry.acquire("run-1")
        lease.path.write_text(json.dumps({"run_id": "run-1", "owner": "someone-else", "expires_at": time.time() + 60}))

        lease_registry.release(lease)

        assert lease.path.exists()

    def test_expired_lease_is_broken(self, temp_state_dir):
        registry = RunLeaseRegistry(temp_state_dir / "leases", ttl_seconds=60)
        stale = registry.lease_dir / "run-1.lease"
        stale.write_text(json.dumps({"run_id": "run-1", "owner": "crashed", "expires_at": time.time() - 1}))

        assert not registry.is_held("run-1")
        lease = registry.acquire("run-1")

        assert lease is not None
        assert lease.owner != "crashed"

    def test_lease_visible_across_registries(self, temp_state_dir):
        first = RunLeaseRegistry(temp_state_dir / "leases")
        second = RunLeaseRegistry(temp_state_dir / "leases")

        assert first.acquire("run-1") is not None
        assert second.acquire("run-1") is None

    def test_expired_lease_is_broken_by_one_registry(self, temp_state_dir):
        first = RunLeaseRegistry(temp_state_dir / "leases", ttl_seconds=60)
        second = RunLeaseRegistry(temp_state_dir / "leases", ttl_seconds=60)
        stale = first.lease_dir / "run-1.lease"

        for _ in range(25):
            stale.write_text(json.dumps({"run_id": "run-1", "owner": "crashed", "expires_at": time.time() - 1}))
            barrier = threading.Barrier(2)
            results = {}

            def contend(name, registry):
                barrier.wait()
                results[name] = registry.acquire("run-1")

            threads = [
                threading.Thread(target=contend, args=("first", first)),
                threading.Thread(target=contend, args=("second", second)),
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            winners = [lease for lease in results.values() if lease is not None]
            assert len(winners) == 1
            assert json.loads(stale.read_text())["owner"] == winners[0].owner
            stale.unlink()

    def test_late_release_by_expired_holder_keeps_new_lease(self, temp_state_dir):
        slow = RunLeaseRegistry(temp_state_dir / "leases", ttl_seconds=-1)
        other = RunLeaseRegistry(temp_state_dir / "leases", ttl_seconds=60)
        expired = slow.acquire("run-1")
        current = other.acquire("run-1")

        slow.release(expired)

        assert current is not None
        assert json.loads(current.path.read_text())["owner"] == current.owner
        assert other.is_held("run-1")
