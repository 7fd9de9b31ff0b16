"""
Tests for LeaseManager: claim, renew, release, expiry and racing claimants.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from story_manager.database import StoryDatabase
from story_manager.leases import LeaseManager


@pytest.fixture
def leases(seeded_db):
    return LeaseManager(seeded_db)


class TestReserve:

    def test_reserve_free_task(self, leases, story_id):
        result = leases.reserve(story_id, 1, "agent-a", ttl_seconds=60)
        assert result["success"] is True
        assert result["agent"] == "agent-a"
        assert result["task_idx"] == 1

        lease = leases.get(story_id, 1)
        assert lease["agent"] == "agent-a"
        assert lease["project_id"] == "P"
        assert lease["expires_at"] == result["expires_at"]

    def test_default_ttl_from_database(self, db_path):
        with StoryDatabase(db_path, default_lease_seconds=5) as db:
            db.register_project("P", "Project P")
            db.create_story("P", 1, "1-1", "Story", tasks=[{"description": "a"}])
            result = LeaseManager(db).reserve("P:1-1", 1, "agent-a")
            lease = LeaseManager(db).get("P:1-1", 1)
        assert lease["expires_at"] == result["expires_at"]

    @pytest.mark.parametrize("ttl", [0, -5])
    def test_non_positive_ttl_rejected(self, leases, story_id, ttl):
        with pytest.raises(ValueError):
            leases.reserve(story_id, 1, "agent-a", ttl_seconds=ttl)
        assert leases.get(story_id, 1) is None

    def test_other_agent_conflicts(self, leases, story_id):
        first = leases.reserve(story_id, 1, "agent-a")
        second = leases.reserve(story_id, 1, "agent-b")

        assert second["success"] is False
        assert second["error"] == "conflict"
        assert second["reserved_by"] == "agent-a"
        assert second["expires_at"] == first["expires_at"]
        assert leases.get(story_id, 1)["agent"] == "agent-a"

    def test_holder_renews(self, leases, story_id):
        first = leases.reserve(story_id, 1, "agent-a", ttl_seconds=60)
        renewed = leases.reserve(story_id, 1, "agent-a", ttl_seconds=3600)
        assert renewed["success"] is True
        assert renewed["expires_at"] > first["expires_at"]
        assert len(leases.list(story_id=story_id)) == 1

    def test_missing_story_or_task(self, leases, story_id):
        assert leases.reserve("P:none", 1, "agent-a")["error"] == "not_found"
        assert leases.reserve(story_id, 9, "agent-a")["error"] == "not_found"

    def test_takeover_after_expiry(self, leases, story_id):
        leases.reserve(story_id, 1, "agent-a", ttl_seconds=1)
        time.sleep(1.1)

        assert leases.get(story_id, 1) is None
        result = leases.reserve(story_id, 1, "agent-b")
        assert result["success"] is True
        assert leases.get(story_id, 1)["agent"] == "agent-b"

        stale_release = leases.release(story_id, 1, "agent-a")
        assert stale_release["error"] == "not_owner"
        assert leases.get(story_id, 1)["agent"] == "agent-b"


class TestRelease:

    def test_release_by_holder(self, leases, story_id):
        leases.reserve(story_id, 1, "agent-a")
        result = leases.release(story_id, 1, "agent-a")
        assert result == {"success": True, "story_id": story_id, "task_idx": 1, "released": True}
        assert leases.get(story_id, 1) is None

    def test_release_unheld_is_noop(self, leases, story_id):
        result = leases.release(story_id, 2, "agent-a")
        assert result["success"] is True
        assert result["released"] is False

    def test_release_by_non_owner(self, leases, story_id):
        leases.reserve(story_id, 1, "agent-a")
        result = leases.release(story_id, 1, "agent-b")

        assert result["error"] == "not_owner"
        assert result["reserved_by"] == "agent-a"
        assert leases.get(story_id, 1)["agent"] == "agent-a"

    def test_release_of_expired_foreign_lease(self, leases, story_id):
        leases.reserve(story_id, 1, "agent-a", ttl_seconds=1)
        time.sleep(1.1)

        result = leases.release(story_id, 1, "agent-b")
        assert result["success"] is True
        assert result["released"] is False


class TestSweepAndList:

    def test_list_sweeps_expired(self, seeded_db, leases, story_id):
        leases.reserve(story_id, 1, "agent-a", ttl_seconds=1)
        leases.reserve(story_id, 2, "agent-b", ttl_seconds=600)
        time.sleep(1.1)

        live = leases.list(project_id="P")
        assert [(l["task_idx"], l["agent"]) for l in live] == [(2, "agent-b")]

        cursor = seeded_db._connection.cursor()
        cursor.execute("SELECT COUNT(*) FROM reservations")
        assert cursor.fetchone()[0] == 1, "expired row should be deleted by list"

    def test_list_newest_first(self, leases, story_id):
        leases.reserve(story_id, 1, "agent-a")
        leases.reserve(story_id, 2, "agent-b")
        assert [l["task_idx"] for l in leases.list(story_id=story_id)] == [2, 1]
        assert leases.list(project_id="other") == []

    def test_sweep_expired_counts(self, leases, story_id):
        leases.reserve(story_id, 1, "agent-a", ttl_seconds=1)
        time.sleep(1.1)
        assert leases.sweep_expired() == 1
        assert leases.sweep_expired() == 0


class TestConcurrentReservations:
    """Racing claimants, each with its own store connection."""

    def test_exactly_one_claimant_wins(self, seeded_db, db_path, story_id):
        agent_count = 8
        barrier = threading.Barrier(agent_count)

        def claim(agent_number):
            db = StoryDatabase(db_path, busy_timeout_ms=10000)
            try:
                barrier.wait()
                return LeaseManager(db).reserve(story_id, 1, f"agent-{agent_number}")
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=agent_count) as executor:
            results = list(executor.map(claim, range(agent_count)))

        winners = [r for r in results if r["success"]]
        losers = [r for r in results if not r["success"]]
        assert len(winners) == 1, f"Expected one winner, got {len(winners)}"
        assert all(r["error"] == "conflict" for r in losers)
        assert all(r["reserved_by"] == winners[0]["agent"] for r in losers)
        assert LeaseManager(seeded_db).get(story_id, 1)["agent"] == winners[0]["agent"]

    def test_distinct_tasks_do_not_contend(self, seeded_db, db_path, story_id):
        def claim(task_idx):
            db = StoryDatabase(db_path, busy_timeout_ms=10000)
            try:
                return LeaseManager(db).reserve(story_id, task_idx, f"agent-{task_idx}")
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=2) as executor:
            results = list(executor.map(claim, [1, 2]))

        assert all(r["success"] for r in results)
