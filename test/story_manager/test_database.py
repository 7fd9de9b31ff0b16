"""
Test suite for StoryDatabase: initialization, transactions, and the story,
epic, project and planning-document operations built on it.
"""

import json
import sqlite3
from pathlib import Path

import pytest

from story_manager.database import StoryDatabase, StoreError, StoreBusyError, SCHEMA_VERSION, summarize
from story_manager.task_tree import TaskTreeManager


class TestStoryDatabaseInitialization:
    """Test database initialization and schema creation."""

    def test_database_initialization(self, temp_db):
        cursor = temp_db._connection.cursor()

        cursor.execute("PRAGMA journal_mode")
        journal_mode = cursor.fetchone()[0]
        assert journal_mode.upper() == 'WAL', f"Expected WAL mode, got {journal_mode}"

        cursor.execute("PRAGMA synchronous")
        assert cursor.fetchone()[0] == 1, "Expected synchronous=NORMAL (1)"

        cursor.execute("PRAGMA busy_timeout")
        assert cursor.fetchone()[0] == 5000

        cursor.execute("PRAGMA foreign_keys")
        assert cursor.fetchone()[0] == 1

    def test_schema_creation(self, temp_db):
        cursor = temp_db._connection.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'")
        tables = {row[0] for row in cursor.fetchall()}

        expected = {
            "projects", "epics", "stories", "tasks", "subtasks", "changelog", "story_files",
            "reservations", "planning_docs", "epic_versions", "story_versions", "planning_doc_versions",
        }
        assert expected <= tables, f"Missing tables: {expected - tables}"

        cursor.execute("PRAGMA user_version")
        assert cursor.fetchone()[0] == SCHEMA_VERSION

    def test_reopen_existing_database(self, db_path):
        with StoryDatabase(db_path) as db:
            db.register_project("P", "Project P")
        with StoryDatabase(db_path) as db:
            assert db.get_project_context("P")["success"]

    def test_directory_creation(self, tmp_path):
        nested = tmp_path / "a" / "b" / "story.db"
        with StoryDatabase(str(nested)):
            pass
        assert nested.exists()

    def test_foreign_schema_version_rejected(self, db_path):
        conn = sqlite3.connect(db_path)
        conn.execute("PRAGMA user_version=99")
        conn.close()

        with pytest.raises(StoreError, match="schema version 99"):
            StoryDatabase(db_path)

    def test_unopenable_path_raises_store_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")

        with pytest.raises(StoreError):
            StoryDatabase(str(blocker / "story.db"))

    def test_closed_database_raises_store_error(self, db_path):
        db = StoryDatabase(db_path)
        db.close()
        with pytest.raises(StoreError, match="closed"):
            db.register_project("P", "Project P")

    def test_initialize_fresh_drops_data(self, seeded_db):
        seeded_db.initialize_fresh()
        assert seeded_db.get_project_context("P")["error"] == "not_found"


class TestTransactions:

    def test_rollback_on_exception(self, temp_db):
        with pytest.raises(RuntimeError):
            with temp_db.transaction() as cursor:
                cursor.execute("""
                    INSERT INTO projects (id, name, config, created_at, updated_at)
                    VALUES ('X', 'x', '{}', 'now', 'now')
                """)
                raise RuntimeError("boom")

        assert temp_db.get_project_context("X")["error"] == "not_found"
        assert not temp_db._connection.in_transaction

    def test_nested_transaction_joins_outer(self, temp_db):
        with temp_db.transaction() as outer:
            with temp_db.transaction() as inner:
                inner.execute("""
                    INSERT INTO projects (id, name, config, created_at, updated_at)
                    VALUES ('X', 'x', '{}', 'now', 'now')
                """)
            assert temp_db._connection.in_transaction
        assert temp_db.get_project_context("X")["success"]

    def test_busy_store_raises_retryable_error(self, db_path):
        db = StoryDatabase(db_path, busy_timeout_ms=100)
        blocker = sqlite3.connect(db_path, isolation_level=None)
        try:
            blocker.execute("BEGIN IMMEDIATE")
            with pytest.raises(StoreBusyError) as excinfo:
                db.register_project("P", "Project P")
            assert excinfo.value.retryable is True
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()
            db.close()

        assert not StoreError("x").retryable


class TestProjects:

    def test_register_project_upsert(self, temp_db):
        first = temp_db.register_project("P", "Project P", "/tmp/p", {"lang": "py"})
        second = temp_db.register_project("P", "Renamed", "/tmp/q")

        assert first == {"success": True, "project_id": "P", "created": True}
        assert second["created"] is False

        context = temp_db.get_project_context("P")
        assert context["project"]["name"] == "Renamed"
        assert context["project"]["root_path"] == "/tmp/q"
        assert context["project"]["config"] == {}

    def test_project_context_groups_stories(self, seeded_db):
        seeded_db.create_story("P", 1, "1-2", "Second story")
        seeded_db.update_story_status("P:1-2", "in-progress")

        context = seeded_db.get_project_context("P")

        assert context["stats"]["stories"] == 2
        assert context["stats"]["tasks"] == 2
        assert context["stats"]["stories_by_status"]["draft"] == 1
        assert [s["id"] for s in context["stories_by_status"]["in-progress"]] == ["P:1-2"]

    def test_missing_project_context(self, temp_db):
        result = temp_db.get_project_context("nope")
        assert result["success"] is False
        assert result["error"] == "not_found"


class TestEpics:

    def test_upsert_epic_keeps_omitted_fields(self, temp_db):
        temp_db.register_project("P", "Project P")
        created = temp_db.upsert_epic("P", 2, title="Search", description="Full search")
        updated = temp_db.upsert_epic("P", 2, status="in-progress")

        assert created["created"] is True
        assert updated["created"] is False
        assert updated["updated_at"] > created["updated_at"]

        epic = temp_db.get_epic("P:epic-2")["epic"]
        assert epic["title"] == "Search"
        assert epic["description"] == "Full search"
        assert epic["status"] == "in-progress"

    def test_upsert_epic_default_title(self, temp_db):
        temp_db.register_project("P", "Project P")
        temp_db.upsert_epic("P", 3)
        assert temp_db.get_epic("P:epic-3")["epic"]["title"] == "Epic 3"

    def test_upsert_epic_unknown_project(self, temp_db):
        assert temp_db.upsert_epic("nope", 1)["error"] == "not_found"

    def test_delete_epic_with_stories(self, seeded_db):
        blocked = seeded_db.delete_epic("P", 1)
        assert blocked["error"] == "invalid_state"

        forced = seeded_db.delete_epic("P", 1, force=True)
        assert forced["deleted"] is True
        assert forced["detached_stories"] == 1
        assert seeded_db.get_story_context("P:1-1")["story"]["epic"] is None


class TestStories:

    def test_create_story_auto_creates_epic(self, seeded_db, story_id):
        epics = seeded_db.list_epics("P")
        assert epics[0]["id"] == "P:epic-1"
        assert epics[0]["title"] == "Epic 1"
        assert epics[0]["status"] == "planned"

        context = seeded_db.get_story_context(story_id)
        assert context["story"]["status"] == "draft"
        assert context["story"]["epic"]["number"] == 1
        assert context["acceptance_criteria"] == [{"criterion": "Tables exist", "met": False}]
        assert [t["idx"] for t in context["tasks"]] == [1, 2]
        assert [s["idx"] for s in context["tasks"][0]["subtasks"]] == [1, 2]
        assert context["progress"] == {"done": 0, "total": 2}
        assert context["next_task"] == {"idx": 1, "description": "Write schema"}
        assert context["updated_at"] == context["story"]["updated_at"]

    def test_create_duplicate_story_conflict(self, seeded_db):
        result = seeded_db.create_story("P", 1, "1-1", "Again")
        assert result["success"] is False
        assert result["error"] == "conflict"

    def test_create_story_unknown_project(self, temp_db):
        assert temp_db.create_story("nope", 1, "1-1", "Story")["error"] == "not_found"

    def test_missing_story_context(self, temp_db):
        assert temp_db.get_story_context("P:none")["error"] == "not_found"

    def test_story_summary(self, seeded_db, story_id):
        summary = seeded_db.get_story_summary(story_id)
        assert summary["key"] == "1-1"
        assert summary["current_task"]["idx"] == 1
        assert summary["progress"] == {"done": 0, "total": 2}

    def test_list_stories_filters(self, seeded_db):
        seeded_db.create_story("P", 2, "2-1", "Other epic")
        assert [s["key"] for s in seeded_db.list_stories("P", epic_number=2)] == ["2-1"]
        assert len(seeded_db.list_stories("P", status="draft")) == 2
        assert seeded_db.list_stories("P", status="done") == []

    def test_next_story_is_oldest_in_status(self, seeded_db, story_id):
        assert seeded_db.get_next_story("P") == {"success": True, "found": False, "story": None}

        seeded_db.create_story("P", 2, "2-1", "Later")
        seeded_db.update_story_status(story_id, "ready-for-dev")
        seeded_db.update_story_status("P:2-1", "ready-for-dev")
        TaskTreeManager(seeded_db).complete_task(story_id, 2)

        next_story = seeded_db.get_next_story("P")["story"]
        assert next_story["id"] == story_id
        assert next_story["epic"] == {"number": 1, "title": "Epic 1"}
        assert next_story["pending_tasks_count"] == 1

        assert seeded_db.get_next_story("P", status="draft")["found"] is False
        assert seeded_db.get_next_story("other")["found"] is False

    def test_guarded_update_then_stale_token_conflicts(self, seeded_db, story_id):
        t0 = seeded_db.get_story_context(story_id)["updated_at"]

        first = seeded_db.update_story(story_id, title="Renamed", expected_updated_at=t0)
        assert first["success"] is True
        t1 = first["updated_at"]
        assert t1 != t0

        second = seeded_db.update_story(story_id, title="Clobbered", expected_updated_at=t0)
        assert second["success"] is False
        assert second["error"] == "conflict"
        assert second["conflict"] is True
        assert second["current_updated_at"] == t1

        context = seeded_db.get_story_context(story_id)
        assert context["story"]["title"] == "Renamed"
        assert context["updated_at"] == t1

    def test_unguarded_update_last_writer_wins(self, seeded_db, story_id):
        seeded_db.update_story(story_id, title="A")
        seeded_db.update_story(story_id, title="B")
        assert seeded_db.get_story_context(story_id)["story"]["title"] == "B"

    def test_update_story_moves_epic(self, seeded_db, story_id):
        seeded_db.upsert_epic("P", 2, title="Second")
        result = seeded_db.update_story(story_id, epic_number=2)
        assert result["success"]
        assert seeded_db.get_story_context(story_id)["story"]["epic"]["number"] == 2

    def test_update_story_unknown_epic(self, seeded_db, story_id):
        before = seeded_db.get_story_context(story_id)["updated_at"]
        result = seeded_db.update_story(story_id, epic_number=9)
        assert result["error"] == "not_found"
        assert seeded_db.get_story_context(story_id)["updated_at"] == before

    def test_update_story_invalid_status(self, seeded_db, story_id):
        with pytest.raises(ValueError):
            seeded_db.update_story(story_id, status="finished")

    def test_update_story_status_reports_previous(self, seeded_db, story_id):
        result = seeded_db.update_story_status(story_id, "review")
        assert result["previous_status"] == "draft"
        assert result["status"] == "review"

    def test_update_acceptance_criteria_guarded(self, seeded_db, story_id):
        t0 = seeded_db.get_story_context(story_id)["updated_at"]
        result = seeded_db.update_acceptance_criteria(
            story_id, [{"criterion": "Tables exist", "met": True}, {"criterion": "Indexed"}], t0,
        )
        assert result["criteria_count"] == 2

        stale = seeded_db.update_acceptance_criteria(story_id, [], t0)
        assert stale["error"] == "conflict"
        assert len(seeded_db.get_story_context(story_id)["acceptance_criteria"]) == 2

    def test_add_dev_note_sections(self, seeded_db, story_id):
        seeded_db.add_dev_note(story_id, "working", section="implementation")
        seeded_db.add_dev_note(story_id, "plain note")

        notes = seeded_db.get_story_context(story_id)["dev_notes"]
        assert notes == "\n\n### implementation\nworking\n\n\nplain note\n"

    def test_add_dev_note_missing_story(self, temp_db):
        assert temp_db.add_dev_note("P:none", "note")["error"] == "not_found"

    def test_changelog_does_not_move_token(self, seeded_db, story_id):
        before = seeded_db.get_story_context(story_id)["updated_at"]
        seeded_db.add_changelog_entry(story_id, "first")
        seeded_db.add_changelog_entry(story_id, "second")

        assert [e["entry"] for e in seeded_db.get_changelog(story_id)] == ["first", "second"]
        assert seeded_db.get_story_context(story_id)["updated_at"] == before
        assert seeded_db.add_changelog_entry("P:none", "x")["error"] == "not_found"

    def test_register_files(self, seeded_db, story_id):
        result = seeded_db.register_files(story_id, [{"path": "src/db.py", "change_type": "added"}])
        assert result["total_files"] == 1
        assert seeded_db.get_story_context(story_id)["files_changed"] == [
            {"path": "src/db.py", "change_type": "added"}
        ]

    def test_delete_story_with_open_tasks(self, seeded_db, story_id):
        result = seeded_db.delete_story(story_id)
        assert result["error"] == "invalid_state"
        assert result["open_tasks"] == 2
        assert seeded_db.get_story_context(story_id)["success"]

    def test_forced_delete_cascades(self, seeded_db, story_id):
        seeded_db.add_changelog_entry(story_id, "entry")
        assert seeded_db.delete_story(story_id, force=True)["success"]

        cursor = seeded_db._connection.cursor()
        for table in ("tasks", "changelog", "reservations", "story_versions"):
            cursor.execute(f"SELECT COUNT(*) FROM {table} WHERE story_id = ?", (story_id,))
            assert cursor.fetchone()[0] == 0, f"{table} rows survived story delete"
        cursor.execute("SELECT COUNT(*) FROM subtasks")
        assert cursor.fetchone()[0] == 0

    def test_delete_missing_story(self, temp_db):
        assert temp_db.delete_story("P:none")["error"] == "not_found"


class TestPlanningDocs:

    def test_missing_doc_reads_empty(self, temp_db):
        doc = temp_db.get_planning_doc("P", "prd")
        assert doc["success"] is True
        assert doc["content"] == ""
        assert doc["updated_at"] is None

    def test_write_and_read_doc(self, temp_db):
        written = temp_db.update_planning_doc("P", "prd", "# PRD\n\nGoals", generate_summary=True)
        doc = temp_db.get_planning_doc("P", "prd")

        assert doc["content"] == "# PRD\n\nGoals"
        assert doc["updated_at"] == written["updated_at"]
        assert temp_db.get_planning_doc("P", "prd", format="summary")["content"] == "# PRD Goals"

    def test_summary_kept_without_regeneration(self, temp_db):
        temp_db.update_planning_doc("P", "prd", "original text", generate_summary=True)
        temp_db.update_planning_doc("P", "prd", "new text")
        assert temp_db.get_planning_doc("P", "prd", format="summary")["content"] == "original text"

    def test_guarded_doc_update(self, temp_db):
        t0 = temp_db.update_planning_doc("P", "arch", "v0")["updated_at"]
        t1 = temp_db.update_planning_doc("P", "arch", "v1", expected_updated_at=t0)["updated_at"]

        stale = temp_db.update_planning_doc("P", "arch", "v2", expected_updated_at=t0)
        assert stale["error"] == "conflict"
        assert stale["current_updated_at"] == t1
        assert temp_db.get_planning_doc("P", "arch")["content"] == "v1"

    def test_precondition_on_missing_doc(self, temp_db):
        result = temp_db.update_planning_doc("P", "arch", "v0", expected_updated_at="2020-01-01T00:00:00.000000Z")
        assert result["error"] == "not_found"


class TestSummarize:

    def test_collapses_whitespace(self):
        assert summarize("a \n\n  b\tc") == "a b c"

    def test_truncates_with_ellipsis(self):
        text = "x" * 900
        summary = summarize(text)
        assert len(summary) == 803
        assert summary.endswith("...")

    def test_empty(self):
        assert summarize(None) == ""
        assert summarize("") == ""
