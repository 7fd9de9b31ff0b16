"""
Story Database Layer

Provides SQLite-based storage with WAL mode for concurrent access by multiple
agents. Every multi-statement mutation runs inside ``transaction()``, which
takes the SQLite write lock up front (``BEGIN IMMEDIATE``) so compare-then-write
sequences stay atomic across processes.
"""

import json
import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterable, Iterator

from .concurrency import utc_timestamp, next_token, current_token, guarded_update
from .models import (
    ErrorKind, StoryStatus, STORY_STATUSES, AcceptanceCriterion, NewTask,
    error_result, success_result,
)
from . import task_tree

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SUMMARY_LENGTH = 800


class StoreError(RuntimeError):
    """The store cannot be opened, has an unexpected schema, or failed on I/O."""

    retryable = False


class StoreBusyError(StoreError):
    """The SQLite busy timeout elapsed while waiting for the write lock."""

    retryable = True


def summarize(text: Optional[str], limit: int = SUMMARY_LENGTH) -> str:
    """Collapse whitespace and cut to ``limit`` characters with a trailing ellipsis."""
    if not text:
        return ""
    collapsed = re.sub(r"\s+", " ", text).strip()
    return collapsed[:limit] + ("..." if len(collapsed) > limit else "")


def _translate_error(e: sqlite3.OperationalError) -> StoreError:
    message = str(e).lower()
    if "locked" in message or "busy" in message:
        return StoreBusyError(f"Database busy: {e}")
    return StoreError(f"Database error: {e}")


def _load_json(text: Optional[str], default):
    if not text:
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring malformed JSON column value: {text[:80]!r}")
        return default


class StoryDatabase:
    """
    SQLite store for projects, epics, stories, task trees, leases and versions.

    Features:
    - WAL mode for concurrent read/write access across processes
    - One shared connection per instance, serialised by a re-entrant lock
    - ``BEGIN IMMEDIATE`` transactions for race-free compare-and-swap
    - Expected business outcomes returned as result dictionaries
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000, default_lease_seconds: int = 1800):
        """
        Open (creating if needed) the database at ``db_path``.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_ms: How long a writer waits for the SQLite lock
            default_lease_seconds: Lease TTL used when callers give none

        Raises:
            StoreError: the file cannot be opened or carries a foreign schema
        """
        self.db_path = Path(db_path).expanduser()
        self.busy_timeout_ms = busy_timeout_ms
        self.default_lease_seconds = default_lease_seconds
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create database directory {self.db_path.parent}: {e}")

        self._initialize_database()

    def _initialize_database(self, drop_existing: bool = False) -> None:
        try:
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,  # explicit BEGIN/COMMIT only
                check_same_thread=False,
            )
            self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            cursor.execute("PRAGMA foreign_keys=ON")

            if drop_existing:
                self._drop_existing_tables()

            cursor.execute("PRAGMA user_version")
            version = cursor.fetchone()[0]
            if version not in (0, SCHEMA_VERSION):
                self.close()
                raise StoreError(
                    f"Database at {self.db_path} has schema version {version}, expected {SCHEMA_VERSION}"
                )
            self._create_schema()
            cursor.execute(f"PRAGMA user_version={SCHEMA_VERSION}")

        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database at {self.db_path}: {e}")
            raise StoreError(f"Failed to initialize database at {self.db_path}: {e}")

    def _create_schema(self) -> None:
        """Create tables and indexes; safe to run against an existing store."""
        statuses = ", ".join(f"'{status}'" for status in STORY_STATUSES)
        self._connection.executescript(f"""
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                root_path TEXT,
                config TEXT NOT NULL DEFAULT '{{}}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS epics (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                number INTEGER NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'planned',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (project_id, number),
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS stories (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                epic_id TEXT,
                key TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'draft' CHECK (status IN ({statuses})),
                acceptance_criteria TEXT NOT NULL DEFAULT '[]',
                dev_notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (project_id, key),
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE,
                FOREIGN KEY (epic_id) REFERENCES epics (id) ON DELETE SET NULL
            );

            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                story_id TEXT NOT NULL,
                idx INTEGER NOT NULL CHECK (idx >= 1),
                description TEXT NOT NULL,
                done INTEGER NOT NULL DEFAULT 0 CHECK (done IN (0, 1)),
                completed_at TEXT,
                is_review_followup INTEGER NOT NULL DEFAULT 0 CHECK (is_review_followup IN (0, 1)),
                severity TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (story_id, idx),
                FOREIGN KEY (story_id) REFERENCES stories (id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS subtasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                parent_task_id INTEGER NOT NULL,
                idx INTEGER NOT NULL CHECK (idx >= 1),
                description TEXT NOT NULL,
                done INTEGER NOT NULL DEFAULT 0 CHECK (done IN (0, 1)),
                completed_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (parent_task_id, idx),
                FOREIGN KEY (parent_task_id) REFERENCES tasks (id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS changelog (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                story_id TEXT NOT NULL,
                entry TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (story_id) REFERENCES stories (id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS story_files (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                story_id TEXT NOT NULL,
                file_path TEXT NOT NULL,
                change_type TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (story_id) REFERENCES stories (id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS reservations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                story_id TEXT NOT NULL,
                task_idx INTEGER NOT NULL,
                agent TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (story_id, task_idx),
                FOREIGN KEY (story_id) REFERENCES stories (id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS planning_docs (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                type TEXT NOT NULL,
                content TEXT NOT NULL DEFAULT '',
                summary TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (project_id, type)
            );

            CREATE TABLE IF NOT EXISTS epic_versions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                epic_id TEXT NOT NULL,
                version TEXT NOT NULL,
                title TEXT,
                description TEXT,
                status TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (epic_id, version)
            );

            CREATE TABLE IF NOT EXISTS story_versions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                story_id TEXT NOT NULL,
                version TEXT NOT NULL,
                title TEXT,
                description TEXT,
                status TEXT,
                acceptance_criteria TEXT,
                dev_notes TEXT,
                tasks_snapshot TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (story_id, version),
                FOREIGN KEY (story_id) REFERENCES stories (id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS planning_doc_versions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                doc_id TEXT NOT NULL,
                version TEXT NOT NULL,
                content TEXT,
                summary TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (doc_id, version)
            );

            CREATE INDEX IF NOT EXISTS idx_stories_project_status ON stories (project_id, status);
            CREATE INDEX IF NOT EXISTS idx_tasks_story ON tasks (story_id, idx);
            CREATE INDEX IF NOT EXISTS idx_tasks_followup ON tasks (story_id, is_review_followup, done);
            CREATE INDEX IF NOT EXISTS idx_changelog_story ON changelog (story_id);
            CREATE INDEX IF NOT EXISTS idx_reservations_expiry ON reservations (expires_at);
            CREATE INDEX IF NOT EXISTS idx_reservations_project ON reservations (project_id);
        """)

    def _drop_existing_tables(self) -> None:
        cursor = self._connection.cursor()
        for table in (
            "planning_doc_versions", "story_versions", "epic_versions", "planning_docs",
            "reservations", "story_files", "changelog", "subtasks", "tasks",
            "stories", "epics", "projects",
        ):
            cursor.execute(f"DROP TABLE IF EXISTS {table}")
        cursor.execute("PRAGMA user_version=0")

    def _cursor(self) -> sqlite3.Cursor:
        if self._connection is None:
            raise StoreError(f"Database at {self.db_path} is closed")
        return self._connection.cursor()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Write transaction scope.

        Takes the instance lock and the SQLite write lock (``BEGIN IMMEDIATE``),
        commits when the block exits normally and rolls back on any exception.
        Nested use on the same thread joins the outer transaction.

        Raises:
            StoreBusyError: the busy timeout elapsed waiting for the write lock
            StoreError: any other operational failure
        """
        with self._connection_lock:
            cursor = self._cursor()
            if self._connection.in_transaction:
                yield cursor
                return

            try:
                cursor.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                logger.error(f"Could not begin transaction on {self.db_path}: {e}")
                raise _translate_error(e)

            try:
                yield cursor
                cursor.execute("COMMIT")
            except Exception as e:
                if self._connection.in_transaction:
                    self._connection.rollback()
                if isinstance(e, sqlite3.OperationalError):
                    logger.error(f"Transaction failed on {self.db_path}: {e}")
                    raise _translate_error(e)
                raise

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Cursor]:
        """Read scope: one consistent snapshot for a group of SELECTs."""
        with self._connection_lock:
            cursor = self._cursor()
            if self._connection.in_transaction:
                yield cursor
                return

            try:
                cursor.execute("BEGIN")
                yield cursor
            except sqlite3.OperationalError as e:
                raise _translate_error(e)
            finally:
                if self._connection is not None and self._connection.in_transaction:
                    self._connection.rollback()

    def _get_current_time_str(self) -> str:
        return utc_timestamp()

    # Projects

    def register_project(
        self,
        project_id: str,
        name: str,
        root_path: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create or update a project record."""
        now = self._get_current_time_str()
        with self.transaction() as cursor:
            cursor.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,))
            created = cursor.fetchone() is None
            cursor.execute("""
                INSERT INTO projects (id, name, root_path, config, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    root_path = excluded.root_path,
                    config = excluded.config,
                    updated_at = excluded.updated_at
            """, (project_id, name, root_path, json.dumps(config or {}), now, now))

        logger.info(f"{'Registered' if created else 'Updated'} project {project_id}")
        return success_result(project_id=project_id, created=created)

    def get_project_context(self, project_id: str) -> Dict[str, Any]:
        """Project record with story counts and story listings grouped by status."""
        with self.reader() as cursor:
            cursor.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
            project = cursor.fetchone()
            if project is None:
                return error_result(ErrorKind.NOT_FOUND, f"Project {project_id} not found")

            cursor.execute("""
                SELECT s.id, s.key, s.title, s.status, s.updated_at, e.number AS epic_number
                FROM stories s LEFT JOIN epics e ON e.id = s.epic_id
                WHERE s.project_id = ?
                ORDER BY s.key ASC
            """, (project_id,))
            stories = [dict(row) for row in cursor.fetchall()]

            cursor.execute("""
                SELECT COUNT(*) AS total, COALESCE(SUM(t.done), 0) AS done
                FROM tasks t JOIN stories s ON s.id = t.story_id
                WHERE s.project_id = ?
            """, (project_id,))
            task_counts = cursor.fetchone()

            cursor.execute("SELECT COUNT(*) FROM epics WHERE project_id = ?", (project_id,))
            epic_count = cursor.fetchone()[0]

        stories_by_status: Dict[str, List[Dict[str, Any]]] = {status: [] for status in STORY_STATUSES}
        for story in stories:
            stories_by_status[story["status"]].append(story)

        return success_result(
            project={
                "id": project["id"],
                "name": project["name"],
                "root_path": project["root_path"],
                "config": _load_json(project["config"], {}),
                "created_at": project["created_at"],
                "updated_at": project["updated_at"],
            },
            stats={
                "epics": epic_count,
                "stories": len(stories),
                "tasks": task_counts["total"],
                "tasks_done": task_counts["done"],
                "stories_by_status": {status: len(items) for status, items in stories_by_status.items()},
            },
            stories_by_status=stories_by_status,
        )

    # Epics

    def _ensure_epic(self, cursor: sqlite3.Cursor, project_id: str, number: int, now: str) -> str:
        """Return the epic id for ``number``, creating a planned placeholder if needed."""
        epic_id = f"{project_id}:epic-{number}"
        cursor.execute("""
            INSERT OR IGNORE INTO epics (id, project_id, number, title, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, 'planned', ?, ?)
        """, (epic_id, project_id, number, f"Epic {number}", now, now))
        return epic_id

    def upsert_epic(
        self,
        project_id: str,
        number: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create an epic or update the given fields of an existing one.

        Omitted fields keep their stored value; a new epic without a title is
        titled ``Epic <number>``.
        """
        epic_id = f"{project_id}:epic-{number}"
        with self.transaction() as cursor:
            cursor.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,))
            if cursor.fetchone() is None:
                return error_result(ErrorKind.NOT_FOUND, f"Project {project_id} not found")

            stored = current_token(cursor, "epics", epic_id)
            token = next_token(stored)
            if stored is None:
                cursor.execute("""
                    INSERT INTO epics (id, project_id, number, title, description, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (epic_id, project_id, number, title or f"Epic {number}", description,
                      status or "planned", token, token))
            else:
                cursor.execute("""
                    UPDATE epics SET
                        title = COALESCE(?, title),
                        description = COALESCE(?, description),
                        status = COALESCE(?, status),
                        updated_at = ?
                    WHERE id = ?
                """, (title, description, status, token, epic_id))

        return success_result(epic_id=epic_id, created=stored is None, updated_at=token)

    def get_epic(self, epic_id: str) -> Dict[str, Any]:
        with self.reader() as cursor:
            cursor.execute("SELECT * FROM epics WHERE id = ?", (epic_id,))
            row = cursor.fetchone()
        if row is None:
            return error_result(ErrorKind.NOT_FOUND, f"Epic {epic_id} not found")
        return success_result(epic=dict(row), updated_at=row["updated_at"])

    def list_epics(self, project_id: str) -> List[Dict[str, Any]]:
        with self.reader() as cursor:
            cursor.execute("""
                SELECT id, number, title, status, updated_at
                FROM epics WHERE project_id = ?
                ORDER BY number ASC
            """, (project_id,))
            return [dict(row) for row in cursor.fetchall()]

    def delete_epic(self, project_id: str, number: int, force: bool = False) -> Dict[str, Any]:
        """
        Delete an epic. Stories still attached block the delete unless ``force``,
        in which case they are detached from the epic and kept.
        """
        epic_id = f"{project_id}:epic-{number}"
        with self.transaction() as cursor:
            cursor.execute("SELECT COUNT(*) FROM stories WHERE epic_id = ?", (epic_id,))
            story_count = cursor.fetchone()[0]
            if story_count and not force:
                return error_result(
                    ErrorKind.INVALID_STATE,
                    f"Epic {epic_id} still has {story_count} stories",
                    story_count=story_count,
                )
            cursor.execute("UPDATE stories SET epic_id = NULL WHERE epic_id = ?", (epic_id,))
            cursor.execute("DELETE FROM epics WHERE id = ?", (epic_id,))
            deleted = cursor.rowcount > 0

        return success_result(epic_id=epic_id, deleted=deleted, detached_stories=story_count if deleted else 0)

    # Stories

    def create_story(
        self,
        project_id: str,
        epic_number: int,
        key: str,
        title: str,
        description: Optional[str] = None,
        acceptance_criteria: Optional[Iterable[Any]] = None,
        tasks: Optional[Iterable[Any]] = None,
        dev_notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a story (status ``draft``) with its task tree in one transaction.

        The epic is created as a planned placeholder when it does not exist.

        Returns:
            ``{story_id, updated_at, task_indices}``; ``not_found`` for an
            unknown project and ``conflict`` when the key already exists.
        """
        story_id = f"{project_id}:{key}"
        criteria = [
            item if isinstance(item, AcceptanceCriterion) else AcceptanceCriterion.model_validate(item)
            for item in (acceptance_criteria or [])
        ]
        new_tasks = [
            item if isinstance(item, NewTask) else NewTask.model_validate(item)
            for item in (tasks or [])
        ]
        now = self._get_current_time_str()

        try:
            with self.transaction() as cursor:
                cursor.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,))
                if cursor.fetchone() is None:
                    return error_result(ErrorKind.NOT_FOUND, f"Project {project_id} not found")

                epic_id = self._ensure_epic(cursor, project_id, epic_number, now)
                cursor.execute("""
                    INSERT INTO stories (id, project_id, epic_id, key, title, description, status,
                                         acceptance_criteria, dev_notes, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 'draft', ?, ?, ?, ?)
                """, (story_id, project_id, epic_id, key, title, description,
                      json.dumps([c.model_dump() for c in criteria]), dev_notes, now, now))

                indices = task_tree.write_tree(cursor, story_id, task_tree.build_roots(new_tasks, 1), now)
        except sqlite3.IntegrityError:
            logger.warning(f"Story {story_id} already exists")
            return error_result(ErrorKind.CONFLICT, f"Story {story_id} already exists", story_id=story_id)

        logger.info(f"Created story {story_id} with {len(indices)} tasks")
        return success_result(story_id=story_id, updated_at=now, task_indices=indices)

    def get_story_context(self, story_id: str) -> Dict[str, Any]:
        """Full story: fields, epic, acceptance criteria, task tree, progress and token."""
        with self.reader() as cursor:
            cursor.execute("""
                SELECT s.*, e.number AS epic_number, e.title AS epic_title, e.status AS epic_status
                FROM stories s LEFT JOIN epics e ON e.id = s.epic_id
                WHERE s.id = ?
            """, (story_id,))
            row = cursor.fetchone()
            if row is None:
                return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")

            tree = task_tree.read_tree(cursor, story_id)
            progress = task_tree.compute_progress(cursor, story_id)
            next_task = task_tree.next_open_task(cursor, story_id)

            cursor.execute("""
                SELECT entry, created_at FROM changelog WHERE story_id = ? ORDER BY id ASC
            """, (story_id,))
            changelog = [dict(r) for r in cursor.fetchall()]

            cursor.execute("""
                SELECT file_path AS path, change_type FROM story_files WHERE story_id = ? ORDER BY id ASC
            """, (story_id,))
            files = [dict(r) for r in cursor.fetchall()]

        epic = None
        if row["epic_id"] is not None:
            epic = {
                "id": row["epic_id"],
                "number": row["epic_number"],
                "title": row["epic_title"],
                "status": row["epic_status"],
            }

        return success_result(
            story={
                "id": row["id"],
                "project_id": row["project_id"],
                "key": row["key"],
                "title": row["title"],
                "description": row["description"],
                "status": row["status"],
                "epic": epic,
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
            },
            acceptance_criteria=_load_json(row["acceptance_criteria"], []),
            tasks=[root.model_dump() for root in tree],
            progress=progress.model_dump(),
            next_task=next_task,
            all_tasks_done=progress.all_done,
            dev_notes=row["dev_notes"] or "",
            files_changed=files,
            changelog=changelog,
            updated_at=row["updated_at"],
        )

    def get_story_summary(self, story_id: str) -> Dict[str, Any]:
        """Condensed story view: status, current task and root-task progress."""
        with self.reader() as cursor:
            cursor.execute("SELECT id, key, title, status, updated_at FROM stories WHERE id = ?", (story_id,))
            row = cursor.fetchone()
            if row is None:
                return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")
            progress = task_tree.compute_progress(cursor, story_id)
            current = task_tree.next_open_task(cursor, story_id)

        return success_result(
            story_id=row["id"],
            key=row["key"],
            title=row["title"],
            status=row["status"],
            current_task=current,
            progress=progress.model_dump(),
            updated_at=row["updated_at"],
        )

    def list_stories(
        self,
        project_id: str,
        status: Optional[str] = None,
        epic_number: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        query = """
            SELECT s.id, s.key, s.title, s.status, s.updated_at, e.number AS epic_number
            FROM stories s LEFT JOIN epics e ON e.id = s.epic_id
            WHERE s.project_id = ?
        """
        params: List[Any] = [project_id]
        if status:
            query += " AND s.status = ?"
            params.append(status)
        if epic_number is not None:
            query += " AND e.number = ?"
            params.append(epic_number)
        query += " ORDER BY s.updated_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self.reader() as cursor:
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def get_next_story(self, project_id: str, status: str = StoryStatus.READY_FOR_DEV.value) -> Dict[str, Any]:
        """
        The story in ``status`` that has waited longest since its last change.

        Returns ``found: False`` when the project has no story in that status.
        """
        with self.reader() as cursor:
            cursor.execute("""
                SELECT s.id, s.key, s.title, s.status,
                       e.number AS epic_number, e.title AS epic_title,
                       (SELECT COUNT(*) FROM tasks t WHERE t.story_id = s.id AND t.done = 0) AS pending
                FROM stories s LEFT JOIN epics e ON e.id = s.epic_id
                WHERE s.project_id = ? AND s.status = ?
                ORDER BY s.updated_at ASC, s.id ASC
                LIMIT 1
            """, (project_id, status))
            row = cursor.fetchone()

        if row is None:
            return success_result(found=False, story=None)
        epic = None
        if row["epic_number"] is not None:
            epic = {"number": row["epic_number"], "title": row["epic_title"]}
        return success_result(found=True, story={
            "id": row["id"],
            "key": row["key"],
            "title": row["title"],
            "status": row["status"],
            "epic": epic,
            "pending_tasks_count": row["pending"],
        })

    def update_story(
        self,
        story_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[str] = None,
        epic_number: Optional[int] = None,
        expected_updated_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Guarded partial update of a story's title, description, status or epic.

        Returns:
            the new ``updated_at`` token, or ``conflict`` carrying
            ``current_updated_at`` when ``expected_updated_at`` is stale.
        """
        fields: Dict[str, Any] = {}
        if title is not None:
            fields["title"] = title
        if description is not None:
            fields["description"] = description
        if status is not None:
            fields["status"] = StoryStatus(status).value

        with self.transaction() as cursor:
            cursor.execute("SELECT project_id FROM stories WHERE id = ?", (story_id,))
            story = cursor.fetchone()
            if story is None:
                return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")

            if epic_number is not None:
                cursor.execute(
                    "SELECT id FROM epics WHERE project_id = ? AND number = ?",
                    (story["project_id"], epic_number),
                )
                epic = cursor.fetchone()
                if epic is None:
                    return error_result(
                        ErrorKind.NOT_FOUND, f"Epic {epic_number} not found in project {story['project_id']}"
                    )
                fields["epic_id"] = epic["id"]

            result = guarded_update(cursor, "stories", story_id, fields, expected_updated_at)

        if result["success"]:
            logger.info(f"Updated story {story_id}: {', '.join(fields) or 'no fields'}")
            result["story_id"] = story_id
        return result

    def update_story_status(
        self,
        story_id: str,
        status: str,
        expected_updated_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        new_status = StoryStatus(status).value
        with self.transaction() as cursor:
            cursor.execute("SELECT status FROM stories WHERE id = ?", (story_id,))
            row = cursor.fetchone()
            if row is None:
                return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")
            result = guarded_update(cursor, "stories", story_id, {"status": new_status}, expected_updated_at)

        if result["success"]:
            result.update(story_id=story_id, previous_status=row["status"], status=new_status)
        return result

    def update_acceptance_criteria(
        self,
        story_id: str,
        acceptance_criteria: Iterable[Any],
        expected_updated_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Replace the story's acceptance criteria list (guarded)."""
        criteria = [
            item if isinstance(item, AcceptanceCriterion) else AcceptanceCriterion.model_validate(item)
            for item in acceptance_criteria
        ]
        with self.transaction() as cursor:
            result = guarded_update(
                cursor, "stories", story_id,
                {"acceptance_criteria": json.dumps([c.model_dump() for c in criteria])},
                expected_updated_at,
            )
        if result["success"]:
            result.update(story_id=story_id, criteria_count=len(criteria))
        return result

    def add_dev_note(
        self,
        story_id: str,
        note: str,
        section: Optional[str] = None,
        expected_updated_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append a note (optionally under a ``### section`` heading) to the dev notes."""
        header = f"\n\n### {section}\n" if section else "\n\n"
        with self.transaction() as cursor:
            cursor.execute("SELECT dev_notes FROM stories WHERE id = ?", (story_id,))
            row = cursor.fetchone()
            if row is None:
                return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")
            notes = (row["dev_notes"] or "") + header + note + "\n"
            result = guarded_update(cursor, "stories", story_id, {"dev_notes": notes}, expected_updated_at)
        if result["success"]:
            result["story_id"] = story_id
        return result

    def add_changelog_entry(self, story_id: str, entry: str) -> Dict[str, Any]:
        """Append an immutable changelog entry; does not move the story token."""
        now = self._get_current_time_str()
        try:
            with self.transaction() as cursor:
                cursor.execute(
                    "INSERT INTO changelog (story_id, entry, created_at) VALUES (?, ?, ?)",
                    (story_id, entry, now),
                )
        except sqlite3.IntegrityError:
            return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")
        return success_result(story_id=story_id, created_at=now)

    def get_changelog(self, story_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        query = "SELECT entry, created_at FROM changelog WHERE story_id = ? ORDER BY id ASC"
        params: List[Any] = [story_id]
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        with self.reader() as cursor:
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def register_files(self, story_id: str, files: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
        """Record files touched by a story (``{path, change_type}`` items)."""
        now = self._get_current_time_str()
        count = 0
        try:
            with self.transaction() as cursor:
                for item in files:
                    cursor.execute("""
                        INSERT INTO story_files (story_id, file_path, change_type, created_at)
                        VALUES (?, ?, ?, ?)
                    """, (story_id, item["path"], item.get("change_type"), now))
                    count += 1
        except sqlite3.IntegrityError:
            return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")
        return success_result(story_id=story_id, total_files=count)

    def delete_story(self, story_id: str, force: bool = False) -> Dict[str, Any]:
        """
        Delete a story and everything it owns (tasks, leases, changelog, versions).

        Open root tasks block the delete unless ``force`` is set.
        """
        with self.transaction() as cursor:
            cursor.execute("SELECT 1 FROM stories WHERE id = ?", (story_id,))
            if cursor.fetchone() is None:
                return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")

            cursor.execute("SELECT COUNT(*) FROM tasks WHERE story_id = ? AND done = 0", (story_id,))
            open_tasks = cursor.fetchone()[0]
            if open_tasks and not force:
                return error_result(
                    ErrorKind.INVALID_STATE,
                    f"Story {story_id} has {open_tasks} incomplete tasks",
                    open_tasks=open_tasks,
                )
            cursor.execute("DELETE FROM stories WHERE id = ?", (story_id,))

        logger.info(f"Deleted story {story_id}")
        return success_result(story_id=story_id, deleted=True)

    # Planning documents

    def get_planning_doc(self, project_id: str, doc_type: str, format: str = "full") -> Dict[str, Any]:
        """
        Read a planning document. A missing document reads as empty content
        with no token; ``format="summary"`` returns the stored summary instead.
        """
        doc_id = f"{project_id}:{doc_type}"
        with self.reader() as cursor:
            cursor.execute("SELECT content, summary, updated_at FROM planning_docs WHERE id = ?", (doc_id,))
            row = cursor.fetchone()

        if row is None:
            return success_result(doc_id=doc_id, type=doc_type, content="", updated_at=None, exists=False)
        content = (row["summary"] or "") if format == "summary" else (row["content"] or "")
        return success_result(
            doc_id=doc_id, type=doc_type, content=content, updated_at=row["updated_at"], exists=True,
        )

    def update_planning_doc(
        self,
        project_id: str,
        doc_type: str,
        content: str,
        generate_summary: bool = False,
        expected_updated_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Write a planning document (guarded when it already exists).

        The summary is regenerated only when ``generate_summary`` is set;
        otherwise the stored summary is kept.
        """
        doc_id = f"{project_id}:{doc_type}"
        fields: Dict[str, Any] = {"content": content}
        if generate_summary:
            fields["summary"] = summarize(content)

        with self.transaction() as cursor:
            stored = current_token(cursor, "planning_docs", doc_id)
            if stored is None:
                if expected_updated_at is not None:
                    return error_result(ErrorKind.NOT_FOUND, f"Planning document {doc_id} not found")
                token = next_token()
                cursor.execute("""
                    INSERT INTO planning_docs (id, project_id, type, content, summary, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (doc_id, project_id, doc_type, content, fields.get("summary"), token, token))
                result = success_result(updated_at=token, previous_updated_at=None)
            else:
                result = guarded_update(cursor, "planning_docs", doc_id, fields, expected_updated_at)

        if result["success"]:
            result["doc_id"] = doc_id
            logger.info(f"Updated planning document {doc_id}")
        return result

    def close(self):
        """Close database connection."""
        with self._connection_lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def initialize_fresh(self) -> None:
        """Drop every table and recreate an empty schema."""
        with self._connection_lock:
            if self._connection:
                self.close()
            self._initialize_database(drop_existing=True)
