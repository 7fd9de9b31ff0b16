"""
Task Tree Manager

Owns the two-tier task hierarchy of a story: root tasks (``tasks`` table) and
their subtasks (``subtasks`` table). Root ``idx`` values are unique per story
and subtask ``idx`` values unique per parent; both are always allocated by this
module from ``MAX(idx) + 1`` so callers never pick indices themselves.

Progress is always computed over root tasks only: completing every subtask of a
root task does not complete the root task.

Cursor-level helpers (``read_tree``, ``write_tree``, ``compute_progress`` ...)
run inside a transaction opened by the caller and are shared with story
creation and the story version store.
"""

import logging
import sqlite3
from typing import TYPE_CHECKING, Optional, Dict, Any, List, Iterable, Sequence

from .concurrency import utc_timestamp
from .models import (
    ErrorKind, RootTask, Subtask, TaskProgress, NewTask, FollowUpTask,
    error_result, success_result,
)

if TYPE_CHECKING:
    from .database import StoryDatabase

logger = logging.getLogger(__name__)


# Cursor-level helpers

def story_row(cursor: sqlite3.Cursor, story_id: str) -> Optional[sqlite3.Row]:
    cursor.execute("SELECT id, project_id, epic_id, key FROM stories WHERE id = ?", (story_id,))
    return cursor.fetchone()


def max_root_idx(cursor: sqlite3.Cursor, story_id: str) -> int:
    cursor.execute("SELECT COALESCE(MAX(idx), 0) FROM tasks WHERE story_id = ?", (story_id,))
    return cursor.fetchone()[0]


def read_tree(cursor: sqlite3.Cursor, story_id: str) -> List[RootTask]:
    """Read a story's full task tree, root tasks and subtasks in idx order."""
    cursor.execute("""
        SELECT id, idx, description, done, completed_at, is_review_followup, severity
        FROM tasks
        WHERE story_id = ?
        ORDER BY idx ASC
    """, (story_id,))
    roots = cursor.fetchall()

    cursor.execute("""
        SELECT s.parent_task_id, s.idx, s.description, s.done, s.completed_at
        FROM subtasks s
        JOIN tasks t ON t.id = s.parent_task_id
        WHERE t.story_id = ?
        ORDER BY s.parent_task_id, s.idx ASC
    """, (story_id,))
    subtasks_by_parent: Dict[int, List[Subtask]] = {}
    for row in cursor.fetchall():
        subtasks_by_parent.setdefault(row["parent_task_id"], []).append(Subtask(
            idx=row["idx"],
            description=row["description"],
            done=bool(row["done"]),
            completed_at=row["completed_at"],
        ))

    return [
        RootTask(
            idx=row["idx"],
            description=row["description"],
            done=bool(row["done"]),
            completed_at=row["completed_at"],
            is_review_followup=bool(row["is_review_followup"]),
            severity=row["severity"],
            subtasks=subtasks_by_parent.get(row["id"], []),
        )
        for row in roots
    ]


def write_tree(cursor: sqlite3.Cursor, story_id: str, roots: Iterable[RootTask], now: str) -> List[int]:
    """
    Insert root tasks (and their subtasks) exactly as given, preserving idx.

    Returns the list of inserted root idx values. A duplicate idx raises
    sqlite3.IntegrityError from the unique constraint.
    """
    inserted = []
    for root in roots:
        cursor.execute("""
            INSERT INTO tasks (story_id, idx, description, done, completed_at,
                               is_review_followup, severity, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (story_id, root.idx, root.description, int(root.done), root.completed_at,
              int(root.is_review_followup), root.severity, now))
        parent_id = cursor.lastrowid
        for sub in root.subtasks:
            cursor.execute("""
                INSERT INTO subtasks (parent_task_id, idx, description, done, completed_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (parent_id, sub.idx, sub.description, int(sub.done), sub.completed_at, now))
        inserted.append(root.idx)
    return inserted


def delete_tree(cursor: sqlite3.Cursor, story_id: str) -> int:
    """Delete every task of a story; subtasks go with their parents via CASCADE."""
    cursor.execute("DELETE FROM tasks WHERE story_id = ?", (story_id,))
    return cursor.rowcount


def build_roots(tasks: Sequence[NewTask], start_idx: int) -> List[RootTask]:
    """Number new root tasks from ``start_idx`` and their subtasks from 1."""
    return [
        RootTask(
            idx=start_idx + offset,
            description=task.description,
            subtasks=[
                Subtask(idx=sub_offset, description=description)
                for sub_offset, description in enumerate(task.subtasks, start=1)
            ],
        )
        for offset, task in enumerate(tasks)
    ]


def compute_progress(cursor: sqlite3.Cursor, story_id: str) -> TaskProgress:
    cursor.execute("""
        SELECT COALESCE(SUM(done), 0), COUNT(*)
        FROM tasks
        WHERE story_id = ?
    """, (story_id,))
    done, total = cursor.fetchone()
    return TaskProgress(done=done, total=total)


def next_open_task(cursor: sqlite3.Cursor, story_id: str) -> Optional[Dict[str, Any]]:
    """Lowest-idx root task that is not done, or None."""
    cursor.execute("""
        SELECT idx, description
        FROM tasks
        WHERE story_id = ? AND done = 0
        ORDER BY idx ASC
        LIMIT 1
    """, (story_id,))
    row = cursor.fetchone()
    return {"idx": row["idx"], "description": row["description"]} if row else None


def _coerce_tasks(tasks: Iterable[Any], model) -> List[Any]:
    return [task if isinstance(task, model) else model.model_validate(task) for task in tasks]


class TaskTreeManager:
    """
    Ordering, completion state and progress rollup for story task trees.

    Every mutation runs in a single store transaction; every expected failure
    comes back as an ``error_result`` dictionary.
    """

    def __init__(self, database: "StoryDatabase"):
        self.db = database

    def create_tasks(self, story_id: str, tasks: Iterable[Any]) -> Dict[str, Any]:
        """
        Append root tasks (with subtasks) to a story.

        Root tasks get sequential idx values after the story's current maximum
        (1-based for an empty story); subtasks are numbered 1..n per parent.
        """
        new_tasks = _coerce_tasks(tasks, NewTask)
        with self.db.transaction() as cursor:
            if story_row(cursor, story_id) is None:
                return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")
            roots = build_roots(new_tasks, max_root_idx(cursor, story_id) + 1)
            indices = write_tree(cursor, story_id, roots, utc_timestamp())

        logger.info(f"Created {len(indices)} tasks on story {story_id}")
        return success_result(story_id=story_id, indices=indices)

    def get_tree(self, story_id: str) -> Dict[str, Any]:
        with self.db.reader() as cursor:
            if story_row(cursor, story_id) is None:
                return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")
            tree = read_tree(cursor, story_id)
            progress = compute_progress(cursor, story_id)
        return success_result(
            story_id=story_id,
            tasks=[root.model_dump() for root in tree],
            progress=progress.model_dump(),
            all_tasks_done=progress.all_done,
        )

    def get_progress(self, story_id: str) -> Dict[str, Any]:
        with self.db.reader() as cursor:
            if story_row(cursor, story_id) is None:
                return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")
            progress = compute_progress(cursor, story_id)
            next_task = next_open_task(cursor, story_id)
        return success_result(
            story_id=story_id,
            progress=progress.model_dump(),
            next_task=next_task,
            all_tasks_done=progress.all_done,
        )

    def complete_task(
        self,
        story_id: str,
        task_idx: int,
        subtask_idx: Optional[int] = None,
        note: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Mark a root task or one of its subtasks done.

        Completing an already-done node keeps its first completion time. The
        optional note is appended to the story changelog.

        Returns:
            progress over root tasks, the next open root task and an
            ``all_tasks_done`` flag; ``not_found`` when the story or root task
            is missing, ``invalid_state`` when the addressed subtask is missing.
        """
        now = utc_timestamp()
        with self.db.transaction() as cursor:
            if story_row(cursor, story_id) is None:
                return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")

            cursor.execute("SELECT id FROM tasks WHERE story_id = ? AND idx = ?", (story_id, task_idx))
            root = cursor.fetchone()
            if root is None:
                return error_result(
                    ErrorKind.NOT_FOUND, f"Task {task_idx} not found in story {story_id}",
                    task_idx=task_idx,
                )

            if subtask_idx is not None:
                cursor.execute("""
                    UPDATE subtasks
                    SET done = 1, completed_at = COALESCE(completed_at, ?)
                    WHERE parent_task_id = ? AND idx = ?
                """, (now, root["id"], subtask_idx))
                if cursor.rowcount == 0:
                    return error_result(
                        ErrorKind.INVALID_STATE,
                        f"Task {task_idx} of story {story_id} has no subtask {subtask_idx}",
                        task_idx=task_idx,
                        subtask_idx=subtask_idx,
                    )
            else:
                cursor.execute("""
                    UPDATE tasks
                    SET done = 1, completed_at = COALESCE(completed_at, ?)
                    WHERE id = ?
                """, (now, root["id"]))

            if note:
                cursor.execute(
                    "INSERT INTO changelog (story_id, entry, created_at) VALUES (?, ?, ?)",
                    (story_id, note, now),
                )

            progress = compute_progress(cursor, story_id)
            next_task = next_open_task(cursor, story_id)

        target = f"{task_idx}.{subtask_idx}" if subtask_idx is not None else str(task_idx)
        logger.info(f"Completed task {target} on story {story_id} ({progress.done}/{progress.total})")
        return success_result(
            story_id=story_id,
            task_idx=task_idx,
            subtask_idx=subtask_idx,
            progress=progress.model_dump(),
            next_task=next_task,
            all_tasks_done=progress.all_done,
        )

    def add_follow_up_tasks(self, story_id: str, tasks: Iterable[Any]) -> Dict[str, Any]:
        """Append review follow-up root tasks after the current maximum idx."""
        follow_ups = _coerce_tasks(tasks, FollowUpTask)
        with self.db.transaction() as cursor:
            if story_row(cursor, story_id) is None:
                return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")
            start = max_root_idx(cursor, story_id) + 1
            roots = [
                RootTask(
                    idx=start + offset,
                    description=task.description,
                    is_review_followup=True,
                    severity=task.severity,
                )
                for offset, task in enumerate(follow_ups)
            ]
            indices = write_tree(cursor, story_id, roots, utc_timestamp())

        logger.info(f"Added {len(indices)} review follow-up tasks to story {story_id}")
        return success_result(story_id=story_id, tasks_added=len(indices), indices=indices)

    def get_review_backlog(
        self,
        project_id: Optional[str] = None,
        story_id: Optional[str] = None,
        limit: int = 100,
    ) -> Dict[str, Any]:
        """Open review follow-up tasks for one story or a whole project."""
        with self.db.reader() as cursor:
            if story_id:
                cursor.execute("""
                    SELECT t.story_id, s.key AS story_key, t.idx, t.description, t.severity
                    FROM tasks t JOIN stories s ON s.id = t.story_id
                    WHERE t.story_id = ? AND t.is_review_followup = 1 AND t.done = 0
                    ORDER BY t.idx ASC
                    LIMIT ?
                """, (story_id, limit))
            else:
                cursor.execute("""
                    SELECT t.story_id, s.key AS story_key, t.idx, t.description, t.severity
                    FROM tasks t JOIN stories s ON s.id = t.story_id
                    WHERE s.project_id = ? AND t.is_review_followup = 1 AND t.done = 0
                    ORDER BY s.updated_at DESC, t.story_id, t.idx ASC
                    LIMIT ?
                """, (project_id, limit))
            items = [dict(row) for row in cursor.fetchall()]
        return success_result(items=items)

    def complete_review_items(self, story_id: str, indices: Iterable[int]) -> Dict[str, Any]:
        """Mark the given follow-up root tasks done; returns how many changed."""
        now = utc_timestamp()
        completed = 0
        with self.db.transaction() as cursor:
            for idx in indices:
                cursor.execute("""
                    UPDATE tasks
                    SET done = 1, completed_at = ?
                    WHERE story_id = ? AND idx = ? AND is_review_followup = 1 AND done = 0
                """, (now, story_id, idx))
                completed += cursor.rowcount
        return success_result(story_id=story_id, completed=completed)

    def split_story(
        self,
        story_id: str,
        new_key: str,
        title: Optional[str] = None,
        move_task_indices: Iterable[int] = (),
    ) -> Dict[str, Any]:
        """
        Move root tasks of a story into a new story in the same project and epic.

        Moved tasks are renumbered in ascending source idx order after the
        destination's maximum idx; their subtasks move with them. Leases held
        on moved source indices are dropped.
        """
        now = utc_timestamp()
        try:
            with self.db.transaction() as cursor:
                source = story_row(cursor, story_id)
                if source is None:
                    return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")

                new_story_id = f"{source['project_id']}:{new_key}"
                cursor.execute("""
                    INSERT INTO stories (id, project_id, epic_id, key, title, status,
                                         acceptance_criteria, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, 'draft', '[]', ?, ?)
                """, (new_story_id, source["project_id"], source["epic_id"], new_key,
                      title or new_key, now, now))

                next_idx = max_root_idx(cursor, new_story_id) + 1
                moved = []
                for idx in sorted(set(move_task_indices)):
                    cursor.execute("""
                        UPDATE tasks SET story_id = ?, idx = ?
                        WHERE story_id = ? AND idx = ?
                    """, (new_story_id, next_idx, story_id, idx))
                    if cursor.rowcount:
                        moved.append({"from_idx": idx, "to_idx": next_idx})
                        next_idx += 1
                        cursor.execute(
                            "DELETE FROM reservations WHERE story_id = ? AND task_idx = ?",
                            (story_id, idx),
                        )
        except sqlite3.IntegrityError:
            return error_result(ErrorKind.CONFLICT, f"Story key {new_key} already exists")

        logger.info(f"Split {len(moved)} tasks from story {story_id} into {new_story_id}")
        return success_result(new_story_id=new_story_id, moved=len(moved), moved_tasks=moved)

    def merge_stories(
        self,
        target_story_id: str,
        source_story_id: str,
        delete_source: bool = True,
    ) -> Dict[str, Any]:
        """
        Append copies of every source root task (with subtasks) to the target.

        Copies are renumbered after the target's maximum idx in source order.
        The source story is deleted afterwards unless ``delete_source`` is False.
        """
        if target_story_id == source_story_id:
            return error_result(ErrorKind.INVALID_STATE, "Cannot merge a story into itself")

        with self.db.transaction() as cursor:
            for sid in (target_story_id, source_story_id):
                if story_row(cursor, sid) is None:
                    return error_result(ErrorKind.NOT_FOUND, f"Story {sid} not found")

            base = max_root_idx(cursor, target_story_id)
            copies = [
                root.model_copy(update={"idx": base + offset})
                for offset, root in enumerate(read_tree(cursor, source_story_id), start=1)
            ]
            indices = write_tree(cursor, target_story_id, copies, utc_timestamp())

            if delete_source:
                cursor.execute("DELETE FROM stories WHERE id = ?", (source_story_id,))

        logger.info(f"Merged {len(indices)} tasks from story {source_story_id} into {target_story_id}")
        return success_result(
            target_story_id=target_story_id,
            merged=len(indices),
            indices=indices,
            source_deleted=delete_source,
        )
