"""
Lease Manager

Time-bounded, single-owner reservations over root tasks. A lease row per
``(story_id, task_idx)`` moves through:

    Unclaimed -> Claimed(agent, expiry) -> Unclaimed   (release or expiry)
    Claimed(A) -> Claimed(B)                            (only once A expired)

There is no reaper: expired rows are swept lazily whenever leases are listed
and treated as absent by every other operation.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional, Dict, Any, List

from .concurrency import utc_timestamp
from .models import ErrorKind, error_result, success_result
from .task_tree import story_row

if TYPE_CHECKING:
    from .database import StoryDatabase

logger = logging.getLogger(__name__)


def sweep_expired_rows(cursor: sqlite3.Cursor, now: str) -> List[Dict[str, Any]]:
    """Delete expired lease rows and return what was removed."""
    cursor.execute("""
        SELECT story_id, task_idx, agent FROM reservations WHERE expires_at <= ?
    """, (now,))
    expired = [dict(row) for row in cursor.fetchall()]
    if expired:
        cursor.execute("DELETE FROM reservations WHERE expires_at <= ?", (now,))
    return expired


class LeaseManager:
    """Claims, releases and lists task reservations."""

    def __init__(self, database: "StoryDatabase"):
        self.db = database

    def reserve(
        self,
        story_id: str,
        task_idx: int,
        agent: str,
        ttl_seconds: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Claim a root task for ``agent`` for ``ttl_seconds``.

        The read-check-write runs inside one write transaction, so of any
        number of concurrent claimants exactly one wins. The current holder
        re-reserving extends its own lease.

        Returns:
            ``{story_id, task_idx, agent, expires_at}`` on success; a
            ``conflict`` result carrying ``reserved_by`` and ``expires_at``
            while another agent holds a live lease; ``not_found`` when the
            story or root task does not exist.

        Raises:
            ValueError: ``ttl_seconds`` is zero or negative
        """
        ttl = self.db.default_lease_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        moment = datetime.now(timezone.utc)
        now = utc_timestamp(moment)
        expires_at = utc_timestamp(moment + timedelta(seconds=ttl))

        with self.db.transaction() as cursor:
            story = story_row(cursor, story_id)
            if story is None:
                return error_result(ErrorKind.NOT_FOUND, f"Story {story_id} not found")

            cursor.execute("SELECT 1 FROM tasks WHERE story_id = ? AND idx = ?", (story_id, task_idx))
            if cursor.fetchone() is None:
                return error_result(
                    ErrorKind.NOT_FOUND, f"Task {task_idx} not found in story {story_id}", task_idx=task_idx,
                )

            cursor.execute("""
                SELECT agent, expires_at FROM reservations
                WHERE story_id = ? AND task_idx = ?
            """, (story_id, task_idx))
            existing = cursor.fetchone()

            if existing is not None and existing["expires_at"] > now and existing["agent"] != agent:
                logger.warning(
                    f"Agent {agent} denied task {story_id}#{task_idx}: held by {existing['agent']} "
                    f"until {existing['expires_at']}"
                )
                return error_result(
                    ErrorKind.CONFLICT,
                    f"Task {task_idx} of story {story_id} is reserved by {existing['agent']}",
                    reserved_by=existing["agent"],
                    expires_at=existing["expires_at"],
                )

            if existing is None:
                cursor.execute("""
                    INSERT INTO reservations (project_id, story_id, task_idx, agent, expires_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (story["project_id"], story_id, task_idx, agent, expires_at, now))
            elif existing["agent"] == agent:
                cursor.execute("""
                    UPDATE reservations SET expires_at = ?
                    WHERE story_id = ? AND task_idx = ?
                """, (expires_at, story_id, task_idx))
            else:
                # Previous holder's lease expired; take it over
                cursor.execute("""
                    UPDATE reservations SET agent = ?, expires_at = ?, created_at = ?
                    WHERE story_id = ? AND task_idx = ?
                """, (agent, expires_at, now, story_id, task_idx))

        logger.info(f"Agent {agent} reserved task {story_id}#{task_idx} until {expires_at}")
        return success_result(story_id=story_id, task_idx=task_idx, agent=agent, expires_at=expires_at)

    def release(self, story_id: str, task_idx: int, agent: str) -> Dict[str, Any]:
        """
        Release a lease held by ``agent``.

        Releasing an unheld (or expired) lease is a successful no-op. A live
        lease held by another agent is left untouched and ``not_owner`` is
        returned.
        """
        now = utc_timestamp()
        with self.db.transaction() as cursor:
            cursor.execute("""
                SELECT agent, expires_at FROM reservations
                WHERE story_id = ? AND task_idx = ?
            """, (story_id, task_idx))
            existing = cursor.fetchone()

            if existing is None:
                return success_result(story_id=story_id, task_idx=task_idx, released=False)

            if existing["agent"] != agent:
                if existing["expires_at"] <= now:
                    cursor.execute(
                        "DELETE FROM reservations WHERE story_id = ? AND task_idx = ?", (story_id, task_idx),
                    )
                    return success_result(story_id=story_id, task_idx=task_idx, released=False)
                logger.warning(
                    f"Agent {agent} tried to release task {story_id}#{task_idx} held by {existing['agent']}"
                )
                return error_result(
                    ErrorKind.NOT_OWNER,
                    f"Task {task_idx} of story {story_id} is reserved by {existing['agent']}",
                    reserved_by=existing["agent"],
                )

            cursor.execute("""
                DELETE FROM reservations WHERE story_id = ? AND task_idx = ? AND agent = ?
            """, (story_id, task_idx, agent))

        logger.info(f"Agent {agent} released task {story_id}#{task_idx}")
        return success_result(story_id=story_id, task_idx=task_idx, released=True)

    def get(self, story_id: str, task_idx: int) -> Optional[Dict[str, Any]]:
        """Current live lease for a task, or None."""
        with self.db.reader() as cursor:
            cursor.execute("""
                SELECT project_id, story_id, task_idx, agent, expires_at, created_at
                FROM reservations
                WHERE story_id = ? AND task_idx = ? AND expires_at > ?
            """, (story_id, task_idx, utc_timestamp()))
            row = cursor.fetchone()
        return dict(row) if row else None

    def sweep_expired(self) -> int:
        """Remove every expired lease; returns how many were removed."""
        return len(self.sweep_expired_with_ids())

    def sweep_expired_with_ids(self) -> List[Dict[str, Any]]:
        with self.db.transaction() as cursor:
            expired = sweep_expired_rows(cursor, utc_timestamp())
        if expired:
            logger.info(f"Swept {len(expired)} expired reservations")
        return expired

    def list(self, project_id: Optional[str] = None, story_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Sweep expired leases, then return the live ones newest first."""
        query = """
            SELECT project_id, story_id, task_idx, agent, expires_at, created_at
            FROM reservations
        """
        conditions = []
        params: List[Any] = []
        if project_id:
            conditions.append("project_id = ?")
            params.append(project_id)
        if story_id:
            conditions.append("story_id = ?")
            params.append(story_id)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, id DESC"

        with self.db.transaction() as cursor:
            expired = sweep_expired_rows(cursor, utc_timestamp())
            cursor.execute(query, params)
            leases = [dict(row) for row in cursor.fetchall()]

        if expired:
            logger.info(f"Swept {len(expired)} expired reservations")
        return leases
