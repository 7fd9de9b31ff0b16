"""
Version/Snapshot Store

Each versioned entity keeps its current row plus a write-once history table of
labelled snapshots. Switching to a version is a full replacement of the
current row's mutable fields from the snapshot, done in one transaction and
always refreshing the row's version token.

The three stores (epics, stories, planning documents) share ``VersionStore``
and differ only in which columns they capture; stories also capture their
whole task tree.
"""

import json
import logging
import sqlite3
from typing import TYPE_CHECKING, Optional, Dict, Any, Tuple

from .concurrency import utc_timestamp, guarded_update
from .models import ErrorKind, RootTask, VersionedEntity, error_result, success_result
from . import task_tree

if TYPE_CHECKING:
    from .database import StoryDatabase

logger = logging.getLogger(__name__)


class VersionStore:
    """Labelled snapshots of one entity table."""

    entity_name = "Entity"
    entity_table = ""
    version_table = ""
    key_column = ""
    snapshot_columns: Tuple[str, ...] = ()

    def __init__(self, database: "StoryDatabase"):
        self.db = database

    def _capture(self, cursor: sqlite3.Cursor, entity_id: str) -> Optional[Dict[str, Any]]:
        """Current values of the snapshot columns, or None if the entity is missing."""
        columns = ", ".join(self.snapshot_columns)
        cursor.execute(f"SELECT {columns} FROM {self.entity_table} WHERE id = ?", (entity_id,))
        row = cursor.fetchone()
        return dict(row) if row else None

    def _restore(
        self,
        cursor: sqlite3.Cursor,
        entity_id: str,
        snapshot: Dict[str, Any],
        expected_updated_at: Optional[str],
    ) -> Dict[str, Any]:
        fields = {column: snapshot[column] for column in self.snapshot_columns}
        return guarded_update(cursor, self.entity_table, entity_id, fields, expected_updated_at)

    def snapshot(self, entity_id: str, version: str) -> Dict[str, Any]:
        """
        Record the entity's current state under ``version``.

        Returns ``not_found`` when the entity is missing and ``conflict`` when
        the label is already taken for this entity.
        """
        now = utc_timestamp()
        try:
            with self.db.transaction() as cursor:
                state = self._capture(cursor, entity_id)
                if state is None:
                    return error_result(ErrorKind.NOT_FOUND, f"{self.entity_name} {entity_id} not found")

                columns = [self.key_column, "version", *state.keys(), "created_at"]
                placeholders = ", ".join("?" for _ in columns)
                cursor.execute(
                    f"INSERT INTO {self.version_table} ({', '.join(columns)}) VALUES ({placeholders})",
                    (entity_id, version, *state.values(), now),
                )
        except sqlite3.IntegrityError:
            logger.warning(f"Version {version} already exists for {entity_id}")
            return error_result(
                ErrorKind.CONFLICT, f"Version {version} already exists for {entity_id}", version=version,
            )

        logger.info(f"Recorded version {version} of {self.entity_name.lower()} {entity_id}")
        return success_result(entity_id=entity_id, version=version, created_at=now)

    def list_versions(self, entity_id: str) -> Dict[str, Any]:
        """Snapshot labels for an entity, newest first."""
        with self.db.reader() as cursor:
            cursor.execute(f"""
                SELECT version, created_at FROM {self.version_table}
                WHERE {self.key_column} = ?
                ORDER BY id DESC
            """, (entity_id,))
            versions = [dict(row) for row in cursor.fetchall()]
        return success_result(entity_id=entity_id, versions=versions)

    def switch_version(
        self,
        entity_id: str,
        version: str,
        expected_updated_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Replace the entity's current state with the ``version`` snapshot.

        Without ``expected_updated_at`` the switch is unconditional; with it,
        a stale token yields ``conflict``. Either way the token is refreshed so
        writers still holding a pre-switch token are rejected afterwards.
        """
        with self.db.transaction() as cursor:
            cursor.execute(
                f"SELECT * FROM {self.version_table} WHERE {self.key_column} = ? AND version = ?",
                (entity_id, version),
            )
            snapshot = cursor.fetchone()
            if snapshot is None:
                return error_result(
                    ErrorKind.NOT_FOUND, f"Version {version} not found for {entity_id}", version=version,
                )
            result = self._restore(cursor, entity_id, dict(snapshot), expected_updated_at)

        if result["success"]:
            logger.info(f"Switched {self.entity_name.lower()} {entity_id} to version {version}")
            result.update(entity_id=entity_id, version=version)
        return result


class EpicVersionStore(VersionStore):
    entity_name = "Epic"
    entity_table = "epics"
    version_table = "epic_versions"
    key_column = "epic_id"
    snapshot_columns = ("title", "description", "status")


class PlanningDocVersionStore(VersionStore):
    entity_name = "Planning document"
    entity_table = "planning_docs"
    version_table = "planning_doc_versions"
    key_column = "doc_id"
    snapshot_columns = ("content", "summary")


class StoryVersionStore(VersionStore):
    """
    Story fields plus the full task tree, restored with identical idx values.

    Leases on root tasks absent from the restored tree are dropped.
    """

    entity_name = "Story"
    entity_table = "stories"
    version_table = "story_versions"
    key_column = "story_id"
    snapshot_columns = ("title", "description", "status", "acceptance_criteria", "dev_notes")

    def _capture(self, cursor, entity_id):
        state = super()._capture(cursor, entity_id)
        if state is None:
            return None
        tree = task_tree.read_tree(cursor, entity_id)
        state["tasks_snapshot"] = json.dumps([root.model_dump() for root in tree])
        return state

    def _restore(self, cursor, entity_id, snapshot, expected_updated_at):
        result = super()._restore(cursor, entity_id, snapshot, expected_updated_at)
        if not result["success"]:
            return result

        roots = [RootTask.model_validate(item) for item in json.loads(snapshot["tasks_snapshot"])]
        task_tree.delete_tree(cursor, entity_id)
        indices = task_tree.write_tree(cursor, entity_id, roots, utc_timestamp())

        # Leases may only point at root tasks that exist after the restore
        placeholders = ", ".join("?" for _ in indices)
        cursor.execute(
            f"DELETE FROM reservations WHERE story_id = ? AND task_idx NOT IN ({placeholders})",
            (entity_id, *indices),
        )
        result["tasks_restored"] = len(roots)
        result["leases_dropped"] = cursor.rowcount
        return result


VERSION_STORES = {
    VersionedEntity.EPIC: EpicVersionStore,
    VersionedEntity.STORY: StoryVersionStore,
    VersionedEntity.PLANNING_DOC: PlanningDocVersionStore,
}


def get_version_store(entity_type: str, database: "StoryDatabase") -> VersionStore:
    """
    Instantiate the store for an entity type name.

    Raises:
        ValueError: unknown entity type
    """
    return VERSION_STORES[VersionedEntity(entity_type)](database)
