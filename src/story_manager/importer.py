"""
YAML Project Importer

Imports a project description (project, epics, stories, task trees) in one
transaction. Existing epics and stories are updated in place and keep their
task trees and leases; new stories get their tree created. Each story is
imported under its own savepoint so a bad story is reported in ``errors``
without aborting the rest of the import.
"""

import json
import logging
import sqlite3
from typing import Dict, Any, List

import yaml
from pydantic import ValidationError

from .concurrency import utc_timestamp, next_token, current_token
from .database import StoryDatabase
from .models import AcceptanceCriterion, NewTask, StoryStatus
from . import task_tree

logger = logging.getLogger(__name__)


def import_project(db: StoryDatabase, yaml_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Import a parsed YAML project description.

    Args:
        db: StoryDatabase instance
        yaml_data: Parsed YAML with ``project`` and ``epics`` keys

    Returns:
        Dict with import statistics and per-item error strings

    Raises:
        ValueError: For malformed top-level structure
    """
    project = yaml_data.get("project")
    if not isinstance(project, dict) or not project.get("id") or not project.get("name"):
        raise ValueError("YAML 'project' must be a mapping with 'id' and 'name'")
    if ":" in str(project["id"]):
        raise ValueError("Project id cannot contain ':'")

    epics = yaml_data.get("epics") or []
    if not isinstance(epics, list):
        raise ValueError("YAML 'epics' must be a list")

    project_id = str(project["id"])
    now = utc_timestamp()
    stats = {
        "project_id": project_id,
        "project_created": False,
        "epics_created": 0,
        "epics_updated": 0,
        "stories_created": 0,
        "stories_updated": 0,
        "tasks_created": 0,
        "errors": [],
    }

    with db.transaction() as cursor:
        stats["project_created"] = _import_project(cursor, project, now)

        for epic_data in epics:
            try:
                epic_result = _import_epic(cursor, project_id, epic_data, now)
            except (ValueError, TypeError, sqlite3.IntegrityError) as e:
                label = epic_data.get("number", "unnumbered") if isinstance(epic_data, dict) else "invalid"
                stats["errors"].append(f"Failed to import epic '{label}': {e}")
                continue
            stats["epics_created" if epic_result["created"] else "epics_updated"] += 1

            for story_data in epic_data.get("stories") or []:
                cursor.execute("SAVEPOINT import_story")
                try:
                    story_result = _import_story(cursor, project_id, epic_result["epic_id"], story_data, now)
                except (ValueError, TypeError, ValidationError, sqlite3.IntegrityError) as e:
                    cursor.execute("ROLLBACK TO SAVEPOINT import_story")
                    cursor.execute("RELEASE SAVEPOINT import_story")
                    label = story_data.get("key", "unnamed") if isinstance(story_data, dict) else "invalid"
                    stats["errors"].append(f"Failed to import story '{label}': {e}")
                    continue
                cursor.execute("RELEASE SAVEPOINT import_story")

                stats["stories_created" if story_result["created"] else "stories_updated"] += 1
                stats["tasks_created"] += story_result["tasks_created"]

    logger.info(
        f"Imported project {project_id}: {stats['stories_created']} stories created, "
        f"{stats['stories_updated']} updated, {len(stats['errors'])} errors"
    )
    return stats


def _import_project(cursor: sqlite3.Cursor, project: Dict[str, Any], now: str) -> bool:
    config = project.get("config") or {}
    if not isinstance(config, dict):
        raise ValueError("Project 'config' must be a mapping")

    cursor.execute("SELECT 1 FROM projects WHERE id = ?", (str(project["id"]),))
    created = cursor.fetchone() is None
    cursor.execute("""
        INSERT INTO projects (id, name, root_path, config, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            root_path = COALESCE(excluded.root_path, projects.root_path),
            config = excluded.config,
            updated_at = excluded.updated_at
    """, (str(project["id"]), project["name"], project.get("root_path"), json.dumps(config), now, now))
    return created


def _import_epic(cursor: sqlite3.Cursor, project_id: str, epic_data: Dict[str, Any], now: str) -> Dict[str, Any]:
    """Upsert one epic; omitted fields keep their stored values."""
    if not isinstance(epic_data, dict):
        raise ValueError("Epic data must be a mapping")
    number = epic_data.get("number")
    if not isinstance(number, int) or number < 0:
        raise ValueError("Epic 'number' must be a non-negative integer")

    epic_id = f"{project_id}:epic-{number}"
    stored = current_token(cursor, "epics", epic_id)
    if stored is None:
        cursor.execute("""
            INSERT INTO epics (id, project_id, number, title, description, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (epic_id, project_id, number, epic_data.get("title") or f"Epic {number}",
              epic_data.get("description"), epic_data.get("status") or "planned", now, now))
    else:
        cursor.execute("""
            UPDATE epics SET
                title = COALESCE(?, title),
                description = COALESCE(?, description),
                status = COALESCE(?, status),
                updated_at = ?
            WHERE id = ?
        """, (epic_data.get("title"), epic_data.get("description"), epic_data.get("status"),
              next_token(stored), epic_id))
    return {"epic_id": epic_id, "created": stored is None}


def _import_story(
    cursor: sqlite3.Cursor,
    project_id: str,
    epic_id: str,
    story_data: Dict[str, Any],
    now: str,
) -> Dict[str, Any]:
    """Create a story with its tree, or update an existing story's fields in place."""
    if not isinstance(story_data, dict):
        raise ValueError("Story data must be a mapping")
    key = str(story_data.get("key") or "").strip()
    if not key or ":" in key:
        raise ValueError("Story 'key' is required and cannot contain ':'")
    if not story_data.get("title"):
        raise ValueError(f"Story '{key}' has no title")

    status = StoryStatus(story_data.get("status") or "draft").value
    criteria: List[AcceptanceCriterion] = [
        AcceptanceCriterion.model_validate(item if isinstance(item, dict) else {"criterion": item})
        for item in story_data.get("acceptance_criteria") or []
    ]
    tasks = [
        NewTask.model_validate(item if isinstance(item, dict) else {"description": item})
        for item in story_data.get("tasks") or []
    ]
    criteria_json = json.dumps([c.model_dump() for c in criteria])

    story_id = f"{project_id}:{key}"
    stored = current_token(cursor, "stories", story_id)
    if stored is not None:
        cursor.execute("""
            UPDATE stories SET
                epic_id = ?, title = ?, description = ?, status = ?,
                acceptance_criteria = ?, dev_notes = COALESCE(?, dev_notes), updated_at = ?
            WHERE id = ?
        """, (epic_id, story_data["title"], story_data.get("description"), status,
              criteria_json, story_data.get("dev_notes"), next_token(stored), story_id))
        return {"story_id": story_id, "created": False, "tasks_created": 0}

    cursor.execute("""
        INSERT INTO stories (id, project_id, epic_id, key, title, description, status,
                             acceptance_criteria, dev_notes, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (story_id, project_id, epic_id, key, story_data["title"], story_data.get("description"),
          status, criteria_json, story_data.get("dev_notes"), now, now))
    indices = task_tree.write_tree(cursor, story_id, task_tree.build_roots(tasks, 1), now)
    return {"story_id": story_id, "created": True, "tasks_created": len(indices)}


def load_yaml_file(yaml_file_path: str) -> Dict[str, Any]:
    """
    Read a YAML file that must hold a mapping at its root.

    Raises:
        FileNotFoundError: the file does not exist
        ValueError: invalid YAML or a non-mapping root
    """
    try:
        with open(yaml_file_path, 'r', encoding='utf-8') as f:
            yaml_data = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"YAML file not found: {yaml_file_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format: {e}")

    if not isinstance(yaml_data, dict):
        raise ValueError("YAML file must contain a dictionary at root level")
    return yaml_data


def import_project_from_file(db: StoryDatabase, yaml_file_path: str) -> Dict[str, Any]:
    """Import a project from a YAML file."""
    return import_project(db, load_yaml_file(yaml_file_path))
