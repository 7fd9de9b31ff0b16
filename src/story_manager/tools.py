"""
MCP Tools Implementation for Story Manager

Provides Model Context Protocol (MCP) tools that let agents register projects,
create and edit stories, claim tasks through leases, complete work, and record
or restore versions. Every tool returns a JSON string in the same envelope:

    {"success": true, "message": "...", ...data}
    {"success": false, "message": "...", "error": "<kind>", ...context}

Business conflicts (``not_found``, ``conflict``, ``not_owner``,
``invalid_state``) come back as error envelopes. Bad arguments produce
``invalid_request``; a store that stayed busy past its timeout produces
``busy`` with ``retryable: true``. Any other store failure propagates to the
MCP transport.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

from pydantic import ValidationError

from .api import ConnectionManager
from .concurrency import utc_timestamp
from .database import StoryDatabase, StoreBusyError
from .leases import LeaseManager
from .models import (
    CreateStoryRequest, UpdateStoryRequest, ReserveTaskRequest, ReleaseTaskRequest,
    AcceptanceCriterion, FollowUpTask, NewTask, StoryStatus, VersionedEntity,
)
from .task_tree import TaskTreeManager
from .versions import get_version_store

logger = logging.getLogger(__name__)

ENTITY_TYPES = [entity.value for entity in VersionedEntity]


class BaseTool(ABC):
    """
    Abstract base class for MCP tools with database and WebSocket integration.

    Holds the store and the core managers built on it, and provides the JSON
    envelope helpers and non-blocking event broadcasting shared by all tools.
    """

    def __init__(self, database: StoryDatabase, websocket_manager: ConnectionManager):
        """
        Args:
            database: StoryDatabase instance for data operations
            websocket_manager: ConnectionManager for real-time broadcasting
        """
        self.db = database
        self.websocket_manager = websocket_manager
        self.tasks = TaskTreeManager(database)
        self.leases = LeaseManager(database)

    @abstractmethod
    async def apply(self, **kwargs) -> str:
        """Run the tool and return a JSON string."""
        pass

    def _format_success_response(self, message: str, **kwargs) -> str:
        response = {
            "success": True,
            "message": message,
            **kwargs
        }
        return json.dumps(response)

    def _format_error_response(self, message: str, **kwargs) -> str:
        response = {
            "success": False,
            "message": message,
            **kwargs
        }
        return json.dumps(response)

    def _format_result(self, result: Dict[str, Any], message: str) -> str:
        """Wrap a core result dictionary in the tool envelope."""
        data = {key: value for key, value in result.items() if key not in ("success", "message")}
        if result["success"]:
            return self._format_success_response(message, **data)
        return self._format_error_response(result.get("message", message), **data)

    def _format_invalid_request(self, error: Any) -> str:
        if isinstance(error, ValidationError):
            details = "; ".join(
                f"{'.'.join(str(part) for part in item['loc']) or 'input'}: {item['msg']}"
                for item in error.errors()
            )
        else:
            details = str(error)
        return self._format_error_response(f"Invalid request: {details}", error="invalid_request")

    def _format_busy_response(self, error: StoreBusyError) -> str:
        logger.warning(f"{type(self).__name__} gave up waiting for the database: {error}")
        return self._format_error_response(
            "Database is busy, retry the request", error="busy", retryable=True,
        )

    async def _broadcast_event(self, event_type: str, **event_data):
        """
        Broadcast an event to WebSocket clients.

        Broadcast failures are logged and never affect the tool result.
        """
        try:
            event = {
                "type": event_type,
                "timestamp": utc_timestamp(),
                **event_data
            }
            await self.websocket_manager.broadcast(event)
        except Exception as e:
            logger.warning(f"Failed to broadcast event {event_type}: {e}")

    async def _broadcast_expired(self, expired: List[Dict[str, Any]]):
        for lease in expired:
            await self._broadcast_event(
                "reservation.expired",
                story_id=lease["story_id"],
                task_idx=lease["task_idx"],
                agent=lease["agent"],
            )


# Projects and epics


class RegisterProjectTool(BaseTool):
    """Create or update a project record."""

    async def apply(self, project_id: str, name: str, root_path: Optional[str] = None,
                    config: Optional[Dict[str, Any]] = None) -> str:
        if not project_id or not project_id.strip():
            return self._format_invalid_request("project_id cannot be empty")
        if not name or not name.strip():
            return self._format_invalid_request("name cannot be empty")
        if config is not None and not isinstance(config, dict):
            return self._format_invalid_request("config must be an object")
        try:
            result = self.db.register_project(project_id.strip(), name.strip(), root_path, config)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        await self._broadcast_event("project.registered", project_id=result["project_id"])
        return self._format_result(result, f"Registered project {result['project_id']}")


class GetProjectContextTool(BaseTool):
    """Project information, statistics and stories grouped by status."""

    async def apply(self, project_id: str) -> str:
        try:
            result = self.db.get_project_context(project_id)
        except StoreBusyError as e:
            return self._format_busy_response(e)
        return self._format_result(result, f"Context for project {project_id}")


class UpdateEpicTool(BaseTool):
    """Create an epic or update the fields given."""

    async def apply(self, project_id: str, number: int, title: Optional[str] = None,
                    description: Optional[str] = None, status: Optional[str] = None) -> str:
        if not isinstance(number, int) or number < 0:
            return self._format_invalid_request("number must be a non-negative integer")
        try:
            result = self.db.upsert_epic(project_id, number, title, description, status)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event("epic.updated", project_id=project_id, epic_id=result["epic_id"])
        return self._format_result(result, f"Saved epic {number} of project {project_id}")


class ListEpicsTool(BaseTool):

    async def apply(self, project_id: str) -> str:
        try:
            epics = self.db.list_epics(project_id)
        except StoreBusyError as e:
            return self._format_busy_response(e)
        return self._format_success_response(f"Found {len(epics)} epics", epics=epics)


class GetEpicTool(BaseTool):

    async def apply(self, project_id: str, number: int) -> str:
        try:
            result = self.db.get_epic(f"{project_id}:epic-{number}")
        except StoreBusyError as e:
            return self._format_busy_response(e)
        return self._format_result(result, f"Epic {number} of project {project_id}")


class DeleteEpicTool(BaseTool):
    """Delete an epic; with ``force`` its stories are detached and kept."""

    async def apply(self, project_id: str, number: int, force: bool = False) -> str:
        try:
            result = self.db.delete_epic(project_id, number, force=force)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"] and result["deleted"]:
            await self._broadcast_event("epic.deleted", project_id=project_id, epic_id=result["epic_id"])
        return self._format_result(result, f"Deleted epic {number} of project {project_id}")


# Stories


class CreateStoryTool(BaseTool):
    """
    Create a story with acceptance criteria and an initial task tree.

    Tasks are ``{"description": str, "subtasks": [str]}`` objects; their
    indices are assigned in list order starting at 1.
    """

    async def apply(self, project_id: str, epic_number: int, key: str, title: str,
                    description: Optional[str] = None,
                    acceptance_criteria: Optional[List[Dict[str, Any]]] = None,
                    tasks: Optional[List[Dict[str, Any]]] = None,
                    dev_notes: Optional[str] = None) -> str:
        try:
            request = CreateStoryRequest(
                project_id=project_id,
                epic_number=epic_number,
                key=key,
                title=title,
                description=description,
                acceptance_criteria=acceptance_criteria or [],
                tasks=tasks or [],
                dev_notes=dev_notes,
            )
            result = self.db.create_story(
                request.project_id, request.epic_number, request.key, request.title,
                description=request.description,
                acceptance_criteria=request.acceptance_criteria,
                tasks=request.tasks,
                dev_notes=request.dev_notes,
            )
        except ValidationError as e:
            return self._format_invalid_request(e)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event("story.created", story_id=result["story_id"], project_id=project_id)
        return self._format_result(result, f"Created story {project_id}:{key}")


class GetStoryContextTool(BaseTool):
    """Full story context including task tree, progress and version token."""

    async def apply(self, story_id: str) -> str:
        try:
            result = self.db.get_story_context(story_id)
        except StoreBusyError as e:
            return self._format_busy_response(e)
        return self._format_result(result, f"Context for story {story_id}")


class GetStorySummaryTool(BaseTool):

    async def apply(self, story_id: str) -> str:
        try:
            result = self.db.get_story_summary(story_id)
        except StoreBusyError as e:
            return self._format_busy_response(e)
        return self._format_result(result, f"Summary for story {story_id}")


class ListStoriesTool(BaseTool):

    async def apply(self, project_id: str, status: Optional[str] = None,
                    epic_number: Optional[int] = None, limit: int = 50, offset: int = 0) -> str:
        if status is not None and status not in [s.value for s in StoryStatus]:
            return self._format_invalid_request(f"Unknown status '{status}'")
        if limit <= 0 or offset < 0:
            return self._format_invalid_request("limit must be positive and offset non-negative")
        try:
            stories = self.db.list_stories(project_id, status, epic_number, limit, offset)
        except StoreBusyError as e:
            return self._format_busy_response(e)
        return self._format_success_response(f"Found {len(stories)} stories", stories=stories)


class GetNextStoryTool(BaseTool):
    """The longest-waiting story in a status, ``ready-for-dev`` by default."""

    async def apply(self, project_id: str, status: str = StoryStatus.READY_FOR_DEV.value) -> str:
        if status not in [s.value for s in StoryStatus]:
            return self._format_invalid_request(f"Unknown status '{status}'")
        try:
            result = self.db.get_next_story(project_id, status)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if not result["found"]:
            return self._format_result(result, f"No {status} stories in project {project_id}")
        return self._format_result(result, f"Next story is {result['story']['id']}")


class UpdateStoryTool(BaseTool):
    """
    Guarded partial story update.

    Pass the ``updated_at`` value from the last read as ``expected_updated_at``
    to be told about concurrent edits instead of overwriting them.
    """

    async def apply(self, story_id: str, title: Optional[str] = None,
                    description: Optional[str] = None, status: Optional[str] = None,
                    epic_number: Optional[int] = None,
                    expected_updated_at: Optional[str] = None) -> str:
        try:
            request = UpdateStoryRequest(
                title=title,
                description=description,
                status=status,
                epic_number=epic_number,
                expected_updated_at=expected_updated_at,
            )
            if not request.changed_fields() and request.epic_number is None:
                return self._format_invalid_request("No fields to update")
            result = self.db.update_story(
                story_id,
                epic_number=request.epic_number,
                expected_updated_at=request.expected_updated_at,
                **request.changed_fields(),
            )
        except ValidationError as e:
            return self._format_invalid_request(e)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event("story.updated", story_id=story_id, updated_at=result["updated_at"])
        return self._format_result(result, f"Updated story {story_id}")


class UpdateStoryStatusTool(BaseTool):

    async def apply(self, story_id: str, status: str, expected_updated_at: Optional[str] = None) -> str:
        if status not in [s.value for s in StoryStatus]:
            return self._format_invalid_request(f"Unknown status '{status}'")
        try:
            result = self.db.update_story_status(story_id, status, expected_updated_at)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event(
                "story.updated", story_id=story_id, status=status, updated_at=result["updated_at"],
            )
        return self._format_result(result, f"Story {story_id} is now {status}")


class UpdateAcceptanceCriteriaTool(BaseTool):

    async def apply(self, story_id: str, acceptance_criteria: List[Dict[str, Any]],
                    expected_updated_at: Optional[str] = None) -> str:
        try:
            criteria = [AcceptanceCriterion.model_validate(item) for item in acceptance_criteria]
            result = self.db.update_acceptance_criteria(story_id, criteria, expected_updated_at)
        except ValidationError as e:
            return self._format_invalid_request(e)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event("story.updated", story_id=story_id, updated_at=result["updated_at"])
        return self._format_result(result, f"Updated acceptance criteria of story {story_id}")


class AddDevNoteTool(BaseTool):

    async def apply(self, story_id: str, note: str, section: Optional[str] = None,
                    expected_updated_at: Optional[str] = None) -> str:
        if not note or not note.strip():
            return self._format_invalid_request("note cannot be empty")
        try:
            result = self.db.add_dev_note(story_id, note, section, expected_updated_at)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event("story.updated", story_id=story_id, updated_at=result["updated_at"])
        return self._format_result(result, f"Added dev note to story {story_id}")


class AddChangelogEntryTool(BaseTool):
    """Append an entry to the story changelog; the story token is unchanged."""

    async def apply(self, story_id: str, entry: str) -> str:
        if not entry or not entry.strip():
            return self._format_invalid_request("entry cannot be empty")
        try:
            result = self.db.add_changelog_entry(story_id, entry)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event("story.changelog", story_id=story_id)
        return self._format_result(result, f"Added changelog entry to story {story_id}")


class GetChangelogTool(BaseTool):

    async def apply(self, story_id: str, limit: Optional[int] = None) -> str:
        if limit is not None and limit <= 0:
            return self._format_invalid_request("limit must be positive")
        try:
            entries = self.db.get_changelog(story_id, limit)
        except StoreBusyError as e:
            return self._format_busy_response(e)
        return self._format_success_response(
            f"Found {len(entries)} changelog entries", story_id=story_id, entries=entries,
        )


class RegisterFilesTool(BaseTool):
    """Record files a story touched, as ``{"path", "change_type"}`` objects."""

    async def apply(self, story_id: str, files: List[Dict[str, Any]]) -> str:
        if not files:
            return self._format_invalid_request("files cannot be empty")
        for item in files:
            if not isinstance(item, dict) or not str(item.get("path") or "").strip():
                return self._format_invalid_request("every file needs a non-empty path")
        try:
            result = self.db.register_files(story_id, files)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event("story.files", story_id=story_id, total_files=result["total_files"])
        return self._format_result(result, f"Registered {len(files)} files for story {story_id}")


class DeleteStoryTool(BaseTool):
    """Delete a story; refuses while root tasks are open unless ``force``."""

    async def apply(self, story_id: str, force: bool = False) -> str:
        try:
            result = self.db.delete_story(story_id, force=force)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event("story.deleted", story_id=story_id)
        return self._format_result(result, f"Deleted story {story_id}")


# Leases


class ReserveTaskTool(BaseTool):
    """
    Claim exclusive, time-bounded ownership of a root task.

    A live lease held by another agent yields ``conflict`` with
    ``reserved_by`` and ``expires_at`` so the caller can pick other work.
    """

    async def apply(self, story_id: str, task_idx: int, agent: str, ttl_seconds: int = 1800) -> str:
        try:
            request = ReserveTaskRequest(
                story_id=story_id, task_idx=task_idx, agent=agent, ttl_seconds=ttl_seconds,
            )
            expired = self.leases.sweep_expired_with_ids()
            result = self.leases.reserve(request.story_id, request.task_idx, request.agent, request.ttl_seconds)
        except ValidationError as e:
            return self._format_invalid_request(e)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        await self._broadcast_expired(expired)
        if result["success"]:
            await self._broadcast_event(
                "reservation.created",
                story_id=request.story_id,
                task_idx=request.task_idx,
                agent=request.agent,
                expires_at=result["expires_at"],
            )
            return self._format_result(result, f"Reserved task {task_idx} of story {story_id}")
        return self._format_result(result, f"Could not reserve task {task_idx} of story {story_id}")


class ReleaseTaskTool(BaseTool):

    async def apply(self, story_id: str, task_idx: int, agent: str) -> str:
        try:
            request = ReleaseTaskRequest(agent=agent)
            result = self.leases.release(story_id, task_idx, request.agent)
        except ValidationError as e:
            return self._format_invalid_request(e)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"] and result["released"]:
            await self._broadcast_event(
                "reservation.released", story_id=story_id, task_idx=task_idx, agent=request.agent,
            )
        return self._format_result(result, f"Released task {task_idx} of story {story_id}")


class ListReservationsTool(BaseTool):

    async def apply(self, project_id: Optional[str] = None, story_id: Optional[str] = None) -> str:
        try:
            reservations = self.leases.list(project_id=project_id, story_id=story_id)
        except StoreBusyError as e:
            return self._format_busy_response(e)
        return self._format_success_response(
            f"Found {len(reservations)} active reservations", reservations=reservations,
        )


# Task tree


class CompleteTaskTool(BaseTool):
    """Mark a root task or subtask done and report progress and the next task."""

    async def apply(self, story_id: str, task_idx: int, subtask_idx: Optional[int] = None,
                    note: Optional[str] = None) -> str:
        try:
            result = self.tasks.complete_task(story_id, task_idx, subtask_idx, note)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event(
                "task.completed",
                story_id=story_id,
                task_idx=task_idx,
                subtask_idx=subtask_idx,
                progress=result["progress"],
            )
        return self._format_result(result, f"Completed task {task_idx} of story {story_id}")


class AddReviewTasksTool(BaseTool):
    """Append review follow-up tasks ``{"description", "severity"}`` to a story."""

    async def apply(self, story_id: str, tasks: List[Dict[str, Any]]) -> str:
        try:
            follow_ups = [FollowUpTask.model_validate(item) for item in tasks]
            if not follow_ups:
                return self._format_invalid_request("tasks cannot be empty")
            result = self.tasks.add_follow_up_tasks(story_id, follow_ups)
        except ValidationError as e:
            return self._format_invalid_request(e)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event("tasks.added", story_id=story_id, indices=result["indices"])
        return self._format_result(result, f"Added review tasks to story {story_id}")


class AddTasksTool(BaseTool):
    """Append root tasks (with subtasks) to an existing story."""

    async def apply(self, story_id: str, tasks: List[Dict[str, Any]]) -> str:
        try:
            new_tasks = [NewTask.model_validate(item) for item in tasks]
            if not new_tasks:
                return self._format_invalid_request("tasks cannot be empty")
            result = self.tasks.create_tasks(story_id, new_tasks)
        except ValidationError as e:
            return self._format_invalid_request(e)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event("tasks.added", story_id=story_id, indices=result["indices"])
        return self._format_result(result, f"Added tasks to story {story_id}")


class GetReviewBacklogTool(BaseTool):

    async def apply(self, project_id: Optional[str] = None, story_id: Optional[str] = None,
                    limit: int = 100) -> str:
        if not project_id and not story_id:
            return self._format_invalid_request("project_id or story_id is required")
        try:
            result = self.tasks.get_review_backlog(project_id=project_id, story_id=story_id, limit=limit)
        except StoreBusyError as e:
            return self._format_busy_response(e)
        return self._format_result(result, f"Found {len(result['items'])} open review items")


class CompleteReviewItemsTool(BaseTool):

    async def apply(self, story_id: str, indices: List[int]) -> str:
        if not indices:
            return self._format_invalid_request("indices cannot be empty")
        try:
            result = self.tasks.complete_review_items(story_id, indices)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["completed"]:
            await self._broadcast_event("task.completed", story_id=story_id, indices=list(indices))
        return self._format_result(result, f"Completed {result['completed']} review items")


class SplitStoryTool(BaseTool):

    async def apply(self, story_id: str, new_key: str, title: Optional[str] = None,
                    move_task_indices: Optional[List[int]] = None) -> str:
        if not new_key or ":" in new_key:
            return self._format_invalid_request("new_key must be non-empty and cannot contain ':'")
        try:
            result = self.tasks.split_story(story_id, new_key, title, move_task_indices or [])
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event(
                "story.split", story_id=story_id, new_story_id=result["new_story_id"], moved=result["moved"],
            )
        return self._format_result(result, f"Split story {story_id}")


class MergeStoriesTool(BaseTool):

    async def apply(self, target_story_id: str, source_story_id: str, delete_source: bool = True) -> str:
        try:
            result = self.tasks.merge_stories(target_story_id, source_story_id, delete_source)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event(
                "story.merged", story_id=target_story_id, source_story_id=source_story_id,
                source_deleted=result["source_deleted"],
            )
        return self._format_result(result, f"Merged story {source_story_id} into {target_story_id}")


# Planning documents


class GetPlanningDocTool(BaseTool):

    async def apply(self, project_id: str, type: str, format: str = "full") -> str:
        if format not in ("full", "summary"):
            return self._format_invalid_request("format must be 'full' or 'summary'")
        try:
            result = self.db.get_planning_doc(project_id, type, format)
        except StoreBusyError as e:
            return self._format_busy_response(e)
        return self._format_result(result, f"Planning document {type} of project {project_id}")


class UpdatePlanningDocTool(BaseTool):
    """Write a planning document, optionally regenerating its summary."""

    async def apply(self, project_id: str, type: str, content: str, generate_summary: bool = False,
                    expected_updated_at: Optional[str] = None) -> str:
        if not type or not type.strip():
            return self._format_invalid_request("type cannot be empty")
        if content is None:
            return self._format_invalid_request("content is required")
        try:
            result = self.db.update_planning_doc(project_id, type, content, generate_summary, expected_updated_at)
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event("planning_doc.updated", doc_id=result["doc_id"], updated_at=result["updated_at"])
        return self._format_result(result, f"Updated planning document {type} of project {project_id}")


# Versions


class SnapshotVersionTool(BaseTool):
    """Record the current state of an epic, story or planning document under a label."""

    async def apply(self, entity_type: str, entity_id: str, version: str) -> str:
        if entity_type not in ENTITY_TYPES:
            return self._format_invalid_request(f"entity_type must be one of: {', '.join(ENTITY_TYPES)}")
        if not version or not version.strip():
            return self._format_invalid_request("version cannot be empty")
        try:
            result = get_version_store(entity_type, self.db).snapshot(entity_id, version.strip())
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event(
                "version.snapshot", entity_type=entity_type, entity_id=entity_id, version=result["version"],
            )
        return self._format_result(result, f"Recorded version {version} of {entity_id}")


class ListVersionsTool(BaseTool):

    async def apply(self, entity_type: str, entity_id: str) -> str:
        if entity_type not in ENTITY_TYPES:
            return self._format_invalid_request(f"entity_type must be one of: {', '.join(ENTITY_TYPES)}")
        try:
            result = get_version_store(entity_type, self.db).list_versions(entity_id)
        except StoreBusyError as e:
            return self._format_busy_response(e)
        return self._format_result(result, f"Found {len(result['versions'])} versions of {entity_id}")


class SwitchVersionTool(BaseTool):
    """
    Restore an entity to a recorded version.

    Unconditional unless ``expected_updated_at`` is given; the entity's token
    changes either way.
    """

    async def apply(self, entity_type: str, entity_id: str, version: str,
                    expected_updated_at: Optional[str] = None) -> str:
        if entity_type not in ENTITY_TYPES:
            return self._format_invalid_request(f"entity_type must be one of: {', '.join(ENTITY_TYPES)}")
        try:
            result = get_version_store(entity_type, self.db).switch_version(
                entity_id, version, expected_updated_at,
            )
        except StoreBusyError as e:
            return self._format_busy_response(e)

        if result["success"]:
            await self._broadcast_event(
                "version.switched", entity_type=entity_type, entity_id=entity_id,
                version=version, updated_at=result["updated_at"],
            )
        return self._format_result(result, f"Switched {entity_id} to version {version}")


AVAILABLE_TOOLS = {
    "register_project": RegisterProjectTool,
    "get_project_context": GetProjectContextTool,
    "update_epic": UpdateEpicTool,
    "list_epics": ListEpicsTool,
    "get_epic": GetEpicTool,
    "delete_epic": DeleteEpicTool,
    "create_story": CreateStoryTool,
    "get_story_context": GetStoryContextTool,
    "get_story_summary": GetStorySummaryTool,
    "list_stories": ListStoriesTool,
    "get_next_story": GetNextStoryTool,
    "update_story": UpdateStoryTool,
    "update_story_status": UpdateStoryStatusTool,
    "update_acceptance_criteria": UpdateAcceptanceCriteriaTool,
    "add_dev_note": AddDevNoteTool,
    "add_changelog_entry": AddChangelogEntryTool,
    "get_changelog": GetChangelogTool,
    "register_files": RegisterFilesTool,
    "delete_story": DeleteStoryTool,
    "reserve_task": ReserveTaskTool,
    "release_task": ReleaseTaskTool,
    "list_reservations": ListReservationsTool,
    "complete_task": CompleteTaskTool,
    "add_tasks": AddTasksTool,
    "add_review_tasks": AddReviewTasksTool,
    "get_review_backlog": GetReviewBacklogTool,
    "complete_review_items": CompleteReviewItemsTool,
    "split_story": SplitStoryTool,
    "merge_stories": MergeStoriesTool,
    "get_planning_doc": GetPlanningDocTool,
    "update_planning_doc": UpdatePlanningDocTool,
    "snapshot_version": SnapshotVersionTool,
    "list_versions": ListVersionsTool,
    "switch_version": SwitchVersionTool,
}


def create_tool_instance(tool_name: str, database: StoryDatabase,
                         websocket_manager: ConnectionManager) -> BaseTool:
    """
    Factory function to create tool instances with dependencies.

    Raises:
        KeyError: If tool_name is not found in AVAILABLE_TOOLS
    """
    if tool_name not in AVAILABLE_TOOLS:
        raise KeyError(f"Unknown tool '{tool_name}'. Available tools: {list(AVAILABLE_TOOLS.keys())}")

    tool_class = AVAILABLE_TOOLS[tool_name]
    return tool_class(database, websocket_manager)
