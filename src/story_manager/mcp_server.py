"""
FastMCP Server Implementation for Story Manager

Provides the FastMCP server wrapper that registers every story manager tool
with its database and WebSocket dependencies and runs it over stdio, SSE or
streamable HTTP.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, List

import anyio
from fastmcp import FastMCP

from .api import ConnectionManager
from .database import StoryDatabase
from .tools import AVAILABLE_TOOLS, create_tool_instance

logger = logging.getLogger(__name__)

TRANSPORTS = ("stdio", "sse", "http")


class StoryManagerMCPServer:
    """
    FastMCP server wrapper with lifecycle management and tool registration.
    """

    def __init__(
        self,
        database: StoryDatabase,
        websocket_manager: ConnectionManager,
        server_name: str = "Story Manager MCP",
        server_version: str = "1.0.0"
    ):
        """
        Args:
            database: StoryDatabase instance for data operations
            websocket_manager: ConnectionManager for real-time broadcasting
            server_name: Name identifier for the MCP server
            server_version: Version string for server identification
        """
        self.database = database
        self.websocket_manager = websocket_manager
        self.server_name = server_name
        self.server_version = server_version
        self.mcp_server: Optional[FastMCP] = None

        self._server_instructions = (
            f"{server_name} lets multiple agents share one planning model of projects, "
            "epics, stories and tasks. Reserve a task before working on it and release it "
            "when done; pass the updated_at value you read as expected_updated_at when "
            "editing a story or planning document so concurrent edits are reported instead "
            "of overwritten; snapshot versions before large rewrites."
        )

    def _tool(self, name: str):
        return create_tool_instance(name, self.database, self.websocket_manager)

    async def _create_server(self) -> FastMCP:
        """
        Create the FastMCP instance and register every tool.

        Each registration is a thin typed closure so FastMCP can derive the
        tool's input schema from its signature.
        """
        try:
            mcp = FastMCP(
                name=self.server_name,
                version=self.server_version,
                instructions=self._server_instructions,
            )

            register_project_tool = self._tool("register_project")

            @mcp.tool
            async def register_project(project_id: str, name: str, root_path: Optional[str] = None,
                                       config: Optional[Dict[str, Any]] = None) -> str:
                """Register or update a project (id chosen by the caller)."""
                return await register_project_tool.apply(
                    project_id=project_id, name=name, root_path=root_path, config=config,
                )

            project_context_tool = self._tool("get_project_context")

            @mcp.tool
            async def get_project_context(project_id: str) -> str:
                """Get project information, statistics and stories grouped by status."""
                return await project_context_tool.apply(project_id=project_id)

            update_epic_tool = self._tool("update_epic")

            @mcp.tool
            async def update_epic(project_id: str, number: int, title: Optional[str] = None,
                                  description: Optional[str] = None, status: Optional[str] = None) -> str:
                """Create an epic or update the given fields of an existing one."""
                return await update_epic_tool.apply(
                    project_id=project_id, number=number, title=title, description=description, status=status,
                )

            list_epics_tool = self._tool("list_epics")

            @mcp.tool
            async def list_epics(project_id: str) -> str:
                """List the epics of a project in number order."""
                return await list_epics_tool.apply(project_id=project_id)

            get_epic_tool = self._tool("get_epic")

            @mcp.tool
            async def get_epic(project_id: str, number: int) -> str:
                """Get one epic with its updated_at version token."""
                return await get_epic_tool.apply(project_id=project_id, number=number)

            delete_epic_tool = self._tool("delete_epic")

            @mcp.tool
            async def delete_epic(project_id: str, number: int, force: bool = False) -> str:
                """Delete an epic. Refused while stories are attached unless force is true."""
                return await delete_epic_tool.apply(project_id=project_id, number=number, force=force)

            create_story_tool = self._tool("create_story")

            @mcp.tool
            async def create_story(project_id: str, epic_number: int, key: str, title: str,
                                   description: Optional[str] = None,
                                   acceptance_criteria: Optional[List[Dict[str, Any]]] = None,
                                   tasks: Optional[List[Dict[str, Any]]] = None,
                                   dev_notes: Optional[str] = None) -> str:
                """
                Create a story in draft status with its task tree.

                Args:
                    acceptance_criteria: [{"criterion": str, "met": bool}]
                    tasks: [{"description": str, "subtasks": [str]}], numbered from 1 in order
                """
                return await create_story_tool.apply(
                    project_id=project_id, epic_number=epic_number, key=key, title=title,
                    description=description, acceptance_criteria=acceptance_criteria,
                    tasks=tasks, dev_notes=dev_notes,
                )

            story_context_tool = self._tool("get_story_context")

            @mcp.tool
            async def get_story_context(story_id: str) -> str:
                """Get a story with its task tree, progress and updated_at version token."""
                return await story_context_tool.apply(story_id=story_id)

            story_summary_tool = self._tool("get_story_summary")

            @mcp.tool
            async def get_story_summary(story_id: str) -> str:
                """Get a condensed story view: status, current task and progress."""
                return await story_summary_tool.apply(story_id=story_id)

            list_stories_tool = self._tool("list_stories")

            @mcp.tool
            async def list_stories(project_id: str, status: Optional[str] = None,
                                   epic_number: Optional[int] = None, limit: int = 50, offset: int = 0) -> str:
                """List stories of a project, most recently updated first."""
                return await list_stories_tool.apply(
                    project_id=project_id, status=status, epic_number=epic_number, limit=limit, offset=offset,
                )

            next_story_tool = self._tool("get_next_story")

            @mcp.tool
            async def get_next_story(project_id: str, status: str = "ready-for-dev") -> str:
                """Get the story in the given status that has waited longest, with its pending task count."""
                return await next_story_tool.apply(project_id=project_id, status=status)

            update_story_tool = self._tool("update_story")

            @mcp.tool
            async def update_story(story_id: str, title: Optional[str] = None,
                                   description: Optional[str] = None, status: Optional[str] = None,
                                   epic_number: Optional[int] = None,
                                   expected_updated_at: Optional[str] = None) -> str:
                """
                Update story fields. Pass expected_updated_at to get a conflict
                instead of overwriting a concurrent edit.
                """
                return await update_story_tool.apply(
                    story_id=story_id, title=title, description=description, status=status,
                    epic_number=epic_number, expected_updated_at=expected_updated_at,
                )

            story_status_tool = self._tool("update_story_status")

            @mcp.tool
            async def update_story_status(story_id: str, status: str,
                                          expected_updated_at: Optional[str] = None) -> str:
                """Move a story to a new status (draft, ready-for-dev, in-progress, review, done, blocked)."""
                return await story_status_tool.apply(
                    story_id=story_id, status=status, expected_updated_at=expected_updated_at,
                )

            criteria_tool = self._tool("update_acceptance_criteria")

            @mcp.tool
            async def update_acceptance_criteria(story_id: str, acceptance_criteria: List[Dict[str, Any]],
                                                 expected_updated_at: Optional[str] = None) -> str:
                """Replace a story's acceptance criteria ([{"criterion": str, "met": bool}])."""
                return await criteria_tool.apply(
                    story_id=story_id, acceptance_criteria=acceptance_criteria,
                    expected_updated_at=expected_updated_at,
                )

            dev_note_tool = self._tool("add_dev_note")

            @mcp.tool
            async def add_dev_note(story_id: str, note: str, section: Optional[str] = None,
                                   expected_updated_at: Optional[str] = None) -> str:
                """Append a note to a story's dev notes, optionally under a section heading."""
                return await dev_note_tool.apply(
                    story_id=story_id, note=note, section=section, expected_updated_at=expected_updated_at,
                )

            changelog_entry_tool = self._tool("add_changelog_entry")

            @mcp.tool
            async def add_changelog_entry(story_id: str, entry: str) -> str:
                """Append an entry to a story's changelog."""
                return await changelog_entry_tool.apply(story_id=story_id, entry=entry)

            changelog_tool = self._tool("get_changelog")

            @mcp.tool
            async def get_changelog(story_id: str, limit: Optional[int] = None) -> str:
                """Get a story's changelog, oldest entry first."""
                return await changelog_tool.apply(story_id=story_id, limit=limit)

            register_files_tool = self._tool("register_files")

            @mcp.tool
            async def register_files(story_id: str, files: List[Dict[str, Any]]) -> str:
                """Record files touched by a story ([{"path": str, "change_type": str}])."""
                return await register_files_tool.apply(story_id=story_id, files=files)

            delete_story_tool = self._tool("delete_story")

            @mcp.tool
            async def delete_story(story_id: str, force: bool = False) -> str:
                """Delete a story. Refused while tasks are open unless force is true."""
                return await delete_story_tool.apply(story_id=story_id, force=force)

            reserve_tool = self._tool("reserve_task")

            @mcp.tool
            async def reserve_task(story_id: str, task_idx: int, agent: str, ttl_seconds: int = 1800) -> str:
                """
                Reserve a root task for an agent for ttl_seconds. Fails with
                reserved_by/expires_at while another agent holds a live reservation.
                """
                return await reserve_tool.apply(
                    story_id=story_id, task_idx=task_idx, agent=agent, ttl_seconds=ttl_seconds,
                )

            release_tool = self._tool("release_task")

            @mcp.tool
            async def release_task(story_id: str, task_idx: int, agent: str) -> str:
                """Release a reservation held by the agent."""
                return await release_tool.apply(story_id=story_id, task_idx=task_idx, agent=agent)

            list_reservations_tool = self._tool("list_reservations")

            @mcp.tool
            async def list_reservations(project_id: Optional[str] = None, story_id: Optional[str] = None) -> str:
                """List live reservations, newest first. Expired ones are cleared first."""
                return await list_reservations_tool.apply(project_id=project_id, story_id=story_id)

            complete_task_tool = self._tool("complete_task")

            @mcp.tool
            async def complete_task(story_id: str, task_idx: int, subtask_idx: Optional[int] = None,
                                    note: Optional[str] = None) -> str:
                """Mark a task or subtask done; returns progress and the next open task."""
                return await complete_task_tool.apply(
                    story_id=story_id, task_idx=task_idx, subtask_idx=subtask_idx, note=note,
                )

            add_tasks_tool = self._tool("add_tasks")

            @mcp.tool
            async def add_tasks(story_id: str, tasks: List[Dict[str, Any]]) -> str:
                """Append tasks ([{"description": str, "subtasks": [str]}]) to a story."""
                return await add_tasks_tool.apply(story_id=story_id, tasks=tasks)

            review_tasks_tool = self._tool("add_review_tasks")

            @mcp.tool
            async def add_review_tasks(story_id: str, tasks: List[Dict[str, Any]]) -> str:
                """Append review follow-up tasks ([{"description": str, "severity": str}])."""
                return await review_tasks_tool.apply(story_id=story_id, tasks=tasks)

            backlog_tool = self._tool("get_review_backlog")

            @mcp.tool
            async def get_review_backlog(project_id: Optional[str] = None, story_id: Optional[str] = None,
                                         limit: int = 100) -> str:
                """List open review follow-up tasks for a story or project."""
                return await backlog_tool.apply(project_id=project_id, story_id=story_id, limit=limit)

            review_items_tool = self._tool("complete_review_items")

            @mcp.tool
            async def complete_review_items(story_id: str, indices: List[int]) -> str:
                """Mark review follow-up tasks done."""
                return await review_items_tool.apply(story_id=story_id, indices=indices)

            split_tool = self._tool("split_story")

            @mcp.tool
            async def split_story(story_id: str, new_key: str, title: Optional[str] = None,
                                  move_task_indices: Optional[List[int]] = None) -> str:
                """Move tasks into a new story in the same epic."""
                return await split_tool.apply(
                    story_id=story_id, new_key=new_key, title=title, move_task_indices=move_task_indices,
                )

            merge_tool = self._tool("merge_stories")

            @mcp.tool
            async def merge_stories(target_story_id: str, source_story_id: str, delete_source: bool = True) -> str:
                """Append the source story's tasks to the target; deletes the source by default."""
                return await merge_tool.apply(
                    target_story_id=target_story_id, source_story_id=source_story_id,
                    delete_source=delete_source,
                )

            get_doc_tool = self._tool("get_planning_doc")

            @mcp.tool
            async def get_planning_doc(project_id: str, type: str, format: str = "full") -> str:
                """Read a planning document (format: full or summary)."""
                return await get_doc_tool.apply(project_id=project_id, type=type, format=format)

            update_doc_tool = self._tool("update_planning_doc")

            @mcp.tool
            async def update_planning_doc(project_id: str, type: str, content: str,
                                          generate_summary: bool = False,
                                          expected_updated_at: Optional[str] = None) -> str:
                """Write a planning document. Pass expected_updated_at to detect concurrent edits."""
                return await update_doc_tool.apply(
                    project_id=project_id, type=type, content=content,
                    generate_summary=generate_summary, expected_updated_at=expected_updated_at,
                )

            snapshot_tool = self._tool("snapshot_version")

            @mcp.tool
            async def snapshot_version(entity_type: str, entity_id: str, version: str) -> str:
                """Record a labelled version of an epic, story or planning_doc."""
                return await snapshot_tool.apply(entity_type=entity_type, entity_id=entity_id, version=version)

            list_versions_tool = self._tool("list_versions")

            @mcp.tool
            async def list_versions(entity_type: str, entity_id: str) -> str:
                """List recorded versions, newest first."""
                return await list_versions_tool.apply(entity_type=entity_type, entity_id=entity_id)

            switch_tool = self._tool("switch_version")

            @mcp.tool
            async def switch_version(entity_type: str, entity_id: str, version: str,
                                     expected_updated_at: Optional[str] = None) -> str:
                """Restore an epic, story or planning_doc to a recorded version."""
                return await switch_tool.apply(
                    entity_type=entity_type, entity_id=entity_id, version=version,
                    expected_updated_at=expected_updated_at,
                )

            logger.info(f"FastMCP server '{self.server_name}' created with {len(AVAILABLE_TOOLS)} registered tools")
            return mcp

        except Exception as e:
            logger.error(f"Failed to create FastMCP server: {e}")
            raise RuntimeError(f"MCP server creation failed: {e}") from e

    @staticmethod
    def _transport_kwargs(transport: str, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        if transport not in TRANSPORTS:
            raise ValueError(f"Unsupported transport mode: {transport}. Supported: {', '.join(TRANSPORTS)}")
        if transport == "sse":
            kwargs.setdefault("path", "/sse")
        elif transport == "http":
            kwargs.setdefault("path", "/mcp")
        return kwargs

    async def start_server(
        self,
        transport: str = "stdio",
        host: str = "127.0.0.1",
        port: int = 8000,
        **kwargs
    ) -> None:
        """
        Run the server inside an existing event loop.

        Args:
            transport: Transport mode ('stdio', 'sse', 'http')
            host: Host address for SSE/HTTP transports
            port: Port number for SSE/HTTP transports
        """
        transport = transport.lower()
        kwargs = self._transport_kwargs(transport, kwargs)

        if not self.mcp_server:
            self.mcp_server = await self._create_server()

        logger.info(f"Starting FastMCP server with {transport} transport")
        if transport == "stdio":
            await self.mcp_server.run_async()
        else:
            await self.mcp_server.run_async(transport=transport, host=host, port=port, **kwargs)

    def start_server_sync(self, transport: str = "stdio", host: str = "127.0.0.1", port: int = 8000, **kwargs):
        """Create the server and let FastMCP own the event loop."""
        transport = transport.lower()
        kwargs = self._transport_kwargs(transport, kwargs)

        if not self.mcp_server:
            self.mcp_server = anyio.run(self._create_server)

        logger.info(f"Starting FastMCP server with {transport} transport")
        if transport == "stdio":
            self.mcp_server.run()
        else:
            self.mcp_server.run(transport=transport, host=host, port=port, **kwargs)

    @asynccontextmanager
    async def lifecycle_manager(self):
        """Async context manager yielding the configured FastMCP instance."""
        try:
            if not self.mcp_server:
                self.mcp_server = await self._create_server()
            logger.info(f"FastMCP server lifecycle started for '{self.server_name}'")
            yield self.mcp_server
        except Exception as e:
            logger.error(f"FastMCP server lifecycle error: {e}")
            raise
        finally:
            logger.info(f"FastMCP server lifecycle ended for '{self.server_name}'")

    def get_server_info(self) -> Dict[str, Any]:
        return {
            "name": self.server_name,
            "version": self.server_version,
            "instructions": self._server_instructions,
            "registered_tools": list(AVAILABLE_TOOLS.keys()),
            "server_created": self.mcp_server is not None,
        }


def create_mcp_server(
    database: StoryDatabase,
    websocket_manager: ConnectionManager,
    server_name: str = "Story Manager MCP",
    server_version: str = "1.0.0"
) -> StoryManagerMCPServer:
    """Factory function to create a configured StoryManagerMCPServer instance."""
    return StoryManagerMCPServer(
        database=database,
        websocket_manager=websocket_manager,
        server_name=server_name,
        server_version=server_version
    )
