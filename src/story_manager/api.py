"""
FastAPI Backend with WebSocket Manager for Story Manager

Provides REST endpoints for story reads and task reservations, plus real-time
WebSocket broadcasting of the events MCP tools emit. The database location
comes from ``STORY_MANAGER_DB_PATH`` (see ``config.load_settings``).
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Dict, Any, List, Optional, Set

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .concurrency import utc_timestamp
from .config import load_settings
from .database import StoryDatabase, StoreBusyError
from .leases import LeaseManager
from .models import (
    ErrorKind, HealthResponse, LeaseRequest, ReleaseTaskRequest, ReservationResponse,
)

logger = logging.getLogger(__name__)

# Global database instance for dependency injection
db_instance: Optional[StoryDatabase] = None

STATUS_CODES = {
    ErrorKind.NOT_FOUND.value: 404,
    ErrorKind.CONFLICT.value: 409,
    ErrorKind.NOT_OWNER.value: 403,
    ErrorKind.INVALID_STATE.value: 400,
}


class ConnectionManager:
    """
    WebSocket connection manager with parallel broadcasting.

    Failed sends drop the connection from the registry without affecting
    delivery to other clients.
    """

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self._connection_lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        """Accept new WebSocket connection and add to active connections."""
        await websocket.accept()
        async with self._connection_lock:
            self.active_connections.add(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket):
        async with self._connection_lock:
            self.active_connections.discard(websocket)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, event_data: Dict[str, Any]):
        """
        Send an event to every connected client in parallel.

        Args:
            event_data: Event data to broadcast (JSON serialized)
        """
        if not self.active_connections:
            logger.debug("No active connections for broadcast")
            return

        message = json.dumps(event_data)
        async with self._connection_lock:
            send_tasks = [self._send_safe(websocket, message) for websocket in self.active_connections.copy()]

        results = await asyncio.gather(*send_tasks, return_exceptions=True)
        successful = sum(1 for result in results if result is True)
        logger.debug(f"Broadcast {event_data.get('type')}: {successful}/{len(send_tasks)} delivered")

    async def _send_safe(self, websocket: WebSocket, message: str) -> bool:
        try:
            await websocket.send_text(message)
            return True
        except Exception as e:
            logger.warning(f"Failed to send message to WebSocket: {e}")
            await self.disconnect(websocket)
            return False

    def get_connection_count(self) -> int:
        return len(self.active_connections)


connection_manager = ConnectionManager()


def set_database(database: Optional[StoryDatabase]) -> None:
    """Install the database the app serves (used by the CLI and tests)."""
    global db_instance
    db_instance = database


def get_database() -> StoryDatabase:
    """
    FastAPI dependency to provide the database instance.

    Raises:
        HTTPException: 503 if the database is not available
    """
    if db_instance is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db_instance


def _raise_for_result(result: Dict[str, Any]) -> None:
    """Map a business-error result onto the matching HTTP status."""
    if result["success"]:
        return
    detail = {key: value for key, value in result.items() if key != "success"}
    raise HTTPException(status_code=STATUS_CODES.get(result["error"], 400), detail=detail)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database on startup unless one was installed already; close it on shutdown."""
    owned = False
    if db_instance is None:
        settings = load_settings()
        set_database(StoryDatabase(
            str(settings.db_path),
            busy_timeout_ms=settings.busy_timeout_ms,
            default_lease_seconds=settings.lease_ttl_seconds,
        ))
        owned = True
        logger.info(f"Database initialized: {settings.db_path}")

    logger.info("Story Manager API starting up")
    yield

    if owned and db_instance is not None:
        db_instance.close()
        set_database(None)
        logger.info("Database connection closed")


app = FastAPI(
    title="Story Manager API",
    description="REST API with WebSocket updates for concurrent story and task management",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def _broadcast_expired(expired: List[Dict[str, Any]]):
    for lease in expired:
        await connection_manager.broadcast({
            "type": "reservation.expired",
            "timestamp": utc_timestamp(),
            "story_id": lease["story_id"],
            "task_idx": lease["task_idx"],
            "agent": lease["agent"],
        })


@app.get("/healthz", response_model=HealthResponse)
async def health_check(db: StoryDatabase = Depends(get_database)):
    """Database connectivity (checked by sweeping expired leases) and WebSocket count."""
    database_connected = True
    expired: List[Dict[str, Any]] = []
    try:
        expired = LeaseManager(db).sweep_expired_with_ids()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database_connected = False

    await _broadcast_expired(expired)
    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        database_connected=database_connected,
        active_websocket_connections=connection_manager.get_connection_count(),
        expired_reservations_swept=len(expired),
        timestamp=utc_timestamp(),
    )


@app.websocket("/ws/updates")
async def websocket_updates(websocket: WebSocket):
    """Register a client for the event stream and hold the connection open."""
    await connection_manager.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await connection_manager.disconnect(websocket)


@app.get("/api/stories/{story_id}")
async def get_story(story_id: str, db: StoryDatabase = Depends(get_database)):
    result = db.get_story_context(story_id)
    _raise_for_result(result)
    return result


@app.post("/api/stories/{story_id}/tasks/{task_idx}/reservation", response_model=ReservationResponse)
async def reserve_task(
    story_id: str,
    task_idx: int,
    request: LeaseRequest,
    db: StoryDatabase = Depends(get_database)
):
    """
    Reserve a root task for an agent.

    409 with ``reserved_by``/``expires_at`` while another agent holds it.
    """
    result = LeaseManager(db).reserve(story_id, task_idx, request.agent, request.ttl_seconds)
    _raise_for_result(result)

    await connection_manager.broadcast({
        "type": "reservation.created",
        "timestamp": utc_timestamp(),
        "story_id": story_id,
        "task_idx": task_idx,
        "agent": request.agent,
        "expires_at": result["expires_at"],
    })
    return ReservationResponse(
        success=True,
        story_id=story_id,
        task_idx=task_idx,
        agent=request.agent,
        expires_at=result["expires_at"],
    )


@app.delete("/api/stories/{story_id}/tasks/{task_idx}/reservation", response_model=ReservationResponse)
async def release_task(
    story_id: str,
    task_idx: int,
    request: ReleaseTaskRequest,
    db: StoryDatabase = Depends(get_database)
):
    """Release a reservation; 403 when another agent holds it."""
    result = LeaseManager(db).release(story_id, task_idx, request.agent)
    _raise_for_result(result)

    if result["released"]:
        await connection_manager.broadcast({
            "type": "reservation.released",
            "timestamp": utc_timestamp(),
            "story_id": story_id,
            "task_idx": task_idx,
            "agent": request.agent,
        })
    return ReservationResponse(success=True, story_id=story_id, task_idx=task_idx, agent=request.agent)


@app.get("/api/projects/{project_id}/reservations")
async def list_reservations(project_id: str, db: StoryDatabase = Depends(get_database)):
    reservations = LeaseManager(db).list(project_id=project_id)
    return {"project_id": project_id, "reservations": reservations}


@app.exception_handler(StoreBusyError)
async def busy_exception_handler(request, exc):
    logger.warning(f"Database busy while serving {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Database busy, retry the request", "retryable": True}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("story_manager.api:app", host="127.0.0.1", port=8000, log_level="info")
