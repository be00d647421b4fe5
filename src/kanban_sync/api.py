"""
FastAPI Backend with Board Channels for kanban-sync

REST endpoints for users, boards, tasks, edit locks, conflicts and the
activity feed, plus a WebSocket endpoint that subscribes clients to board
channels. The application owns one BoardDatabase, one ConnectionManager and
one lock sweep worker for its whole lifetime.
"""

import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .action_log import ActionLogRecorder
from .broadcaster import ConnectionManager
from .config import Settings
from .conflicts import ConflictResolver
from .database import BoardDatabase
from .exceptions import (
    KanbanSyncError, LockConflictError, LockOwnershipError, NotFoundError,
    ValidationError, VersionConflictError,
)
from .locks import LockManager
from .models import (
    ActorRequest, BoardCreate, BoardUpdate, BoardView, HealthResponse, LockRequest,
    LockStatusResponse, MetricsResponse, ResolveConflictRequest, StatusChange,
    TaskCreate, TaskUpdate, UserCreate,
)
from .monitoring import BackgroundTasks, performance_monitor
from .tasks import BoardService, TaskService
from .version_guard import VersionGuard

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    NotFoundError: 404,
    ValidationError: 400,
    VersionConflictError: 409,
    LockOwnershipError: 403,
    LockConflictError: 423,
}


@dataclass
class BoardServices:
    """Every component of one application instance, sharing a database and broadcaster."""
    db: BoardDatabase
    connections: ConnectionManager
    action_log: ActionLogRecorder
    guard: VersionGuard
    tasks: TaskService
    boards: BoardService
    locks: LockManager
    conflicts: ConflictResolver


def build_services(db: BoardDatabase, connections: ConnectionManager,
                   settings: Settings) -> BoardServices:
    """Wire the components around one database and one connection manager."""
    action_log = ActionLogRecorder(db, connections, recent_limit=settings.recent_log_limit)
    guard = VersionGuard(db, connections)
    return BoardServices(
        db=db,
        connections=connections,
        action_log=action_log,
        guard=guard,
        tasks=TaskService(db, connections, action_log, guard),
        boards=BoardService(db, connections),
        locks=LockManager(db, connections, ttl_seconds=settings.lock_ttl_seconds),
        conflicts=ConflictResolver(db, connections, action_log),
    )


def get_services(request: Request) -> BoardServices:
    """
    FastAPI dependency providing the application's components.

    Raises:
        HTTPException: If the application has not finished starting up
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return services


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Service settings, read from the environment when omitted

    Returns:
        Configured FastAPI application
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = BoardDatabase(settings.database_path)
        logger.info(f"Database initialized: {settings.database_path}")

        services = build_services(db, ConnectionManager(), settings)
        background = BackgroundTasks(sweep_interval_seconds=settings.lock_sweep_interval_seconds)
        app.state.services = services
        app.state.background_tasks = background

        await background.start_background_tasks(services.locks)
        logger.info(
            f"kanban-sync API starting up (lock TTL {settings.lock_ttl_seconds}s, "
            f"sweep every {settings.lock_sweep_interval_seconds}s)"
        )

        yield

        try:
            await background.stop_background_tasks()
        except Exception as e:
            logger.error(f"Error stopping background tasks: {e}")
        app.state.services = None
        db.close()
        logger.info("Database connection closed")

    app = FastAPI(
        title="kanban-sync API",
        description="Collaborative kanban board with optimistic versioning, edit locks and realtime board channels",
        version=__version__,
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.services = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_exception_handlers(app)
    _register_routes(app)
    _register_websocket(app)
    return app


def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(KanbanSyncError)
    async def board_error_handler(request: Request, exc: KanbanSyncError):
        status_code = next(
            (code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 500
        )
        if status_code >= 500:
            logger.error(f"Unmapped board error on {request.url.path}: {exc}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(sqlite3.Error)
    async def database_error_handler(request: Request, exc: sqlite3.Error):
        logger.error(f"Database error on {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"error": "Database error"})

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(f"Unhandled exception on {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


def _register_routes(app: FastAPI) -> None:

    @app.get("/healthz", response_model=HealthResponse)
    async def health_check(services: BoardServices = Depends(get_services)):
        """Database reachability and current WebSocket count."""
        database_connected = True
        try:
            services.db.ping()
        except sqlite3.Error as e:
            logger.error(f"Database health check failed: {e}")
            database_connected = False

        return HealthResponse(
            status="healthy" if database_connected else "degraded",
            database_connected=database_connected,
            active_websocket_connections=services.connections.get_connection_count(),
            timestamp=datetime.now(timezone.utc).isoformat()
        )

    @app.get("/api/metrics", response_model=MetricsResponse)
    async def get_metrics(services: BoardServices = Depends(get_services)):
        lock_stats = services.locks.statistics()
        lock_stats["ttl_seconds"] = services.locks.ttl_seconds
        return MetricsResponse(
            connections=services.connections.get_connection_stats(),
            locks=lock_stats,
            conflicts={"unresolved": services.db.count_unresolved_conflicts()},
            system=performance_monitor.snapshot(),
        )

    # Users

    @app.post("/api/users", status_code=201)
    async def create_user(body: UserCreate, services: BoardServices = Depends(get_services)):
        if services.db.get_user_by_email(body.email):
            raise ValidationError(f"A user with email {body.email} already exists")
        user_id = services.db.create_user(body.name, body.email, body.role.value)
        logger.info(f"User {user_id} registered")
        return services.db.get_user(user_id)

    @app.get("/api/users")
    async def list_users(services: BoardServices = Depends(get_services)):
        return services.db.list_users()

    @app.get("/api/users/{user_id}")
    async def get_user(user_id: int, services: BoardServices = Depends(get_services)):
        user = services.db.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    # Boards

    @app.get("/api/boards")
    async def list_boards(services: BoardServices = Depends(get_services)):
        return services.boards.list()

    @app.post("/api/boards", status_code=201)
    async def create_board(body: BoardCreate, services: BoardServices = Depends(get_services)):
        return services.boards.create(body.name, body.owner_user_id, body.description)

    @app.get("/api/boards/{board_id}", response_model=BoardView)
    async def get_board(board_id: int, services: BoardServices = Depends(get_services)):
        return services.boards.view(board_id)

    @app.put("/api/boards/{board_id}")
    async def update_board(board_id: int, body: BoardUpdate,
                           services: BoardServices = Depends(get_services)):
        return services.boards.update(board_id, body.model_dump(exclude_unset=True))

    @app.delete("/api/boards/{board_id}")
    async def delete_board(board_id: int, user_id: Optional[int] = Query(None),
                           services: BoardServices = Depends(get_services)):
        stats = await services.boards.delete(board_id, user_id)
        return {"message": "Board deleted successfully", **stats}

    # Tasks

    @app.get("/api/tasks/board/{board_id}")
    async def list_board_tasks(board_id: int, services: BoardServices = Depends(get_services)):
        return services.tasks.list_board(board_id)

    @app.post("/api/tasks", status_code=201)
    async def create_task(body: TaskCreate, services: BoardServices = Depends(get_services)):
        return await services.tasks.create(
            title=body.title,
            board_id=body.board_id,
            created_by_id=body.created_by_id,
            description=body.description,
            status=body.status.value,
            priority=body.priority.value,
            assigned_user_id=body.assigned_user_id,
        )

    @app.get("/api/tasks/{task_id}")
    async def get_task(task_id: int, services: BoardServices = Depends(get_services)):
        return services.tasks.get(task_id)

    @app.put("/api/tasks/{task_id}")
    async def update_task(task_id: int, body: TaskUpdate,
                          services: BoardServices = Depends(get_services)):
        """Edit a task; send ``base_version`` to have stale edits turned into conflicts."""
        return await services.tasks.update(
            task_id, body.user_id, body.proposed_fields(), body.expected_version()
        )

    @app.delete("/api/tasks/{task_id}")
    async def delete_task(task_id: int, user_id: int = Query(...),
                          services: BoardServices = Depends(get_services)):
        return await services.tasks.delete(task_id, user_id)

    @app.patch("/api/tasks/{task_id}/status")
    async def change_task_status(task_id: int, body: StatusChange,
                                 services: BoardServices = Depends(get_services)):
        return await services.tasks.change_status(
            task_id, body.status.value, body.user_id, body.base_version
        )

    @app.patch("/api/tasks/{task_id}/assign/{assignee_id}")
    async def assign_task(task_id: int, assignee_id: int, body: ActorRequest,
                          services: BoardServices = Depends(get_services)):
        return await services.tasks.assign(task_id, assignee_id, body.user_id)

    @app.patch("/api/tasks/{task_id}/smart-assign")
    async def smart_assign_task(task_id: int, body: ActorRequest,
                                services: BoardServices = Depends(get_services)):
        return await services.tasks.smart_assign(task_id, body.user_id)

    # Locks

    @app.post("/api/locks/{task_id}/lock")
    async def acquire_task_lock(task_id: int, body: LockRequest,
                                services: BoardServices = Depends(get_services)):
        return await services.locks.acquire(task_id, body.user_id, body.user_name)

    @app.post("/api/locks/{task_id}/unlock")
    async def release_task_lock(task_id: int, body: ActorRequest,
                                services: BoardServices = Depends(get_services)):
        return await services.locks.release(task_id, body.user_id)

    @app.get("/api/locks/{task_id}", response_model=LockStatusResponse)
    async def check_task_lock(task_id: int, user_id: Optional[int] = Query(None),
                              services: BoardServices = Depends(get_services)):
        return services.locks.check(task_id, user_id)

    # Conflicts

    @app.get("/api/conflicts/user/{user_id}")
    async def list_user_conflicts(user_id: int, services: BoardServices = Depends(get_services)):
        return services.conflicts.list_open(user_id)

    @app.post("/api/conflicts/{conflict_id}/resolve")
    async def resolve_conflict(conflict_id: int, body: ResolveConflictRequest,
                               services: BoardServices = Depends(get_services)):
        return await services.conflicts.resolve(conflict_id, body.resolution, body.user_id)

    # Activity

    @app.get("/api/logs/recent")
    async def recent_logs(board_id: Optional[int] = Query(None),
                          services: BoardServices = Depends(get_services)):
        return services.action_log.recent(board_id)


def _register_websocket(app: FastAPI) -> None:

    @app.websocket("/ws/board")
    async def board_socket(websocket: WebSocket, user_id: Optional[int] = Query(None)):
        """
        Realtime board channel endpoint.

        Clients connect with ``?user_id=`` and then send JSON control messages:
        ``join-board`` / ``leave-board`` with a ``board_id``, or ``ping``.
        """
        services: Optional[BoardServices] = getattr(websocket.app.state, "services", None)
        if user_id is None or services is None:
            await websocket.close(code=1008)
            return

        manager = services.connections
        await manager.connect(websocket, user_id)
        try:
            while True:
                raw = await websocket.receive_text()
                await _handle_control_message(manager, websocket, raw)
        except WebSocketDisconnect:
            logger.info(f"WebSocket client for user {user_id} disconnected")
        except Exception as e:
            logger.error(f"WebSocket error for user {user_id}: {e}")
        finally:
            await manager.disconnect(websocket)


async def _handle_control_message(manager: ConnectionManager, websocket: WebSocket, raw: str) -> None:
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        await manager.send_personal(websocket, {"type": "error", "message": "Invalid JSON"})
        return
    if not isinstance(message, dict):
        await manager.send_personal(websocket, {"type": "error", "message": "Expected a JSON object"})
        return

    action = message.get("action")
    if action == "ping":
        await manager.send_personal(websocket, {"type": "pong"})
        return

    if action in ("join-board", "leave-board"):
        board_id = message.get("board_id")
        if not isinstance(board_id, int) or isinstance(board_id, bool):
            await manager.send_personal(websocket, {"type": "error", "message": "board_id must be an integer"})
            return
        if action == "join-board":
            await manager.join_board(websocket, board_id)
            await manager.send_personal(websocket, {"type": "joined-board", "board_id": board_id})
        else:
            await manager.leave_board(websocket, board_id)
            await manager.send_personal(websocket, {"type": "left-board", "board_id": board_id})
        return

    await manager.send_personal(websocket, {"type": "error", "message": f"Unknown action '{action}'"})


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=app.state.settings.log_level)
    uvicorn.run(
        "kanban_sync.api:app",
        host=app.state.settings.host,
        port=app.state.settings.port,
        reload=True,
        log_level="info"
    )
