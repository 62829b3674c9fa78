"""
HTTP surface of the panel updater.

Long-running operations are exposed as server-sent-event streams: the
response body is a sequence of ``data: <json>`` frames ending with
``{"status": "finished"}``. The operation itself runs in a background task,
so a client that disconnects early loses the stream but never aborts the
pipeline.

Requests that are rejected before an operation starts get a JSON error body
(``UpdaterError.to_dict()``) with a 400, 404 or 409 status code.
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from panel_updater import __version__
from panel_updater.config import AppConfig
from panel_updater.context import UpdaterContext
from panel_updater.errors import UpdaterError
from panel_updater.logging import get_logger
from panel_updater.updates.orchestrator import (
    create_snapshot,
    delete_snapshot,
    run_version_check,
)
from panel_updater.updates.progress import QueueProgressChannel

logger = get_logger(__name__)

ERROR_STATUS_CODES = {
    "invalid_name": 400,
    "not_found": 404,
    "operation_in_progress": 409,
}

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class DeleteBackupRequest(BaseModel):
    """Body of POST /api/delete-backup."""

    model_config = ConfigDict(populate_by_name=True)

    backup_file: str = Field(alias="backupFile", description="Snapshot name")


def status_code_for(error: UpdaterError) -> int:
    """Map an error code to an HTTP status code."""
    return ERROR_STATUS_CODES.get(error.error_code, 500)


class _BackgroundTasks:
    """Keeps operation tasks referenced until they finish."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def track(self, task: asyncio.Task[Any]) -> asyncio.Task[Any]:
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Background operation raised",
                exc_info=task.exception(),
            )

    def __len__(self) -> int:
        return len(self._tasks)


def _event_stream(channel: QueueProgressChannel) -> StreamingResponse:
    return StreamingResponse(
        channel.stream(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


def create_update_routes(ctx: UpdaterContext, tasks: _BackgroundTasks) -> APIRouter:
    router = APIRouter()

    # -- version check and operations -------------------------------------------

    @router.get("/api/update-status")
    async def update_status() -> StreamingResponse:
        channel = QueueProgressChannel()
        tasks.track(asyncio.create_task(run_version_check(ctx.oracle, channel)))
        return _event_stream(channel)

    @router.get("/api/update-app")
    async def update_app() -> StreamingResponse:
        channel = QueueProgressChannel()
        tasks.track(ctx.updater.start(channel))
        return _event_stream(channel)

    @router.get("/api/rollback")
    async def rollback(backup_file: str = Query(default="", alias="backupFile")) -> StreamingResponse:
        channel = QueueProgressChannel()
        tasks.track(ctx.rollback.start(channel, backup_file))
        return _event_stream(channel)

    # -- snapshots ---------------------------------------------------------------

    @router.get("/api/list-backups")
    async def list_backups() -> list[dict[str, Any]]:
        snapshots = await asyncio.to_thread(ctx.store.list)
        return [s.model_dump(mode="json") for s in snapshots]

    @router.post("/api/create-backup", status_code=201)
    async def create_backup() -> dict[str, Any]:
        snapshot = await create_snapshot(ctx.store, ctx.lock)
        return snapshot.model_dump(mode="json")

    @router.post("/api/delete-backup")
    async def delete_backup(req: DeleteBackupRequest) -> dict[str, Any]:
        await delete_snapshot(ctx.store, ctx.lock, req.backup_file)
        return {"message": f"Backup {req.backup_file} deleted successfully."}

    return router


def create_app(
    config: AppConfig | None = None,
    *,
    context: UpdaterContext | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Application configuration; defaults are used when omitted.
        context: Prebuilt components, mainly for tests.

    Returns:
        The application.
    """
    if context is None:
        context = UpdaterContext.from_config(config or AppConfig())

    app = FastAPI(title="Panel Updater", version=__version__)
    tasks = _BackgroundTasks()
    app.state.updater = context
    app.state.background_tasks = tasks

    @app.exception_handler(UpdaterError)
    async def updater_error_handler(request: Request, exc: UpdaterError) -> JSONResponse:
        status_code = status_code_for(exc)
        log = logger.error if status_code >= 500 else logger.info
        log(
            "Request rejected",
            extra={"path": request.url.path, "status_code": status_code, "error": exc.to_dict()},
        )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    app.include_router(create_update_routes(context, tasks))

    logger.info(
        "Updater application created",
        extra={
            "root": str(context.store.root),
            "archive_dir": str(context.store.archive_dir),
        },
    )
    return app
