from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from doctools_backend.blob_store import BlobStore
from doctools_backend.config import ALLOWED_CONTENT_TYPES, ALLOWED_EXTENSIONS, Settings, configure_logging
from doctools_backend.downloads import (
    content_disposition,
    reclaim_session,
    resolve_download,
    stream_and_reclaim,
)
from doctools_backend.errors import ConflictError, DocToolsError, NotFoundError, ValidationError
from doctools_backend.jobs import JobRunner
from doctools_backend.registry import SessionRegistry, SessionStatus
from doctools_backend.sweeper import CleanupSweeper
from doctools_backend.tools import CommandRunner, ToolExecutor


logger = logging.getLogger("doctools_backend.server")

NO_STORE = {"Cache-Control": "no-store"}


class ExecuteRequest(BaseModel):
    tool: str
    # Either ids in declared order, or {"file-0": id, "file-1": id, ...}.
    files: Union[list[str], dict[str, str]] = Field(default_factory=list)
    options: Optional[dict[str, Any]] = None


@dataclass
class Services:
    settings: Settings
    store: BlobStore
    registry: SessionRegistry
    executor: ToolExecutor
    jobs: JobRunner
    sweeper: CleanupSweeper


def build_services(settings: Settings, executor: ToolExecutor | None = None) -> Services:
    store = BlobStore(settings.uploads_root)
    registry = SessionRegistry(store)
    if executor is None:
        executor = ToolExecutor(
            runner=CommandRunner(settings.binaries),
            timeout_seconds=settings.tool_timeout_seconds,
        )
    jobs = JobRunner(registry, store, executor)
    sweeper = CleanupSweeper(
        registry,
        store,
        timeout_seconds=settings.session_timeout_seconds,
        retention_factor=settings.terminal_retention_factor,
        interval_seconds=settings.cleanup_interval_seconds,
        jobs=jobs,
    )
    return Services(settings=settings, store=store, registry=registry, executor=executor, jobs=jobs, sweeper=sweeper)


def get_services(request: Request) -> Services:
    return request.app.state.services


def _is_allowed_upload(filename: str, content_type: str) -> bool:
    ext = Path(filename).suffix.lower()
    ct = content_type.split(";")[0].strip().lower()
    if ct in ALLOWED_CONTENT_TYPES:
        return ext in ALLOWED_EXTENSIONS or not ext
    # Some clients label everything as octet-stream; fall back to the extension.
    return ct in ("", "application/octet-stream") and ext in ALLOWED_EXTENSIONS


def create_app(settings: Settings | None = None, *, executor: ToolExecutor | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    services = build_services(settings, executor)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        services.store.ensure_root()
        # The registry starts empty, so anything left on disk belongs to a
        # previous process and can never be downloaded.
        purged = services.store.purge_all()
        if purged:
            logger.info("Removed %d session director%s left by a previous run", purged, "y" if purged == 1 else "ies")

        task = asyncio.create_task(services.sweeper.run_forever())
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            await services.jobs.shutdown()

    app = FastAPI(title="DocTools", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DocToolsError)
    async def _doctools_error(request: Request, exc: DocToolsError) -> JSONResponse:
        if isinstance(exc, NotFoundError):
            # No detail: do not help enumerate sessions or files.
            return JSONResponse({"error": "Not found or expired."}, status_code=404)
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
        return JSONResponse({"error": exc.message or "Request failed."}, status_code=exc.http_status)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        detail = "Invalid request."
        if errors:
            first = errors[0]
            where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
            detail = f"Invalid request: {where} {first.get('msg', '')}".strip()
        return JSONResponse({"error": detail}, status_code=400)

    @app.get("/health")
    async def health(services: Services = Depends(get_services)) -> dict[str, Any]:
        return {"status": "ok", "sessions": len(services.registry), "jobs": services.jobs.active_jobs}

    @app.post("/session/create", status_code=201)
    async def create_session(services: Services = Depends(get_services)) -> JSONResponse:
        session = services.registry.create()
        logger.info("Session created: %s", session.session_id)
        return JSONResponse({"sessionId": session.session_id}, status_code=201)

    @app.post("/session/upload/{session_id}")
    async def upload(
        session_id: str,
        file: UploadFile = File(...),
        services: Services = Depends(get_services),
    ) -> JSONResponse:
        session = services.registry.get(session_id)
        sid = session.session_id
        if session.status is not SessionStatus.CREATED:
            await file.close()
            raise ConflictError("Session no longer accepts uploads.")
        try:
            filename = file.filename or ""
            content_type = file.content_type or ""
            if not filename:
                raise ValidationError("No valid file was sent.")
            if not _is_allowed_upload(filename, content_type):
                logger.warning("[%s] Upload rejected: unsupported type %s (%s)", sid, content_type, filename)
                raise ValidationError(f"Unsupported file type: {content_type or Path(filename).suffix}")

            file_id = await services.store.save_upload(
                sid,
                filename,
                file.read,
                max_bytes=services.settings.max_upload_bytes,
            )
        finally:
            await file.close()

        try:
            services.registry.add_upload(sid, file_id)
        except (ConflictError, NotFoundError):
            services.store.discard([services.store.resolve(sid, file_id)])
            raise
        logger.info("[%s] File received: %s", sid, file_id)
        return JSONResponse({"fileId": file_id})

    @app.post("/session/execute/{session_id}", status_code=202)
    async def execute(
        session_id: str,
        payload: ExecuteRequest,
        services: Services = Depends(get_services),
    ) -> JSONResponse:
        if not payload.tool.strip():
            raise ValidationError("A tool name is required.")
        session = services.jobs.submit(session_id, payload.tool.strip(), payload.files, payload.options)
        return JSONResponse(
            {"message": "Processing started.", "sessionId": session.session_id, "status": session.status.value},
            status_code=202,
        )

    @app.get("/session/status/{session_id}")
    async def status(session_id: str, services: Services = Depends(get_services)) -> JSONResponse:
        session = services.registry.get(session_id)
        return JSONResponse(session.to_public(), headers=NO_STORE)

    @app.get("/download/{session_id}/{file_name}")
    async def download(
        session_id: str,
        file_name: str,
        request: Request,
        services: Services = Depends(get_services),
    ) -> StreamingResponse:
        target = resolve_download(services.registry, services.store, session_id, file_name)
        logger.info("[%s] Starting download of %s (%d bytes)", target.session_id, file_name, target.size)
        media_type = mimetypes.guess_type(target.attachment_name)[0] or "application/octet-stream"
        headers = {
            "Content-Disposition": content_disposition(target.attachment_name),
            "Content-Length": str(target.size),
            "X-Content-Type-Options": "nosniff",
            **NO_STORE,
        }
        body = stream_and_reclaim(
            target.path,
            reclaim_session(services.registry, services.store, target.session_id),
            is_disconnected=request.is_disconnected,
        )
        return StreamingResponse(body, media_type=media_type, headers=headers)

    return app


app = create_app()


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    port = int(os.environ.get("PORT", "3000"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)
