import json
import time
import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from snapfetch.config import settings
from snapfetch.download_queue import parse_priority
from snapfetch.errors import AppError, RequestValidationFailed, SizeLimitError, UnsupportedPlatformError
from snapfetch.platforms import detect_platform
from snapfetch.schemas import (
    DetectResponse,
    DownloadAccepted,
    DownloadRequest,
    FileListResponse,
    FormatRequest,
    JobStatusResponse,
    QueueStatsResponse,
    UrlRequest,
)
from snapfetch.services import Services, build_services
from snapfetch.utils.logging import configure_json_logging, get_logger
from snapfetch.utils.storage import validate_filename


logger = get_logger(__name__)


def _services(request: Request) -> Services:
    return request.app.state.services


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def _sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_json_logging(settings.log_level)
        owned = services is None
        app.state.services = services or build_services(settings)
        logger.info("SnapFetch API started", extra={"context": {"staging_dir": settings.staging_dir}})
        yield
        if owned:
            app.state.services.close()

    app = FastAPI(title="SnapFetch API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s", request.method, request.url.path,
            extra={
                "context": {
                    "status": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                }
            },
        )
        return response

    @app.exception_handler(AppError)
    async def handle_app_error(_request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s: %s", exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        failure = RequestValidationFailed("Validation failed", errors)
        return JSONResponse(status_code=failure.status_code, content=failure.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
        message = "Route not found" if exc.status_code == 404 else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "code": code, "message": message})

    @app.exception_handler(Exception)
    async def handle_unexpected(_request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error")
        content: Dict[str, Any] = {"success": False, "code": "INTERNAL_ERROR", "message": "Internal server error"}
        if settings.is_development:
            content["message"] = str(exc) or content["message"]
            content["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
        return JSONResponse(status_code=500, content=content)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/api/health")
    def api_health(request: Request) -> Dict[str, Any]:
        svc = _services(request)
        try:
            queue_ok = bool(svc.redis.ping())
        except Exception as exc:  # noqa: BLE001
            logger.warning("Queue store ping failed: %s", exc)
            queue_ok = False
        return {
            "success": True,
            "status": "ok" if queue_ok else "degraded",
            "queue": "up" if queue_ok else "down",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/api/detect", response_model=DetectResponse)
    def detect(req: UrlRequest) -> DetectResponse:
        detection = detect_platform(req.url)
        if not detection.is_valid or detection.platform is None:
            raise UnsupportedPlatformError()
        return DetectResponse(platform=detection.platform.value, mediaType=detection.media_type)

    @app.post("/api/check")
    def check(req: UrlRequest, request: Request) -> Dict[str, Any]:
        return {"success": True, **_services(request).metadata.check(req.url)}

    @app.post("/api/metadata")
    def metadata(req: UrlRequest, request: Request) -> Dict[str, Any]:
        info = _services(request).metadata.extract(req.url)
        return {"success": True, "metadata": info.to_dict()}

    @app.post("/api/formats")
    def formats(req: UrlRequest, request: Request) -> Dict[str, Any]:
        info = _services(request).metadata.extract(req.url)
        return {
            "success": True,
            "formats": [
                {
                    "formatId": f.format_id,
                    "extension": f.extension,
                    "resolution": f.resolution,
                    "filesize": f.filesize_mb,
                    "fps": f.fps,
                }
                for f in info.formats
            ],
        }

    @app.post("/api/filesize")
    def filesize(req: FormatRequest, request: Request) -> Dict[str, Any]:
        svc = _services(request)
        info = svc.metadata.extract(req.url)
        return {"success": True, **svc.metadata.estimate(info, req.format_id).to_dict()}

    @app.post("/api/download", status_code=202, response_model=DownloadAccepted)
    def submit_download(req: DownloadRequest, request: Request) -> DownloadAccepted:
        svc = _services(request)
        platform = svc.metadata.resolve_platform(req.url)
        if req.filename is not None:
            validate_filename(req.filename)

        info = svc.metadata.extract(req.url)
        estimate = svc.metadata.estimate(info, req.format_id)
        if not estimate.can_download:
            raise SizeLimitError(estimate.estimated_mb, estimate.max_allowed_mb)

        job = svc.queue.submit(
            req.url,
            format_id=req.format_id,
            priority=parse_priority(req.priority),
            filename=req.filename,
            platform=platform.value,
        )
        return DownloadAccepted(
            jobId=job.id,
            platform=platform.value,
            statusUrl=f"/api/download/status/{job.id}",
        )

    @app.get("/api/download/status/{job_id}", response_model=JobStatusResponse)
    def download_status(job_id: str, request: Request) -> JobStatusResponse:
        svc = _services(request)
        job = svc.queue.status(job_id)
        view = job.to_view()
        view["logs"] = svc.store.get_logs(job_id)
        return JobStatusResponse(job=view)

    @app.delete("/api/download/{job_id}")
    def cancel_download(job_id: str, request: Request) -> Dict[str, Any]:
        _services(request).queue.cancel(job_id)
        return {"success": True, "message": "Download cancelled"}

    @app.get("/api/download/cancel/{job_id}")
    def cancel_download_alias(job_id: str, request: Request) -> Dict[str, Any]:
        return cancel_download(job_id, request)

    @app.get("/api/queue/stats", response_model=QueueStatsResponse)
    def queue_stats(request: Request) -> QueueStatsResponse:
        return QueueStatsResponse(queue=_services(request).queue.stats())

    @app.post("/api/stream/download")
    async def stream_download(req: FormatRequest, request: Request) -> StreamingResponse:
        svc = _services(request)
        svc.metadata.resolve_platform(req.url)

        async def event_generator():
            async for event in svc.streams.stream(req.url, req.format_id, request.is_disconnected):
                yield _sse(event)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/api/download/file/{filename}")
    def download_file(filename: str, request: Request) -> FileResponse:
        svc = _services(request)
        path = svc.staging.get(filename)
        background = BackgroundTask(_remove_quietly, path) if svc.settings.delete_after_download else None
        return FileResponse(
            path,
            filename=path.name,
            media_type="application/octet-stream",
            background=background,
        )

    @app.get("/api/downloads/list", response_model=FileListResponse)
    def list_downloads(request: Request) -> FileListResponse:
        files = _services(request).staging.list()
        return FileListResponse(files=files, count=len(files))

    @app.delete("/api/downloads/{filename}")
    def delete_download(filename: str, request: Request) -> Dict[str, Any]:
        _services(request).staging.delete(filename)
        return {"success": True, "message": "File deleted"}

    @app.post("/api/downloads/cleanup")
    def cleanup_downloads(
        request: Request,
        hours_old: Optional[float] = Query(None, alias="hoursOld", ge=0),
    ) -> Dict[str, Any]:
        svc = _services(request)
        hours = svc.settings.staging_max_age_hours if hours_old is None else hours_old
        deleted = svc.staging.cleanup(hours)
        return {
            "success": True,
            "deletedCount": deleted,
            "message": f"Deleted {deleted} file(s) older than {hours:g} hour(s)",
        }

    return app


app = create_app()
