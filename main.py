"""
FastAPI application for AI-driven video continuation segments.

This service exposes the following endpoints:

* **POST /api/generate-continuation** – validates a continuation request,
  registers a background task and returns its ``taskId`` immediately. The
  upstream call runs detached; its outcome is written to the task registry.
* **GET /api/task-status/{task_id}** – reports ``processing``, the finished
  segment, or the classified failure. The first terminal read schedules the
  task for deletion a few seconds later.
* **POST /api/generate-continuation/sync** – deprecated blocking variant that
  waits for the upstream call (up to ``SYNC_TIMEOUT`` seconds) and returns the
  segment in the response.
* **POST /api/test-continuation** – same validation, canned segment, no
  upstream call.
* **POST /api/download** – bundles a list of segments into a zip archive.
* **GET /api/health** and **GET /api/debug** – liveness and route listing.
* **GET /{path}** – serves the bundled single-page app, falling back to
  ``index.html`` for client-side routes. Other methods on unknown paths get
  a JSON 404.

The upstream integration lives in ``continuation_generator.py`` and the task
registry in ``task_storage.py``. ``create_app`` wires them together so tests
can inject their own settings, registry or generator.
"""

import asyncio
import io
import json
import logging
import os
import uuid
import zipfile
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response
from fastapi.routing import APIRoute
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from config import Settings
from continuation_generator import MOCK_SEGMENT, ContinuationGenerator
from errors import (
    ApiError,
    ConfigurationError,
    ErrorKind,
    NotFoundError,
    PayloadTooLargeError,
    StaticAssetError,
    ValidationError,
    classify_error,
)
from task_storage import TaskState, TaskStorage, utcnow

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("imageUrl", "script", "voiceProfile", "product")

# Status code, error label and user-facing message for sync upstream failures.
SYNC_FAILURES = {
    ErrorKind.timeout: (
        408,
        "Request timeout",
        "The AI generation took too long to complete. Please try again.",
    ),
    ErrorKind.auth: (
        401,
        "Authentication error",
        "The AI provider rejected the configured API key.",
    ),
    ErrorKind.unknown: (
        500,
        "Failed to generate continuation",
        "The AI provider could not generate a segment. Please try again.",
    ),
}

TASK_FAILURE_LABELS = {
    ErrorKind.timeout: "Request timeout",
    ErrorKind.auth: "Authentication error",
    ErrorKind.unknown: "Processing failed",
}


class ApiModel(BaseModel):
    """Base model using camelCase field names on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerationRequest(ApiModel):
    """Request payload for the continuation endpoints.

    Fields are optional at the schema level so that missing values are
    reported as a 400 by the handler rather than a schema error.
    """

    image_url: Optional[str] = Field(None, description="Reference image for the presenter.")
    script: Optional[str] = Field(None, description="Script text for this segment.")
    voice_profile: Any = Field(None, description="Voice descriptor from the previous analysis step.")
    product: Optional[str] = Field(None, description="Product being presented.")
    previous_segment: Optional[Dict[str, Any]] = Field(None, description="Segment to continue from.")
    maintain_energy: Optional[bool] = Field(None, description="Keep the previous segment's energy.")

    def params(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class SegmentResponse(ApiModel):
    success: bool = True
    segment: Dict[str, Any]


class TaskStartedResponse(ApiModel):
    success: bool = True
    task_id: str
    status: TaskState = TaskState.processing
    message: str = "Task started. Use the task ID to check status."
    check_status_url: str


class TaskStatusResponse(ApiModel):
    status: TaskState
    message: Optional[str] = None
    started_at: Optional[datetime] = None
    success: Optional[bool] = None
    segment: Optional[Dict[str, Any]] = None
    completed_at: Optional[datetime] = None


class TaskFailedResponse(ApiModel):
    status: TaskState = TaskState.failed
    error: str
    message: str
    completed_at: Optional[datetime] = None


class MockSegmentResponse(ApiModel):
    success: bool = True
    segment: Dict[str, Any]
    debug: Dict[str, Any]


class DownloadRequest(ApiModel):
    segments: Optional[List[Dict[str, Any]]] = Field(None, description="Segments to bundle.")


SEGMENTS_ARCHIVE_NAME = "veo3-segments.zip"


def build_segments_archive(segments: List[Dict[str, Any]]) -> bytes:
    """Zip each segment as its own JSON file plus one combined file."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as z:
        for number, segment in enumerate(segments, start=1):
            z.writestr(
                f"segments/segment_{number:02d}.json",
                json.dumps(segment, indent=2, ensure_ascii=False),
            )
        z.writestr("all_segments.json", json.dumps(segments, indent=2, ensure_ascii=False))
    return buf.getvalue()


def new_task_id() -> str:
    return f"task_{uuid.uuid4().hex}"


def is_blank(value: Any) -> bool:
    """Whether a JSON value counts as absent.

    Only null, false, zero and the empty string are blank; empty objects and
    arrays are present values (a voice profile may legitimately be ``{}``).
    """
    if value is None or value is False or value == "":
        return True
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value == 0


def validate_request(req: Optional[GenerationRequest]) -> Dict[str, Any]:
    """Return the request parameters or raise ``ValidationError``."""
    params = req.params() if req is not None else {}
    missing = [name for name in REQUIRED_FIELDS if is_blank(params.get(name))]
    if missing:
        raise ValidationError(
            "Missing required fields: imageUrl, script, voiceProfile, and product are required",
            f"Missing: {', '.join(missing)}",
        )
    return params


class BodySizeLimitMiddleware:
    """Reject request bodies larger than ``max_body_bytes`` with a 413.

    A declared ``Content-Length`` is checked up front. Bodies sent without
    one (chunked transfer) are buffered up to the limit and replayed to the
    app, so the cap holds either way.
    """

    def __init__(self, app: ASGIApp, max_body_bytes: int) -> None:
        self.app = app
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        length = Headers(scope=scope).get("content-length")
        if length is not None:
            if length.isdigit() and int(length) > self.max_body_bytes:
                await self._reject(scope, receive, send)
                return
            await self.app(scope, receive, send)
            return

        chunks = []
        size = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] == "http.disconnect":
                return
            body = message.get("body", b"")
            size += len(body)
            if size > self.max_body_bytes:
                await self._reject(scope, receive, send)
                return
            chunks.append(body)
            more_body = message.get("more_body", False)

        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if not replayed:
                replayed = True
                return {"type": "http.request", "body": b"".join(chunks), "more_body": False}
            return await receive()

        await self.app(scope, replay, send)

    async def _reject(self, scope: Scope, receive: Receive, send: Send) -> None:
        exc = PayloadTooLargeError(
            "Request body too large",
            f"Request bodies are limited to {self.max_body_bytes} bytes",
        )
        response = JSONResponse(status_code=exc.status_code, content=exc.to_dict())
        await response(scope, receive, send)


def _log_task_exception(handle: asyncio.Task) -> None:
    if handle.cancelled():
        return
    exc = handle.exception()
    if exc is not None:
        logger.error("[Background] Task error: %s", exc, exc_info=exc)


def create_app(
    settings: Optional[Settings] = None,
    task_storage: Optional[TaskStorage] = None,
    generator: Optional[ContinuationGenerator] = None,
) -> FastAPI:
    """Build the application with its registry and upstream client."""
    settings = settings or Settings.from_env()
    task_storage = task_storage if task_storage is not None else TaskStorage()
    generator = generator or ContinuationGenerator(settings=settings, task_storage=task_storage)

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        logger.info("Server starting (environment: %s)", settings.app_env)
        logger.info("Build directory: %s", settings.build_dir)
        yield
        await generator.close()
        logger.info("Shut down cleanly")

    app = FastAPI(title="Continuation Segment Server", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.task_storage = task_storage
    app.state.generator = generator

    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=settings.max_body_bytes)

    # Add CORS middleware to allow frontend access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info("%s %s", request.method, request.url.path)
        return await call_next(request)

    @app.exception_handler(ApiError)
    async def api_error_handler(_request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(StaticAssetError)
    async def static_asset_error_handler(_request: Request, exc: StaticAssetError) -> PlainTextResponse:
        return PlainTextResponse(exc.message, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid request body",
                "message": "Request body must be a JSON object with imageUrl, script, voiceProfile and product",
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Global error handler: %s", exc)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": str(exc) if settings.is_development else "Something went wrong",
            },
        )

    def require_api_key() -> None:
        if not settings.openai_api_key:
            raise ConfigurationError(
                "OpenAI API key not configured",
                "Server configuration error: Missing OpenAI API key",
            )

    @app.post("/api/generate-continuation", response_model=TaskStartedResponse)
    async def generate_continuation(req: Optional[GenerationRequest] = None) -> TaskStartedResponse:
        """Start a background continuation task.

        Returns straight away with a ``taskId``; poll
        ``/api/task-status/{taskId}`` for the segment.
        """
        require_api_key()
        params = validate_request(req)

        task_id = new_task_id()
        task_storage.create(task_id, params)
        # Don't await: the request returns while the upstream call runs.
        handle = asyncio.create_task(generator.process_task(task_id, params))
        handle.add_done_callback(_log_task_exception)
        task_storage.attach(task_id, handle)
        logger.info("[API] Started background task %s", task_id)

        return TaskStartedResponse(task_id=task_id, check_status_url=f"/api/task-status/{task_id}")

    @app.post(
        "/api/generate-continuation/sync",
        response_model=SegmentResponse,
        deprecated=True,
    )
    async def generate_continuation_sync(req: Optional[GenerationRequest] = None):
        """Generate a continuation segment and wait for it.

        Kept for clients written against the blocking design. Slow upstream
        generations can approach the request budget, so prefer the task-based
        endpoint.
        """
        require_api_key()
        params = validate_request(req)
        try:
            segment = await generator.run_sync(params, timeout=settings.sync_timeout)
        except Exception as exc:
            kind = classify_error(exc)
            status_code, error, message = SYNC_FAILURES[kind]
            logger.error("[API] Continuation generation failed (%s): %s", kind.value, exc)
            return JSONResponse(status_code=status_code, content={"error": error, "message": message})
        return SegmentResponse(segment=segment)

    @app.get(
        "/api/task-status/{task_id}",
        response_model=TaskStatusResponse,
        response_model_exclude_none=True,
    )
    async def task_status(task_id: str):
        """Return the state of a background task."""
        task = task_storage.get(task_id)
        if task is None:
            raise NotFoundError("Task not found", "Invalid task ID or task expired")

        if task.status == TaskState.processing:
            return TaskStatusResponse(
                status=task.status,
                message="Task is still processing. Please check again in a few seconds.",
                started_at=task.started_at,
            )

        task_storage.schedule_cleanup(task_id, settings.task_cleanup_delay)

        if task.status == TaskState.completed:
            return TaskStatusResponse(
                status=task.status,
                success=True,
                segment=task.result,
                completed_at=task.completed_at,
            )

        failed = TaskFailedResponse(
            error=TASK_FAILURE_LABELS[task.error.kind],
            message=task.error.message,
            completed_at=task.completed_at,
        )
        return JSONResponse(status_code=500, content=jsonable_encoder(failed, by_alias=True))

    @app.post("/api/test-continuation", response_model=MockSegmentResponse)
    async def test_continuation(req: Optional[GenerationRequest] = None) -> MockSegmentResponse:
        """Exercise the request contract without calling the provider."""
        params = validate_request(req)
        return MockSegmentResponse(
            segment=MOCK_SEGMENT.model_dump(),
            debug={
                "appEnv": settings.app_env,
                **settings.env_flags(),
                "receivedFields": sorted(key for key, value in params.items() if value is not None),
            },
        )

    @app.post("/api/download", response_class=Response)
    async def download(req: Optional[DownloadRequest] = None) -> Response:
        """Bundle generated segments into a zip archive for download."""
        segments = req.segments if req is not None else None
        if not segments:
            raise ValidationError("No segments provided", "Request body must include a non-empty segments list")
        logger.info("[API] Building archive for %d segments", len(segments))
        return Response(
            content=build_segments_archive(segments),
            media_type="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{SEGMENTS_ARCHIVE_NAME}"'},
        )

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": utcnow(),
            "env": {"appEnv": settings.app_env, "port": settings.port, **settings.env_flags()},
        }

    @app.get("/api/debug")
    async def debug() -> Dict[str, Any]:
        routes = sorted(
            {route.path for route in app.routes if isinstance(route, APIRoute) and route.path.startswith("/api")}
        )
        return {
            "message": "API routes are working",
            "availableRoutes": routes,
            "timestamp": utcnow(),
        }

    # Registered last so every API route above takes precedence.
    @app.get("/{full_path:path}", include_in_schema=False)
    async def serve_app(full_path: str) -> FileResponse:
        build_dir = settings.build_dir.resolve()
        if full_path:
            candidate = (build_dir / full_path).resolve()
            if candidate.is_relative_to(build_dir) and candidate.is_file():
                return FileResponse(candidate)

        index_path = build_dir / "index.html"
        if not index_path.is_file() or not os.access(index_path, os.R_OK):
            logger.error("Error serving index.html: %s is missing or unreadable", index_path)
            raise StaticAssetError("Error loading application")
        return FileResponse(index_path)

    # Without this, other methods on unknown paths match the GET catch-all
    # above and answer 405.
    @app.api_route(
        "/{full_path:path}",
        methods=["POST", "PUT", "PATCH", "DELETE"],
        include_in_schema=False,
    )
    async def unknown_route(full_path: str, request: Request) -> JSONResponse:
        raise NotFoundError("Not found", f"Cannot {request.method} /{full_path}")

    return app


settings = Settings.from_env()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
