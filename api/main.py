import asyncio
import base64
import binascii
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import pydantic
from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from PIL import Image, ImageFilter

from common.config import LOG_FORMAT, LOG_LEVEL, SERVICE_VERSION, WEBHOOK_URL
from common.errors import JobNotFound, RedactionError, ValidationError, normalize_error
from common.job_schema import JobStatusView, job_status_view
from common.job_store import JobStore
from common.logging_config import configure_logging
from common.region_schema import (
    Base64RedactRequest,
    Base64RedactResponse,
    BatchRequest,
    BatchSubmitResponse,
    RedactRequest,
    StorageRedactRequest,
    StorageRedactResponse,
)
from common.storage import ObjectStorage, create_storage
from worker.encoder import encode_image
from worker.pipeline import redact_image
from worker.webhook import WebhookNotifier
from worker.worker import BatchOrchestrator, redact_object

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "base64,"


def _process_ms(duration_ms: float) -> str:
    return str(round(duration_ms))


def _decode_base64_image(value: str) -> bytes:
    # accept both bare base64 and data URLs (data:image/png;base64,....)
    if value.startswith("data:") and DATA_URL_PREFIX in value:
        value = value.split(DATA_URL_PREFIX, 1)[1]
    try:
        data = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Invalid base64 image data") from e
    if not data:
        raise ValidationError("Invalid base64 image data")
    return data


def create_app(
    storage: Optional[ObjectStorage] = None,
    store: Optional[JobStore] = None,
    notifier: Optional[WebhookNotifier] = None,
    default_webhook_url: Optional[str] = WEBHOOK_URL,
    setup_logging: bool = True,
) -> FastAPI:
    """Build the API; collaborators default to the configured ones."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if setup_logging:
            configure_logging(LOG_LEVEL, LOG_FORMAT)
        app.state.storage = storage or create_storage()
        app.state.store = store or JobStore()
        app.state.orchestrator = BatchOrchestrator(
            app.state.store,
            app.state.storage,
            notifier=notifier,
            default_webhook_url=default_webhook_url,
        )
        yield
        await app.state.orchestrator.shutdown()

    app = FastAPI(title="Image Redaction API", version=SERVICE_VERSION, lifespan=lifespan)

    # ---------- request tracing & errors ----------

    @app.middleware("http")
    async def trace_id_middleware(request: Request, call_next):
        request.state.trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
        response = await call_next(request)
        response.headers["X-Trace-Id"] = request.state.trace_id
        return response

    def _error_response(request: Request, error: RedactionError) -> JSONResponse:
        trace_id = getattr(request.state, "trace_id", None)
        headers = {"X-Trace-Id": trace_id} if trace_id else None
        return JSONResponse(status_code=error.status_code, content=error.to_dict(trace_id), headers=headers)

    @app.exception_handler(RedactionError)
    async def redaction_error_handler(request: Request, exc: RedactionError):
        if exc.status_code >= 500:
            logger.error("Request failed", extra={"code": exc.code, "error": exc.message, "path": request.url.path})
        return _error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [{k: v for k, v in e.items() if k in ("type", "loc", "msg")} for e in exc.errors()]
        return _error_response(request, ValidationError("Invalid request format", details=errors))

    @app.exception_handler(pydantic.ValidationError)
    async def model_validation_handler(request: Request, exc: pydantic.ValidationError):
        return _error_response(request, normalize_error(exc))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error", exc_info=exc, extra={"path": request.url.path})
        return _error_response(request, normalize_error(exc))

    # ---------- API endpoints ----------

    @app.post("/v1/redact")
    async def redact_upload(file: UploadFile = File(...), ops: str = Form(...)):
        """Redact an uploaded image; the response body is the encoded result."""
        request_data = RedactRequest.model_validate_json(ops)
        content = await file.read()
        output = request_data.output

        processed = await asyncio.to_thread(
            redact_image,
            content,
            request_data.regions,
            output.format if output else None,
            output.quality if output else None,
            file.content_type if file.content_type != "application/octet-stream" else None,
        )

        return Response(
            content=processed.buffer,
            media_type=processed.content_type,
            headers={
                "ETag": processed.etag,
                "X-Process-Ms": _process_ms(processed.processing_duration_ms),
                "Cache-Control": "private, max-age=3600",
            },
        )

    @app.post("/v1/redact/base64", response_model=Base64RedactResponse)
    async def redact_base64(request_data: Base64RedactRequest):
        content = _decode_base64_image(request_data.image)
        output = request_data.output

        processed = await asyncio.to_thread(
            redact_image,
            content,
            request_data.regions,
            output.format if output else None,
            output.quality if output else None,
        )

        return Base64RedactResponse(
            image=base64.b64encode(processed.buffer).decode("ascii"),
            format=processed.format,
            etag=processed.etag,
            width=processed.width,
            height=processed.height,
            processing_time_ms=processed.processing_duration_ms,
        )

    @app.post("/v1/redact/storage", response_model=StorageRedactResponse)
    async def redact_storage(request_data: StorageRedactRequest, request: Request):
        result = await asyncio.to_thread(redact_object, request.app.state.storage, request_data)
        return JSONResponse(
            content=result.model_dump(mode="json", exclude_none=True),
            headers={"X-Process-Ms": _process_ms(result.processing_time_ms)},
        )

    @app.post("/v1/redact/batch", status_code=202, response_model=BatchSubmitResponse)
    async def submit_batch(request_data: BatchRequest, request: Request):
        return request.app.state.orchestrator.submit_batch(request_data)

    @app.get("/v1/redact/batch/{job_id}", response_model=JobStatusView, response_model_exclude_none=True)
    def read_batch(job_id: str, request: Request):
        job = request.app.state.store.get_job(job_id)
        if not job:
            raise JobNotFound(f"Job {job_id} not found")
        return job_status_view(job)

    # ---------- health ----------

    @app.get("/health")
    def health():
        formats = {}
        probe = Image.new("RGB", (1, 1))
        for fmt in ("webp", "jpeg"):
            try:
                encode_image(probe, fmt, 80)
                formats[fmt] = True
            except RedactionError:
                formats[fmt] = False

        ok = all(formats.values())
        return JSONResponse(
            status_code=200 if ok else 503,
            content={
                "ok": ok,
                "pillow": Image.__version__,
                "formats": formats,
                "version": SERVICE_VERSION,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    @app.get("/health/ready")
    def ready():
        try:
            Image.new("RGB", (10, 10), (255, 0, 0)).filter(ImageFilter.GaussianBlur(1))
        except (OSError, ValueError) as e:
            return JSONResponse(status_code=503, content={"ready": False, "error": str(e)})
        return {"ready": True}

    @app.get("/health/live")
    def live():
        return {"alive": True}

    return app


app = create_app()
