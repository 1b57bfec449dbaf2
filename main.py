"""
main.py

FastAPI entry point for the product extraction service.

Flow:
    POST /runs                → start a run (records + settings as JSON, PDFs as files)
    GET  /runs/{run_id}       → poll per-item progress and counts
    POST /runs/{run_id}/stop  → cancel; in-flight calls are aborted immediately
    DELETE /runs/{run_id}     → reset: stop if needed and drop all run state
    GET  /runs/{run_id}/download → Excel of the completed results

Records arrive already parsed; spreadsheet column detection happens upstream.

Production process management:
    Run under uvicorn (or Gunicorn + UvicornWorker) with ONE worker process:
    run state lives in memory in this process.
    For local dev only, python main.py still works.
"""

import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

# Ensure src/ is on the path so all module imports resolve
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "src"))

from fastapi import BackgroundTasks, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from pydantic import ValidationError as PayloadError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from batch_processor import RUN_RUNNING, BatchController, RunHandle
from config import (
    DEFAULT_CONCURRENCY,
    DEFAULT_MODEL_PROVIDER,
    MAX_CONCURRENCY,
    MAX_FILE_SIZE_MB,
    RESET_ON_STOP,
)
from errors import ValidationError
from excel_writer import build_excel, get_output_filename
from models import SCHEDULING_CHUNKED, ExtractionConfig, ProductRecord, PropertyDefinition
from pdf_processor import PdfFile
from service_client import close_http_client


# ── Logging ────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── Request payload ────────────────────────────────────────────────────────────

class PropertyIn(BaseModel):
    name: str
    description: Optional[str] = None
    expectedFormat: Optional[str] = None
    id: Optional[str] = None


class RecordIn(BaseModel):
    id: Optional[str] = None
    productName: str = ""
    articleNumber: Optional[str] = None
    url: Optional[str] = None


class RunRequest(BaseModel):
    records: list[RecordIn]
    concurrency: int = Field(DEFAULT_CONCURRENCY, le=MAX_CONCURRENCY)
    pdfEnabled: bool = False
    webEnabled: bool = True
    properties: list[PropertyIn] = []
    modelProvider: str = DEFAULT_MODEL_PROVIDER
    apiKey: str = ""
    scheduling: str = SCHEDULING_CHUNKED
    resetOnStop: bool = RESET_ON_STOP

    def to_records(self) -> list[ProductRecord]:
        return [
            ProductRecord(
                id=r.id or str(index),
                product_name=r.productName,
                article_number=r.articleNumber,
                url=r.url,
            )
            for index, r in enumerate(self.records, start=1)
        ]

    def to_config(self) -> ExtractionConfig:
        return ExtractionConfig(
            concurrency=self.concurrency,
            pdf_enabled=self.pdfEnabled,
            web_enabled=self.webEnabled,
            properties=tuple(
                PropertyDefinition(
                    name=p.name,
                    description=p.description,
                    expected_format=p.expectedFormat,
                    id=p.id,
                )
                for p in self.properties
            ),
            model_provider=self.modelProvider,
            api_key=self.apiKey,
            scheduling=self.scheduling,
            reset_on_stop=self.resetOnStop,
        )


# ── Rate Limiter ───────────────────────────────────────────────────────────────

_limiter = Limiter(key_func=get_remote_address)


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded. {exc.detail}"},
    )


# ── Upload limits ──────────────────────────────────────────────────────────────

_MAX_FILE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024


# ── Run controller ─────────────────────────────────────────────────────────────

controller = BatchController()


# ── App lifecycle ──────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Product Extraction API started.")
    yield
    stopped = controller.stop_all()
    if stopped:
        logger.info(f"Stopped {stopped} active run(s) on shutdown.")
    await close_http_client()
    logger.info("Product Extraction API shutting down.")


# ── App setup ─────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Product Data Extraction Service",
    description="Enriches product lists with AI-extracted properties from PDFs and web pages.",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = _limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)

# CORS — restrict origins in production via ALLOWED_ORIGINS env var.
_ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type"],
)


def _get_handle(run_id: str) -> RunHandle:
    handle = controller.get(run_id)
    if handle is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found.")
    return handle


# ── Routes ─────────────────────────────────────────────────────────────────────

@app.get("/health", include_in_schema=False)
async def health_check():
    """Health probe. Used by load balancers and Docker HEALTHCHECK."""
    return {"status": "ok"}


@app.post("/runs")
@_limiter.limit("20/minute")
async def start_run(
    request: Request,
    background_tasks: BackgroundTasks,
    payload: str = Form(...),
    files: Optional[list[UploadFile]] = File(None),
):
    """
    Start a batch run.

    Form fields:
        payload — JSON RunRequest (records, concurrency, properties, ...)
        files   — optional PDFs, matched to products by filename prefix
    Returns: { "run_id": "<uuid>", "total": N }
    """
    try:
        run_request = RunRequest.model_validate_json(payload)
    except PayloadError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid run payload: {exc}")

    pdf_files: list[PdfFile] = []
    for upload in files or []:
        if not upload.filename:
            raise HTTPException(status_code=400, detail="File missing filename.")

        content = await upload.read()

        if len(content) > _MAX_FILE_BYTES:
            raise HTTPException(
                status_code=413,
                detail=(
                    f"'{upload.filename}' is too large "
                    f"({len(content) // (1024*1024)} MB). "
                    f"Maximum allowed: {MAX_FILE_SIZE_MB} MB."
                ),
            )

        # PDF magic bytes validation, rejects non-PDF files early
        if not content.startswith(b"%PDF"):
            raise HTTPException(
                status_code=415,
                detail=f"'{upload.filename}' is not a valid PDF file.",
            )

        pdf_files.append(PdfFile(filename=upload.filename, data=content))

    try:
        handle = controller.start(
            run_request.to_records(),
            run_request.to_config(),
            pdf_files=pdf_files,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    background_tasks.add_task(_await_run, handle)

    logger.info(f"Run {handle.run_id} queued with {len(handle.run.records)} product(s).")
    return JSONResponse(
        content={"run_id": handle.run_id, "total": len(handle.run.records)},
        status_code=202,
    )


async def _await_run(handle: RunHandle) -> None:
    """Background coroutine that keeps the request scope until the run settles."""
    try:
        await handle.wait()
    except Exception as exc:
        logger.error(f"Run {handle.run_id} background task crashed: {exc}", exc_info=True)


@app.get("/runs/{run_id}")
async def get_status(run_id: str):
    """Poll run processing status."""
    payload = controller.status_payload(run_id)
    if payload is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found.")
    return JSONResponse(content=payload)


@app.post("/runs/{run_id}/stop")
async def stop_run(run_id: str):
    """Stop a run. Safe to call repeatedly and after the run has finished."""
    handle = _get_handle(run_id)
    controller.stop(handle)
    return JSONResponse(content=controller.status_payload(run_id))


@app.delete("/runs/{run_id}")
async def reset_run(run_id: str):
    """Stop (if running) and discard all state of a run."""
    if not controller.reset(run_id):
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found.")
    return {"message": "Run reset."}


@app.get("/runs/{run_id}/download")
async def download_excel(run_id: str):
    """
    Download the completed results as Excel.
    Only available once the run has finished (naturally or stopped).
    """
    handle = _get_handle(run_id)
    run = handle.run

    if run.status == RUN_RUNNING:
        raise HTTPException(
            status_code=409,
            detail=f"Run is not finished yet. Current status: '{run.status}'.",
        )

    excel_bytes = await asyncio.to_thread(
        build_excel, run.completed_results(), run.config.property_names
    )
    filename = get_output_filename()

    return Response(
        content=excel_bytes,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(len(excel_bytes)),
        },
    )


# ── Entry point ────────────────────────────────────────────────────────────────
# This block is for local dev only: python main.py

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
