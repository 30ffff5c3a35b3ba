import asyncio
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Literal, Optional, Set
from uuid import uuid4

import shapefile
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from topokorea import site_model

logger = logging.getLogger(__name__)

DATASET_PATTERN = r"^[A-Za-z0-9_\-]+$"
DEFAULT_OUTPUT_NAME = "topography.ifc"
STREAM_CHUNK_SIZE = 8192

DOCS_ENABLED = os.getenv("ENABLE_DOCS", "true").lower() == "true"
DOC_PATHS = ("/docs", "/redoc", "/openapi.json")
API_CSP = "default-src 'self'"
# Swagger UI and ReDoc pull scripts and styles from jsdelivr
DOCS_CSP = "; ".join([
    API_CSP,
    "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net",
    "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net",
    "img-src 'self' data: https:",
])

limiter = Limiter(key_func=get_remote_address)

app = FastAPI(
    title="NGII Topography API",
    description="Build IFC terrain, contour and building models from NGII map sheets.",
    docs_url="/docs" if DOCS_ENABLED else None,
    redoc_url="/redoc" if DOCS_ENABLED else None,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        serves_docs = DOCS_ENABLED and request.url.path in DOC_PATHS
        response.headers.update({
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Content-Security-Policy": DOCS_CSP if serves_docs else API_CSP,
        })
        return response


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("ALLOWED_ORIGINS", "*").split(","),
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)

ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "*").split(",")
if ALLOWED_HOSTS != ["*"]:
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=ALLOWED_HOSTS)


class GenerateRequest(BaseModel):
    datasets: List[str] = Field(
        ...,
        min_length=1,
        max_length=20,
        description="NGII map sheet folders under the server data root",
    )
    resolution: int = Field(0, ge=0, le=20, description="Terrain grid coarseness index (0 = coarsest spacing)")
    z_interval: int = Field(10, ge=1, le=100, description="Contour interval in meters")
    roof_type: Literal["flat", "parapet"] = Field("flat", description="Roof type of the building masses")
    remove_under_area: float = Field(0.0, ge=0, description="Skip building footprints smaller than this (m²)")
    include_terrain_box: bool = Field(True, description="Include the closed terrain solid")
    include_contours: bool = Field(True, description="Include contour curves and blocks")
    include_buildings: bool = Field(True, description="Include building masses")
    include_streets: bool = Field(True, description="Include draped streets")
    include_water: bool = Field(True, description="Include water surfaces")
    include_parks: bool = Field(True, description="Include park markers")
    output_name: str = Field(
        DEFAULT_OUTPUT_NAME,
        max_length=100,
        pattern=r"^[A-Za-z0-9_\-. ]+$",
        description="Suggested filename for the generated IFC file",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "datasets": ["37612001"],
                "z_interval": 5,
                "roof_type": "parapet",
                "output_name": "gangnam.ifc",
            }
        }
    )

    @model_validator(mode='after')
    def validate_dataset_names(self):
        bad = [name for name in self.datasets if not re.match(DATASET_PATTERN, name)]
        if bad:
            raise ValueError(f"Invalid dataset name: {bad[0]!r}")
        return self

    @property
    def download_name(self) -> str:
        name = self.output_name or DEFAULT_OUTPUT_NAME
        return name if name.lower().endswith(".ifc") else f"{name}.ifc"

    def workflow_options(self) -> Dict:
        """Keyword arguments for run_topo_workflow"""
        return self.model_dump(exclude={"datasets", "output_name"})


class JobRecord:
    def __init__(self, output_name: str):
        self.status: str = "pending"
        self.output_name: str = output_name
        self.path: Optional[str] = None
        self.error: Optional[str] = None
        self.created_at: float = time.time()
        self.finished_at: Optional[float] = None

    def mark_finished(self, path: Optional[str] = None, error: Optional[str] = None):
        self.status = "failed" if error else "completed"
        self.path = path
        self.error = error
        self.finished_at = time.time()

    def age(self, now: float) -> float:
        return now - (self.finished_at or self.created_at)

    def as_status(self, job_id: str) -> Dict[str, str]:
        status = {"status": self.status}
        if self.status == "completed" and self.path and os.path.exists(self.path):
            status["download_url"] = f"/jobs/{job_id}/download"
            status["output_name"] = self.output_name
        if self.error:
            status["error"] = self.error
        return status


jobs: Dict[str, JobRecord] = {}
job_lock = asyncio.Lock()
_background_tasks: Set[asyncio.Task] = set()

# Read at import; tests patch the module attributes
JOB_TTL_SECONDS = float(os.getenv("JOB_TTL_SECONDS", "86400"))
JOB_MAX_COUNT = int(os.getenv("JOB_MAX_COUNT", "1000"))
CLEANUP_INTERVAL_SECONDS = float(os.getenv("CLEANUP_INTERVAL_SECONDS", "3600"))


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def _data_root() -> str:
    return os.getenv("SHP_DATA_ROOT", os.path.join(os.getcwd(), "data"))


def _resolve_datasets(names: List[str]) -> List[str]:
    """Map dataset names to folders directly under the data root."""
    root = os.path.realpath(_data_root())
    folders = []
    for name in names:
        folder = os.path.realpath(os.path.join(root, name))
        if os.path.dirname(folder) != root or not os.path.isdir(folder):
            raise FileNotFoundError(f"Dataset not found: {name}")
        folders.append(folder)
    return folders


def _temp_ifc_path() -> str:
    handle, path = tempfile.mkstemp(suffix=".ifc", dir=os.getenv("TMPDIR") or None)
    os.close(handle)
    return path


def _cleanup_file(path: str):
    Path(path).unlink(missing_ok=True)


async def _expire_downloaded_job(path: str, job_id: str):
    _cleanup_file(path)
    async with job_lock:
        job = jobs.get(job_id)
        if job:
            job.path = None
            job.status = "expired"


def _map_exception_to_http(exc: Exception) -> HTTPException:
    """Map workflow exceptions to HTTP exceptions"""
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, FileNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, shapefile.ShapefileException):
        return HTTPException(status_code=422, detail=f"Unreadable shapefile: {exc}")
    logger.error(f"Unexpected generation error: {exc!r}")
    return HTTPException(status_code=500, detail="Internal server error.")


def _file_stream_generator(file_path: str):
    with open(file_path, "rb") as file_handle:
        yield from iter(lambda: file_handle.read(STREAM_CHUNK_SIZE), b"")


def _ifc_download(path: str, filename: str, cleanup, *cleanup_args) -> StreamingResponse:
    """Stream an IFC file and run cleanup once it has been sent"""
    background = BackgroundTasks()
    background.add_task(cleanup, path, *cleanup_args)
    return StreamingResponse(
        _file_stream_generator(path),
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        background=background,
    )


def _drop_job(job_id: str):
    job = jobs.pop(job_id)
    if job.path:
        try:
            _cleanup_file(job.path)
        except OSError as e:
            logger.warning(f"Could not remove output of job {job_id}: {e}")


async def _prune_jobs():
    """Drop jobs past their TTL, then the oldest finished jobs over the max count"""
    now = time.time()
    async with job_lock:
        for job_id in [jid for jid, job in jobs.items() if job.age(now) > JOB_TTL_SECONDS]:
            _drop_job(job_id)

        excess = len(jobs) - JOB_MAX_COUNT
        if excess > 0:
            finished = sorted(
                (jid for jid, job in jobs.items() if job.finished_at is not None),
                key=lambda jid: jobs[jid].finished_at,
            )
            for job_id in finished[:excess]:
                _drop_job(job_id)


async def _cleanup_old_jobs():
    while True:
        try:
            await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
            await _prune_jobs()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Error in job cleanup task: {e}")


async def _run_generation(request: GenerateRequest, output_path: str):
    folders = _resolve_datasets(request.datasets)
    return await run_in_threadpool(
        site_model.run_topo_workflow,
        folders,
        output_path=output_path,
        **request.workflow_options(),
    )


@app.on_event("startup")
async def startup_event():
    _spawn(_cleanup_old_jobs())


@app.on_event("shutdown")
async def shutdown_event():
    for task in _background_tasks:
        task.cancel()
    await asyncio.gather(*_background_tasks, return_exceptions=True)


@app.get("/health", summary="Health check", response_description="Health status")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


IFC_RESPONSE = {
    "description": "IFC file download",
    "content": {"application/octet-stream": {}},
}


@app.post(
    "/generate",
    summary="Generate an IFC model synchronously",
    description="Run the topography workflow on the given map sheets and stream the IFC file back.",
    responses={
        200: IFC_RESPONSE,
        400: {"description": "No usable contours or invalid options"},
        404: {"description": "Dataset not found"},
        422: {"description": "Validation error or unreadable shapefile"},
        429: {"description": "Rate limit exceeded"},
    },
)
@limiter.limit("10/minute")
async def generate_file(request: Request, body: GenerateRequest):
    tmp_path = _temp_ifc_path()
    try:
        await _run_generation(body, tmp_path)
    except Exception as exc:
        _cleanup_file(tmp_path)
        raise _map_exception_to_http(exc) from exc
    return _ifc_download(tmp_path, body.download_name, _cleanup_file)


async def _execute_job(job_id: str, request: GenerateRequest):
    async with job_lock:
        job = jobs.get(job_id)
        if job is None:
            return
        job.status = "running"

    tmp_path = _temp_ifc_path()
    try:
        await _run_generation(request, tmp_path)
    except Exception as exc:
        _cleanup_file(tmp_path)
        outcome = {"error": _map_exception_to_http(exc).detail}
    else:
        outcome = {"path": tmp_path}

    async with job_lock:
        job = jobs.get(job_id)
        if job is not None:
            job.mark_finished(**outcome)
            return

    # pruned while running
    logger.info(f"Job {job_id} was removed before it finished")
    _cleanup_file(tmp_path)


@app.post(
    "/jobs",
    summary="Queue a background job",
    description="Start the workflow in the background and return a job_id to poll.",
    responses={
        200: {"description": "Job queued"},
        422: {"description": "Validation error"},
        429: {"description": "Rate limit exceeded"},
    },
)
@limiter.limit("20/minute")
async def create_job(request: Request, body: GenerateRequest):
    job_id = str(uuid4())
    async with job_lock:
        jobs[job_id] = JobRecord(output_name=body.download_name)
    _spawn(_execute_job(job_id, body))
    return {"job_id": job_id}


@app.get(
    "/jobs/{job_id}",
    summary="Job status",
    description="Status is one of pending, running, completed, failed or expired.",
    responses={404: {"description": "Job not found"}},
)
async def job_status(job_id: str):
    async with job_lock:
        job = jobs.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found.")
        return JSONResponse(job.as_status(job_id))


@app.get(
    "/jobs/{job_id}/download",
    summary="Download a finished model",
    description="Stream the IFC file of a completed job. The job expires once the file is sent.",
    responses={
        200: IFC_RESPONSE,
        404: {"description": "Job not found"},
        409: {"description": "Job has not completed"},
        410: {"description": "Job output no longer available"},
    },
)
async def download_job(job_id: str):
    async with job_lock:
        job = jobs.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found.")
        if job.status != "completed" or not job.path:
            raise HTTPException(status_code=409, detail="Job is not ready.")
        path, output_name = job.path, job.output_name

    if not os.path.exists(path):
        raise HTTPException(status_code=410, detail="Job output expired.")
    return _ifc_download(path, output_name, _expire_downloaded_job, job_id)
