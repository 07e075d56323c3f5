"""
HTTP API for the lead enrichment service
Creates bulk jobs from uploads, triggers processing and recovery, and reports health
"""
import json
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, field_validator

from config import get_settings
from exporter import export_job_csv
from input_handler import InputValidationError, detect_file_format
from main import EnrichmentService
from models import SOURCE_FORMATS


class CreateJobRequest(BaseModel):
    """Upload to turn into a bulk job; either raw content or already-structured records"""
    name: Optional[str] = None
    source_format: Optional[str] = None
    content: Optional[str] = None
    records: Optional[List[Dict[str, Any]]] = None
    process: bool = True

    @field_validator("source_format")
    @classmethod
    def validate_source_format(cls, v):
        if v is not None and v not in SOURCE_FORMATS:
            raise ValueError(f"Source format must be one of {SOURCE_FORMATS}")
        return v


class JobResponse(BaseModel):
    """Response model for job creation"""
    job_id: str
    status: str
    message: str
    details: dict


class JobStatusResponse(BaseModel):
    """Response model for job status"""
    job_id: str
    name: str
    status: str
    source_format: str
    progress: int
    total_records: int
    successful: int
    failed: int
    duplicates_found: int
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    processing: bool = False


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def get_service(request: Request) -> EnrichmentService:
    service = getattr(request.app.state, "service", None)
    if service is None or not service.is_ready:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


async def _import_job(svc: EnrichmentService, content, source_format: Optional[str],
                      name: Optional[str], process: bool) -> JobResponse:
    try:
        result, job = await svc.import_content(content, source_format, name)
    except InputValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to create job: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to create job: {str(e)}")

    details = {
        "stats": result.stats.model_dump(),
        "warnings": result.warnings,
        "errors": [error.model_dump() for error in result.errors],
    }
    if job is None:
        raise HTTPException(status_code=422, detail={"message": "No valid records", **details})

    if process:
        svc.processor.schedule(job.id)
    logger.info(f"Created job {job.id} via API ({job.total_records} records)")

    return JobResponse(
        job_id=job.id,
        status=job.status,
        message="Job created and scheduled." if process else "Job created.",
        details={"source_format": job.source_format, "created_at": _iso(job.created_at), **details},
    )


def create_app(service: Optional[EnrichmentService] = None) -> FastAPI:
    """
    Build the FastAPI application

    Args:
        service: Already-configured service to serve. When omitted, the app
            creates its own on startup, runs its monitor and cleans it up on
            shutdown.

    Returns:
        FastAPI app
    """
    owns_service = service is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Lead Enrichment API Service")
        app.state.service = service or EnrichmentService()
        await app.state.service.initialize()
        if owns_service:
            app.state.service.monitor.start()
        try:
            yield
        finally:
            logger.info("Shutting down Lead Enrichment API Service")
            if owns_service:
                await app.state.service.cleanup()

    app = FastAPI(
        title="Lead Enrichment API",
        description="Bulk lead import, enrichment job control and health monitoring",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/ping")
    async def ping():
        """Simple ping endpoint to check service availability"""
        return {
            "ping": "pong",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": get_settings().service_name,
        }

    @app.get("/health")
    async def health_check(svc: EnrichmentService = Depends(get_service)):
        """Storage, processor and circuit breaker health"""
        report = await svc.monitor.get_system_health()
        if report["status"] != "healthy":
            raise HTTPException(status_code=503, detail=report)
        return report

    @app.get("/health/processor")
    async def processor_health(svc: EnrichmentService = Depends(get_service)):
        health = await svc.monitor.get_processor_health()
        return health.model_dump()

    @app.post("/jobs", response_model=JobResponse, status_code=201)
    async def create_job(request: CreateJobRequest, svc: EnrichmentService = Depends(get_service)):
        """
        Create a bulk job from an upload

        Processing starts in the background unless process is false.
        """
        if request.records is not None:
            content, source_format = json.dumps(request.records), "json"
        elif request.content:
            content, source_format = request.content, request.source_format
        else:
            raise HTTPException(status_code=400, detail="Provide either content or records")

        return await _import_job(svc, content, source_format, request.name, request.process)

    @app.post("/jobs/upload", response_model=JobResponse, status_code=201)
    async def upload_job(request: Request, filename: str, name: Optional[str] = None, process: bool = True,
                         svc: EnrichmentService = Depends(get_service)):
        """
        Create a bulk job from a raw file body

        The format comes from the filename suffix, falling back to the
        Content-Type header. Excel workbooks are read from their first sheet.
        """
        source_format = detect_file_format(filename, request.headers.get("content-type"))
        if source_format is None:
            raise HTTPException(
                status_code=415,
                detail="Unsupported file type. Upload a CSV, JSON, text or Excel (.xlsx) file.",
            )
        content = await request.body()
        logger.info(f"Received upload {filename} ({source_format}, {len(content)} bytes)")
        return await _import_job(svc, content, source_format, name or filename, process)

    @app.get("/jobs")
    async def list_jobs(limit: int = 50, status: Optional[str] = None,
                        svc: EnrichmentService = Depends(get_service)):
        """List recent jobs"""
        jobs = await svc.storage.get_bulk_jobs(limit=limit, status=status)
        return {
            "jobs": [
                {
                    "job_id": job.id,
                    "name": job.name,
                    "status": job.status,
                    "progress": job.progress,
                    "created_at": _iso(job.created_at),
                }
                for job in jobs
            ]
        }

    @app.get("/jobs/{job_id}", response_model=JobStatusResponse)
    async def get_job_status(job_id: str, svc: EnrichmentService = Depends(get_service)):
        """Get the status of a specific job"""
        job = await svc.storage.get_bulk_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

        return JobStatusResponse(
            job_id=job.id,
            name=job.name,
            status=job.status,
            source_format=job.source_format,
            progress=job.progress,
            total_records=job.total_records,
            successful=job.successful,
            failed=job.failed,
            duplicates_found=job.duplicates_found,
            last_error=job.last_error,
            created_at=_iso(job.created_at),
            started_at=_iso(job.started_at),
            completed_at=_iso(job.completed_at),
            processing=svc.processor.registry.is_processing(job.id),
        )

    @app.post("/jobs/recover")
    async def recover_jobs(svc: EnrichmentService = Depends(get_service)):
        """Reschedule jobs stuck in processing"""
        recovered = await svc.monitor.recover_stale_jobs()
        return {"recovered": recovered}

    @app.post("/jobs/{job_id}/process", status_code=202)
    async def process_job(job_id: str, svc: EnrichmentService = Depends(get_service)):
        """Start or resume processing of a job in the background"""
        job = await svc.storage.get_bulk_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        if svc.processor.registry.is_processing(job_id):
            raise HTTPException(status_code=409, detail=f"Job {job_id} is already being processed")

        svc.processor.schedule(job_id)
        return {"job_id": job_id, "status": "scheduled"}

    @app.get("/jobs/{job_id}/export")
    async def export_job(job_id: str, store: bool = False, svc: EnrichmentService = Depends(get_service)):
        """Completed items of a job as CSV"""
        if not await svc.storage.get_bulk_job(job_id):
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

        csv_content, row_count = await export_job_csv(svc.storage, job_id)
        filename = f"export-job-{job_id}.csv"
        if store:
            filename = svc.exports.write_export_artifact(csv_content, "job", job_id, row_count).filename

        return Response(
            content=csv_content,
            media_type="text/csv",
            headers={
                "Content-Disposition": f'attachment; filename="{filename}"',
                "X-Row-Count": str(row_count),
            },
        )

    @app.get("/exports")
    async def list_exports(svc: EnrichmentService = Depends(get_service)):
        """Stored export files, newest first"""
        return {"files": [f.model_dump(mode="json") for f in svc.exports.list_export_files()]}

    @app.get("/exports/{filename}")
    async def download_export(filename: str, svc: EnrichmentService = Depends(get_service)):
        content = svc.exports.get_export_file(filename)
        if content is None:
            raise HTTPException(status_code=404, detail="Export not found")
        return Response(
            content=content,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    return app


app = create_app()


if __name__ == "__main__":
    from main import setup_production_logging
    setup_production_logging()

    port = int(os.getenv("PORT", get_settings().health_check_port))
    host = os.getenv("HOST", get_settings().health_check_host)

    logger.info(f"Starting Lead Enrichment API Service on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="info", access_log=False)
