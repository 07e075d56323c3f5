"""
Lead enrichment service orchestrator
Wires storage, scraping, job processing and self-healing monitoring together
and exposes them as a CLI, a background daemon and an HTTP service
"""
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Optional, Union

import typer
import uvicorn
from loguru import logger

from config import get_settings
from database import Storage, get_db_client
from exporter import ExportArtifacts, export_job_csv
from guardrails import CircuitBreakerRegistry
from health_monitor import SelfHealingMonitor
from input_handler import InputValidationError, detect_file_format, parse
from job_processor import JobProcessor
from scraper import WebsiteScraper

# CLI Application
app = typer.Typer(help="Lead Enrichment Service - bulk import, enrichment and self-healing job processing")


class EnrichmentService:
    """Owns the storage backend, scraper, processor and monitor for one process"""

    def __init__(self, storage: Optional[Storage] = None, scraper: Optional[WebsiteScraper] = None):
        self.settings = get_settings()
        self.breakers = CircuitBreakerRegistry.from_settings(self.settings)
        self.storage = storage
        self.scraper = scraper
        self.processor: Optional[JobProcessor] = None
        self.monitor: Optional[SelfHealingMonitor] = None
        self.exports = ExportArtifacts()
        self._shutdown_event = asyncio.Event()
        self._startup_complete = False

    async def initialize(self):
        """Create the components that were not injected"""
        if self._startup_complete:
            return
        try:
            logger.info("Initializing service components...")
            if self.storage is None:
                self.storage = await get_db_client(breakers=self.breakers)
            if self.scraper is None:
                self.scraper = WebsiteScraper(breakers=self.breakers)
            self.processor = JobProcessor(self.storage, scraper=self.scraper)
            self.monitor = SelfHealingMonitor(self.processor, breakers=self.breakers)
            self._startup_complete = True
            logger.info("Service components initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize service components: {e}")
            raise

    @property
    def is_ready(self) -> bool:
        return self._startup_complete

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown"""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum} ({signal.Signals(signum).name}), initiating graceful shutdown")
            self._shutdown_event.set()

            def force_shutdown(signum, frame):
                logger.warning("Received second shutdown signal, forcing immediate exit")
                sys.exit(1)

            signal.signal(signum, force_shutdown)

        signals_to_handle = [signal.SIGTERM, signal.SIGINT]
        if sys.platform != "win32":
            signals_to_handle.append(signal.SIGHUP)

        for sig in signals_to_handle:
            try:
                signal.signal(sig, signal_handler)
                logger.debug(f"Registered signal handler for {signal.Signals(sig).name}")
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to register signal handler for {signal.Signals(sig).name}: {e}")

    async def cleanup(self):
        """Stop the monitor, wait for scheduled jobs and close clients"""
        logger.info("Cleaning up service components...")
        if self.monitor:
            await self.monitor.stop()
        if self.processor:
            await self.processor.wait_for_scheduled()
        discovery = self.processor.discovery if self.processor else None
        for client, name in ((self.scraper, "Scraper"), (discovery, "Domain discovery"), (self.storage, "Storage")):
            await self._safe_close(client, name)
        self._startup_complete = False
        logger.info("Service components cleanup completed")

    async def _safe_close(self, client, name: str):
        """Close a client with a timeout, logging instead of raising"""
        if client is None or not hasattr(client, "close"):
            return
        try:
            await asyncio.wait_for(client.close(), timeout=10.0)
            logger.debug(f"{name} closed successfully")
        except asyncio.TimeoutError:
            logger.warning(f"Timeout while closing {name}")
        except Exception as e:
            logger.error(f"Error closing {name}: {e}")

    async def import_content(self, content: Union[str, bytes], source_format: Optional[str] = None, name: Optional[str] = None):
        """
        Parse an upload and create a pending job from its valid records

        Args:
            content: Uploaded text, or raw bytes for Excel workbooks
            source_format: csv, json, xlsx or email_list; detected when omitted
            name: Job name

        Returns:
            Tuple of (ImportResult, BulkJob or None when nothing was valid)
        """
        result = parse(content, source_format)
        if not result.records:
            logger.warning(f"Import produced no valid records ({len(result.errors)} errors)")
            return result, None
        job = await self.processor.create_job(
            result.records,
            name=name or f"{result.source_format.upper()} import",
            source_format=result.source_format,
        )
        return result, job

    async def run_background_service(self):
        """Process pending jobs continuously while the monitor recovers stale ones"""
        logger.info("Starting background lead enrichment service")
        await self.initialize()
        self._setup_signal_handlers()
        self.monitor.start()

        try:
            loop_count = 0
            while not self._shutdown_event.is_set():
                loop_count += 1
                try:
                    pending_jobs = await self.storage.get_bulk_jobs(status="pending")
                    if pending_jobs:
                        logger.info(f"Found {len(pending_jobs)} pending job(s) to process")

                    ran_any = False
                    # Oldest first
                    for job in reversed(pending_jobs):
                        if self._shutdown_event.is_set():
                            logger.info("Shutdown requested during job processing")
                            break
                        ran_any = await self.processor.process_job_items(job.id) or ran_any

                    # Jobs held by another worker count as nothing to do
                    if not ran_any:
                        logger.debug(
                            f"No runnable jobs found, checking again in "
                            f"{self.settings.job_polling_interval} seconds... (loop #{loop_count})"
                        )
                        try:
                            await asyncio.wait_for(
                                self._shutdown_event.wait(),
                                timeout=self.settings.job_polling_interval,
                            )
                        except asyncio.TimeoutError:
                            continue

                except asyncio.CancelledError:
                    logger.info("Background service cancelled")
                    break
                except Exception as e:
                    logger.error(f"Error in background service loop: {e}")
                    await asyncio.sleep(10)
        finally:
            logger.info("Background service shutting down")
            await self.cleanup()

    def request_shutdown(self):
        self._shutdown_event.set()


def _echo_json(payload: dict):
    """Machine-readable line for callers scripting the CLI"""
    typer.echo(f"JSON_OUTPUT: {json.dumps(payload, default=str)}")


@app.command("import-file")
def import_file(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV, Excel, JSON or email list file"),
    source_format: Optional[str] = typer.Option(None, "--format", "-f", help="csv, json, xlsx or email_list (detected when omitted)"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Job name"),
    process: bool = typer.Option(True, "--process/--no-process", help="Process the job right away"),
):
    """Import a lead file as a new bulk job"""
    async def run():
        service = EnrichmentService()
        try:
            await service.initialize()
            fmt = source_format or detect_file_format(path.name)
            result, job = await service.import_content(path.read_bytes(), fmt, name or path.name)

            typer.echo(f"Parsed {result.stats.total} records: {result.stats.valid} valid, "
                       f"{result.stats.invalid} invalid, {result.stats.duplicates_merged} merged")
            for warning in result.warnings[:10]:
                typer.echo(f"  Warning: {warning}")
            for error in result.errors[:10]:
                typer.echo(f"  Error (row {error.row}, {error.field}): {error.message}", err=True)

            if job is None:
                typer.echo("No valid records to import", err=True)
                raise typer.Exit(1)

            typer.echo(f"Job created: {job.id}")
            if process:
                await service.processor.process_job_items(job.id)
                job = await service.storage.get_bulk_job(job.id)
                typer.echo(f"Status: {job.status} ({job.successful} successful, {job.failed} failed, "
                           f"{job.duplicates_found} duplicates)")

            _echo_json({
                "job_id": job.id,
                "status": job.status,
                "total_records": job.total_records,
                "successful": job.successful,
                "failed": job.failed,
                "duplicates_found": job.duplicates_found,
            })
        except InputValidationError as e:
            typer.echo(f"Invalid input: {e}", err=True)
            raise typer.Exit(1)
        finally:
            await service.cleanup()

    asyncio.run(run())


@app.command("process-job")
def process_job(job_id: str = typer.Argument(..., help="Bulk job ID to process or resume")):
    """Process (or resume) one bulk job in the foreground"""
    async def run():
        service = EnrichmentService()
        try:
            await service.initialize()
            job = await service.storage.get_bulk_job(job_id)
            if job is None:
                typer.echo(f"Job {job_id} not found", err=True)
                raise typer.Exit(1)

            await service.processor.process_job_items(job_id)
            job = await service.storage.get_bulk_job(job_id)
            typer.echo(f"Job {job.id}: {job.status}")
            typer.echo(f"  Progress: {job.progress}%")
            typer.echo(f"  Successful: {job.successful}")
            typer.echo(f"  Failed: {job.failed}")
            typer.echo(f"  Duplicates: {job.duplicates_found}")
            if job.last_error:
                typer.echo(f"  Error: {job.last_error}")
            if job.status == "failed":
                raise typer.Exit(1)
        finally:
            await service.cleanup()

    asyncio.run(run())


@app.command("job-status")
def job_status(job_id: str = typer.Argument(..., help="Bulk job ID")):
    """Show the state of one bulk job"""
    async def run():
        service = EnrichmentService()
        try:
            await service.initialize()
            job = await service.storage.get_bulk_job(job_id)
            if job is None:
                typer.echo(f"Job {job_id} not found", err=True)
                raise typer.Exit(1)
            _echo_json(job.model_dump(mode="json"))
        finally:
            await service.cleanup()

    asyncio.run(run())


@app.command()
def recover():
    """Resume jobs stuck in processing past the stale threshold"""
    async def run():
        service = EnrichmentService()
        try:
            await service.initialize()
            recovered = await service.monitor.recover_stale_jobs()
            typer.echo(f"Recovered {recovered} stale job(s)")
            # Rescheduled jobs run until done before the process exits
            await service.processor.wait_for_scheduled()
        finally:
            await service.cleanup()

    asyncio.run(run())


@app.command()
def health():
    """Print system health; exits non-zero when unhealthy"""
    async def run():
        service = EnrichmentService()
        try:
            await service.initialize()
            report = await service.monitor.get_system_health()
            typer.echo(json.dumps(report, indent=2, default=str))
            if report["status"] != "healthy":
                raise typer.Exit(1)
        finally:
            await service.cleanup()

    asyncio.run(run())


@app.command("export-job")
def export_job(
    job_id: str = typer.Argument(..., help="Bulk job ID"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the CSV here instead of stdout"),
    artifact: bool = typer.Option(False, "--artifact", help="Also store the CSV in the exports directory"),
):
    """Export a job's completed items as CSV"""
    async def run():
        service = EnrichmentService()
        try:
            await service.initialize()
            if await service.storage.get_bulk_job(job_id) is None:
                typer.echo(f"Job {job_id} not found", err=True)
                raise typer.Exit(1)

            csv_content, row_count = await export_job_csv(service.storage, job_id)
            if artifact:
                written = service.exports.write_export_artifact(csv_content, "job", job_id, row_count)
                typer.echo(f"Export stored: {written.file_path}", err=True)
            if output:
                output.write_text(csv_content, encoding="utf-8")
                typer.echo(f"Exported {row_count} rows to {output}")
            else:
                typer.echo(csv_content, nl=False)
        finally:
            await service.cleanup()

    asyncio.run(run())


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port for the HTTP service"),
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host for the HTTP service"),
    background: bool = typer.Option(True, "--background/--no-background", help="Run the background job processor"),
):
    """Run the HTTP service, optionally with the background job processor"""
    from api_service import create_app

    settings = get_settings()
    port = port or settings.health_check_port
    host = host or settings.health_check_host

    async def run_service():
        setup_production_logging()

        service = EnrichmentService()
        await service.initialize()
        api_app = create_app(service)

        background_task = None
        if background:
            logger.info("Starting background job processor")
            background_task = asyncio.create_task(service.run_background_service())

        logger.info(f"Starting HTTP service on {host}:{port}")
        config = uvicorn.Config(api_app, host=host, port=port, log_level="info", access_log=False)
        server = uvicorn.Server(config)

        try:
            await server.serve()
        except KeyboardInterrupt:
            logger.info("Received shutdown signal")
        finally:
            service.request_shutdown()
            if background_task:
                await asyncio.gather(background_task, return_exceptions=True)
            else:
                await service.cleanup()
            logger.info("Service shutdown complete")

    asyncio.run(run_service())


@app.command()
def daemon():
    """Run as a background daemon (job processor and monitor, no HTTP server)"""
    async def run_daemon():
        setup_production_logging()
        service = EnrichmentService()
        try:
            await service.run_background_service()
        except KeyboardInterrupt:
            logger.info("Daemon shutdown requested")
        except Exception as e:
            logger.error(f"Daemon failed: {e}")
            raise typer.Exit(1)

    asyncio.run(run_daemon())


def setup_production_logging():
    """Setup logging for the long-running service"""
    settings = get_settings()
    logger.remove()

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan> | "
        "<level>{message}</level>"
    )

    logger.add(
        sys.stdout,
        level=settings.log_level,
        format=log_format,
        colorize=True,
        backtrace=False,
        diagnose=False,
    )

    if settings.log_file_enabled:
        log_dir = Path(settings.log_file_path)
        log_dir.mkdir(parents=True, exist_ok=True)

        if not settings.debug_mode:
            logger.add(
                str(log_dir / "service.log"),
                level=settings.log_level,
                format=log_format,
                rotation=settings.log_rotation,
                retention=settings.log_retention,
                compression="gz",
                colorize=False,
            )

        logger.add(
            str(log_dir / "errors.log"),
            level="ERROR",
            format=log_format,
            rotation=settings.log_rotation,
            retention="90 days",
            compression="gz",
            colorize=False,
        )

    logger.info(f"Production logging configured (level: {settings.log_level})")


def setup_cli_logging():
    """Detailed stderr logging for one-off CLI commands"""
    settings = get_settings()
    logger.remove()

    cli_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )
    logger.add(sys.stderr, level=settings.log_level, format=cli_format, colorize=True)


if __name__ == "__main__":
    setup_cli_logging()
    app()
