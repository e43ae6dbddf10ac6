from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from assets import find_html_dir, flatten_directory, sanitize_assets
from events import EventBus
from models import (
    CloneResult,
    Job,
    JobEvent,
    JobStatus,
    PipelineStageError,
    ServerInfo,
)
from supervisor import ProcessSupervisor


logger = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_FETCHED = 50
PROGRESS_FLATTENED = 60
PROGRESS_SANITIZED = 70
PROGRESS_SERVING = 80


class PipelineExecutor:
    """Runs one job through fetch, flatten, sanitize and serve.

    ``run`` is the body of a detached thread: it never raises. Failures end up
    in ``job.error`` and a single ``error`` event.
    """

    def __init__(self, supervisor: ProcessSupervisor, bus: EventBus) -> None:
        self.supervisor = supervisor
        self.bus = bus

    def run(self, job: Job) -> None:
        started = time.time()
        stage = "start"
        server: Optional[ServerInfo] = None
        try:
            stage = "fetch"
            self._advance(job, JobStatus.FETCHING, PROGRESS_STARTED)
            logger.info("Job %s fetching %s into %s", job.id, job.source_url, job.output_directory)
            files_downloaded = self.supervisor.run_extraction(job.options, job.output_directory)
            logger.info("Job %s fetched %s files", job.id, files_downloaded)
            self._progress(job, PROGRESS_FETCHED)

            stage = "flatten"
            self._advance(job, JobStatus.FLATTENING)
            if not flatten_directory(job.output_directory):
                logger.info("Job %s kept nested layout in %s", job.id, job.output_directory)
            self._progress(job, PROGRESS_FLATTENED)

            stage = "sanitize"
            self._advance(job, JobStatus.SANITIZING)
            html_dir = find_html_dir(job.output_directory)
            if html_dir is None:
                raise PipelineStageError(stage, "Could not find index.html in cloned output")
            sanitized = sanitize_assets(html_dir)
            logger.info("Job %s sanitized %s asset names in %s", job.id, sanitized.fixed, html_dir)
            self._progress(job, PROGRESS_SANITIZED)

            stage = "serve"
            self._advance(job, JobStatus.SERVING, PROGRESS_SERVING)
            port = self.supervisor.pick_port(job.options.port)
            server = self.supervisor.start_server(str(html_dir), port)
            job.attach_server(server)

            stage = "complete"
            result = CloneResult(
                success=True,
                url=job.source_url,
                output_directory=job.output_directory,
                served_directory=server.served_directory,
                files_downloaded=files_downloaded,
                duration_ms=int((time.time() - started) * 1000),
                sanitized_files=sanitized.files,
            )
            job.complete(result)
            self.bus.emit(
                JobEvent(
                    "complete",
                    job.id,
                    {"result": result.to_dict(), "server": server.to_dict(), "previewUrl": server.url},
                )
            )
            logger.info("Job %s complete, preview at %s", job.id, server.url)
        except Exception as exc:
            self._fail(job, stage, exc, server)

    def _advance(self, job: Job, status: JobStatus, progress: Optional[int] = None) -> None:
        job.advance(status, progress)
        self.bus.emit(JobEvent("status", job.id, {"status": status.value, "progress": job.progress}))

    def _progress(self, job: Job, value: int) -> None:
        job.set_progress(value)
        self.bus.emit(JobEvent("progress", job.id, {"progress": job.progress, "status": job.status.value}))

    def _fail(self, job: Job, stage: str, exc: Exception, server: Optional[ServerInfo]) -> None:
        if not isinstance(exc, PipelineStageError):
            exc = PipelineStageError(stage, str(exc) or exc.__class__.__name__)
        try:
            if server is not None and job.status != JobStatus.COMPLETE:
                self.supervisor.stop_server(server.handle)
                job.detach_server()
            if job.fail(str(exc)):
                logger.error("Job %s failed during %s: %s", job.id, exc.stage, exc)
                data: Dict[str, Any] = {"error": job.error, "stage": exc.stage}
                self.bus.emit(JobEvent("error", job.id, data))
        except Exception:
            logger.exception("Job %s: error while recording failure", job.id)
