from __future__ import annotations

import logging
import re
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

from events import EventBus, Listener
from models import (
    CloneOptions,
    Job,
    JobEvent,
    JobStatus,
    NotFoundError,
    PipelineStageError,
    QuickRunTimeoutError,
    ResourceError,
    ServerInfo,
    ServerNotRunningError,
    ValidationError,
    DEFAULT_TIMEOUT_MS,
)
from pipeline import PipelineExecutor
from supervisor import ProcessSupervisor


logger = logging.getLogger(__name__)

HOST_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?$")


@dataclass
class QuickRunResult:
    served_directory: str
    server: ServerInfo

    def to_dict(self) -> Dict[str, Any]:
        return {"servedDirectory": self.served_directory, "server": self.server.to_dict()}


def normalize_source_url(raw: str) -> str:
    url = (raw or "").strip()
    if not url:
        raise ValidationError("URL is required")
    if "://" not in url:
        url = "https://" + url
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValidationError(f"Unsupported URL scheme: {parsed.scheme}")
    try:
        host = parsed.hostname or ""
        parsed.port
    except ValueError:
        raise ValidationError(f"Invalid URL: {raw}") from None
    if not host or not HOST_RE.match(host) or any(ch.isspace() for ch in url):
        raise ValidationError(f"Invalid URL: {raw}")
    return url


def domain_of(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def _is_within(parent: Path, child: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


class CloneService:
    def __init__(
        self,
        output_root: Union[str, Path],
        supervisor: Optional[ProcessSupervisor] = None,
        bus: Optional[EventBus] = None,
        executor: Optional[PipelineExecutor] = None,
        allow_unsafe_output_root: bool = False,
        retention_seconds: int = 3600,
        cleanup_interval: int = 60,
    ) -> None:
        self.output_root = Path(output_root).expanduser().resolve()
        self.supervisor = supervisor or ProcessSupervisor()
        self.bus = bus or EventBus()
        self.executor = executor or PipelineExecutor(self.supervisor, self.bus)
        self.allow_unsafe_output_root = allow_unsafe_output_root
        self.retention_seconds = retention_seconds
        self.cleanup_interval = cleanup_interval
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._last_cleanup = 0.0

    def create(self, options: Union[CloneOptions, str], **overrides: Any) -> Job:
        if isinstance(options, str):
            options = CloneOptions(url=options)
        if overrides:
            try:
                options = replace(options, **overrides)
            except TypeError as exc:
                raise ValidationError(f"Unknown option: {exc}") from None
        url = normalize_source_url(options.validate().url)
        options = replace(options, url=url)

        job_id = uuid.uuid4().hex
        with self._lock:
            output_dir = self._claim_output_dir(url, options.output_dir, job_id)
            job = Job(id=job_id, source_url=url, output_directory=str(output_dir), options=options)
            self._jobs[job_id] = job

        try:
            if output_dir.exists():
                logger.info("Removing previous output %s", output_dir)
                shutil.rmtree(output_dir)
            output_dir.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            with self._lock:
                self._jobs.pop(job_id, None)
            raise ResourceError(f"Cannot prepare {output_dir}: {exc}") from exc

        logger.info("Created job %s for %s", job_id, url)
        self.bus.emit(JobEvent("status", job_id, {"status": job.status.value, "progress": job.progress}))
        thread = threading.Thread(target=self.executor.run, args=(job,), name=f"clone-{job_id[:8]}", daemon=True)
        thread.start()
        return job

    def _claim_output_dir(self, url: str, override: Optional[str], job_id: str) -> Path:
        if override:
            candidate = Path(override).expanduser()
            path = candidate if candidate.is_absolute() else self.output_root / candidate
            path = path.resolve()
            if not self.allow_unsafe_output_root and not _is_within(self.output_root, path):
                raise ValidationError(f"Output path must be inside {self.output_root}")
            if path == self.output_root:
                raise ValidationError("Output path must be a subdirectory of the output root")
        else:
            path = self.output_root / domain_of(url)

        # running jobs and finished jobs still serving a preview own their tree
        in_use = {j.output_directory for j in self._jobs.values() if not j.terminal or j.server is not None}
        if str(path) in in_use:
            path = path.with_name(f"{path.name}-{job_id[:8]}")
        return path

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def require(self, job_id: str) -> Job:
        job = self.get(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        return job

    def list(self) -> List[Job]:
        with self._lock:
            jobs = list(self._jobs.values())
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def subscribe(self, job_id: str, listener: Listener) -> Callable[[], None]:
        self.require(job_id)
        return self.bus.subscribe(job_id, listener)

    def stop_server(self, job_id: str) -> None:
        job = self.require(job_id)
        info = job.detach_server()
        if info is None:
            raise ServerNotRunningError("No server running for this job")
        self.supervisor.stop_server(info.handle)

    def quick_run(
        self,
        url: str,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        port: Optional[int] = None,
        poll_interval: float = 1.0,
    ) -> QuickRunResult:
        job = self.create(CloneOptions(url=url, port=port))
        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            if job.status == JobStatus.COMPLETE and job.server is not None and job.result is not None:
                return QuickRunResult(served_directory=job.result.served_directory, server=job.server)
            if job.status == JobStatus.ERROR:
                raise PipelineStageError("quick", job.error or "Clone failed")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise QuickRunTimeoutError(f"Clone timeout after {timeout_ms / 1000:g}s")
            time.sleep(min(poll_interval, remaining))

    def reap(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            expired = [
                job
                for job in self._jobs.values()
                if job.terminal and (now - job.updated_at) > max(0, self.retention_seconds)
            ]
            for job in expired:
                self._jobs.pop(job.id, None)

        for job in expired:
            info = job.detach_server()
            if info is not None:
                self.supervisor.stop_server(info.handle)
            self.bus.discard(job.id)
        if expired:
            logger.info("Reaped %s finished jobs", len(expired))
        return len(expired)

    def maybe_reap(self) -> int:
        now = time.time()
        if (now - self._last_cleanup) < max(1, self.cleanup_interval):
            return 0
        self._last_cleanup = now
        return self.reap(now)

    def stats(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {status.value: 0 for status in JobStatus}
        for job in self.list():
            counts[job.status.value] += 1
        return {
            "total": sum(counts.values()),
            "by_status": counts,
            "preview_ports": self.supervisor.tracked_ports(),
        }

    def shutdown(self) -> None:
        self.supervisor.shutdown()
