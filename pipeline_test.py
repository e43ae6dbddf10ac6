from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from typing import List, Optional

from events import EventBus
from models import (
    CloneOptions,
    Job,
    JobEvent,
    JobStatus,
    ResourceError,
    ServerInfo,
    StageTimeoutError,
)
from pipeline import PipelineExecutor


class FakeSupervisor:
    """Writes a nested site like a domain mirror would, serves nothing."""

    def __init__(self, extraction_error: Optional[Exception] = None, server_error: Optional[Exception] = None, write_index: bool = True) -> None:
        self.extraction_error = extraction_error
        self.server_error = server_error
        self.write_index = write_index
        self.stopped: List[str] = []
        self.started: List[ServerInfo] = []

    def run_extraction(self, options: CloneOptions, output_dir: str) -> int:
        if self.extraction_error is not None:
            raise self.extraction_error
        site = Path(output_dir) / "example.com"
        (site / "css").mkdir(parents=True)
        if self.write_index:
            (site / "index.html").write_text('<link href="css/site.css?v=3">', encoding="utf-8")
        (site / "css" / "site.css?v=3").write_text("body{}", encoding="utf-8")
        return 2

    def pick_port(self, preferred: Optional[int] = None) -> int:
        return preferred or 4321

    def start_server(self, directory: str, port: int) -> ServerInfo:
        if self.server_error is not None:
            raise self.server_error
        info = ServerInfo(handle=f"h{port}", pid=12345, port=port, url=f"http://localhost:{port}", served_directory=directory)
        self.started.append(info)
        return info

    def stop_server(self, handle: str) -> bool:
        self.stopped.append(handle)
        return True

    def tracked_ports(self) -> List[int]:
        return sorted(info.port for info in self.started if info.handle not in self.stopped)

    def shutdown(self) -> None:
        self.stopped.extend(info.handle for info in self.started)


class PipelineExecutorTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.output_dir = Path(self._tmp.name) / "example.com"
        self.bus = EventBus()
        self.events: List[JobEvent] = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _job(self, **overrides) -> Job:
        options = CloneOptions(url="https://example.com", **overrides)
        job = Job(id="job1", source_url=options.url, output_directory=str(self.output_dir), options=options)
        self.bus.subscribe(job.id, self.events.append)
        return job

    def _status_events(self) -> List[str]:
        return [e.data["status"] for e in self.events if e.type == "status"]

    def test_happy_path_reaches_complete(self) -> None:
        supervisor = FakeSupervisor()
        job = self._job()
        PipelineExecutor(supervisor, self.bus).run(job)

        self.assertEqual(job.status, JobStatus.COMPLETE)
        self.assertEqual(job.progress, 100)
        self.assertIsNone(job.error)
        self.assertEqual(job.server.url, "http://localhost:4321")
        self.assertEqual(job.result.files_downloaded, 2)
        self.assertEqual(job.result.sanitized_files, ["css/site.css"])
        self.assertTrue((self.output_dir / "index.html").exists())
        self.assertTrue((self.output_dir / "css" / "site.css").exists())
        self.assertEqual(job.server.served_directory, str(self.output_dir))

        self.assertEqual(self._status_events(), ["fetching", "flattening", "sanitizing", "serving"])
        terminal = [e for e in self.events if e.terminal]
        self.assertEqual(len(terminal), 1)
        self.assertEqual(terminal[0].type, "complete")
        self.assertEqual(terminal[0].data["previewUrl"], "http://localhost:4321")
        self.assertEqual(terminal[0].data["result"]["filesDownloaded"], 2)

    def test_progress_never_decreases(self) -> None:
        job = self._job()
        PipelineExecutor(FakeSupervisor(), self.bus).run(job)
        values = [e.data["progress"] for e in self.events if "progress" in e.data]
        self.assertEqual(values, sorted(values))
        self.assertGreaterEqual(values[0], 10)

    def test_requested_port_is_used(self) -> None:
        job = self._job(port=5055)
        PipelineExecutor(FakeSupervisor(), self.bus).run(job)
        self.assertEqual(job.server.port, 5055)

    def test_extraction_failure_ends_in_error(self) -> None:
        job = self._job()
        with self.assertLogs("pipeline", level="ERROR"):
            PipelineExecutor(FakeSupervisor(extraction_error=ResourceError("scraper crashed")), self.bus).run(job)

        self.assertEqual(job.status, JobStatus.ERROR)
        self.assertEqual(job.error, "scraper crashed")
        self.assertIsNone(job.server)
        self.assertIsNone(job.result)
        errors = [e for e in self.events if e.type == "error"]
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].data, {"error": "scraper crashed", "stage": "fetch"})
        self.assertEqual(self._status_events(), ["fetching"])

    def test_fetch_timeout_is_reported(self) -> None:
        job = self._job()
        with self.assertLogs("pipeline", level="ERROR"):
            PipelineExecutor(
                FakeSupervisor(extraction_error=StageTimeoutError("fetch", "Clone timeout after 1s")), self.bus
            ).run(job)
        self.assertEqual(job.status, JobStatus.ERROR)
        self.assertIn("timeout", job.error)

    def test_missing_index_fails_sanitize_stage(self) -> None:
        job = self._job()
        with self.assertLogs("pipeline", level="ERROR"):
            PipelineExecutor(FakeSupervisor(write_index=False), self.bus).run(job)
        self.assertEqual(job.status, JobStatus.ERROR)
        self.assertEqual(job.error, "Could not find index.html in cloned output")
        self.assertEqual(self.events[-1].data["stage"], "sanitize")

    def test_server_failure_fails_serve_stage(self) -> None:
        job = self._job()
        supervisor = FakeSupervisor(server_error=ResourceError("Port 4321 is held by another preview server"))
        with self.assertLogs("pipeline", level="ERROR"):
            PipelineExecutor(supervisor, self.bus).run(job)
        self.assertEqual(job.status, JobStatus.ERROR)
        self.assertIsNone(job.server)
        self.assertEqual(self.events[-1].data["stage"], "serve")

    def test_run_never_raises_on_unexpected_errors(self) -> None:
        job = self._job()
        with self.assertLogs("pipeline", level="ERROR"):
            PipelineExecutor(FakeSupervisor(extraction_error=KeyError("odd")), self.bus).run(job)
        self.assertEqual(job.status, JobStatus.ERROR)
        self.assertTrue(job.error)


if __name__ == "__main__":
    unittest.main(verbosity=2)
