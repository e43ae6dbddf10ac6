from __future__ import annotations

import tempfile
import threading
import time
import unittest
from pathlib import Path

from events import EventBus
from models import (
    Job,
    JobStatus,
    NotFoundError,
    PipelineStageError,
    QuickRunTimeoutError,
    ResourceError,
    ServerNotRunningError,
    ValidationError,
)
from pipeline import PipelineExecutor
from pipeline_test import FakeSupervisor
from registry import CloneService, domain_of, normalize_source_url


def wait_for(job: Job, timeout: float = 5.0) -> Job:
    deadline = time.monotonic() + timeout
    while not job.terminal and time.monotonic() < deadline:
        time.sleep(0.01)
    return job


class IdleExecutor:
    def run(self, job: Job) -> None:
        return None


class GatedExecutor:
    """Holds every job in pending until ``release`` is set."""

    def __init__(self, inner: PipelineExecutor) -> None:
        self.inner = inner
        self.release = threading.Event()

    def run(self, job: Job) -> None:
        self.release.wait(5)
        self.inner.run(job)


class UrlHelpersTest(unittest.TestCase):
    def test_bare_host_gets_https(self) -> None:
        self.assertEqual(normalize_source_url("example.com"), "https://example.com")
        self.assertEqual(normalize_source_url("  http://example.com/a  "), "http://example.com/a")

    def test_rejects_bad_urls(self) -> None:
        for raw in ("", "ftp://example.com", "https://", "not a url", "https://exa mple.com", "https://example.com:99999"):
            with self.subTest(raw=raw), self.assertRaises(ValidationError):
                normalize_source_url(raw)

    def test_domain_strips_www(self) -> None:
        self.assertEqual(domain_of("https://www.Example.com/path"), "example.com")
        self.assertEqual(domain_of("https://docs.example.com"), "docs.example.com")


class CloneServiceTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name).resolve()
        self.supervisor = FakeSupervisor()
        self.service = CloneService(self.root, supervisor=self.supervisor)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_invalid_url_creates_no_job(self) -> None:
        with self.assertRaises(ValidationError):
            self.service.create("ftp://example.com")
        self.assertEqual(self.service.list(), [])

    def test_job_runs_to_complete_in_domain_directory(self) -> None:
        job = wait_for(self.service.create("https://www.example.com"))
        self.assertEqual(job.status, JobStatus.COMPLETE)
        self.assertEqual(job.output_directory, str(self.root / "example.com"))
        self.assertTrue((self.root / "example.com" / "index.html").exists())
        self.assertIs(self.service.get(job.id), job)

    def test_previous_output_is_removed(self) -> None:
        stale = self.root / "example.com"
        stale.mkdir()
        (stale / "stale.txt").write_text("old", encoding="utf-8")
        job = wait_for(self.service.create("example.com"))
        self.assertEqual(job.status, JobStatus.COMPLETE)
        self.assertFalse((stale / "stale.txt").exists())

    def test_concurrent_jobs_for_same_domain_get_separate_directories(self) -> None:
        gate = GatedExecutor(PipelineExecutor(self.supervisor, EventBus()))
        service = CloneService(self.root, supervisor=self.supervisor, bus=gate.inner.bus, executor=gate)
        first = service.create("https://example.com")
        second = service.create("https://example.com")
        self.assertNotEqual(first.output_directory, second.output_directory)
        self.assertTrue(Path(second.output_directory).name.startswith("example.com-"))

        gate.release.set()
        self.assertEqual(wait_for(first).status, JobStatus.COMPLETE)
        self.assertEqual(wait_for(second).status, JobStatus.COMPLETE)

    def test_finished_job_still_serving_keeps_its_directory(self) -> None:
        served = wait_for(self.service.create("https://example.com"))
        self.assertEqual(served.status, JobStatus.COMPLETE)
        self.assertIsNotNone(served.server)
        index = Path(served.output_directory) / "index.html"

        later = wait_for(self.service.create("https://example.com"))
        self.assertNotEqual(later.output_directory, served.output_directory)
        self.assertTrue(Path(later.output_directory).name.startswith("example.com-"))
        self.assertTrue(index.exists())

        self.service.stop_server(served.id)
        reused = wait_for(self.service.create("https://example.com"))
        self.assertEqual(reused.output_directory, str(self.root / "example.com"))

    def test_overrides_are_validated(self) -> None:
        for overrides in ({"max_depth": -1}, {"max_depth": 11}, {"timeout_ms": 10}, {"port": 80}, {"port": True}, {"bogus": 1}):
            with self.subTest(overrides=overrides), self.assertRaises(ValidationError):
                self.service.create("https://example.com", **overrides)
        self.assertEqual(self.service.list(), [])

        job = wait_for(self.service.create("https://example.com", max_depth=0, port=5055))
        self.assertEqual(job.options.max_depth, 0)
        self.assertEqual(job.server.port, 5055)

    def test_output_override_must_stay_under_root(self) -> None:
        with self.assertRaises(ValidationError):
            self.service.create("https://example.com", output_dir=str(self.root.parent / "elsewhere"))
        with self.assertRaises(ValidationError):
            self.service.create("https://example.com", output_dir="../escape")
        with self.assertRaises(ValidationError):
            self.service.create("https://example.com", output_dir=str(self.root))
        self.assertEqual(self.service.list(), [])

        job = wait_for(self.service.create("https://example.com", output_dir="custom"))
        self.assertEqual(job.output_directory, str(self.root / "custom"))

    def test_unprepareable_output_raises_resource_error(self) -> None:
        (self.root / "blocker").write_text("", encoding="utf-8")
        service = CloneService(self.root, supervisor=self.supervisor, executor=IdleExecutor())
        with self.assertRaises(ResourceError):
            service.create("https://example.com", output_dir="blocker/site")
        self.assertEqual(service.list(), [])

    def test_list_is_newest_first(self) -> None:
        service = CloneService(self.root, supervisor=self.supervisor, executor=IdleExecutor())
        older = service.create("https://a.example.com")
        newer = service.create("https://b.example.com")
        older.created_at = newer.created_at - 10
        self.assertEqual([j.id for j in service.list()], [newer.id, older.id])

    def test_require_unknown_job(self) -> None:
        with self.assertRaises(NotFoundError):
            self.service.require("missing")
        with self.assertRaises(NotFoundError):
            self.service.subscribe("missing", lambda e: None)

    def test_subscribe_after_completion_replays_terminal_event(self) -> None:
        job = wait_for(self.service.create("https://example.com"))
        seen = []
        self.service.subscribe(job.id, seen.append)
        self.assertEqual([e.type for e in seen], ["complete"])

    def test_stop_server_once(self) -> None:
        job = wait_for(self.service.create("https://example.com"))
        handle = job.server.handle
        self.service.stop_server(job.id)
        self.assertIn(handle, self.supervisor.stopped)
        self.assertIsNone(job.server)
        with self.assertRaises(ServerNotRunningError):
            self.service.stop_server(job.id)
        with self.assertRaises(NotFoundError):
            self.service.stop_server("missing")

    def test_quick_run_returns_served_directory(self) -> None:
        result = self.service.quick_run("https://example.com", timeout_ms=5000, poll_interval=0.01)
        self.assertEqual(result.served_directory, str(self.root / "example.com"))
        self.assertEqual(result.server.url, "http://localhost:4321")
        self.assertEqual(result.to_dict()["server"]["port"], 4321)

    def test_quick_run_surfaces_pipeline_error(self) -> None:
        service = CloneService(self.root, supervisor=FakeSupervisor(extraction_error=ResourceError("boom")))
        with self.assertRaises(PipelineStageError) as ctx:
            service.quick_run("https://example.com", timeout_ms=5000, poll_interval=0.01)
        self.assertEqual(str(ctx.exception), "boom")

    def test_quick_run_times_out(self) -> None:
        service = CloneService(self.root, supervisor=self.supervisor, executor=IdleExecutor())
        with self.assertRaises(QuickRunTimeoutError):
            service.quick_run("https://example.com", timeout_ms=50, poll_interval=0.01)

    def test_reap_drops_expired_finished_jobs(self) -> None:
        done = wait_for(self.service.create("https://example.com"))
        service_idle = CloneService(self.root, supervisor=self.supervisor, executor=IdleExecutor())
        running = service_idle.create("https://other.example.com")

        self.assertEqual(self.service.reap(now=time.time()), 0)
        self.assertEqual(self.service.reap(now=time.time() + 3601), 1)
        self.assertIsNone(self.service.get(done.id))
        self.assertIn("h4321", self.supervisor.stopped)
        self.assertFalse(self.service.bus.is_terminal(done.id))

        self.assertEqual(service_idle.reap(now=time.time() + 3601), 0)
        self.assertIsNotNone(service_idle.get(running.id))

    def test_stats_counts_by_status(self) -> None:
        wait_for(self.service.create("https://example.com"))
        stats = self.service.stats()
        self.assertEqual(stats["total"], 1)
        self.assertEqual(stats["by_status"]["complete"], 1)
        self.assertEqual(stats["preview_ports"], [4321])


if __name__ == "__main__":
    unittest.main(verbosity=2)
