from __future__ import annotations

import json
import logging
import os
import socket
import subprocess
import sys
import threading
import time
import urllib.error
import urllib.request
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

import psutil

from models import CloneOptions, ResourceError, ServerInfo, StageTimeoutError


logger = logging.getLogger(__name__)

DEFAULT_PREVIEW_PORT = 4321
MAX_PORT_SCAN = 200
READY_GRACE_SECONDS = 0.3


@dataclass
class _TrackedServer:
    process: subprocess.Popen
    port: int
    directory: str


def is_healthy(url: str, timeout: float = 1.0) -> bool:
    request = urllib.request.Request(url=url, method="GET")
    try:
        with urllib.request.urlopen(request, timeout=timeout) as resp:
            return int(resp.status) < 500
    except urllib.error.HTTPError as exc:
        return int(exc.code) < 500
    except (urllib.error.URLError, OSError):
        return False


class ProcessSupervisor:
    def __init__(
        self,
        extractor_command: Optional[Sequence[str]] = None,
        preview_host: str = "127.0.0.1",
        port_base: int = DEFAULT_PREVIEW_PORT,
        settle_seconds: float = 0.5,
        start_timeout: float = 10.0,
    ) -> None:
        self.extractor_command = list(extractor_command or [sys.executable, "-m", "mirror"])
        self.preview_host = preview_host
        self.port_base = port_base
        self.settle_seconds = settle_seconds
        self.start_timeout = start_timeout
        self._lock = threading.Lock()
        self._servers: Dict[str, _TrackedServer] = {}
        self._extractions: Dict[str, subprocess.Popen] = {}
        self._reserved_ports: Set[int] = set()

    # extraction

    def run_extraction(self, options: CloneOptions, output_dir: str) -> int:
        cmd = [
            *self.extractor_command,
            "--url",
            options.url,
            "--output",
            str(output_dir),
            "--max-depth",
            str(options.max_depth),
            "--user-agent",
            options.user_agent,
        ]
        if options.scroll_to_bottom:
            cmd.append("--scroll-to-bottom")
        timeout_s = max(1.0, options.timeout_ms / 1000.0)

        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                close_fds=True,
            )
        except OSError as exc:
            raise ResourceError(f"Could not start extraction tool: {exc}") from exc

        handle = uuid.uuid4().hex
        with self._lock:
            self._extractions[handle] = proc
        logger.info("Extraction started for %s (pid %s)", options.url, proc.pid)
        try:
            stdout, stderr = proc.communicate(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
            raise StageTimeoutError("fetch", f"Clone timeout after {timeout_s:g}s") from None
        finally:
            with self._lock:
                self._extractions.pop(handle, None)

        return self._parse_extraction_output(stdout or "", stderr or "", proc.returncode)

    def _parse_extraction_output(self, stdout: str, stderr: str, returncode: int) -> int:
        files: Optional[int] = None
        error: Optional[str] = None
        for line in stdout.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                continue
            kind = message.get("type")
            if kind == "complete":
                files = int(message.get("files") or 0)
            elif kind == "error":
                error = str(message.get("message") or "Extraction failed")

        if error is not None:
            raise ResourceError(error)
        if returncode != 0:
            tail = stderr.strip().splitlines()[-1:] or [f"Extraction tool exited with code {returncode}"]
            raise ResourceError(tail[0])
        if files is None:
            raise ResourceError("Extraction tool produced no result")
        return files

    # preview servers

    def pick_port(self, preferred: Optional[int] = None) -> int:
        if preferred:
            return int(preferred)
        with self._lock:
            busy = self._busy_ports_locked()
        for port in range(self.port_base, self.port_base + MAX_PORT_SCAN):
            if port not in busy:
                return port
        raise ResourceError(f"No free preview port in {self.port_base}-{self.port_base + MAX_PORT_SCAN - 1}")

    def _busy_ports_locked(self) -> Set[int]:
        busy = set(self._reserved_ports)
        for tracked in self._servers.values():
            if tracked.process.poll() is None:
                busy.add(tracked.port)
        return busy

    def start_server(self, directory: str, port: int) -> ServerInfo:
        served = Path(directory).resolve()
        if not served.is_dir():
            raise ResourceError(f"Cannot serve missing directory {served}")

        with self._lock:
            if port in self._busy_ports_locked():
                raise ResourceError(f"Port {port} is held by another preview server")
            self._reserved_ports.add(port)

        try:
            self._free_port(port)
            self._ensure_bindable(port)
            cmd = [sys.executable, "-m", "http.server", str(port), "--bind", self.preview_host]
            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=str(served),
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    stdin=subprocess.DEVNULL,
                    close_fds=True,
                )
            except OSError as exc:
                raise ResourceError(f"Could not start preview server: {exc}") from exc

            self._wait_until_serving(proc, port)
            handle = uuid.uuid4().hex
            with self._lock:
                self._servers[handle] = _TrackedServer(process=proc, port=port, directory=str(served))
        finally:
            with self._lock:
                self._reserved_ports.discard(port)

        logger.info("Preview server for %s listening on port %s (pid %s)", served, port, proc.pid)
        return ServerInfo(
            handle=handle,
            pid=proc.pid,
            port=port,
            url=f"http://localhost:{port}",
            served_directory=str(served),
        )

    def _ensure_bindable(self, port: int) -> None:
        # same socket options as http.server
        bind_host = "" if self.preview_host == "0.0.0.0" else self.preview_host
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((bind_host, port))
            except OSError as exc:
                raise ResourceError(f"Port {port} is still in use") from exc

    def _wait_until_serving(self, proc: subprocess.Popen, port: int) -> None:
        """Return once our own process answers on ``port``.

        A healthy probe alone is not enough: something else may be answering.
        The port must be attributed to ``proc`` by psutil, or, where psutil
        cannot attribute it at all, ``proc`` must survive a short grace period.
        """
        probe_host = "127.0.0.1" if self.preview_host in ("0.0.0.0", "") else self.preview_host
        probe_url = f"http://{probe_host}:{port}/"
        deadline = time.monotonic() + max(0.5, self.start_timeout)
        while time.monotonic() < deadline:
            if proc.poll() is not None:
                raise ResourceError(f"Preview server on port {port} exited with code {proc.returncode}")
            if is_healthy(probe_url, timeout=0.5):
                if proc.pid in self._listening_pids(port):
                    return
                time.sleep(READY_GRACE_SECONDS)
                if proc.poll() is not None:
                    raise ResourceError(f"Port {port} is still in use by another process")
                owners = self._listening_pids(port)
                if not owners or proc.pid in owners:
                    return
            time.sleep(0.1)
        _terminate(proc)
        raise ResourceError(f"Preview server on port {port} did not start within {self.start_timeout:g}s")

    def _listening_pids(self, port: int) -> List[int]:
        try:
            connections = psutil.net_connections(kind="inet")
        except psutil.AccessDenied:
            logger.warning("Not allowed to inspect sockets; cannot check port %s", port)
            return []
        pids = {
            conn.pid
            for conn in connections
            if conn.pid and conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port
        }
        return sorted(pids)

    def _free_port(self, port: int) -> None:
        pids = self._listening_pids(port)
        if not pids:
            return
        if os.getpid() in pids:
            raise ResourceError(f"Port {port} is used by this service")
        for pid in pids:
            try:
                occupant = psutil.Process(pid)
                logger.warning("Killing %s (pid %s) holding port %s", occupant.name(), pid, port)
                occupant.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                logger.warning("Not allowed to kill pid %s holding port %s", pid, port)
        time.sleep(self.settle_seconds)

    def stop_server(self, handle: str) -> bool:
        with self._lock:
            tracked = self._servers.pop(handle, None)
        if tracked is None:
            logger.debug("No tracked preview server for handle %s", handle)
            return False
        _terminate(tracked.process)
        logger.info("Preview server on port %s stopped", tracked.port)
        return True

    def is_running(self, handle: str) -> bool:
        with self._lock:
            tracked = self._servers.get(handle)
        return tracked is not None and tracked.process.poll() is None

    def tracked_ports(self) -> List[int]:
        with self._lock:
            return sorted(t.port for t in self._servers.values() if t.process.poll() is None)

    def shutdown(self) -> None:
        with self._lock:
            servers = list(self._servers.values())
            extractions = list(self._extractions.values())
            self._servers.clear()
        for tracked in servers:
            _terminate(tracked.process)
        for proc in extractions:
            _terminate(proc)


def _terminate(proc: subprocess.Popen, grace: float = 5.0) -> None:
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait(timeout=grace)
    except ProcessLookupError:
        pass
