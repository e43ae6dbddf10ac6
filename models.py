from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


DEFAULT_MAX_DEPTH = 3
DEFAULT_TIMEOUT_MS = 300_000
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
# field -> (wire name, min, max)
OPTION_LIMITS = {
    "max_depth": ("maxDepth", 0, 10),
    "timeout_ms": ("timeoutMs", 1000, 3_600_000),
    "port": ("port", 1024, 65535),
}


class CloneError(RuntimeError):
    pass


class ValidationError(CloneError):
    pass


class NotFoundError(CloneError):
    pass


class ServerNotRunningError(NotFoundError):
    pass


class ResourceError(CloneError):
    pass


class InvalidTransitionError(CloneError):
    pass


class PipelineStageError(CloneError):
    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage


class StageTimeoutError(PipelineStageError):
    pass


class QuickRunTimeoutError(CloneError, TimeoutError):
    pass


class JobStatus(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    FLATTENING = "flattening"
    SANITIZING = "sanitizing"
    SERVING = "serving"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.ERROR)


STATUS_SEQUENCE = (
    JobStatus.PENDING,
    JobStatus.FETCHING,
    JobStatus.FLATTENING,
    JobStatus.SANITIZING,
    JobStatus.SERVING,
    JobStatus.COMPLETE,
)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ServerInfo:
    handle: str
    pid: int
    port: int
    url: str
    served_directory: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "pid": self.pid,
            "port": self.port,
            "url": self.url,
            "servedDirectory": self.served_directory,
        }


@dataclass
class CloneResult:
    success: bool
    url: str
    output_directory: str
    served_directory: str
    files_downloaded: int
    duration_ms: int
    sanitized_files: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "url": self.url,
            "outputDirectory": self.output_directory,
            "servedDirectory": self.served_directory,
            "filesDownloaded": self.files_downloaded,
            "durationMs": self.duration_ms,
            "sanitizedFiles": list(self.sanitized_files),
        }


def _parse_int_option(payload: Dict[str, Any], key: str, default: Optional[int], min_value: int, max_value: int) -> Optional[int]:
    value = payload.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer") from None
    if number < min_value or number > max_value:
        raise ValidationError(f"{key} must be between {min_value} and {max_value}")
    return number


def _parse_limited(payload: Dict[str, Any], attr: str, default: Optional[int]) -> Optional[int]:
    key, min_value, max_value = OPTION_LIMITS[attr]
    return _parse_int_option(payload, key, default, min_value, max_value)


@dataclass
class CloneOptions:
    url: str
    output_dir: Optional[str] = None
    max_depth: int = DEFAULT_MAX_DEPTH
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    user_agent: str = DEFAULT_USER_AGENT
    scroll_to_bottom: bool = False
    port: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "CloneOptions":
        """Build options from a camelCase JSON body, rejecting malformed values."""
        data = dict(payload or {})
        url = data.get("url")
        if not isinstance(url, str) or not url.strip():
            raise ValidationError("URL is required")

        output_dir = data.get("outputDir")
        if output_dir is not None and not isinstance(output_dir, str):
            raise ValidationError("outputDir must be a string")
        user_agent = data.get("userAgent")
        if user_agent is not None and not isinstance(user_agent, str):
            raise ValidationError("userAgent must be a string")
        scroll = data.get("scrollToBottom", False)
        if not isinstance(scroll, bool):
            raise ValidationError("scrollToBottom must be a boolean")

        return cls(
            url=url.strip(),
            output_dir=(output_dir or "").strip() or None,
            max_depth=_parse_limited(data, "max_depth", DEFAULT_MAX_DEPTH),
            timeout_ms=_parse_limited(data, "timeout_ms", DEFAULT_TIMEOUT_MS),
            user_agent=(user_agent or "").strip() or DEFAULT_USER_AGENT,
            scroll_to_bottom=scroll,
            port=_parse_limited(data, "port", None),
        )

    def validate(self) -> "CloneOptions":
        """Apply the payload rules to options built in code."""
        if not isinstance(self.url, str) or not self.url.strip():
            raise ValidationError("URL is required")
        for attr, (key, min_value, max_value) in OPTION_LIMITS.items():
            value = getattr(self, attr)
            if value is None and attr == "port":
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{key} must be an integer")
            if value < min_value or value > max_value:
                raise ValidationError(f"{key} must be between {min_value} and {max_value}")
        if self.output_dir is not None and not isinstance(self.output_dir, str):
            raise ValidationError("outputDir must be a string")
        if not isinstance(self.user_agent, str) or not self.user_agent.strip():
            raise ValidationError("userAgent must be a non-empty string")
        if not isinstance(self.scroll_to_bottom, bool):
            raise ValidationError("scrollToBottom must be a boolean")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class JobEvent:
    type: str
    job_id: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.type in ("complete", "error")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "jobId": self.job_id, "data": dict(self.data)}


@dataclass
class Job:
    id: str
    source_url: str
    output_directory: str
    options: CloneOptions
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    server: Optional[ServerInfo] = None
    result: Optional[CloneResult] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def advance(self, status: JobStatus, progress: Optional[int] = None) -> None:
        with self._lock:
            current = STATUS_SEQUENCE.index(self.status) if self.status in STATUS_SEQUENCE else -1
            if current < 0 or current + 1 >= len(STATUS_SEQUENCE) or STATUS_SEQUENCE[current + 1] != status:
                raise InvalidTransitionError(f"Cannot move job {self.id} from {self.status.value} to {status.value}")
            self.status = status
            if progress is not None:
                self._bump_progress(progress)
            self.updated_at = time.time()

    def set_progress(self, value: int) -> None:
        with self._lock:
            if self.status.terminal:
                return
            self._bump_progress(value)
            self.updated_at = time.time()

    def _bump_progress(self, value: int) -> None:
        self.progress = max(self.progress, max(0, min(100, int(value))))

    def fail(self, message: str) -> bool:
        with self._lock:
            if self.status.terminal:
                return False
            self.status = JobStatus.ERROR
            self.error = message or "Unknown error"
            self.updated_at = time.time()
            return True

    def attach_server(self, info: ServerInfo) -> None:
        with self._lock:
            if self.status != JobStatus.SERVING:
                raise InvalidTransitionError(f"Job {self.id} is {self.status.value}, not serving")
            self.server = info
            self.updated_at = time.time()

    def complete(self, result: CloneResult) -> None:
        with self._lock:
            if self.status != JobStatus.SERVING:
                raise InvalidTransitionError(f"Cannot complete job {self.id} from {self.status.value}")
            self.status = JobStatus.COMPLETE
            self.progress = 100
            self.result = result
            self.updated_at = time.time()

    def detach_server(self) -> Optional[ServerInfo]:
        with self._lock:
            info, self.server = self.server, None
            return info

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "id": self.id,
                "url": self.source_url,
                "status": self.status.value,
                "progress": self.progress,
                "outputDir": self.output_directory,
                "server": self.server.to_dict() if self.server else None,
                "result": self.result.to_dict() if self.result else None,
                "error": self.error,
                "createdAt": _iso(self.created_at),
                "updatedAt": _iso(self.updated_at),
            }
