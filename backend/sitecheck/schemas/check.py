"""Stage and run models shared by the probe executor, the update stream and the API.

The wire shape uses camelCase keys (``durationMs``, ``isComplete`` ...) to match
the browser dashboard that renders the stage list.
"""
import enum
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CANCELLED_MESSAGE = "Check stopped by user"
SKIPPED_HTTP_NOTE = "Skipped (HTTP)"
INVALID_TARGET_MESSAGE = "Invalid domain"
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred"


class StageTransitionError(Exception):
    """Raised when a stage or run is moved through an illegal transition."""


class StageId(str, enum.Enum):
    """Probe stages, declared in execution order."""

    DNS = "dns"
    CONNECTION = "connection"
    TLS = "tls"
    FIRST_BYTE = "firstByte"
    DOWNLOAD = "download"


class StageStatus(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


STAGE_ORDER: List[StageId] = list(StageId)
TERMINAL_STAGE_STATUSES = {StageStatus.SUCCESS, StageStatus.ERROR}

STAGE_NAMES = {
    StageId.DNS: "DNS Resolution",
    StageId.CONNECTION: "Connection Establishment",
    StageId.TLS: "TLS Handshake",
    StageId.FIRST_BYTE: "First Byte Received",
    StageId.DOWNLOAD: "Complete Download",
}


def first_line(message: Optional[str], default: str = UNEXPECTED_ERROR_MESSAGE) -> str:
    """Return the first non-empty line of a message for display stability."""
    if not message:
        return default
    for line in str(message).splitlines():
        line = line.strip()
        if line:
            return line
    return default


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Stage(_WireModel):
    """One probe step and its current state."""

    id: StageId
    name: str
    status: StageStatus = StageStatus.IDLE
    timestamp: Optional[str] = None
    duration_ms: Optional[int] = Field(default=None, ge=0)
    error_details: Optional[str] = None

    def _finish(self, status: StageStatus, duration_ms: int, details: Optional[str]) -> None:
        if duration_ms < 0:
            raise ValueError("duration_ms must be non-negative")
        self.status = status
        self.timestamp = _now_iso()
        self.duration_ms = int(duration_ms)
        self.error_details = details


class RunResult(_WireModel):
    """Aggregate state of one probe run.

    Mutated in place by a single owner; everything that leaves the owner is a
    ``snapshot()``.
    """

    stages: List[Stage]
    is_complete: bool = False
    is_success: bool = False
    total_response_time: int = 0
    error_message: str = ""
    check_location: Optional[str] = None
    check_ip: Optional[str] = Field(default=None, alias="checkIP")

    @classmethod
    def new(cls) -> "RunResult":
        return cls(stages=[Stage(id=stage_id, name=STAGE_NAMES[stage_id]) for stage_id in STAGE_ORDER])

    def stage(self, stage_id: StageId) -> Stage:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        raise KeyError(stage_id)

    @property
    def active_stage(self) -> Optional[Stage]:
        """The stage currently loading, if any."""
        for stage in self.stages:
            if stage.status == StageStatus.LOADING:
                return stage
        return None

    def attributed_time(self) -> int:
        return sum(
            stage.duration_ms or 0
            for stage in self.stages
            if stage.status in TERMINAL_STAGE_STATUSES
        )

    def _ensure_open(self) -> None:
        if self.is_complete:
            raise StageTransitionError("Run is already complete")

    def _ensure_ordered(self, stage_id: StageId) -> None:
        # Every earlier stage must have succeeded before a later one may start
        for stage in self.stages:
            if stage.id == stage_id:
                return
            if stage.status != StageStatus.SUCCESS:
                raise StageTransitionError(
                    f"Cannot start {stage_id.value}: {stage.id.value} is {stage.status.value}"
                )

    def begin_stage(self, stage_id: StageId) -> Stage:
        self._ensure_open()
        self._ensure_ordered(stage_id)
        stage = self.stage(stage_id)
        if stage.status != StageStatus.IDLE:
            raise StageTransitionError(f"Stage {stage_id.value} is already {stage.status.value}")
        stage.status = StageStatus.LOADING
        return stage

    def complete_stage(self, stage_id: StageId, duration_ms: int) -> Stage:
        self._ensure_open()
        stage = self.stage(stage_id)
        if stage.status != StageStatus.LOADING:
            raise StageTransitionError(f"Stage {stage_id.value} is not loading")
        stage._finish(StageStatus.SUCCESS, duration_ms, None)
        self.total_response_time += stage.duration_ms
        return stage

    def skip_stage(self, stage_id: StageId, note: str) -> Stage:
        self._ensure_open()
        self._ensure_ordered(stage_id)
        stage = self.stage(stage_id)
        if stage.status != StageStatus.IDLE:
            raise StageTransitionError(f"Stage {stage_id.value} is already {stage.status.value}")
        stage._finish(StageStatus.SUCCESS, 0, note)
        return stage

    def fail_stage(self, stage_id: StageId, duration_ms: int, message: str) -> Stage:
        self._ensure_open()
        stage = self.stage(stage_id)
        if stage.status != StageStatus.LOADING:
            raise StageTransitionError(f"Stage {stage_id.value} is not loading")
        stage._finish(StageStatus.ERROR, duration_ms, first_line(message))
        self.total_response_time += stage.duration_ms
        return stage

    def finish_success(self) -> None:
        self._ensure_open()
        pending = [stage.id.value for stage in self.stages if stage.status != StageStatus.SUCCESS]
        if pending:
            raise StageTransitionError(f"Stages not successful: {', '.join(pending)}")
        self.is_complete = True
        self.is_success = True
        self.error_message = ""

    def finish_failure(self, message: str) -> None:
        self._ensure_open()
        self.is_complete = True
        self.is_success = False
        self.error_message = first_line(message)

    def mark_cancelled(self) -> None:
        """Terminate the run as stopped by the user; stage states are left as they are."""
        self.finish_failure(CANCELLED_MESSAGE)

    def snapshot(self) -> "RunResult":
        return self.model_copy(deep=True)

    def to_history_entry(self, url: str) -> "HistoryEntry":
        return HistoryEntry(
            url=url,
            timestamp=_now_iso(),
            success=self.is_success,
            response_time=self.total_response_time,
            error_message=self.error_message or None,
        )


class HistoryEntry(_WireModel):
    """Summary of a finished run handed to history collaborators."""

    url: str
    timestamp: str
    success: bool
    response_time: int
    error_message: Optional[str] = None


class StreamEvent(_WireModel):
    type: Literal["update", "final"]
    data: RunResult

    @property
    def is_final(self) -> bool:
        return self.type == "final"


class CheckRequest(BaseModel):
    url: str = Field(..., min_length=1, max_length=2048, description="Target URL; https is assumed when no scheme is given")


class CancelResponse(BaseModel):
    check_id: str
    status: str


__all__ = [
    "CANCELLED_MESSAGE",
    "SKIPPED_HTTP_NOTE",
    "INVALID_TARGET_MESSAGE",
    "UNEXPECTED_ERROR_MESSAGE",
    "STAGE_ORDER",
    "StageTransitionError",
    "StageId",
    "StageStatus",
    "Stage",
    "RunResult",
    "HistoryEntry",
    "StreamEvent",
    "CheckRequest",
    "CancelResponse",
    "first_line",
]
