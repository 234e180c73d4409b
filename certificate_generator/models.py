"""Data model for certificate generation jobs."""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from .errors import InputError
from .formatting import finite_float, hex_to_rgb, normalize_hex_color

if TYPE_CHECKING:
    from .fonts import FontAsset

Row = Mapping[str, str]


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobState.COMPLETED, JobState.PARTIAL, JobState.CANCELLED, JobState.FAILED}
)

_ALLOWED_TRANSITIONS = {
    JobState.QUEUED: frozenset({JobState.RUNNING, JobState.CANCELLED}),
    JobState.RUNNING: TERMINAL_STATES,
}


class Stage(str, Enum):
    QUEUED = "queued"
    LOADING = "loading"
    RENDERING = "rendering"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (Stage.COMPLETE, Stage.PARTIAL, Stage.CANCELLED, Stage.ERROR)


TERMINAL_STAGES = {
    JobState.COMPLETED: Stage.COMPLETE,
    JobState.PARTIAL: Stage.PARTIAL,
    JobState.CANCELLED: Stage.CANCELLED,
    JobState.FAILED: Stage.ERROR,
}


class TemplateKind(str, Enum):
    IMAGE = "image"
    DOCUMENT = "document"


@dataclass(frozen=True)
class FieldPlacement:
    field_name: str
    x: float
    y: float
    font_size_px: float
    color_hex: str = "000000"
    bold: bool = False

    @property
    def rgb(self) -> Tuple[int, int, int]:
        return hex_to_rgb(self.color_hex)


@dataclass(frozen=True)
class TemplateAsset:
    kind: TemplateKind
    data: bytes = field(repr=False)
    width: float
    height: float


class DocumentRenderer(Protocol):
    """Renders one row onto the shared template and returns the PDF bytes."""

    def __call__(
        self,
        row: Row,
        fields: Sequence[FieldPlacement],
        template: Optional[TemplateAsset],
        font: "FontAsset",
    ) -> bytes:
        ...


@dataclass(frozen=True)
class RenderResult:
    index: int
    success: bool
    content: Optional[bytes] = field(default=None, repr=False)
    entry_name: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    stage: Stage
    current: int
    total: int
    percent: int
    message: str
    timestamp: float = field(default_factory=time.time)
    generated: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "stage": self.stage.value,
            "current": self.current,
            "total": self.total,
            "percent": self.percent,
            "message": self.message,
            "timestamp": self.timestamp,
            "generated": self.generated,
            "failed": self.failed,
        }


def percent_of(current: int, total: int) -> int:
    if total <= 0:
        return 100
    return min(100, int(current * 100 / total))


class Job:
    """One batch-generation request and its lifecycle."""

    def __init__(
        self,
        rows: Iterable[Row],
        fields: Iterable[FieldPlacement],
        template_ref: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> None:
        self.id = job_id or uuid.uuid4().hex
        self.rows: Tuple[Dict[str, str], ...] = tuple(dict(row) for row in rows)
        self.fields: Tuple[FieldPlacement, ...] = tuple(fields)
        self.template_ref = template_ref or None
        self.total = len(self.rows)
        self.state = JobState.QUEUED
        self.processed_count = 0
        self.generated_count = 0
        self.failed_count = 0
        self.failures: List[Tuple[int, str]] = []
        self.message = "Queued"
        self.artifact_path: Optional[str] = None
        self.created_at = time.time()
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.cancel_event = threading.Event()
        self.done_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def percent(self) -> int:
        return percent_of(self.processed_count, self.total)

    def request_cancel(self) -> None:
        self.cancel_event.set()

    def transition(self, new_state: JobState, message: Optional[str] = None) -> None:
        with self._lock:
            allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
            if new_state not in allowed:
                raise ValueError(f"Illegal job transition {self.state.value} -> {new_state.value}")
            self.state = new_state
            if message is not None:
                self.message = message
            if new_state is JobState.RUNNING:
                self.started_at = time.time()
            elif new_state.terminal:
                self.finished_at = time.time()

    def mark_done(self) -> None:
        """Signal waiters once the terminal state has been published."""
        self.done_event.set()

    def record_success(self) -> None:
        with self._lock:
            self._advance()
            self.generated_count += 1

    def record_failure(self, index: int, error: str) -> None:
        with self._lock:
            self._advance()
            self.failed_count += 1
            self.failures.append((index, error))

    def _advance(self) -> None:
        if self.processed_count >= self.total:
            raise ValueError("processed_count cannot exceed total")
        self.processed_count += 1

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.done_event.wait(timeout)

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "jobId": self.id,
                "state": self.state.value,
                "processed": self.processed_count,
                "generated": self.generated_count,
                "failed": self.failed_count,
                "total": self.total,
                "percent": self.percent,
                "message": self.message,
                "createdAt": self.created_at,
                "startedAt": self.started_at,
                "finishedAt": self.finished_at,
                "downloadable": self.state in (JobState.COMPLETED, JobState.PARTIAL)
                and self.artifact_path is not None,
            }


def parse_row(raw: Any, index: int) -> Dict[str, str]:
    if not isinstance(raw, dict):
        raise InputError(f"Row {index + 1} must be an object.")
    row: Dict[str, str] = {}
    for key, value in raw.items():
        if value is None:
            row[str(key)] = ""
        elif isinstance(value, (str, int, float, bool)):
            row[str(key)] = str(value)
        else:
            raise InputError(f"Row {index + 1} field {key!r} must be a scalar value.")
    return row


def parse_rows(raw: Any) -> List[Dict[str, str]]:
    if not isinstance(raw, list):
        raise InputError("'rows' must be an array.")
    if not raw:
        raise InputError("'rows' must contain at least one row.")
    return [parse_row(item, index) for index, item in enumerate(raw)]


def _first_present(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def parse_field_placement(raw: Any, index: int) -> FieldPlacement:
    if not isinstance(raw, dict):
        raise InputError(f"Field {index + 1} must be an object.")

    name = _first_present(raw, "fieldName", "field")
    if not isinstance(name, str) or not name.strip():
        raise InputError(f"Field {index + 1} needs a non-empty 'fieldName'.")

    x = finite_float(raw.get("x"))
    y = finite_float(raw.get("y"))
    if x is None or y is None:
        raise InputError(f"Field {name!r} needs numeric 'x' and 'y' coordinates.")

    size = finite_float(_first_present(raw, "fontSizePx", "size"))
    if size is None or size <= 0:
        raise InputError(f"Field {name!r} needs a positive 'fontSizePx'.")

    color = normalize_hex_color(_first_present(raw, "colorHex", "color"))
    if color is None:
        raise InputError(f"Field {name!r} has an invalid 'colorHex'; expected 6 hex digits.")

    bold = raw.get("bold", False)
    if not isinstance(bold, bool):
        raise InputError(f"Field {name!r} 'bold' must be a boolean.")

    return FieldPlacement(
        field_name=name,
        x=x,
        y=y,
        font_size_px=size,
        color_hex=color,
        bold=bold,
    )


def parse_fields(raw: Any) -> List[FieldPlacement]:
    if not isinstance(raw, list):
        raise InputError("'fields' must be an array.")
    if not raw:
        raise InputError("'fields' must contain at least one field placement.")
    return [parse_field_placement(item, index) for index, item in enumerate(raw)]

