# protocol.py
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional
import uuid
import time
from exceptions import ProtocolError, UnknownTaskType

PROGRESS = "PROGRESS"
ERROR = "ERROR"


class TaskType(str, Enum):
    """Closed catalog of work a worker can be asked to do"""
    ANALYZE_SITES = "ANALYZE_SITES"
    CALCULATE_DISTANCES = "CALCULATE_DISTANCES"
    SCORE_SITES = "SCORE_SITES"
    APPLY_FILTERS = "APPLY_FILTERS"
    VALIDATE_DATA = "VALIDATE_DATA"
    CLEAN_DATA = "CLEAN_DATA"
    TRANSFORM_DATA = "TRANSFORM_DATA"
    AGGREGATE_DATA = "AGGREGATE_DATA"
    CLUSTER_POINTS = "CLUSTER_POINTS"
    SPATIAL_ANALYSIS = "SPATIAL_ANALYSIS"

    @property
    def completion_type(self) -> str:
        return COMPLETION_TYPES[self]


COMPLETION_TYPES: Dict[TaskType, str] = {
    TaskType.ANALYZE_SITES: "ANALYSIS_COMPLETE",
    TaskType.CALCULATE_DISTANCES: "DISTANCES_COMPLETE",
    TaskType.SCORE_SITES: "SCORING_COMPLETE",
    TaskType.APPLY_FILTERS: "FILTERING_COMPLETE",
    TaskType.VALIDATE_DATA: "VALIDATION_COMPLETE",
    TaskType.CLEAN_DATA: "CLEANING_COMPLETE",
    TaskType.TRANSFORM_DATA: "TRANSFORMATION_COMPLETE",
    TaskType.AGGREGATE_DATA: "AGGREGATION_COMPLETE",
    TaskType.CLUSTER_POINTS: "CLUSTERING_COMPLETE",
    TaskType.SPATIAL_ANALYSIS: "SPATIAL_COMPLETE",
}

COMPLETE_TYPES = frozenset(COMPLETION_TYPES.values())


def parse_task_type(value: Any) -> TaskType:
    """Map a tag onto the catalog, rejecting anything outside it"""
    if isinstance(value, TaskType):
        return value
    try:
        return TaskType(value)
    except (ValueError, TypeError):
        raise UnknownTaskType(value) from None


def new_task_id() -> str:
    return f"task_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class TaskRequest:
    task_type: TaskType
    payload: Any
    id: str

    def to_message(self) -> Dict[str, Any]:
        return {"taskType": self.task_type.value, "payload": self.payload, "id": self.id}

    @classmethod
    def from_message(cls, message: Any) -> "TaskRequest":
        if not isinstance(message, dict) or "id" not in message or "taskType" not in message:
            raise ProtocolError(f"Malformed request: {message!r}")
        return cls(parse_task_type(message["taskType"]), message.get("payload"), str(message["id"]))


@dataclass(frozen=True)
class TaskResponse:
    type: str
    id: str
    results: Any = None
    progress: Optional[float] = None
    error: Any = None

    @property
    def is_complete(self) -> bool:
        return self.type in COMPLETE_TYPES

    @property
    def is_progress(self) -> bool:
        return self.type == PROGRESS

    @property
    def is_error(self) -> bool:
        return self.type == ERROR

    @classmethod
    def complete(cls, task_type: TaskType, task_id: str, results: Any) -> "TaskResponse":
        return cls(task_type.completion_type, task_id, results=results)

    @classmethod
    def progress_update(cls, task_id: str, progress: float) -> "TaskResponse":
        return cls(PROGRESS, task_id, progress=max(0.0, min(100.0, float(progress))))

    @classmethod
    def failure(cls, task_id: str, error: Dict[str, Any]) -> "TaskResponse":
        return cls(ERROR, task_id, error=error)

    def to_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"type": self.type, "id": self.id}
        if self.is_complete:
            message["results"] = self.results
        elif self.is_progress:
            message["progress"] = self.progress
        else:
            message["error"] = self.error
        return message

    @classmethod
    def from_message(cls, message: Any) -> "TaskResponse":
        if not isinstance(message, dict) or "type" not in message or "id" not in message:
            raise ProtocolError(f"Malformed response: {message!r}")
        kind = message["type"]
        if kind not in COMPLETE_TYPES and kind not in (PROGRESS, ERROR):
            raise ProtocolError(f"Unknown response type: {kind}")
        return cls(
            kind,
            str(message["id"]),
            results=message.get("results"),
            progress=message.get("progress"),
            error=message.get("error"),
        )
