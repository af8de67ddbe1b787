# models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import time

Coordinate = Tuple[float, float]


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Point:
    """A located item: (longitude, latitude) plus free-form attributes"""
    id: Any
    coordinates: Coordinate
    attributes: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        lon, lat = self.coordinates
        object.__setattr__(self, "coordinates", (float(lon), float(lat)))
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @property
    def lon(self) -> float:
        return self.coordinates[0]

    @property
    def lat(self) -> float:
        return self.coordinates[1]

    @classmethod
    def from_dict(cls, data: Any, index: int = 0) -> "Point":
        """Build a point from a payload item: a dict with coordinates, or a bare pair"""
        if isinstance(data, Point):
            return data
        if isinstance(data, (list, tuple)):
            return cls(id=index, coordinates=(data[0], data[1]))
        if "coordinates" in data:
            coords = data["coordinates"]
        elif "lon" in data and "lat" in data:
            coords = (data["lon"], data["lat"])
        else:
            raise ValueError(f"Point {index} has no coordinates")
        attributes = data.get("attributes")
        if attributes is None:
            attributes = data.get("properties", {})
        return cls(id=data.get("id", index), coordinates=tuple(coords), attributes=attributes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "coordinates": list(self.coordinates),
            "attributes": dict(self.attributes),
        }


def points_from_payload(items: Sequence[Any]) -> List[Point]:
    return [Point.from_dict(item, index) for index, item in enumerate(items)]


@dataclass(frozen=True)
class DendrogramStep:
    step: int
    merged: Tuple[int, int]
    distance: float
    new_cluster_index: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "merged_clusters": list(self.merged),
            "distance": self.distance,
            "new_cluster_index": self.new_cluster_index,
        }


@dataclass
class ClusteringResult:
    method: str
    clusters: List[List[Point]]
    centroids: List[Coordinate] = field(default_factory=list)
    labels: List[Optional[int]] = field(default_factory=list)
    dendrogram: List[DendrogramStep] = field(default_factory=list)
    noise: List[Point] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def sizes(self) -> List[int]:
        return [len(cluster) for cluster in self.clusters]

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape consumed by renderers and dashboards"""
        result: Dict[str, Any] = {
            "clusters": [[p.to_dict() for p in cluster] for cluster in self.clusters],
            "centroids": [list(c) for c in self.centroids],
            "labels": list(self.labels),
        }
        if self.method == "hierarchical":
            result["dendrogram"] = [step.to_dict() for step in self.dendrogram]
        if self.method == "density":
            result["noise"] = [p.to_dict() for p in self.noise]
        return {"type": self.method, "result": result, "metadata": dict(self.metadata)}


@dataclass
class ScoreResult:
    site_id: Any
    environmental: float
    infrastructure: float
    economic: float
    social: float
    total: float
    rank: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environmental": self.environmental,
            "infrastructure": self.infrastructure,
            "economic": self.economic,
            "social": self.social,
            "total": self.total,
        }


@dataclass
class ValidationError:
    """One problem found on one dataset item; collected, never raised"""
    kind: str
    field: str
    message: str
    expected: Any = None
    actual: Any = None

    MISSING_FIELD = "missing_field"
    TYPE_ERROR = "type_error"
    RANGE_ERROR = "range_error"

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.kind, "field": self.field, "message": self.message}
        if self.expected is not None:
            data["expected"] = self.expected
        if self.actual is not None:
            data["actual"] = self.actual
        return data


class TaskStatus(str, Enum):
    SUBMITTED = "submitted"
    BUSY = "busy"
    COMPLETED = "completed"
    ERRORED = "errored"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.ERRORED)


@dataclass
class Task:
    id: str
    task_type: Any
    payload: Any
    worker: str
    status: TaskStatus = TaskStatus.SUBMITTED
    submitted_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None
    progress: float = 0.0
    results: Any = None
    error: Optional[Exception] = None

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return self.finished_at - self.submitted_at


@dataclass
class WorkerHandle:
    name: str
    busy: bool = False
    task_count: int = 0
    last_used: float = field(default_factory=time.time)
    current_task: Optional[str] = None

    def acquire(self, task_id: str) -> None:
        self.busy = True
        self.task_count += 1
        self.current_task = task_id

    def release(self) -> None:
        self.busy = False
        self.current_task = None
        self.last_used = time.time()
