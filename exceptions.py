# exceptions.py
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base exception for task engine errors"""
    pass


class WorkerUnavailable(EngineError):
    """Exception for submissions to a worker name the pool does not know"""

    def __init__(self, worker_name: str):
        super().__init__(f"Worker {worker_name} not available")
        self.worker_name = worker_name


class WorkerBusy(EngineError):
    """Exception for submissions to a worker that already has a task in flight"""

    def __init__(self, worker_name: str):
        super().__init__(f"Worker {worker_name} is busy")
        self.worker_name = worker_name


class UnknownTaskType(EngineError):
    """Exception for task type tags outside the catalog"""

    def __init__(self, task_type: Any):
        super().__init__(f"Unknown task type: {task_type!r}")
        self.task_type = task_type


class ProtocolError(EngineError):
    """Exception for malformed request or response envelopes"""
    pass


class WorkerRuntimeError(EngineError):
    """Exception for failures raised inside a worker while running a task"""

    def __init__(self, message: str, kind: str = "Exception", traceback: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.traceback = traceback

    @classmethod
    def from_payload(cls, payload: Any) -> "WorkerRuntimeError":
        if isinstance(payload, dict):
            return cls(
                str(payload.get("message", "")),
                kind=str(payload.get("kind", "Exception")),
                traceback=payload.get("traceback"),
            )
        return cls(str(payload))

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "traceback": self.traceback}


class WorkerTimeout(WorkerRuntimeError):
    """Exception for tasks that outlived the dispatcher's task timeout"""

    def __init__(self, worker_name: str, task_id: str, timeout: float):
        super().__init__(
            f"Task {task_id} on worker {worker_name} exceeded {timeout}s",
            kind="WorkerTimeout",
        )
        self.worker_name = worker_name
        self.task_id = task_id
        self.timeout = timeout


class InvalidParameterError(EngineError, ValueError):
    """Exception for algorithm options that cannot be honoured"""
    pass


class ExpressionError(EngineError):
    """Exception for computed-field expressions the evaluator refuses"""
    pass
