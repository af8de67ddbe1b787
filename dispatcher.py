# dispatcher.py
import asyncio
from collections import deque
import multiprocessing
from multiprocessing.connection import wait as wait_for_channels
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
from config import Config
from exceptions import (
    EngineError,
    InvalidParameterError,
    ProtocolError,
    WorkerBusy,
    WorkerRuntimeError,
    WorkerTimeout,
    WorkerUnavailable,
)
from custom_logging import logger
from models import Task, TaskStatus, WorkerHandle
from protocol import TaskRequest, TaskResponse, new_task_id, parse_task_type
from workers import ProcessWorker

TASK_COMPLETE = "task_complete"
TASK_PROGRESS = "task_progress"
TASK_ERROR = "task_error"
EVENTS = (TASK_COMPLETE, TASK_PROGRESS, TASK_ERROR)


class TaskDispatcher:
    """Fixed pool of named worker processes with one task in flight per worker.

    Submission never queues: a busy or unknown worker is rejected on the spot.
    Responses are pulled on the caller's thread by process_responses(),
    wait_for() or the run() coroutine, so the dispatcher is the only code that
    touches handle state.
    """

    def __init__(
        self,
        worker_names: Optional[Iterable[str]] = None,
        worker_factory: Callable[..., Any] = ProcessWorker,
        task_timeout: Optional[float] = Config.TASK_TIMEOUT,
        start_method: str = Config.MP_START_METHOD,
    ):
        names = list(Config.WORKER_NAMES if worker_names is None else worker_names)
        if not names:
            raise InvalidParameterError("At least one worker name is required")
        if len(set(names)) != len(names):
            raise InvalidParameterError(f"Duplicate worker names: {names}")

        self.task_timeout = task_timeout
        self._context = multiprocessing.get_context(start_method)
        self._workers = {name: worker_factory(name, self._context) for name in names}
        self._handles = {name: WorkerHandle(name) for name in names}
        self._tasks: Dict[str, Task] = {}
        # ids of finished tasks still held in _tasks, oldest first
        self._finished: deque = deque()
        self._listeners: Dict[str, List[Callable[..., None]]] = {event: [] for event in EVENTS}
        self._metrics: deque = deque(maxlen=Config.MAX_METRIC_ENTRIES)
        self._running = False

    # lifecycle

    def start(self) -> "TaskDispatcher":
        if self._running:
            return self
        for worker in self._workers.values():
            worker.start()
        self._running = True
        logger.info("Worker pool started", workers=sorted(self._workers))
        return self

    def close(self) -> None:
        """Stop every worker and release every handle"""
        if not self._running:
            return
        for name, worker in self._workers.items():
            try:
                worker.stop()
            except Exception as e:
                logger.error("Worker shutdown failed", worker=name, error=str(e))
        for task in list(self._tasks.values()):
            if not task.status.terminal:
                self._finish(task, error=WorkerRuntimeError("Dispatcher closed", kind="DispatcherClosed"))
        for handle in self._handles.values():
            handle.release()
        self._running = False
        logger.info("Worker pool stopped")

    def __enter__(self) -> "TaskDispatcher":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def running(self) -> bool:
        return self._running

    # queries

    @property
    def worker_names(self) -> List[str]:
        return list(self._handles)

    def is_available(self, worker_name: str) -> bool:
        handle = self._handles.get(worker_name)
        return handle is not None and not handle.busy

    def list_available(self) -> Set[str]:
        return {name for name, handle in self._handles.items() if not handle.busy}

    def get_handle(self, worker_name: str) -> WorkerHandle:
        if worker_name not in self._handles:
            raise WorkerUnavailable(worker_name)
        return self._handles[worker_name]

    def get_task(self, task_id: str) -> Task:
        if task_id not in self._tasks:
            raise EngineError(f"Unknown task id: {task_id}")
        return self._tasks[task_id]

    # notifications

    def subscribe(self, event: str, callback: Callable[..., None]) -> Callable[..., None]:
        if event not in self._listeners:
            raise InvalidParameterError(f"Unknown event: {event}")
        self._listeners[event].append(callback)
        return callback

    def unsubscribe(self, event: str, callback: Callable[..., None]) -> None:
        if callback in self._listeners.get(event, []):
            self._listeners[event].remove(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception as e:
                logger.error("Listener failed", listen_event=event, error=str(e), exc_info=True)

    # submission

    def submit(self, worker_name: str, task_type: Any, payload: Any) -> str:
        """Hand a task to an idle worker and return its id immediately"""
        if worker_name not in self._handles:
            raise WorkerUnavailable(worker_name)
        handle = self._handles[worker_name]
        if handle.busy:
            raise WorkerBusy(worker_name)
        task_type = parse_task_type(task_type)
        if not self._running:
            raise EngineError("Dispatcher is not running")

        task_id = new_task_id()
        while task_id in self._tasks:
            task_id = new_task_id()
        request = TaskRequest(task_type, payload, task_id)

        handle.acquire(task_id)
        task = Task(id=task_id, task_type=task_type, payload=payload, worker=worker_name)
        self._tasks[task_id] = task
        try:
            self._workers[worker_name].send(request.to_message())
        except Exception:
            handle.task_count -= 1
            handle.release()
            del self._tasks[task_id]
            raise
        task.status = TaskStatus.BUSY

        self._metrics.append({
            "worker": worker_name,
            "type": task_type.value,
            "task_id": task_id,
            "timestamp": time.time(),
            "submitted": True,
        })
        logger.info("Task submitted", worker=worker_name, task_id=task_id, task_type=task_type.value)
        return task_id

    # response handling

    def process_responses(self, timeout: float = 0.0) -> int:
        """Apply every pending worker response; block up to timeout for the first one"""
        handled = 0
        wait = timeout if timeout and timeout > 0 else 0
        while True:
            channels = {
                worker.connection: name
                for name, worker in self._workers.items()
                if worker.connection is not None
            }
            if not channels:
                if wait:
                    time.sleep(wait)
                break
            ready = wait_for_channels(list(channels), timeout=wait)
            if not ready:
                break
            wait = 0
            for channel in ready:
                worker_name = channels[channel]
                for message in self._workers[worker_name].drain():
                    self._handle_response(worker_name, message)
                    handled += 1
        self._check_workers()
        return handled

    def _handle_response(self, worker_name: str, message: Any) -> None:
        try:
            response = TaskResponse.from_message(message)
        except ProtocolError as e:
            logger.warning("Dropping malformed response", worker=worker_name, error=str(e))
            return

        handle = self._handles.get(worker_name)
        task = self._tasks.get(response.id)
        if handle is None or task is None or task.status.terminal or handle.current_task != response.id:
            logger.warning("Ignoring stale response", worker=worker_name, task_id=response.id, type=response.type)
            return

        if response.is_progress:
            task.progress = float(response.progress or 0.0)
            self._emit(TASK_PROGRESS, worker_name, response.id, task.progress)
            return

        handle.release()
        if response.is_complete:
            self._finish(task, results=response.results)
        else:
            self._finish(task, error=WorkerRuntimeError.from_payload(response.error))

    def _finish(self, task: Task, results: Any = None, error: Optional[WorkerRuntimeError] = None) -> None:
        task.finished_at = time.monotonic()
        task.status = TaskStatus.ERRORED if error is not None else TaskStatus.COMPLETED
        self._retire(task)
        task.results = results
        task.error = error
        self._metrics.append({
            "worker": task.worker,
            "type": task.task_type.value,
            "task_id": task.id,
            "timestamp": time.time(),
            "success": error is None,
            "duration": task.duration,
        })
        if error is None:
            task.progress = 100.0
            logger.info("Task completed", worker=task.worker, task_id=task.id, duration=task.duration)
            self._emit(TASK_COMPLETE, task.worker, task.id, results)
        else:
            logger.error("Task failed", worker=task.worker, task_id=task.id, kind=error.kind, error=error.message)
            self._emit(TASK_ERROR, task.worker, task.id, error)

    def _retire(self, task: Task) -> None:
        """Keep at most MAX_METRIC_ENTRIES finished tasks for get_task(); drop the oldest beyond that"""
        self._finished.append(task.id)
        while len(self._finished) > Config.MAX_METRIC_ENTRIES:
            self._tasks.pop(self._finished.popleft(), None)

    def _check_workers(self) -> None:
        """Fail tasks whose worker died or ran past the task timeout"""
        now = time.monotonic()
        for name, handle in self._handles.items():
            if not handle.busy:
                continue
            task = self._tasks.get(handle.current_task)
            if task is None:
                handle.release()
                continue
            if not self._workers[name].is_alive():
                self._fail_busy_worker(task, WorkerRuntimeError(
                    f"Worker {name} exited while running task {task.id}", kind="WorkerExited"
                ))
            elif self.task_timeout is not None and now - task.submitted_at > self.task_timeout:
                self._fail_busy_worker(task, WorkerTimeout(name, task.id, self.task_timeout))

    def _fail_busy_worker(self, task: Task, error: WorkerRuntimeError) -> None:
        """Replace the worker process so the handle can be released in a clean state"""
        logger.warning("Restarting worker", worker=task.worker, task_id=task.id, reason=error.kind)
        self._workers[task.worker].restart()
        self._handles[task.worker].release()
        self._finish(task, error=error)

    # waiting

    def _outcome(self, task: Task) -> Any:
        """Results of a finished task, or its error raised; the task is no longer tracked afterwards"""
        self._tasks.pop(task.id, None)
        if task.status is TaskStatus.COMPLETED:
            return task.results
        raise task.error

    def wait_for(self, task_id: str, timeout: Optional[float] = None) -> Any:
        """Block until the task finishes; return its results or raise its error"""
        task = self.get_task(task_id)
        deadline = None if timeout is None else time.monotonic() + timeout
        while not task.status.terminal:
            if deadline is not None and time.monotonic() >= deadline:
                self._fail_busy_worker(task, WorkerTimeout(task.worker, task.id, timeout))
                break
            wait = Config.POLL_INTERVAL
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - time.monotonic()))
            self.process_responses(timeout=wait)
        return self._outcome(task)

    async def run(self, worker_name: str, task_type: Any, payload: Any, timeout: Optional[float] = None) -> Any:
        """Submit a task and await its results without blocking the event loop"""
        task = self.get_task(self.submit(worker_name, task_type, payload))
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            self.process_responses()
            if task.status.terminal:
                break
            if deadline is not None and time.monotonic() >= deadline:
                self._fail_busy_worker(task, WorkerTimeout(task.worker, task.id, timeout))
                break
            await asyncio.sleep(Config.POLL_INTERVAL)
        return self._outcome(task)

    # metrics

    @property
    def metrics(self) -> List[Dict[str, Any]]:
        return list(self._metrics)

    def performance_summary(self) -> Dict[str, Any]:
        now = time.time()
        workers = {
            name: {
                "available": not handle.busy,
                "task_count": handle.task_count,
                "last_used": handle.last_used,
                "idle_seconds": 0.0 if handle.busy else now - handle.last_used,
                "alive": self._workers[name].is_alive(),
            }
            for name, handle in self._handles.items()
        }
        outcomes = [m for m in self._metrics if "success" in m]
        failed = sum(1 for m in outcomes if not m["success"])
        durations = [m["duration"] for m in outcomes if m.get("duration") is not None]
        tasks = {
            "submitted": sum(1 for m in self._metrics if m.get("submitted")),
            "completed": len(outcomes) - failed,
            "failed": failed,
            "average_duration": sum(durations) / len(durations) if durations else None,
        }

        recommendations = []
        if workers and all(not w["available"] for w in workers.values()):
            recommendations.append({
                "type": "info",
                "message": "All workers are busy. Retry later or register more workers at startup.",
                "priority": "medium",
            })
        if outcomes and failed / len(outcomes) > 0.5:
            recommendations.append({
                "type": "warning",
                "message": "More than half of recent tasks failed. Check task payloads and worker logs.",
                "priority": "high",
            })
        if self._running:
            dead = sorted(name for name, w in workers.items() if not w["alive"])
            if dead:
                recommendations.append({
                    "type": "warning",
                    "message": f"Worker processes not running: {', '.join(dead)}",
                    "priority": "high",
                })

        return {"workers": workers, "tasks": tasks, "recommendations": recommendations}
