# workers.py
import traceback
from typing import Any, Callable, Dict, List, Mapping, Optional
from config import Config
from custom_logging import configure_logging, logger
from clustering import PointClusterer
from data_engine import DataProcessor
from models import points_from_payload
from protocol import TaskRequest, TaskResponse, TaskType
from scoring import SiteScorer
import spatial

Report = Callable[[float], None]
Handler = Callable[[Any, Report], Any]

STOP = None


def _analyze_sites(payload: Mapping[str, Any], report: Report) -> Any:
    return SiteScorer().analyze_sites(
        payload["sites"], payload.get("criteria"), payload.get("constraints"), on_progress=report
    )


def _calculate_distances(payload: Mapping[str, Any], report: Report) -> Any:
    return SiteScorer().calculate_distances(payload["sites"], payload.get("infrastructure") or {}, on_progress=report)


def _score_sites(payload: Mapping[str, Any], report: Report) -> Any:
    return SiteScorer().rank_sites(payload["sites"], payload.get("criteria"), on_progress=report)


def _apply_filters(payload: Mapping[str, Any], report: Report) -> Any:
    return SiteScorer().filter_sites(payload["sites"], payload.get("filters"), on_progress=report)


def _validate_data(payload: Mapping[str, Any], report: Report) -> Any:
    return DataProcessor().validate(payload["dataset"], payload.get("schema") or {}, on_progress=report)


def _clean_data(payload: Mapping[str, Any], report: Report) -> Any:
    rules = payload.get("rules", payload.get("cleaning_rules")) or {}
    return DataProcessor().clean(payload["dataset"], rules, on_progress=report)


def _transform_data(payload: Mapping[str, Any], report: Report) -> Any:
    return DataProcessor().transform(payload["dataset"], payload.get("transformations") or [], on_progress=report)


def _aggregate_data(payload: Mapping[str, Any], report: Report) -> Any:
    aggregation = payload.get("aggregation", payload)
    return DataProcessor().aggregate(
        payload["dataset"], aggregation.get("group_by", []), aggregation.get("calculations", [])
    )


def _cluster_points(payload: Mapping[str, Any], report: Report) -> Any:
    options = payload.get("options") or {}
    points = points_from_payload(payload.get("points", payload.get("data", [])))
    return PointClusterer().cluster(points, options).to_dict()


def _spatial_analysis(payload: Mapping[str, Any], report: Report) -> Any:
    return spatial.analyze(payload.get("data"), payload.get("options") or {}, on_progress=report)


HANDLERS: Dict[TaskType, Handler] = {
    TaskType.ANALYZE_SITES: _analyze_sites,
    TaskType.CALCULATE_DISTANCES: _calculate_distances,
    TaskType.SCORE_SITES: _score_sites,
    TaskType.APPLY_FILTERS: _apply_filters,
    TaskType.VALIDATE_DATA: _validate_data,
    TaskType.CLEAN_DATA: _clean_data,
    TaskType.TRANSFORM_DATA: _transform_data,
    TaskType.AGGREGATE_DATA: _aggregate_data,
    TaskType.CLUSTER_POINTS: _cluster_points,
    TaskType.SPATIAL_ANALYSIS: _spatial_analysis,
}

_unhandled = set(TaskType) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"Task types without a handler: {sorted(t.value for t in _unhandled)}")


def error_payload(exc: BaseException) -> Dict[str, Any]:
    return {
        "kind": type(exc).__name__,
        "message": str(exc),
        "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }


def execute(request: TaskRequest, report: Optional[Report] = None) -> TaskResponse:
    """Run one request in the current process and build its final response"""
    try:
        results = HANDLERS[request.task_type](request.payload, report or (lambda progress: None))
        return TaskResponse.complete(request.task_type, request.id, results)
    except Exception as e:
        logger.error("Task failed", task_id=request.id, task_type=request.task_type.value, error=str(e))
        return TaskResponse.failure(request.id, error_payload(e))


def worker_main(name: str, inbox: Any, outbox: Any, debug: bool = False) -> None:
    """Worker process loop: one request in, progress messages and one final response out.

    outbox is the write end of this worker's own response pipe.
    """
    configure_logging(debug)
    logger.info("Worker started", worker=name)

    while True:
        message = inbox.get()
        if message is STOP:
            break

        task_id = message.get("id") if isinstance(message, dict) else None
        try:
            request = TaskRequest.from_message(message)
        except Exception as e:
            outbox.send(TaskResponse.failure(str(task_id), error_payload(e)).to_message())
            continue

        def report(progress: float, _task_id: str = request.id) -> None:
            outbox.send(TaskResponse.progress_update(_task_id, progress).to_message())

        response = execute(request, report)
        outbox.send(response.to_message())

    logger.info("Worker stopped", worker=name)


class ProcessWorker:
    """A named worker living in its own process.

    Requests go in through an inbox queue and responses come back over a pipe
    owned by this worker alone, so killing one worker cannot block the others.
    Both channels are replaced on restart.
    """

    def __init__(self, name: str, context: Any):
        self.name = name
        self.context = context
        self.inbox = None
        self.connection = None
        self.process = None

    def _open_channel(self) -> Any:
        """Create a fresh response pipe; returns the write end"""
        self.connection, writer = self.context.Pipe(duplex=False)
        return writer

    def _close_channel(self) -> None:
        if self.connection is not None:
            self.connection.close()
            self.connection = None

    def start(self) -> None:
        self.inbox = self.context.Queue()
        writer = self._open_channel()
        self.process = self.context.Process(
            target=worker_main,
            args=(self.name, self.inbox, writer, Config.DEBUG),
            name=f"worker-{self.name}",
            daemon=True,
        )
        self.process.start()
        # the child holds its own copy; closing ours lets the reader see EOF when it dies
        writer.close()
        logger.debug("Worker process spawned", worker=self.name, pid=self.process.pid)

    def send(self, message: Dict[str, Any]) -> None:
        self.inbox.put(message)

    def drain(self) -> List[Dict[str, Any]]:
        """Every response waiting on the pipe; closes the pipe once the writer is gone"""
        messages = []
        if self.connection is None:
            return messages
        try:
            while self.connection.poll():
                messages.append(self.connection.recv())
        except (EOFError, OSError):
            logger.warning("Worker response channel closed", worker=self.name)
            self._close_channel()
        return messages

    def is_alive(self) -> bool:
        return self.process is not None and self.process.is_alive()

    def terminate(self) -> None:
        if self.process is not None:
            if self.process.is_alive():
                self.process.terminate()
            self.process.join(Config.SHUTDOWN_TIMEOUT)
            self.process = None
        self._close_channel()
        if self.inbox is not None:
            self.inbox.close()
            self.inbox = None

    def restart(self) -> None:
        self.terminate()
        self.start()

    def stop(self, timeout: float = Config.SHUTDOWN_TIMEOUT) -> None:
        if self.process is not None and self.process.is_alive():
            self.inbox.put(STOP)
            self.process.join(timeout)
        self.terminate()
