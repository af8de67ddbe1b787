# main.py
import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
import pandas as pd
from config import Config
from custom_logging import configure_logging, logger
from dispatcher import TASK_PROGRESS, TaskDispatcher
from exceptions import EngineError
from protocol import TaskType

# Default worker for each task type when --worker is not given
DEFAULT_WORKERS = {
    TaskType.ANALYZE_SITES: "site_analysis",
    TaskType.CALCULATE_DISTANCES: "site_analysis",
    TaskType.SCORE_SITES: "site_analysis",
    TaskType.APPLY_FILTERS: "site_analysis",
    TaskType.VALIDATE_DATA: "data_processing",
    TaskType.CLEAN_DATA: "data_processing",
    TaskType.TRANSFORM_DATA: "data_processing",
    TaskType.AGGREGATE_DATA: "data_processing",
    TaskType.CLUSTER_POINTS: "clustering",
    TaskType.SPATIAL_ANALYSIS: "spatial_analysis",
}


def load_dataset(path: Path) -> List[Dict[str, Any]]:
    """Read a CSV or JSON-lines dataset into a list of records"""
    if path.suffix.lower() == ".csv":
        df = pd.read_csv(path)
    else:
        df = pd.read_json(path, lines=True)
    df = df.astype(object).where(pd.notnull(df), None)
    return df.to_dict(orient="records")


def build_payload(args: argparse.Namespace) -> Dict[str, Any]:
    payload = json.loads(Path(args.payload).read_text(encoding="utf-8")) if args.payload else {}
    if args.dataset:
        payload["dataset"] = load_dataset(Path(args.dataset))
    return payload


def run_task(task_type: TaskType, payload: Dict[str, Any], worker: Optional[str], timeout: Optional[float]) -> Any:
    worker_name = worker or DEFAULT_WORKERS[task_type]
    with TaskDispatcher([worker_name]) as dispatcher:
        dispatcher.subscribe(
            TASK_PROGRESS,
            lambda name, task_id, progress: logger.info("Task progress", worker=name, task_id=task_id, progress=progress),
        )
        task_id = dispatcher.submit(worker_name, task_type, payload)
        return dispatcher.wait_for(task_id, timeout=timeout)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one analysis task on a background worker process")
    parser.add_argument("task_type", choices=[t.value for t in TaskType])
    parser.add_argument("--payload", help="JSON file holding the task payload")
    parser.add_argument("--dataset", help="CSV or JSON-lines file loaded into payload['dataset']")
    parser.add_argument("--worker", help="Worker name (defaults to the usual worker for the task type)")
    parser.add_argument("--timeout", type=float, default=Config.TASK_TIMEOUT, help="Seconds before the task is abandoned")
    parser.add_argument("--output", help="Write results to this file instead of stdout")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(Config.DEBUG)
    task_type = TaskType(args.task_type)

    try:
        results = run_task(task_type, build_payload(args), args.worker, args.timeout)
    except EngineError as e:
        logger.error("Task run failed", task_type=task_type.value, error=str(e))
        return 1

    text = json.dumps(results, indent=2, default=str)
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        logger.info("Results written", path=args.output)
    else:
        print(text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
