"""
Tests for the task dispatcher.

Unit tests drive the dispatcher against in-memory stub workers, answering on
the workers' behalf. Integration tests spawn real worker processes.
"""
import asyncio
import time
import pytest
from config import Config
from dispatcher import TASK_COMPLETE, TASK_ERROR, TASK_PROGRESS, TaskDispatcher
from exceptions import (
    EngineError,
    InvalidParameterError,
    UnknownTaskType,
    WorkerBusy,
    WorkerRuntimeError,
    WorkerTimeout,
    WorkerUnavailable,
)
from models import TaskStatus


def snapshot(dispatcher):
    return {name: (h.busy, h.task_count, h.current_task) for name, h in
            ((n, dispatcher.get_handle(n)) for n in dispatcher.worker_names)}


def record(dispatcher, event):
    seen = []
    dispatcher.subscribe(event, lambda *args: seen.append(args))
    return seen


class TestConstruction:
    @pytest.mark.unit
    @pytest.mark.parametrize("names", [[], ["a", "a"]])
    def test_rejects_bad_worker_names(self, names):
        with pytest.raises(InvalidParameterError):
            TaskDispatcher(names, worker_factory=lambda *args: None)

    @pytest.mark.unit
    def test_all_workers_start_idle(self, stub_pool):
        dispatcher, workers = stub_pool
        assert dispatcher.list_available() == {"alpha", "beta"}
        assert all(w.alive for w in workers.values())


class TestSubmit:
    @pytest.mark.unit
    def test_submit_marks_worker_busy_and_sends_request(self, stub_pool):
        dispatcher, workers = stub_pool
        task_id = dispatcher.submit("alpha", "CLUSTER_POINTS", {"points": []})

        assert not dispatcher.is_available("alpha")
        assert dispatcher.is_available("beta")
        handle = dispatcher.get_handle("alpha")
        assert (handle.current_task, handle.task_count) == (task_id, 1)
        assert workers["alpha"].sent == [{"taskType": "CLUSTER_POINTS", "payload": {"points": []}, "id": task_id}]
        assert dispatcher.get_task(task_id).status is TaskStatus.BUSY

    @pytest.mark.unit
    @pytest.mark.parametrize("worker,task_type,error", [
        ("gamma", "CLUSTER_POINTS", WorkerUnavailable),
        ("alpha", "EXPLODE", UnknownTaskType),
    ])
    def test_rejections_leave_state_unchanged(self, stub_pool, worker, task_type, error):
        dispatcher, workers = stub_pool
        before = snapshot(dispatcher)

        with pytest.raises(error):
            dispatcher.submit(worker, task_type, {})

        assert snapshot(dispatcher) == before
        assert workers["alpha"].sent == []
        assert dispatcher.metrics == []

    @pytest.mark.unit
    def test_busy_worker_rejects_second_task(self, stub_pool):
        dispatcher, workers = stub_pool
        dispatcher.submit("alpha", "SCORE_SITES", {"sites": []})
        before = snapshot(dispatcher)

        with pytest.raises(WorkerBusy):
            dispatcher.submit("alpha", "SCORE_SITES", {"sites": []})

        assert snapshot(dispatcher) == before
        assert len(workers["alpha"].sent) == 1

    @pytest.mark.unit
    def test_failed_send_rolls_back(self, stub_pool):
        dispatcher, workers = stub_pool

        def broken(message):
            raise OSError("pipe closed")

        workers["alpha"].send = broken
        before = snapshot(dispatcher)
        with pytest.raises(OSError):
            dispatcher.submit("alpha", "SCORE_SITES", {})
        assert snapshot(dispatcher) == before

    @pytest.mark.unit
    def test_submit_requires_running_pool(self):
        dispatcher = TaskDispatcher(["solo"], worker_factory=lambda *args: None)
        with pytest.raises(EngineError):
            dispatcher.submit("solo", "SCORE_SITES", {})


class TestResponses:
    @pytest.mark.unit
    def test_progress_keeps_worker_busy(self, stub_pool):
        dispatcher, workers = stub_pool
        progress = record(dispatcher, TASK_PROGRESS)
        task_id = dispatcher.submit("alpha", "VALIDATE_DATA", {"dataset": []})

        workers["alpha"].respond({"type": "PROGRESS", "id": task_id, "progress": 40})
        assert dispatcher.process_responses() == 1

        assert progress == [("alpha", task_id, 40.0)]
        assert not dispatcher.is_available("alpha")
        assert dispatcher.get_task(task_id).progress == 40.0

    @pytest.mark.unit
    def test_completion_releases_worker(self, stub_pool):
        dispatcher, workers = stub_pool
        completed = record(dispatcher, TASK_COMPLETE)
        task_id = dispatcher.submit("alpha", "VALIDATE_DATA", {"dataset": []})

        workers["alpha"].respond({"type": "VALIDATION_COMPLETE", "id": task_id, "results": {"valid": []}})
        dispatcher.process_responses()

        assert completed == [("alpha", task_id, {"valid": []})]
        assert dispatcher.is_available("alpha")
        assert dispatcher.get_handle("alpha").current_task is None
        assert dispatcher.wait_for(task_id) == {"valid": []}

    @pytest.mark.unit
    def test_error_releases_worker_and_raises_on_wait(self, stub_pool):
        dispatcher, workers = stub_pool
        errors = record(dispatcher, TASK_ERROR)
        task_id = dispatcher.submit("beta", "CLEAN_DATA", {})

        workers["beta"].respond({"type": "ERROR", "id": task_id,
                                 "error": {"kind": "KeyError", "message": "'dataset'", "traceback": "tb"}})
        dispatcher.process_responses()

        assert dispatcher.is_available("beta")
        assert len(errors) == 1 and errors[0][2].kind == "KeyError"
        with pytest.raises(WorkerRuntimeError) as excinfo:
            dispatcher.wait_for(task_id)
        assert excinfo.value.traceback == "tb"

    @pytest.mark.unit
    def test_worker_can_take_next_task_after_error(self, stub_pool):
        dispatcher, workers = stub_pool
        first = dispatcher.submit("alpha", "CLEAN_DATA", {})
        workers["alpha"].respond({"type": "ERROR", "id": first, "error": {"message": "boom"}})
        dispatcher.process_responses()

        second = dispatcher.submit("alpha", "CLEAN_DATA", {"dataset": []})
        assert dispatcher.get_handle("alpha").current_task == second
        assert dispatcher.get_handle("alpha").task_count == 2

    @pytest.mark.unit
    def test_stale_and_malformed_responses_ignored(self, stub_pool):
        dispatcher, workers = stub_pool
        completed = record(dispatcher, TASK_COMPLETE)
        task_id = dispatcher.submit("alpha", "SCORE_SITES", {"sites": []})

        workers["alpha"].respond({"type": "SCORING_COMPLETE", "id": "task_old", "results": []})
        workers["beta"].respond({"type": "SCORING_COMPLETE", "id": task_id, "results": []})
        workers["alpha"].respond({"type": "GARBAGE", "id": task_id})
        workers["alpha"].respond("not a dict")
        dispatcher.process_responses()

        assert completed == []
        assert dispatcher.get_handle("alpha").current_task == task_id

    @pytest.mark.unit
    def test_listener_failure_does_not_break_dispatch(self, stub_pool):
        dispatcher, workers = stub_pool

        def explode(*args):
            raise RuntimeError("listener bug")

        dispatcher.subscribe(TASK_COMPLETE, explode)
        after = record(dispatcher, TASK_COMPLETE)
        task_id = dispatcher.submit("alpha", "SCORE_SITES", {"sites": []})
        workers["alpha"].respond({"type": "SCORING_COMPLETE", "id": task_id, "results": []})
        dispatcher.process_responses()

        assert len(after) == 1
        assert dispatcher.is_available("alpha")

    @pytest.mark.unit
    def test_unsubscribe_and_unknown_event(self, stub_pool):
        dispatcher, workers = stub_pool
        seen = []
        callback = dispatcher.subscribe(TASK_COMPLETE, seen.append)
        dispatcher.unsubscribe(TASK_COMPLETE, callback)
        task_id = dispatcher.submit("alpha", "SCORE_SITES", {"sites": []})
        workers["alpha"].respond({"type": "SCORING_COMPLETE", "id": task_id, "results": []})
        dispatcher.process_responses()

        assert seen == []
        with pytest.raises(InvalidParameterError):
            dispatcher.subscribe("task_exploded", seen.append)


class TestTimeoutsAndFailures:
    @pytest.mark.unit
    def test_wait_for_timeout_restarts_worker(self, stub_pool):
        dispatcher, workers = stub_pool
        errors = record(dispatcher, TASK_ERROR)
        task_id = dispatcher.submit("alpha", "SCORE_SITES", {"sites": []})

        with pytest.raises(WorkerTimeout):
            dispatcher.wait_for(task_id, timeout=0.01)

        assert workers["alpha"].restarts == 1
        assert dispatcher.is_available("alpha")
        assert errors[0][2].kind == "WorkerTimeout"

    @pytest.mark.unit
    def test_task_timeout_fails_long_running_task(self, stub_pool):
        dispatcher, workers = stub_pool
        dispatcher.task_timeout = 0.001
        task_id = dispatcher.submit("beta", "SCORE_SITES", {"sites": []})
        time.sleep(0.01)
        dispatcher.process_responses()

        task = dispatcher.get_task(task_id)
        assert task.status is TaskStatus.ERRORED
        assert isinstance(task.error, WorkerTimeout)
        assert workers["beta"].restarts == 1

        # a late answer from the replaced process is stale
        workers["beta"].respond({"type": "SCORING_COMPLETE", "id": task_id, "results": []})
        dispatcher.process_responses()
        assert task.status is TaskStatus.ERRORED

    @pytest.mark.unit
    def test_dead_worker_fails_its_task(self, stub_pool):
        dispatcher, workers = stub_pool
        task_id = dispatcher.submit("alpha", "SCORE_SITES", {"sites": []})
        workers["alpha"].alive = False
        dispatcher.process_responses()

        error = dispatcher.get_task(task_id).error
        assert error.kind == "WorkerExited"
        assert workers["alpha"].alive
        assert dispatcher.is_available("alpha")

    @pytest.mark.unit
    def test_restart_replaces_response_channel(self, stub_pool):
        dispatcher, workers = stub_pool
        dispatcher.task_timeout = 0.001
        dispatcher.submit("alpha", "SCORE_SITES", {"sites": []})
        old_channel = workers["alpha"].connection
        time.sleep(0.01)
        dispatcher.process_responses()
        dispatcher.task_timeout = None

        assert old_channel.closed
        assert workers["alpha"].connection is not old_channel

        completed = record(dispatcher, TASK_COMPLETE)
        for name in ("alpha", "beta"):
            task_id = dispatcher.submit(name, "SCORE_SITES", {"sites": []})
            workers[name].respond({"type": "SCORING_COMPLETE", "id": task_id, "results": [name]})
        dispatcher.process_responses()

        assert sorted(results for _, _, results in completed) == [["alpha"], ["beta"]]

    @pytest.mark.unit
    def test_closed_channel_is_dropped(self, stub_pool):
        dispatcher, workers = stub_pool
        task_id = dispatcher.submit("alpha", "SCORE_SITES", {"sites": []})
        workers["alpha"].writer.close()
        workers["alpha"].alive = False
        dispatcher.process_responses()

        assert dispatcher.get_task(task_id).error.kind == "WorkerExited"
        assert workers["alpha"].connection is not None
        assert dispatcher.is_available("alpha")

    @pytest.mark.unit
    def test_close_fails_outstanding_tasks(self, stub_pool):
        dispatcher, workers = stub_pool
        task_id = dispatcher.submit("alpha", "SCORE_SITES", {"sites": []})
        dispatcher.close()

        assert not dispatcher.running
        assert dispatcher.get_task(task_id).error.kind == "DispatcherClosed"
        assert dispatcher.list_available() == {"alpha", "beta"}
        assert not workers["alpha"].alive


class TestMetrics:
    @pytest.mark.unit
    def test_performance_summary(self, stub_pool):
        dispatcher, workers = stub_pool
        ok = dispatcher.submit("alpha", "SCORE_SITES", {"sites": []})
        bad = dispatcher.submit("beta", "SCORE_SITES", {})
        workers["alpha"].respond({"type": "SCORING_COMPLETE", "id": ok, "results": []})
        workers["beta"].respond({"type": "ERROR", "id": bad, "error": {"message": "x"}})
        dispatcher.process_responses()

        summary = dispatcher.performance_summary()
        assert summary["tasks"]["submitted"] == 2
        assert (summary["tasks"]["completed"], summary["tasks"]["failed"]) == (1, 1)
        assert summary["tasks"]["average_duration"] >= 0
        assert summary["workers"]["alpha"]["task_count"] == 1
        assert summary["workers"]["alpha"]["available"] is True

    @pytest.mark.unit
    def test_recommendations(self, stub_pool):
        dispatcher, workers = stub_pool
        dispatcher.submit("alpha", "SCORE_SITES", {})
        dispatcher.submit("beta", "SCORE_SITES", {})

        kinds = {r["type"] for r in dispatcher.performance_summary()["recommendations"]}
        assert kinds == {"info"}

    @pytest.mark.unit
    def test_metrics_are_bounded(self, stub_pool):
        dispatcher, workers = stub_pool
        for _ in range(80):
            task_id = dispatcher.submit("alpha", "SCORE_SITES", {})
            workers["alpha"].respond({"type": "SCORING_COMPLETE", "id": task_id, "results": []})
            dispatcher.process_responses()
        assert len(dispatcher.metrics) == Config.MAX_METRIC_ENTRIES

    @pytest.mark.unit
    def test_finished_tasks_are_bounded(self, stub_pool):
        dispatcher, workers = stub_pool
        task_ids = []
        for _ in range(Config.MAX_METRIC_ENTRIES + 50):
            task_id = dispatcher.submit("alpha", "SCORE_SITES", {"sites": []})
            workers["alpha"].respond({"type": "SCORING_COMPLETE", "id": task_id, "results": []})
            dispatcher.process_responses()
            task_ids.append(task_id)

        assert len(dispatcher._tasks) == Config.MAX_METRIC_ENTRIES
        assert dispatcher.get_task(task_ids[-1]).status is TaskStatus.COMPLETED
        with pytest.raises(EngineError):
            dispatcher.get_task(task_ids[0])

    @pytest.mark.unit
    def test_waited_task_is_released(self, stub_pool):
        dispatcher, workers = stub_pool
        task_id = dispatcher.submit("beta", "SCORE_SITES", {"sites": []})
        workers["beta"].respond({"type": "SCORING_COMPLETE", "id": task_id, "results": [1]})

        assert dispatcher.wait_for(task_id, timeout=1) == [1]
        with pytest.raises(EngineError):
            dispatcher.get_task(task_id)


class TestAsyncRun:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_awaits_results(self, stub_pool):
        dispatcher, workers = stub_pool

        async def answer():
            while not workers["alpha"].sent:
                await asyncio.sleep(0.001)
            task_id = workers["alpha"].sent[0]["id"]
            workers["alpha"].respond({"type": "PROGRESS", "id": task_id, "progress": 50})
            workers["alpha"].respond({"type": "CLUSTERING_COMPLETE", "id": task_id, "results": {"ok": 1}})

        responder = asyncio.ensure_future(answer())
        result = await dispatcher.run("alpha", "CLUSTER_POINTS", {"points": []}, timeout=5)
        await responder

        assert result == {"ok": 1}
        assert dispatcher.is_available("alpha")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_timeout(self, stub_pool):
        dispatcher, workers = stub_pool
        with pytest.raises(WorkerTimeout):
            await dispatcher.run("beta", "CLUSTER_POINTS", {"points": []}, timeout=0.01)
        assert dispatcher.is_available("beta")


@pytest.fixture(scope="module")
def process_pool():
    dispatcher = TaskDispatcher(["site_analysis", "clustering"], task_timeout=120)
    dispatcher.start()
    yield dispatcher
    dispatcher.close()


class TestProcessWorkers:
    @pytest.mark.integration
    def test_grid_clustering(self, process_pool):
        payload = {
            "points": [[0, 0], [0.005, 0.005], [5, 5]],
            "options": {"type": "grid", "cell_size": 0.01},
        }
        task_id = process_pool.submit("clustering", "CLUSTER_POINTS", payload)
        result = process_pool.wait_for(task_id, timeout=60)

        assert result["type"] == "grid"
        assert [len(c) for c in result["result"]["clusters"]] == [2, 1]
        assert process_pool.is_available("clustering")

    @pytest.mark.integration
    def test_error_then_next_task(self, process_pool, sample_sites):
        bad = process_pool.submit("site_analysis", "SCORE_SITES", {})
        with pytest.raises(WorkerRuntimeError) as excinfo:
            process_pool.wait_for(bad, timeout=60)
        assert excinfo.value.kind == "KeyError"

        good = process_pool.submit("site_analysis", "SCORE_SITES", {"sites": sample_sites})
        ranked = process_pool.wait_for(good, timeout=60)
        assert ranked[0]["id"] == "good"

    @pytest.mark.integration
    def test_progress_events_arrive_before_completion(self, process_pool):
        events = []
        on_progress = process_pool.subscribe(TASK_PROGRESS, lambda *args: events.append("progress"))
        on_complete = process_pool.subscribe(TASK_COMPLETE, lambda *args: events.append("complete"))
        try:
            dataset = [{"name": str(i)} for i in range(250)]
            task_id = process_pool.submit("site_analysis", "VALIDATE_DATA", {"dataset": dataset, "schema": {}})
            process_pool.wait_for(task_id, timeout=60)
        finally:
            process_pool.unsubscribe(TASK_PROGRESS, on_progress)
            process_pool.unsubscribe(TASK_COMPLETE, on_complete)

        assert events == ["progress", "progress", "progress", "complete"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_async_run(self, process_pool):
        data = {"point1": [0, 0], "point2": [0, 1]}
        result = await process_pool.run("clustering", "SPATIAL_ANALYSIS", {"data": data, "options": {"type": "distance"}},
                                        timeout=60)
        assert result["result"]["distance"] == pytest.approx(111195, rel=0.01)

    @pytest.mark.integration
    def test_killed_worker_does_not_block_the_pool(self, process_pool):
        coords = [(i * 0.001, (i * 7 % 13) * 0.001) for i in range(400)]
        payload = {"points": [list(c) for c in coords], "options": {"type": "hierarchical", "max_distance": 10}}
        task_id = process_pool.submit("clustering", "CLUSTER_POINTS", payload)
        process_pool._workers["clustering"].process.kill()

        with pytest.raises(WorkerRuntimeError) as excinfo:
            process_pool.wait_for(task_id, timeout=60)
        assert excinfo.value.kind == "WorkerExited"

        for name in ("clustering", "site_analysis"):
            follow_up = process_pool.submit(name, "SPATIAL_ANALYSIS", {
                "data": {"type": "Point", "coordinates": [1, 2]},
                "options": {"type": "centroid"},
            })
            assert process_pool.wait_for(follow_up, timeout=60)["result"]["centroid"] == [1.0, 2.0]
