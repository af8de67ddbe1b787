"""
Tests for the command line entry point.
"""
import json
import pytest
from main import DEFAULT_WORKERS, load_dataset, main, parse_args
from protocol import TaskType


class TestCli:
    @pytest.mark.unit
    def test_every_task_type_has_a_default_worker(self):
        assert set(DEFAULT_WORKERS) == set(TaskType)

    @pytest.mark.unit
    def test_load_csv_dataset(self, tmp_path):
        path = tmp_path / "sites.csv"
        path.write_text("name,area\nnorth,12\nsouth,\n", encoding="utf-8")

        records = load_dataset(path)

        assert records[0] == {"name": "north", "area": 12.0}
        assert records[1]["area"] is None

    @pytest.mark.unit
    def test_rejects_unknown_task_type(self):
        with pytest.raises(SystemExit):
            parse_args(["DELETE_ALL"])

    @pytest.mark.integration
    def test_main_writes_results(self, tmp_path):
        payload = tmp_path / "payload.json"
        payload.write_text(json.dumps({
            "data": {"type": "Point", "coordinates": [1, 2]},
            "options": {"type": "centroid"},
        }), encoding="utf-8")
        output = tmp_path / "out.json"

        assert main(["SPATIAL_ANALYSIS", "--payload", str(payload), "--output", str(output), "--timeout", "60"]) == 0
        assert json.loads(output.read_text(encoding="utf-8"))["result"]["centroid"] == [1.0, 2.0]
