"""
Pytest configuration and shared fixtures.
"""
import pytest
from dispatcher import TaskDispatcher
from models import Point
from workers import ProcessWorker


def make_points(coords):
    return [Point(id=i, coordinates=c) for i, c in enumerate(coords)]


class StubWorker(ProcessWorker):
    """ProcessWorker without a process: the test plays the worker side of the pipe"""

    def __init__(self, name, context):
        super().__init__(name, context)
        self.writer = None
        self.sent = []
        self.alive = False
        self.restarts = 0

    def start(self):
        self.writer = self._open_channel()
        self.alive = True

    def send(self, message):
        self.sent.append(message)

    def is_alive(self):
        return self.alive

    def restart(self):
        self.restarts += 1
        self.stop()
        self.start()

    def stop(self):
        self.alive = False
        self._close_channel()
        if self.writer is not None:
            self.writer.close()
            self.writer = None

    def respond(self, message):
        self.writer.send(message)


@pytest.fixture
def points_factory():
    return make_points


@pytest.fixture
def stub_pool():
    """Started dispatcher over two stub workers; yields (dispatcher, workers by name)"""
    workers = {}

    def factory(name, context):
        workers[name] = StubWorker(name, context)
        return workers[name]

    dispatcher = TaskDispatcher(
        ["alpha", "beta"],
        worker_factory=factory,
        task_timeout=None,
    )
    dispatcher.start()
    yield dispatcher, workers
    dispatcher.close()


@pytest.fixture
def sample_sites():
    return [
        {
            "id": "poor",
            "coordinates": [0.0, 0.0],
            "properties": {
                "area": 3,
                "soil_quality": 2,
                "water_availability": 2,
                "biodiversity": 2,
                "flood_risk": 9,
                "road_distance": 5000,
                "grid_distance": 20000,
                "gas_distance": 15000,
                "land_cost": 50000,
                "development_cost": 250000,
                "slope": 12,
                "elevation": 40,
            },
        },
        {
            "id": "good",
            "coordinates": [0.1, 0.1],
            "properties": {
                "area": 35,
                "soil_quality": 9,
                "water_availability": 8,
                "biodiversity": 8,
                "flood_risk": 1,
                "road_distance": 400,
                "grid_distance": 3000,
                "gas_distance": 1500,
                "land_cost": 9000,
                "development_cost": 40000,
                "residential_distance": 2500,
                "protected_area_distance": 3500,
                "conservation_area_distance": 4500,
                "slope": 2,
                "elevation": 120,
            },
        },
        {
            "id": "average",
            "coordinates": [0.2, 0.2],
            "properties": {
                "area": 12,
                "soil_quality": 5,
                "water_availability": 5,
                "biodiversity": 5,
                "flood_risk": 5,
                "road_distance": 1500,
                "grid_distance": 8000,
                "gas_distance": 4000,
                "land_cost": 25000,
                "development_cost": 120000,
                "slope": 5,
                "elevation": 80,
            },
        },
    ]
