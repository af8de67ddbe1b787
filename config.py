# config.py
import os
from dotenv import load_dotenv
from typing import Any, List, Optional

load_dotenv()


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


class Config:
    # Worker pool
    WORKER_NAMES: List[str] = [
        name.strip()
        for name in os.getenv(
            "WORKER_NAMES",
            "site_analysis,data_processing,spatial_analysis,clustering"
        ).split(",")
        if name.strip()
    ]
    MP_START_METHOD = os.getenv("MP_START_METHOD", "spawn")
    TASK_TIMEOUT = _optional_float(os.getenv("TASK_TIMEOUT"))  # seconds, None = no timeout
    POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "0.05"))
    SHUTDOWN_TIMEOUT = float(os.getenv("SHUTDOWN_TIMEOUT", "5"))
    MAX_METRIC_ENTRIES = int(os.getenv("MAX_METRIC_ENTRIES", "100"))

    # Progress reporting
    PROGRESS_INTERVAL = int(os.getenv("PROGRESS_INTERVAL", "100"))
    DISTANCE_PROGRESS_INTERVAL = int(os.getenv("DISTANCE_PROGRESS_INTERVAL", "50"))
    JOIN_PROGRESS_INTERVAL = int(os.getenv("JOIN_PROGRESS_INTERVAL", "25"))

    # Clustering defaults
    CLUSTERING_SEED = _optional_float(os.getenv("CLUSTERING_SEED"))
    KMEANS_K = 5
    KMEANS_MAX_ITERATIONS = 100
    KMEANS_TOLERANCE = 0.001
    GRID_CELL_SIZE = 0.01
    HIERARCHICAL_LINKAGE = "single"
    HIERARCHICAL_MAX_DISTANCE = 0.1
    DENSITY_EPS = 0.01
    DENSITY_MIN_PTS = 3

    # Spatial
    EARTH_RADIUS_M = 6371000
    DEGREE_TO_METERS = 111000
    BUFFER_DISTANCE = 1000
    NEAR_DISTANCE = 1000  # meters, "near" join predicate

    # Application Settings
    DEBUG = os.getenv("DEBUG", "false").lower() in ("1", "true", "yes")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def get(cls, name: str, default: Any = None) -> Any:
        """Read a setting by name, falling back to the environment then the default"""
        if hasattr(cls, name):
            value = getattr(cls, name)
            return default if value is None else value
        return os.getenv(name, default)

    @classmethod
    def clustering_seed(cls) -> Optional[int]:
        seed = cls.CLUSTERING_SEED
        return None if seed is None else int(seed)
