# clustering.py
from collections import deque
import math
from typing import Any, Dict, List, Optional, Sequence
import numpy as np
from sklearn.metrics import pairwise_distances
from config import Config
from exceptions import InvalidParameterError
from custom_logging import logger
from models import ClusteringResult, Coordinate, DendrogramStep, Point, utc_timestamp
from spatial import mean_coordinate

LINKAGES = ("single", "complete", "average")


def _coordinates(points: Sequence[Point]) -> np.ndarray:
    return np.array([p.coordinates for p in points], dtype=float).reshape(-1, 2)


class PointClusterer:
    def __init__(self, seed: Optional[int] = None):
        self.seed = Config.clustering_seed() if seed is None else seed

    def cluster(self, points: Sequence[Point], options: Dict[str, Any]) -> ClusteringResult:
        """Run the algorithm named by options['type']"""
        method = options.get("type", "generic")
        if method == "kmeans":
            return self.kmeans(
                points,
                k=int(options.get("k", Config.KMEANS_K)),
                max_iterations=int(options.get("max_iterations", Config.KMEANS_MAX_ITERATIONS)),
                tolerance=float(options.get("tolerance", Config.KMEANS_TOLERANCE)),
                seed=options.get("seed"),
            )
        if method == "grid":
            return self.grid(points, cell_size=float(options.get("cell_size", Config.GRID_CELL_SIZE)))
        if method == "hierarchical":
            return self.hierarchical(
                points,
                linkage=options.get("linkage", Config.HIERARCHICAL_LINKAGE),
                max_distance=float(options.get("max_distance", Config.HIERARCHICAL_MAX_DISTANCE)),
            )
        if method == "density":
            return self.density(
                points,
                eps=float(options.get("eps", Config.DENSITY_EPS)),
                min_pts=int(options.get("min_pts", Config.DENSITY_MIN_PTS)),
            )
        if method == "generic":
            return self.generic(points)
        raise InvalidParameterError(f"Unknown clustering type: {method}")

    def generic(self, points: Sequence[Point]) -> ClusteringResult:
        """Single cluster holding every point"""
        points = list(points)
        return ClusteringResult(
            method="generic",
            clusters=[points] if points else [],
            centroids=[mean_coordinate([p.coordinates for p in points])] if points else [],
            labels=[0] * len(points),
            metadata={"processed_at": utc_timestamp(), "clustering_method": "generic"},
        )

    def kmeans(
        self,
        points: Sequence[Point],
        k: int = Config.KMEANS_K,
        max_iterations: int = Config.KMEANS_MAX_ITERATIONS,
        tolerance: float = Config.KMEANS_TOLERANCE,
        seed: Optional[int] = None,
    ) -> ClusteringResult:
        """Lloyd's k-means on raw coordinates.

        With no more points than clusters every point becomes its own cluster
        and no iteration runs. Otherwise the initial centroids are k distinct
        points drawn from a generator seeded with ``seed`` (falling back to the
        clusterer's seed), so identical inputs and seeds give identical output.
        """
        if k < 1:
            raise InvalidParameterError(f"k must be at least 1, got {k}")
        if max_iterations < 0:
            raise InvalidParameterError(f"max_iterations must be >= 0, got {max_iterations}")

        points = list(points)
        n = len(points)
        if n <= k:
            return ClusteringResult(
                method="kmeans",
                clusters=[[p] for p in points],
                centroids=[p.coordinates for p in points],
                labels=list(range(n)),
                metadata={
                    "k": n,
                    "iterations": 0,
                    "tolerance": tolerance,
                    "converged": True,
                    "processed_at": utc_timestamp(),
                },
            )

        coords = _coordinates(points)
        rng = np.random.default_rng(self.seed if seed is None else seed)
        centroids = coords[rng.choice(n, size=k, replace=False)].copy()
        labels = np.zeros(n, dtype=int)
        iterations = 0
        converged = False

        while iterations < max_iterations and not converged:
            distances = pairwise_distances(coords, centroids)
            # argmin keeps the first minimum, i.e. the lowest cluster index on ties
            labels = distances.argmin(axis=1)

            new_centroids = centroids.copy()
            for j in range(k):
                members = coords[labels == j]
                if len(members):
                    new_centroids[j] = members.mean(axis=0)

            shifts = np.linalg.norm(new_centroids - centroids, axis=1)
            converged = bool(np.all(shifts <= tolerance))
            centroids = new_centroids
            iterations += 1

        if iterations == 0:
            labels = pairwise_distances(coords, centroids).argmin(axis=1)

        clusters: List[List[Point]] = [[] for _ in range(k)]
        for point, label in zip(points, labels):
            clusters[int(label)].append(point)

        logger.debug("K-means finished", k=k, iterations=iterations, converged=converged)
        return ClusteringResult(
            method="kmeans",
            clusters=clusters,
            centroids=[(float(c[0]), float(c[1])) for c in centroids],
            labels=[int(label) for label in labels],
            metadata={
                "k": k,
                "iterations": iterations,
                "tolerance": tolerance,
                "converged": converged,
                "processed_at": utc_timestamp(),
            },
        )

    def grid(self, points: Sequence[Point], cell_size: float = Config.GRID_CELL_SIZE) -> ClusteringResult:
        """Bucket points into square cells of cell_size degrees, one cluster per occupied cell"""
        if cell_size <= 0:
            raise InvalidParameterError(f"cell_size must be positive, got {cell_size}")

        cells: Dict[tuple, List[int]] = {}
        for index, point in enumerate(points):
            key = (math.floor(point.lon / cell_size), math.floor(point.lat / cell_size))
            cells.setdefault(key, []).append(index)

        clusters = []
        centroids = []
        labels: List[Optional[int]] = [None] * len(points)
        for label, members in enumerate(cells.values()):
            cluster = [points[i] for i in members]
            for i in members:
                labels[i] = label
            clusters.append(cluster)
            centroids.append(mean_coordinate([p.coordinates for p in cluster]))

        return ClusteringResult(
            method="grid",
            clusters=clusters,
            centroids=centroids,
            labels=labels,
            metadata={
                "cell_size": cell_size,
                "grid_size": cell_size,
                "total_cells": len(cells),
                "cells": [list(key) for key in cells],
                "processed_at": utc_timestamp(),
            },
        )

    @staticmethod
    def _linkage_distance(block: np.ndarray, linkage: str) -> float:
        if linkage == "single":
            return float(block.min())
        if linkage == "complete":
            return float(block.max())
        return float(block.mean())

    def hierarchical(
        self,
        points: Sequence[Point],
        linkage: str = Config.HIERARCHICAL_LINKAGE,
        max_distance: float = Config.HIERARCHICAL_MAX_DISTANCE,
    ) -> ClusteringResult:
        """Agglomerative clustering that stops once no pair is within max_distance.

        Each merge removes the two clusters from the working list and appends
        their union at the end; dendrogram steps record the indices as they
        were just before the merge. Merge distances never decrease under
        single and complete linkage. Average linkage gives no such guarantee.
        """
        if linkage not in LINKAGES:
            raise InvalidParameterError(f"Unknown linkage: {linkage}")

        points = list(points)
        metadata = {"linkage": linkage, "max_distance": max_distance}
        if len(points) <= 1:
            metadata.update(final_clusters=len(points), processed_at=utc_timestamp())
            return ClusteringResult(
                method="hierarchical",
                clusters=[points] if points else [],
                centroids=[p.coordinates for p in points],
                labels=[0] * len(points),
                metadata=metadata,
            )

        point_distances = pairwise_distances(_coordinates(points))
        members: List[List[int]] = [[i] for i in range(len(points))]
        distances = point_distances.copy()
        np.fill_diagonal(distances, np.inf)
        dendrogram: List[DendrogramStep] = []

        while len(members) > 1:
            upper = distances.copy()
            upper[np.tril_indices_from(upper)] = np.inf
            flat_index = int(upper.argmin())
            i, j = divmod(flat_index, upper.shape[1])
            distance = float(upper[i, j])
            if distance > max_distance:
                break

            merged = members[i] + members[j]
            members = [m for idx, m in enumerate(members) if idx not in (i, j)]
            distances = np.delete(np.delete(distances, [i, j], axis=0), [i, j], axis=1)

            row = np.array(
                [self._linkage_distance(point_distances[np.ix_(other, merged)], linkage) for other in members]
            )
            members.append(merged)
            size = len(members)
            grown = np.full((size, size), np.inf)
            grown[:size - 1, :size - 1] = distances
            grown[size - 1, :size - 1] = row
            grown[:size - 1, size - 1] = row
            distances = grown

            dendrogram.append(DendrogramStep(
                step=len(dendrogram) + 1,
                merged=(i, j),
                distance=distance,
                new_cluster_index=size - 1,
            ))

        clusters = [[points[i] for i in group] for group in members]
        labels: List[Optional[int]] = [None] * len(points)
        for label, group in enumerate(members):
            for i in group:
                labels[i] = label

        metadata.update(final_clusters=len(clusters), merges=len(dendrogram), processed_at=utc_timestamp())
        return ClusteringResult(
            method="hierarchical",
            clusters=clusters,
            centroids=[mean_coordinate([p.coordinates for p in cluster]) for cluster in clusters],
            labels=labels,
            dendrogram=dendrogram,
            metadata=metadata,
        )

    def density(
        self,
        points: Sequence[Point],
        eps: float = Config.DENSITY_EPS,
        min_pts: int = Config.DENSITY_MIN_PTS,
    ) -> ClusteringResult:
        """DBSCAN over coordinate distance.

        A point is core when at least min_pts other points lie within eps.
        Clusters grow breadth-first from unvisited core points in index order;
        border points join the first cluster that reaches them and anything
        never reached is noise.
        """
        if eps < 0:
            raise InvalidParameterError(f"eps must be >= 0, got {eps}")
        if min_pts < 1:
            raise InvalidParameterError(f"min_pts must be >= 1, got {min_pts}")

        points = list(points)
        n = len(points)
        if n:
            within = pairwise_distances(_coordinates(points)) <= eps
            np.fill_diagonal(within, False)
            neighbors = [np.flatnonzero(row).tolist() for row in within]
        else:
            neighbors = []
        core = [len(nb) >= min_pts for nb in neighbors]

        labels: List[Optional[int]] = [None] * n
        clusters: List[List[Point]] = []
        for i in range(n):
            if labels[i] is not None or not core[i]:
                continue
            label = len(clusters)
            labels[i] = label
            cluster = [points[i]]
            queue = deque([i])
            while queue:
                q = queue.popleft()
                if not core[q]:
                    continue
                for nb in neighbors[q]:
                    if labels[nb] is None:
                        labels[nb] = label
                        cluster.append(points[nb])
                        queue.append(nb)
            clusters.append(cluster)

        noise = [points[i] for i in range(n) if labels[i] is None]
        centroids: List[Coordinate] = [mean_coordinate([p.coordinates for p in c]) for c in clusters]
        return ClusteringResult(
            method="density",
            clusters=clusters,
            centroids=centroids,
            labels=labels,
            noise=noise,
            metadata={
                "eps": eps,
                "min_pts": min_pts,
                "clusters_found": len(clusters),
                "noise_points": len(noise),
                "core_points": sum(core),
                "processed_at": utc_timestamp(),
            },
        )
