import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
from sklearn.metrics.pairwise import euclidean_distances

log = logging.getLogger(__name__)

ATTEMPT_SEED_STRIDE = 15486557
SPLIT_EPSILON = 1.0 / 1024.0
MAX_SPLIT_RETRIES = 64  # full passes over the centroids before round-robin
ASSIGN_BLOCK = 8192


@dataclass
class ProgressFeedback:
    percentage: float
    info: str


@dataclass
class KMeansSettings:
    num_attempts: int = 1
    num_iterations: int = 25
    seed: int = 1234


ProgressCallback = Callable[[ProgressFeedback], None]


def progress_slice(callback: Optional[ProgressCallback], start: float, end: float,
                   prefix: str = "") -> Optional[ProgressCallback]:
    """Map a stage's [0, 1] progress onto [start, end] of the caller's"""
    if callback is None:
        return None

    def relay(feedback: ProgressFeedback):
        callback(ProgressFeedback(
            percentage=start + feedback.percentage * (end - start),
            info=prefix + feedback.info,
        ))
    return relay


def imbalance_factor(assign: np.ndarray, k: int) -> float:
    """1.0 for perfectly balanced clusters, k when everything lands in one."""
    histogram = np.bincount(assign, minlength=k).astype(np.float64)
    total = histogram.sum()
    return float(np.sum(histogram * histogram) * k / (total * total))


class VectorClustering:
    def __init__(self, d: int, k: int, settings: Optional[KMeansSettings] = None):
        """
        d: dimension of the vectors
        k: number of centroids
        """
        if d <= 0:
            raise ValueError("[KMeans] d must be positive")
        if k <= 0:
            raise ValueError("[KMeans] k must be positive")
        self.d = d
        self.k = k
        self.settings = settings if settings is not None else KMeansSettings()
        if self.settings.num_attempts < 1 or self.settings.num_iterations < 1:
            raise ValueError("[KMeans] need at least one attempt and one iteration")
        self.centroids = None  # (k, d)
        self.counts = None  # members per centroid in the final iteration
        self.error = None
        self.attempt_errors: List[float] = []
        self.is_trained = False
        self._cursor = 0

    def fit(self, vectors, callback: Optional[ProgressCallback] = None):
        """
        Lloyd iterations with split recovery of empty clusters.
        When several attempts are made, the one with the lowest error wins.
        """
        vectors = np.ascontiguousarray(vectors, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[0] == 0:
            raise ValueError("[KMeans] empty training set")
        if vectors.shape[1] != self.d:
            raise ValueError(
                f"[KMeans] expected vectors of dimension {self.d}, got {vectors.shape[1]}"
            )

        n = vectors.shape[0]
        num_attempts = self.settings.num_attempts
        num_iterations = self.settings.num_iterations

        best_centroids = None
        best_counts = None
        best_error = np.inf
        self.attempt_errors = []
        self._cursor = 0

        for attempt in range(num_attempts):
            centroids = self._initial_centroids(vectors, attempt)
            counts = None
            error = 0.0

            for i in range(num_iterations):
                assign, distances = self._assign(vectors, centroids)
                error = float(np.sum(distances, dtype=np.float64))
                factor = imbalance_factor(assign, self.k)

                centroids, counts, nsplit = self._update(vectors, assign, n)

                info = (
                    f"Iteration {i} Objective={error:.2f} "
                    f"Imbalance={factor:.2f} NumSplits={nsplit}"
                )
                log.debug("[KMeans] attempt %d: %s", attempt, info)
                if callback is not None:
                    callback(ProgressFeedback(
                        percentage=(attempt + (i + 1) / num_iterations) / num_attempts,
                        info=info,
                    ))

            self.attempt_errors.append(error)
            if best_centroids is None or error < best_error:
                best_error = error
                best_centroids = centroids
                best_counts = counts

        self.centroids = best_centroids
        self.counts = best_counts
        self.error = best_error
        self.is_trained = True
        log.info(
            "[KMeans] trained k=%d d=%d on %d vectors, error=%.4f",
            self.k, self.d, n, self.error,
        )
        return self.centroids

    def predict(self, vectors) -> np.ndarray:
        """Returns the nearest centroid index for a batch of vectors"""
        if not self.is_trained:
            raise RuntimeError("[KMeans] must be trained before predict")
        vectors = np.ascontiguousarray(vectors, dtype=np.float32)
        assign, _ = self._assign(vectors, self.centroids)
        return assign

    def _initial_centroids(self, vectors, attempt):
        n = vectors.shape[0]
        rng = np.random.default_rng(self.settings.seed + 1 + attempt * ATTEMPT_SEED_STRIDE)
        perm = rng.permutation(n)
        # k > n reuses points
        return vectors[perm[np.arange(self.k) % n]].copy()

    def _assign(self, vectors, centroids):
        n = vectors.shape[0]
        assign = np.empty(n, dtype=np.int64)
        distances = np.empty(n, dtype=np.float64)
        for start in range(0, n, ASSIGN_BLOCK):
            block = vectors[start:start + ASSIGN_BLOCK]
            dists = euclidean_distances(block, centroids, squared=True)
            nearest = np.argmin(dists, axis=1)
            assign[start:start + len(block)] = nearest
            distances[start:start + len(block)] = dists[np.arange(len(block)), nearest]
        return assign, distances

    def _update(self, vectors, assign, n):
        """
        Recompute centroids as member means, then take care of void clusters.
        Returns (centroids, counts, number of splits).
        """
        k, d = self.k, self.d
        counts = np.bincount(assign, minlength=k).astype(np.int64)
        sums = np.zeros((k, d), dtype=np.float64)
        for j in range(d):
            sums[:, j] = np.bincount(assign, weights=vectors[:, j], minlength=k)

        centroids = np.zeros((k, d), dtype=np.float64)
        populated = counts > 0
        centroids[populated] = sums[populated] / counts[populated, None]
        centroids = centroids.astype(np.float32)

        nsplit = self._split_empty(centroids, counts, n)
        return centroids, counts, nsplit

    def _split_empty(self, centroids, counts, n):
        rng = np.random.default_rng(self.settings.seed)
        signs = np.where(np.arange(self.d) % 2 == 0, 1.0, -1.0).astype(np.float32)
        nsplit = 0

        for ci in range(self.k):
            if counts[ci] != 0:
                continue

            cj = self._pick_split_source(counts, n, rng)

            centroids[ci] = centroids[cj] * (1.0 + SPLIT_EPSILON * signs)
            centroids[cj] = centroids[cj] * (1.0 - SPLIT_EPSILON * signs)

            # assume even split of the cluster
            counts[ci] = counts[cj] // 2
            counts[cj] -= counts[ci]
            nsplit += 1

        return nsplit

    def _pick_split_source(self, counts, n, rng):
        k = self.k
        denominator = float(n - k)
        if denominator > 0:
            cj = 0
            for _ in range(MAX_SPLIT_RETRIES * k):
                p = (counts[cj] - 1.0) / denominator
                if rng.random() < p:
                    return cj
                cj = (cj + 1) % k

        log.debug("[KMeans] split sampling exhausted, falling back to round-robin")
        for step in range(k):
            cj = (self._cursor + step) % k
            if counts[cj] >= 2:
                self._cursor = (cj + 1) % k
                return cj
        return int(np.argmax(counts))
