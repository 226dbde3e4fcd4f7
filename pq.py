import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from kmeans import KMeansSettings, ProgressCallback, ProgressFeedback, VectorClustering, progress_slice

log = logging.getLogger(__name__)

NUM_BITS = 8
KSUB = 1 << NUM_BITS
ENCODE_BLOCK = 1024

# bounds on the squared reconstruction error of training vectors for d=8, M=2
# uniform data in [0, 1): any single vector, and the mean over the set
RECONSTRUCTION_ERROR_THRESHOLD = 0.5
MEAN_RECONSTRUCTION_ERROR_THRESHOLD = 0.1


@dataclass
class PQSettings:
    num_attempts: int = 1
    num_iterations: int = 25
    seed: int = 1234
    # minimum and maximum samples per centroid
    minimum_number_samples: int = 32
    maximum_number_samples: int = 256

    def kmeans_settings(self) -> KMeansSettings:
        return KMeansSettings(
            num_attempts=self.num_attempts,
            num_iterations=self.num_iterations,
            seed=self.seed,
        )


class SubspaceQuantizer:
    def __init__(self, D, M, settings: Optional[PQSettings] = None):
        """
        D: original dimension
        M: number of subvectors
        """
        if M <= 0:
            raise ValueError("[PQ] M must be positive")
        if D % M != 0:
            raise ValueError("[PQ] D is not divisible by M")
        self.D = D
        self.M = M
        self.K = KSUB
        self.d_sub = D // M  # subvector dimension
        self.code_size = M * ((NUM_BITS + 7) // 8)
        self.settings = settings if settings is not None else PQSettings()
        self.centroids = None  # (M, K, d_sub)
        self.is_trained = False

    def split_vectors(self, vectors: np.ndarray) -> List[np.ndarray]:
        """
        split vectors (N, D) to M sub-vectors
        returns list of M arrays, each array has shape (N, d_sub)
        """
        N = vectors.shape[0]
        reshape = vectors.reshape(N, self.M, self.d_sub)
        return [reshape[:, m, :] for m in range(self.M)]

    def get_centroids(self, m: int) -> np.ndarray:
        """Centroid table (K, d_sub) of sub-quantizer m"""
        self._check_trained()
        return self.centroids[m]

    def fit(self, samples, callback: Optional[ProgressCallback] = None):
        """Learn one k-means codebook per subspace from a clamped, shuffled sample"""
        samples = np.ascontiguousarray(samples, dtype=np.float32)
        if samples.ndim != 2 or samples.shape[0] == 0:
            raise ValueError("[PQ] empty training set")
        if samples.shape[1] != self.D:
            raise ValueError(f"[PQ] expected samples of dimension {self.D}, got {samples.shape[1]}")

        permutation = self._training_permutation(samples.shape[0])
        num_training = len(permutation)
        subvectors_list = self.split_vectors(samples)

        centroids = np.empty((self.M, self.K, self.d_sub), dtype=np.float32)
        slice_percentage = 1.0 / self.M

        for m, subvectors in enumerate(subvectors_list):
            training_slice = np.ascontiguousarray(subvectors[permutation])

            relay = progress_slice(
                callback, m * slice_percentage, (m + 1) * slice_percentage,
                prefix=f"Training {m}/{self.M} ",
            )
            kmeans = VectorClustering(self.d_sub, self.K, self.settings.kmeans_settings())
            centroids[m] = kmeans.fit(training_slice, relay)

            if callback is not None:
                callback(ProgressFeedback(
                    percentage=(m + 1) * slice_percentage,
                    info=f"Trained subspace {m + 1}/{self.M}",
                ))

        self.centroids = centroids
        self.is_trained = True
        log.info(
            "[PQ] trained with M=%d subvectors and K=%d codewords each on %d samples",
            self.M, self.K, num_training,
        )

    def encode(self, vectors, callback: Optional[ProgressCallback] = None):
        """
        Encode vectors to PQ codes.
        (D,) -> (M,) uint8, (N, D) -> (N, M) uint8
        """
        self._check_trained()
        vectors = np.asarray(vectors, dtype=np.float32)
        if vectors.ndim == 1:
            return self._compute_code(vectors)

        N = vectors.shape[0]
        codes = np.empty((N, self.M), dtype=np.uint8)
        if callback is not None:
            for i in range(N):
                codes[i] = self._compute_code(vectors[i])
                callback(ProgressFeedback(percentage=(i + 1) / N, info="Encoding fragments"))
            return codes

        for start in range(0, N, ENCODE_BLOCK):
            block = vectors[start:start + ENCODE_BLOCK].reshape(-1, self.M, 1, self.d_sub)
            dists = np.sum((block - self.centroids[None, :, :, :]) ** 2, axis=3)
            codes[start:start + len(block)] = np.argmin(dists, axis=2)
        return codes

    def decode(self, codes):
        """
        Reconstruct approximate vectors from codes.
        (M,) -> (D,), (N, M) -> (N, D)
        """
        self._check_trained()
        codes = np.asarray(codes)
        single = codes.ndim == 1
        if single:
            codes = codes.reshape(1, -1)
        if codes.shape[1] != self.M:
            raise ValueError(f"[PQ] expected codes of length {self.M}, got {codes.shape[1]}")
        if codes.size and (codes.min() < 0 or codes.max() >= self.K):
            raise ValueError("[PQ] code value out of range, codebook data is corrupt")

        N = codes.shape[0]
        approx_vectors = np.empty((N, self.M, self.d_sub), dtype=np.float32)
        for m in range(self.M):
            approx_vectors[:, m, :] = self.centroids[m][codes[:, m]]

        approx_vectors = approx_vectors.reshape(N, self.D)
        return approx_vectors[0] if single else approx_vectors

    def compute_distance_table(self, query) -> np.ndarray:
        """Squared distance of each query subvector to every centroid, shape (M, K)"""
        self._check_trained()
        query_subvectors = np.asarray(query, dtype=np.float32).reshape(self.M, 1, self.d_sub)
        return np.sum((self.centroids - query_subvectors) ** 2, axis=2)

    def compute_asymmetric_distance(self, query, codes):
        """
        Squared distances between a full-precision query and PQ-encoded vectors.

        query : np.ndarray, shape (D,)
        codes : np.ndarray, shape (N, M) or (M,)

        Returns np.ndarray of shape (N,)
        """
        codes = np.asarray(codes)
        if codes.ndim == 1:
            codes = codes.reshape(1, -1)

        distance_table = self.compute_distance_table(query)
        return score_codes(distance_table, codes)

    def _compute_code(self, x):
        dists = np.sum((x.reshape(self.M, 1, self.d_sub) - self.centroids) ** 2, axis=2)
        return np.argmin(dists, axis=1).astype(np.uint8)

    def _training_permutation(self, num_input):
        settings = self.settings
        num_training = int(np.clip(
            num_input,
            settings.minimum_number_samples * self.K,
            settings.maximum_number_samples * self.K,
        ))

        rng = np.random.default_rng(settings.seed)
        if num_training != num_input:
            permutation = rng.integers(num_input, size=num_training)
        else:
            permutation = np.arange(num_input)
        return permutation[rng.permutation(num_training)]

    def _check_trained(self):
        if not self.is_trained or self.centroids is None:
            raise RuntimeError("[PQ] must be trained before use")

    @classmethod
    def from_centroids(cls, centroids, settings: Optional[PQSettings] = None):
        """Rebuild a trained quantizer from a persisted (M, K, d_sub) table"""
        centroids = np.asarray(centroids, dtype=np.float32)
        M, K, d_sub = centroids.shape
        if K != KSUB:
            raise ValueError(f"[PQ] expected {KSUB} centroids per subspace, got {K}")
        pq = cls(M * d_sub, M, settings)
        pq.centroids = centroids
        pq.is_trained = True
        return pq


def score_codes(distance_table, codes):
    """Sum the distance table entries addressed by each code row"""
    M = distance_table.shape[0]
    return distance_table[np.arange(M)[None, :], codes.astype(np.intp)].sum(axis=1)
