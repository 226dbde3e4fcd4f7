"""
Fragments are fixed-length feature vectors that describe a short window of
motion around a frame. A fragment is made of 3-vector features and always
belongs to exactly one metric, which fixes its layout:

trajectory fragment (n = metric.num_trajectory_samples)
    [0, n]            root linear velocity at n + 1 evenly spaced offsets
    [n + 1, 2n + 1]   root forward direction at the same offsets
    [2n + 2, 3n + 1]  root displacement between successive offsets (optional)

pose fragment (J = len(metric.pose_joints))
    [0, J)            joint positions in character space
    [J, 2J)           joint velocities

Each feature is one product-quantization subspace (dsub = 3). Codebooks hold
the trained centroid tables, the normalization statistics and the flat code
array of every interval that contributed to training.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
from sklearn.preprocessing import StandardScaler

from kmeans import ProgressCallback, progress_slice
from pq import PQSettings, SubspaceQuantizer

log = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE = 30.0
DEFAULT_TIME_HORIZON = 1.0
FEATURE_SIZE = 3
EPSILON = 1e-5
# portion of a codebook's progress spent training, the rest is encoding
TRAINING_SHARE = 0.9

TRAJECTORY = "trajectory"
POSE = "pose"

FORWARD_AXIS = np.array([0.0, 0.0, 1.0], dtype=np.float32)


@dataclass
class Metric:
    name: str
    num_trajectory_samples: int = 3
    # fraction of the time horizon at which trajectory sampling starts
    trajectory_sample_range: float = 0.0
    trajectory_displacements: bool = True
    pose_joints: Tuple[int, ...] = ()
    num_attempts: int = 1
    num_iterations: int = 25
    minimum_number_samples: int = 32
    maximum_number_samples: int = 256
    seed: int = 1234

    def __post_init__(self):
        if self.num_trajectory_samples <= 0:
            raise ValueError("[Codec] metric needs at least one trajectory sample")
        self.pose_joints = tuple(self.pose_joints)

    def num_features(self, kind: str) -> int:
        if kind == TRAJECTORY:
            n = self.num_trajectory_samples
            num_features = 2 * (n + 1)
            if self.trajectory_displacements:
                num_features += n
            return num_features
        if kind == POSE:
            return 2 * len(self.pose_joints)
        raise ValueError(f"[Codec] unknown fragment kind: {kind}")

    def pq_settings(self) -> PQSettings:
        return PQSettings(
            num_attempts=self.num_attempts,
            num_iterations=self.num_iterations,
            seed=self.seed,
            minimum_number_samples=self.minimum_number_samples,
            maximum_number_samples=self.maximum_number_samples,
        )


@dataclass(frozen=True)
class TimeIndex:
    segment_index: int
    frame_index: int


@dataclass(frozen=True)
class Interval:
    """Contiguous run of frames of one animation segment"""
    index: int
    segment_index: int
    first_frame: int
    num_frames: int

    @property
    def one_past_last_frame(self) -> int:
        return self.first_frame + self.num_frames

    def contains(self, time_index: TimeIndex) -> bool:
        return (
            time_index.segment_index == self.segment_index
            and self.first_frame <= time_index.frame_index < self.one_past_last_frame
        )


@dataclass
class Fragment:
    metric_name: str
    kind: str
    features: np.ndarray  # (num_features * 3,) float32
    time_index: Optional[TimeIndex] = None

    @property
    def num_features(self) -> int:
        return len(self.features) // FEATURE_SIZE

    def feature(self, index: int) -> np.ndarray:
        return self.features[index * FEATURE_SIZE:(index + 1) * FEATURE_SIZE]

    def equals(self, other: "Fragment", eps: float = EPSILON) -> bool:
        return (
            self.metric_name == other.metric_name
            and self.kind == other.kind
            and len(self.features) == len(other.features)
            and bool(np.all(np.abs(self.features - other.features) <= eps))
        )


# quaternions are stored as (x, y, z, w)

def quat_conjugate(q):
    return q * np.array([-1.0, -1.0, -1.0, 1.0], dtype=q.dtype)


def quat_multiply(a, b):
    ax, ay, az, aw = np.moveaxis(a, -1, 0)
    bx, by, bz, bw = np.moveaxis(b, -1, 0)
    return np.stack([
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    ], axis=-1)


def quat_rotate(q, v):
    u = q[..., :3]
    w = q[..., 3:]
    t = 2.0 * np.cross(u, v)
    return v + w * t + np.cross(u, t)


def to_character_space(positions, rotations, reference):
    """Express root transforms relative to the transform at index `reference`"""
    inverse = quat_conjugate(rotations[reference])
    local_positions = quat_rotate(inverse, positions - positions[reference])
    local_rotations = quat_multiply(np.broadcast_to(inverse, rotations.shape), rotations)
    return local_positions, local_rotations


class FragmentCodec:
    """Extracts fragments of one metric and kind, and trains codebooks for them"""

    def __init__(
        self,
        metric: Metric,
        kind: str = TRAJECTORY,
        sample_rate: float = DEFAULT_SAMPLE_RATE,
        time_horizon: float = DEFAULT_TIME_HORIZON,
    ):
        if sample_rate <= 0 or time_horizon <= 0:
            raise ValueError("[Codec] sample rate and time horizon must be positive")
        self.metric = metric
        self.kind = kind
        self.sample_rate = float(sample_rate)
        self.time_horizon = float(time_horizon)
        self.num_features = metric.num_features(kind)
        self.dimension = self.num_features * FEATURE_SIZE

    @property
    def half_window(self) -> int:
        return max(1, int(round(self.time_horizon * self.sample_rate)))

    @property
    def window_length(self) -> int:
        return 2 * self.half_window + 1

    def sample_times(self) -> np.ndarray:
        """Evenly spaced offsets (seconds) at which the trajectory is sampled"""
        horizon = self.time_horizon
        n = self.metric.num_trajectory_samples
        start = min(horizon, horizon * self.metric.trajectory_sample_range)
        advance = (horizon - start) / n
        return np.minimum(horizon, start + advance * np.arange(n + 1))

    def trajectory_window(self, positions, rotations, frame: int):
        """
        Cut the window of root transforms centred on `frame` out of a whole
        segment. Frames beyond the segment boundaries repeat the first or
        last transform.
        """
        half = self.half_window
        indices = np.clip(np.arange(frame - half, frame + half + 1), 0, len(positions) - 1)
        return positions[indices], rotations[indices]

    def create_trajectory_fragment(self, positions, rotations, time_index: Optional[TimeIndex] = None) -> Fragment:
        """
        positions: (L, 3) root positions, rotations: (L, 4) root orientations,
        time ordered and centred on the reference frame (L // 2).
        """
        if self.kind != TRAJECTORY:
            raise ValueError("[Codec] not a trajectory codec")
        positions = np.asarray(positions, dtype=np.float64)
        rotations = np.asarray(rotations, dtype=np.float64)
        if len(positions) < 2 or len(positions) != len(rotations):
            raise ValueError("[Codec] trajectory window needs matching positions and rotations")

        positions, rotations = to_character_space(positions, rotations, len(positions) // 2)

        n = self.metric.num_trajectory_samples
        stride = n + 1
        features = np.zeros((self.num_features, FEATURE_SIZE), dtype=np.float64)
        times = self.sample_times()

        for i, t in enumerate(times):
            features[i] = self._root_velocity(positions, rotations, t)
            features[stride + i] = quat_rotate(self._root_transform(positions, rotations, t)[1], FORWARD_AXIS)

        if self.metric.trajectory_displacements:
            previous = self._root_transform(positions, rotations, times[0])[0]
            for i in range(n):
                current = self._root_transform(positions, rotations, times[i + 1])[0]
                features[2 * stride + i] = current - previous
                previous = current

        return Fragment(self.metric.name, TRAJECTORY, features.reshape(-1).astype(np.float32), time_index)

    def create_pose_fragment(self, joint_positions, frame: int, time_index: Optional[TimeIndex] = None) -> Fragment:
        """
        joint_positions: (F, J, 3) character space joint positions of a segment.
        Velocities use the forward difference, backward on the last frame.
        """
        if self.kind != POSE:
            raise ValueError("[Codec] not a pose codec")
        joint_positions = np.asarray(joint_positions, dtype=np.float64)
        joints = list(self.metric.pose_joints)
        num_frames = len(joint_positions)

        current = joint_positions[frame, joints]
        if num_frames == 1:
            velocities = np.zeros_like(current)
        elif frame + 1 < num_frames:
            velocities = (joint_positions[frame + 1, joints] - current) * self.sample_rate
        else:
            velocities = (current - joint_positions[frame - 1, joints]) * self.sample_rate

        features = np.concatenate([current, velocities], axis=0)
        return Fragment(self.metric.name, POSE, features.reshape(-1).astype(np.float32), time_index)

    def fit_normalization(self, fragments) -> Tuple[np.ndarray, np.ndarray]:
        """Per-column mean and scale; constant columns keep a scale of 1"""
        scaler = StandardScaler()
        scaler.fit(np.asarray(fragments, dtype=np.float64))
        return scaler.mean_, scaler.scale_

    def train(self, fragments, intervals: List[Interval], callback: Optional[ProgressCallback] = None) -> "Codebook":
        """
        fragments: (N, D) raw fragment features, ordered interval by interval.
        Returns the codebook holding the codes of every fragment.
        """
        fragments = np.asarray(fragments, dtype=np.float32)
        num_fragments = sum(interval.num_frames for interval in intervals)
        if fragments.ndim != 2 or fragments.shape[0] == 0:
            raise ValueError("[Codec] empty training set")
        if fragments.shape != (num_fragments, self.dimension):
            raise ValueError(
                f"[Codec] expected fragments of shape {(num_fragments, self.dimension)}, "
                f"got {fragments.shape}"
            )

        mean, scale = self.fit_normalization(fragments)
        normalized = ((fragments - mean) / scale).astype(np.float32)

        quantizer = SubspaceQuantizer(self.dimension, self.num_features, self.metric.pq_settings())
        quantizer.fit(normalized, progress_slice(callback, 0.0, TRAINING_SHARE))
        codes = quantizer.encode(normalized, progress_slice(callback, TRAINING_SHARE, 1.0))

        log.info(
            "[Codec] %s codebook for metric %s: %d fragments, %d features",
            self.kind, self.metric.name, num_fragments, self.num_features,
        )
        return Codebook(self.metric, self.kind, quantizer, mean, scale, intervals, codes)

    def _root_transform(self, positions, rotations, t):
        length = len(positions)
        half = length // 2
        fraction = t / self.time_horizon
        key = half + int(np.floor(fraction * half))
        key = min(max(key, 0), length - 1)

        if key >= length - 1:
            return positions[-1], rotations[-1]

        theta = min(max(half + fraction * half - key, 0.0), 1.0)
        if theta <= EPSILON:
            return positions[key], rotations[key]

        q0, q1 = rotations[key], rotations[key + 1]
        if np.dot(q0, q1) < 0.0:
            q1 = -q1
        q = q0 + (q1 - q0) * theta
        position = positions[key] + (positions[key + 1] - positions[key]) * theta
        return position, q / np.linalg.norm(q)

    def _root_velocity(self, positions, rotations, t):
        delta_time = 1.0 / self.sample_rate
        future = min(t + delta_time, self.time_horizon)
        t = max(future - delta_time, -self.time_horizon)
        p1 = self._root_transform(positions, rotations, future)[0]
        p0 = self._root_transform(positions, rotations, t)[0]
        return (p1 - p0) / delta_time


class Codebook:
    """
    Trained centroid tables, normalization statistics and codes of one metric
    and fragment kind. Read-only once built.
    """

    def __init__(self, metric: Metric, kind: str, quantizer: SubspaceQuantizer,
                 mean, scale, intervals: List[Interval], codes):
        self.metric = metric
        self.kind = kind
        self.quantizer = quantizer
        self.mean = np.asarray(mean, dtype=np.float64)
        self.scale = np.asarray(scale, dtype=np.float64)
        self.intervals = list(intervals)
        self.codes = codes  # (num_fragments, M) uint8, may be a memmap

        self._offsets: Dict[int, int] = {}
        offset = 0
        for interval in self.intervals:
            self._offsets[interval.index] = offset
            offset += interval.num_frames

        if codes.shape != (offset, quantizer.M):
            raise ValueError(
                f"[Codec] expected codes of shape {(offset, quantizer.M)}, got {codes.shape}"
            )
        if len(self.mean) != quantizer.D or len(self.scale) != quantizer.D:
            raise ValueError("[Codec] normalization statistics do not match the quantizer")

    @property
    def num_fragments(self) -> int:
        return self.codes.shape[0]

    @property
    def num_features(self) -> int:
        return self.quantizer.M

    def has_interval(self, interval: Interval) -> bool:
        return interval.index in self._offsets

    def find_interval(self, time_index: TimeIndex) -> Optional[Interval]:
        for interval in self.intervals:
            if interval.contains(time_index):
                return interval
        return None

    def contains(self, time_index: TimeIndex) -> bool:
        return self.find_interval(time_index) is not None

    def fragment_index(self, interval: Interval, frame: int) -> int:
        """Row of the code array holding `frame` (segment frame) of `interval`"""
        relative = frame - interval.first_frame
        if not 0 <= relative < interval.num_frames:
            raise IndexError(f"[Codec] frame {frame} outside interval {interval.index}")
        return self._offsets[interval.index] + relative

    def codes_for(self, interval: Interval, first_frame: int, num_frames: int) -> np.ndarray:
        start = self.fragment_index(interval, first_frame)
        if num_frames > interval.one_past_last_frame - first_frame:
            raise IndexError(f"[Codec] sequence runs past the end of interval {interval.index}")
        return self.codes[start:start + num_frames]

    def normalize(self, features) -> np.ndarray:
        return ((np.asarray(features, dtype=np.float64) - self.mean) / self.scale).astype(np.float32)

    def inverse_normalize(self, features) -> np.ndarray:
        return (np.asarray(features, dtype=np.float64) * self.scale + self.mean).astype(np.float32)

    def encode(self, fragment: Fragment) -> np.ndarray:
        self._check_fragment(fragment)
        return self.quantizer.encode(self.normalize(fragment.features))

    def decode_normalized(self, index: int) -> np.ndarray:
        return self.quantizer.decode(self.codes[index])

    def decode(self, index: int, time_index: Optional[TimeIndex] = None) -> Fragment:
        features = self.inverse_normalize(self.decode_normalized(index))
        return Fragment(self.metric.name, self.kind, features, time_index)

    def reconstruct(self, time_index: TimeIndex) -> Optional[Fragment]:
        interval = self.find_interval(time_index)
        if interval is None:
            return None
        return self.decode(self.fragment_index(interval, time_index.frame_index), time_index)

    def distance_table(self, fragment: Fragment) -> np.ndarray:
        """Squared distances (M, ksub) of the normalized fragment to every centroid"""
        self._check_fragment(fragment)
        return self.quantizer.compute_distance_table(self.normalize(fragment.features))

    def feature_deviation(self, a: Fragment, b: Fragment) -> float:
        """Mean squared feature difference in normalized space"""
        self._check_fragment(a)
        self._check_fragment(b)
        difference = self.normalize(a.features) - self.normalize(b.features)
        return float(np.sum(difference * difference) / self.num_features)

    def _check_fragment(self, fragment: Fragment):
        if fragment.metric_name != self.metric.name or fragment.kind != self.kind:
            raise ValueError(
                f"[Codec] {fragment.kind} fragment of metric {fragment.metric_name} "
                f"does not belong to {self.kind} codebook of metric {self.metric.name}"
            )


@dataclass
class MetricCodebooks:
    """Trajectory and (optional) pose codebooks trained over the same intervals"""
    metric: Metric
    trajectories: Codebook
    poses: Optional[Codebook] = None

    @property
    def intervals(self) -> List[Interval]:
        return self.trajectories.intervals

    def has_interval(self, interval: Interval) -> bool:
        return self.trajectories.has_interval(interval)
