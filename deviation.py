import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np

from fragment import Fragment, Interval, MetricCodebooks, TimeIndex
from pq import score_codes

log = logging.getLogger(__name__)

DEFAULT_RESPONSIVENESS = 0.6
DEFAULT_HEURISTIC_THRESHOLD = 0.03
INVALID_DEVIATION = -1.0

Candidate = Tuple[TimeIndex, "DeviationScore"]
QueryFragments = Union[None, Fragment, Mapping[str, Fragment]]


class NoMetricError(RuntimeError):
    """A candidate sequence refers to an interval that has no codebook"""

    def __init__(self, interval: Interval):
        super().__init__(
            f"no metric assigned to segment {interval.segment_index} (interval {interval.index})"
        )
        self.interval = interval


@dataclass(frozen=True)
class Sequence:
    """Contiguous run of admissible frames inside one interval"""
    interval: Interval
    first_frame: int
    num_frames: int

    @property
    def one_past_last_frame(self) -> int:
        return self.first_frame + self.num_frames

    @classmethod
    def from_interval(cls, interval: Interval) -> "Sequence":
        return cls(interval, interval.first_frame, interval.num_frames)


@dataclass(frozen=True)
class DeviationScore:
    pose_deviation: float
    trajectory_deviation: float

    @property
    def total_deviation(self) -> float:
        return max(self.pose_deviation, 0.0) + max(self.trajectory_deviation, 0.0)

    @property
    def is_valid(self) -> bool:
        return self.pose_deviation >= 0.0

    @classmethod
    def invalid(cls) -> "DeviationScore":
        return cls(INVALID_DEVIATION, INVALID_DEVIATION)


class DeviationTable:
    """
    Flat table of deviation scores, one slot per (sequence, frame).
    Built for a single query; use as a context manager to release it.
    """

    def __init__(self, sequences: Iterable[Sequence]):
        self.sequences = list(sequences)
        self.first_index = np.zeros(len(self.sequences), dtype=np.int64)
        num_deviations = 0
        for i, sequence in enumerate(self.sequences):
            self.first_index[i] = num_deviations
            num_deviations += sequence.num_frames

        self.pose_deviations = np.full(num_deviations, INVALID_DEVIATION, dtype=np.float32)
        self.trajectory_deviations = np.full(num_deviations, INVALID_DEVIATION, dtype=np.float32)

    @classmethod
    def create(cls, sequences: Iterable[Sequence]) -> "DeviationTable":
        return cls(sequences)

    def __len__(self):
        return len(self.pose_deviations)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()

    def dispose(self):
        self.sequences = []
        self.first_index = np.zeros(0, dtype=np.int64)
        self.pose_deviations = np.zeros(0, dtype=np.float32)
        self.trajectory_deviations = np.zeros(0, dtype=np.float32)

    def _slot(self, sequence_index: int, frame: int) -> int:
        if not 0 <= sequence_index < len(self.sequences):
            raise IndexError(f"sequence {sequence_index} out of range")
        if not 0 <= frame < self.sequences[sequence_index].num_frames:
            raise IndexError(f"frame {frame} out of range for sequence {sequence_index}")
        return int(self.first_index[sequence_index]) + frame

    def set_deviation(self, sequence_index: int, frame: int, pose_deviation: float, trajectory_deviation: float):
        """`frame` is relative to the first frame of the sequence"""
        slot = self._slot(sequence_index, frame)
        self.pose_deviations[slot] = pose_deviation
        self.trajectory_deviations[slot] = trajectory_deviation

    def set_sequence_deviations(self, sequence_index: int, pose_deviations, trajectory_deviations):
        start = int(self.first_index[sequence_index])
        end = start + self.sequences[sequence_index].num_frames
        self.pose_deviations[start:end] = pose_deviations
        self.trajectory_deviations[start:end] = trajectory_deviations

    def get_deviation(self, sequence_index: int, frame: int) -> DeviationScore:
        slot = self._slot(sequence_index, frame)
        return DeviationScore(
            float(self.pose_deviations[slot]),
            float(self.trajectory_deviations[slot]),
        )

    def lookup(self, time_index: TimeIndex) -> DeviationScore:
        """Score of an absolute time index, invalid when no sequence covers it"""
        for i, sequence in enumerate(self.sequences):
            if (
                sequence.interval.segment_index == time_index.segment_index
                and sequence.first_frame <= time_index.frame_index < sequence.one_past_last_frame
            ):
                return self.get_deviation(i, time_index.frame_index - sequence.first_frame)
        return DeviationScore.invalid()

    def total_deviations(self) -> np.ndarray:
        return np.maximum(self.pose_deviations, 0.0) + np.maximum(self.trajectory_deviations, 0.0)

    def time_index(self, slot: int) -> TimeIndex:
        sequence_index = int(np.searchsorted(self.first_index, slot, side="right")) - 1
        # skip empty sequences that share the same first slot
        while self.sequences[sequence_index].num_frames == 0:
            sequence_index -= 1
        sequence = self.sequences[sequence_index]
        frame = sequence.first_frame + slot - int(self.first_index[sequence_index])
        return TimeIndex(sequence.interval.segment_index, frame)

    def sort_candidates_by_deviation(self) -> List[Candidate]:
        """Valid candidates in ascending total deviation, scan order on ties"""
        valid = np.flatnonzero(self.pose_deviations >= 0.0)
        totals = self.total_deviations()[valid]
        order = valid[np.argsort(totals, kind="stable")]
        return [
            (self.time_index(int(slot)), DeviationScore(
                float(self.pose_deviations[slot]),
                float(self.trajectory_deviations[slot]),
            ))
            for slot in order
        ]

    def best_candidate(self, threshold: float = 0.0) -> Optional[Candidate]:
        """Lowest total deviation, strictly below `threshold` when it is positive"""
        valid = np.flatnonzero(self.pose_deviations >= 0.0)
        if len(valid) == 0:
            return None
        totals = self.total_deviations()[valid]
        best = int(np.argmin(totals))
        if threshold > 0.0 and not totals[best] < threshold:
            return None
        slot = int(valid[best])
        return self.time_index(slot), DeviationScore(
            float(self.pose_deviations[slot]),
            float(self.trajectory_deviations[slot]),
        )


def _per_metric(fragments: QueryFragments) -> Dict[str, Fragment]:
    if fragments is None:
        return {}
    if isinstance(fragments, Fragment):
        return {fragments.metric_name: fragments}
    return dict(fragments)


class DeviationSearch:
    """
    Exhaustive scan over admissible sequences. Candidates are scored from
    their codes with per-query distance tables, so a candidate costs one
    table lookup per feature.

    Pose and trajectory deviations are the squared distances in normalized
    space divided by the number of features, weighted by
    (1 - responsiveness) and responsiveness respectively.
    """

    def __init__(self, codebooks: Iterable[MetricCodebooks]):
        self.codebooks = list(codebooks)
        self._by_interval: Dict[int, MetricCodebooks] = {}
        for metric_codebooks in self.codebooks:
            for interval in metric_codebooks.intervals:
                self._by_interval[interval.index] = metric_codebooks

    def codebooks_for(self, interval: Interval) -> MetricCodebooks:
        try:
            return self._by_interval[interval.index]
        except KeyError:
            raise NoMetricError(interval) from None

    def build_table(
        self,
        sequences: Iterable[Sequence],
        pose: QueryFragments = None,
        trajectory: QueryFragments = None,
        responsiveness: float = DEFAULT_RESPONSIVENESS,
    ) -> DeviationTable:
        """
        Score every frame of every sequence. `pose` and `trajectory` are
        query fragments, either one fragment or one per metric name. Without
        a pose query the pose term is 0; without a trajectory query the
        trajectory slot holds the "not applicable" sentinel.
        """
        if not 0.0 <= responsiveness <= 1.0:
            raise ValueError("responsiveness must be within [0, 1]")
        pose_queries = _per_metric(pose)
        trajectory_queries = _per_metric(trajectory)
        pose_weight = 1.0 - responsiveness
        trajectory_weight = responsiveness

        table = DeviationTable.create(sequences)
        distance_tables = {}

        for i, sequence in enumerate(table.sequences):
            if sequence.num_frames == 0:
                continue
            metric_codebooks = self.codebooks_for(sequence.interval)
            name = metric_codebooks.metric.name

            pose_codebook = metric_codebooks.poses
            pose_query = pose_queries.get(name)
            if pose_codebook is not None and pose_query is not None:
                key = (name, "pose")
                if key not in distance_tables:
                    distance_tables[key] = (
                        pose_codebook.distance_table(pose_query)
                        * (pose_weight / pose_codebook.num_features)
                    )
                codes = pose_codebook.codes_for(sequence.interval, sequence.first_frame, sequence.num_frames)
                pose_deviations = score_codes(distance_tables[key], codes)
            else:
                pose_deviations = np.zeros(sequence.num_frames, dtype=np.float32)

            trajectory_codebook = metric_codebooks.trajectories
            trajectory_query = trajectory_queries.get(name)
            if trajectory_query is not None:
                key = (name, "trajectory")
                if key not in distance_tables:
                    distance_tables[key] = (
                        trajectory_codebook.distance_table(trajectory_query)
                        * (trajectory_weight / trajectory_codebook.num_features)
                    )
                codes = trajectory_codebook.codes_for(sequence.interval, sequence.first_frame, sequence.num_frames)
                trajectory_deviations = score_codes(distance_tables[key], codes)
            else:
                trajectory_deviations = np.full(sequence.num_frames, INVALID_DEVIATION, dtype=np.float32)

            table.set_sequence_deviations(i, pose_deviations, trajectory_deviations)

        return table

    def find_best(
        self,
        sequences: Iterable[Sequence],
        pose: QueryFragments = None,
        trajectory: QueryFragments = None,
        responsiveness: float = DEFAULT_RESPONSIVENESS,
        threshold: float = 0.0,
    ) -> Optional[Candidate]:
        """Closest match, or None when nothing is admissible or under threshold"""
        with self.build_table(sequences, pose, trajectory, responsiveness) as table:
            best = table.best_candidate(threshold)
        if best is None:
            log.debug("no match among admissible candidates")
        return best

    def rank(
        self,
        sequences: Iterable[Sequence],
        pose: QueryFragments = None,
        trajectory: QueryFragments = None,
        responsiveness: float = DEFAULT_RESPONSIVENESS,
    ) -> List[Candidate]:
        with self.build_table(sequences, pose, trajectory, responsiveness) as table:
            return table.sort_candidates_by_deviation()


def relative_deviation(metric_codebooks: MetricCodebooks, candidate: Fragment,
                       current: Fragment, desired: Fragment) -> float:
    """How much closer the candidate trajectory is to the desired one than the current one"""
    codebook = metric_codebooks.trajectories
    return (
        codebook.feature_deviation(current, desired)
        - codebook.feature_deviation(candidate, desired)
    )


def accept_candidate(metric_codebooks: MetricCodebooks, candidate: Fragment, current: Fragment,
                     desired: Fragment, threshold: float = DEFAULT_HEURISTIC_THRESHOLD) -> bool:
    return relative_deviation(metric_codebooks, candidate, current, desired) >= threshold
