import gzip
import logging
import os
import pickle
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import numpy as np

from deviation import (
    DEFAULT_RESPONSIVENESS,
    Candidate,
    DeviationSearch,
    QueryFragments,
    Sequence,
)
from fragment import (
    DEFAULT_SAMPLE_RATE,
    DEFAULT_TIME_HORIZON,
    POSE,
    TRAJECTORY,
    Codebook,
    Fragment,
    FragmentCodec,
    Interval,
    Metric,
    MetricCodebooks,
    TimeIndex,
)
from kmeans import ProgressCallback, progress_slice
from pq import SubspaceQuantizer

log = logging.getLogger(__name__)

FORMAT_VERSION = 1
LIBRARY_FILE = "library.meta"
CODEBOOK_FILE = "codebook.meta"
CODES_FILE = "{kind}_codes.dat"


class AnimationSampler(ABC):
    """
    Source of raw animation samples. Implemented by the animation sampling
    collaborator; frames are indexed per segment.
    """

    @abstractmethod
    def num_frames(self, segment_index: int) -> int:
        raise NotImplementedError

    @abstractmethod
    def root_transforms(self, segment_index: int) -> Tuple[np.ndarray, np.ndarray]:
        """(F, 3) root positions and (F, 4) root orientations (x, y, z, w)"""
        raise NotImplementedError

    @abstractmethod
    def joint_positions(self, segment_index: int) -> np.ndarray:
        """(F, J, 3) joint positions in character space"""
        raise NotImplementedError


class MotionDB:
    def __init__(
        self,
        library_path="motion_library",
        sample_rate=DEFAULT_SAMPLE_RATE,
        time_horizon=DEFAULT_TIME_HORIZON,
        new_db=True,
    ) -> None:
        self.library_path = library_path
        self.sample_rate = sample_rate
        self.time_horizon = time_horizon
        self.metrics: Dict[str, Metric] = {}
        self.intervals: List[Interval] = []
        self.interval_metrics: Dict[int, str] = {}
        self.codebooks: Dict[str, MetricCodebooks] = {}
        self._search = None
        if not new_db:
            self.load()

    def add_metric(self, metric: Metric) -> Metric:
        if metric.name in self.metrics:
            raise ValueError(f"[DB] metric {metric.name} already registered")
        self.metrics[metric.name] = metric
        return metric

    def add_interval(self, segment_index: int, first_frame: int, num_frames: int,
                     metric_name: Optional[str] = None) -> Interval:
        """Intervals without a metric are stored but get no codebook"""
        if num_frames <= 0:
            raise ValueError("[DB] interval needs at least one frame")
        if metric_name is not None and metric_name not in self.metrics:
            raise ValueError(f"[DB] unknown metric {metric_name}")
        interval = Interval(len(self.intervals), segment_index, first_frame, num_frames)
        self.intervals.append(interval)
        if metric_name is not None:
            self.interval_metrics[interval.index] = metric_name
        return interval

    def get_interval(self, index: int) -> Interval:
        return self.intervals[index]

    def intervals_for(self, metric_name: str) -> List[Interval]:
        return [
            interval for interval in self.intervals
            if self.interval_metrics.get(interval.index) == metric_name
        ]

    def codec(self, metric_name: str, kind: str = TRAJECTORY) -> FragmentCodec:
        return FragmentCodec(self.metrics[metric_name], kind, self.sample_rate, self.time_horizon)

    # ------------------------------------------------------------------
    # build
    # ------------------------------------------------------------------

    def build(self, sampler: AnimationSampler, callback: Optional[ProgressCallback] = None) -> None:
        """Extract fragments for every metric, train its codebooks and write them"""
        self.codebooks = {}
        self._search = None

        stages = []
        for name, metric in self.metrics.items():
            if not self.intervals_for(name):
                log.warning("[DB] metric %s has no intervals, skipping", name)
                continue
            stages.append((name, TRAJECTORY))
            if metric.pose_joints:
                stages.append((name, POSE))

        trained: Dict[str, Dict[str, Codebook]] = {}
        for stage, (name, kind) in enumerate(stages):
            intervals = self.intervals_for(name)
            codec = self.codec(name, kind)
            fragments = self._extract_fragments(codec, sampler, intervals)
            trained.setdefault(name, {})[kind] = codec.train(
                fragments, intervals, self._relay(callback, name, kind, stage, len(stages))
            )

        for name, codebooks in trained.items():
            self.codebooks[name] = MetricCodebooks(self.metrics[name], codebooks[TRAJECTORY], codebooks.get(POSE))

        self._write_library()
        log.info("[DB] built %d codebooks into %s", len(self.codebooks), self.library_path)

    def _relay(self, callback, metric_name, kind, stage, num_stages):
        """Each (metric, kind) codebook gets an equal slice of the build progress"""
        return progress_slice(
            callback,
            stage / num_stages,
            (stage + 1) / num_stages,
            prefix=f"{metric_name}/{kind}: ",
        )

    def _extract_fragments(self, codec: FragmentCodec, sampler: AnimationSampler,
                           intervals: List[Interval]) -> np.ndarray:
        num_fragments = sum(interval.num_frames for interval in intervals)
        fragments = np.empty((num_fragments, codec.dimension), dtype=np.float32)
        write_index = 0
        for interval in intervals:
            segment = interval.segment_index
            if interval.one_past_last_frame > sampler.num_frames(segment):
                raise ValueError(f"[DB] interval {interval.index} runs past the end of segment {segment}")

            if codec.kind == TRAJECTORY:
                positions, rotations = sampler.root_transforms(segment)
                for frame in range(interval.first_frame, interval.one_past_last_frame):
                    window = codec.trajectory_window(positions, rotations, frame)
                    fragments[write_index] = codec.create_trajectory_fragment(*window).features
                    write_index += 1
            else:
                joint_positions = sampler.joint_positions(segment)
                for frame in range(interval.first_frame, interval.one_past_last_frame):
                    fragments[write_index] = codec.create_pose_fragment(joint_positions, frame).features
                    write_index += 1

        assert write_index == num_fragments
        return fragments

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _metric_path(self, metric_name: str) -> str:
        return os.path.join(self.library_path, metric_name)

    def _write_library(self) -> None:
        os.makedirs(self.library_path, exist_ok=True)
        library = {
            "version": FORMAT_VERSION,
            "sample_rate": self.sample_rate,
            "time_horizon": self.time_horizon,
            "metrics": list(self.metrics.values()),
            "intervals": self.intervals,
            "interval_metrics": self.interval_metrics,
            "codebooks": list(self.codebooks),
        }
        with gzip.open(os.path.join(self.library_path, LIBRARY_FILE), "wb") as f:
            pickle.dump(library, f, protocol=pickle.HIGHEST_PROTOCOL)

        for name, metric_codebooks in self.codebooks.items():
            self._write_codebooks(name, metric_codebooks)

    def _write_codebooks(self, metric_name: str, metric_codebooks: MetricCodebooks) -> None:
        path = self._metric_path(metric_name)
        os.makedirs(path, exist_ok=True)
        meta = {"version": FORMAT_VERSION, "metric": metric_codebooks.metric, "kinds": {}}

        for kind, codebook in ((TRAJECTORY, metric_codebooks.trajectories), (POSE, metric_codebooks.poses)):
            if codebook is None:
                continue
            meta["kinds"][kind] = {
                "centroids": codebook.quantizer.centroids,
                "mean": codebook.mean,
                "scale": codebook.scale,
                "intervals": codebook.intervals,
                "shape": codebook.codes.shape,
            }
            self._write_codes(os.path.join(path, CODES_FILE.format(kind=kind)), codebook.codes)

        with gzip.open(os.path.join(path, CODEBOOK_FILE), "wb") as f:
            pickle.dump(meta, f, protocol=pickle.HIGHEST_PROTOCOL)

    def _write_codes(self, codes_path: str, codes: np.ndarray) -> None:
        mmap_codes = np.memmap(codes_path, dtype=np.uint8, mode="w+", shape=codes.shape)
        mmap_codes[:] = codes[:]
        mmap_codes.flush()

    def load(self) -> None:
        with gzip.open(os.path.join(self.library_path, LIBRARY_FILE), "rb") as f:
            library = pickle.load(f)
        if library.get("version") != FORMAT_VERSION:
            raise ValueError(f"[DB] unsupported library version {library.get('version')}")

        self.sample_rate = library["sample_rate"]
        self.time_horizon = library["time_horizon"]
        self.metrics = {metric.name: metric for metric in library["metrics"]}
        self.intervals = library["intervals"]
        self.interval_metrics = library["interval_metrics"]
        self.codebooks = {name: self._load_codebooks(name) for name in library["codebooks"]}
        self._search = None
        log.info("[DB] loaded %d codebooks from %s", len(self.codebooks), self.library_path)

    def _load_codebooks(self, metric_name: str) -> MetricCodebooks:
        path = self._metric_path(metric_name)
        with gzip.open(os.path.join(path, CODEBOOK_FILE), "rb") as f:
            meta = pickle.load(f)
        if meta.get("version") != FORMAT_VERSION:
            raise ValueError(f"[DB] unsupported codebook version {meta.get('version')} for {metric_name}")

        metric = meta["metric"]
        loaded = {}
        for kind, entry in meta["kinds"].items():
            codes = np.memmap(
                os.path.join(path, CODES_FILE.format(kind=kind)),
                dtype=np.uint8, mode="r", shape=tuple(entry["shape"]),
            )
            quantizer = SubspaceQuantizer.from_centroids(entry["centroids"], metric.pq_settings())
            loaded[kind] = Codebook(metric, kind, quantizer, entry["mean"], entry["scale"], entry["intervals"], codes)
        return MetricCodebooks(metric, loaded[TRAJECTORY], loaded.get(POSE))

    # ------------------------------------------------------------------
    # query
    # ------------------------------------------------------------------

    @property
    def search(self) -> DeviationSearch:
        if self._search is None:
            self._search = DeviationSearch(self.codebooks.values())
        return self._search

    def codebooks_for_time(self, time_index: TimeIndex) -> Optional[MetricCodebooks]:
        for metric_codebooks in self.codebooks.values():
            if metric_codebooks.trajectories.contains(time_index):
                return metric_codebooks
        return None

    def sequences_for(self, metric_name: str) -> List[Sequence]:
        return [Sequence.from_interval(interval) for interval in self.intervals_for(metric_name)]

    def create_trajectory_fragment(self, metric_name: str, positions, rotations) -> Fragment:
        """Query fragment from a window of root transforms centred on the present"""
        return self.codec(metric_name, TRAJECTORY).create_trajectory_fragment(positions, rotations)

    def reconstruct_trajectory_fragment(self, time_index: TimeIndex) -> Optional[Fragment]:
        metric_codebooks = self.codebooks_for_time(time_index)
        if metric_codebooks is None:
            return None
        return metric_codebooks.trajectories.reconstruct(time_index)

    def reconstruct_pose_fragment(self, time_index: TimeIndex) -> Optional[Fragment]:
        metric_codebooks = self.codebooks_for_time(time_index)
        if metric_codebooks is None or metric_codebooks.poses is None:
            return None
        return metric_codebooks.poses.reconstruct(time_index)

    def find_best(self, sequences: List[Sequence], pose: QueryFragments = None,
                  trajectory: QueryFragments = None, responsiveness=DEFAULT_RESPONSIVENESS,
                  threshold=0.0) -> Optional[Candidate]:
        return self.search.find_best(sequences, pose, trajectory, responsiveness, threshold)

    def rank(self, sequences: List[Sequence], pose: QueryFragments = None,
             trajectory: QueryFragments = None, responsiveness=DEFAULT_RESPONSIVENESS) -> List[Candidate]:
        return self.search.rank(sequences, pose, trajectory, responsiveness)
