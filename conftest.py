import numpy as np
import pytest

from fragment import Metric
from motion_db import AnimationSampler, MotionDB

SAMPLE_RATE = 30.0
SEGMENT_LENGTHS = (90, 120, 60, 40)

JOINT_OFFSETS = np.array([
    [0.0, 1.0, 0.0],
    [0.2, 0.5, 0.1],
    [-0.2, 0.5, -0.1],
    [0.0, 1.6, 0.0],
])


def yaw_rotations(heading):
    zeros = np.zeros_like(heading)
    return np.stack([zeros, np.sin(heading / 2.0), zeros, np.cos(heading / 2.0)], axis=1)


class SyntheticSampler(AnimationSampler):
    """Characters walking along curved paths with swinging joints"""

    def __init__(self, segment_lengths=SEGMENT_LENGTHS, sample_rate=SAMPLE_RATE, seed=7):
        rng = np.random.default_rng(seed)
        dt = 1.0 / sample_rate
        self.segments = []
        for length in segment_lengths:
            speed = rng.uniform(0.5, 3.0)
            turn_rate = rng.uniform(-1.5, 1.5)
            phase = rng.uniform(0.0, 2.0 * np.pi)
            t = np.arange(length) * dt

            heading = rng.uniform(-np.pi, np.pi) + turn_rate * t + 0.3 * np.sin(2.0 * t + phase)
            speeds = speed * (1.0 + 0.3 * np.sin(1.3 * t + phase))
            directions = np.stack([np.sin(heading), np.zeros(length), np.cos(heading)], axis=1)
            positions = np.cumsum(directions * (speeds * dt)[:, None], axis=0)
            rotations = yaw_rotations(heading)

            swing = 0.1 * np.sin(4.0 * t[:, None] + phase + np.arange(len(JOINT_OFFSETS))[None, :])
            joints = JOINT_OFFSETS[None, :, :] + swing[:, :, None] * np.array([0.0, 0.3, 1.0])

            self.segments.append((positions, rotations, joints))

    def num_frames(self, segment_index):
        return len(self.segments[segment_index][0])

    def root_transforms(self, segment_index):
        positions, rotations, _ = self.segments[segment_index]
        return positions, rotations

    def joint_positions(self, segment_index):
        return self.segments[segment_index][2]


def small_metric(name="locomotion"):
    return Metric(
        name,
        num_trajectory_samples=2,
        trajectory_displacements=True,
        pose_joints=(1, 2, 3),
        num_iterations=5,
        minimum_number_samples=1,
        maximum_number_samples=2,
    )


@pytest.fixture(scope="session")
def sampler():
    return SyntheticSampler()


@pytest.fixture(scope="session")
def motion_db(sampler, tmp_path_factory):
    db = MotionDB(str(tmp_path_factory.mktemp("library")), sample_rate=SAMPLE_RATE)
    db.add_metric(small_metric())
    db.add_interval(0, 0, 90, "locomotion")
    db.add_interval(1, 10, 100, "locomotion")
    db.add_interval(2, 0, 60, "locomotion")
    # tagged but without a metric
    db.add_interval(3, 0, 40)
    db.build(sampler)
    return db
