import numpy as np
import pytest

from conftest import SAMPLE_RATE, yaw_rotations
from deviation import (
    INVALID_DEVIATION,
    DeviationScore,
    DeviationTable,
    NoMetricError,
    Sequence,
    accept_candidate,
    relative_deviation,
)
from fragment import POSE, TRAJECTORY, Interval, TimeIndex

TARGET = TimeIndex(1, 40)


def scenario_sequences():
    return [
        Sequence.from_interval(Interval(0, 0, 0, 10)),
        Sequence.from_interval(Interval(1, 1, 5, 7)),
        Sequence.from_interval(Interval(2, 2, 0, 5)),
    ]


def query_fragments(motion_db, sampler, time_index):
    positions, rotations = sampler.root_transforms(time_index.segment_index)
    trajectory_codec = motion_db.codec("locomotion", TRAJECTORY)
    window = trajectory_codec.trajectory_window(positions, rotations, time_index.frame_index)
    trajectory = trajectory_codec.create_trajectory_fragment(*window)

    pose_codec = motion_db.codec("locomotion", POSE)
    pose = pose_codec.create_pose_fragment(sampler.joint_positions(time_index.segment_index), time_index.frame_index)
    return pose, trajectory


def far_trajectory(motion_db):
    length = motion_db.codec("locomotion").window_length
    frames = np.arange(length) - length // 2
    positions = np.stack([frames * 50.0 / SAMPLE_RATE, np.zeros(length), np.zeros(length)], axis=1)
    rotations = yaw_rotations(np.linspace(-2.0, 2.0, length))
    return motion_db.create_trajectory_fragment("locomotion", positions, rotations)


class TestDeviationTable:

    def test_slots_per_frame(self):
        table = DeviationTable.create(scenario_sequences())
        assert len(table) == 22
        assert list(table.first_index) == [0, 10, 17]
        assert not table.get_deviation(2, 4).is_valid

    def test_set_get_and_lookup(self):
        table = DeviationTable(scenario_sequences())
        table.set_deviation(1, 3, 0.2, 0.1)
        score = table.get_deviation(1, 3)
        assert score.pose_deviation == pytest.approx(0.2)
        assert score.total_deviation == pytest.approx(0.3)

        assert table.lookup(TimeIndex(1, 8)) == score
        assert not table.lookup(TimeIndex(1, 4)).is_valid
        assert not table.lookup(TimeIndex(5, 0)).is_valid

    def test_out_of_range_slot(self):
        table = DeviationTable(scenario_sequences())
        with pytest.raises(IndexError):
            table.get_deviation(1, 7)
        with pytest.raises(IndexError):
            table.set_deviation(3, 0, 0.0, 0.0)

    def test_sort_skips_invalid_and_keeps_scan_order_on_ties(self):
        table = DeviationTable(scenario_sequences())
        table.set_deviation(2, 1, 0.75, INVALID_DEVIATION)
        table.set_deviation(0, 9, 0.25, 0.25)
        table.set_deviation(1, 0, 0.125, 0.375)
        table.set_deviation(0, 2, 0.9, 0.0)

        ranked = table.sort_candidates_by_deviation()
        assert [time_index for time_index, _ in ranked] == [
            TimeIndex(0, 9), TimeIndex(1, 5), TimeIndex(2, 1), TimeIndex(0, 2),
        ]
        # a negative trajectory part is "not applicable"
        assert ranked[2][1].total_deviation == pytest.approx(0.75)

    def test_best_candidate_threshold(self):
        table = DeviationTable(scenario_sequences())
        table.set_deviation(1, 6, 0.25, 0.25)
        table.set_deviation(2, 0, 0.5, 0.25)

        assert table.best_candidate()[0] == TimeIndex(1, 11)
        assert table.best_candidate(threshold=0.6)[0] == TimeIndex(1, 11)
        assert table.best_candidate(threshold=0.5) is None

    def test_time_index_skips_empty_sequences(self):
        table = DeviationTable([
            Sequence(Interval(0, 0, 0, 10), 4, 3),
            Sequence(Interval(1, 1, 0, 10), 2, 0),
            Sequence(Interval(2, 2, 0, 10), 6, 2),
        ])
        assert len(table) == 5
        assert table.time_index(2) == TimeIndex(0, 6)
        assert table.time_index(3) == TimeIndex(2, 6)

    def test_empty_table(self):
        with DeviationTable([]) as table:
            assert len(table) == 0
            assert table.sort_candidates_by_deviation() == []
            assert table.best_candidate() is None

    def test_context_manager_disposes(self):
        with DeviationTable(scenario_sequences()) as table:
            assert len(table) == 22
        assert len(table) == 0


def test_invalid_score():
    score = DeviationScore.invalid()
    assert not score.is_valid
    assert score.total_deviation == 0.0
    assert DeviationScore(0.0, INVALID_DEVIATION).is_valid


class TestDeviationSearch:

    def test_exact_query_scores_lowest_at_its_own_frame(self, motion_db, sampler):
        pose, trajectory = query_fragments(motion_db, sampler, TARGET)
        sequences = motion_db.sequences_for("locomotion")

        with motion_db.search.build_table(sequences, pose, trajectory) as table:
            target_score = table.lookup(TARGET)
            best_time, best_score = table.best_candidate()
        assert target_score.is_valid
        assert best_score.total_deviation == pytest.approx(target_score.total_deviation, abs=1e-6)

        ranked = motion_db.rank(sequences, pose, trajectory)
        assert len(ranked) == 250
        assert ranked[0][0] == best_time
        totals = [score.total_deviation for _, score in ranked]
        assert totals == sorted(totals)

    def test_reconstructed_query_matches_itself(self, motion_db):
        pose = motion_db.reconstruct_pose_fragment(TARGET)
        trajectory = motion_db.reconstruct_trajectory_fragment(TARGET)
        assert trajectory.time_index == TARGET

        best_time, best_score = motion_db.find_best(
            motion_db.sequences_for("locomotion"), pose, trajectory
        )
        assert best_score.total_deviation == pytest.approx(0.0, abs=1e-5)
        table = motion_db.search.build_table(motion_db.sequences_for("locomotion"), pose, trajectory)
        assert table.lookup(TARGET).total_deviation == pytest.approx(0.0, abs=1e-5)

    def test_per_metric_queries(self, motion_db, sampler):
        pose, trajectory = query_fragments(motion_db, sampler, TARGET)
        sequences = motion_db.sequences_for("locomotion")
        single = motion_db.find_best(sequences, pose, trajectory)
        mapped = motion_db.find_best(sequences, {"locomotion": pose}, {"locomotion": trajectory})
        assert single == mapped

    def test_threshold_rejects_distant_matches(self, motion_db):
        trajectory = far_trajectory(motion_db)
        sequences = motion_db.sequences_for("locomotion")
        _, best_score = motion_db.find_best(sequences, trajectory=trajectory)
        total = best_score.total_deviation
        assert total > 0.0

        assert motion_db.find_best(sequences, trajectory=trajectory, threshold=total) is None
        assert motion_db.find_best(sequences, trajectory=trajectory, threshold=2.0 * total) is not None

    def test_without_trajectory_query(self, motion_db, sampler):
        pose, _ = query_fragments(motion_db, sampler, TARGET)
        ranked = motion_db.rank(motion_db.sequences_for("locomotion"), pose=pose)
        for _, score in ranked[:10]:
            assert score.trajectory_deviation == INVALID_DEVIATION
            assert score.total_deviation == pytest.approx(score.pose_deviation)

    def test_without_queries_every_frame_is_admissible(self, motion_db):
        best_time, best_score = motion_db.find_best(motion_db.sequences_for("locomotion"))
        assert best_time == TimeIndex(0, 0)
        assert best_score.total_deviation == 0.0

    def test_full_responsiveness_ignores_pose(self, motion_db, sampler):
        pose, trajectory = query_fragments(motion_db, sampler, TARGET)
        ranked = motion_db.rank(motion_db.sequences_for("locomotion"), pose, trajectory, responsiveness=1.0)
        assert all(score.pose_deviation == 0.0 for _, score in ranked)

    def test_sub_sequence(self, motion_db):
        interval = motion_db.get_interval(1)
        ranked = motion_db.rank([Sequence(interval, 20, 5)], trajectory=far_trajectory(motion_db))
        assert sorted(time_index.frame_index for time_index, _ in ranked) == [20, 21, 22, 23, 24]

    def test_interval_without_metric(self, motion_db):
        untagged = Sequence.from_interval(motion_db.get_interval(3))
        with pytest.raises(NoMetricError):
            motion_db.find_best([untagged])

    def test_responsiveness_out_of_range(self, motion_db):
        with pytest.raises(ValueError):
            motion_db.rank(motion_db.sequences_for("locomotion"), responsiveness=1.5)


class TestHeuristic:

    def test_relative_deviation(self, motion_db, sampler):
        metric_codebooks = motion_db.codebooks["locomotion"]
        _, desired = query_fragments(motion_db, sampler, TimeIndex(0, 30))
        _, current = query_fragments(motion_db, sampler, TimeIndex(2, 30))

        assert relative_deviation(metric_codebooks, desired, current, desired) > 0.0
        assert relative_deviation(metric_codebooks, current, current, desired) == pytest.approx(0.0)

    def test_accept_candidate(self, motion_db, sampler):
        metric_codebooks = motion_db.codebooks["locomotion"]
        _, desired = query_fragments(motion_db, sampler, TimeIndex(0, 30))
        current = far_trajectory(motion_db)

        assert accept_candidate(metric_codebooks, desired, current, desired)
        assert not accept_candidate(metric_codebooks, current, current, desired)
        assert not accept_candidate(metric_codebooks, desired, desired, desired)
