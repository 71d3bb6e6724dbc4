import numpy as np
import pytest

from clipstream_core.alignment.dtw import (
    dtw,
    dtw_distance,
    subsequence_dtw,
    warping_path,
)
from clipstream_core.alignment.relate import (
    AlignmentRules,
    comparable_duration,
    match_pov,
    match_trimmed,
)
from clipstream_core.errors import DimensionMismatchError

RULES = AlignmentRules(
    metric="euclidean",
    trimmed_cost_threshold=0.1,
    trimmed_min_span_ratio=0.5,
    pov_cost_threshold=0.25,
    pov_duration_tolerance=0.1,
    pov_max_deviation_ratio=0.2,
)


def _random_sequence(windows: int, dim: int = 16, seed: int = 7) -> np.ndarray:
    return np.random.default_rng(seed).normal(size=(windows, dim))


def _smooth_sequence(windows: int, dim: int = 16, seed: int = 11) -> np.ndarray:
    rng = np.random.default_rng(seed)
    steps = rng.normal(scale=0.05, size=(windows, dim))
    return np.cumsum(steps, axis=0) + rng.normal(size=dim)


def test_identical_sequences_have_zero_cost():
    seq = _random_sequence(40)
    alignment = dtw(seq, seq)
    assert alignment.cost == pytest.approx(0.0, abs=1e-12)
    assert alignment.path_length == 40
    assert alignment.deviation_ratio == 0.0
    assert dtw_distance(seq, seq) == pytest.approx(0.0, abs=1e-12)


def test_repeated_windows_align_at_zero_cost():
    seq = _random_sequence(20)
    stretched = np.repeat(seq, [2 if i % 3 == 0 else 1 for i in range(20)], axis=0)
    alignment = dtw(seq, stretched)
    assert alignment.cost == pytest.approx(0.0, abs=1e-12)
    assert alignment.path_length == stretched.shape[0]
    assert alignment.horizontal_steps == stretched.shape[0] - 20
    assert alignment.vertical_steps == 0


def test_subsequence_finds_trimmed_offset():
    reference = _random_sequence(300)
    clip = reference[100:131]
    alignment = subsequence_dtw(clip, reference)
    assert alignment.start == 100
    assert alignment.end == 130
    assert alignment.span == 31
    assert alignment.normalized_cost == pytest.approx(0.0, abs=1e-12)


def test_anchored_dtw_penalizes_trimmed_clip():
    reference = _random_sequence(300)
    clip = reference[100:131]
    assert dtw(clip, reference).normalized_cost > RULES.trimmed_cost_threshold


def test_match_trimmed_accepts_cut_clip():
    reference = _random_sequence(300)
    alignment = match_trimmed(reference[100:131], reference, RULES)
    assert alignment is not None
    assert alignment.start == 100


def test_match_trimmed_rejects_unrelated_clip():
    reference = _random_sequence(300)
    unrelated = _random_sequence(31, seed=99)
    assert match_trimmed(unrelated, reference, RULES) is None


def test_match_trimmed_requires_shorter_clip():
    reference = _random_sequence(50)
    assert match_trimmed(reference, reference, RULES) is None


def test_pov_matches_slightly_warped_recording():
    first = _smooth_sequence(100)
    keep = [i for i in range(100) if i % 20 != 10]
    noise = np.random.default_rng(3).normal(scale=0.005, size=(len(keep), 16))
    second = first[keep] + noise
    alignment = match_pov(first, second, RULES)
    assert alignment is not None
    assert alignment.normalized_cost < RULES.pov_cost_threshold
    assert alignment.deviation_ratio <= RULES.pov_max_deviation_ratio


def test_pov_rejects_unrelated_recording():
    first = _smooth_sequence(100)
    other = _smooth_sequence(100, seed=42) + 5.0
    assert match_pov(first, other, RULES) is None


def test_pov_rejects_different_durations():
    first = _smooth_sequence(100)
    assert not comparable_duration(100, 70, RULES.pov_duration_tolerance)
    assert match_pov(first, first[:70], RULES) is None


def test_warping_path_for_trimmed_clip():
    reference = _random_sequence(60)
    clip = reference[20:31]
    path = warping_path(clip, reference, subsequence=True)
    assert path[0] == (0, 20)
    assert path[-1] == (10, 30)
    assert path == [(i, 20 + i) for i in range(11)]


def test_warping_path_is_monotone_and_anchored():
    a = _random_sequence(12, seed=1)
    b = _random_sequence(15, seed=2)
    path = warping_path(a, b)
    assert path[0] == (0, 0)
    assert path[-1] == (11, 14)
    for (i0, j0), (i1, j1) in zip(path, path[1:]):
        assert (i1 - i0, j1 - j0) in {(1, 1), (1, 0), (0, 1)}
    assert len(path) == dtw(a, b).path_length


def test_dimension_mismatch_raises():
    with pytest.raises(DimensionMismatchError):
        dtw(np.zeros((3, 4)), np.zeros((3, 5)))
