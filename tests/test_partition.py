import numpy as np
import pytest

from glitch import (
    CONTRAST,
    SIZE_EPSILON,
    Partition,
    PerlinNoise,
    compute_sizes,
    sizes_from_samples,
)


@pytest.mark.parametrize("strength", [0.0, 0.01, 0.5, 1.0, 3.0])
def test_sizes_sum_to_extent_and_stay_positive(strength):
    rng = np.random.default_rng(42)
    for _ in range(20):
        samples = rng.random(15)
        sizes = sizes_from_samples(samples, CONTRAST, strength, 1200.0)
        assert sizes.shape == (15,)
        assert sizes.sum() == pytest.approx(1200.0), "sizes must fill the canvas"
        assert (sizes > 0).all(), "every cell must keep a positive size"


def test_zero_strength_with_constant_noise_is_uniform():
    sizes = compute_sizes(10, lambda k: 0.0, CONTRAST, 0.0, 800.0)
    assert np.allclose(sizes, 80.0)


def test_zero_strength_ignores_noise_entirely():
    sizes = compute_sizes(4, lambda k: [0.9, 0.1, 0.5, 0.0][k], CONTRAST, 0.0, 100.0)
    assert np.allclose(sizes, 25.0)


def test_all_zero_noise_does_not_divide_by_zero():
    sizes = compute_sizes(5, lambda k: 0.0, CONTRAST, 0.7, 50.0)
    assert np.isfinite(sizes).all()
    assert np.allclose(sizes, 10.0)


def test_contrast_exaggerates_differences():
    samples = [0.2, 0.8]
    flat = sizes_from_samples(samples, 1.0, 1.0, 100.0)
    sharp = sizes_from_samples(samples, 3.0, 1.0, 100.0)
    assert sharp[1] / sharp[0] > flat[1] / flat[0]


def test_epsilon_floor_on_zero_sample():
    sizes = sizes_from_samples([0.0, 1.0], CONTRAST, 1.0, 1.0)
    expected_small = SIZE_EPSILON / (1.0 + 2 * SIZE_EPSILON)
    assert sizes[0] == pytest.approx(expected_small)


def test_recompute_keeps_invariants_and_decorrelates_rows():
    part = Partition(15, 10, 1200, 800)
    noise = PerlinNoise(seed=5)
    for t in (0.0, 0.37, 12.5):
        part.recompute(noise, t, 0.5)
        assert part.col_widths.sum() == pytest.approx(1200.0)
        assert part.row_heights.sum() == pytest.approx(800.0)
        assert (part.col_widths > 0).all() and (part.row_heights > 0).all()
    # Rows sample a different stretch of noise than columns
    assert not np.allclose(part.col_widths[:10] / 1200.0, part.row_heights / 800.0)


def test_recompute_changes_with_time():
    part = Partition(8, 8, 400, 400)
    noise = PerlinNoise(seed=9)
    part.recompute(noise, 0.0, 1.0)
    first = part.col_widths.copy()
    part.recompute(noise, 5.0, 1.0)
    assert not np.allclose(first, part.col_widths)


def test_locate_maps_points_by_accumulated_sizes():
    part = Partition(3, 2, 300, 200)
    part.col_widths = np.array([50.0, 150.0, 100.0])
    part.row_heights = np.array([120.0, 80.0])
    assert part.locate(0, 0) == (0, 0)
    assert part.locate(49.9, 119.9) == (0, 0)
    assert part.locate(50.0, 120.0) == (1, 1)
    assert part.locate(299.0, 10.0) == (2, 0)


def test_locate_outside_grid_is_none():
    part = Partition(3, 3, 300, 300)
    assert part.locate(300.0, 10.0) is None
    assert part.locate(10.0, 300.5) is None
    assert part.locate(-1.0, 10.0) is None


def test_offsets_and_cell_rect():
    part = Partition(4, 2, 400, 100)
    assert part.col_offsets().tolist() == [0.0, 100.0, 200.0, 300.0]
    assert part.row_offsets().tolist() == [0.0, 50.0]
    assert part.cell_rect(2, 1) == (200.0, 50.0, 100.0, 50.0)
