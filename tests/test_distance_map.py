"""Tests for thickmap/distance_map.py — separable squared Euclidean distance map."""

import numpy as np
import pytest
from scipy import ndimage

from thickmap.distance_map import (
    SENTINEL, lower_envelope, prepare, squared_distance_map, voronoi_row,
)
from thickmap.grid import VoxelGrid


def _reference(mask):
    """Squared EDT from scipy, rounded back to exact integers."""
    return np.rint(ndimage.distance_transform_edt(mask != 0) ** 2)


# ---------------------------------------------------------------------------
# prepare / voronoi_row
# ---------------------------------------------------------------------------
class TestRow:
    def test_prepare(self):
        grid = VoxelGrid.from_array(np.array([0, 3, 0, 5], dtype=np.float32))
        prepare(grid, background=0)
        np.testing.assert_array_equal(grid.data.reshape(-1), [0, SENTINEL, 0, SENTINEL])

    def test_prepare_custom_background(self):
        grid = VoxelGrid.from_array(np.array([2, 0, 2], dtype=np.float32))
        prepare(grid, background=2)
        np.testing.assert_array_equal(grid.data.reshape(-1), [0, SENTINEL, 0])

    def test_single_background(self):
        row = [SENTINEL, SENTINEL, 0.0, SENTINEL]
        assert voronoi_row(row) == [4, 1, 0, 1]

    def test_two_backgrounds(self):
        row = [0.0] + [SENTINEL] * 5 + [0.0]
        assert voronoi_row(row) == [0, 1, 4, 9, 4, 1, 0]

    def test_uses_previous_values(self):
        # Values of a previous pass act as parabola heights
        assert voronoi_row([5.0, SENTINEL, 1.0]) == [5, 2, 1]

    def test_no_finite_value(self):
        assert voronoi_row([SENTINEL] * 3) is None

    def test_lower_envelope_in_place_on_strided_view(self):
        data = np.full((3, 4), SENTINEL, dtype=np.float32)
        data[1, 2] = 0
        assert lower_envelope(data[:, 2], np.empty(3), np.empty(3, dtype=np.int64))
        np.testing.assert_array_equal(data[:, 2], [1, 0, 1])
        # Other columns hold no finite value and stay untouched
        assert not lower_envelope(data[:, 0], np.empty(3), np.empty(3, dtype=np.int64))
        assert np.all(data[:, 0] == np.float32(SENTINEL))


# ---------------------------------------------------------------------------
# squared_distance_map
# ---------------------------------------------------------------------------
class TestSquaredDistanceMap:
    def test_corner_background(self, loop):
        data = np.ones((5, 5, 5), dtype=np.float32)
        data[0, 0, 0] = 0
        grid = squared_distance_map(VoxelGrid.from_array(data), loop=loop)
        assert grid.get(4, 4, 4) == 48
        assert grid.get(0, 0, 0) == 0
        assert grid.get(1, 0, 0) == 1

    def test_all_background(self, loop):
        grid = squared_distance_map(VoxelGrid.zeros((4, 3, 2)), loop=loop)
        assert np.all(grid.data == 0)

    def test_all_foreground_stays_sentinel(self, loop):
        grid = VoxelGrid.from_array(np.ones((3, 4, 5), dtype=np.float32))
        squared_distance_map(grid, loop=loop)
        assert np.all(grid.data == np.float32(SENTINEL))

    @pytest.mark.parametrize("shape,seed", [
        ((9, 11, 13), 0), ((6, 17, 5), 1), ((1, 20, 23), 2), ((1, 1, 40), 3),
    ])
    def test_matches_scipy(self, loop, random_mask, shape, seed):
        mask = random_mask(shape, fill=0.8, seed=seed)
        grid = squared_distance_map(VoxelGrid.from_array(mask), loop=loop)
        np.testing.assert_array_equal(grid.data.reshape(shape), _reference(mask))

    def test_ball(self, loop, ball_mask):
        mask, (cx, cy, cz) = ball_mask(4)
        grid = squared_distance_map(VoxelGrid.from_array(mask), loop=loop)
        assert grid.get(cx, cy, cz) == 16
        np.testing.assert_array_equal(grid.data, _reference(mask))

    def test_default_loop(self):
        data = np.array([[1, 1, 0, 1]], dtype=np.float32)
        grid = squared_distance_map(VoxelGrid.from_array(data))
        np.testing.assert_array_equal(grid.data.reshape(-1), [4, 1, 0, 1])

    def test_progress(self, loop):
        calls = []
        grid = VoxelGrid.from_array(np.ones((2, 3, 4), dtype=np.float32))
        grid.set(0, 0, 0, 0)
        squared_distance_map(grid, loop=loop, progress=lambda d, t: calls.append((d, t)))
        # Rows along x, then y, then z, each pass counted up to its row count
        assert [d for d, t in calls if d == t] == [2 * 3, 2 * 4, 3 * 4]
        assert all(d <= t for d, t in calls)
