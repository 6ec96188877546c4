"""Tests for thickmap/radius_map.py — sphere superposition, block layout, multi-block."""

import tracemalloc

import numpy as np
import pytest

from thickmap.danielsson import CircleFitTable, isqrt_less_table
from thickmap.distance_map import squared_distance_map
from thickmap.errors import CapacityExceededError, InvalidArgumentError
from thickmap.grid import Block, VoxelGrid
from thickmap.radius_map import (
    KEEP_WIDER_DISK, KEEP_WIDER_SPAN, calculate_block_size, count_blocks, distribution_axis,
    initial_ri, memory_requirement, nonzero_mean_radius, paint_row, parse_memory,
    prepare_tables, prune_mode, squared_radius_map, squared_radius_map_multi_block,
    squared_radius_map_single_block, sweep_row,
)
from thickmap.ridge import squared_distance_ridge


def _ridge_of(mask, loop):
    dmap2 = squared_distance_map(VoxelGrid.from_array(mask), loop=loop)
    return squared_distance_ridge(dmap2, loop=loop)


# ---------------------------------------------------------------------------
# Memory model and block layout
# ---------------------------------------------------------------------------
class TestBlockLayout:
    def test_memory_requirement(self):
        assert memory_requirement((10, 10, 10), 5.0) == pytest.approx(9 * 1000 * 4)

    def test_distribution_axis(self):
        assert [distribution_axis(d) for d in range(3)] == [2, 2, 1]
        with pytest.raises(InvalidArgumentError):
            distribution_axis(3)

    def test_fits_budget(self):
        assert calculate_block_size((10, 20, 30), 0, 2.0, 1 << 30) == (10, 20, 30)

    def test_split_along_distribution_axis(self):
        dims = (10, 20, 30)
        budget = memory_requirement(dims, 2.0) / 3
        size = calculate_block_size(dims, 0, 2.0, budget)
        assert size[:2] == (10, 20)
        assert size[2] < 30
        assert memory_requirement(size, 2.0) < budget

        size = calculate_block_size(dims, 2, 2.0, budget)
        assert size[0] == 10 and size[2] == 30
        assert size[1] < 20

    def test_cannot_split(self):
        with pytest.raises(CapacityExceededError):
            calculate_block_size((50, 40, 1), 0, 1.0, 1000)

    def test_count_blocks(self):
        assert count_blocks((10, 20, 30), (10, 20, 7)) == 5

    def test_mean_radius(self, loop):
        ridge = VoxelGrid.from_array(np.array([[0, 4, 9], [0, 0, 16]], dtype=np.float32))
        assert nonzero_mean_radius(ridge, loop) == pytest.approx(3.0)

    def test_mean_radius_empty(self, loop):
        assert nonzero_mean_radius(VoxelGrid.zeros((3, 3, 3)), loop) == 0.0

    def test_parse_memory(self):
        assert parse_memory("512M") == 512 << 20
        assert parse_memory("2g") == 2 << 30
        assert parse_memory("1.5K") == 1536
        assert parse_memory("1000") == 1000


# ---------------------------------------------------------------------------
# Row kernels
# ---------------------------------------------------------------------------
def _row(entries_by_position):
    """(centers, c_start) arrays from per-position lists of entries."""
    c_start = np.zeros(len(entries_by_position) + 1, dtype=np.int64)
    np.cumsum([len(e) for e in entries_by_position], out=c_start[1:])
    rows = [entry for entries in entries_by_position for entry in entries]
    return np.array(rows, dtype=np.int64).reshape(-1, 4), c_start


class TestRowKernels:
    ISQRT = isqrt_less_table(40)
    DISKS = np.asarray(CircleFitTable(40).lookup, dtype=np.int64)

    def test_paint_single_sphere(self):
        centers, c_start = _row([[], [], [(9, 9, 0, 0)], [], [], [], []])
        maxima = np.zeros(7, dtype=np.int64)
        paint_row(centers, c_start, self.ISQRT, maxima)
        # |dx|^2 < 9 around position 2
        assert maxima.tolist() == [9, 9, 9, 9, 9, 0, 0]

    def test_paint_keeps_larger(self):
        centers, c_start = _row([[(4, 4, 0, 0)], [], [], [(1, 1, 0, 0)]])
        maxima = np.full(4, 7, dtype=np.int64)
        paint_row(centers, c_start, self.ISQRT, maxima)
        assert maxima.tolist() == [4, 4, 0, 1]

    def test_paint_skips_exhausted_entries(self):
        centers, c_start = _row([[(9, 0, 0, 0)], [(4, -3, 0, 0)]])
        maxima = np.zeros(2, dtype=np.int64)
        paint_row(centers, c_start, self.ISQRT, maxima)
        assert maxima.tolist() == [0, 0]

    def test_sweep_collapses_equal_r2(self):
        # Two spheres of equal R2: each position keeps the wider extent
        centers, c_start = _row([[(5, 5, 0, 0)], [(5, 5, 1, 0)], []])
        kept, k_start = sweep_row(centers, c_start, KEEP_WIDER_SPAN, self.ISQRT, self.DISKS)
        assert k_start.tolist() == [0, 1, 2, 3]
        assert kept.tolist() == [[5, 5, 0, 0], [5, 5, 1, 0], [5, 4, 1, 0]]

    @pytest.mark.parametrize("second,expected", [
        ((5, 3, 1, 1), [[9, 2, 0, 0]]),
        ((5, 5, 1, 1), [[9, 2, 0, 0], [5, 5, 1, 1]]),
    ])
    def test_sweep_drops_narrower_spans(self, second, expected):
        # isqrt(3) == isqrt(2) == 1, isqrt(5) == 2
        centers, c_start = _row([[(9, 2, 0, 0), second]])
        kept, _ = sweep_row(centers, c_start, KEEP_WIDER_SPAN, self.ISQRT, self.DISKS)
        assert kept.tolist() == expected

    @pytest.mark.parametrize("second,expected", [
        ((5, 4, 1, 1), [[9, 3, 0, 0]]),
        ((5, 5, 1, 1), [[9, 3, 0, 0], [5, 5, 1, 1]]),
    ])
    def test_sweep_drops_smaller_disks(self, second, expected):
        # The disks of squared radius 3 and 4 hold the same lattice points
        centers, c_start = _row([[(9, 3, 0, 0), second]])
        kept, _ = sweep_row(centers, c_start, KEEP_WIDER_DISK, self.ISQRT, self.DISKS)
        assert kept.tolist() == expected

    def test_sweep_empty_row(self):
        centers, c_start = _row([[], [], []])
        kept, k_start = sweep_row(centers, c_start, KEEP_WIDER_SPAN, self.ISQRT, self.DISKS)
        assert kept.shape == (0, 4)
        assert k_start.tolist() == [0, 0, 0, 0]

    def test_prune_modes(self):
        assert prune_mode(0, 3) == KEEP_WIDER_DISK
        assert prune_mode(1, 3) == KEEP_WIDER_SPAN
        assert prune_mode(0, 2) == KEEP_WIDER_SPAN


class TestPreparation:
    def test_initial_lists_hold_ridge_voxels(self):
        data = np.zeros((2, 3, 4), dtype=np.float32)
        data[0, 1, 2] = 4
        data[1, 2, 3] = 0.5
        data[1, 0, 0] = 0.4
        ridge = VoxelGrid(data)
        ri = initial_ri(ridge, Block((0, 0, 0), (4, 3, 2)))
        lists = ri.to_lists()
        assert lists[(0 * 3 + 1) * 4 + 2] == [(2, 1)]
        assert lists[(1 * 3 + 2) * 4 + 3] == [(3, 2)]
        assert sum(1 for items in lists if items) == 2

        # Block-local index, image coordinates
        upper = initial_ri(ridge, Block((2, 1, 1), (2, 2, 1)))
        assert upper.to_lists() == [None, None, None, [(3, 2)]]

    def test_tables_cover_rounded_maximum(self, loop):
        data = np.zeros((2, 2, 2), dtype=np.float32)
        data[1, 1, 1] = 12.5
        tables = prepare_tables(VoxelGrid(data), loop)
        assert tables.r2_max == 13
        assert len(tables.isqrt) == 14
        assert len(tables.disks) == 14

    def test_no_integer_copy_of_the_ridge(self, loop):
        data = np.zeros((64, 128, 128), dtype=np.float32)
        data[10, 20, 30] = 25
        data[40, 90, 70] = 16
        ridge = VoxelGrid(data)
        tracemalloc.start()
        try:
            prepare_tables(ridge, loop)
            _, peak = tracemalloc.get_traced_memory()
        finally:
            tracemalloc.stop()
        assert peak < data.nbytes // 8


# ---------------------------------------------------------------------------
# Radius maps
# ---------------------------------------------------------------------------
class TestSquaredRadiusMap:
    def test_isolated_voxel(self, loop):
        mask = np.zeros((3, 3, 3), dtype=np.float32)
        mask[1, 1, 1] = 1
        rmap2 = squared_radius_map_single_block(_ridge_of(mask, loop), loop=loop)
        expected = np.zeros((3, 3, 3), dtype=np.float32)
        expected[1, 1, 1] = 1
        np.testing.assert_array_equal(rmap2.data, expected)

    def test_ball(self, loop, ball_mask):
        mask, _ = ball_mask(5)
        rmap2 = squared_radius_map_single_block(_ridge_of(mask, loop), loop=loop)
        np.testing.assert_array_equal(rmap2.data, np.where(mask > 0, 25, 0))

    @pytest.mark.parametrize("shape,seed", [((7, 9, 11), 0), ((1, 15, 17), 1), ((1, 1, 30), 2)])
    def test_matches_brute_force(self, loop, random_mask, brute_force_radius_map, shape, seed):
        ridge = _ridge_of(random_mask(shape, fill=0.75, seed=seed), loop)
        rmap2 = squared_radius_map_single_block(ridge, loop=loop)
        np.testing.assert_array_equal(rmap2.data, brute_force_radius_map(ridge.data))

    def test_brute_force_on_overlapping_spheres(self, loop, brute_force_radius_map):
        ridge = np.zeros((9, 10, 11), dtype=np.float32)
        ridge[4, 4, 4] = 9
        ridge[4, 5, 7] = 8
        ridge[5, 6, 5] = 6
        ridge[2, 2, 8] = 3
        ridge[6, 4, 2] = 5
        rmap2 = squared_radius_map_single_block(VoxelGrid(ridge.copy()), loop=loop)
        np.testing.assert_array_equal(rmap2.data, brute_force_radius_map(ridge))

    def test_ridge_and_distance_map_agree(self, loop, random_mask):
        mask = random_mask((6, 8, 9), fill=0.8, seed=3)
        dmap2 = squared_distance_map(VoxelGrid.from_array(mask), loop=loop)
        ridge = squared_distance_ridge(dmap2, loop=loop)
        from_ridge = squared_radius_map_single_block(ridge, loop=loop)
        from_dmap = squared_radius_map_single_block(dmap2, loop=loop)
        np.testing.assert_array_equal(from_ridge.data, from_dmap.data)

    def test_output_grid_reused(self, loop, ball_mask):
        mask, _ = ball_mask(2)
        out = VoxelGrid.from_array(np.full(mask.shape, 99, dtype=np.float32))
        result = squared_radius_map_single_block(_ridge_of(mask, loop), out, loop=loop)
        assert result is out
        assert out.data.max() == 4

    def test_extent_limit(self, loop):
        ridge = VoxelGrid.zeros((32767, 1, 1))
        with pytest.raises(CapacityExceededError):
            squared_radius_map_single_block(ridge, loop=loop)


# ---------------------------------------------------------------------------
# Multi-block
# ---------------------------------------------------------------------------
class TestMultiBlock:
    def _budget(self, ridge, loop, fraction=0.3):
        mean_r = nonzero_mean_radius(ridge, loop)
        return memory_requirement(ridge.dimensions, mean_r) * fraction

    @pytest.mark.parametrize("shape,seed", [((9, 10, 12), 0), ((12, 7, 6), 1)])
    def test_identical_to_single_block(self, loop, random_mask, tmp_path, shape, seed):
        ridge = _ridge_of(random_mask(shape, fill=0.75, seed=seed), loop)
        single = squared_radius_map_single_block(ridge, loop=loop)

        budget = self._budget(ridge, loop)
        assert calculate_block_size(ridge.dimensions, 0, nonzero_mean_radius(ridge, loop),
                                    budget) != ridge.dimensions
        multi = squared_radius_map(ridge, temp_dir=tmp_path, max_memory=budget, loop=loop)

        assert multi.data.tobytes() == single.data.tobytes()

    def test_ball_in_blocks(self, loop, ball_mask, tmp_path):
        mask, _ = ball_mask(4)
        ridge = _ridge_of(mask, loop)
        rmap2 = squared_radius_map_multi_block(
            ridge, temp_dir=tmp_path, max_memory=self._budget(ridge, loop, 0.2), loop=loop,
        )
        np.testing.assert_array_equal(rmap2.data, np.where(mask > 0, 16, 0))

    def test_temporary_files_removed(self, loop, random_mask, tmp_path):
        ridge = _ridge_of(random_mask((8, 6, 7), seed=6), loop)
        squared_radius_map(ridge, temp_dir=tmp_path, max_memory=self._budget(ridge, loop),
                           loop=loop)
        assert list(tmp_path.iterdir()) == []

    def test_single_block_needs_no_temp_dir(self, loop, random_mask, tmp_path):
        ridge = _ridge_of(random_mask((5, 6, 7), seed=7), loop)
        squared_radius_map(ridge, temp_dir=tmp_path, max_memory=1 << 40, loop=loop)
        assert list(tmp_path.iterdir()) == []

    def test_verbose_reports_blocks(self, loop, random_mask, tmp_path, capsys):
        ridge = _ridge_of(random_mask((8, 6, 7), seed=8), loop)
        squared_radius_map(ridge, temp_dir=tmp_path, max_memory=self._budget(ridge, loop),
                           loop=loop, verbose=True)
        out = capsys.readouterr().out
        assert "Processing the image in blocks" in out
        assert "dimension 2: block 1 /" in out

    def test_budget_too_small(self, loop, random_mask, tmp_path):
        ridge = _ridge_of(random_mask((1, 6, 7), seed=9), loop)
        with pytest.raises(CapacityExceededError):
            squared_radius_map(ridge, temp_dir=tmp_path, max_memory=10, loop=loop)
        assert list(tmp_path.iterdir()) == []

    def test_default_loop(self, ball_mask, tmp_path):
        mask, _ = ball_mask(2)
        with_loop = VoxelGrid.from_array(mask)
        squared_distance_map(with_loop)
        ridge = squared_distance_ridge(with_loop)
        rmap2 = squared_radius_map(ridge, temp_dir=tmp_path)
        np.testing.assert_array_equal(rmap2.data, np.where(mask > 0, 4, 0))
