"""Tests for thickmap/ri_storage.py — packed records and ri block files."""

import numpy as np
import pytest

from thickmap.errors import CapacityExceededError, InvalidArgumentError
from thickmap.grid import Block
from thickmap.mapped_file import raw_filename
from thickmap.ri_storage import (
    MAX_OFFSET, BlockOffset, RiLists, SourcePoint, data_filename, pack_point, pack_points,
    read_ri_block, unpack_point, unpack_points, write_ri_block,
)


# ---------------------------------------------------------------------------
# SourcePoint
# ---------------------------------------------------------------------------
class TestSourcePoint:
    def test_full_range_of_x(self):
        for x in range(-32768, 32768):
            assert SourcePoint.unpack(SourcePoint(x, 7).pack()) == SourcePoint(x, 7)

    def test_full_range_of_y(self):
        for y in range(-32768, 32768):
            assert SourcePoint.unpack(SourcePoint(-3, y).pack()) == SourcePoint(-3, y)

    def test_layout(self):
        assert SourcePoint(1, 2).pack() == 0x00010002
        assert SourcePoint(0, -1).pack() == 0x0000FFFF
        assert SourcePoint(-1, 0).pack() == -65536

    @pytest.mark.parametrize("x,y", [(32768, 0), (0, -32769)])
    def test_out_of_range(self, x, y):
        with pytest.raises(InvalidArgumentError):
            SourcePoint(x, y)


# ---------------------------------------------------------------------------
# BlockOffset
# ---------------------------------------------------------------------------
class TestBlockOffset:
    @pytest.mark.parametrize("block", [0, 1, 255, 32767])
    @pytest.mark.parametrize("offset", [0, 2, 1 << 32, (1 << 47) - 2, 1 << 47, MAX_OFFSET])
    def test_round_trip(self, block, offset):
        word = BlockOffset(block, offset).pack()
        assert -(1 << 63) <= word < (1 << 63)
        assert BlockOffset.unpack(word) == BlockOffset(block, offset)

    def test_layout(self):
        assert BlockOffset(3, 10).pack() == (10 << 16) | 3

    def test_too_many_blocks(self):
        with pytest.raises(CapacityExceededError):
            BlockOffset(32768, 0)

    def test_offset_too_large(self):
        with pytest.raises(CapacityExceededError):
            BlockOffset(0, MAX_OFFSET + 1)


# ---------------------------------------------------------------------------
# Packed words and RiLists
# ---------------------------------------------------------------------------
class TestPackedWords:
    def test_array_packing_matches_source_point(self):
        xs = [0, 1, -1, 32767, -32768, 123]
        ys = [0, -1, 5, -32768, 32767, -77]
        words = pack_points(xs, ys)
        assert words.dtype == np.int32
        assert words.tolist() == [SourcePoint(x, y).pack() for x, y in zip(xs, ys)]
        back_x, back_y = unpack_points(words)
        assert back_x.tolist() == xs
        assert back_y.tolist() == ys

    def test_scalar_helpers(self):
        assert pack_point(-1, 0) == -65536
        assert tuple(unpack_point(SourcePoint(-5, 9).pack())) == (-5, 9)

    def test_array_range_check(self):
        with pytest.raises(InvalidArgumentError):
            pack_points([0, 32768], [0, 0])


class TestRiLists:
    def test_from_lists(self):
        ri = RiLists.from_lists([[(1, 2), (3, 4)], None, [(-5, 6)]])
        assert len(ri) == 3
        assert ri.starts.tolist() == [0, 2, 2, 3]
        assert ri.counts.tolist() == [2, 0, 1]
        assert ri.words.tolist() == [SourcePoint(1, 2).pack(), SourcePoint(3, 4).pack(),
                                     SourcePoint(-5, 6).pack()]
        assert ri.to_lists() == [[(1, 2), (3, 4)], None, [(-5, 6)]]

    def test_equality(self):
        assert RiLists.from_lists([None, [(1, 1)]]) == RiLists.from_lists([None, [(1, 1)]])
        assert RiLists.from_lists([None, [(1, 1)]]) != RiLists.from_lists([[(1, 1)], None])

    def test_coordinates_must_fit_16_bits(self):
        with pytest.raises(InvalidArgumentError):
            RiLists.from_lists([[(40000, 0)]])


# ---------------------------------------------------------------------------
# ri block files
# ---------------------------------------------------------------------------
class TestRiBlocks:
    DIMS = (4, 3, 2)

    def _ri_for(self, block, seed):
        rng = np.random.default_rng(seed)
        ri = []
        for _ in range(block.voxel_count):
            n = int(rng.integers(0, 4))
            ri.append([(int(rng.integers(0, 4)), int(rng.integers(0, 3))) for _ in range(n)] or None)
        return ri

    def test_single_block_round_trip(self, tmp_path):
        prefix = str(tmp_path / "ri_dim0")
        block = Block((0, 0, 0), self.DIMS)
        ri = RiLists.from_lists(self._ri_for(block, 0))
        write_ri_block(ri, prefix, 0, block, self.DIMS)
        assert read_ri_block(prefix, block, self.DIMS) == ri

    def test_record_layout(self, tmp_path):
        prefix = str(tmp_path / "ri_dim0")
        block = Block((0, 0, 0), (2, 1, 1))
        write_ri_block(RiLists.from_lists([[(3, -4)], None]), prefix, 0, block, (2, 1, 1))
        data = np.fromfile(data_filename(prefix, 0), dtype="<i2")
        np.testing.assert_array_equal(data, [1, 3, -4, 0])
        index = np.fromfile(raw_filename(prefix, (2, 1, 1)), dtype="<i8")
        np.testing.assert_array_equal(index, [0, 6 << 16])

    def test_blocks_read_across_files(self, tmp_path):
        prefix = str(tmp_path / "ri_dim1")
        lower = Block((0, 0, 0), (4, 3, 1))
        upper = Block((0, 0, 1), (4, 3, 1))
        ri_lower = self._ri_for(lower, 1)
        ri_upper = self._ri_for(upper, 2)
        write_ri_block(RiLists.from_lists(ri_lower), prefix, 0, lower, self.DIMS)
        write_ri_block(RiLists.from_lists(ri_upper), prefix, 1, upper, self.DIMS)

        whole = Block((0, 0, 0), self.DIMS)
        assert read_ri_block(prefix, whole, self.DIMS).to_lists() == ri_lower + ri_upper

        # A differently shaped block reads from both data files
        column = Block((2, 1, 0), (1, 1, 2))
        assert read_ri_block(prefix, column, self.DIMS).to_lists() == [ri_lower[6], ri_upper[6]]

    def test_empty_lists(self, tmp_path):
        prefix = str(tmp_path / "ri_dim0")
        block = Block((0, 0, 0), (3, 2, 1))
        ri = RiLists.from_lists([None] * 6)
        write_ri_block(ri, prefix, 0, block, (3, 2, 1))
        back = read_ri_block(prefix, block, (3, 2, 1))
        assert back == ri
        assert len(back.words) == 0

    def test_missing_files(self, tmp_path):
        with pytest.raises(OSError):
            read_ri_block(str(tmp_path / "nothing"), Block((0, 0, 0), self.DIMS), self.DIMS)

    def test_record_count_limit(self, tmp_path):
        ri = RiLists.from_lists([[(1, 1)] * 32768])
        with pytest.raises(CapacityExceededError):
            write_ri_block(ri, str(tmp_path / "ri"), 0, Block((0, 0, 0), (1, 1, 1)), (1, 1, 1))

    def test_block_index_limit(self, tmp_path):
        with pytest.raises(CapacityExceededError):
            write_ri_block(RiLists.from_lists([None]), str(tmp_path / "ri"), 32768,
                           Block((0, 0, 0), (1, 1, 1)), (1, 1, 1))
