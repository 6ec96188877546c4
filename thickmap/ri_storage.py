"""Packed ridge-info records and their on-disk block files.

The ridge-info (ri) lists of a block are kept in compressed row form
(``RiLists``): voxel ``i`` of the block owns the packed ``SourcePoint``
words ``words[starts[i]:starts[i + 1]]``, each naming the centre of a ridge
sphere that is still relevant at that voxel.

On disk one dimension pass produces

``{prefix}_block{i}.dat``
    per voxel of block ``i`` in block-local scan order: int16 count ``n``
    followed by ``n`` pairs of int16 (source_x, source_y), little-endian.
``{prefix}_{w}x{h}x{d}.raw``
    one int64 per voxel of the whole image packing the block id and the
    byte offset of the voxel's record (see ``BlockOffset``).
"""

from contextlib import ExitStack
from dataclasses import dataclass

import numba as nb
import numpy as np

from thickmap.errors import CapacityExceededError, InvalidArgumentError
from thickmap.grid import VoxelGrid
from thickmap.mapped_file import MappedFile, raw_filename, read_raw_block, write_raw_block

SHORT_MIN = -(1 << 15)
SHORT_MAX = (1 << 15) - 1
MAX_BLOCK_ID = SHORT_MAX
MAX_OFFSET = (1 << 48) - 1
SHORT_SIZE = 2
RECORD_DTYPE = "<i2"


def _to_signed(value, bits):
    value &= (1 << bits) - 1
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


# ---------------------------------------------------------------------------
# SourcePoint words
# ---------------------------------------------------------------------------
@nb.njit(cache=True, nogil=True)
def pack_point(x, y):
    """32-bit word with ``x`` in the high and ``y`` in the low 16 bits."""
    word = ((np.int64(x) & 0xFFFF) << 16) | (np.int64(y) & 0xFFFF)
    if word >= 0x80000000:
        word -= 0x100000000
    return word


@nb.njit(cache=True, nogil=True)
def unpack_point(word):
    word = np.int64(word)
    return word >> 16, ((word & 0xFFFF) ^ 0x8000) - 0x8000


def pack_points(xs, ys):
    """int32 words of the points ``(xs[i], ys[i])``."""
    xs = np.asarray(xs, dtype=np.int64)
    ys = np.asarray(ys, dtype=np.int64)
    for values in (xs, ys):
        if values.size and (values.min() < SHORT_MIN or values.max() > SHORT_MAX):
            raise InvalidArgumentError("coordinates do not fit in 16 bits")
    words = ((xs & 0xFFFF) << 16) | (ys & 0xFFFF)
    return words.astype(np.uint32).view(np.int32)


def unpack_points(words):
    """``(xs, ys)`` int64 arrays of packed words."""
    words = np.asarray(words, dtype=np.int32).astype(np.int64)
    return words >> 16, ((words & 0xFFFF) ^ 0x8000) - 0x8000


@dataclass(frozen=True)
class SourcePoint:
    """x, y coordinate of a ridge sphere centre as two signed 16-bit values.

    Packed into a 32-bit word with ``x`` in the high and ``y`` in the low
    half; the sweeps of ``thickmap.radius_map`` work on these words.
    """
    x: int
    y: int

    def __post_init__(self):
        for value in (self.x, self.y):
            if not SHORT_MIN <= value <= SHORT_MAX:
                raise InvalidArgumentError(f"coordinate {value} does not fit in 16 bits")

    def pack(self):
        return int(pack_point(self.x, self.y))

    @classmethod
    def unpack(cls, word):
        x, y = unpack_point(word)
        return cls(int(x), int(y))


class RiLists:
    """ri lists of one block in compressed row form.

    ``starts`` holds ``voxel_count + 1`` int64 positions into ``words``,
    the int32 ``SourcePoint`` words of all lists in block scan order.
    """

    def __init__(self, starts, words):
        self.starts = np.asarray(starts, dtype=np.int64)
        self.words = np.asarray(words, dtype=np.int32)

    @classmethod
    def from_lists(cls, lists):
        """Build from per-voxel ``[(x, y), ...]`` lists (None for empty)."""
        counts = [len(items) if items else 0 for items in lists]
        starts = np.zeros(len(lists) + 1, dtype=np.int64)
        np.cumsum(counts, out=starts[1:])
        points = [p for items in lists if items for p in items]
        return cls(starts, pack_points([p[0] for p in points], [p[1] for p in points]))

    def to_lists(self):
        xs, ys = unpack_points(self.words)
        lists = []
        for lo, hi in zip(self.starts[:-1].tolist(), self.starts[1:].tolist()):
            lists.append(list(zip(xs[lo:hi].tolist(), ys[lo:hi].tolist())) or None)
        return lists

    @property
    def counts(self):
        return np.diff(self.starts)

    def __len__(self):
        return len(self.starts) - 1

    def __eq__(self, other):
        if not isinstance(other, RiLists):
            return NotImplemented
        return (np.array_equal(self.starts, other.starts)
                and np.array_equal(self.words, other.words))

    def __repr__(self):
        return f"RiLists({len(self)} voxels, {len(self.words)} entries)"


# ---------------------------------------------------------------------------
# Block offsets
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class BlockOffset:
    """Location of one voxel's record: block id and byte offset in its data file.

    Packed into a signed 64-bit word with the block id in the low 16 bits and
    the offset in the high 48 bits.
    """
    block: int
    offset: int

    def __post_init__(self):
        if not 0 <= self.block <= MAX_BLOCK_ID:
            raise CapacityExceededError(
                f"block id {self.block} exceeds the maximum of {MAX_BLOCK_ID} blocks"
            )
        if not 0 <= self.offset <= MAX_OFFSET:
            raise CapacityExceededError(f"offset {self.offset} does not fit in 48 bits")

    def pack(self):
        return _to_signed(self.block | (self.offset << 16), 64)

    @classmethod
    def unpack(cls, word):
        return cls(word & 0xFFFF, (word >> 16) & MAX_OFFSET)


# ---------------------------------------------------------------------------
# Block files
# ---------------------------------------------------------------------------
def data_filename(prefix, block_index):
    return f"{prefix}_block{block_index}.dat"


def write_ri_block(ri, prefix, block_index, block, file_dimensions):
    """Write the ``RiLists`` of ``block`` and update the image-wide index file."""
    if block_index > MAX_BLOCK_ID:
        raise CapacityExceededError(f"too many blocks ({block_index + 1})")
    counts = ri.counts
    if counts.size and counts.max() > SHORT_MAX:
        raise CapacityExceededError(
            f"{counts.max()} ri entries at one voxel exceed the record limit of {SHORT_MAX}"
        )

    voxels = len(ri)
    entries = len(ri.words)
    # Record of voxel i starts at short i + 2 * starts[i]
    record_start = np.arange(voxels, dtype=np.int64) + 2 * ri.starts[:-1]
    values = np.empty(voxels + 2 * entries, dtype=RECORD_DTYPE)
    values[record_start] = counts
    owner = np.repeat(np.arange(voxels, dtype=np.int64), counts)
    position = owner + 1 + 2 * np.arange(entries, dtype=np.int64)
    xs, ys = unpack_points(ri.words)
    values[position] = xs
    values[position + 1] = ys

    offsets = record_start * SHORT_SIZE
    if voxels:
        BlockOffset(block_index, int(offsets[-1]))
    bw, bh, bd = block.size
    index = VoxelGrid(((offsets << 16) | block_index).reshape(bd, bh, bw))

    values.tofile(data_filename(prefix, block_index))
    write_raw_block(index, raw_filename(prefix, file_dimensions), block.origin, file_dimensions)


def read_ri_block(prefix, block, file_dimensions):
    """Read the ``RiLists`` of ``block`` written by one or more ``write_ri_block`` calls."""
    index = VoxelGrid.zeros(block.size, dtype=np.int64)
    read_raw_block(index, raw_filename(prefix, file_dimensions), block.origin, file_dimensions)
    words = index.data.reshape(-1)
    block_ids = words & 0xFFFF
    record_start = ((words >> 16) & MAX_OFFSET) // SHORT_SIZE

    counts = np.zeros(len(words), dtype=np.int64)
    with ExitStack() as stack:
        groups = {}
        for block_id in np.unique(block_ids).tolist():
            data = stack.enter_context(MappedFile(data_filename(prefix, block_id)))
            voxels = np.flatnonzero(block_ids == block_id)
            counts[voxels] = data.gather(record_start[voxels], RECORD_DTYPE)
            groups[block_id] = (data, voxels)

        starts = np.zeros(len(words) + 1, dtype=np.int64)
        np.cumsum(counts, out=starts[1:])
        points = np.empty(int(starts[-1]), dtype=np.int32)
        for data, voxels in groups.values():
            n = counts[voxels]
            total = int(n.sum())
            if total == 0:
                continue
            within = np.arange(total, dtype=np.int64) - np.repeat(np.cumsum(n) - n, n)
            position = np.repeat(record_start[voxels] + 1, n) + 2 * within
            xs = data.gather(position, RECORD_DTYPE)
            ys = data.gather(position + 1, RECORD_DTYPE)
            points[np.repeat(starts[voxels], n) + within] = pack_points(xs, ys)
    return RiLists(starts, points)
