"""Dense voxel grids, coordinates and blocks.

Volumes are stored as 3-D numpy arrays in ``(z, y, x)`` order, so the linear
index of voxel ``(x, y, z)`` is ``z * width * height + y * width + x``.
Coordinates and dimensions are plain ``(x, y, z)`` integer tuples.
"""

from dataclasses import dataclass

import numpy as np

from thickmap.errors import InvalidArgumentError


# ---------------------------------------------------------------------------
# Coordinate helpers
# ---------------------------------------------------------------------------
def check_dimensions(dimensions):
    """Validate and normalise an ``(x, y, z)`` size tuple."""
    if len(dimensions) != 3:
        raise InvalidArgumentError("dimensions must contain three integers")
    w, h, d = (int(v) for v in dimensions)
    if w <= 0 or h <= 0 or d <= 0:
        raise InvalidArgumentError(f"dimensions must be positive, got {dimensions}")
    return w, h, d


def index_to_coords(index, dimensions):
    """Convert a linear index to ``(x, y, z)`` coordinates."""
    w, h, _ = dimensions
    z, rem = divmod(index, w * h)
    y, x = divmod(rem, w)
    return x, y, z


def coords_to_index(x, y, z, dimensions):
    """Convert ``(x, y, z)`` coordinates to a linear index."""
    w, h, _ = dimensions
    return (z * h + y) * w + x


def reduced_dimensions(dimensions, dim):
    """Return ``dimensions`` with extent 1 along ``dim``.

    The voxel count of the result is the number of rows along ``dim``.
    """
    reduced = list(dimensions)
    reduced[dim] = 1
    return tuple(reduced)


def dimensionality_of(dimensions):
    """Number of trailing axes that have extent greater than one."""
    w, h, d = dimensions
    if d > 1:
        return 3
    if h > 1:
        return 2
    if w > 1:
        return 1
    return 0


def clamp(value, lower, upper):
    """Clamp each component of ``value`` to ``[lower, upper]``."""
    return tuple(min(max(v, lo), hi) for v, lo, hi in zip(value, lower, upper))


# ---------------------------------------------------------------------------
# VoxelGrid
# ---------------------------------------------------------------------------
class VoxelGrid:
    """A width x height x depth array of scalars.

    ``float32`` grids hold squared distances and radii, ``int64`` grids hold
    packed block-index records.
    """

    __slots__ = ("data",)

    def __init__(self, data):
        if data.ndim != 3:
            raise InvalidArgumentError(f"expected a 3-D array, got shape {data.shape}")
        if 0 in data.shape:
            raise InvalidArgumentError(f"dimensions must be positive, got {data.shape}")
        self.data = data

    @classmethod
    def zeros(cls, dimensions, dtype=np.float32):
        w, h, d = check_dimensions(dimensions)
        return cls(np.zeros((d, h, w), dtype=dtype))

    @classmethod
    def from_array(cls, array, dtype=np.float32):
        """Copy a 1-D, 2-D or 3-D ``(z, y, x)`` array into a new grid."""
        arr = np.array(array, dtype=dtype, copy=True)
        while arr.ndim < 3:
            arr = arr[np.newaxis]
        return cls(np.ascontiguousarray(arr))

    # Shape ---------------------------------------------------------------
    @property
    def width(self):
        return self.data.shape[2]

    @property
    def height(self):
        return self.data.shape[1]

    @property
    def depth(self):
        return self.data.shape[0]

    @property
    def dimensions(self):
        return self.width, self.height, self.depth

    @property
    def dimensionality(self):
        return dimensionality_of(self.dimensions)

    @property
    def voxel_count(self):
        return self.data.size

    # Access --------------------------------------------------------------
    def contains(self, x, y, z):
        return 0 <= x < self.width and 0 <= y < self.height and 0 <= z < self.depth

    def linear_index(self, x, y, z):
        return coords_to_index(x, y, z, self.dimensions)

    def get(self, x, y, z):
        return self.data[z, y, x]

    def set(self, x, y, z, value):
        self.data[z, y, x] = value

    def fill(self, value):
        self.data.fill(value)

    def row(self, dim, start):
        """Writable view of the row along ``dim`` that passes through ``start``."""
        x, y, z = start
        if dim == 0:
            return self.data[z, y, :]
        if dim == 1:
            return self.data[z, :, x]
        if dim == 2:
            return self.data[:, y, x]
        raise InvalidArgumentError(f"unsupported dimension {dim}")

    def copy(self):
        return VoxelGrid(self.data.copy())

    def __repr__(self):
        w, h, d = self.dimensions
        return f"VoxelGrid({w}x{h}x{d}, {self.data.dtype})"


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Block:
    """Axis-aligned sub-volume: ``origin`` and ``size`` are ``(x, y, z)``."""
    origin: tuple
    size: tuple

    @property
    def voxel_count(self):
        w, h, d = self.size
        return w * h * d

    @property
    def end(self):
        return tuple(o + s for o, s in zip(self.origin, self.size))

    def contains(self, x, y, z):
        return all(o <= p < e for p, o, e in zip((x, y, z), self.origin, self.end))

    def clipped(self, dimensions):
        """Restrict the block to an image of the given dimensions."""
        if any(o < 0 or o >= n for o, n in zip(self.origin, dimensions)):
            raise InvalidArgumentError(
                f"block origin {self.origin} outside image {dimensions}"
            )
        size = tuple(min(s, n - o) for o, s, n in zip(self.origin, self.size, dimensions))
        return Block(tuple(self.origin), size)


def iter_blocks(dimensions, block_size):
    """Yield blocks of ``block_size`` covering ``dimensions`` in z, y, x order."""
    w, h, d = dimensions
    bw, bh, bd = block_size
    for bz in range(0, d, bd):
        for by in range(0, h, bh):
            for bx in range(0, w, bw):
                yield Block((bx, by, bz), block_size).clipped(dimensions)
