"""Sphere-fit lookup tables.

Danielsson tables
    ``table_k[R2]`` is the largest squared radius R'2 < R2 (a sum of three
    squares) such that the discretized sphere of squared radius R'2 centred
    at offset ``c_k`` fits inside the discretized sphere of squared radius R2
    centred at the origin, for c_1 = (1,0,0), c_2 = (1,1,0), c_3 = (1,1,1).
    Entries for values that are not sums of three squares hold -1.

Circle-fit table
    ``lookup[r2]`` is the largest squared radius of a discretized disk that
    fits inside the discretized disk of squared radius r2.

Discretized spheres contain the lattice points whose squared
distance from the centre is strictly less than the squared radius.

The Danielsson tables can be cached on disk as flat big-endian int32 files
(``danielsson_table_{1,2,3}.dat``).  The cache is advisory: loading returns
either tables or a ``CacheMiss`` and never raises.
"""

import math
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from thickmap.errors import InvalidArgumentError
from thickmap.parallel import ProgressCounter

INVALID = -1
OFFSETS = ((1, 0, 0), (1, 1, 0), (1, 1, 1))
TABLE_DTYPE = ">i4"
TABLE_FILES = tuple(f"danielsson_table_{k}.dat" for k in (1, 2, 3))
MAX_TABLE_R2 = np.iinfo(np.int32).max - 1


# ---------------------------------------------------------------------------
# Integer square roots
# ---------------------------------------------------------------------------
def largest_int_whose_square_is_less_than(n):
    """Largest integer r with r * r < n (so -1 for n = 0)."""
    if n < 0:
        raise InvalidArgumentError(f"negative argument {n}")
    r = math.isqrt(n)
    if r * r == n:
        r -= 1
    return r


def isqrt_less_table(n_max):
    """Array ``t`` with ``t[n] == largest_int_whose_square_is_less_than(n)``."""
    n = np.arange(n_max + 1, dtype=np.int64)
    r = np.floor(np.sqrt(n.astype(np.float64))).astype(np.int64)
    r[r * r > n] -= 1
    r[(r + 1) * (r + 1) <= n] += 1
    r[r * r == n] -= 1
    return r


# ---------------------------------------------------------------------------
# Danielsson tables
# ---------------------------------------------------------------------------
def sums_of_three_squares(r2_max):
    """Boolean mask ``valid[r2]`` for ``0 <= r2 <= r2_max``."""
    valid = np.zeros(r2_max + 1, dtype=bool)
    r = math.isqrt(r2_max) + 1
    a = np.arange(r, dtype=np.int64) ** 2
    yx = a[:, None] + a[None, :]
    for z2 in a:
        s = yx + z2
        valid[s[s <= r2_max]] = True
    return valid


class _SphereFit:
    """Fit test of offset spheres inside one outer sphere of squared radius R2."""

    def __init__(self, r2, offset, isq):
        self.offset = offset
        self.isq = isq
        size = math.isqrt(r2)
        if size * size != r2:
            size += 1
        size += 1
        coord = np.arange(size, dtype=np.int64)
        outer = r2 - coord[:, None] ** 2 - coord[None, :] ** 2   # [z, y]
        self.rx = np.where(outer >= 0, isq[np.maximum(outer, 0)], -1)
        cx, cy, cz = offset
        self.d2 = (coord[:, None] - cz) ** 2 + (coord[None, :] - cy) ** 2

    def fits(self, inner_r2):
        """True if the sphere of squared radius ``inner_r2`` at the offset fits."""
        t = inner_r2 - self.d2
        inside = t >= 0
        if not inside.any():
            return True
        extent = self.isq[t[inside]] + self.offset[0]
        return not bool((extent > self.rx[inside]).any())


def max_inner_radius(r2, offset, radii, isq):
    """Largest fitting squared radius among ``radii`` below ``r2``.

    ``radii`` is the ascending array of sums of three squares.  The fit
    relation is monotone in the inner radius, so the largest fitting value
    is found by binary search.  Returns 0 if nothing fits.
    """
    count = int(np.searchsorted(radii, r2))
    if count == 0:
        return 0
    fit = _SphereFit(r2, offset, isq)
    lo, hi = 0, count - 1
    if not fit.fits(int(radii[lo])):
        return 0
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if fit.fits(int(radii[mid])):
            lo = mid
        else:
            hi = mid - 1
    return int(radii[lo])


def max_inner_radius_exhaustive(r2, offset, radii, isq):
    """Reference version of ``max_inner_radius`` scanning downwards."""
    count = int(np.searchsorted(radii, r2))
    fit = _SphereFit(r2, offset, isq)
    for k in range(count - 1, -1, -1):
        if fit.fits(int(radii[k])):
            return int(radii[k])
    return 0


@dataclass
class DanielssonTables:
    table1: np.ndarray
    table2: np.ndarray
    table3: np.ndarray

    @property
    def size(self):
        return len(self.table1)

    def covers(self, r2_max):
        return self.size > r2_max

    def as_tuple(self):
        return self.table1, self.table2, self.table3

    def expand(self, r2_max, loop=None):
        """Return tables covering ``0..r2_max``; existing entries are kept."""
        if self.covers(r2_max):
            return self
        return build_tables(r2_max, loop=loop, previous=self)


def build_tables(r2_max, loop=None, previous=None, progress=None):
    """Compute Danielsson tables for all squared radii up to ``r2_max``."""
    r2_max = int(r2_max)
    if r2_max < 0:
        raise InvalidArgumentError(f"negative squared radius {r2_max}")
    if r2_max > MAX_TABLE_R2:
        raise InvalidArgumentError(
            f"squared radius {r2_max} is too large for the sphere-fit tables"
        )

    valid = sums_of_three_squares(r2_max)
    radii = np.flatnonzero(valid)
    isq = isqrt_less_table(r2_max)

    tables = [np.full(r2_max + 1, INVALID, dtype=np.int32) for _ in OFFSETS]
    first = 0
    if previous is not None:
        first = min(previous.size, r2_max + 1)
        for table, old in zip(tables, previous.as_tuple()):
            table[:first] = old[:first]

    todo = [int(r) for r in radii if r >= first]
    counter = ProgressCounter(len(todo), progress)

    def compute(i):
        r2 = todo[i]
        for table, offset in zip(tables, OFFSETS):
            table[r2] = max_inner_radius(r2, offset, radii, isq)
        counter.advance()

    if loop is None:
        for i in range(len(todo)):
            compute(i)
    else:
        loop.for_each(0, len(todo), compute)
    return DanielssonTables(*tables)


# ---------------------------------------------------------------------------
# Disk cache
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class CacheMiss:
    """Why cached tables could not be used."""
    reason: str


def load_tables(directory, r2_max=None):
    """Load cached tables from ``directory``.

    Returns DanielssonTables, or CacheMiss if any file is missing, unreadable,
    inconsistent, or (when ``r2_max`` is given) too short.
    """
    try:
        tables = [np.fromfile(Path(directory) / name, dtype=TABLE_DTYPE).astype(np.int32)
                  for name in TABLE_FILES]
    except (OSError, ValueError) as e:
        return CacheMiss(f"unreadable cache: {e}")
    sizes = {len(t) for t in tables}
    if len(sizes) != 1:
        return CacheMiss("cache files have different lengths")
    result = DanielssonTables(*tables)
    if r2_max is not None and not result.covers(r2_max):
        return CacheMiss(f"cache covers {result.size} values, need {r2_max + 1}")
    return result


def save_tables(tables, directory):
    """Write tables to ``directory``.  Returns False if caching failed."""
    try:
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        for table, name in zip(tables.as_tuple(), TABLE_FILES):
            table.astype(TABLE_DTYPE).tofile(directory / name)
    except OSError:
        return False
    return True


def get_tables(r2_max, cache_dir=None, loop=None, progress=None):
    """Danielsson tables covering ``r2_max``, using the cache when possible."""
    previous = None
    if cache_dir is not None:
        cached = load_tables(cache_dir)
        if not isinstance(cached, CacheMiss):
            if cached.covers(r2_max):
                return cached
            previous = cached

    tables = build_tables(r2_max, loop=loop, previous=previous, progress=progress)
    if cache_dir is not None and not save_tables(tables, cache_dir):
        print(f"WARNING: unable to write the table cache in {cache_dir}")
    return tables


# ---------------------------------------------------------------------------
# Circle fit
# ---------------------------------------------------------------------------
def circle_fits(r1_sq, r2_sq):
    """True if the discretized disk of squared radius r1_sq fits into r2_sq."""
    if r1_sq == r2_sq:
        return True

    r1 = largest_int_whose_square_is_less_than(r1_sq)
    r2 = largest_int_whose_square_is_less_than(r2_sq)
    if r1 > r2:
        return False
    if r1 < r2:
        return True

    # Same extent along x: compare every y-directional column
    for x in range(r1 + 1):
        if (largest_int_whose_square_is_less_than(r1_sq - x * x)
                > largest_int_whose_square_is_less_than(r2_sq - x * x)):
            return False
    return True


class CircleFitTable:
    """Memoised ``circle_fits``: ``fits(a, b) == (a <= lookup[b])``."""

    def __init__(self, max_r2=0):
        self.lookup = []
        self.ensure(max_r2)

    def ensure(self, max_r2):
        for r2 in range(len(self.lookup), max_r2 + 1):
            best = r2
            candidate = r2 + 1
            while circle_fits(candidate, r2):
                best = candidate
                candidate += 1
            self.lookup.append(best)

    def fits(self, r1_sq, r2_sq):
        return r1_sq <= self.lookup[r2_sq]
