"""Squared distance ridge.

A foreground voxel with rounded squared distance ``c`` is a ridge point
(centre of a locally maximal inscribed sphere) unless one of its 26
neighbours has ``table_k[round(neighbour)] >= c``, where ``k`` is 1 for the
6 face neighbours, 2 for the 12 edge neighbours and 3 for the 8 corner
neighbours.  Neighbours outside the volume count as 0 and never dominate.

Usage:
    python -m thickmap.ridge dmap2.nii.gz ridge.nii.gz [--round]
"""

import argparse
import itertools

import numpy as np

from thickmap.danielsson import MAX_TABLE_R2, get_tables
from thickmap.errors import InvalidArgumentError
from thickmap.grid import VoxelGrid
from thickmap.parallel import ParallelLoop, ProgressCounter, parallel_max
from thickmap.profiling import stage
from thickmap.volume_io import load_volume, save_volume

# (dx, dy, dz) offsets of the 26-neighbourhood
NEIGHBOUR_OFFSETS = tuple(
    offset for offset in itertools.product((-1, 0, 1), repeat=3) if any(offset)
)


def round_half_up(values):
    """Round to the nearest integer, halves upwards (``floor(v + 0.5)``)."""
    return np.floor(np.asarray(values, dtype=np.float64) + 0.5)


def grid_max(grid, loop):
    """Maximum value of ``grid``, reduced over z-slices in parallel."""
    return float(parallel_max(loop, 0, grid.depth, lambda z: float(grid.data[z].max())))


def squared_distance_ridge(dmap2, loop=None, cache_dir=None, progress=None):
    """Extract the distance ridge of a squared distance map.

    Parameters
    ----------
    dmap2 : VoxelGrid
        Squared Euclidean distance map.
    loop : ParallelLoop or None
        Worker pool; a default pool is created when omitted.
    cache_dir : str, Path or None
        Directory of the sphere-fit table cache.
    progress : callable or None
        ``progress(done, total)`` called once per processed z-slice.

    Returns
    -------
    VoxelGrid
        New float32 grid holding the rounded squared distance at ridge
        points and 0 everywhere else.
    """
    own_loop = loop is None
    if own_loop:
        loop = ParallelLoop()
    try:
        r2_max = int(round_half_up(grid_max(dmap2, loop)))
        if r2_max > MAX_TABLE_R2:
            raise InvalidArgumentError(
                "the squared distance map contains too large values "
                f"({r2_max}); does the volume contain any background voxels?"
            )
        tables = get_tables(max(r2_max, 0), cache_dir=cache_dir, loop=loop)

        w, h, d = dmap2.dimensions
        by_class = {1: tables.table1, 2: tables.table2, 3: tables.table3}
        ridge = VoxelGrid.zeros(dmap2.dimensions)
        counter = ProgressCounter(d, progress)

        def run_slice(z):
            # Slices z - 1, z, z + 1, rounded and zero-padded
            window = np.zeros((3, h + 2, w + 2), dtype=np.int64)
            for k in range(3):
                if 0 <= z - 1 + k < d:
                    window[k, 1:-1, 1:-1] = round_half_up(dmap2.data[z - 1 + k])
            c = window[1, 1:-1, 1:-1]
            if c.min() < 0:
                raise InvalidArgumentError("the squared distance map contains negative values")
            dominated = np.zeros(c.shape, dtype=bool)
            for dx, dy, dz in NEIGHBOUR_OFFSETS:
                table = by_class[abs(dx) + abs(dy) + abs(dz)]
                nb = window[1 + dz, 1 + dy:h + 1 + dy, 1 + dx:w + 1 + dx]
                dominated |= table[np.maximum(nb, 0)] >= c
            ridge.data[z] = np.where((c != 0) & ~dominated, c, 0)
            counter.advance()

        loop.for_each(0, d, run_slice)
    finally:
        if own_loop:
            loop.shutdown()
    return ridge


def round_squared_ridge(grid, loop=None):
    """Replace each value ``v`` by ``round(sqrt(v))**2`` in place.

    Turns the ridge into spheres of integer radius, which yields a thickness
    map with fewer distinct values.
    """
    own_loop = loop is None
    if own_loop:
        loop = ParallelLoop()

    def run_slice(z):
        r = round_half_up(np.sqrt(grid.data[z].astype(np.float64)))
        grid.data[z] = r * r

    try:
        loop.for_each(0, grid.depth, run_slice)
    finally:
        if own_loop:
            loop.shutdown()
    return grid


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def parse_args(argv=None):
    """Parse CLI arguments for ridge."""
    parser = argparse.ArgumentParser(
        description="Extract the squared distance ridge of a squared distance map."
    )
    parser.add_argument("input", help="Squared distance map (.nii, .nii.gz or .npy)")
    parser.add_argument("output", help="Output volume for the ridge")
    parser.add_argument("--round", action="store_true",
                        help="Round ridge values to squares of integers")
    parser.add_argument("--table-cache", help="Directory of the sphere-fit table cache")
    parser.add_argument("--workers", type=int, help="Worker threads (default: all CPUs)")
    return parser.parse_args(argv)


def main(argv=None):
    """Load a squared distance map, extract its ridge, save it."""
    args = parse_args(argv)
    dmap2, affine = load_volume(args.input)

    with ParallelLoop(args.workers) as loop:
        with stage("distance ridge"):
            ridge = squared_distance_ridge(dmap2, loop=loop, cache_dir=args.table_cache)
        if args.round:
            with stage("round ridge"):
                round_squared_ridge(ridge, loop=loop)

    print(f"Ridge points: {int(np.count_nonzero(ridge.data))}")
    save_volume(args.output, ridge, affine)


if __name__ == "__main__":
    main()
