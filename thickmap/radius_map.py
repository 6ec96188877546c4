"""Squared local radius map from a squared distance ridge.

Every ridge voxel is the centre of a sphere whose squared radius is the
voxel value.  The squared radius map holds, for every voxel, the largest
squared radius among the spheres covering it.

Spheres are superposed one dimension at a time.  After the pass along x,
each voxel lists the spheres whose cross-section still reaches it together
with the squared extent that remains for the next dimension; the pass along
y does the same starting from those lists, and the last pass writes the
largest covering squared radius straight into the output.  Lists only keep
entries that are not hidden by a larger sphere.

When the per-voxel lists do not fit the memory budget the image is split
into blocks along an axis that keeps rows intact, and the lists are handed
from one dimension to the next through files in a temporary directory
(see ``thickmap.ri_storage``).

Usage:
    python -m thickmap.radius_map ridge.nii.gz rmap2.nii.gz --max-memory 2G
"""

import argparse
import tempfile

import numba as nb
import numpy as np

from thickmap.danielsson import CircleFitTable, isqrt_less_table
from thickmap.errors import CapacityExceededError, InvalidArgumentError
from thickmap.grid import Block, VoxelGrid, iter_blocks, reduced_dimensions
from thickmap.mapped_file import remove_matching, remove_tree
from thickmap.parallel import ParallelLoop, ProgressCounter, parallel_sum
from thickmap.profiling import physical_memory_bytes, stage
from thickmap.ri_storage import (
    MAX_BLOCK_ID, SHORT_MAX, RiLists, pack_point, pack_points, read_ri_block, unpack_point,
    write_ri_block,
)
from thickmap.ridge import grid_max, round_half_up
from thickmap.volume_io import load_volume, save_volume

FLOAT_SIZE = 4


# ---------------------------------------------------------------------------
# Memory model and block layout
# ---------------------------------------------------------------------------
def nonzero_mean_radius(ridge, loop):
    """Mean of sqrt(v) over the nonzero voxels of ``ridge`` (0 if there are none)."""
    def slice_sum(z):
        values = ridge.data[z]
        nonzero = values[values != 0].astype(np.float64)
        return float(np.sqrt(nonzero).sum()), int(nonzero.size)

    total = parallel_sum(loop, 0, ridge.depth, slice_sum)
    if total is None or total[1] == 0:
        return 0.0
    return total[0] / total[1]


def memory_requirement(dimensions, mean_radius):
    """Estimated bytes needed to process a block of the given dimensions."""
    w, h, d = dimensions
    return (7 + 0.4 * mean_radius) * float(w) * float(h) * float(d) * FLOAT_SIZE


def distribution_axis(dim):
    """Axis along which blocks are split while processing dimension ``dim``.

    Passes along x and y split along z, the pass along z splits along y, so
    every block holds complete rows of the processed dimension.
    """
    if dim in (0, 1):
        return 2
    if dim == 2:
        return 1
    raise InvalidArgumentError(f"unsupported dimension {dim}")


def calculate_block_size(dimensions, dim, mean_radius, max_memory):
    """Block size for processing ``dim`` within ``max_memory`` bytes."""
    axis = distribution_axis(dim)
    subdivisions = [1, 1, 1]
    size = tuple(dimensions)
    while memory_requirement(size, mean_radius) >= max_memory:
        if size[axis] <= 1:
            raise CapacityExceededError(
                f"the image cannot be processed within {max_memory:.0f} bytes of memory; "
                "increase the memory budget"
            )
        subdivisions[axis] += 1
        size = tuple(min(n // s + 1, n) for n, s in zip(dimensions, subdivisions))
    return size


def count_blocks(dimensions, block_size):
    count = 1
    for n, b in zip(dimensions, block_size):
        count *= (n + b - 1) // b
    return count


# ---------------------------------------------------------------------------
# Row kernels
# ---------------------------------------------------------------------------
# Entries are int64 rows (R2, ri2, source_x, source_y): squared radius of
# the sphere, remaining squared extent at this voxel, and the sphere centre
# in the x-y plane of the image.  Runs of entries are ordered by decreasing
# (R2, ri2).

KEEP_WIDER_SPAN = 1
KEEP_WIDER_DISK = 2


def prune_mode(dim, dimensionality):
    """How the lists built while sweeping ``dim`` drop hidden entries."""
    if dim == dimensionality - 2:
        # Last lists before the output: only wider spans matter
        return KEEP_WIDER_SPAN
    return KEEP_WIDER_DISK


@nb.njit(cache=True, nogil=True)
def _round(value):
    return np.int64(np.floor(np.float64(value) + 0.5))


@nb.njit(cache=True, nogil=True)
def _reserve(buffer, size):
    """``buffer``, or a grown copy of it, with room for ``size`` rows."""
    if size <= buffer.shape[0]:
        return buffer
    grown = np.empty((max(size, 2 * buffer.shape[0]), buffer.shape[1]), dtype=buffer.dtype)
    grown[:buffer.shape[0]] = buffer
    return grown


@nb.njit(cache=True, nogil=True)
def _hidden(new, current, mode, isqrt, disks):
    """True if extent ``new`` adds nothing after a kept entry of extent ``current``."""
    if new <= current:
        return True
    if mode == KEEP_WIDER_SPAN:
        return isqrt[new] <= isqrt[current]
    return new <= disks[current]


@nb.njit(cache=True, nogil=True)
def _merge_prune(a, a0, na, b, b0, nb_, out, n, mode, isqrt, disks):
    """Append the merge of two ordered runs to ``out``, dropping hidden entries.

    On equal (R2, ri2) the entry of ``a`` comes first.  Returns ``out``
    (grown if needed) and its new length.
    """
    out = _reserve(out, n + na + nb_)
    first = n
    i = 0
    j = 0
    while i < na or j < nb_:
        if j >= nb_:
            take_a = True
        elif i >= na:
            take_a = False
        else:
            take_a = (a[a0 + i, 0] > b[b0 + j, 0]
                      or (a[a0 + i, 0] == b[b0 + j, 0] and a[a0 + i, 1] >= b[b0 + j, 1]))
        if take_a:
            r2, ri2, sx, sy = a[a0 + i, 0], a[a0 + i, 1], a[a0 + i, 2], a[a0 + i, 3]
            i += 1
        else:
            r2, ri2, sx, sy = b[b0 + j, 0], b[b0 + j, 1], b[b0 + j, 2], b[b0 + j, 3]
            j += 1
        if n > first and _hidden(ri2, out[n - 1, 1], mode, isqrt, disks):
            continue
        out[n, 0] = r2
        out[n, 1] = ri2
        out[n, 2] = sx
        out[n, 3] = sy
        n += 1
    return out, n


@nb.njit(cache=True, nogil=True)
def _enter(active, na, merged, centers, lo, hi, x):
    """Merge the entries ``centers[lo:hi]`` starting at ``x`` into ``active``.

    Active rows are (R2, ri2, centre position, source_x, source_y).
    """
    i = 0
    j = lo
    n = 0
    while i < na or j < hi:
        if j >= hi:
            take_active = True
        elif i >= na:
            take_active = False
        else:
            take_active = (active[i, 0] > centers[j, 0]
                           or (active[i, 0] == centers[j, 0] and active[i, 1] >= centers[j, 1]))
        if take_active:
            merged[n, :] = active[i, :]
            i += 1
        else:
            merged[n, 0] = centers[j, 0]
            merged[n, 1] = centers[j, 1]
            merged[n, 2] = x
            merged[n, 3] = centers[j, 2]
            merged[n, 4] = centers[j, 3]
            j += 1
        n += 1
    active[:n] = merged[:n]
    return n


@nb.njit(cache=True, nogil=True)
def _scan(active, na, x, found):
    """Drop spheres that no longer reach ``x``; collect the extents left at ``x``.

    Spheres of equal R2 collapse into the one reaching furthest.  Returns
    the new active count and the number of entries in ``found``.
    """
    kept = 0
    nf = 0
    for i in range(na):
        dx = x - active[i, 2]
        rn2 = active[i, 1] - dx * dx
        if rn2 <= 0:
            continue
        r2, sx, sy = active[i, 0], active[i, 3], active[i, 4]
        if kept != i:
            active[kept, :] = active[i, :]
        kept += 1
        if nf > 0 and found[nf - 1, 0] == r2:
            if found[nf - 1, 1] < rn2:
                found[nf - 1, 1] = rn2
                found[nf - 1, 2] = sx
                found[nf - 1, 3] = sy
        else:
            found[nf, 0] = r2
            found[nf, 1] = rn2
            found[nf, 2] = sx
            found[nf, 3] = sy
            nf += 1
    return kept, nf


@nb.njit(cache=True, nogil=True)
def sweep_row(centers, c_start, mode, isqrt, disks):
    """Forward and backward sweeps over one row.

    ``centers[c_start[x]:c_start[x + 1]]`` are the entries starting at
    position ``x``.  Returns the entries kept for the next dimension in the
    same layout: ``(kept, k_start)``.
    """
    length = c_start.shape[0] - 1
    m = c_start[length]
    active = np.empty((m, 5), dtype=np.int64)
    merged = np.empty((m, 5), dtype=np.int64)
    found = np.empty((m, 4), dtype=np.int64)

    forward = np.empty((m + 1, 4), dtype=np.int64)
    f_start = np.zeros(length, dtype=np.int64)
    f_count = np.zeros(length, dtype=np.int64)
    nfw = 0
    na = 0
    for x in range(length):
        if c_start[x + 1] > c_start[x]:
            na = _enter(active, na, merged, centers, c_start[x], c_start[x + 1], x)
        na, nf = _scan(active, na, x, found)
        f_start[x] = nfw
        if nf > 0:
            forward, nfw = _merge_prune(found, 0, nf, found, 0, 0, forward, nfw,
                                        mode, isqrt, disks)
        f_count[x] = nfw - f_start[x]

    result = np.empty((m + 1, 4), dtype=np.int64)
    r_start = np.zeros(length, dtype=np.int64)
    r_count = np.zeros(length, dtype=np.int64)
    nr = 0
    na = 0
    for x in range(length - 1, -1, -1):
        if c_start[x + 1] > c_start[x]:
            na = _enter(active, na, merged, centers, c_start[x], c_start[x + 1], x)
        na, nf = _scan(active, na, x, found)
        r_start[x] = nr
        if nf > 0:
            result, nr = _merge_prune(found, 0, nf, forward, f_start[x], f_count[x], result, nr,
                                      mode, isqrt, disks)
        else:
            result = _reserve(result, nr + f_count[x])
            for i in range(f_count[x]):
                result[nr + i, :] = forward[f_start[x] + i, :]
            nr += f_count[x]
        r_count[x] = nr - r_start[x]

    k_start = np.zeros(length + 1, dtype=np.int64)
    for x in range(length):
        k_start[x + 1] = k_start[x] + r_count[x]
    kept = np.empty((k_start[length], 4), dtype=np.int64)
    for x in range(length):
        for i in range(r_count[x]):
            kept[k_start[x] + i, :] = result[r_start[x] + i, :]
    return kept, k_start


@nb.njit(cache=True, nogil=True)
def paint_row(centers, c_start, isqrt, maxima):
    """Largest R2 of the spheres covering each position of a row.

    An entry at ``x`` covers the positions ``p`` with ``(p - x)**2 < ri2``.
    """
    length = c_start.shape[0] - 1
    maxima[:length] = 0
    for x in range(length):
        for j in range(c_start[x], c_start[x + 1]):
            ri2 = centers[j, 1]
            if ri2 <= 0:
                continue
            r2 = centers[j, 0]
            span = isqrt[ri2]
            for p in range(max(x - span, 0), min(x + span, length - 1) + 1):
                if r2 > maxima[p]:
                    maxima[p] = r2


@nb.njit(cache=True, nogil=True)
def _row_centers(ridge, starts, words, base, stride, length, origin, dim):
    """Entries of one row of a block, read from its ri lists.

    R2 is the rounded ridge value at the source, ri2 what is left of it at
    the voxel once the offsets along the dimensions already swept are taken.
    """
    c_start = np.zeros(length + 1, dtype=np.int64)
    for k in range(length):
        v = base + k * stride
        c_start[k + 1] = c_start[k] + starts[v + 1] - starts[v]
    centers = np.empty((c_start[length], 4), dtype=np.int64)
    n = 0
    for k in range(length):
        v = base + k * stride
        px = origin[0] + (k if dim == 0 else 0)
        py = origin[1] + (k if dim == 1 else 0)
        pz = origin[2] + (k if dim == 2 else 0)
        for j in range(starts[v], starts[v + 1]):
            sx, sy = unpack_point(words[j])
            r2 = _round(ridge[pz, sy, sx])
            dx = px - sx
            dy = py - sy
            centers[n, 0] = r2
            centers[n, 1] = r2 - dx * dx - dy * dy
            centers[n, 2] = sx
            centers[n, 3] = sy
            n += 1
    return centers, c_start


@nb.njit(cache=True, nogil=True)
def _row_origin(row, reduced, size, origin):
    """Block-local linear index and image coordinates of the first voxel of ``row``."""
    rx = row % reduced[0]
    ry = (row // reduced[0]) % reduced[1]
    rz = row // (reduced[0] * reduced[1])
    base = (rz * size[1] + ry) * size[0] + rx
    return base, (origin[0] + rx, origin[1] + ry, origin[2] + rz)


@nb.njit(cache=True, nogil=True)
def sweep_rows(ridge, starts, words, lo, hi, reduced, size, origin, dim, mode, isqrt, disks):
    """Sweeps over rows ``lo..hi-1`` of a block.

    Returns, for every position of these rows in row order, the block-local
    voxel index and the length of its new list, followed by the packed
    source words of all lists.
    """
    length = size[dim]
    stride = 1 if dim == 0 else (size[0] if dim == 1 else size[0] * size[1])
    count = (hi - lo) * length
    voxels = np.empty(count, dtype=np.int64)
    lengths = np.empty(count, dtype=np.int64)
    out = np.empty(max(count, 16), dtype=np.int32)
    n_out = 0
    o = 0
    for row in range(lo, hi):
        base, start = _row_origin(row, reduced, size, origin)
        centers, c_start = _row_centers(ridge, starts, words, base, stride, length, start, dim)
        kept, k_start = sweep_row(centers, c_start, mode, isqrt, disks)
        for k in range(length):
            voxels[o] = base + k * stride
            lengths[o] = k_start[k + 1] - k_start[k]
            o += 1
        need = n_out + kept.shape[0]
        if need > out.shape[0]:
            grown = np.empty(max(need, 2 * out.shape[0]), dtype=np.int32)
            grown[:n_out] = out[:n_out]
            out = grown
        for i in range(kept.shape[0]):
            out[n_out] = pack_point(kept[i, 2], kept[i, 3])
            n_out += 1
    return voxels, lengths, out[:n_out]


@nb.njit(cache=True, nogil=True)
def final_rows(ridge, starts, words, lo, hi, reduced, size, origin, dim, isqrt, output):
    """Largest covering R2 along rows ``lo..hi-1`` of a block, maxed into ``output``."""
    length = size[dim]
    stride = 1 if dim == 0 else (size[0] if dim == 1 else size[0] * size[1])
    maxima = np.zeros(length, dtype=np.int64)
    for row in range(lo, hi):
        base, start = _row_origin(row, reduced, size, origin)
        centers, c_start = _row_centers(ridge, starts, words, base, stride, length, start, dim)
        paint_row(centers, c_start, isqrt, maxima)
        for k in range(length):
            px = start[0] + (k if dim == 0 else 0)
            py = start[1] + (k if dim == 1 else 0)
            pz = start[2] + (k if dim == 2 else 0)
            if maxima[k] > output[pz, py, px]:
                output[pz, py, px] = maxima[k]


@nb.njit(cache=True, nogil=True)
def _scatter(starts, words, voxels, lengths, piece):
    j = 0
    for i in range(voxels.shape[0]):
        s = starts[voxels[i]]
        for t in range(lengths[i]):
            words[s + t] = piece[j]
            j += 1


# ---------------------------------------------------------------------------
# Dimension passes
# ---------------------------------------------------------------------------
class SweepTables:
    """Lookup tables shared by every pass: strict integer square roots and disk fits."""

    def __init__(self, r2_max):
        self.r2_max = r2_max
        self.isqrt = isqrt_less_table(r2_max)
        self.disks = np.asarray(CircleFitTable(r2_max).lookup, dtype=np.int64)


def prepare_tables(ridge, loop):
    """Validate ``ridge`` and build the sweep tables for its largest value.

    Values are rounded where they are read, so no integer copy of the ridge
    is made.
    """
    if max(ridge.dimensions) >= SHORT_MAX:
        raise CapacityExceededError(
            f"image extent {max(ridge.dimensions)} exceeds {SHORT_MAX - 1} voxels"
        )
    r2_max = max(int(round_half_up(grid_max(ridge, loop))), 0)
    if r2_max >= np.iinfo(np.int32).max:
        raise InvalidArgumentError("the squared distance ridge contains too large values")
    return SweepTables(r2_max)


def initial_ri(ridge, block):
    """ri lists of ``block`` before the first pass: one entry per ridge voxel."""
    ox, oy, oz = block.origin
    bw, bh, bd = block.size
    # Values of 0.5 and above round to a positive R2
    present = ridge.data[oz:oz + bd, oy:oy + bh, ox:ox + bw] >= 0.5
    starts = np.zeros(block.voxel_count + 1, dtype=np.int64)
    np.cumsum(present.reshape(-1), out=starts[1:])
    z, y, x = np.nonzero(present)
    return RiLists(starts, pack_points(x + ox, y + oy))


def _assemble(pieces, voxel_count):
    counts = np.zeros(voxel_count, dtype=np.int64)
    for voxels, lengths, _ in pieces:
        counts[voxels] = lengths
    starts = np.zeros(voxel_count + 1, dtype=np.int64)
    np.cumsum(counts, out=starts[1:])
    words = np.empty(int(starts[-1]), dtype=np.int32)
    for voxels, lengths, piece in pieces:
        _scatter(starts, words, voxels, lengths, piece)
    return RiLists(starts, words)


def process_dimension(ri, dim, ridge, output, block, dimensionality, loop, tables,
                      progress=None):
    """Run the forward and backward sweeps over every row of ``block``.

    Returns the ``RiLists`` of the block for the next dimension; on the
    last dimension the maxima are written into ``output`` and None is
    returned.
    """
    reduced = reduced_dimensions(block.size, dim)
    row_count = reduced[0] * reduced[1] * reduced[2]
    counter = ProgressCounter(row_count, progress)

    if dim >= dimensionality - 1:
        def run_final(lo, hi):
            final_rows(ridge.data, ri.starts, ri.words, lo, hi, reduced, block.size,
                       block.origin, dim, tables.isqrt, output.data)
            counter.advance(hi - lo)

        loop.for_each_batch(0, row_count, run_final)
        return None

    mode = prune_mode(dim, dimensionality)
    states = loop.worker_states(list)

    def run_rows(lo, hi, pieces):
        pieces.append(sweep_rows(ridge.data, ri.starts, ri.words, lo, hi, reduced, block.size,
                                 block.origin, dim, mode, tables.isqrt, tables.disks))
        counter.advance(hi - lo)

    loop.for_each_batch(0, row_count, run_rows, states)
    return _assemble([piece for pieces in states for piece in pieces], block.voxel_count)


# ---------------------------------------------------------------------------
# Single and multi block drivers
# ---------------------------------------------------------------------------
def squared_radius_map_single_block(ridge, output=None, loop=None, progress=None):
    """Squared radius map computed with all ri lists in memory."""
    own_loop = loop is None
    if own_loop:
        loop = ParallelLoop()
    if output is None:
        output = VoxelGrid.zeros(ridge.dimensions)
    try:
        tables = prepare_tables(ridge, loop)
        output.fill(0)
        dimensionality = ridge.dimensionality
        block = Block((0, 0, 0), ridge.dimensions)
        ri = initial_ri(ridge, block)
        for dim in range(dimensionality):
            ri = process_dimension(ri, dim, ridge, output, block, dimensionality,
                                   loop, tables, progress)
    finally:
        if own_loop:
            loop.shutdown()
    return output


def squared_radius_map_multi_block(ridge, output=None, temp_dir=None, mean_radius=None,
                                   max_memory=None, loop=None, progress=None,
                                   verbose=False):
    """Squared radius map computed block by block with ri lists on disk.

    Temporary files are created in a new ``thickmap_*`` directory inside
    ``temp_dir`` (the system temporary directory if None) and removed at
    the end; files that cannot be removed are reported as warnings.
    """
    own_loop = loop is None
    if own_loop:
        loop = ParallelLoop()
    if output is None:
        output = VoxelGrid.zeros(ridge.dimensions)
    if max_memory is None:
        max_memory = physical_memory_bytes() // 2

    work_dir = None
    try:
        if mean_radius is None:
            mean_radius = nonzero_mean_radius(ridge, loop)
        tables = prepare_tables(ridge, loop)
        output.fill(0)
        dims = ridge.dimensions
        dimensionality = ridge.dimensionality

        work_dir = tempfile.mkdtemp(prefix="thickmap_", dir=temp_dir)
        prefix = f"{work_dir}/ri"

        for dim in range(dimensionality):
            block_size = calculate_block_size(dims, dim, mean_radius, max_memory)
            block_count = count_blocks(dims, block_size)
            if block_count > MAX_BLOCK_ID:
                raise CapacityExceededError(
                    f"the image would have to be divided into {block_count} blocks; "
                    "increase the memory budget"
                )
            for block_index, block in enumerate(iter_blocks(dims, block_size)):
                if verbose:
                    print(f"  dimension {dim}: block {block_index + 1} / {block_count}")
                if dim > 0:
                    ri = read_ri_block(f"{prefix}_dim{dim - 1}", block, dims)
                else:
                    ri = initial_ri(ridge, block)

                ri = process_dimension(ri, dim, ridge, output, block, dimensionality,
                                       loop, tables, progress)

                if dim < dimensionality - 1:
                    write_ri_block(ri, f"{prefix}_dim{dim}", block_index, block, dims)

            if dim > 0:
                remove_matching(work_dir, f"ri_dim{dim - 1}_*")
    finally:
        if work_dir is not None:
            remove_tree(work_dir)
        if own_loop:
            loop.shutdown()
    return output


def squared_radius_map(ridge, output=None, temp_dir=None, max_memory=None,
                       loop=None, progress=None, verbose=False):
    """Squared radius map, processed in blocks when memory is insufficient.

    Parameters
    ----------
    ridge : VoxelGrid
        Squared distance ridge (a squared distance map also works, slower).
    output : VoxelGrid or None
        float32 grid receiving the result; allocated when omitted.
    temp_dir : str, Path or None
        Where temporary files of the block-wise variant are created.
    max_memory : int or None
        Memory budget in bytes; defaults to half of the physical memory.
    """
    own_loop = loop is None
    if own_loop:
        loop = ParallelLoop()
    if max_memory is None:
        max_memory = physical_memory_bytes() // 2
    try:
        mean_radius = nonzero_mean_radius(ridge, loop)
        block_size = calculate_block_size(ridge.dimensions, 0, mean_radius, max_memory)
        if block_size == ridge.dimensions:
            if verbose:
                print("Processing the image in one block")
            return squared_radius_map_single_block(ridge, output, loop=loop, progress=progress)
        if verbose:
            print(f"Processing the image in blocks of {block_size} "
                  f"(mean radius {mean_radius:.2f})")
        return squared_radius_map_multi_block(
            ridge, output, temp_dir=temp_dir, mean_radius=mean_radius,
            max_memory=max_memory, loop=loop, progress=progress, verbose=verbose,
        )
    finally:
        if own_loop:
            loop.shutdown()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def parse_memory(text):
    """Parse a byte count with an optional K, M or G suffix."""
    units = {"K": 1 << 10, "M": 1 << 20, "G": 1 << 30}
    text = str(text).strip().upper().rstrip("B")
    if text and text[-1] in units:
        return int(float(text[:-1]) * units[text[-1]])
    return int(text)


def parse_args(argv=None):
    """Parse CLI arguments for radius_map."""
    parser = argparse.ArgumentParser(
        description="Compute the squared local radius map of a squared distance ridge."
    )
    parser.add_argument("input", help="Squared distance ridge (.nii, .nii.gz or .npy)")
    parser.add_argument("output", help="Output volume for squared radii")
    parser.add_argument("--temp-dir", help="Directory for temporary block files")
    parser.add_argument("--max-memory", type=parse_memory,
                        help="Memory budget, e.g. 512M or 4G (default: half of RAM)")
    parser.add_argument("--workers", type=int, help="Worker threads (default: all CPUs)")
    return parser.parse_args(argv)


def main(argv=None):
    """Load a ridge, reconstruct the squared radius map, save it."""
    args = parse_args(argv)
    ridge, affine = load_volume(args.input)

    with ParallelLoop(args.workers) as loop, stage("squared radius map"):
        rmap2 = squared_radius_map(ridge, temp_dir=args.temp_dir,
                                   max_memory=args.max_memory, loop=loop, verbose=True)

    save_volume(args.output, rmap2, affine)


if __name__ == "__main__":
    main()
