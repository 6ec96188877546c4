"""Memory-mapped access to files of (almost) any size, plus raw volume I/O.

A file is mapped in fixed-size windows so that no single mapping exceeds
``WINDOW_SIZE`` bytes.  Element ``index`` of width ``w`` lives at byte
``index * w``, i.e. in window ``index * w // window_size``.  Window size is
divisible by every supported width, so an element never straddles windows.
Runs and arrays of elements are copied through numpy views of the windows.

Raw volumes are headerless files of ``int64`` values in ``(z, y, x)`` order
whose name carries the dimensions: ``name_{w}x{h}x{d}.raw``.
"""

import mmap
import os
import threading
import time
from collections import Counter
from pathlib import Path

import numpy as np

from thickmap.errors import InvalidArgumentError

WINDOW_SIZE = 1 << 30
SUPPORTED_WIDTHS = (2, 8)
LONG_SIZE = 8

_open_lock = threading.Lock()
_open_mappings = Counter()


def _key(path):
    return str(Path(path).resolve())


def is_mapped(path):
    """True while any MappedFile for ``path`` is still open."""
    with _open_lock:
        return _open_mappings[_key(path)] > 0


# ---------------------------------------------------------------------------
# MappedFile
# ---------------------------------------------------------------------------
class MappedFile:
    """Windowed memory mapping of a file with fixed-width integer access.

    Parameters
    ----------
    path : str or Path
        File to map.  Must exist when ``writable`` is False.
    writable : bool
        Open read-write (the file is created if missing).
    length : int or None
        For writable files, resize the file to this many bytes first.
    window_size : int
        Bytes per mapping window; a multiple of 8 and of
        ``mmap.ALLOCATIONGRANULARITY``.
    byteorder : {"little", "big"}
        Byte order of the stored integers.
    """

    def __init__(self, path, writable=False, length=None,
                 window_size=WINDOW_SIZE, byteorder="little"):
        if window_size % LONG_SIZE or window_size % mmap.ALLOCATIONGRANULARITY:
            raise InvalidArgumentError(
                f"window size {window_size} must be a multiple of {LONG_SIZE} "
                f"and {mmap.ALLOCATIONGRANULARITY}"
            )
        self.path = Path(path)
        self.writable = writable
        self.window_size = window_size
        self.byteorder = byteorder
        self._windows = []

        if writable:
            mode = "r+b" if self.path.exists() else "w+b"
            self._file = open(self.path, mode)
        else:
            self._file = open(self.path, "rb")

        try:
            if writable and length is not None and length >= 0:
                self._file.truncate(length)
            self.size = os.fstat(self._file.fileno()).st_size
            access = mmap.ACCESS_WRITE if writable else mmap.ACCESS_READ
            for start in range(0, self.size, window_size):
                real_size = min(self.size - start, window_size)
                self._windows.append(
                    mmap.mmap(self._file.fileno(), real_size, access=access, offset=start)
                )
        except (OSError, ValueError):
            self.close()
            raise

        with _open_lock:
            _open_mappings[_key(self.path)] += 1
        self._registered = True

    # Addressing ----------------------------------------------------------
    def _locate(self, index, width):
        if width not in SUPPORTED_WIDTHS:
            raise InvalidArgumentError(f"unsupported element width {width}")
        byte_index = index * width
        if index < 0 or byte_index + width > self.size:
            raise IndexError(f"element {index} (width {width}) outside {self.path}")
        return divmod(byte_index, self.window_size)

    def read_fixed(self, index, width):
        """Read the signed integer of ``width`` bytes stored at element ``index``."""
        window, offset = self._locate(index, width)
        return int.from_bytes(
            self._windows[window][offset:offset + width], self.byteorder, signed=True,
        )

    def write_fixed(self, index, value, width):
        """Write ``value`` as a signed integer of ``width`` bytes at element ``index``."""
        if not self.writable:
            raise PermissionError(f"{self.path} is mapped read-only")
        window, offset = self._locate(index, width)
        self._windows[window][offset:offset + width] = int(value).to_bytes(
            width, self.byteorder, signed=True,
        )

    def read_short(self, index):
        return self.read_fixed(index, 2)

    def read_long(self, index):
        return self.read_fixed(index, 8)

    def write_short(self, index, value):
        self.write_fixed(index, value, 2)

    def write_long(self, index, value):
        self.write_fixed(index, value, 8)

    # Arrays --------------------------------------------------------------
    def _dtype(self, dtype):
        dtype = np.dtype(dtype)
        if dtype.itemsize not in SUPPORTED_WIDTHS:
            raise InvalidArgumentError(f"unsupported element width {dtype.itemsize}")
        return dtype.newbyteorder("<" if self.byteorder == "little" else ">")

    def _byte_range(self, index, count, width):
        start = index * width
        if index < 0 or count < 0 or start + count * width > self.size:
            raise IndexError(f"elements {index}..{index + count - 1} (width {width}) "
                             f"outside {self.path}")
        return start

    def read_array(self, index, count, dtype):
        """Copy of ``count`` consecutive elements of ``dtype`` starting at ``index``."""
        dtype = self._dtype(dtype)
        start = self._byte_range(index, count, dtype.itemsize)
        out = np.empty(count, dtype=dtype)
        raw = out.view(np.uint8)
        done = 0
        while done < raw.size:
            window, offset = divmod(start + done, self.window_size)
            chunk = min(raw.size - done, len(self._windows[window]) - offset)
            raw[done:done + chunk] = np.frombuffer(
                self._windows[window], dtype=np.uint8, count=chunk, offset=offset,
            )
            done += chunk
        return out

    def write_array(self, index, values, dtype):
        """Write ``values`` as consecutive elements of ``dtype`` starting at ``index``."""
        if not self.writable:
            raise PermissionError(f"{self.path} is mapped read-only")
        dtype = self._dtype(dtype)
        raw = np.ascontiguousarray(values, dtype=dtype).reshape(-1).view(np.uint8)
        start = self._byte_range(index, raw.size // dtype.itemsize, dtype.itemsize)
        done = 0
        while done < raw.size:
            window, offset = divmod(start + done, self.window_size)
            chunk = min(raw.size - done, len(self._windows[window]) - offset)
            self._windows[window][offset:offset + chunk] = raw[done:done + chunk].tobytes()
            done += chunk

    def gather(self, indices, dtype):
        """Copy of the elements of ``dtype`` at an array of element ``indices``."""
        dtype = self._dtype(dtype)
        indices = np.asarray(indices, dtype=np.int64)
        out = np.empty(indices.shape, dtype=dtype)
        if indices.size == 0:
            return out
        self._byte_range(int(indices.min()), 1, dtype.itemsize)
        self._byte_range(int(indices.max()), 1, dtype.itemsize)
        per_window = self.window_size // dtype.itemsize
        window_of = indices // per_window
        for window in np.unique(window_of).tolist():
            selected = window_of == window
            mapped = self._windows[window]
            view = np.frombuffer(mapped, dtype=dtype, count=len(mapped) // dtype.itemsize)
            out[selected] = view[indices[selected] - window * per_window]
            del view
        return out

    @property
    def window_count(self):
        return len(self._windows)

    # Lifetime ------------------------------------------------------------
    def flush(self):
        for window in self._windows:
            window.flush()

    def close(self):
        """Unmap all windows and close the file handle."""
        windows, self._windows = self._windows, []
        for window in windows:
            if self.writable:
                window.flush()
            window.close()
        if getattr(self, "_file", None) is not None:
            self._file.close()
            self._file = None
        if getattr(self, "_registered", False):
            with _open_lock:
                key = _key(self.path)
                _open_mappings[key] -= 1
                if _open_mappings[key] <= 0:
                    del _open_mappings[key]
            self._registered = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


# ---------------------------------------------------------------------------
# Deletion with retry
# ---------------------------------------------------------------------------
def remove_with_retry(path, attempts=5, backoff=0.05):
    """Delete ``path``, retrying with exponential backoff.

    Deletion waits until no MappedFile of the path is open.  Returns True on
    success; on final failure prints a warning and returns False.
    """
    path = Path(path)
    delay = backoff
    last_error = None
    for attempt in range(attempts):
        if not is_mapped(path):
            try:
                path.unlink()
                return True
            except FileNotFoundError:
                return True
            except OSError as e:
                last_error = e
        else:
            last_error = "file is still mapped"
        if attempt < attempts - 1:
            time.sleep(delay)
            delay *= 2
    print(f"WARNING: unable to delete temporary file {path} ({last_error}). "
          "Please delete it manually.")
    return False


def remove_matching(directory, pattern, attempts=5, backoff=0.05):
    """Delete all files in ``directory`` matching a glob pattern.

    Returns the number of files that could not be deleted.
    """
    failed = 0
    for p in sorted(Path(directory).glob(pattern)):
        if not remove_with_retry(p, attempts, backoff):
            failed += 1
    return failed


def remove_tree(directory, attempts=5, backoff=0.05):
    """Delete every file in ``directory`` and then the directory itself."""
    directory = Path(directory)
    if not directory.exists():
        return True
    failed = remove_matching(directory, "*", attempts, backoff)
    if failed:
        return False
    try:
        directory.rmdir()
    except OSError as e:
        print(f"WARNING: unable to remove temporary directory {directory} ({e})")
        return False
    return True


# ---------------------------------------------------------------------------
# Raw volumes
# ---------------------------------------------------------------------------
def raw_filename(base_name, dimensions):
    """Append ``_{w}x{h}x{d}.raw`` to ``base_name`` unless it already ends so."""
    w, h, d = dimensions
    suffix = f"_{w}x{h}x{d}.raw"
    base_name = str(base_name)
    if base_name.lower().endswith(suffix.lower()):
        return base_name
    return base_name + suffix


def write_raw_block(grid, filename, file_position, file_dimensions):
    """Write an int64 grid into a region of a raw file.

    The file is created if missing and resized to the full volume size
    otherwise; existing content outside the region is kept.  The part of
    the grid extending beyond ``file_dimensions`` is not written.
    """
    fw, fh, fd = file_dimensions
    start = tuple(min(max(p, 0), n) for p, n in zip(file_position, file_dimensions))
    end = tuple(min(max(p + s, 0), n)
                for p, s, n in zip(file_position, grid.dimensions, file_dimensions))

    Path(filename).parent.mkdir(parents=True, exist_ok=True)
    file_size = fw * fh * fd * LONG_SIZE

    with MappedFile(filename, writable=True, length=file_size) as out:
        for z in range(start[2], end[2]):
            for y in range(start[1], end[1]):
                base = (z * fh + y) * fw
                src = grid.data[z - start[2], y - start[1], :end[0] - start[0]]
                out.write_array(base + start[0], src, np.int64)


def read_raw_block(grid, filename, start, file_dimensions):
    """Fill an int64 grid from the region of a raw file starting at ``start``."""
    if any(s < 0 or s >= n for s, n in zip(start, file_dimensions)):
        raise InvalidArgumentError(f"out of bounds start position {start} in {filename}")
    fw, fh, _ = file_dimensions
    end = tuple(min(s + n, f) for s, n, f in zip(start, grid.dimensions, file_dimensions))

    n = end[0] - start[0]
    with MappedFile(filename) as src:
        for z in range(start[2], end[2]):
            for y in range(start[1], end[1]):
                base = (z * fh + y) * fw
                row = grid.data[z - start[2], y - start[1]]
                row[:n] = src.read_array(base + start[0], n, np.int64)
