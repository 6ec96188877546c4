"""Wall time and RSS memory tracking for pipeline stages.

Usage:
    from thickmap.profiling import stage

    timings = {}
    with stage("squared distance map", timings=timings):
        squared_distance_map(grid)

Nested stages are indented:
    [thickness map] 4.2s | RSS 310 MB (+120 MB) | peak 420 MB
      [squared distance map] 0.9s | RSS 230 MB (+40 MB) | peak 420 MB
"""

import os
import resource
import threading
import time
from contextlib import contextmanager

_depth = threading.local()


def current_rss_mb():
    """Current RSS in MB from /proc/self/status, or peak RSS where unavailable."""
    try:
        with open("/proc/self/status") as f:
            for line in f:
                if line.startswith("VmRSS:"):
                    return int(line.split()[1]) / 1024
    except (OSError, ValueError):
        pass
    return peak_rss_mb()


def peak_rss_mb():
    """Lifetime high-water mark of RSS in MB (Linux reports KB)."""
    return resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024


def physical_memory_bytes(default=4 << 30):
    """Total physical memory, or ``default`` where sysconf does not report it."""
    try:
        pages = os.sysconf("SC_PHYS_PAGES")
        page_size = os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, ValueError, OSError):
        return default
    if pages <= 0 or page_size <= 0:
        return default
    return pages * page_size


def format_mb(mb, signed=False):
    sign = "+" if signed and mb >= 0 else ""
    if abs(mb) >= 1024:
        return f"{sign}{mb / 1024:.2f} GB"
    return f"{sign}{mb:.0f} MB"


@contextmanager
def stage(name, timings=None, verbose=True):
    """Track elapsed time and RSS of a named stage.

    Prints one summary line on exit when ``verbose``; stores the elapsed
    seconds in ``timings[name]`` when a dict is given.
    """
    depth = getattr(_depth, "value", 0)
    _depth.value = depth + 1

    rss_start = current_rss_mb()
    t_start = time.monotonic()
    try:
        yield
    finally:
        elapsed = time.monotonic() - t_start
        _depth.value = depth
        if timings is not None:
            timings[name] = elapsed
        if verbose:
            rss_end = current_rss_mb()
            print(f"{'  ' * depth}[{name}] {elapsed:.1f}s"
                  f" | RSS {format_mb(rss_end)}"
                  f" ({format_mb(rss_end - rss_start, signed=True)})"
                  f" | peak {format_mb(peak_rss_mb())}")
