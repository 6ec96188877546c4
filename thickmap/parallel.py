"""Static-partition parallel for-each loop.

Usage:
    loop = ParallelLoop()
    states = loop.worker_states(list)
    loop.for_each(0, n_rows, lambda i, scratch: process(i, scratch), states)

The index range is split into one contiguous chunk per worker.  Chunk ``k``
is handed ``states[k]``, so per-worker scratch buffers are explicit objects
allocated once and reused across calls instead of thread-local state.
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor, wait

from thickmap.errors import Interrupted

_inside = threading.local()


def default_workers():
    """Number of workers sized to the available hardware parallelism."""
    return max(1, os.cpu_count() or 1)


def chunk_ranges(start, stop, chunks):
    """Split ``[start, stop)`` into at most ``chunks`` contiguous ranges.

    All ranges have size ``ceil(n / chunks)`` except possibly the last.
    """
    n = stop - start
    if n <= 0:
        return []
    size = (n + chunks - 1) // chunks
    return [(lo, min(lo + size, stop)) for lo in range(start, stop, size)]


class ProgressCounter:
    """Thread-safe progress reporter calling ``sink(done, total)``.

    ``done`` is strictly increasing across calls.
    """

    def __init__(self, total, sink=None):
        self.total = total
        self.sink = sink
        self.done = 0
        self._lock = threading.Lock()

    def advance(self, amount=1):
        if self.sink is None:
            return
        with self._lock:
            self.done += amount
            self.sink(self.done, self.total)


class ParallelLoop:
    """Fixed-size worker pool executing data-parallel loops.

    Parameters
    ----------
    workers : int or None
        Pool size.  Defaults to ``os.cpu_count()``.
    cancel : threading.Event or None
        When set, running chunks stop before their next index and the
        loop raises ``Interrupted``.
    """

    def __init__(self, workers=None, cancel=None):
        self.workers = int(workers) if workers else default_workers()
        if self.workers < 1:
            raise ValueError("workers must be positive")
        self.cancel = cancel
        self._executor = None
        self._lock = threading.Lock()

    def _pool(self):
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.workers, thread_name_prefix="thickmap",
                )
            return self._executor

    def worker_states(self, factory):
        """Allocate one scratch state per worker."""
        return [factory() for _ in range(self.workers)]

    def check_cancelled(self):
        if self.cancel is not None and self.cancel.is_set():
            raise Interrupted("operation cancelled")

    def _run_chunk(self, lo, hi, body, state, with_state):
        _inside.active = True
        try:
            for i in range(lo, hi):
                self.check_cancelled()
                if with_state:
                    body(i, state)
                else:
                    body(i)
        finally:
            _inside.active = False

    def for_each(self, start, stop, body, states=None):
        """Run ``body`` for every index in ``[start, stop)``.

        Blocks until all chunks have finished.  If any call raised, the
        exception of the first failing chunk is re-raised; side effects of
        the other chunks are kept.
        """
        if getattr(_inside, "active", False):
            raise RuntimeError("ParallelLoop.for_each cannot be nested")
        if states is not None and len(states) < self.workers:
            raise ValueError("need one state per worker")
        self.check_cancelled()

        ranges = chunk_ranges(start, stop, self.workers)
        if not ranges:
            return
        with_state = states is not None

        if len(ranges) == 1:
            # Run inline; no benefit from a thread hop
            lo, hi = ranges[0]
            self._run_chunk(lo, hi, body, states[0] if with_state else None, with_state)
            return

        pool = self._pool()
        futures = [
            pool.submit(self._run_chunk, lo, hi, body,
                        states[k] if with_state else None, with_state)
            for k, (lo, hi) in enumerate(ranges)
        ]
        wait(futures)
        for fut in futures:
            exc = fut.exception()
            if exc is not None:
                raise exc

    def for_each_batch(self, start, stop, body, states=None, batches_per_worker=4):
        """Run ``body(lo, hi)`` (or ``body(lo, hi, state)``) over batches of indices.

        ``[start, stop)`` is cut into about ``batches_per_worker`` ranges per
        worker, which are then distributed like the indices of ``for_each``.
        """
        batches = chunk_ranges(start, stop, self.workers * batches_per_worker)
        if states is None:
            self.for_each(0, len(batches), lambda b: body(*batches[b]))
        else:
            self.for_each(0, len(batches), lambda b, state: body(*batches[b], state), states)

    def shutdown(self):
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
        return False


def parallel_sum(loop, start, stop, body):
    """Sum ``body(i)`` over ``[start, stop)`` using per-worker partials.

    ``body`` returns a tuple of numbers; tuples are added component-wise.
    """
    partials = loop.worker_states(lambda: [None])

    def run(i, acc):
        value = body(i)
        acc[0] = value if acc[0] is None else tuple(a + b for a, b in zip(acc[0], value))

    loop.for_each(start, stop, run, partials)
    total = None
    for (value,) in partials:
        if value is None:
            continue
        total = value if total is None else tuple(a + b for a, b in zip(total, value))
    return total


def parallel_max(loop, start, stop, body, initial=float("-inf")):
    """Maximum of ``body(i)`` over ``[start, stop)`` using per-worker partials."""
    partials = loop.worker_states(lambda: [initial])

    def run(i, acc):
        value = body(i)
        if value > acc[0]:
            acc[0] = value

    loop.for_each(start, stop, run, partials)
    return max(p[0] for p in partials)
