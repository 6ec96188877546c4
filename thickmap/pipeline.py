"""Local thickness map pipeline.

Stages run strictly in order on one grid:

    IDLE -> DISTANCE_COMPUTED -> RIDGE_COMPUTED -> RADIUS_COMPUTED -> FINALIZED

1. squared distance map (in place)
2. squared distance ridge (new grid), optionally rounded to integer radii
3. squared local radius map (written back into the input grid)
4. finalization: ``r2 -> 2 * sqrt(r2)``, the local diameter

A failing stage aborts the run; the input grid keeps whatever the failing
stage left in it.
"""

import enum
import threading
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from thickmap.distance_map import squared_distance_map
from thickmap.grid import VoxelGrid
from thickmap.parallel import ParallelLoop, ProgressCounter
from thickmap.profiling import physical_memory_bytes, stage
from thickmap.radius_map import squared_radius_map
from thickmap.ridge import round_squared_ridge, squared_distance_ridge

# Named memory budgets in bytes
MEMORY_PROFILES = {
    "small": 512 << 20,
    "default": None,
    "large": 16 << 30,
}


class Stage(enum.IntEnum):
    IDLE = 0
    DISTANCE_COMPUTED = 1
    RIDGE_COMPUTED = 2
    RADIUS_COMPUTED = 3
    FINALIZED = 4


def default_max_memory():
    """Half of the physical memory."""
    return physical_memory_bytes() // 2


@dataclass
class ThicknessSettings:
    """Options of a thickness map run.

    background : voxel value treated as background
    round_ridge : round ridge values to squares of integers first
    temp_dir : where block files go when the image exceeds ``max_memory``
    max_memory : memory budget in bytes of the radius reconstruction
    table_cache_dir : directory of the sphere-fit table cache (None: no cache)
    workers : worker threads (None: all CPUs)
    cancel : event that interrupts the running stage when set
    verbose : print stage timings and block progress
    """
    background: float = 0.0
    round_ridge: bool = False
    temp_dir: Optional[str] = None
    max_memory: int = field(default_factory=default_max_memory)
    table_cache_dir: Optional[str] = None
    workers: Optional[int] = None
    cancel: Optional[threading.Event] = None
    verbose: bool = False

    @classmethod
    def from_profile(cls, name, **overrides):
        budget = MEMORY_PROFILES[name]
        if budget is not None:
            overrides.setdefault("max_memory", budget)
        return cls(**overrides)


def finalize_thickness(rmap2, loop, progress=None):
    """Convert squared radii to diameters in place."""
    counter = ProgressCounter(rmap2.depth, progress)

    def run_slice(z):
        values = rmap2.data[z]
        np.sqrt(values, out=values)
        values *= 2
        counter.advance()

    loop.for_each(0, rmap2.depth, run_slice)
    return rmap2


class ThicknessPipeline:
    """Runs the thickness map stages on a grid.

    ``progress(stage_name, done, total)`` is called during each stage when
    given; ``timings`` collects the wall time of every completed stage.
    """

    def __init__(self, settings=None, progress=None):
        self.settings = settings or ThicknessSettings()
        self.progress = progress
        self.state = Stage.IDLE
        self.timings = {}

    def _sink(self, name):
        if self.progress is None:
            return None
        return lambda done, total: self.progress(name, done, total)

    def _stage(self, name):
        return stage(name, timings=self.timings, verbose=self.settings.verbose)

    def run(self, grid, stop_after=Stage.FINALIZED):
        """Run the stages up to and including ``stop_after``.

        Returns the grid of the last completed stage: ``grid`` itself for the
        distance, radius and final stages, a new grid for the ridge stage.
        """
        if self.state != Stage.IDLE:
            raise RuntimeError(f"pipeline already ran (state {self.state.name})")
        s = self.settings

        with ParallelLoop(s.workers, cancel=s.cancel) as loop:
            with self._stage("squared distance map"):
                squared_distance_map(grid, s.background, loop=loop,
                                     progress=self._sink("squared distance map"))
            self.state = Stage.DISTANCE_COMPUTED
            if stop_after <= Stage.DISTANCE_COMPUTED:
                return grid

            with self._stage("distance ridge"):
                ridge = squared_distance_ridge(grid, loop=loop, cache_dir=s.table_cache_dir,
                                               progress=self._sink("distance ridge"))
                if s.round_ridge:
                    round_squared_ridge(ridge, loop=loop)
            self.state = Stage.RIDGE_COMPUTED
            if stop_after <= Stage.RIDGE_COMPUTED:
                return ridge

            with self._stage("squared radius map"):
                squared_radius_map(ridge, output=grid, temp_dir=s.temp_dir,
                                   max_memory=s.max_memory, loop=loop,
                                   progress=self._sink("squared radius map"),
                                   verbose=s.verbose)
            self.state = Stage.RADIUS_COMPUTED
            if stop_after <= Stage.RADIUS_COMPUTED:
                return grid

            with self._stage("finalize"):
                finalize_thickness(grid, loop, progress=self._sink("finalize"))
            self.state = Stage.FINALIZED
        return grid


def local_thickness(array, **settings):
    """Local thickness (diameter) map of a 1-D, 2-D or 3-D ``(z, y, x)`` array.

    Keyword arguments are ``ThicknessSettings`` fields.  Returns a new float32
    array of the input's shape.
    """
    array = np.asarray(array)
    grid = VoxelGrid.from_array(array)
    ThicknessPipeline(ThicknessSettings(**settings)).run(grid)
    return grid.data.reshape(array.shape)
