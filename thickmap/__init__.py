"""Local thickness maps of large binary volumes.

Stages (each also runnable on its own):
  1. Squared distance map   (distance_map)
  2. Distance ridge         (ridge)
  3. Squared radius map     (radius_map, in blocks when memory is short)
  4. Thickness map          (pipeline)

Usage:
    python -m thickmap input.nii.gz thickness.nii.gz --verbose

    from thickmap import local_thickness
    thickness = local_thickness(mask)
"""

from thickmap.distance_map import squared_distance_map
from thickmap.errors import (
    CapacityExceededError, Interrupted, InvalidArgumentError, ThicknessMapError,
)
from thickmap.grid import Block, VoxelGrid
from thickmap.pipeline import (
    MEMORY_PROFILES, Stage, ThicknessPipeline, ThicknessSettings, finalize_thickness,
    local_thickness,
)
from thickmap.radius_map import squared_radius_map
from thickmap.ridge import round_squared_ridge, squared_distance_ridge
