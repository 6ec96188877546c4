"""Local thickness map of a volume.

Foreground is every voxel that differs from the background value.  The
output holds the local diameter: for each foreground voxel the diameter of
the largest inscribed sphere covering it.

Usage:
    python -m thickmap input.nii.gz thickness.nii.gz
    python -m thickmap input.nii.gz ridge.nii.gz --stage ridge --table-cache ~/.cache/thickmap
    python -m thickmap input.npy thickness.npy --profile small --temp-dir /scratch
"""

import argparse
import sys
from pathlib import Path

import numpy as np

from thickmap.errors import ThicknessMapError
from thickmap.pipeline import MEMORY_PROFILES, Stage, ThicknessPipeline, ThicknessSettings
from thickmap.profiling import format_mb, stage
from thickmap.radius_map import parse_memory
from thickmap.volume_io import load_volume, save_volume

STAGES = {
    "dmap2": Stage.DISTANCE_COMPUTED,
    "ridge": Stage.RIDGE_COMPUTED,
    "rmap2": Stage.RADIUS_COMPUTED,
    "thickness": Stage.FINALIZED,
}


def parse_args(argv=None):
    """Parse CLI arguments for thickness_map."""
    parser = argparse.ArgumentParser(
        description="Compute the local thickness map of a volume."
    )
    parser.add_argument("input", help="Input volume (.nii, .nii.gz or .npy)")
    parser.add_argument("output", help="Output volume")
    parser.add_argument(
        "--background", type=float, default=0.0,
        help="Voxel value treated as background (default: 0)",
    )
    parser.add_argument(
        "--round-ridge", action="store_true",
        help="Integer radius approximation of the distance ridge",
    )
    parser.add_argument(
        "--temp-dir",
        help="Directory for temporary files (default: directory of the input)",
    )

    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--profile", choices=list(MEMORY_PROFILES.keys()),
        help="Named memory budget (default: half of RAM)",
    )
    group.add_argument(
        "--max-memory", type=parse_memory,
        help="Memory budget, e.g. 512M or 4G",
    )

    parser.add_argument("--table-cache", help="Directory of the sphere-fit table cache")
    parser.add_argument("--workers", type=int, help="Worker threads (default: all CPUs)")
    parser.add_argument(
        "--stage", choices=list(STAGES.keys()), default="thickness",
        help="Stop after this stage and save its result (default: thickness)",
    )
    parser.add_argument("--verbose", action="store_true", help="Print stage timings")

    args = parser.parse_args(argv)
    if args.temp_dir is None:
        args.temp_dir = str(Path(args.input).resolve().parent)
    return args


def build_settings(args):
    """ThicknessSettings from parsed CLI arguments."""
    options = dict(
        background=args.background,
        round_ridge=args.round_ridge,
        temp_dir=args.temp_dir,
        table_cache_dir=args.table_cache,
        workers=args.workers,
        verbose=args.verbose,
    )
    if args.max_memory is not None:
        options["max_memory"] = args.max_memory
    if args.profile is not None:
        return ThicknessSettings.from_profile(args.profile, **options)
    return ThicknessSettings(**options)


def main(argv=None):
    """Load a volume, run the pipeline, save the result."""
    args = parse_args(argv)
    settings = build_settings(args)

    print("=" * 60)
    print(f"  Thickness map: {args.input}")
    print(f"  Stop after: {args.stage}  |  memory budget: "
          f"{format_mb(settings.max_memory / (1 << 20))}")
    print("=" * 60)

    grid, affine = load_volume(args.input)
    print(f"Volume: {grid}  foreground voxels: "
          f"{int(np.count_nonzero(grid.data != settings.background))}")

    pipeline = ThicknessPipeline(settings)
    with stage("thickness map"):
        try:
            result = pipeline.run(grid, stop_after=STAGES[args.stage])
        except (ThicknessMapError, OSError) as e:
            print(f"\nFATAL: {type(e).__name__} after stage "
                  f"{pipeline.state.name}: {e}")
            sys.exit(1)

    save_volume(args.output, result, affine)


if __name__ == "__main__":
    main()
