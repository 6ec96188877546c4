"""Loading and saving volumes.

NIfTI files (``.nii``, ``.nii.gz``) go through nibabel and keep their
affine.  NIfTI stores arrays in ``(x, y, z)`` order; grids are ``(z, y, x)``,
so arrays are transposed on the way in and out.  ``.npy`` files are read
and written with numpy in grid order and carry no affine.
"""

from pathlib import Path

import nibabel as nib
import numpy as np

from thickmap.errors import InvalidArgumentError
from thickmap.grid import VoxelGrid

NIFTI_SUFFIXES = (".nii", ".nii.gz")


def is_nifti(path):
    return str(path).lower().endswith(NIFTI_SUFFIXES)


def load_volume(path, dtype=np.float32):
    """Load a volume as a VoxelGrid.

    Returns
    -------
    grid : VoxelGrid
    affine : ndarray (4, 4) or None
    """
    path = Path(path)
    print(f"Loading {path}")
    if is_nifti(path):
        img = nib.load(str(path))
        data = np.asarray(img.dataobj, dtype=dtype)
        affine = img.affine.copy()
        # Drop trailing singleton axes (e.g. a 4-D volume with one frame)
        while data.ndim > 3 and data.shape[-1] == 1:
            data = data[..., 0]
        if data.ndim > 3:
            raise InvalidArgumentError(f"{path} has {data.ndim} dimensions, expected <= 3")
        return VoxelGrid.from_array(data.T, dtype=dtype), affine

    if path.suffix.lower() == ".npy":
        data = np.load(path)
        if data.ndim > 3:
            raise InvalidArgumentError(f"{path} has {data.ndim} dimensions, expected <= 3")
        return VoxelGrid.from_array(data, dtype=dtype), None

    raise InvalidArgumentError(f"unsupported volume format: {path}")


def save_volume(path, grid, affine=None):
    """Save a VoxelGrid as NIfTI (float32) or ``.npy`` depending on suffix."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if is_nifti(path):
        if affine is None:
            affine = np.eye(4)
        img = nib.Nifti1Image(np.ascontiguousarray(grid.data.T), affine)
        img.header.set_data_dtype(grid.data.dtype)
        nib.save(img, str(path))
    elif path.suffix.lower() == ".npy":
        np.save(path, grid.data)
    else:
        raise InvalidArgumentError(f"unsupported volume format: {path}")
    print(f"Saved {path}  dimensions={grid.dimensions}  dtype={grid.data.dtype}")
