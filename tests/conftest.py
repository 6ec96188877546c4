"""Shared fixtures for the test suite."""

import numpy as np
import pytest

from thickmap.parallel import ParallelLoop


def _ball_mask(radius, size=None):
    """(z, y, x) float32 volume with 1 where |p - centre|^2 < radius^2.

    The centre is the middle voxel; ``size`` defaults to 2 * radius + 3 so
    the ball is surrounded by background.
    """
    if size is None:
        size = 2 * radius + 3
    c = size // 2
    z, y, x = np.mgrid[:size, :size, :size]
    d2 = (x - c) ** 2 + (y - c) ** 2 + (z - c) ** 2
    return (d2 < radius * radius).astype(np.float32), (c, c, c)


def _random_mask(shape, fill=0.65, seed=0):
    """Blobby random binary (z, y, x) volume as float32."""
    rng = np.random.default_rng(seed)
    return (rng.random(shape) < fill).astype(np.float32)


def _brute_force_radius_map(ridge):
    """Largest R2 of every ridge sphere covering each voxel, by direct painting."""
    d, h, w = ridge.shape
    z, y, x = np.mgrid[:d, :h, :w]
    out = np.zeros(ridge.shape, dtype=np.float32)
    for cz, cy, cx in zip(*np.nonzero(ridge)):
        r2 = ridge[cz, cy, cx]
        inside = (x - cx) ** 2 + (y - cy) ** 2 + (z - cz) ** 2 < r2
        out[inside] = np.maximum(out[inside], r2)
    return out


@pytest.fixture
def loop():
    """A small worker pool, shut down after the test."""
    with ParallelLoop(workers=3) as pool:
        yield pool


@pytest.fixture
def ball_mask():
    """Factory fixture that returns the _ball_mask helper."""
    return _ball_mask


@pytest.fixture
def random_mask():
    """Factory fixture that returns the _random_mask helper."""
    return _random_mask


@pytest.fixture
def brute_force_radius_map():
    """Factory fixture that returns the _brute_force_radius_map helper."""
    return _brute_force_radius_map
