"""Pytest fixtures shared by the rtdvh tests."""

import numpy as np
import pytest

from rtdvh.grid import ScalarGrid


@pytest.fixture
def uniform_dose_case():
    """10x10x10 grid at 1 mm, dose 5.0 on a 500 voxel mask and 0 elsewhere."""
    mask = np.zeros((10, 10, 10), dtype=bool)
    mask[:5] = True
    dose = np.where(mask, 5.0, 0.0)
    return ScalarGrid.from_array(dose), ScalarGrid.from_array(mask)


@pytest.fixture
def gradient_dose():
    """Dose rising 1 Gy per slice along z (0..9 Gy), 2 mm voxels."""
    dose = np.broadcast_to(np.arange(10, dtype=float)[:, None, None], (10, 10, 10)).copy()
    return ScalarGrid.from_array(dose, spacing=(2.0, 2.0, 2.0))


@pytest.fixture
def block_mask():
    """Mask over the lower half of a 10x10x10 grid at 2 mm."""
    mask = np.zeros((10, 10, 10), dtype=np.uint8)
    mask[:5] = 1
    return ScalarGrid.from_array(mask, spacing=(2.0, 2.0, 2.0))


@pytest.fixture
def intensity_case():
    """Full mask over values spread evenly from -20 to 80."""
    values = np.linspace(-20.0, 80.0, 1000).reshape(10, 10, 10)
    mask = np.ones((10, 10, 10), dtype=bool)
    return ScalarGrid.from_array(values), ScalarGrid.from_array(mask)
