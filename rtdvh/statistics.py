from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .errors import GeometryError, VoxelOverlapError
from .geometry import binarize
from .grid import ScalarGrid

logger = logging.getLogger(__name__)

CC_PER_MM3 = 1e-3


@dataclass(frozen=True)
class MaskedStatistics:
    voxel_count: int
    min_dose: float
    max_dose: float
    mean_dose: float
    total_volume_cc: float


def masked_values(dose: ScalarGrid, mask: ScalarGrid) -> np.ndarray:
    """Dose samples inside the mask as a flat float64 array."""
    if not dose.geometry.is_close(mask.geometry):
        raise GeometryError(
            f"dose grid {dose.geometry.size} and mask {mask.geometry.size} are not on the same geometry"
        )
    return np.asarray(dose.array, dtype=np.float64)[binarize(mask.array)]


def statistics_from_values(values: np.ndarray, voxel_volume_mm3: float) -> MaskedStatistics:
    count = int(values.size)
    if count == 0:
        raise VoxelOverlapError("Dose volume and the structure do not overlap")
    return MaskedStatistics(
        voxel_count=count,
        min_dose=float(values.min()),
        max_dose=float(values.max()),
        mean_dose=float(values.mean()),
        total_volume_cc=count * voxel_volume_mm3 * CC_PER_MM3,
    )


def compute_statistics(dose: ScalarGrid, mask: ScalarGrid) -> MaskedStatistics:
    """Voxel count, min, max, mean and volume of the dose inside ``mask``.

    Negative dose values are accepted here; the histogram binning decides
    whether they are allowed.

    Raises:
        GeometryError: dose and mask are not on the same geometry.
        VoxelOverlapError: no voxel of the mask intersects the dose grid.
    """
    values = masked_values(dose, mask)
    return statistics_from_values(values, dose.voxel_volume_mm3)
