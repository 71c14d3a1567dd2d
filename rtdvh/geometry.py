from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Union

import numpy as np
import SimpleITK as sitk

from .errors import GeometryError
from .grid import GridGeometry, ScalarGrid, grid_to_image

logger = logging.getLogger(__name__)

Rasterizer = Callable[[GridGeometry], Union[np.ndarray, ScalarGrid, None]]


def round2(value: float) -> float:
    """Round half away from zero to two decimals."""
    return math.floor(value * 100.0 + 0.5) / 100.0


@dataclass(frozen=True)
class OversamplingPolicy:
    automatic: bool = False
    factor: float = 2.0
    clamp: Optional[Tuple[float, float]] = None

    @classmethod
    def fixed(cls, factor: float = 2.0) -> "OversamplingPolicy":
        if factor <= 0:
            raise ValueError(f"oversampling factor must be positive, got {factor}")
        return cls(automatic=False, factor=float(factor))

    @classmethod
    def auto(cls, clamp: Optional[Tuple[float, float]] = None) -> "OversamplingPolicy":
        return cls(automatic=True, factor=-1.0, clamp=clamp)

    def describe(self) -> str:
        return "automatic" if self.automatic else f"fixed x{self.factor:g}"


@dataclass
class Structure:
    """A region of interest to compute a DVH for.

    Either ``mask`` (a native resolution occupancy grid) or ``rasterizer``
    (a callable producing an occupancy array on a requested geometry) must
    be set. ``segmentation`` is carried for the caller and never inspected.
    """

    id: str
    name: str = ""
    mask: Optional[ScalarGrid] = None
    rasterizer: Optional[Rasterizer] = None
    native_spacing: Optional[Tuple[float, float, float]] = None
    segmentation: Any = None

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.id

    @property
    def native_voxel_volume_mm3(self) -> Optional[float]:
        if self.native_spacing is not None:
            sx, sy, sz = self.native_spacing
            return float(sx * sy * sz)
        if self.mask is not None:
            return self.mask.voxel_volume_mm3
        return None


@dataclass(frozen=True)
class ReconciledGrids:
    dose: ScalarGrid
    mask: ScalarGrid
    oversampling_factor: float


def automatic_oversampling_factor(
    dose_voxel_volume_mm3: float,
    native_voxel_volume_mm3: float,
    clamp: Optional[Tuple[float, float]] = None,
) -> float:
    """Per-structure oversampling factor from the voxel volume ratio.

    Cube root of dose voxel volume over native segmentation voxel volume,
    rounded to two decimals.
    """
    if dose_voxel_volume_mm3 <= 0 or native_voxel_volume_mm3 <= 0:
        raise GeometryError(
            f"voxel volumes must be positive (dose {dose_voxel_volume_mm3}, "
            f"structure {native_voxel_volume_mm3})"
        )
    factor = round2((dose_voxel_volume_mm3 / native_voxel_volume_mm3) ** (1.0 / 3.0))
    if clamp is not None:
        lo, hi = clamp
        clamped = min(max(factor, lo), hi)
        if clamped != factor:
            logger.debug("Automatic oversampling factor %.2f clamped to %.2f", factor, clamped)
        factor = clamped
    if factor <= 0:
        # round2 gives 0 for ratios below ~1e-7
        raise GeometryError(
            f"automatic oversampling factor is zero for voxel volume ratio "
            f"{dose_voxel_volume_mm3 / native_voxel_volume_mm3:.3g}"
        )
    return factor


def oversample_geometry(geometry: GridGeometry, factor: float) -> GridGeometry:
    """Divide spacing by ``factor`` keeping the physical bounds of the grid."""
    if factor <= 0:
        raise ValueError(f"oversampling factor must be positive, got {factor}")
    if factor == 1.0:
        return geometry

    new_spacing = tuple(s / factor for s in geometry.spacing)
    new_size = tuple(max(1, int(math.floor(n * factor + 0.5))) for n in geometry.size)

    # Keep the outer voxel corner in place: shift origin by half the old minus half the new spacing
    shift = np.array([(ns - s) / 2.0 for s, ns in zip(geometry.spacing, new_spacing)])
    new_origin = np.asarray(geometry.origin) + geometry.direction_matrix() @ shift

    return GridGeometry(
        size=new_size,
        spacing=new_spacing,
        origin=tuple(float(v) for v in new_origin),
        direction=geometry.direction,
    )


def _resample(grid: ScalarGrid, target: GridGeometry, interpolator: int, pixel_id: int) -> sitk.Image:
    img = grid_to_image(grid)
    return sitk.Resample(img, target.reference_image(), sitk.Transform(), interpolator, 0, pixel_id)


def resample_dose(dose: ScalarGrid, target: GridGeometry) -> ScalarGrid:
    """Trilinear resampling of a dose grid; samples outside the source are 0."""
    if dose.geometry.is_close(target):
        return dose
    img = _resample(dose, target, sitk.sitkLinear, sitk.sitkFloat64)
    return ScalarGrid(sitk.GetArrayFromImage(img), target)


def resample_mask(mask: ScalarGrid, target: GridGeometry) -> ScalarGrid:
    """Nearest neighbour resampling of an occupancy grid, padding with unmasked voxels."""
    if mask.geometry.is_close(target):
        return ScalarGrid(binarize(mask.array), target)
    source = ScalarGrid(binarize(mask.array).astype(np.uint8), mask.geometry)
    img = _resample(source, target, sitk.sitkNearestNeighbor, sitk.sitkUInt8)
    return ScalarGrid(sitk.GetArrayViewFromImage(img) > 0, target)


def binarize(array: np.ndarray) -> np.ndarray:
    arr = np.asarray(array)
    if arr.dtype == bool:
        return arr
    return arr > 0.5


def _rasterize(structure: Structure, target: GridGeometry) -> Optional[ScalarGrid]:
    if structure.rasterizer is None:
        return None
    try:
        result = structure.rasterizer(target)
    except GeometryError as exc:
        logger.debug("Rasterizer for %s failed on target geometry: %s", structure.name, exc)
        return None
    if result is None:
        return None
    if isinstance(result, ScalarGrid):
        # Labelmaps are often cropped to their effective extent; pad to the target
        return resample_mask(result, target)
    arr = np.asarray(result)
    if arr.shape != target.shape:
        logger.debug(
            "Rasterized mask of %s has shape %s, expected %s", structure.name, arr.shape, target.shape
        )
        return None
    return ScalarGrid(binarize(arr), target)


def prepare_fixed_dose(dose: ScalarGrid, factor: float) -> ScalarGrid:
    """Oversample the dose grid once for all structures of a fixed-factor run."""
    return resample_dose(dose, oversample_geometry(dose.geometry, factor))


def reconcile(
    dose: ScalarGrid,
    structure: Structure,
    policy: OversamplingPolicy,
    oversampled_dose: Optional[ScalarGrid] = None,
) -> ReconciledGrids:
    """Put the dose and the structure mask on one shared oversampled geometry.

    Args:
        dose: Native dose grid.
        structure: Structure with a native mask and/or a rasterizer.
        policy: Fixed or automatic oversampling.
        oversampled_dose: Dose already resampled for a fixed-factor run; it is
            computed here when omitted.

    Returns:
        ReconciledGrids with the mask covering the full dose extent.

    Raises:
        GeometryError: When no binary representation can be produced on the
            shared geometry.
    """
    if policy.automatic:
        native_volume = structure.native_voxel_volume_mm3
        if native_volume is None:
            raise GeometryError(
                "native voxel size unknown; cannot derive automatic oversampling factor",
                structure=structure.name,
            )
        factor = automatic_oversampling_factor(dose.voxel_volume_mm3, native_volume, policy.clamp)
        target_dose = resample_dose(dose, oversample_geometry(dose.geometry, factor))
    else:
        factor = policy.factor
        target_dose = oversampled_dose
        if target_dose is None:
            target_dose = prepare_fixed_dose(dose, factor)

    target = target_dose.geometry
    mask = _rasterize(structure, target)
    if mask is None and structure.mask is not None:
        logger.debug("Resampling native mask of %s onto %s", structure.name, target.size)
        mask = resample_mask(structure.mask, target)
    if mask is None:
        raise GeometryError("Unable to acquire binary labelmap", structure=structure.name)

    return ReconciledGrids(dose=target_dose, mask=mask, oversampling_factor=factor)
