from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Tuple, Union

import numpy as np
import SimpleITK as sitk

logger = logging.getLogger(__name__)

Vector3 = Tuple[float, float, float]

IDENTITY_DIRECTION: Tuple[float, ...] = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0)


@dataclass(frozen=True)
class GridGeometry:
    """Voxel lattice in SimpleITK conventions.

    ``size`` and ``spacing`` are ordered (x, y, z); ``direction`` is the
    row-major 3x3 direction cosine matrix.
    """

    size: Tuple[int, int, int]
    spacing: Vector3
    origin: Vector3 = (0.0, 0.0, 0.0)
    direction: Tuple[float, ...] = IDENTITY_DIRECTION

    def __post_init__(self) -> None:
        object.__setattr__(self, "size", tuple(int(v) for v in self.size))
        object.__setattr__(self, "spacing", tuple(float(v) for v in self.spacing))
        object.__setattr__(self, "origin", tuple(float(v) for v in self.origin))
        object.__setattr__(self, "direction", tuple(float(v) for v in self.direction))
        if len(self.size) != 3 or len(self.spacing) != 3 or len(self.origin) != 3:
            raise ValueError("only 3D geometries are supported")
        if len(self.direction) != 9:
            raise ValueError("direction must have 9 components")
        if any(s <= 0 for s in self.spacing):
            raise ValueError(f"spacing must be strictly positive, got {self.spacing}")
        if any(n < 1 for n in self.size):
            raise ValueError(f"size must be at least 1 voxel per axis, got {self.size}")

    @property
    def voxel_volume_mm3(self) -> float:
        sx, sy, sz = self.spacing
        return sx * sy * sz

    @property
    def shape(self) -> Tuple[int, int, int]:
        """numpy array shape (z, y, x)."""
        return tuple(reversed(self.size))

    def direction_matrix(self) -> np.ndarray:
        return np.asarray(self.direction, dtype=float).reshape(3, 3)

    def is_close(self, other: "GridGeometry", tol: float = 1e-4) -> bool:
        if self.size != other.size:
            return False
        return (
            np.allclose(self.spacing, other.spacing, atol=tol)
            and np.allclose(self.origin, other.origin, atol=tol)
            and np.allclose(self.direction, other.direction, atol=tol)
        )

    def reference_image(self) -> sitk.Image:
        img = sitk.Image([int(v) for v in self.size], sitk.sitkUInt8)
        self.apply_to(img)
        return img

    def apply_to(self, img: sitk.Image) -> None:
        img.SetSpacing(self.spacing)
        img.SetOrigin(self.origin)
        img.SetDirection(self.direction)

    @classmethod
    def from_image(cls, img: sitk.Image) -> "GridGeometry":
        return cls(
            size=img.GetSize(),
            spacing=img.GetSpacing(),
            origin=img.GetOrigin(),
            direction=img.GetDirection(),
        )


@dataclass(frozen=True)
class ScalarGrid:
    """3D sample array on a GridGeometry. The array is indexed (z, y, x)."""

    array: np.ndarray
    geometry: GridGeometry

    def __post_init__(self) -> None:
        arr = np.asarray(self.array)
        if arr.ndim != 3:
            raise ValueError(f"grid array must be 3D, got shape {arr.shape}")
        if arr.shape != self.geometry.shape:
            raise ValueError(
                f"array shape {arr.shape} does not match geometry size {self.geometry.size}"
            )
        object.__setattr__(self, "array", arr)

    @classmethod
    def from_array(
        cls,
        array: np.ndarray,
        spacing: Sequence[float] = (1.0, 1.0, 1.0),
        origin: Sequence[float] = (0.0, 0.0, 0.0),
        direction: Sequence[float] = IDENTITY_DIRECTION,
    ) -> "ScalarGrid":
        arr = np.asarray(array)
        geometry = GridGeometry(
            size=tuple(reversed(arr.shape)),
            spacing=tuple(spacing),
            origin=tuple(origin),
            direction=tuple(direction),
        )
        return cls(arr, geometry)

    @property
    def voxel_volume_mm3(self) -> float:
        return self.geometry.voxel_volume_mm3


def grid_from_image(img: sitk.Image, dtype=np.float64) -> ScalarGrid:
    if img.GetDimension() != 3:
        raise ValueError(f"expected a 3D image, got {img.GetDimension()}D")
    if img.GetNumberOfComponentsPerPixel() != 1:
        raise ValueError("vector images are not supported")
    arr = sitk.GetArrayFromImage(img).astype(dtype, copy=False)
    return ScalarGrid(arr, GridGeometry.from_image(img))


def grid_to_image(grid: ScalarGrid) -> sitk.Image:
    arr = grid.array
    if arr.dtype == bool:
        arr = arr.astype(np.uint8)
    img = sitk.GetImageFromArray(arr)
    grid.geometry.apply_to(img)
    return img


def read_grid(path: Union[str, Path], dtype=np.float64) -> ScalarGrid:
    """Read any ITK-readable 3D image (NRRD, NIfTI, MHA) into a ScalarGrid."""
    path = Path(path)
    logger.debug("Reading image %s", path)
    img = sitk.ReadImage(str(path))
    return grid_from_image(img, dtype=dtype)


def write_grid(grid: ScalarGrid, path: Union[str, Path]) -> None:
    sitk.WriteImage(grid_to_image(grid), str(path), True)
