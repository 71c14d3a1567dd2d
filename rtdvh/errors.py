from __future__ import annotations

from typing import Optional


class DvhError(Exception):
    """Base class for DVH computation failures.

    ``structure`` names the structure the failure is attached to, when there is one.
    """

    def __init__(self, message: str, structure: Optional[str] = None) -> None:
        super().__init__(message)
        self.structure = structure

    def __str__(self) -> str:
        msg = super().__str__()
        if self.structure:
            return f"{self.structure}: {msg}"
        return msg


class GeometryError(DvhError):
    """Dose and mask could not be put on one grid."""


class VoxelOverlapError(DvhError):
    """The structure mask and the dose grid share no voxel."""


class NegativeDoseError(DvhError):
    """A dose volume contains negative values inside the structure."""


class InvalidMetricInputError(DvhError):
    """A V or D metric was queried on a curve that cannot answer it."""


class SerializationFormatError(DvhError):
    """A DVH table file does not have the expected layout."""

    EXPECTED_HEADER = (
        "expected pairs of header fields '<name> Dose (<unit>)', "
        "'<name> Value (% of <volume> cc)'"
    )

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(f"{message}; {self.EXPECTED_HEADER}")
        self.path = path
