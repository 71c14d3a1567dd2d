from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from .config import DvhConfig
from .errors import NegativeDoseError
from .grid import ScalarGrid
from .statistics import MaskedStatistics, masked_values

logger = logging.getLogger(__name__)


@dataclass
class DvhCurve:
    """Cumulative DVH: percent of the structure volume receiving at least each dose."""

    name: str
    doses: np.ndarray
    volumes: np.ndarray  # percent of total volume
    total_volume_cc: float
    structure_id: Optional[str] = None
    is_dose_volume: bool = True
    dose_unit: str = "Gy"
    metadata: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.doses = np.asarray(self.doses, dtype=np.float64)
        self.volumes = np.asarray(self.volumes, dtype=np.float64)
        if self.doses.shape != self.volumes.shape or self.doses.ndim != 1:
            raise ValueError(
                f"dose and volume samples must be 1D of equal length "
                f"({self.doses.shape} vs {self.volumes.shape})"
            )

    def __len__(self) -> int:
        return int(self.doses.size)

    def volumes_cc(self, total_volume_cc: Optional[float] = None) -> np.ndarray:
        total = self.total_volume_cc if total_volume_cc is None else total_volume_cc
        return self.volumes * total / 100.0


def dvh_abscissae(
    stats: MaskedStatistics,
    is_dose_volume: bool,
    config: DvhConfig,
    dose_max: Optional[float] = None,
) -> np.ndarray:
    """Sample positions of a curve, before the origin anchor is applied."""
    if is_dose_volume:
        if stats.min_dose < 0:
            raise NegativeDoseError("The dose volume contains negative dose values")
        start = config.start_value
        step = config.step_size
        upper = stats.max_dose if dose_max is None else dose_max
        n = max(1, int(math.ceil((upper - start) / step)) + 1)
    else:
        start = stats.min_dose
        n = config.non_dose_samples
        step = (stats.max_dose - stats.min_dose) / float(n - 1)
    return start + np.arange(n, dtype=np.float64) * step


def cumulative_percent(values: np.ndarray, abscissae: np.ndarray) -> np.ndarray:
    """Percent of ``values`` that are not strictly below each abscissa."""
    total = values.size
    below = np.searchsorted(np.sort(values, kind="stable"), abscissae, side="left")
    return (1.0 - below / float(total)) * 100.0


def build_curve(
    dose: ScalarGrid,
    mask: ScalarGrid,
    stats: MaskedStatistics,
    is_dose_volume: bool = True,
    config: Optional[DvhConfig] = None,
    *,
    dose_max: Optional[float] = None,
    name: str = "",
    structure_id: Optional[str] = None,
    values: Optional[np.ndarray] = None,
) -> DvhCurve:
    """Build the cumulative histogram of the dose inside ``mask``.

    Dose volumes are sampled from ``config.start_value`` with a fixed step up
    to ``dose_max`` (the maximum of the whole dose grid, so every structure of
    a run shares one abscissa grid) or the structure maximum when it is not
    given. Other volumes are sampled across their own [min, max] range.

    A point at (0, 100%) is prepended when the first abscissa is not negative.
    Otherwise the first abscissa itself is moved to 0.

    Raises:
        NegativeDoseError: a dose volume has negative values inside the mask.
    """
    config = config or DvhConfig()
    if values is None:
        values = masked_values(dose, mask)

    abscissae = dvh_abscissae(stats, is_dose_volume, config, dose_max)
    percents = cumulative_percent(values, abscissae)

    if abscissae[0] >= 0:
        doses = np.concatenate(([0.0], abscissae))
        volumes = np.concatenate(([100.0], percents))
    else:
        doses = abscissae.copy()
        doses[0] = 0.0
        volumes = percents

    logger.debug(
        "Built DVH for %s: %d samples, range %.3f-%.3f",
        name or structure_id,
        doses.size,
        abscissae[0],
        abscissae[-1],
    )
    return DvhCurve(
        name=name or (structure_id or ""),
        doses=doses,
        volumes=volumes,
        total_volume_cc=stats.total_volume_cc,
        structure_id=structure_id,
        is_dose_volume=is_dose_volume,
        dose_unit=config.dose_unit,
    )
