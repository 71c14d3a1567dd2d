from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .errors import InvalidMetricInputError
from .histogram import DvhCurve

logger = logging.getLogger(__name__)


def agreement_gamma(
    reference: DvhCurve,
    compared: DvhCurve,
    volume_criterion: float,
    dose_criterion: float,
    dose_max: Optional[float] = None,
) -> np.ndarray:
    """Gamma value of every sample of ``compared`` against ``reference``.

    gamma(i) = min over reference samples r of
    sqrt((100 (v_r - v_i) / (volume_criterion * V)) ** 2 + (100 (d_r - d_i) / (dose_criterion * D_max)) ** 2)

    Volumes are in cc with V the reference structure volume; criteria are
    percentages of V and of the maximum dose. Values below 1 agree.
    """
    if volume_criterion <= 0 or dose_criterion <= 0:
        raise ValueError("agreement criteria must be positive")
    total = reference.total_volume_cc
    if not total:
        raise InvalidMetricInputError("reference structure volume is zero", structure=reference.name)
    if len(reference) == 0 or len(compared) == 0:
        raise InvalidMetricInputError("cannot compare empty DVH curves", structure=compared.name)

    if dose_max is None or dose_max <= 0:
        dose_max = float(max(reference.doses.max(), compared.doses.max()))
    if dose_max <= 0:
        raise InvalidMetricInputError("maximum dose is zero", structure=reference.name)

    ref_v = reference.volumes_cc()
    cmp_v = compared.volumes_cc(total)

    dv = 100.0 * (ref_v[None, :] - cmp_v[:, None]) / (volume_criterion * total)
    dd = 100.0 * (reference.doses[None, :] - compared.doses[:, None]) / (dose_criterion * dose_max)
    return np.sqrt(dv ** 2 + dd ** 2).min(axis=1)


def compare_curves(
    reference: DvhCurve,
    compared: DvhCurve,
    volume_criterion: float = 1.0,
    dose_criterion: float = 1.0,
    dose_max: Optional[float] = None,
) -> float:
    """Percent of ``compared`` samples agreeing with ``reference`` (gamma < 1)."""
    gamma = agreement_gamma(reference, compared, volume_criterion, dose_criterion, dose_max)
    agreement = 100.0 * float(np.count_nonzero(gamma < 1.0)) / gamma.size
    logger.debug(
        "DVH agreement %s vs %s: %.2f%% (%.2f%% volume, %.2f%% dose)",
        reference.name,
        compared.name,
        agreement,
        volume_criterion,
        dose_criterion,
    )
    return agreement
