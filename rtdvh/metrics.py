from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import MetricSpec
from .errors import InvalidMetricInputError
from .histogram import DvhCurve
from .statistics import MaskedStatistics

logger = logging.getLogger(__name__)

SHOW_COLUMN = "Show"
STRUCTURE_COLUMN = "Structure"
VOLUME_NAME_COLUMN = "Volume name"
VOLUME_CC_COLUMN = "Volume (cc)"

_V_METRIC_RE = re.compile(r"^V\d")
_D_METRIC_RE = re.compile(r"^D\d")


def _check_curve(curve: DvhCurve, total_volume_cc: float) -> None:
    if not total_volume_cc:
        raise InvalidMetricInputError("structure volume is zero or missing", structure=curve.name)
    if len(curve) < 2:
        raise InvalidMetricInputError(
            f"DVH needs at least 2 samples, has {len(curve)}", structure=curve.name
        )


def volume_at_dose(
    curve: DvhCurve,
    dose: float,
    total_volume_cc: Optional[float] = None,
    as_percent: bool = False,
) -> float:
    """Volume receiving at least ``dose`` (V metric), in cc or percent.

    The interpolant runs through samples 1..N with sample 0 added as a
    separate point (replacing any sample at the same dose), and is clamped
    outside its domain.
    """
    total = curve.total_volume_cc if total_volume_cc is None else total_volume_cc
    _check_curve(curve, total)

    points: Dict[float, float] = dict(zip(curve.doses[1:].tolist(), curve.volumes[1:].tolist()))
    points[float(curve.doses[0])] = float(curve.volumes[0])
    xs = np.array(sorted(points))
    ys = np.array([points[x] for x in xs])

    percent = float(np.interp(float(dose), xs, ys))
    if as_percent:
        return percent
    return percent * total / 100.0


def dose_at_volume(
    curve: DvhCurve,
    volume: float,
    is_percent: bool = False,
    total_volume_cc: Optional[float] = None,
) -> float:
    """Minimum dose received by ``volume`` (D metric); volume in cc or percent."""
    total = curve.total_volume_cc if total_volume_cc is None else total_volume_cc
    _check_curve(curve, total)

    target = volume * total / 100.0 if is_percent else volume
    volumes_cc = curve.volumes_cc(total)

    # More volume than the first plateau gets no dose
    if target >= volumes_cc[0]:
        return 0.0
    if target < volumes_cc[-1]:
        return float(curve.doses[-1])

    for i in range(len(curve) - 1):
        v_prev, v_next = volumes_cc[i], volumes_cc[i + 1]
        if v_prev > target >= v_next:
            d_prev, d_next = curve.doses[i], curve.doses[i + 1]
            return float(d_prev + (d_next - d_prev) * (target - v_prev) / (v_next - v_prev))

    # Only reachable for non-monotone curves
    raise InvalidMetricInputError(
        f"no DVH interval brackets volume {target:g} cc", structure=curve.name
    )


def is_v_metric_name(name: str) -> bool:
    return bool(_V_METRIC_RE.match(name or ""))


def is_d_metric_name(name: str) -> bool:
    return bool(_D_METRIC_RE.match(name or ""))


def _unit_postfix(unit: str) -> str:
    return f" ({unit})" if unit else ""


def v_metric_column(dose: float, as_percent: bool) -> str:
    return f"V{dose:g} ({'%' if as_percent else 'cc'})"


def d_metric_column(volume: float, is_percent: bool, dose_unit: str = "Gy") -> str:
    return f"D{volume:g}{'%' if is_percent else 'cc'}{_unit_postfix(dose_unit)}"


@dataclass(frozen=True)
class MetricSchema:
    """Column set of a MetricsTable."""

    metrics: MetricSpec = field(default_factory=MetricSpec)
    dose_unit: str = "Gy"
    is_dose_volume: bool = True

    def _stat_column(self, prefix: str) -> str:
        if self.is_dose_volume:
            return f"{prefix} dose{_unit_postfix(self.dose_unit)}"
        return f"{prefix} intensity"

    @property
    def mean_column(self) -> str:
        return self._stat_column("Mean")

    @property
    def min_column(self) -> str:
        return self._stat_column("Min")

    @property
    def max_column(self) -> str:
        return self._stat_column("Max")

    def static_columns(self) -> List[str]:
        return [
            SHOW_COLUMN,
            STRUCTURE_COLUMN,
            VOLUME_NAME_COLUMN,
            VOLUME_CC_COLUMN,
            self.mean_column,
            self.min_column,
            self.max_column,
        ]

    def v_columns(self) -> List[Tuple[str, float, bool]]:
        spec = self.metrics
        cols = []
        for dose in spec.v_doses:
            if spec.show_v_cc:
                cols.append((v_metric_column(dose, False), dose, False))
            if spec.show_v_percent:
                cols.append((v_metric_column(dose, True), dose, True))
        return cols

    def d_columns(self) -> List[Tuple[str, float, bool]]:
        spec = self.metrics
        if not spec.show_d:
            return []
        cols = [(d_metric_column(v, False, self.dose_unit), v, False) for v in spec.d_volumes_cc]
        cols += [(d_metric_column(v, True, self.dose_unit), v, True) for v in spec.d_volumes_percent]
        return cols

    def columns(self) -> List[str]:
        cols = self.static_columns()
        for name, _, _ in self.v_columns() + self.d_columns():
            if name not in cols:
                cols.append(name)
        return cols


class MetricsTable:
    """Per-structure summary and V/D metrics, one row per computed DVH.

    Rows are keyed by structure id. The column set is owned by ``schema`` and
    only ever replaced as a whole; missing values are NaN.
    """

    def __init__(self, schema: Optional[MetricSchema] = None) -> None:
        self.schema = schema or MetricSchema()
        self._frame = self._empty_frame(self.schema)

    @staticmethod
    def _empty_frame(schema: MetricSchema) -> pd.DataFrame:
        frame = pd.DataFrame(columns=schema.columns())
        frame.index.name = "structure_id"
        return frame

    def __len__(self) -> int:
        return len(self._frame)

    def __contains__(self, structure_id: object) -> bool:
        return structure_id in self._frame.index

    @property
    def columns(self) -> List[str]:
        return list(self._frame.columns)

    @property
    def structure_ids(self) -> List[str]:
        return list(self._frame.index)

    def to_frame(self) -> pd.DataFrame:
        return self._frame.copy()

    def value(self, structure_id: str, column: str):
        return self._frame.at[structure_id, column]

    def is_visible(self, structure_id: str) -> bool:
        if structure_id not in self._frame.index:
            return False
        return bool(self._frame.at[structure_id, SHOW_COLUMN])

    def set_visible(self, structure_id: str, visible: bool) -> None:
        if structure_id not in self._frame.index:
            raise KeyError(structure_id)
        self._frame.at[structure_id, SHOW_COLUMN] = bool(visible)

    def visibility(self) -> Dict[str, bool]:
        return {sid: bool(flag) for sid, flag in self._frame[SHOW_COLUMN].items()}

    def replace(self, schema: MetricSchema, rows: Sequence[Dict[str, object]], index: Sequence[str]) -> None:
        """Swap in a new schema and a fully populated set of rows."""
        frame = pd.DataFrame(list(rows), index=list(index), columns=schema.columns())
        frame.index.name = "structure_id"
        self.schema = schema
        self._frame = frame


def metric_row(
    curve: DvhCurve,
    stats: MaskedStatistics,
    schema: MetricSchema,
    volume_name: str = "",
    visible: bool = True,
) -> Dict[str, object]:
    """One MetricsTable row; metrics that cannot be computed are NaN."""
    row: Dict[str, object] = {
        SHOW_COLUMN: bool(visible),
        STRUCTURE_COLUMN: curve.name,
        VOLUME_NAME_COLUMN: volume_name,
        VOLUME_CC_COLUMN: stats.total_volume_cc,
        schema.mean_column: stats.mean_dose,
        schema.min_column: stats.min_dose,
        schema.max_column: stats.max_dose,
    }
    for column, dose, as_percent in schema.v_columns():
        try:
            row[column] = volume_at_dose(curve, dose, stats.total_volume_cc, as_percent=as_percent)
        except InvalidMetricInputError as exc:
            logger.warning("%s not computed: %s", column, exc)
            row[column] = np.nan
    for column, volume, is_percent in schema.d_columns():
        try:
            row[column] = dose_at_volume(curve, volume, is_percent, stats.total_volume_cc)
        except InvalidMetricInputError as exc:
            logger.warning("%s not computed: %s", column, exc)
            row[column] = np.nan
    return row


def recompute_metrics_table(
    entries: Iterable[Tuple[DvhCurve, MaskedStatistics]],
    metric_spec: Optional[MetricSpec] = None,
    *,
    dose_unit: str = "Gy",
    volume_name: str = "",
    table: Optional[MetricsTable] = None,
) -> MetricsTable:
    """Rebuild a MetricsTable for the given curves and metric selection.

    When ``table`` is given it is rebuilt in place and visibility flags of
    structures already present are kept.
    """
    entries = list(entries)
    is_dose_volume = all(curve.is_dose_volume for curve, _ in entries) if entries else True
    schema = MetricSchema(
        metrics=metric_spec or MetricSpec(),
        dose_unit=dose_unit,
        is_dose_volume=is_dose_volume,
    )
    target = table if table is not None else MetricsTable(schema)
    previous = target.visibility() if table is not None else {}

    rows = []
    index = []
    for curve, stats in entries:
        sid = curve.structure_id or curve.name
        rows.append(metric_row(curve, stats, schema, volume_name, previous.get(sid, True)))
        index.append(sid)
    target.replace(schema, rows, index)
    logger.debug("Metrics table rebuilt: %d row(s), %d column(s)", len(index), len(schema.columns()))
    return target
