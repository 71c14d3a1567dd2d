from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Dict, List, Optional, Sequence, Union

from .config import DvhConfig, MetricSpec
from .errors import DvhError
from .geometry import OversamplingPolicy, Structure, prepare_fixed_dose, reconcile
from .grid import ScalarGrid
from .histogram import DvhCurve, build_curve
from .metrics import MetricsTable, recompute_metrics_table
from .serialization import export_curves, export_metrics_table
from .statistics import MaskedStatistics, masked_values, statistics_from_values
from .utils import ProgressCallback, run_tasks_with_adaptive_workers

logger = logging.getLogger(__name__)


@dataclass
class StructureDvhResult:
    structure_id: str
    name: str
    curve: Optional[DvhCurve] = None
    statistics: Optional[MaskedStatistics] = None
    oversampling_factor: Optional[float] = None
    error: Optional[DvhError] = None
    generation: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.curve is not None


def compute_dvh_for_structure(
    dose: ScalarGrid,
    structure: Structure,
    policy: Optional[OversamplingPolicy] = None,
    config: Optional[DvhConfig] = None,
    *,
    is_dose_volume: bool = True,
    dose_max: Optional[float] = None,
    oversampled_dose: Optional[ScalarGrid] = None,
) -> StructureDvhResult:
    """Reconcile, accumulate and bin one structure.

    Raises:
        GeometryError, VoxelOverlapError, NegativeDoseError: the structure
            has no DVH.
    """
    config = config or DvhConfig()
    policy = policy or config.policy()
    start = perf_counter()

    try:
        grids = reconcile(dose, structure, policy, oversampled_dose=oversampled_dose)
        values = masked_values(grids.dose, grids.mask)
        stats = statistics_from_values(values, grids.dose.voxel_volume_mm3)
        curve = build_curve(
            grids.dose,
            grids.mask,
            stats,
            is_dose_volume,
            config,
            dose_max=dose_max,
            name=structure.name,
            structure_id=structure.id,
            values=values,
        )
    except DvhError as exc:
        if exc.structure is None:
            exc.structure = structure.name
        raise

    curve.metadata["oversampling_factor"] = grids.oversampling_factor
    logger.debug(
        "DVH for %s: %d voxels, %.3f cc, factor %.2f, %.2fs",
        structure.name,
        stats.voxel_count,
        stats.total_volume_cc,
        grids.oversampling_factor,
        perf_counter() - start,
    )
    return StructureDvhResult(
        structure_id=structure.id,
        name=structure.name,
        curve=curve,
        statistics=stats,
        oversampling_factor=grids.oversampling_factor,
    )


def compute_dvhs(
    dose: ScalarGrid,
    structures: Sequence[Structure],
    config: Optional[DvhConfig] = None,
    *,
    is_dose_volume: bool = True,
    progress_callback: Optional[ProgressCallback] = None,
    generation: int = 0,
) -> List[StructureDvhResult]:
    """Compute DVHs for all structures, one task per structure.

    Never raises for a single structure: every entry of the returned list
    (in input order) has either a curve or an error.
    """
    config = config or DvhConfig()
    policy = config.policy()
    structures = list(structures)
    if not structures:
        return []

    # Shared abscissa grid for every structure of this dose volume
    dose_max = float(dose.array.max()) if is_dose_volume else None

    oversampled_dose = None
    if not policy.automatic:
        oversampled_dose = prepare_fixed_dose(dose, policy.factor)

    def _task(structure: Structure) -> StructureDvhResult:
        try:
            result = compute_dvh_for_structure(
                dose,
                structure,
                policy,
                config,
                is_dose_volume=is_dose_volume,
                dose_max=dose_max,
                oversampled_dose=oversampled_dose,
            )
        except DvhError as exc:
            logger.warning("DVH not computed: %s", exc)
            result = StructureDvhResult(structure_id=structure.id, name=structure.name, error=exc)
        result.generation = generation
        return result

    raw = run_tasks_with_adaptive_workers(
        "DVH",
        structures,
        _task,
        max_workers=config.effective_workers(),
        logger=logger,
        show_progress=len(structures) > 1,
        progress_callback=progress_callback,
        describe=lambda s: s.name,
    )

    results: List[StructureDvhResult] = []
    for structure, result in zip(structures, raw):
        if result is None:
            result = StructureDvhResult(
                structure_id=structure.id,
                name=structure.name,
                error=DvhError("DVH computation failed unexpectedly", structure=structure.name),
                generation=generation,
            )
        results.append(result)

    failed = sum(1 for r in results if not r.ok)
    logger.info("Computed %d DVH(s), %d failed (%s)", len(results) - failed, failed, policy.describe())
    return results


class DvhSession:
    """Curves and metrics table of one dose volume, updated by whole runs.

    Every run is tagged with a generation number; results of a run that was
    superseded before it finished are dropped. The metrics table is only
    written under the session lock.
    """

    def __init__(
        self,
        dose: ScalarGrid,
        config: Optional[DvhConfig] = None,
        *,
        is_dose_volume: bool = True,
        dose_volume_name: str = "",
    ) -> None:
        self.config = config or DvhConfig()
        self.is_dose_volume = is_dose_volume
        self.dose_volume_name = dose_volume_name
        self._dose = dose
        self._lock = threading.Lock()
        self._generation = 0
        self._results: List[StructureDvhResult] = []
        self.table = MetricsTable()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def dose(self) -> ScalarGrid:
        return self._dose

    def set_dose(self, dose: ScalarGrid) -> None:
        """Switch dose volume; runs still in flight become stale."""
        with self._lock:
            self._dose = dose
            self._generation += 1

    def begin(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def run(
        self,
        structures: Sequence[Structure],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> List[StructureDvhResult]:
        generation = self.begin()
        results = compute_dvhs(
            self._dose,
            structures,
            self.config,
            is_dose_volume=self.is_dose_volume,
            progress_callback=progress_callback,
            generation=generation,
        )
        self.publish(generation, results)
        return results

    def publish(self, generation: int, results: Sequence[StructureDvhResult]) -> bool:
        """Replace curves and table rows with ``results`` unless they are stale."""
        with self._lock:
            if generation != self._generation:
                logger.debug(
                    "Dropping %d DVH result(s) of stale generation %d (current %d)",
                    len(results),
                    generation,
                    self._generation,
                )
                return False
            self._results = [r for r in results if r.ok]
            self._rebuild_table()
            return True

    def _rebuild_table(self) -> None:
        recompute_metrics_table(
            [(r.curve, r.statistics) for r in self._results],
            self.config.metrics,
            dose_unit=self.config.dose_unit,
            volume_name=self.dose_volume_name,
            table=self.table,
        )

    def set_metric_spec(self, metrics: MetricSpec) -> MetricsTable:
        with self._lock:
            self.config.metrics = metrics
            self._rebuild_table()
            return self.table

    @property
    def curves(self) -> Dict[str, DvhCurve]:
        with self._lock:
            return {r.structure_id: r.curve for r in self._results}

    @property
    def oversampling_factors(self) -> Dict[str, float]:
        with self._lock:
            return {r.structure_id: r.oversampling_factor for r in self._results}

    def is_visible(self, structure_id: str) -> bool:
        with self._lock:
            return self.table.is_visible(structure_id)

    def set_visible(self, structure_id: str, visible: bool) -> None:
        with self._lock:
            self.table.set_visible(structure_id, visible)

    def export_curves(self, path: Union[str, Path], delimiter: Optional[str] = None) -> Path:
        with self._lock:
            curves = [r.curve for r in self._results]
        return export_curves(curves, path, delimiter or self.config.delimiter, self.config.dose_unit)

    def export_metrics(self, path: Union[str, Path], delimiter: Optional[str] = None) -> Path:
        with self._lock:
            return export_metrics_table(self.table, path, delimiter or self.config.delimiter)
