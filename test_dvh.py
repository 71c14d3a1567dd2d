#!/usr/bin/env python3
"""
Tests for per-structure and batch DVH computation in rtdvh.

Usage:
    pytest test_dvh.py
"""

import logging
import threading

import numpy as np
import pytest

from rtdvh.config import DvhConfig, MetricSpec
from rtdvh.dvh import DvhSession, compute_dvh_for_structure, compute_dvhs
from rtdvh.errors import GeometryError, NegativeDoseError, VoxelOverlapError
from rtdvh.geometry import OversamplingPolicy, Structure
from rtdvh.grid import ScalarGrid

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def _mask(slices, shape=(10, 10, 10), spacing=(2.0, 2.0, 2.0), origin=(0.0, 0.0, 0.0)):
    arr = np.zeros(shape, dtype=np.uint8)
    arr[slices] = 1
    return ScalarGrid.from_array(arr, spacing=spacing, origin=origin)


@pytest.fixture
def structures():
    return [
        Structure(id="low", name="Low", mask=_mask(np.s_[0:3])),
        # Entirely outside the dose grid
        Structure(id="away", name="Away", mask=_mask(np.s_[:], origin=(500.0, 500.0, 500.0))),
        Structure(id="high", name="High", mask=_mask(np.s_[7:10])),
    ]


def test_single_structure_result(uniform_dose_case):
    dose, mask = uniform_dose_case
    result = compute_dvh_for_structure(
        dose, Structure(id="ptv", name="PTV", mask=mask), OversamplingPolicy.fixed(1.0)
    )

    assert result.ok
    assert result.statistics.voxel_count == 500
    assert result.statistics.total_volume_cc == pytest.approx(0.5)
    assert result.oversampling_factor == 1.0
    assert result.curve.volumes[0] == 100.0
    assert result.curve.metadata["oversampling_factor"] == 1.0


def test_single_structure_errors_carry_structure_name(gradient_dose):
    away = Structure(id="away", name="Away", mask=_mask(np.s_[:], origin=(500.0, 500.0, 500.0)))
    with pytest.raises(VoxelOverlapError) as info:
        compute_dvh_for_structure(gradient_dose, away, OversamplingPolicy.fixed(1.0))
    assert info.value.structure == "Away"
    assert str(info.value).startswith("Away:")


def test_batch_keeps_order_and_reports_failures(gradient_dose, structures):
    results = compute_dvhs(gradient_dose, structures, DvhConfig(oversampling_factor=1.0, workers=2))

    assert [r.structure_id for r in results] == ["low", "away", "high"]
    assert results[0].ok and results[2].ok
    assert not results[1].ok
    assert isinstance(results[1].error, VoxelOverlapError)
    assert results[0].statistics.max_dose == 2.0
    assert results[2].statistics.min_dose == 7.0
    logger.info("✓ Batch: %s", [(r.name, r.ok) for r in results])


def test_batch_curves_share_abscissae(gradient_dose, structures):
    results = compute_dvhs(gradient_dose, structures, DvhConfig(oversampling_factor=1.0))
    low, high = results[0].curve, results[2].curve

    # Sampled up to the maximum of the whole dose grid
    assert len(low) == len(high)
    np.testing.assert_allclose(low.doses, high.doses)
    assert low.volumes[-1] == 0.0


def test_negative_dose_fails_only_that_structure():
    values = np.full((10, 10, 10), 3.0)
    values[8:] = -1.0
    dose = ScalarGrid.from_array(values, spacing=(2.0, 2.0, 2.0))
    structures = [
        Structure(id="ok", mask=_mask(np.s_[0:4])),
        Structure(id="neg", mask=_mask(np.s_[6:10])),
    ]
    results = compute_dvhs(dose, structures, DvhConfig(oversampling_factor=1.0))

    assert results[0].ok
    assert isinstance(results[1].error, NegativeDoseError)


def test_missing_representation_is_reported(gradient_dose):
    structures = [
        Structure(id="none", rasterizer=lambda geometry: None),
        Structure(id="ok", mask=_mask(np.s_[0:5])),
    ]
    results = compute_dvhs(gradient_dose, structures)

    assert isinstance(results[0].error, GeometryError)
    assert results[1].ok
    assert results[1].oversampling_factor == 2.0


def test_automatic_factors_recorded_per_structure(gradient_dose):
    fine = ScalarGrid.from_array(np.ones((20, 20, 20), dtype=np.uint8), origin=(-0.5, -0.5, -0.5))
    structures = [
        Structure(id="native", mask=_mask(np.s_[0:5])),
        Structure(id="fine", mask=fine),
    ]
    results = compute_dvhs(gradient_dose, structures, DvhConfig(automatic_oversampling=True))

    assert [r.oversampling_factor for r in results] == [1.0, 2.0]
    assert results[0].statistics.total_volume_cc == pytest.approx(4.0)
    assert results[1].statistics.total_volume_cc == pytest.approx(8.0)


def test_progress_reported_per_structure(gradient_dose, structures):
    calls = []
    compute_dvhs(
        gradient_dose,
        structures,
        DvhConfig(oversampling_factor=1.0, workers=1),
        progress_callback=lambda done, total: calls.append((done, total)),
    )
    assert calls == [(1, 3), (2, 3), (3, 3)]


def test_empty_batch(gradient_dose):
    assert compute_dvhs(gradient_dose, []) == []


def test_session_publishes_successful_structures(gradient_dose, structures):
    config = DvhConfig(oversampling_factor=1.0, metrics=MetricSpec(v_doses=[1.0], d_volumes_percent=[50.0]))
    session = DvhSession(gradient_dose, config, dose_volume_name="dose.nrrd")
    results = session.run(structures)

    assert len(results) == 3
    assert session.table.structure_ids == ["low", "high"]
    assert set(session.curves) == {"low", "high"}
    assert session.oversampling_factors == {"low": 1.0, "high": 1.0}
    assert session.table.value("high", "V1 (cc)") == pytest.approx(session.table.value("high", "Volume (cc)"))
    assert session.is_visible("low")

    session.set_visible("low", False)
    assert not session.is_visible("low")


def test_session_metric_spec_change_rebuilds_columns(gradient_dose, structures):
    session = DvhSession(gradient_dose, DvhConfig(oversampling_factor=1.0, metrics=MetricSpec(v_doses=[1.0])))
    session.run(structures)
    assert "V1 (cc)" in session.table.columns

    table = session.set_metric_spec(MetricSpec(d_volumes_cc=[1.0]))
    assert "V1 (cc)" not in table.columns
    assert "D1cc (Gy)" in table.columns
    assert len(table) == 2


def test_stale_generation_is_dropped(gradient_dose, structures):
    session = DvhSession(gradient_dose, DvhConfig(oversampling_factor=1.0))
    first = session.begin()
    stale = compute_dvhs(gradient_dose, structures[:1], session.config, generation=first)

    second = session.begin()
    fresh = compute_dvhs(gradient_dose, structures, session.config, generation=second)

    assert session.publish(second, fresh)
    assert not session.publish(first, stale)
    assert session.table.structure_ids == ["low", "high"]


def test_dose_change_invalidates_running_batch(gradient_dose, structures):
    session = DvhSession(gradient_dose, DvhConfig(oversampling_factor=1.0))
    generation = session.begin()
    results = compute_dvhs(gradient_dose, structures, session.config, generation=generation)

    session.set_dose(ScalarGrid.from_array(np.zeros((10, 10, 10)), spacing=(2.0, 2.0, 2.0)))
    assert not session.publish(generation, results)
    assert len(session.table) == 0


def test_concurrent_runs_leave_one_consistent_table(gradient_dose, structures):
    session = DvhSession(gradient_dose, DvhConfig(oversampling_factor=1.0, metrics=MetricSpec(v_doses=[2.0])))
    threads = [threading.Thread(target=session.run, args=(structures,)) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert session.table.structure_ids == ["low", "high"]
    assert session.table.columns[-1] == "V2 (cc)"


def test_session_exports(tmp_path, gradient_dose, structures):
    session = DvhSession(gradient_dose, DvhConfig(oversampling_factor=1.0))
    session.run(structures)

    dvh_path = session.export_curves(tmp_path / "dvh.csv")
    metrics_path = session.export_metrics(tmp_path / "metrics.tsv", delimiter="\t")

    header = dvh_path.read_text().splitlines()[0]
    assert header.startswith("Low Dose (Gy),Low Value (% of ")
    assert "Away" not in header
    assert metrics_path.read_text().splitlines()[0].split("\t")[0] == "Structure"
