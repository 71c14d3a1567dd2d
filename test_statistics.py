#!/usr/bin/env python3
"""
Tests for masked dose statistics in rtdvh.

Usage:
    pytest test_statistics.py
"""

import logging

import numpy as np
import pytest

from rtdvh.errors import GeometryError, VoxelOverlapError
from rtdvh.grid import ScalarGrid
from rtdvh.statistics import compute_statistics

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def test_uniform_dose_statistics(uniform_dose_case):
    dose, mask = uniform_dose_case
    stats = compute_statistics(dose, mask)

    assert stats.voxel_count == 500
    assert stats.total_volume_cc == pytest.approx(0.5)
    assert stats.mean_dose == stats.min_dose == stats.max_dose == 5.0
    logger.info(f"✓ {stats.voxel_count} voxels, {stats.total_volume_cc:.3f} cc")


def test_volume_uses_voxel_size():
    dose = ScalarGrid.from_array(np.full((4, 4, 4), 2.0), spacing=(2.0, 2.5, 3.0))
    mask = ScalarGrid.from_array(np.ones((4, 4, 4), dtype=np.uint8), spacing=(2.0, 2.5, 3.0))
    stats = compute_statistics(dose, mask)
    assert stats.total_volume_cc == pytest.approx(64 * 15.0 * 1e-3)


def test_min_max_mean_over_masked_voxels_only():
    values = np.arange(27, dtype=float).reshape(3, 3, 3)
    mask = np.zeros((3, 3, 3), dtype=bool)
    mask[1, 1, :] = True
    stats = compute_statistics(ScalarGrid.from_array(values), ScalarGrid.from_array(mask))

    assert stats.voxel_count == 3
    assert stats.min_dose == 12.0
    assert stats.max_dose == 14.0
    assert stats.mean_dose == pytest.approx(13.0)


def test_fractional_mask_thresholded_at_half():
    mask = np.array([0.0, 0.4, 0.5, 0.6, 1.0, 0.0, 0.0, 0.0]).reshape(2, 2, 2)
    stats = compute_statistics(ScalarGrid.from_array(np.ones((2, 2, 2))), ScalarGrid.from_array(mask))
    assert stats.voxel_count == 2


def test_negative_values_are_accepted():
    values = np.linspace(-5.0, 5.0, 8).reshape(2, 2, 2)
    stats = compute_statistics(ScalarGrid.from_array(values), ScalarGrid.from_array(np.ones((2, 2, 2))))
    assert stats.min_dose == -5.0
    assert stats.mean_dose == pytest.approx(0.0)


def test_no_overlap_raises_voxel_overlap_error():
    dose = ScalarGrid.from_array(np.full((3, 3, 3), 1.0))
    mask = ScalarGrid.from_array(np.zeros((3, 3, 3), dtype=bool))
    with pytest.raises(VoxelOverlapError, match="do not overlap"):
        compute_statistics(dose, mask)


def test_geometry_mismatch_is_rejected():
    dose = ScalarGrid.from_array(np.ones((3, 3, 3)))
    mask = ScalarGrid.from_array(np.ones((3, 3, 3)), spacing=(1.0, 1.0, 2.0))
    with pytest.raises(GeometryError):
        compute_statistics(dose, mask)
