"""
Test grid geometry utilities.

Validates:
- GridHeader creation, validation and immutability
- VoxelGrid ownership (read-only values)
- Editor <-> file axis swap
- GridConfig spacing derivation and header conversion
- Lattice positions and visible-subset derivation
"""

import colorsys
import dataclasses
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from GateDose.grid_utils import (
    GridHeader,
    VoxelGrid,
    GridConfig,
    swap_axes,
    lattice_positions,
    derive_visible_subset,
    dose_colors,
    clamp_thresholds,
)


def test_header_creation():
    """Test GridHeader creation and properties."""
    print("\n[1/10] Testing GridHeader creation...")

    header = GridHeader(dimensions=[4, 3, 2], spacing=[2.0, 2.0, 5.0], origin=[-4, 0, 10])

    assert header.dimensions == (4, 3, 2)
    assert header.spacing == (2.0, 2.0, 5.0)
    assert header.origin == (-4.0, 0.0, 10.0)
    assert header.element_type == "MET_FLOAT"
    assert header.big_endian is False
    assert header.voxel_count == 24
    assert header.array_shape == (2, 3, 4)

    min_point, max_point = header.physical_bounds()
    np.testing.assert_allclose(min_point, [-4.0, 0.0, 10.0])
    np.testing.assert_allclose(max_point, [2.0, 4.0, 15.0])
    print(f"  ✓ {header}")


def test_header_is_immutable():
    """Headers are shared by value and cannot be modified."""
    print("\n[2/10] Testing GridHeader immutability...")

    header = GridHeader(dimensions=(2, 2, 2), spacing=(1, 1, 1))
    with pytest.raises(dataclasses.FrozenInstanceError):
        header.dimensions = (3, 3, 3)

    changed = dataclasses.replace(header, big_endian=True)
    assert changed.big_endian is True
    assert header.big_endian is False
    print("  ✓ Header frozen; replace() builds a new one")


class TestHeaderValidation:

    def test_zero_dimension_rejected(self):
        with pytest.raises(ValueError, match="dimensions"):
            GridHeader(dimensions=(0, 1, 1), spacing=(1, 1, 1))

    def test_negative_spacing_rejected(self):
        with pytest.raises(ValueError, match="spacing"):
            GridHeader(dimensions=(1, 1, 1), spacing=(1, -1, 1))

    def test_wrong_arity_rejected(self):
        with pytest.raises(ValueError, match="3 numbers"):
            GridHeader(dimensions=(1, 1), spacing=(1, 1, 1))

    def test_non_finite_origin_rejected(self):
        with pytest.raises(ValueError, match="origin"):
            GridHeader(dimensions=(1, 1, 1), spacing=(1, 1, 1), origin=(0, float("nan"), 0))


def test_voxel_grid_values_read_only():
    """VoxelGrid owns a read-only float32 array."""
    print("\n[3/10] Testing VoxelGrid ownership...")

    header = GridHeader(dimensions=(3, 2, 1), spacing=(1, 1, 1))
    source = np.arange(6, dtype=np.float64)
    grid = VoxelGrid(header, source)

    assert grid.values.dtype == np.float32
    assert len(grid) == 6
    assert grid.as_array().shape == (1, 2, 3)
    assert grid.as_array()[0, 1, 2] == 5.0

    with pytest.raises(ValueError):
        grid.values[0] = 42.0

    # Caller's array is copied, not aliased
    source[0] = 99.0
    assert grid.values[0] == 0.0
    print("  ✓ Values copied and write-protected")


def test_voxel_grid_size_mismatch():
    header = GridHeader(dimensions=(3, 2, 1), spacing=(1, 1, 1))
    with pytest.raises(ValueError, match="requires 6"):
        VoxelGrid(header, np.zeros(5))


def test_value_range_ignores_non_finite():
    header = GridHeader(dimensions=(4, 1, 1), spacing=(1, 1, 1))
    grid = VoxelGrid(header, [1.0, np.nan, -2.5, 7.0])
    assert grid.value_range() == (-2.5, 7.0)


def test_swap_axes_is_involution():
    """Applying the axis swap twice returns the original vector."""
    print("\n[4/10] Testing axis swap...")

    assert swap_axes((1, 2, 3)) == (1, 3, 2)
    assert swap_axes(swap_axes((1.5, -2.0, 7.25))) == (1.5, -2.0, 7.25)

    rng = np.random.default_rng(7)
    points = rng.normal(size=(20, 3))
    np.testing.assert_array_equal(swap_axes(swap_axes(points)), points)
    np.testing.assert_array_equal(swap_axes(points)[:, 1], points[:, 2])
    print("  ✓ swap_axes(swap_axes(v)) == v")


def test_swap_axes_rejects_wrong_length():
    with pytest.raises(ValueError):
        swap_axes((1, 2))
    with pytest.raises(ValueError):
        swap_axes(np.zeros((4, 2)))


def test_grid_config_derivation():
    """domainSize=(100,50,100), voxelCount=(10,5,10) -> spacing 10, 500 voxels."""
    print("\n[5/10] Testing export dimension derivation...")

    config = GridConfig(domain_size=(100, 50, 100), voxel_count=(10, 5, 10))
    assert config.spacing == (10.0, 10.0, 10.0)

    header = config.to_header()
    assert header.dimensions == (10, 10, 5)
    assert header.spacing == (10.0, 10.0, 10.0)
    assert header.voxel_count == 500
    assert header.element_type == "MET_FLOAT"
    assert header.big_endian is False
    print(f"  ✓ {header}")


def test_grid_config_swaps_anisotropic_axes():
    config = GridConfig(domain_size=(30, 40, 10), voxel_count=(3, 2, 1), offset=(1, 2, 3))
    assert config.spacing == (10.0, 20.0, 10.0)

    header = config.to_header()
    assert header.dimensions == (3, 1, 2)
    assert header.spacing == (10.0, 10.0, 20.0)
    assert header.origin == (1.0, 3.0, 2.0)


def test_grid_config_validation():
    with pytest.raises(ValueError, match="voxel_count"):
        GridConfig(domain_size=(10, 10, 10), voxel_count=(1, 0, 1))
    with pytest.raises(ValueError, match="domain_size"):
        GridConfig(domain_size=(10, -10, 10), voxel_count=(1, 1, 1))


def test_fractional_counts_rejected():
    """A count of 10.7 is an error, not 10 voxels."""
    with pytest.raises(ValueError, match="voxel_count must contain whole numbers"):
        GridConfig(domain_size=(10, 10, 10), voxel_count=(10.7, 1, 1))
    with pytest.raises(ValueError, match="dimensions must contain whole numbers"):
        GridHeader(dimensions=(np.float64(2.5), 1, 1), spacing=(1, 1, 1))

    config = GridConfig(domain_size=(10, 10, 10), voxel_count=(10.0, np.int64(5), 1))
    assert config.voxel_count == (10, 5, 1)


def test_lattice_positions_editor_order():
    """Positions follow payload order (x fastest) and land in editor order."""
    print("\n[6/10] Testing lattice positions...")

    header = GridConfig(domain_size=(30, 40, 10), voxel_count=(3, 2, 1), offset=(1, 2, 3)).to_header()
    positions = lattice_positions(header)

    assert positions.shape == (6, 3)
    np.testing.assert_allclose(positions[0], [1, 2, 3])
    np.testing.assert_allclose(positions[2], [21, 2, 3])
    # second file-order slab is one editor-y step up
    np.testing.assert_allclose(positions[3], [1, 22, 3])

    file_positions = lattice_positions(header, editor_order=False)
    np.testing.assert_allclose(file_positions[3], [1, 3, 22])

    slab = lattice_positions(header, z_range=(1, 2))
    np.testing.assert_allclose(slab, positions[3:])
    print("  ✓ Lattice matches editor-space placement")


def test_dose_colors_match_hsl_ramp():
    """Colour ramp equals HSL(hue=(1-n)*0.66, s=1, l=0.5)."""
    print("\n[7/10] Testing colour ramp...")

    values = np.array([0.0, 12.5, 25.0, 50.0, 80.0, 100.0])
    colors = dose_colors(values, 0.0, 100.0)
    for value, rgb in zip(values, colors):
        expected = colorsys.hls_to_rgb((1.0 - value / 100.0) * 0.66, 0.5, 1.0)
        np.testing.assert_allclose(rgb, expected, atol=1e-6)

    np.testing.assert_allclose(colors[-1], [1.0, 0.0, 0.0], atol=1e-6)
    print("  ✓ Low dose blue, high dose red")


def test_dose_colors_flat_field():
    colors = dose_colors(np.array([5.0, 5.0]), 5.0, 5.0)
    assert colors.shape == (2, 3)
    assert np.all(np.isfinite(colors))


def test_derive_visible_subset():
    """Only voxels inside the inclusive window are returned."""
    print("\n[8/10] Testing visible subset...")

    header = GridHeader(dimensions=(3, 1, 1), spacing=(10, 10, 10), origin=(0, 0, 0))
    grid = VoxelGrid(header, [0.0, 50.0, 100.0])

    positions, colors = derive_visible_subset(grid, 40.0, 100.0)
    assert positions.shape == (2, 3)
    assert colors.shape == (2, 3)
    np.testing.assert_allclose(positions, [[10, 0, 0], [20, 0, 0]])
    np.testing.assert_allclose(colors[1], [1.0, 0.0, 0.0], atol=1e-6)

    positions, _ = derive_visible_subset(grid, 101.0, 200.0)
    assert positions.shape == (0, 3)

    # backing array untouched
    np.testing.assert_array_equal(grid.values, [0.0, 50.0, 100.0])
    print("  ✓ Threshold window applied without mutating the grid")


def test_clamp_thresholds():
    """Moving one end past the other drags it along."""
    print("\n[9/10] Testing threshold clamping...")

    assert clamp_thresholds(60.0, 50.0, moved="min") == (60.0, 60.0)
    assert clamp_thresholds(60.0, 50.0, moved="max") == (50.0, 50.0)
    assert clamp_thresholds(10.0, 50.0, moved="min") == (10.0, 50.0)
    with pytest.raises(ValueError):
        clamp_thresholds(1.0, 2.0, moved="both")


def test_sitk_round_trip():
    """Test conversion to and from SimpleITK images."""
    print("\n[10/10] Testing SimpleITK interop...")
    sitk = pytest.importorskip("SimpleITK")

    header = GridHeader(dimensions=(4, 3, 2), spacing=(1.5, 2.0, 2.5), origin=(-3, 0, 7))
    grid = VoxelGrid(header, np.arange(24, dtype=np.float32))

    image = grid.to_sitk_image()
    assert image.GetSize() == (4, 3, 2)
    np.testing.assert_allclose(image.GetSpacing(), header.spacing)
    np.testing.assert_allclose(image.GetOrigin(), header.origin)
    np.testing.assert_array_equal(sitk.GetArrayFromImage(image), grid.as_array())

    restored = VoxelGrid.from_sitk_image(image)
    assert restored.header == header
    np.testing.assert_array_equal(restored.values, grid.values)
    print("  ✓ SimpleITK image round trip")


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
