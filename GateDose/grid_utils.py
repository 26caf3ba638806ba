"""
Grid geometry utilities for dose-field export and import.

Provides the immutable header record shared by every codec, the float32
voxel container, the export grid configuration, and the fixed axis swap
between the editor's coordinate convention and the MetaImage file order.

Key objects:
- GridHeader: shape/spacing/offset/element type of a voxel grid (file order)
- VoxelGrid: dense float32 values paired with one GridHeader
- GridConfig: user-declared export domain in editor order
- swap_axes(): editor <-> file axis permutation (its own inverse)
- derive_visible_subset(): threshold window -> positions and colours
"""

import logging
from dataclasses import dataclass, field
from typing import Tuple, Optional, Sequence

import numpy as np

try:
    import SimpleITK as sitk
    SITK_AVAILABLE = True
except ImportError:
    SITK_AVAILABLE = False
    sitk = None

logger = logging.getLogger(__name__)

Vec3 = Tuple[float, float, float]


def swap_axes(vec):
    """
    Permute a 3-vector between editor order and MetaImage file order.

    The editor is Y-up; the simulation toolkit stores grids with the
    vertical axis last. Editor (x, y, z) maps to file (x, z, y) and back,
    so the same call serves both directions.

    Parameters
    ----------
    vec : sequence of 3 values, or np.ndarray of shape (..., 3)

    Returns
    -------
    tuple or np.ndarray
        Tuple for sequence input, array (same shape) for array input.
    """
    if isinstance(vec, np.ndarray):
        if vec.shape[-1] != 3:
            raise ValueError(f"Expected trailing dimension 3, got shape {vec.shape}")
        return vec[..., [0, 2, 1]]
    if len(vec) != 3:
        raise ValueError(f"Expected 3 components, got {len(vec)}")
    return (vec[0], vec[2], vec[1])


def as_triple(values, name: str, cast) -> tuple:
    """
    Convert a 3-sequence with ``cast``, raising ValueError naming ``name``.

    With ``cast=int`` numeric values must be whole numbers; 10.7 is
    rejected rather than truncated.
    """
    try:
        values = tuple(values)
        items = tuple(cast(v) for v in values)
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValueError(f"{name} must contain 3 numbers, got {values!r}") from exc
    if len(items) != 3:
        raise ValueError(f"{name} must contain 3 numbers, got {len(items)}")
    if cast is int and any(i != v for i, v in zip(items, values) if not isinstance(v, str)):
        raise ValueError(f"{name} must contain whole numbers, got {values!r}")
    return items


@dataclass(frozen=True)
class GridHeader:
    """
    Immutable description of a voxel grid in MetaImage file axis order.

    Attributes
    ----------
    dimensions : tuple of int
        Voxel counts per axis (nx, ny, nz), all > 0
    spacing : tuple of float
        Voxel size per axis, all > 0
    origin : tuple of float
        World position of voxel (0, 0, 0)
    element_type : str
        MetaImage element token, e.g. 'MET_FLOAT'
    big_endian : bool
        True when the payload is stored most-significant byte first
    extra : tuple of (str, str)
        Header fields this package does not interpret, kept verbatim

    Notes
    -----
    - The first dimension varies fastest in the payload.
    - numpy arrays built from a header are shaped (nz, ny, nx).
    """
    dimensions: Tuple[int, int, int]
    spacing: Vec3
    origin: Vec3 = (0.0, 0.0, 0.0)
    element_type: str = "MET_FLOAT"
    big_endian: bool = False
    extra: Tuple[Tuple[str, str], ...] = field(default=(), compare=False)

    def __post_init__(self):
        dims = as_triple(self.dimensions, "dimensions", int)
        spacing = as_triple(self.spacing, "spacing", float)
        origin = as_triple(self.origin, "origin", float)

        if any(d <= 0 for d in dims):
            raise ValueError(f"dimensions must be > 0, got {dims}")
        if any(not np.isfinite(s) or s <= 0 for s in spacing):
            raise ValueError(f"spacing must be > 0, got {spacing}")
        if not all(np.isfinite(o) for o in origin):
            raise ValueError(f"origin must be finite, got {origin}")

        object.__setattr__(self, "dimensions", dims)
        object.__setattr__(self, "spacing", spacing)
        object.__setattr__(self, "origin", origin)
        object.__setattr__(self, "extra", tuple((str(k), str(v)) for k, v in self.extra))

    @property
    def voxel_count(self) -> int:
        # Python ints do not overflow
        nx, ny, nz = self.dimensions
        return nx * ny * nz

    @property
    def array_shape(self) -> Tuple[int, int, int]:
        """numpy shape (nz, ny, nx) for this header."""
        return tuple(reversed(self.dimensions))

    def physical_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Get the lattice bounding box in world units (file order).

        Returns
        -------
        min_point : np.ndarray
            Position of voxel (0, 0, 0)
        max_point : np.ndarray
            Position of the last voxel
        """
        origin = np.array(self.origin)
        max_point = origin + (np.array(self.dimensions) - 1) * np.array(self.spacing)
        return origin, max_point

    def __repr__(self) -> str:
        return (
            f"GridHeader(dims={self.dimensions}, spacing={self.spacing}, "
            f"origin={self.origin}, type={self.element_type}, "
            f"msb={self.big_endian})"
        )


class VoxelGrid:
    """
    Dense float32 scalar field paired with its GridHeader.

    The backing array is flat, in payload order (x fastest), and marked
    read-only: threshold changes and other display updates produce new
    arrays instead of editing this one.

    Parameters
    ----------
    header : GridHeader
        Geometry of the grid, file axis order
    values : array-like
        voxel_count scalars, flat or shaped (nz, ny, nx)
    """

    def __init__(self, header: GridHeader, values):
        data = np.array(values, dtype=np.float32).reshape(-1)
        if data.size != header.voxel_count:
            raise ValueError(
                f"values has {data.size} elements, header {header.dimensions} "
                f"requires {header.voxel_count}"
            )
        data.flags.writeable = False
        self.header = header
        self._values = data

    @property
    def values(self) -> np.ndarray:
        """Flat read-only float32 view in payload order."""
        return self._values

    def as_array(self) -> np.ndarray:
        """Read-only view shaped (nz, ny, nx)."""
        return self._values.reshape(self.header.array_shape)

    def value_range(self) -> Tuple[float, float]:
        finite = self._values[np.isfinite(self._values)]
        if finite.size == 0:
            return 0.0, 0.0
        return float(finite.min()), float(finite.max())

    def __len__(self) -> int:
        return self._values.size

    def __repr__(self) -> str:
        lo, hi = self.value_range()
        return f"VoxelGrid(dims={self.header.dimensions}, range=[{lo:.4g}, {hi:.4g}])"

    def to_sitk_image(self):
        """
        Create a SimpleITK image carrying these values and geometry.

        Returns
        -------
        sitk.Image
            Float32 image, identity direction
        """
        if not SITK_AVAILABLE:
            raise ImportError("SimpleITK required for to_sitk_image")

        image = sitk.GetImageFromArray(np.array(self.as_array(), dtype=np.float32))
        # SimpleITK requires native Python tuple/list of floats, not numpy arrays
        image.SetOrigin(tuple(float(x) for x in self.header.origin))
        image.SetSpacing(tuple(float(x) for x in self.header.spacing))
        return image

    @classmethod
    def from_sitk_image(cls, image) -> "VoxelGrid":
        """
        Create a VoxelGrid from a SimpleITK image.

        Non-identity direction cosines are not representable in the
        header and are rejected.
        """
        if not SITK_AVAILABLE:
            raise ImportError("SimpleITK required for from_sitk_image")

        direction = np.array(image.GetDirection()).reshape(3, 3)
        if np.max(np.abs(direction - np.eye(3))) > 0.01:
            raise ValueError(f"Oblique image not supported, direction:\n{direction}")

        header = GridHeader(
            dimensions=tuple(int(s) for s in image.GetSize()),
            spacing=tuple(image.GetSpacing()),
            origin=tuple(image.GetOrigin()),
        )
        return cls(header, sitk.GetArrayFromImage(image))


@dataclass(frozen=True)
class GridConfig:
    """
    Export grid declared in editor axis order.

    Attributes
    ----------
    domain_size : tuple of float
        Physical extent of the grid (x, y, z), world units
    voxel_count : tuple of int
        Number of voxels per axis; authoritative for the export shape
    offset : tuple of float
        World position of the first voxel
    """
    domain_size: Vec3
    voxel_count: Tuple[int, int, int]
    offset: Vec3 = (0.0, 0.0, 0.0)

    def __post_init__(self):
        size = as_triple(self.domain_size, "domain_size", float)
        counts = as_triple(self.voxel_count, "voxel_count", int)
        offset = as_triple(self.offset, "offset", float)
        if any(not np.isfinite(s) or s <= 0 for s in size):
            raise ValueError(f"domain_size must be > 0, got {size}")
        if any(c <= 0 for c in counts):
            raise ValueError(f"voxel_count must be > 0, got {counts}")
        object.__setattr__(self, "domain_size", size)
        object.__setattr__(self, "voxel_count", counts)
        object.__setattr__(self, "offset", offset)

    @property
    def spacing(self) -> Vec3:
        """Derived voxel size, editor order."""
        return tuple(s / c for s, c in zip(self.domain_size, self.voxel_count))

    def to_header(self) -> GridHeader:
        """Float32 little-endian header in file axis order."""
        return GridHeader(
            dimensions=swap_axes(self.voxel_count),
            spacing=swap_axes(self.spacing),
            origin=swap_axes(self.offset),
            element_type="MET_FLOAT",
            big_endian=False,
        )


def lattice_positions(
    header: GridHeader,
    editor_order: bool = True,
    z_range: Optional[Tuple[int, int]] = None
) -> np.ndarray:
    """
    World positions of lattice points, in payload order.

    Parameters
    ----------
    header : GridHeader
        Grid geometry, file order
    editor_order : bool
        If True, swap each position into editor order
    z_range : (start, stop), optional
        Restrict to file-order slabs start <= k < stop

    Returns
    -------
    np.ndarray
        Shape (n, 3), float64; n = voxel_count for the full grid
    """
    nx, ny, nz = header.dimensions
    k_start, k_stop = z_range if z_range is not None else (0, nz)
    k, j, i = np.meshgrid(
        np.arange(k_start, k_stop), np.arange(ny), np.arange(nx), indexing="ij"
    )
    index = np.stack([i.ravel(), j.ravel(), k.ravel()], axis=-1).astype(np.float64)
    positions = np.array(header.origin) + index * np.array(header.spacing)
    if editor_order:
        positions = swap_axes(positions)
    return positions


def clamp_thresholds(
    min_threshold: float,
    max_threshold: float,
    moved: str = "min"
) -> Tuple[float, float]:
    """
    Keep a threshold window ordered after one end was moved.

    Moving one end past the other drags the other end along.
    """
    if moved == "min":
        return min_threshold, max(min_threshold, max_threshold)
    if moved == "max":
        return min(min_threshold, max_threshold), max_threshold
    raise ValueError(f"moved must be 'min' or 'max', got {moved!r}")


def dose_colors(values: np.ndarray, value_min: float, value_max: float) -> np.ndarray:
    """
    Blue-to-red RGB ramp for dose values.

    hue = (1 - n) * 0.66 with n the value normalised to [value_min, value_max].
    """
    span = (value_max - value_min) or 1.0
    normalized = (np.asarray(values, dtype=np.float64).reshape(-1) - value_min) / span
    hue = (1.0 - normalized) * 0.66

    # HSL -> RGB at full saturation and lightness 0.5 (p = 0, q = 1)
    channels = []
    for shift in (1.0 / 3.0, 0.0, -1.0 / 3.0):
        t = np.mod(hue + shift, 1.0)
        channels.append(np.select(
            [t < 1.0 / 6.0, t < 0.5, t < 2.0 / 3.0],
            [6.0 * t, 1.0, (2.0 / 3.0 - t) * 6.0],
            default=0.0,
        ))
    return np.stack(channels, axis=-1).astype(np.float32)


def derive_visible_subset(
    grid: VoxelGrid,
    min_threshold: float,
    max_threshold: float,
    positions: Optional[np.ndarray] = None
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Select voxels inside a threshold window for point display.

    Parameters
    ----------
    grid : VoxelGrid
        Source grid (not modified)
    min_threshold, max_threshold : float
        Inclusive value window
    positions : np.ndarray, optional
        Precomputed lattice_positions(grid.header); computed when omitted

    Returns
    -------
    positions : np.ndarray
        Editor-order world positions of selected voxels, shape (n, 3), float32
    colors : np.ndarray
        RGB colours in [0, 1], shape (n, 3), float32

    Examples
    --------
    >>> pos, col = derive_visible_subset(grid, 10.0, 100.0)
    """
    if positions is None:
        positions = lattice_positions(grid.header)
    values = grid.values
    mask = (values >= min_threshold) & (values <= max_threshold)
    value_min, value_max = grid.value_range()

    selected = np.asarray(positions, dtype=np.float32)[mask]
    colors = dose_colors(values[mask], value_min, value_max)
    logger.debug(f"Visible subset [{min_threshold}, {max_threshold}]: {selected.shape[0]} voxels")
    return selected, colors


def header_summary(header: GridHeader, values: Optional[Sequence[float]] = None) -> str:
    lines = [
        f"DimSize:        {' '.join(str(d) for d in header.dimensions)}",
        f"ElementSpacing: {' '.join(f'{s:g}' for s in header.spacing)}",
        f"Offset:         {' '.join(f'{o:g}' for o in header.origin)}",
        f"ElementType:    {header.element_type}",
        f"ByteOrderMSB:   {header.big_endian}",
        f"Voxels:         {header.voxel_count}",
    ]
    if values is not None:
        arr = np.asarray(values, dtype=np.float64)
        finite = arr[np.isfinite(arr)]
        if finite.size:
            lines.append(f"Range:          [{finite.min():g}, {finite.max():g}]")
        if finite.size != arr.size:
            lines.append(f"Non-finite:     {arr.size - finite.size}")
    return "\n".join(lines)
