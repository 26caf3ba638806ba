"""
Save-file persistence for dose volumes and scenes.

A volume is stored as a JSON-embeddable record::

    {"header": {...MetaImage fields...},
     "params": {"minThreshold": .., "maxThreshold": .., "pointSize": .., "visible": ..},
     "dataBase64": "<little-endian float32 bytes, base64>"}

No compression or quantisation is applied, so float32 values survive a
round trip bit for bit.
"""

import base64
import binascii
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from .dose_field import DoseSource
from .grid_utils import GridConfig, GridHeader, VoxelGrid
from .metaimage import MetaImageFormatError, header_from_fields, header_to_fields

logger = logging.getLogger(__name__)

APP_NAME = "GateSimulationDesigner"
FORMAT_VERSION = 1.1

# Bytes per base64 call; a multiple of 3 so chunks concatenate without padding
CHUNK_SIZE = 0x6000

_FLOAT32_LE = np.dtype("<f4")


class PersistenceDecodeError(ValueError):
    """Stored volume or scene cannot be decoded; partial results are discarded."""
    pass


@dataclass
class VolumeParams:
    """
    Display settings saved with a volume.

    Attributes
    ----------
    min_threshold, max_threshold : float
        Inclusive value window of displayed voxels
    point_size : float
        Rendered point size, world units
    visible : bool
    """
    min_threshold: float
    max_threshold: float
    point_size: float = 1.0
    visible: bool = True

    @classmethod
    def defaults_for(cls, grid: VoxelGrid) -> "VolumeParams":
        """Window from 10% of the range to the maximum; point size 0.9 voxel."""
        lo, hi = grid.value_range()
        return cls(
            min_threshold=lo + (hi - lo) * 0.1,
            max_threshold=hi,
            point_size=grid.header.spacing[0] * 0.9,
            visible=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'minThreshold': self.min_threshold,
            'maxThreshold': self.max_threshold,
            'pointSize': self.point_size,
            'visible': self.visible,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], defaults: "VolumeParams") -> "VolumeParams":
        # saved files may omit pointSize and visible; only absent values fall back
        try:
            point_size = data.get('pointSize')
            return cls(
                min_threshold=float(data.get('minThreshold', defaults.min_threshold)),
                max_threshold=float(data.get('maxThreshold', defaults.max_threshold)),
                point_size=float(1.0 if point_size is None else point_size),
                visible=bool(data.get('visible', True)),
            )
        except (AttributeError, TypeError, ValueError) as exc:
            raise PersistenceDecodeError(f"Invalid volume params {data!r}: {exc}") from exc


@dataclass
class PersistedVolume:
    header: Dict[str, str]
    params: VolumeParams
    data_base64: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'header': dict(self.header),
            'params': self.params.to_dict(),
            'dataBase64': self.data_base64,
        }


@dataclass
class RestoredVolume:
    """Decoded volume ready to redrive display."""
    grid: VoxelGrid
    params: VolumeParams

    @property
    def header(self) -> GridHeader:
        return self.grid.header

    @property
    def values(self) -> np.ndarray:
        return self.grid.values


def float32_to_base64(values) -> str:
    """
    Base64 of the little-endian float32 bytes of ``values``.

    Encodes CHUNK_SIZE bytes at a time so large grids never build one
    giant intermediate buffer.
    """
    raw = np.ascontiguousarray(values, dtype=_FLOAT32_LE).reshape(-1).view(np.uint8)
    pieces = []
    for start in range(0, len(raw), CHUNK_SIZE):
        pieces.append(base64.b64encode(raw[start:start + CHUNK_SIZE]))
    return b"".join(pieces).decode("ascii")


def base64_to_float32(text: str) -> np.ndarray:
    """
    Inverse of float32_to_base64.

    Raises
    ------
    PersistenceDecodeError
        Characters outside the base64 alphabet, bad padding, or a byte
        count that is not a multiple of 4
    """
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise PersistenceDecodeError(f"Invalid base64 payload: {exc}") from exc
    if len(raw) % _FLOAT32_LE.itemsize:
        raise PersistenceDecodeError(
            f"Decoded payload has {len(raw)} bytes, not a multiple of {_FLOAT32_LE.itemsize}"
        )
    return np.frombuffer(raw, dtype=_FLOAT32_LE).astype(np.float32)


def encode_volume(grid: VoxelGrid, params: Optional[VolumeParams] = None) -> PersistedVolume:
    """
    Bundle a grid and its display settings for a save file.

    Parameters
    ----------
    grid : VoxelGrid
    params : VolumeParams, optional
        Defaults to VolumeParams.defaults_for(grid)
    """
    if params is None:
        params = VolumeParams.defaults_for(grid)
    record = PersistedVolume(
        header=header_to_fields(grid.header),
        params=params,
        data_base64=float32_to_base64(grid.values),
    )
    logger.debug(f"Encoded volume {grid.header.dimensions}: {len(record.data_base64)} base64 chars")
    return record


def decode_volume(record) -> RestoredVolume:
    """
    Rebuild a grid and display settings from a stored record.

    Parameters
    ----------
    record : PersistedVolume or mapping
        Mapping form uses the save-file keys header/params/dataBase64

    Raises
    ------
    PersistenceDecodeError
        Missing field, invalid header, invalid payload, or payload size
        not matching DimSize
    """
    if isinstance(record, PersistedVolume):
        fields, params_data, payload = record.header, record.params.to_dict(), record.data_base64
    else:
        try:
            fields, payload = record['header'], record['dataBase64']
        except (KeyError, TypeError) as exc:
            raise PersistenceDecodeError(f"Volume record missing field {exc}") from exc
        params_data = record.get('params') or {}

    if not isinstance(fields, Mapping):
        raise PersistenceDecodeError(f"Volume header must be a mapping, got {type(fields).__name__}")
    try:
        header = header_from_fields({str(k): str(v) for k, v in fields.items()})
    except MetaImageFormatError as exc:
        raise PersistenceDecodeError(f"Invalid volume header: {exc}") from exc

    values = base64_to_float32(payload)
    if values.size != header.voxel_count:
        raise PersistenceDecodeError(
            f"Payload holds {values.size} values, DimSize {header.dimensions} "
            f"requires {header.voxel_count}"
        )

    grid = VoxelGrid(header, values)
    params = VolumeParams.from_dict(params_data, defaults=VolumeParams.defaults_for(grid))
    return RestoredVolume(grid=grid, params=params)


def _xyz(vec) -> Dict[str, float]:
    return {'x': vec[0], 'y': vec[1], 'z': vec[2]}


def _vec(data: Mapping[str, Any], key: str) -> Tuple[float, float, float]:
    try:
        item = data[key]
        return (float(item['x']), float(item['y']), float(item['z']))
    except (KeyError, TypeError, ValueError) as exc:
        raise PersistenceDecodeError(f"Invalid config.{key}: {exc}") from exc


def config_to_dict(config: GridConfig) -> Dict[str, Any]:
    return {
        'domainSize': _xyz(config.domain_size),
        'voxelCount': _xyz(config.voxel_count),
        'offset': _xyz(config.offset),
    }


def config_from_dict(data: Mapping[str, Any]) -> GridConfig:
    """
    Grid configuration from a save file.

    Older files store ``voxelResolution`` (voxel size) instead of
    ``voxelCount``; counts are then floor(domainSize / voxelResolution).
    """
    domain = _vec(data, 'domainSize')
    offset = _vec(data, 'offset')
    if 'voxelCount' in data:
        counts = _vec(data, 'voxelCount')
    elif 'voxelResolution' in data:
        resolution = _vec(data, 'voxelResolution')
        counts = tuple(int(math.floor(s / r)) for s, r in zip(domain, resolution))
    else:
        raise PersistenceDecodeError("config needs voxelCount or voxelResolution")
    try:
        return GridConfig(domain_size=domain, voxel_count=counts, offset=offset)
    except ValueError as exc:
        raise PersistenceDecodeError(f"Invalid grid config: {exc}") from exc


@dataclass
class SceneDocument:
    config: Optional[GridConfig] = None
    sources: List[DoseSource] = field(default_factory=list)
    volumes: List[RestoredVolume] = field(default_factory=list)
    assets: List[Dict[str, Any]] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)


def serialize_scene(
    config: Optional[GridConfig],
    sources: Iterable[DoseSource],
    volumes: Iterable[Tuple[VoxelGrid, Optional[VolumeParams]]] = (),
    assets: Iterable[Mapping[str, Any]] = (),
    indent: int = 2
) -> str:
    """
    Scene save file as a JSON string.

    Parameters
    ----------
    config : GridConfig, optional
        Export grid
    sources : iterable of DoseSource
    volumes : iterable of (VoxelGrid, VolumeParams or None)
        Imported volumes; large grids make large files
    assets : iterable of mapping
        Library asset records (type 'library_asset'), stored verbatim;
        other records are dropped
    """
    state = {
        'meta': {
            'version': FORMAT_VERSION,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'appName': APP_NAME,
        },
        'config': config_to_dict(config) if config is not None else None,
        'sources': [s.to_dict() for s in sources],
        'assets': [],
        'volumes': [],
    }

    for asset in assets:
        if asset.get('type') == 'library_asset':
            state['assets'].append(dict(asset))
        else:
            logger.warning(f"Asset {asset.get('name', '?')!r} is not a library asset; not saved")

    for grid, params in volumes:
        state['volumes'].append(encode_volume(grid, params).to_dict())

    logger.info(
        f"Scene serialized: {len(state['sources'])} source(s), "
        f"{len(state['assets'])} asset(s), {len(state['volumes'])} volume(s)"
    )
    return json.dumps(state, indent=indent)


def deserialize_scene(text: str) -> SceneDocument:
    """
    Parse a scene save file.

    Missing sections are treated as empty.

    Raises
    ------
    PersistenceDecodeError
        Invalid JSON, invalid config or source, or an undecodable volume
    """
    try:
        state = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PersistenceDecodeError(f"Invalid scene file: {exc}") from exc
    if not isinstance(state, dict):
        raise PersistenceDecodeError("Scene file must contain a JSON object")

    doc = SceneDocument(meta=dict(state.get('meta') or {}))

    if state.get('config'):
        doc.config = config_from_dict(state['config'])

    for src in state.get('sources') or []:
        try:
            doc.sources.append(DoseSource.from_dict(src))
        except (AttributeError, TypeError, ValueError) as exc:
            raise PersistenceDecodeError(f"Invalid source {src!r}: {exc}") from exc

    doc.assets = [
        dict(a) for a in state.get('assets') or []
        if isinstance(a, dict) and a.get('type') == 'library_asset'
    ]

    volumes = state.get('volumes') or []
    if volumes:
        logger.info(f"Restoring {len(volumes)} volume(s)...")
    for vol in volumes:
        doc.volumes.append(decode_volume(vol))

    logger.info("Scene loaded successfully.")
    return doc
