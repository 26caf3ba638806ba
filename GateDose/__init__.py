from .grid_utils import GridHeader, VoxelGrid, GridConfig, swap_axes, derive_visible_subset
from .metaimage import (
    ElementType, ElementCodec, get_element_codec, parse_header, serialize_header,
    decode_voxel_grid, encode_voxel_grid, read_metaimage, write_metaimage,
    MetaImageFormatError, UnsupportedElementTypeError, PayloadSizeError
)
from .falloff import Falloff, evaluate_falloff
from .dose_field import DoseSource, calculate_dose_at_points, evaluate_dose_field, export_dose_field
from .persistence import (
    VolumeParams, PersistedVolume, encode_volume, decode_volume,
    serialize_scene, deserialize_scene, PersistenceDecodeError
)

__all__ = [
    'GridHeader', 'VoxelGrid', 'GridConfig', 'swap_axes', 'derive_visible_subset',
    'ElementType', 'ElementCodec', 'get_element_codec', 'parse_header', 'serialize_header',
    'decode_voxel_grid', 'encode_voxel_grid', 'read_metaimage', 'write_metaimage',
    'MetaImageFormatError', 'UnsupportedElementTypeError', 'PayloadSizeError',
    'Falloff', 'evaluate_falloff',
    'DoseSource', 'calculate_dose_at_points', 'evaluate_dose_field', 'export_dose_field',
    'VolumeParams', 'PersistedVolume', 'encode_volume', 'decode_volume',
    'serialize_scene', 'deserialize_scene', 'PersistenceDecodeError'
]
