"""
MetaImage (.mhd/.raw) reading and writing for dose grids.

The header is a line-oriented ``Key = Value`` text file; the payload is a
raw block of fixed-width scalars, x fastest, with no container header.

Layers:
- parse_header() / serialize_header(): text <-> key/value fields
- ElementCodec: one fixed-width scalar type (struct for single values,
  numpy for whole payloads)
- header_from_fields(): typed, validated GridHeader from parsed fields
- decode_voxel_grid() / encode_voxel_grid(): payload <-> VoxelGrid
- read_metaimage() / write_metaimage(): the only filesystem access
"""

import logging
import math
import re
import struct
import warnings
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union

import numpy as np

from .grid_utils import GridHeader, VoxelGrid

logger = logging.getLogger(__name__)

IDENTITY_TRANSFORM = "1 0 0 0 1 0 0 0 1"

# Fields written by serialize_header(), in output order. Anything else
# found in a parsed header is carried in GridHeader.extra.
HEADER_KEY_ORDER = (
    "ObjectType",
    "NDims",
    "BinaryData",
    "BinaryDataByteOrderMSB",
    "TransformMatrix",
    "Offset",
    "ElementSpacing",
    "DimSize",
    "ElementType",
    "ElementDataFile",
)
_CONSUMED_KEYS = frozenset(HEADER_KEY_ORDER) | {"CompressedData"}

# Largest voxel count whose float64 working copy still fits a numpy index
MAX_VOXEL_COUNT = np.iinfo(np.intp).max // 8


class MetaImageFormatError(ValueError):
    """Malformed MetaImage header or payload; ``key`` names the offending field."""

    def __init__(self, key: str, message: str):
        super().__init__(f"{key}: {message}")
        self.key = key


class UnsupportedElementTypeError(MetaImageFormatError):

    def __init__(self, element_type):
        super().__init__("ElementType", f"unsupported element type {element_type!r}")
        self.element_type = element_type


class PayloadSizeError(MetaImageFormatError):
    pass


class ElementType(str, Enum):
    UInt8 = "MET_UCHAR"
    Int8 = "MET_CHAR"
    UInt16 = "MET_USHORT"
    Int16 = "MET_SHORT"
    UInt32 = "MET_UINT"
    Int32 = "MET_INT"
    Float32 = "MET_FLOAT"
    Float64 = "MET_DOUBLE"


@dataclass(frozen=True)
class ElementCodec:
    """
    Fixed-width scalar codec for one ElementType.

    Attributes
    ----------
    element_type : ElementType
    struct_code : str
        struct format character, e.g. 'H'
    numpy_code : str
        numpy type code without byte order, e.g. 'u2'
    """
    element_type: ElementType
    struct_code: str
    numpy_code: str

    @property
    def byte_width(self) -> int:
        return struct.calcsize("<" + self.struct_code)

    def _format(self, little_endian: bool) -> str:
        return ("<" if little_endian else ">") + self.struct_code

    def decode(self, buffer, offset: int, little_endian: bool = True):
        # struct.error if the element does not fit in the buffer
        return struct.unpack_from(self._format(little_endian), buffer, offset)[0]

    def encode(self, buffer, offset: int, value, little_endian: bool = True) -> None:
        struct.pack_into(self._format(little_endian), buffer, offset, value)

    def numpy_dtype(self, little_endian: bool = True) -> np.dtype:
        return np.dtype(("<" if little_endian else ">") + self.numpy_code)

    def decode_array(self, buffer, count: int, little_endian: bool = True) -> np.ndarray:
        """Decode the first ``count`` elements of ``buffer``."""
        needed = count * self.byte_width
        if needed > len(buffer):
            raise PayloadSizeError(
                "DimSize",
                f"cannot read {count} x {self.element_type.value} "
                f"({needed} bytes) from {len(buffer)} bytes"
            )
        return np.frombuffer(buffer, dtype=self.numpy_dtype(little_endian), count=count)


ELEMENT_CODECS: Dict[ElementType, ElementCodec] = {
    ElementType.UInt8: ElementCodec(ElementType.UInt8, "B", "u1"),
    ElementType.Int8: ElementCodec(ElementType.Int8, "b", "i1"),
    ElementType.UInt16: ElementCodec(ElementType.UInt16, "H", "u2"),
    ElementType.Int16: ElementCodec(ElementType.Int16, "h", "i2"),
    ElementType.UInt32: ElementCodec(ElementType.UInt32, "I", "u4"),
    ElementType.Int32: ElementCodec(ElementType.Int32, "i", "i4"),
    ElementType.Float32: ElementCodec(ElementType.Float32, "f", "f4"),
    ElementType.Float64: ElementCodec(ElementType.Float64, "d", "f8"),
}


def get_element_codec(element_type: Union[str, ElementType]) -> ElementCodec:
    """
    Look up the codec for a MetaImage element token.

    Raises
    ------
    UnsupportedElementTypeError
        For any token outside the eight supported types
    """
    try:
        return ELEMENT_CODECS[ElementType(element_type)]
    except ValueError:
        raise UnsupportedElementTypeError(element_type) from None


def parse_header(text: str) -> Dict[str, str]:
    """
    Split MetaImage header text into a key -> value mapping.

    Blank lines and lines without '=' are skipped, each line is split on
    its first '=', both sides are trimmed, and a repeated key keeps its
    last value. No field is validated here.
    """
    fields = {}
    for line in re.split(r"\r?\n", text):
        if not line.strip() or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key:
            fields[key] = value.strip()
    return fields


def _format_number(value) -> str:
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _format_vector(values) -> str:
    return " ".join(_format_number(v) for v in values)


def header_to_fields(
    header: GridHeader,
    data_file: Optional[str] = None,
    transform_matrix: str = IDENTITY_TRANSFORM
) -> Dict[str, str]:
    """Key/value fields for ``header`` in serialization order."""
    fields = {
        "ObjectType": "Image",
        "NDims": "3",
        "BinaryData": "True",
        "BinaryDataByteOrderMSB": "True" if header.big_endian else "False",
        "TransformMatrix": transform_matrix,
        "Offset": _format_vector(header.origin),
        "ElementSpacing": _format_vector(header.spacing),
        "DimSize": " ".join(str(d) for d in header.dimensions),
        "ElementType": get_element_codec(header.element_type).element_type.value,
    }
    for key, value in header.extra:
        if key not in _CONSUMED_KEYS:
            fields[key] = value
    # ElementDataFile must be the last line of a MetaImage header
    if data_file is not None:
        fields["ElementDataFile"] = data_file
    return fields


def serialize_header(
    header: GridHeader,
    data_file: Optional[str] = None,
    transform_matrix: str = IDENTITY_TRANSFORM
) -> str:
    """
    Render ``header`` as MetaImage text with CRLF line endings.

    Parameters
    ----------
    header : GridHeader
        Geometry and element type, file axis order
    data_file : str, optional
        Payload file name written as ElementDataFile
    transform_matrix : str
        Nine whitespace-separated numbers, identity by default
    """
    fields = header_to_fields(header, data_file, transform_matrix)
    return "\r\n".join(f"{key} = {value}" for key, value in fields.items())


def _require(fields: Mapping[str, str], key: str) -> str:
    if key not in fields:
        raise MetaImageFormatError(key, "required field is missing")
    return fields[key]


def _parse_vector(fields: Mapping[str, str], key: str, cast) -> tuple:
    tokens = _require(fields, key).split()
    if len(tokens) != 3:
        raise MetaImageFormatError(key, f"expected 3 values, got {len(tokens)}: {fields[key]!r}")
    try:
        values = tuple(cast(t) for t in tokens)
    except ValueError:
        raise MetaImageFormatError(key, f"cannot parse {fields[key]!r} as {cast.__name__}") from None
    # ints parse unbounded; only floats can be inf/nan
    if cast is float and not all(math.isfinite(v) for v in values):
        raise MetaImageFormatError(key, f"non-finite value in {fields[key]!r}")
    return values


def header_from_fields(fields: Mapping[str, str]) -> GridHeader:
    """
    Build a validated GridHeader from parsed header fields.

    Raises
    ------
    MetaImageFormatError
        Missing or malformed DimSize, ElementSpacing or Offset, or a
        compressed payload
    UnsupportedElementTypeError
        ElementType outside the supported set
    """
    dims = _parse_vector(fields, "DimSize", int)
    if any(d <= 0 for d in dims):
        raise MetaImageFormatError("DimSize", f"dimensions must be > 0, got {dims}")
    if dims[0] * dims[1] * dims[2] > MAX_VOXEL_COUNT:
        raise MetaImageFormatError(
            "DimSize", f"{dims} holds more than {MAX_VOXEL_COUNT} voxels; cannot be allocated"
        )

    spacing = _parse_vector(fields, "ElementSpacing", float)
    if any(s <= 0 for s in spacing):
        raise MetaImageFormatError("ElementSpacing", f"spacing must be > 0, got {spacing}")

    origin = _parse_vector(fields, "Offset", float)

    codec = get_element_codec(_require(fields, "ElementType"))

    if fields.get("CompressedData", "False") == "True":
        raise MetaImageFormatError("CompressedData", "compressed payloads are not supported")

    return GridHeader(
        dimensions=dims,
        spacing=spacing,
        origin=origin,
        element_type=codec.element_type.value,
        big_endian=fields.get("BinaryDataByteOrderMSB") == "True",
        extra=tuple((k, v) for k, v in fields.items() if k not in _CONSUMED_KEYS),
    )


@dataclass
class DecodeResult:
    """Decoded grid plus any non-fatal problems found in the payload."""
    grid: VoxelGrid
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


def decode_voxel_grid(
    header: Union[GridHeader, Mapping[str, str]],
    raw: bytes,
    strict: bool = False
) -> DecodeResult:
    """
    Decode a raw payload into a float32 VoxelGrid.

    Parameters
    ----------
    header : GridHeader or mapping
        Typed header, or parsed fields (validated via header_from_fields)
    raw : bytes-like
        Complete payload
    strict : bool
        If True, a short payload raises PayloadSizeError

    Returns
    -------
    DecodeResult

    Notes
    -----
    - A short payload is decoded as far as whole elements go; the
      remaining voxels are NaN and a warning is recorded.
    - Trailing bytes beyond DimSize are ignored.
    - Values are converted to float32 whatever the element type, which
      loses precision for MET_DOUBLE and large MET_UINT/MET_INT values.
    """
    if not isinstance(header, GridHeader):
        header = header_from_fields(header)

    codec = get_element_codec(header.element_type)
    width = codec.byte_width
    expected = header.voxel_count
    little_endian = not header.big_endian

    logger.info(
        f"Decoding payload: type={header.element_type}, MSB={header.big_endian}, "
        f"count={expected}"
    )

    issues = []
    needed = expected * width
    available = expected
    if len(raw) < needed:
        msg = (
            f"Payload size mismatch: expected {needed} bytes for "
            f"{header.dimensions} x {header.element_type}, got {len(raw)}"
        )
        if strict:
            raise PayloadSizeError("DimSize", msg)
        available = len(raw) // width
        warnings.warn(msg + f"; {expected - available} voxels left as NaN")
        issues.append(msg)
    elif len(raw) > needed:
        logger.debug(f"Ignoring {len(raw) - needed} trailing payload bytes")

    values = np.full(expected, np.nan, dtype=np.float32)
    decoded = codec.decode_array(raw, available, little_endian)
    values[:available] = decoded

    n_bad = int(np.count_nonzero(~np.isfinite(values[:available])))
    if n_bad:
        msg = f"Payload contains {n_bad} non-finite values"
        warnings.warn(msg)
        issues.append(msg)

    grid = VoxelGrid(header, values)
    lo, hi = grid.value_range()
    logger.info(f"Data range: [{lo}, {hi}]")
    return DecodeResult(grid=grid, warnings=issues)


@dataclass(frozen=True)
class EncodedVolume:
    """Export deliverable: header text and the payload it references."""
    header_text: str
    payload: bytes
    data_file: str


def encode_voxel_grid(grid: VoxelGrid, data_file: str = "simulation-Dose.raw") -> EncodedVolume:
    """
    Encode a grid as MET_FLOAT little-endian header text plus payload.

    The grid header is written as-is (file axis order); only the element
    type and byte order are replaced.
    """
    header = replace_encoding(grid.header)
    codec = get_element_codec(ElementType.Float32)
    payload = grid.values.astype(codec.numpy_dtype(little_endian=True)).tobytes()
    text = serialize_header(header, data_file=data_file)
    logger.info(f"Encoded {header.dimensions} grid: {len(payload)} bytes -> {data_file}")
    return EncodedVolume(header_text=text, payload=payload, data_file=data_file)


def replace_encoding(header: GridHeader) -> GridHeader:
    """Same geometry, MET_FLOAT little-endian."""
    return GridHeader(
        dimensions=header.dimensions,
        spacing=header.spacing,
        origin=header.origin,
        element_type=ElementType.Float32.value,
        big_endian=False,
        extra=header.extra,
    )


def read_metaimage(
    mhd_path: Union[str, Path],
    raw_path: Optional[Union[str, Path]] = None,
    strict: bool = False
) -> DecodeResult:
    """
    Read a .mhd header and its raw payload from disk.

    Parameters
    ----------
    mhd_path : str or Path
        Header file
    raw_path : str or Path, optional
        Payload file. Defaults to ElementDataFile, relative to the header.
    strict : bool
        Passed to decode_voxel_grid
    """
    mhd_path = Path(mhd_path)
    fields = parse_header(mhd_path.read_text(encoding="utf-8", errors="replace"))
    logger.info(f"Header parsed from {mhd_path}: {fields}")
    header = header_from_fields(fields)

    if raw_path is None:
        data_file = _require(fields, "ElementDataFile")
        if data_file.upper() in ("LOCAL", "LIST") or data_file.startswith("LIST"):
            raise MetaImageFormatError(
                "ElementDataFile", f"{data_file!r} payloads are not supported; use a .mhd/.raw pair"
            )
        raw_path = mhd_path.parent / data_file

    raw = Path(raw_path).read_bytes()
    return decode_voxel_grid(header, raw, strict=strict)


def write_metaimage(
    grid: VoxelGrid,
    mhd_path: Union[str, Path],
    data_file: Optional[str] = None
) -> Tuple[Path, Path]:
    """
    Write ``grid`` as a .mhd header and .raw payload side by side.

    Returns
    -------
    mhd_path, raw_path : Path
    """
    mhd_path = Path(mhd_path)
    if mhd_path.suffix.lower() != ".mhd":
        raise ValueError(f"Header path must have .mhd extension, got {mhd_path}")
    data_file = data_file or mhd_path.with_suffix(".raw").name

    encoded = encode_voxel_grid(grid, data_file=data_file)
    raw_path = mhd_path.parent / data_file
    raw_path.write_bytes(encoded.payload)
    mhd_path.write_bytes(encoded.header_text.encode("ascii"))

    logger.info(f"Wrote {mhd_path} + {raw_path.name}")
    return mhd_path, raw_path
