#!/usr/bin/env python3
"""
Binvox Reader

This module reads the binvox voxel format: an ASCII header followed by a
run-length-encoded occupancy payload. It also provides the matching writer,
so grids can be turned back into binvox files.

Supports:
- Keyword-driven header parsing (dim, translate, scale, data)
- Forward-compatible skipping of unrecognized header keywords
- Run-length payload decoding into a dense voxel buffer
- Run-length payload encoding and binvox file writing
"""

import io
import logging
import os
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Tuple, Union

import crcmod.predefined
import numpy as np


logger = logging.getLogger(__name__)

SIGNATURE = '#binvox'
TERMINATOR = 'data'

# Largest grid the decoder will allocate (signed 32-bit index range).
DEFAULT_MAX_GRID_SIZE = 2**31 - 1

# Longest run a single (value, count) pair can describe.
MAX_RUN_LENGTH = 255

_WHITESPACE = b' \t\n\r\x0b\x0c'

_crc32 = crcmod.predefined.mkCrcFun('crc-32')

VoxelSource = Union[bytes, bytearray, memoryview, np.ndarray]


def _as_voxel_array(voxels: VoxelSource) -> np.ndarray:
    """Flat uint8 array over the given voxels in storage order."""
    if isinstance(voxels, np.ndarray):
        return np.ascontiguousarray(voxels, dtype=np.uint8).ravel()
    return np.frombuffer(voxels, dtype=np.uint8).copy()


class BinvoxError(Exception):
    """Base exception for binvox reading and writing errors."""
    pass


class HeaderError(BinvoxError):
    """The binvox header could not be parsed."""
    pass


class BadSignatureError(HeaderError):
    """The first header token is not the binvox signature."""

    def __init__(self, token: Optional[str]):
        self.token = token
        super().__init__(f"first line reads [{token}] instead of [{SIGNATURE}]")


class TruncatedHeaderError(HeaderError):
    """The stream ended, or held an unreadable value, before the 'data' keyword."""
    pass


class MissingDimensionsError(HeaderError):
    """The header ended without valid 'dim' values."""
    pass


class MissingTransformError(HeaderError):
    """The header lacks 'translate' or 'scale' while they are required."""
    pass


class PayloadError(BinvoxError):
    """The run-length payload could not be decoded or encoded."""
    pass


class SizeOverflowError(PayloadError):
    """The declared grid is larger than the decoder may allocate."""
    pass


class RunOverflowError(PayloadError):
    """A run extends past the end of the declared grid."""
    pass


class TruncatedPayloadError(PayloadError):
    """The stream ended before the grid was completely filled."""
    pass


class GridReleasedError(BinvoxError):
    """A voxel grid was used or released after it had been released."""
    pass


@dataclass
class Header:
    """Metadata block of a binvox file."""
    version: int
    depth: int = -1
    height: int = -1
    width: int = -1
    translate: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    scale: float = 1.0
    unknown_keywords: List[str] = field(default_factory=list)

    @property
    def dims(self) -> Tuple[int, int, int]:
        return (self.depth, self.height, self.width)

    @property
    def has_dimensions(self) -> bool:
        return all(d > 0 for d in self.dims)

    @property
    def grid_size(self) -> int:
        return self.depth * self.height * self.width


class VoxelGrid:
    """
    Dense occupancy array decoded from a binvox payload.

    The grid owns a single uint8 array shaped (depth, width, height), so
    voxel (x, y, z) is array[x, z, y]. Use it as a context manager so the
    array is released on every exit path:

        with decode_payload(stream, header) as grid:
            write_ascii(out, header, grid)
    """

    def __init__(self, dims: Tuple[int, int, int], voxels: VoxelSource, nonzero_count: int = 0):
        depth, height, width = dims
        array = _as_voxel_array(voxels)
        if array.size != depth * height * width:
            raise PayloadError(
                f"Buffer holds {array.size} voxels, expected {depth * height * width} for dims {dims}")
        self.dims = dims
        self.nonzero_count = nonzero_count
        self._array = array.reshape(depth, width, height)

    @property
    def depth(self) -> int:
        return self.dims[0]

    @property
    def height(self) -> int:
        return self.dims[1]

    @property
    def width(self) -> int:
        return self.dims[2]

    @property
    def released(self) -> bool:
        return self._array is None

    @property
    def data(self) -> np.ndarray:
        """Read-only (depth, width, height) view of the voxels."""
        view = self._checked_array().view()
        view.flags.writeable = False
        return view

    def _checked_array(self) -> np.ndarray:
        if self._array is None:
            raise GridReleasedError("Voxel grid has already been released")
        return self._array

    def index(self, x: int, y: int, z: int) -> int:
        """Flattened index of voxel (x, y, z); x is most significant, then z, then y."""
        return x * self.width * self.height + z * self.height + y

    def voxel(self, x: int, y: int, z: int) -> int:
        if not (0 <= x < self.depth and 0 <= y < self.height and 0 <= z < self.width):
            raise IndexError(f"Voxel ({x}, {y}, {z}) outside grid {self.dims}")
        return int(self._checked_array()[x, z, y])

    def tobytes(self) -> bytes:
        """Voxel bytes in storage order."""
        return self._checked_array().tobytes()

    def checksum(self) -> int:
        """CRC-32 of the voxel bytes."""
        return _crc32(self.tobytes())

    def release(self) -> None:
        self._checked_array()
        self._array = None

    def __len__(self) -> int:
        return self._checked_array().size

    def __enter__(self) -> 'VoxelGrid':
        self._checked_array()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        if not self.released:
            self.release()


# ---------------------------------------------------------------------------
# Header parsing
# ---------------------------------------------------------------------------

def _peek_byte(stream: BinaryIO) -> bytes:
    """Return the next byte without consuming it (b'' at end of stream)."""
    if hasattr(stream, 'peek'):
        return stream.peek(1)[:1]
    position = stream.tell()
    data = stream.read(1)
    stream.seek(position)
    return data


def _read_token(stream: BinaryIO) -> Optional[str]:
    """
    Read one whitespace-delimited token.

    Leading whitespace is consumed, the whitespace that ends the token is
    not. Returns None if the stream ends before any token character.
    """
    while True:
        c = stream.read(1)
        if not c:
            return None
        if c not in _WHITESPACE:
            break
    token = bytearray(c)
    while True:
        c = _peek_byte(stream)
        if not c or c in _WHITESPACE:
            break
        token += stream.read(1)
    return token.decode('ascii', errors='replace')


def _read_number(stream: BinaryIO, convert: Callable[[str], Any], keyword: str) -> Any:
    token = _read_token(stream)
    if token is None:
        raise TruncatedHeaderError(f"Unexpected end of file reading '{keyword}' values")
    try:
        return convert(token)
    except ValueError:
        raise TruncatedHeaderError(f"Invalid value [{token}] for '{keyword}'")


def _skip_line(stream: BinaryIO) -> None:
    while True:
        c = stream.read(1)
        if not c or c == b'\n':
            return


def _read_dim(stream: BinaryIO, header: Header) -> None:
    header.depth = _read_number(stream, int, 'dim')
    header.height = _read_number(stream, int, 'dim')
    header.width = _read_number(stream, int, 'dim')


def _read_translate(stream: BinaryIO, header: Header) -> None:
    header.translate = tuple(_read_number(stream, float, 'translate') for _ in range(3))


def _read_scale(stream: BinaryIO, header: Header) -> None:
    header.scale = _read_number(stream, float, 'scale')


HEADER_KEYWORDS: Dict[str, Callable[[BinaryIO, Header], None]] = {
    'dim': _read_dim,
    'translate': _read_translate,
    'scale': _read_scale,
}


def parse_header(stream: BinaryIO, require_transform: bool = False) -> Header:
    """
    Parse a binvox header from a binary stream.

    Args:
        stream: Binary stream positioned at the start of the file
        require_transform: Fail if 'translate' or 'scale' is absent instead
            of defaulting them to (0, 0, 0) and 1

    Returns:
        The parsed Header. The stream is left just before the newline that
        ends the 'data' line; decode_payload consumes it.
    """
    token = _read_token(stream)
    if token != SIGNATURE:
        raise BadSignatureError(token)

    version = _read_number(stream, int, 'version')
    logger.info("reading binvox version %d", version)
    header = Header(version=version)

    seen = set()
    while True:
        keyword = _read_token(stream)
        if keyword is None:
            raise TruncatedHeaderError("error reading header: no 'data' keyword before end of file")
        if keyword == TERMINATOR:
            break
        handler = HEADER_KEYWORDS.get(keyword)
        if handler is None:
            logger.warning("unrecognized keyword [%s], skipping", keyword)
            header.unknown_keywords.append(keyword)
            _skip_line(stream)
            continue
        handler(stream, header)
        seen.add(keyword)

    if 'dim' not in seen:
        raise MissingDimensionsError("missing dimensions in header")
    if not header.has_dimensions:
        raise MissingDimensionsError(f"dimensions must be positive, got {header.dims}")
    if require_transform:
        missing = [k for k in ('translate', 'scale') if k not in seen]
        if missing:
            raise MissingTransformError(f"missing {', '.join(missing)} in header")
    return header


# ---------------------------------------------------------------------------
# Payload decoding
# ---------------------------------------------------------------------------

def _read_pairs(stream: BinaryIO, remaining: int) -> Tuple[np.ndarray, np.ndarray, bool]:
    """
    Read the fewest (value, count) pairs that could fill `remaining` voxels.

    Every pair but the last covers at most MAX_RUN_LENGTH voxels, so none of
    them can reach the end of the grid; only the last pair can complete or
    overflow it. Reading this many never consumes bytes past the pair that
    ends the payload.

    Returns:
        values, counts, and whether the stream ended early
    """
    wanted = 2 * -(-remaining // MAX_RUN_LENGTH)
    chunk = stream.read(wanted)
    pairs = np.frombuffer(chunk[:len(chunk) // 2 * 2], dtype=np.uint8).reshape(-1, 2)
    return pairs[:, 0], pairs[:, 1], len(chunk) < wanted


def decode_payload(stream: BinaryIO, header: Header,
                   max_grid_size: int = DEFAULT_MAX_GRID_SIZE) -> VoxelGrid:
    """
    Decode the run-length payload that follows a parsed header.

    Args:
        stream: Binary stream positioned where parse_header left it
        header: Header with positive dimensions
        max_grid_size: Largest voxel count that may be allocated

    Returns:
        VoxelGrid holding every voxel value verbatim, plus the number of
        voxels with a nonzero value
    """
    if not header.has_dimensions:
        raise MissingDimensionsError(f"dimensions must be positive, got {header.dims}")
    grid_size = header.grid_size
    if grid_size > max_grid_size:
        raise SizeOverflowError(
            f"Grid of {header.depth}x{header.height}x{header.width} = {grid_size} voxels "
            f"exceeds the limit of {max_grid_size}")

    voxels = np.zeros(grid_size, dtype=np.uint8)
    # The newline ending the 'data' line.
    stream.read(1)

    filled = 0
    nonzero = 0
    while filled < grid_size:
        values, counts, exhausted = _read_pairs(stream, grid_size - filled)
        if counts.size:
            ends = filled + np.cumsum(counts, dtype=np.int64)
            overflow = np.flatnonzero(ends > grid_size)
            if overflow.size:
                i = overflow[0]
                start = int(ends[i - 1]) if i else filled
                raise RunOverflowError(
                    f"Run of {counts[i]} at voxel {start} ends at {ends[i]}, past grid size {grid_size}")
            end = int(ends[-1])
            voxels[filled:end] = np.repeat(values, counts)
            nonzero += int(counts[values != 0].sum(dtype=np.int64))
            filled = end
        if exhausted:
            raise TruncatedPayloadError(
                f"Unexpected end of file after {filled} of {grid_size} voxels")

    logger.info("read %d voxels", nonzero)
    return VoxelGrid(header.dims, voxels, nonzero)


def read_binvox(source: Union[str, os.PathLike, bytes, BinaryIO], require_transform: bool = False,
                max_grid_size: int = DEFAULT_MAX_GRID_SIZE) -> Tuple[Header, VoxelGrid]:
    """
    Read a complete binvox file.

    Args:
        source: Can be one of:
            - Path to a binvox file (str or path-like)
            - Bytes object containing the file contents
            - Binary stream positioned at the start of the file
    """
    if isinstance(source, (str, os.PathLike)):
        with open(source, 'rb') as f:
            return read_binvox(f, require_transform, max_grid_size)
    if isinstance(source, (bytes, bytearray)):
        with io.BytesIO(source) as f:
            return read_binvox(f, require_transform, max_grid_size)
    header = parse_header(source, require_transform)
    return header, decode_payload(source, header, max_grid_size)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def encode_runs(voxels: VoxelSource) -> bytes:
    """Run-length encode voxels in storage order into (value, count) pairs."""
    flat = _as_voxel_array(voxels)
    if not flat.size:
        return b""
    starts = np.concatenate(([0], np.flatnonzero(flat[1:] != flat[:-1]) + 1))
    lengths = np.diff(np.append(starts, flat.size))
    # Runs longer than MAX_RUN_LENGTH become several full pairs plus a remainder.
    pieces = -(-lengths // MAX_RUN_LENGTH)
    values = np.repeat(flat[starts], pieces)
    counts = np.full(values.size, MAX_RUN_LENGTH, dtype=np.int64)
    counts[np.cumsum(pieces) - 1] = lengths - MAX_RUN_LENGTH * (pieces - 1)
    return np.column_stack((values, counts)).astype(np.uint8).tobytes()


def write_binvox(stream: BinaryIO, header: Header, voxels: VoxelSource) -> None:
    """Write header and run-length payload as a binvox file."""
    flat = _as_voxel_array(voxels)
    if flat.size != header.grid_size:
        raise PayloadError(
            f"Got {flat.size} voxels for a grid of {header.grid_size}")
    tx, ty, tz = header.translate
    lines = [
        f"{SIGNATURE} {header.version}",
        f"dim {header.depth} {header.height} {header.width}",
        f"translate {tx!r} {ty!r} {tz!r}",
        f"scale {header.scale!r}",
        TERMINATOR,
    ]
    stream.write(('\n'.join(lines) + '\n').encode('ascii'))
    stream.write(encode_runs(flat))
