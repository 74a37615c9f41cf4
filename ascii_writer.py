#!/usr/bin/env python3
"""
ASCII Writer

Formats a decoded voxel grid as text. Each voxel is written as the
character value + '0', so empty voxels read 0 and filled voxels read 1.
"""

import logging
from typing import Callable, Dict, TextIO

import numpy as np

from binvox_reader import Header, VoxelGrid


logger = logging.getLogger(__name__)

# Output must map every byte value to exactly one character.
OUTPUT_ENCODING = 'latin-1'


def _voxel_tokens(voxels: np.ndarray) -> np.ndarray:
    """
    Render voxels as "c " tokens.

    Adds a trailing axis of length 2 holding the voxel character and a
    space; value + '0' wraps at one byte.
    """
    tokens = np.empty(voxels.shape + (2,), dtype=np.uint8)
    tokens[..., 0] = voxels + np.uint8(ord('0'))
    tokens[..., 1] = ord(' ')
    return tokens


def _text(tokens: np.ndarray) -> str:
    return tokens.tobytes().decode(OUTPUT_ENCODING)


def write_ascii_header(out: TextIO, header: Header) -> None:
    tx, ty, tz = header.translate
    out.write("#binvox ASCII data\n")
    out.write(f"dim {header.depth} {header.height} {header.width}\n")
    out.write(f"translate {tx:g} {ty:g} {tz:g}\n")
    out.write(f"scale {header.scale:g}\n")
    out.write("data\n")


def write_x_slices(out: TextIO, grid: VoxelGrid) -> None:
    """
    x-coordinate slowest: a line per width voxels, a blank line after every
    depth*width voxels, and an "x-coord: N" marker every depth*height voxels.

    The marker falls at the start of a line only when depth*height is a
    multiple of width (always the case for cubic grids); otherwise it splits
    the line it lands in.
    """
    depth, height, width = grid.dims
    slice_size = depth * height
    block_size = depth * width
    rows = _voxel_tokens(grid.data.reshape(-1, width))
    for row_index, row in enumerate(rows):
        start = row_index * width
        end = start + width
        # First marker position at or after the start of this row.
        marker = -(-start // slice_size) * slice_size
        pos = start
        while marker < end:
            out.write(_text(row[pos - start:marker - start]))
            out.write(f"x-coord: {marker // slice_size}\n")
            pos = marker
            marker += slice_size
        out.write(_text(row[pos - start:]) + "\n")
        if end % block_size == 0:
            out.write("\n")


def write_y_slices(out: TextIO, grid: VoxelGrid) -> None:
    """One block per y, with a row per z listing every x."""
    depth, height, width = grid.dims
    tokens = _voxel_tokens(grid.data)
    x_labels = "".join(f"{x} " for x in range(depth))
    for y in range(height):
        out.write(f"y-coord: {y}\n")
        out.write(f"     x: {x_labels}\n")
        # (depth, width) plane for this y, rows taken along z.
        plane = tokens[:, :, y].swapaxes(0, 1)
        for z in range(width):
            out.write(f"z = {z} : {_text(plane[z])}\n")
        out.write("\n")


LAYOUTS: Dict[str, Callable[[TextIO, VoxelGrid], None]] = {
    'x_slices': write_x_slices,
    'y_slices': write_y_slices,
}


def write_ascii(out: TextIO, header: Header, grid: VoxelGrid, layout: str = 'x_slices') -> None:
    """
    Write the ASCII header block followed by the voxels in the given layout.

    Args:
        out: Text stream; open it with OUTPUT_ENCODING to keep every byte value
        header: Header the grid was decoded with
        grid: Decoded voxel grid
        layout: Name of a registered layout ('x_slices' or 'y_slices')
    """
    writer = LAYOUTS.get(layout)
    if writer is None:
        raise ValueError(f"Unknown layout: {layout}")
    logger.debug("writing %d voxels using layout %s", len(grid), layout)
    write_ascii_header(out, header)
    writer(out, grid)
