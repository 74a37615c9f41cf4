#!/usr/bin/env python3
"""Voxelized Sphere Example"""

import os
import sys

# Add parent directory to Python path to import the converter modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from binvox_converter import BinvoxConverter, configure_logging
from binvox_reader import BinvoxError, Header, write_binvox


def sphere_voxels(dim):
    """Solid sphere centred in a dim^3 grid, in binvox storage order."""
    centre = (dim - 1) / 2.0
    radius = dim / 2.0
    voxels = bytearray(dim ** 3)
    for x in range(dim):
        for z in range(dim):
            for y in range(dim):
                if (x - centre) ** 2 + (y - centre) ** 2 + (z - centre) ** 2 <= radius ** 2:
                    voxels[x * dim * dim + z * dim + y] = 1
    return bytes(voxels)


def main():
    print("=== Voxelized Sphere Example ===")

    # Change to script directory to find config file
    script_dir = os.path.dirname(os.path.abspath(__file__))
    os.chdir(script_dir)

    dim = 8
    header = Header(version=1, depth=dim, height=dim, width=dim,
                    translate=(-0.5, -0.5, -0.5), scale=1.0)

    try:
        with open('sphere.binvox', 'wb') as f:
            write_binvox(f, header, sphere_voxels(dim))
        print(f"Generated binvox file: {os.path.getsize('sphere.binvox')} bytes")

        for config_file in ('x_slices.json', 'y_slices.json'):
            converter = BinvoxConverter(config_file)
            configure_logging(converter.config['log_level'])
            result = converter.convert('sphere.binvox')
            print(f"{config_file}: {result.nonzero_count} filled voxels -> {result.output_path} "
                  f"(crc32 0x{result.checksum:08x})")

    except (BinvoxError, OSError) as e:
        print(f"Error: {e}")


if __name__ == "__main__":
    main()
