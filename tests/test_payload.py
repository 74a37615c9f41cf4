#!/usr/bin/env python3
"""Test run-length payload decoding, encoding and the voxel grid."""

import io
import os
import sys
import zlib

import numpy as np
import pytest

# Add parent directory to path to import the module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from binvox_reader import (
    GridReleasedError, Header, MissingDimensionsError, PayloadError, RunOverflowError,
    SizeOverflowError, TruncatedPayloadError, VoxelGrid, decode_payload, encode_runs,
    read_binvox, write_binvox,
)


def payload_stream(pairs: bytes) -> io.BytesIO:
    """Payload as left by parse_header: the 'data' newline, then the pairs."""
    return io.BytesIO(b"\n" + pairs)


@pytest.fixture
def cube_header():
    return Header(version=1, depth=2, height=2, width=2)


class TestDecodePayload:
    """Test cases for decode_payload."""

    def test_two_runs(self, cube_header):
        """Test the 2x2x2 example: four empty voxels then four filled ones."""
        grid = decode_payload(payload_stream(bytes([0x00, 0x04, 0x01, 0x04])), cube_header)
        assert len(grid) == 8
        assert grid.tobytes() == bytes([0, 0, 0, 0, 1, 1, 1, 1])
        assert grid.nonzero_count == 4

    def test_values_kept_verbatim(self, cube_header):
        """Test that nonzero values are not normalized to 1."""
        grid = decode_payload(payload_stream(bytes([0x07, 0x03, 0xFF, 0x05])), cube_header)
        assert grid.tobytes() == bytes([7, 7, 7, 255, 255, 255, 255, 255])
        assert grid.nonzero_count == 8

    def test_zero_length_runs(self, cube_header):
        """Test that runs of length zero fill nothing."""
        grid = decode_payload(payload_stream(bytes([0x01, 0x00, 0x00, 0x08])), cube_header)
        assert grid.tobytes() == bytes(8)
        assert grid.nonzero_count == 0

    def test_trailing_bytes_left_unread(self, cube_header):
        """Test that decoding stops once the grid is full."""
        stream = payload_stream(bytes([0x01, 0x08, 0xAA, 0xBB]))
        decode_payload(stream, cube_header)
        assert stream.read() == bytes([0xAA, 0xBB])

    def test_run_overflow(self):
        """Test that a run past the grid end fails before the next pair is read."""
        header = Header(version=1, depth=1, height=2, width=2)
        stream = payload_stream(bytes([0x01, 0x05, 0x00, 0x01]))
        with pytest.raises(RunOverflowError):
            decode_payload(stream, header)
        assert stream.read() == bytes([0x00, 0x01])

    def test_truncated_payload(self, cube_header):
        """Test that a stream ending early is not a success."""
        with pytest.raises(TruncatedPayloadError):
            decode_payload(payload_stream(bytes([0x01, 0x04])), cube_header)

    def test_half_pair_is_truncated(self, cube_header):
        """Test that a value without its count is a truncated payload."""
        with pytest.raises(TruncatedPayloadError):
            decode_payload(payload_stream(bytes([0x01, 0x04, 0x01])), cube_header)

    def test_empty_stream(self, cube_header):
        """Test that a missing payload is a truncated payload."""
        with pytest.raises(TruncatedPayloadError):
            decode_payload(io.BytesIO(b""), cube_header)

    def test_size_overflow(self):
        """Test that oversized grids are refused before allocating."""
        header = Header(version=1, depth=1024, height=1024, width=2048)
        with pytest.raises(SizeOverflowError):
            decode_payload(payload_stream(b""), header)

    def test_custom_size_limit(self, cube_header):
        """Test that the allocation limit is configurable."""
        with pytest.raises(SizeOverflowError):
            decode_payload(payload_stream(bytes([0x00, 0x08])), cube_header, max_grid_size=7)

    def test_requires_dimensions(self):
        """Test that a header without dimensions cannot be decoded."""
        with pytest.raises(MissingDimensionsError):
            decode_payload(payload_stream(bytes([0x00, 0x08])), Header(version=1))

    def test_long_runs(self):
        """Test a grid that needs several runs of the maximum length."""
        header = Header(version=1, depth=10, height=10, width=10)
        pairs = bytes([0x01, 0xFF, 0x01, 0xFF, 0x00, 0xFF, 0x01, 235])
        grid = decode_payload(payload_stream(pairs), header)
        assert len(grid) == 1000
        assert grid.nonzero_count == 745
        assert grid.tobytes() == bytes([1] * 510 + [0] * 255 + [1] * 235)

    def test_overflow_after_several_runs(self):
        """Test that an overflowing third run reports its start and leaves later pairs unread."""
        header = Header(version=1, depth=1, height=20, width=30)
        stream = payload_stream(bytes([0x01, 0xFF, 0x00, 0xFF, 0x01, 0xFF, 0x02, 0x01]))
        with pytest.raises(RunOverflowError) as exc_info:
            decode_payload(stream, header)
        assert "at voxel 510" in str(exc_info.value)
        assert stream.read() == bytes([0x02, 0x01])

    def test_many_short_runs(self):
        """Test a 64^3 grid of short runs against numpy's repeat."""
        header = Header(version=1, depth=64, height=64, width=64)
        rng = np.random.default_rng(7)
        values = rng.integers(0, 3, size=100000, dtype=np.uint8)
        counts = rng.integers(1, 6, size=100000, dtype=np.uint8)
        expected = np.repeat(values, counts)[:header.grid_size]
        assert expected.size == header.grid_size

        grid = decode_payload(payload_stream(encode_runs(expected)), header)
        assert grid.tobytes() == expected.tobytes()
        assert grid.nonzero_count == int(np.count_nonzero(expected))


class TestEncodeRuns:
    """Test cases for encode_runs and write_binvox."""

    def test_encode_simple(self):
        """Test that equal neighbours collapse into one pair."""
        assert encode_runs(bytes([0, 0, 0, 1, 1, 2])) == bytes([0, 3, 1, 2, 2, 1])

    def test_encode_empty(self):
        """Test that nothing encodes to nothing."""
        assert encode_runs(b"") == b""

    def test_encode_splits_long_runs(self):
        """Test that runs longer than 255 are split."""
        assert encode_runs(bytes(600)) == bytes([0, 255, 0, 255, 0, 90])

    def test_round_trip_preserves_values(self):
        """Test that a grid with arbitrary byte values decodes back unchanged."""
        header = Header(version=1, depth=4, height=5, width=6)
        voxels = bytes((i * 37) % 7 * 40 for i in range(header.grid_size))
        grid = decode_payload(payload_stream(encode_runs(voxels)), header)
        assert grid.tobytes() == voxels
        assert grid.nonzero_count == sum(1 for v in voxels if v)

    def test_write_then_read_file(self):
        """Test that write_binvox output is read back by read_binvox."""
        header = Header(version=1, depth=3, height=3, width=3,
                        translate=(-0.5, 0.125, 2.0), scale=0.75)
        voxels = bytes([1, 0, 0] * 9)
        buffer = io.BytesIO()
        write_binvox(buffer, header, voxels)

        restored_header, grid = read_binvox(buffer.getvalue())
        assert restored_header.dims == (3, 3, 3)
        assert restored_header.translate == (-0.5, 0.125, 2.0)
        assert restored_header.scale == 0.75
        assert grid.tobytes() == voxels

    def test_encode_array(self):
        """Test that a 3D array encodes in storage order."""
        voxels = np.zeros((2, 2, 2), dtype=np.uint8)
        voxels[1] = 1
        assert encode_runs(voxels) == bytes([0, 4, 1, 4])

    def test_read_path_object(self, tmp_path):
        """Test that read_binvox accepts a pathlib.Path."""
        path = tmp_path / "cube.binvox"
        with open(path, 'wb') as f:
            write_binvox(f, Header(version=1, depth=2, height=2, width=2), bytes([0, 1] * 4))
        header, grid = read_binvox(path)
        assert header.dims == (2, 2, 2)
        assert grid.tobytes() == bytes([0, 1] * 4)

    def test_write_rejects_wrong_length(self):
        """Test that voxel count must match the header dimensions."""
        with pytest.raises(PayloadError):
            write_binvox(io.BytesIO(), Header(version=1, depth=2, height=2, width=2), bytes(7))


class TestVoxelGrid:
    """Test cases for VoxelGrid."""

    def test_axis_order(self):
        """Test that x is most significant, then z, then y."""
        buffer = bytearray(range(24))
        grid = VoxelGrid((2, 3, 4), buffer)
        assert grid.index(1, 0, 0) == 12
        assert grid.index(0, 0, 1) == 3
        assert grid.index(0, 1, 0) == 1
        assert grid.voxel(1, 2, 3) == 12 + 9 + 2

    def test_array_shape(self):
        """Test that data is indexed as [x, z, y]."""
        grid = VoxelGrid((2, 3, 4), bytearray(range(24)))
        assert grid.data.shape == (2, 4, 3)
        assert grid.data[1, 3, 2] == grid.voxel(1, 2, 3)
        assert grid.data[0, 1, 0] == grid.index(0, 0, 1)

    def test_voxel_out_of_range(self):
        """Test that coordinates outside the grid are rejected."""
        grid = VoxelGrid((1, 1, 1), bytearray(1))
        with pytest.raises(IndexError):
            grid.voxel(0, 1, 0)

    def test_buffer_size_must_match(self):
        """Test that the buffer length must equal the grid size."""
        with pytest.raises(PayloadError):
            VoxelGrid((2, 2, 2), bytearray(7))

    def test_data_is_read_only(self):
        """Test that the formatter cannot mutate the grid."""
        grid = VoxelGrid((1, 1, 2), bytearray(2))
        with pytest.raises(ValueError):
            grid.data[0, 0, 0] = 1

    def test_checksum_is_crc32(self):
        """Test that the checksum matches zlib's CRC-32."""
        voxels = bytes([0, 1, 1, 0, 5, 0, 0, 1])
        grid = VoxelGrid((2, 2, 2), bytearray(voxels))
        assert grid.checksum() == zlib.crc32(voxels)

    def test_released_on_exit(self):
        """Test that leaving the context releases the buffer."""
        grid = VoxelGrid((1, 1, 1), bytearray(1))
        with grid:
            assert len(grid) == 1
        assert grid.released
        with pytest.raises(GridReleasedError):
            grid.data

    def test_released_on_error(self):
        """Test that the buffer is released when the block raises."""
        grid = VoxelGrid((1, 1, 1), bytearray(1))
        with pytest.raises(RuntimeError):
            with grid:
                raise RuntimeError("formatter failed")
        assert grid.released

    def test_double_release(self):
        """Test that a grid cannot be released twice."""
        grid = VoxelGrid((1, 1, 1), bytearray(1))
        grid.release()
        with pytest.raises(GridReleasedError):
            grid.release()

    def test_release_inside_context(self):
        """Test that an explicit release inside the block is not repeated on exit."""
        with VoxelGrid((1, 1, 1), bytearray(1)) as grid:
            grid.release()
        assert grid.released
