#!/usr/bin/env python3
"""
Binvox Converter

Reads a .binvox file and writes an ASCII version of the same grid next to
it, named "<input>_voxels.txt".

    binvox2ascii model.binvox

The converter can also be driven from Python with a configuration given as
a dict, a JSON string or a path to a JSON file:

    converter = BinvoxConverter({"layout": "y_slices"})
    result = converter.convert("model.binvox")
"""

import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from ascii_writer import LAYOUTS, OUTPUT_ENCODING, write_ascii
from binvox_reader import (
    DEFAULT_MAX_GRID_SIZE, BinvoxError, Header, VoxelGrid, decode_payload, parse_header,
)


logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

DEFAULT_CONFIG: Dict[str, Any] = {
    'output_suffix': '_voxels.txt',
    'layout': 'x_slices',
    'require_transform': False,
    'max_grid_size': DEFAULT_MAX_GRID_SIZE,
    'log_level': 'INFO',
}


class ConverterConfigError(BinvoxError):
    """Invalid or unreadable converter configuration."""
    pass


def configure_logging(log_level: str = 'INFO', log_file: str = None) -> None:
    """
    Configure the root logger.

    Args:
        log_level: Level name (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path of a file that receives the same records
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    handlers: List[logging.Handler] = [console_handler]

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def load_config(config_source: Union[str, Dict[str, Any], None] = None) -> Dict[str, Any]:
    """
    Load and validate a converter configuration.

    Args:
        config_source: Can be one of:
            - None for the defaults
            - Path to JSON file containing the configuration
            - JSON string containing the configuration
            - Dictionary containing the configuration

    Returns:
        The defaults updated with the given settings
    """
    try:
        if config_source is None:
            overrides = {}
        elif isinstance(config_source, dict):
            overrides = config_source
        elif isinstance(config_source, str):
            config_source = config_source.strip()
            if config_source.startswith('{') and config_source.endswith('}'):
                overrides = json.loads(config_source)
            else:
                with open(config_source, 'r', encoding='utf-8') as f:
                    overrides = json.load(f)
        else:
            raise ConverterConfigError(f"Unsupported config_source type: {type(config_source)}")
    except FileNotFoundError:
        raise ConverterConfigError(f"Config file not found: {config_source}")
    except json.JSONDecodeError as e:
        raise ConverterConfigError(f"Invalid JSON in configuration: {e}")

    if not isinstance(overrides, dict):
        raise ConverterConfigError("Configuration must be a JSON object")
    unknown = sorted(set(overrides) - set(DEFAULT_CONFIG))
    if unknown:
        raise ConverterConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

    config = dict(DEFAULT_CONFIG)
    config.update(overrides)
    _validate_config(config)
    return config


def _validate_config(config: Dict[str, Any]) -> None:
    if not isinstance(config['output_suffix'], str) or not config['output_suffix']:
        raise ConverterConfigError("output_suffix must be a non-empty string")
    if config['layout'] not in LAYOUTS:
        raise ConverterConfigError(
            f"Unknown layout '{config['layout']}', expected one of: {', '.join(LAYOUTS)}")
    if not isinstance(config['require_transform'], bool):
        raise ConverterConfigError("require_transform must be true or false")
    max_grid_size = config['max_grid_size']
    if isinstance(max_grid_size, bool) or not isinstance(max_grid_size, int) or max_grid_size <= 0:
        raise ConverterConfigError("max_grid_size must be a positive integer")
    if not isinstance(logging.getLevelName(str(config['log_level']).upper()), int):
        raise ConverterConfigError(f"Unknown log_level: {config['log_level']}")


@dataclass
class ConversionResult:
    """Outcome of a single binvox to ASCII conversion."""
    input_path: str
    output_path: str
    header: Header
    nonzero_count: int
    checksum: int


class ConverterOutputError(BinvoxError):
    """The ASCII output file could not be opened or written."""

    def __init__(self, output_path: str, reason: OSError):
        self.output_path = output_path
        super().__init__(f"cannot write [{output_path}]: {reason}")


class BinvoxConverter:
    """Converts binvox files to the ASCII voxel format."""

    def __init__(self, config_source: Union[str, Dict[str, Any], None] = None):
        self.config = load_config(config_source)

    def output_path_for(self, input_path: Union[str, os.PathLike]) -> str:
        return os.fspath(input_path) + self.config['output_suffix']

    def read(self, input_path: Union[str, os.PathLike]) -> Tuple[Header, VoxelGrid]:
        with open(input_path, 'rb') as f:
            header = parse_header(f, self.config['require_transform'])
            grid = decode_payload(f, header, self.config['max_grid_size'])
        return header, grid

    def write(self, output_path: str, header: Header, grid: VoxelGrid) -> None:
        try:
            with open(output_path, 'w', encoding=OUTPUT_ENCODING, newline='\n') as out:
                write_ascii(out, header, grid, self.config['layout'])
        except OSError as e:
            raise ConverterOutputError(output_path, e) from e

    def convert(self, input_path: Union[str, os.PathLike],
                output_path: Optional[str] = None) -> ConversionResult:
        """
        Decode a binvox file and write its ASCII version.

        The whole grid is decoded before the output file is opened, so a
        malformed input never leaves a partial output behind. Failures to
        read the input raise the reader's BinvoxError or OSError; failures
        to write the output raise ConverterOutputError.
        """
        input_path = os.fspath(input_path)
        output_path = output_path or self.output_path_for(input_path)
        header, grid = self.read(input_path)

        with grid:
            checksum = grid.checksum()
            logger.debug("grid checksum 0x%08x", checksum)
            logger.info("writing voxel data to %s", output_path)
            self.write(output_path, header, grid)
            result = ConversionResult(
                input_path=input_path,
                output_path=output_path,
                header=header,
                nonzero_count=grid.nonzero_count,
                checksum=checksum,
            )
        logger.info("wrote %s", output_path)
        return result


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point: binvox2ascii <binvox filename>."""
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("Usage: binvox2ascii <binvox filename>\n")
        return 1
    input_path = args[0]

    converter = BinvoxConverter()
    configure_logging(converter.config['log_level'])

    try:
        result = converter.convert(input_path)
    except ConverterOutputError as e:
        print(f"Error opening [{e.output_path}]\n")
        return 1
    except (BinvoxError, OSError) as e:
        print(f"Error reading [{input_path}]: {e}\n")
        return 1

    print(f"Wrote {result.nonzero_count} filled voxels to {result.output_path}")
    print("done\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
