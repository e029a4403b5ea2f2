"""
Conversion orchestrator.
Handles file loading, instrument lists, single conversions and batch processing.
"""

import traceback
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

from format_base import BMSProtocolError, InstrumentMapping
from format_bms import BMSInterpreter
from instrument_list import load_instrument_list
from output_generators import disassemble_to_text, write_midi_file


class BMSConverter:
    """Main converter class."""

    def __init__(self, instruments_path: Optional[Union[str, Path]] = None,
                 verbose: bool = False, write_disasm: bool = False):
        """Initialize with an optional instrument list shared by every conversion."""
        self.verbose = verbose
        self.write_disasm = write_disasm
        self.instruments = self.load_instruments(instruments_path)

    @staticmethod
    def load_instruments(path: Optional[Union[str, Path]]) -> InstrumentMapping:
        if path is None:
            return InstrumentMapping()
        return load_instrument_list(path)

    @staticmethod
    def load_sequence(path: Union[str, Path]) -> bytes:
        """Read the whole BMS file."""
        try:
            with open(path, 'rb') as f:
                return f.read()
        except OSError as e:
            raise BMSProtocolError(f"failed to open input file '{path}': {e.strerror}")

    def convert(self, input_path: Union[str, Path], output_path: Union[str, Path],
                instruments: Optional[InstrumentMapping] = None) -> BMSInterpreter:
        """Convert one BMS file to a MIDI file.

        Args:
            input_path: BMS sequence file
            output_path: MIDI file to write
            instruments: Mapping to use instead of the converter-wide one

        Returns:
            The finished interpreter session (tracks, warnings, disassembly)
        """
        output_path = Path(output_path)
        data = self.load_sequence(input_path)

        if instruments is None:
            instruments = self.instruments
        interpreter = BMSInterpreter(data, instruments, verbose=self.verbose)
        tracks = interpreter.run()

        try:
            with open(output_path, 'wb') as f:
                write_midi_file(f, tracks, interpreter.resolution)
        except OSError as e:
            raise BMSProtocolError(f"failed to open output file '{output_path}': {e.strerror}")

        if self.write_disasm:
            text = disassemble_to_text(Path(input_path).name, interpreter)
            output_path.with_suffix('.txt').write_text(text)

        return interpreter

    def convert_all(self, config_path: Union[str, Path]) -> List[str]:
        """Convert every song listed in a YAML batch config.

        Config keys:
            output_dir: where outputs go (default: 'mid' next to the config)
            instruments: default instrument list for all songs
            songs: list of {input, output, instruments, title}

        Relative paths are resolved against the config file's directory.

        Returns:
            Titles of songs that failed
        """
        config_path = Path(config_path)
        try:
            with open(config_path, 'r') as f:
                config: Dict = yaml.safe_load(f) or {}
        except OSError as e:
            raise BMSProtocolError(f"failed to open batch config '{config_path}': {e.strerror}")
        except yaml.YAMLError as e:
            raise BMSProtocolError(f"Invalid YAML in batch config '{config_path}': {e}")
        if any('input' not in song for song in config.get('songs', [])):
            raise BMSProtocolError(f"Every song in '{config_path}' needs an 'input' path")

        base_dir = config_path.parent
        output_dir = base_dir / config.get('output_dir', 'mid')
        output_dir.mkdir(parents=True, exist_ok=True)

        default_instruments = self.instruments
        if config.get('instruments'):
            default_instruments = self.load_instruments(base_dir / config['instruments'])

        failures = []
        for song in config.get('songs', []):
            input_path = base_dir / song['input']
            title = song.get('title') or input_path.stem
            output_name = song.get('output') or f"{input_path.stem}.mid"
            output_path = output_dir / output_name

            print(f"Converting: {title}")
            try:
                instruments = default_instruments
                if song.get('instruments'):
                    instruments = self.load_instruments(base_dir / song['instruments'])

                interpreter = self.convert(input_path, output_path, instruments)
                print(f"  OK: Generated {output_path.name} "
                      f"({len(interpreter.tracks)} tracks, {len(interpreter.warnings)} warnings)")
            except BMSProtocolError as e:
                print(f"  ERROR: {e}")
                if self.verbose:
                    traceback.print_exc()
                failures.append(title)

        return failures
