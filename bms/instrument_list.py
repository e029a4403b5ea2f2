"""
Instrument list loading.

Two formats build an InstrumentMapping:

Text list, one entry per BMS instrument id starting at 0:
    Acoustic Grand Piano
    0x18
    Drum Kit

YAML patch map, for sparse mappings:
    patch_map:
      0x01: Drum Kit
      5: 40
      0x10: {gm_patch: 33}
"""

from pathlib import Path
from typing import Dict, Iterable, List, Union

import yaml

from format_base import InstrumentMapping, InstrumentListError, INSTRUMENT_NAMES


def _parse_int_key(key) -> int:
    """Convert YAML config key to int (handles '0xAA', '170', etc)."""
    return int(key, 0) if isinstance(key, str) else key


def _parse_program_number(text: str):
    """Parse a decimal or 0x-prefixed program number, or return None for a name."""
    try:
        return int(text, 0)
    except ValueError:
        pass
    # int(..., 0) refuses leading zeros on decimals
    if text.isdigit():
        return int(text, 10)
    return None


def resolve_instrument(entry: Union[int, str], line_num: int = 0) -> int:
    """Resolve one entry (program number or catalogue name) to a program.

    Returns:
        Program number 0-127, or 128 for the drum kit
    """
    if isinstance(entry, int):
        program = entry
    else:
        name = entry.strip()
        program = _parse_program_number(name)
        if program is None:
            if name not in INSTRUMENT_NAMES:
                raise InstrumentListError(f"Unknown instrument '{name}'" +
                                          (f" on line {line_num}" if line_num else ""))
            program = INSTRUMENT_NAMES.index(name)

    if not 0 <= program < len(INSTRUMENT_NAMES):
        raise InstrumentListError(f"Instrument number {program} out of range" +
                                  (f" on line {line_num}" if line_num else ""))
    return program


def parse_instrument_list(lines: Iterable[str]) -> InstrumentMapping:
    """Build a mapping from a text list; the n-th non-blank line maps id n."""
    programs: List[int] = []
    for line_num, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        programs.append(resolve_instrument(line, line_num))
    return InstrumentMapping.from_list(programs)


def parse_patch_map(config: Dict) -> InstrumentMapping:
    """Build a mapping from a loaded YAML document with a 'patch_map' section."""
    patch_map = (config or {}).get('patch_map') or {}
    if not isinstance(patch_map, dict):
        raise InstrumentListError("'patch_map' must be a mapping of instrument id to program")

    programs: Dict[int, int] = {}
    for key, info in patch_map.items():
        try:
            inst_id = _parse_int_key(key)
        except ValueError:
            raise InstrumentListError(f"Invalid instrument id '{key}' in patch_map")
        if isinstance(info, dict):
            # Same shape as game configs: {gm_patch: N}
            info = info.get('gm_patch', 0)
        if not isinstance(info, (int, str)) or isinstance(info, bool):
            raise InstrumentListError(f"Invalid program {info!r} for instrument {inst_id} in patch_map")
        programs[inst_id] = resolve_instrument(info)
    return InstrumentMapping(programs)


def load_instrument_list(path: Union[str, Path]) -> InstrumentMapping:
    """Load a text instrument list, or a YAML patch map for .yaml/.yml files."""
    path = Path(path)
    try:
        with open(path, 'r') as f:
            if path.suffix.lower() in ('.yaml', '.yml'):
                return parse_patch_map(yaml.safe_load(f))
            return parse_instrument_list(f)
    except OSError as e:
        raise InstrumentListError(f"failed to open instrument conversion file '{path}': {e.strerror}")
    except yaml.YAMLError as e:
        raise InstrumentListError(f"Invalid YAML in instrument file '{path}': {e}")
