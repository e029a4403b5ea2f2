#!/usr/bin/env python3
"""
BMS to MIDI converter
Converts BMS sequence files (game audio engine event streams) to Standard MIDI Files.
"""

import sys
import traceback

from extractor import BMSConverter
from format_base import BMSProtocolError


def usage(prog_name: str):
    print(f"Usage: python {prog_name} <bmsFile> <midiFile> [instrumentList] [options]")
    print(f"       python {prog_name} --batch <config.yaml> [options]")
    print()
    print("Arguments:")
    print("  bmsFile                 - Input .bms file")
    print("  midiFile                - Output .mid file")
    print("  instrumentList          - Text file with an instrument name or General MIDI")
    print("                            number for each instrument ID (or a .yaml patch_map).")
    print("                            Optional, but the instruments will probably be wrong without it.")
    print()
    print("Options:")
    print("  --batch <config.yaml>   - Convert every song listed in a YAML config")
    print("  --disasm                - Also write a text listing next to each MIDI file")
    print("  --verbose               - Print every decoded event")


def main(argv=None) -> int:
    """Main entry point."""
    if argv is None:
        argv = sys.argv
    prog_name = argv[0] if argv else 'bms2mid.py'

    # Parse command-line arguments
    verbose = False
    write_disasm = False
    batch_config = None
    args = []

    i = 0
    while i < len(argv[1:]):
        arg = argv[1 + i]
        if arg == '--verbose':
            verbose = True
        elif arg == '--disasm':
            write_disasm = True
        elif arg == '--batch' and i + 1 < len(argv[1:]):
            batch_config = argv[1 + i + 1]
            i += 1  # Skip next arg
        else:
            args.append(arg)
        i += 1

    if batch_config is None and len(args) not in (2, 3):
        usage(prog_name)
        return 1
    if batch_config is not None and args:
        usage(prog_name)
        return 1

    try:
        if batch_config is not None:
            converter = BMSConverter(verbose=verbose, write_disasm=write_disasm)
            failures = converter.convert_all(batch_config)
            if failures:
                print(f"\n{len(failures)} song(s) failed: {', '.join(failures)}", file=sys.stderr)
                return 1
            return 0

        instruments_path = args[2] if len(args) == 3 else None
        converter = BMSConverter(instruments_path, verbose=verbose, write_disasm=write_disasm)
        interpreter = converter.convert(args[0], args[1])
        if verbose:
            print(f"{len(interpreter.tracks)} midi tracks")
    except (BMSProtocolError, OSError, ValueError) as e:
        sys.stdout.flush()
        print(f"ERROR! {e}", file=sys.stderr)
        if verbose:
            traceback.print_exc()
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
