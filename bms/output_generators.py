"""
Output generation for converted BMS sequences.

Writes the Standard MIDI File and the optional text listings (BMS
disassembly plus a decoded view of every MIDI track).
"""

import struct
from typing import BinaryIO, List

from format_base import note_name
from midi_track import (
    MidiTrack, decode_varlen,
    NOTE_OFF, NOTE_ON, CONTROL_CHANGE, PROGRAM_CHANGE, META_EVENT,
    META_END_OF_TRACK, META_TEMPO, CC_PAN, CC_VOLUME,
)


MIDI_FORMAT = 1  # multiple simultaneous tracks

CONTROLLER_NAMES = {
    CC_VOLUME: "Volume",
    CC_PAN: "Pan",
}


def build_midi_file(tracks: List[MidiTrack], ticks_per_qnote: int) -> bytes:
    """Return the header chunk followed by one track chunk per track, in creation order."""
    header = struct.pack('>4sLHHH', b'MThd', 6, MIDI_FORMAT, len(tracks), ticks_per_qnote)
    chunks = [struct.pack('>4sL', b'MTrk', len(t.buffer)) + bytes(t.buffer) for t in tracks]
    return header + b''.join(chunks)


def write_midi_file(stream: BinaryIO, tracks: List[MidiTrack], ticks_per_qnote: int):
    stream.write(build_midi_file(tracks, ticks_per_qnote))


def describe_track_events(track: MidiTrack) -> List[str]:
    """Decode a track buffer back into one text line per MIDI event.

    Only the event kinds the interpreter writes are recognized; anything
    else stops the listing with a marker line.
    """
    data = bytes(track.buffer)
    lines = []
    pos = 0
    abs_time = 0

    while pos < len(data):
        delta, pos = decode_varlen(data, pos)
        abs_time += delta
        status = data[pos]
        kind = status & 0xF0
        channel = status & 0x0F
        prefix = f"  {abs_time:8d} (+{delta:<5d})"

        if kind in (NOTE_ON, NOTE_OFF):
            pitch, velocity = data[pos + 1], data[pos + 2]
            label = "Note On " if kind == NOTE_ON else "Note Off"
            lines.append(f"{prefix} ch{channel:<2d} {label} {note_name(pitch)} ({pitch}) vel {velocity}")
            pos += 3
        elif kind == CONTROL_CHANGE:
            controller, value = data[pos + 1], data[pos + 2]
            name = CONTROLLER_NAMES.get(controller, f"CC {controller}")
            lines.append(f"{prefix} ch{channel:<2d} {name} {value}")
            pos += 3
        elif kind == PROGRAM_CHANGE:
            lines.append(f"{prefix} ch{channel:<2d} Program {data[pos + 1]}")
            pos += 2
        elif status == META_EVENT:
            meta_type = data[pos + 1]
            length, pos = decode_varlen(data, pos + 2)
            payload = data[pos:pos + length]
            pos += length
            if meta_type == META_TEMPO:
                usec = int.from_bytes(payload, 'big')
                bpm = 60_000_000 / usec if usec else 0
                lines.append(f"{prefix} Tempo {usec} usec/qn ({bpm:.2f} bpm)")
            elif meta_type == META_END_OF_TRACK:
                lines.append(f"{prefix} End of Track")
            else:
                lines.append(f"{prefix} Meta 0x{meta_type:02X} {payload.hex(' ')}")
        else:
            lines.append(f"{prefix} ?? 0x{status:02X} at byte {pos}")
            break

    return lines


def disassemble_to_text(title: str, interpreter) -> str:
    """Generate the text listing of a finished conversion.

    Args:
        title: Heading for the listing (usually the input file name)
        interpreter: BMSInterpreter after run()

    Returns:
        Formatted listing text
    """
    output = []
    output.append(f"Sequence: {title}")
    output.append(f"  Length: {len(interpreter.tape):X} bytes")
    output.append(f"  Ticks per quarter note: {interpreter.resolution}"
                  + ("" if interpreter.ticks_per_qnote else " (default)"))
    output.append(f"  Tracks: {len(interpreter.tracks)}")
    output.append("")

    output.append("Events:")
    output.extend(interpreter.disasm)
    output.append("")

    if interpreter.warnings:
        output.append("Warnings:")
        output.extend(f"  {w}" for w in interpreter.warnings)
        output.append("")

    for track in interpreter.tracks:
        if track.is_meta:
            output.append(f"=== Track {track.index} (meta) - {len(track)} bytes ===")
        else:
            output.append(f"=== Track {track.index} channel {track.channel} - {len(track)} bytes ===")
        output.extend(describe_track_events(track))
        output.append("")

    return '\n'.join(output)
