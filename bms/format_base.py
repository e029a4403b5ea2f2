"""
Base classes and shared constants for the BMS sequence format.
"""

import sys
from typing import Dict, List, Optional, Tuple


# Global constants
NOTE_NAMES = ["C ", "C#", "D ", "D#", "E ", "F ", "F#",
              "G ", "G#", "A ", "A#", "B "]

MAX_CHANNELS = 16  # MIDI channels 0-15
PERCUSSION_CHANNEL = 9  # GM percussion channel
NUM_VOICES = 8  # Simultaneous notes per track addressed by note on/off
STACK_LIMIT = 4  # Nested subroutine depth
DEFAULT_TICKS_PER_QNOTE = 120

# Instrument catalogue accepted by instrument lists (General MIDI order).
# Index 128 is the drum kit sentinel, which moves a track to channel 9.
INSTRUMENT_NAMES = [
    # Piano
    "Acoustic Grand Piano", "Bright Piano", "Electric Grand Piano", "Honky-tonk Piano",
    "Electric Piano 1", "Electric Piano 2", "Harpsichord", "Clavinet",
    # Melodic Percussion
    "Celesta", "Glockenspiel", "Music Box", "Vibraphone",
    "Marimba", "Xylophone", "Tubular Bells", "Dulcimer",
    # Organ
    "Hammond Organ", "Percussive Organ", "Rock Organ", "Church Organ",
    "Reed Organ", "Accordian", "Harmonica", "Tango Accordian",
    # Guitar
    "Nylon String Guitar", "Steel String Guitar", "Jazz Guitar", "Clean Electric Guitar",
    "Muted Guitar", "Overdrive Guitar", "Distortion Guitar", "Guitar Harmonics",
    # Bass
    "Acoustic Bass", "Fingered Bass", "Picked Bass", "Fretless Bass",
    "Slap Bass 1", "Slap Bass 2", "Synth Bass 1", "Synth Bass 2",
    # Strings
    "Violin", "Viola", "Cello", "Contrabass",
    "Tremolo Strings", "Pizzicato Strings", "Orchestral Harp", "Timpani",
    # Ensemble
    "String Ensemble 1", "String Ensemble 2", "Synth Strings 1", "Synth Strings 2",
    "Choir Ahh", "Choir Oohh", "Synth Voice", "Orchestral Hit",
    # Brass
    "Trumpet", "Trombone", "Tuba", "Muted Trumpet",
    "French Horn", "Brass Section", "Synth Brass 1", "Synth Brass 2",
    # Reed
    "Soprano Sax", "Alto Sax", "Tenor Sax", "Baritone Sax",
    "Oboe", "English Horn", "Bassoon", "Clarinet",
    # Pipe
    "Piccolo", "Flute", "Recorder", "Pan Flute",
    "Blown Bottle", "Shakuhachi", "Whistle", "Ocarina",
    # Synth Lead
    "Square Lead", "Sawtooth Lead", "Calliope Lead", "Chiff Lead",
    "Charang Lead", "Voice Lead", "Fifth Lead", "Bass & Lead",
    # Synth Pad
    "New Age", "Warm", "Polysynth", "Choir",
    "Bowed", "Metallic", "Halo", "Sweep",
    # Synth FX
    "FX Rain", "FX Soundtrack", "FX Crystal", "FX Atmosphere",
    "FX Brightness", "FX Goblins", "FX Echo Drops", "FX Star Theme",
    # Ethnic
    "Sitar", "Banjo", "Shamisen", "Koto",
    "Kalimba", "Bagpipe", "Fiddle", "Shanai",
    # Percussive
    "Tinkle Bell", "Agogo", "Steel Drums", "Woodblock",
    "Taiko Drum", "Melodic Tom", "Synth Drum", "Reverse Cymbal",
    # Sound Effects
    "Guitar Fret Noise", "Breath Noise", "Seashore", "Bird Tweet",
    "Telephone Ring", "Helicopter", "Applause", "Gunshot",
    "Drum Kit",
]

DRUM_KIT = 128


class BMSProtocolError(ValueError):
    """Sequence data (or configuration) violates a converter invariant.

    Always fatal for the conversion in progress. The opcode and tape offset,
    when known, are appended to the message.
    """

    def __init__(self, message: str, opcode: Optional[int] = None,
                 offset: Optional[int] = None):
        self.opcode = opcode
        self.offset = offset
        if opcode is not None and offset is not None:
            message = f"{message} (event 0x{opcode:02X} at address 0x{offset:X})"
        elif offset is not None:
            message = f"{message} (at address 0x{offset:X})"
        super().__init__(message)


class ResourceExhausted(BMSProtocolError):
    """No MIDI channel left for a new track."""


class InstrumentListError(BMSProtocolError):
    """Instrument list file could not be parsed."""


def warn(message: str) -> str:
    """Print an advisory warning to stderr and return the message."""
    print(f"WARNING: {message}", file=sys.stderr)
    return message


class BMSTape:
    """Read-only view of a BMS byte stream.

    Every read takes an explicit offset and returns the value together with
    the offset just past it. Multi-byte values are big-endian.
    """

    def __init__(self, data: bytes):
        self.data = bytes(data)

    def __len__(self) -> int:
        return len(self.data)

    def read_bytes(self, offset: int, length: int) -> Tuple[bytes, int]:
        end = offset + length
        if offset < 0 or end > len(self.data):
            raise BMSProtocolError(
                f"Unexpected end of data reading {length} byte(s), data is {len(self.data)} bytes long",
                offset=offset)
        return self.data[offset:end], end

    def _read_uint(self, offset: int, size: int) -> Tuple[int, int]:
        raw, end = self.read_bytes(offset, size)
        return int.from_bytes(raw, 'big'), end

    def read_u8(self, offset: int) -> Tuple[int, int]:
        return self._read_uint(offset, 1)

    def read_u16(self, offset: int) -> Tuple[int, int]:
        return self._read_uint(offset, 2)

    def read_u24(self, offset: int) -> Tuple[int, int]:
        return self._read_uint(offset, 3)

    def read_u32(self, offset: int) -> Tuple[int, int]:
        return self._read_uint(offset, 4)


class InstrumentMapping:
    """Maps BMS instrument ids to General MIDI programs.

    Ids without an entry are passed through unchanged. A mapped value of
    DRUM_KIT means "use the percussion channel".
    """

    def __init__(self, programs: Optional[Dict[int, int]] = None):
        self.programs: Dict[int, int] = dict(programs or {})

    @classmethod
    def from_list(cls, programs: List[int]) -> 'InstrumentMapping':
        """Build a mapping where list position is the BMS instrument id."""
        return cls(dict(enumerate(programs)))

    def __len__(self) -> int:
        return len(self.programs)

    def lookup(self, inst_id: int) -> int:
        return self.programs.get(inst_id, inst_id)

    @staticmethod
    def get_instrument_name(program: int) -> str:
        """Get human-readable instrument name for a mapped program."""
        if 0 <= program < len(INSTRUMENT_NAMES):
            return INSTRUMENT_NAMES[program]
        return f"Unknown Instrument ({program})"


def note_name(pitch: int) -> str:
    """Format a MIDI pitch as name and octave, e.g. 60 -> 'C 4'."""
    return f"{NOTE_NAMES[pitch % 12]}{pitch // 12 - 1}"
