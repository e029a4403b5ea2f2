"""
BMS sequence interpreter.

Walks the BMS event stream once, following track starts, subroutine calls
and returns, and writes MIDI events into one track buffer per BMS track.
Tempo lives on the meta track, which is also the current track whenever
the interpreter is outside a track.

Several opcodes are not understood; they are skipped using operand lengths
that work on known files (see UNKNOWN_OPCODE_LENGTHS).
"""

from typing import Callable, Dict, List, Optional

from format_base import (
    BMSTape, BMSProtocolError, InstrumentMapping, warn, note_name,
    DEFAULT_TICKS_PER_QNOTE, DRUM_KIT, NUM_VOICES, PERCUSSION_CHANNEL, STACK_LIMIT,
)
from midi_track import (
    MidiTrack, ChannelAllocator,
    NOTE_ON, NOTE_OFF, CONTROL_CHANGE, PROGRAM_CHANGE, META_EVENT, META_TEMPO,
    CC_VOLUME, CC_PAN,
)


# Opcodes
OP_DELAY8 = 0x80
OP_NOTE_OFF_FIRST = 0x81
OP_NOTE_OFF_LAST = 0x87
OP_DELAY16 = 0x88
OP_PAN = 0x9A
OP_VOLUME = 0x9C
OP_INSTRUMENT = 0xA4
OP_COND_END = 0xAC
OP_TRACK_START = 0xC1
OP_CALL = 0xC4
OP_RETURN = 0xC6
OP_GOTO = 0xC8
OP_TEMPO = 0xFD
OP_TICKS = 0xFE
OP_TRACK_END = 0xFF

# Sub-opcodes
INSTRUMENT_BANK = 0x20
INSTRUMENT_PROGRAM = 0x21
VOLUME_SET = 0x00
VOLUME_VIBRATO = 0x09
PAN_SET = 0x03

# Opcodes with unknown meaning: operand byte count to skip
UNKNOWN_OPCODE_LENGTHS = {
    0x98: 2,  # near the start of a track
    0x9E: 2,  # pitch bend, probably
    0xAD: 3,
    0xCB: 7,  # real length unknown, 7 works on known files
    0xCC: 2,  # usually follows 0xAC
    0xD6: 1,
    0xE6: 2,  # near the start of a track
    0xE7: 2,
    0xF4: 1,
}

OPCODE_NAMES = {
    OP_DELAY8: "DELAY8",
    OP_DELAY16: "DELAY16",
    OP_PAN: "PAN",
    OP_VOLUME: "VOLUME",
    OP_INSTRUMENT: "INSTRUMENT",
    OP_COND_END: "UNKNOWN_AC",
    OP_TRACK_START: "TRACK_START",
    OP_CALL: "CALL",
    OP_RETURN: "RETURN",
    OP_GOTO: "GOTO",
    OP_TEMPO: "TEMPO",
    OP_TICKS: "TICKS",
    OP_TRACK_END: "TRACK_END",
    0x9E: "PITCH_BEND?",
}

MAX_TEMPO_USEC = 0xFFFFFF  # tempo meta event holds 24 bits


class BMSInterpreter:
    """Conversion session for one BMS sequence.

    Holds all decoding state: output tracks, channel allocation, the voice
    table, the pending delay, the call stack and the track resume position.
    The read position itself is passed explicitly from step to step.
    """

    def __init__(self, data: bytes, instruments: Optional[InstrumentMapping] = None,
                 verbose: bool = False):
        self.tape = BMSTape(data)
        self.instruments = instruments if instruments is not None else InstrumentMapping()
        self.verbose = verbose

        self.allocator = ChannelAllocator()
        self.tracks: List[MidiTrack] = []
        self.meta_track = self._add_track()
        self.current = self.meta_track

        self.voices: List[Optional[int]] = [None] * NUM_VOICES  # sounding pitch per voice
        self.delay = 0  # ticks waiting to be written before the next event
        self.call_stack: List[int] = []
        self.in_track = False
        self.saved_pos = 0  # where to resume after the current track ends
        self.ticks_per_qnote: Optional[int] = None
        self.finished = False

        self.disasm: List[str] = []
        self.warnings: List[str] = []

        self.opcode_dispatch: Dict[int, Callable[[int, int, int], int]] = {
            OP_DELAY8: self._delay8,
            OP_DELAY16: self._delay16,
            OP_PAN: self._pan,
            OP_VOLUME: self._volume,
            OP_INSTRUMENT: self._instrument,
            OP_COND_END: self._conditional_end,
            OP_TRACK_START: self._track_start,
            OP_CALL: self._call,
            OP_RETURN: self._return,
            OP_GOTO: self._goto,
            OP_TEMPO: self._tempo,
            OP_TICKS: self._ticks_per_qnote,
            OP_TRACK_END: self._track_end,
        }

    @property
    def resolution(self) -> int:
        """Ticks per quarter note for the MIDI header."""
        return self.ticks_per_qnote or DEFAULT_TICKS_PER_QNOTE

    def run(self, start: int = 0) -> List[MidiTrack]:
        """Decode until the meta track ends and return all tracks in creation order."""
        pos = start
        while not self.finished:
            pos = self.step(pos)
        return self.tracks

    def step(self, pos: int) -> int:
        """Decode one event at pos and return the position of the next one."""
        opcode, next_pos = self.tape.read_u8(pos)

        if opcode < 0x80:
            return self._note_on(opcode, pos, next_pos)
        if OP_NOTE_OFF_FIRST <= opcode <= OP_NOTE_OFF_LAST:
            return self._note_off(opcode, pos, next_pos)
        if opcode in UNKNOWN_OPCODE_LENGTHS:
            return self._unknown(opcode, pos, next_pos)

        handler = self.opcode_dispatch.get(opcode)
        if handler is None:
            raise BMSProtocolError("Unhandled BMS event", opcode, pos)
        return handler(opcode, pos, next_pos)

    # -- helpers --------------------------------------------------------------

    def _add_track(self) -> MidiTrack:
        track = MidiTrack(index=len(self.tracks))
        self.tracks.append(track)
        return track

    def _trace(self, offset: int, end: int, text: str):
        """Record a disassembly line for the event spanning offset..end."""
        raw = ' '.join(f"{b:02X}" for b in self.tape.data[offset:end])
        where = "META" if not self.in_track else f"T{self.current.index:02d}"
        line = f"      {offset:06X}: {raw:<24} [{where}] {text}"
        self.disasm.append(line)
        if self.verbose:
            print(line)

    def _warn(self, message: str, offset: int):
        self.warnings.append(warn(f"{message} at address 0x{offset:X}"))

    def _channel(self, opcode: int, offset: int) -> int:
        """Channel of the current track; channel events need an allocated one."""
        channel = self.current.channel
        if channel is None:
            raise BMSProtocolError("Channel event outside of a track", opcode, offset)
        if not self.allocator.is_used(channel):
            raise BMSProtocolError(f"Channel {channel} is not allocated", opcode, offset)
        return channel

    def _emit(self, *data: int):
        """Write an event on the current track with the pending delay."""
        self.current.write_event(self.delay, *data)
        self.delay = 0

    # -- notes and timing ------------------------------------------------------

    def _note_on(self, opcode: int, offset: int, pos: int) -> int:
        pitch = opcode
        voice, pos = self.tape.read_u8(pos)
        volume, pos = self.tape.read_u8(pos)
        channel = self._channel(opcode, offset)

        if voice >= NUM_VOICES:
            raise BMSProtocolError(f"Voice {voice} out of range", opcode, offset)
        if self.voices[voice] is not None:
            raise BMSProtocolError(f"Voice {voice} is already playing", opcode, offset)

        # Rough percussion fix: BMS drum numbers do not follow the GM drum map
        if channel == PERCUSSION_CHANNEL:
            pitch = max(pitch - 1, 0)

        self._trace(offset, pos, f"NOTE_ON {note_name(pitch)} ({pitch}) voice {voice} vol {volume}")
        if volume > 127:
            self._warn(f"Note volume {volume} is not a valid MIDI velocity", offset)
        self._emit(NOTE_ON | channel, pitch, volume)
        self.voices[voice] = pitch
        return pos

    def _note_off(self, opcode: int, offset: int, pos: int) -> int:
        voice = opcode & 0x07
        pitch = self.voices[voice]
        if pitch is None:
            raise BMSProtocolError(f"Voice {voice} is not playing", opcode, offset)
        channel = self._channel(opcode, offset)

        self._trace(offset, pos, f"NOTE_OFF voice {voice} ({note_name(pitch)})")
        self._emit(NOTE_OFF | channel, pitch, 0)
        self.voices[voice] = None
        return pos

    def _delay8(self, opcode: int, offset: int, pos: int) -> int:
        ticks, pos = self.tape.read_u8(pos)
        self.delay += ticks
        self._trace(offset, pos, f"DELAY8 {ticks} (pending {self.delay})")
        return pos

    def _delay16(self, opcode: int, offset: int, pos: int) -> int:
        ticks, pos = self.tape.read_u16(pos)
        self.delay += ticks
        self._trace(offset, pos, f"DELAY16 {ticks} (pending {self.delay})")
        return pos

    # -- track control ---------------------------------------------------------

    def _track_start(self, opcode: int, offset: int, pos: int) -> int:
        _, pos = self.tape.read_u8(pos)
        target, pos = self.tape.read_u24(pos)
        if self.in_track:
            raise BMSProtocolError("Track start inside a track", opcode, offset)

        track = self._add_track()
        track.channel = self.allocator.allocate()
        self._trace(offset, pos, f"TRACK_START track {track.index} @ 0x{target:X} -> channel {track.channel}")

        self.saved_pos = pos
        self.current = track
        self.in_track = True
        return target

    def _track_end(self, opcode: int, offset: int, pos: int, label: str = "TRACK_END") -> int:
        self._trace(offset, pos, label if self.in_track else f"{label} (meta)")
        self.current.write_end_of_track()

        if not self.in_track:
            self.finished = True
            return pos

        self.current = self.meta_track
        self.in_track = False
        self.delay = 0
        return self.saved_pos

    def _conditional_end(self, opcode: int, offset: int, pos: int) -> int:
        operands, pos = self.tape.read_bytes(pos, 3)
        if operands[2] == 0:
            return self._track_end(opcode, offset, pos, "UNKNOWN_AC -> TRACK_END")
        self._trace(offset, pos, "UNKNOWN_AC")
        return pos

    def _call(self, opcode: int, offset: int, pos: int) -> int:
        target, pos = self.tape.read_u32(pos)
        if len(self.call_stack) >= STACK_LIMIT:
            raise BMSProtocolError("Call stack limit reached", opcode, offset)
        self.call_stack.append(pos)
        self._trace(offset, pos, f"CALL 0x{target:X}")
        return target

    def _return(self, opcode: int, offset: int, pos: int) -> int:
        if not self.call_stack:
            raise BMSProtocolError("Attempted to return outside of subroutine", opcode, offset)
        target = self.call_stack.pop()
        self._trace(offset, pos, f"RETURN 0x{target:X}")
        return target

    def _goto(self, opcode: int, offset: int, pos: int) -> int:
        # MIDI cannot loop; the jump is dropped
        _, pos = self.tape.read_bytes(pos, 4)
        self._trace(offset, pos, "GOTO (ignored)")
        return pos

    # -- channel settings ------------------------------------------------------

    def _instrument(self, opcode: int, offset: int, pos: int) -> int:
        sub, pos = self.tape.read_u8(pos)

        if sub == INSTRUMENT_BANK:
            bank, pos = self.tape.read_u8(pos)
            self._trace(offset, pos, f"INSTRUMENT bank {bank}")
        elif sub == INSTRUMENT_PROGRAM:
            inst_id, pos = self.tape.read_u8(pos)
            program = self.instruments.lookup(inst_id)
            name = self.instruments.get_instrument_name(program)
            if program == DRUM_KIT:
                # Drum kit: move this track to channel 9
                self._channel(opcode, offset)
                self.allocator.reassign_to_percussion(self.current)
                program = 0
            channel = self._channel(opcode, offset)
            self._trace(offset, pos, f"INSTRUMENT {inst_id} -> program {program} ({name})")
            if program > 127:
                self._warn(f"Program {program} is not a valid MIDI program", offset)
            self._emit(PROGRAM_CHANGE | channel, program)
        else:
            _, pos = self.tape.read_u8(pos)
            self._trace(offset, pos, f"INSTRUMENT (unknown 0x{sub:02X})")
            self._warn(f"Unknown instrument event 0x{sub:02X}", offset)
        return pos

    def _controller(self, opcode: int, offset: int, pos: int, name: str, controller: int) -> int:
        value, pos = self.tape.read_u8(pos)
        duration, pos = self.tape.read_u8(pos)  # meaning unknown
        if value > 127:
            raise BMSProtocolError(f"{name.capitalize()} {value} out of range", opcode, offset)
        channel = self._channel(opcode, offset)
        self._trace(offset, pos, f"{name.upper()} {value} duration {duration}")
        self._emit(CONTROL_CHANGE | channel, controller, value)
        return pos

    def _volume(self, opcode: int, offset: int, pos: int) -> int:
        sub, pos = self.tape.read_u8(pos)
        if sub == VOLUME_SET:
            return self._controller(opcode, offset, pos, "volume", CC_VOLUME)

        _, pos = self.tape.read_bytes(pos, 2)
        if sub == VOLUME_VIBRATO:
            self._trace(offset, pos, "VOLUME (vibrato?)")
        else:
            self._trace(offset, pos, f"VOLUME (unknown 0x{sub:02X})")
            self._warn(f"Unknown volume event 0x{sub:02X}", offset)
        return pos

    def _pan(self, opcode: int, offset: int, pos: int) -> int:
        sub, pos = self.tape.read_u8(pos)
        if sub == PAN_SET:
            return self._controller(opcode, offset, pos, "pan", CC_PAN)

        _, pos = self.tape.read_bytes(pos, 2)
        self._trace(offset, pos, f"PAN (unknown 0x{sub:02X})")
        self._warn(f"Unknown pan event 0x{sub:02X}", offset)
        return pos

    # -- global settings -------------------------------------------------------

    def _tempo(self, opcode: int, offset: int, pos: int) -> int:
        bpm, pos = self.tape.read_u16(pos)
        self._trace(offset, pos, f"TEMPO {bpm} bpm")

        if self.in_track:
            self._warn("Setting tempo within a track is not supported", offset)
            return pos
        if bpm == 0:
            raise BMSProtocolError("Tempo of 0 bpm", opcode, offset)

        usec = 60_000_000 // bpm  # microseconds per quarter note
        if usec > MAX_TEMPO_USEC:
            raise BMSProtocolError(f"Tempo of {bpm} bpm is too slow for MIDI", opcode, offset)
        self.meta_track.write_event(self.delay, META_EVENT, META_TEMPO, 0x03)
        self.meta_track.write_u24(usec)
        self.delay = 0
        return pos

    def _ticks_per_qnote(self, opcode: int, offset: int, pos: int) -> int:
        ticks, pos = self.tape.read_u16(pos)
        self._trace(offset, pos, f"TICKS {ticks} per quarter note")

        if self.ticks_per_qnote is not None:
            self._warn("Ticks per quarter note already set, ignoring", offset)
        elif ticks == 0:
            self._warn("Ignoring ticks per quarter note of 0", offset)
        else:
            self.ticks_per_qnote = ticks
        return pos

    def _unknown(self, opcode: int, offset: int, pos: int) -> int:
        _, pos = self.tape.read_bytes(pos, UNKNOWN_OPCODE_LENGTHS[opcode])
        self._trace(offset, pos, OPCODE_NAMES.get(opcode, f"UNKNOWN_{opcode:02X}"))
        return pos
