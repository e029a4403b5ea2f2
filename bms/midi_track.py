"""
MIDI track buffers and channel allocation.

Tracks are raw byte streams in Standard MIDI File event encoding: each event
is a variable-length delta time followed by the event bytes. Nothing is
buffered as objects; the bytes are written in the order the sequence is
decoded.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

from format_base import (
    BMSProtocolError, ResourceExhausted,
    MAX_CHANNELS, PERCUSSION_CHANNEL,
)


# MIDI status bytes (high nibble of channel events)
NOTE_OFF = 0x80
NOTE_ON = 0x90
CONTROL_CHANGE = 0xB0
PROGRAM_CHANGE = 0xC0
META_EVENT = 0xFF

# Meta event types
META_END_OF_TRACK = 0x2F
META_TEMPO = 0x51

# Controller numbers
CC_VOLUME = 0x07
CC_PAN = 0x0A


def encode_varlen(value: int) -> bytes:
    """Encode a delta time as a MIDI variable-length quantity.

    Big-endian groups of 7 bits, high bit set on every byte but the last.
    Zero encodes as a single 0x00 byte.
    """
    if value < 0:
        raise ValueError(f"Delta time must not be negative: {value}")

    out = [value & 0x7F]
    value >>= 7
    while value:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.reverse()
    return bytes(out)


def decode_varlen(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode a variable-length quantity.

    Returns:
        Tuple of (value, offset just past the quantity)
    """
    value = 0
    while True:
        if offset >= len(data):
            raise ValueError("Truncated variable-length quantity")
        byte = data[offset]
        offset += 1
        value = (value << 7) | (byte & 0x7F)
        if not byte & 0x80:
            return value, offset


@dataclass
class MidiTrack:
    """One output track and its growing event buffer."""
    index: int  # Creation order; 0 is the meta track
    channel: Optional[int] = None  # None until allocated; the meta track never gets one
    buffer: bytearray = field(default_factory=bytearray)

    def __len__(self) -> int:
        return len(self.buffer)

    @property
    def is_meta(self) -> bool:
        return self.index == 0

    def write_u8(self, value: int):
        self.buffer.append(value & 0xFF)

    def write_u24(self, value: int):
        self.buffer += (value & 0xFFFFFF).to_bytes(3, 'big')

    def write_bytes(self, data: bytes):
        self.buffer += data

    def write_varlen(self, value: int):
        self.buffer += encode_varlen(value)

    def write_event(self, delay: int, *data: int):
        """Append one event: delta time then the raw event bytes."""
        self.write_varlen(delay)
        self.write_bytes(bytes(data))

    def write_end_of_track(self):
        self.write_event(0, META_EVENT, META_END_OF_TRACK, 0)


class ChannelAllocator:
    """Hands out MIDI channels to tracks, keeping channel 9 for percussion."""

    def __init__(self):
        self.used_mask = 0  # bit i set = channel i belongs to a track

    def is_used(self, channel: int) -> bool:
        return bool(self.used_mask & (1 << channel))

    def allocate(self) -> int:
        """Take the lowest free channel, falling back to 9 only when nothing else is left."""
        for channel in range(MAX_CHANNELS):
            if channel != PERCUSSION_CHANNEL and not self.is_used(channel):
                self.used_mask |= 1 << channel
                return channel
        if not self.is_used(PERCUSSION_CHANNEL):
            self.used_mask |= 1 << PERCUSSION_CHANNEL
            return PERCUSSION_CHANNEL
        raise ResourceExhausted(f"Cannot use more than {MAX_CHANNELS} MIDI channels")

    def reassign_to_percussion(self, track: MidiTrack):
        """Move a track onto the percussion channel, releasing its old channel."""
        if track.channel == PERCUSSION_CHANNEL:
            return
        if track.channel is None:
            raise BMSProtocolError(f"Track {track.index} has no channel to move to percussion")
        if self.is_used(PERCUSSION_CHANNEL):
            raise BMSProtocolError(
                f"Cannot move track {track.index} to percussion: channel 9 is already in use")
        self.used_mask &= ~(1 << track.channel)
        self.used_mask |= 1 << PERCUSSION_CHANNEL
        track.channel = PERCUSSION_CHANNEL
