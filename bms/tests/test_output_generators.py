#!/usr/bin/env python3
"""Tests for MIDI file assembly and text listings."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import io
import struct

from format_bms import BMSInterpreter
from midi_track import MidiTrack
from output_generators import (
    build_midi_file, describe_track_events, disassemble_to_text, write_midi_file,
)


# track start -> 9 | tempo 120 | meta end | note on, delay 10, note off, end
SCENARIO = bytes.fromhex("C1 00 00 00 09 FD 00 78 FF 3C 01 64 80 0A 81 FF")


def test_header_and_chunks():
    meta = MidiTrack(index=0)
    meta.write_end_of_track()
    track = MidiTrack(index=1, channel=3)
    track.write_event(0, 0x93, 60, 100)
    track.write_end_of_track()

    data = build_midi_file([meta, track], 96)
    assert data[:14] == b"MThd" + struct.pack('>LHHH', 6, 1, 2, 96)
    assert data[14:22] == b"MTrk" + struct.pack('>L', 4)
    assert data[22:26] == bytes.fromhex("00 FF 2F 00")
    assert data[26:34] == b"MTrk" + struct.pack('>L', 8)
    assert data[34:] == bytes.fromhex("00 93 3C 64 00 FF 2F 00")


def test_write_midi_file_to_stream():
    interpreter = BMSInterpreter(SCENARIO)
    tracks = interpreter.run()
    stream = io.BytesIO()
    write_midi_file(stream, tracks, interpreter.resolution)
    assert stream.getvalue() == build_midi_file(tracks, 120)
    assert len(stream.getvalue()) == 14 + (8 + 11) + (8 + 12)


def test_describe_track_events():
    interpreter = BMSInterpreter(SCENARIO)
    meta, track = interpreter.run()

    lines = describe_track_events(track)
    assert len(lines) == 3
    assert "Note On  C 4 (60) vel 100" in lines[0]
    assert lines[1].strip().startswith("10 (+10")
    assert "Note Off C 4 (60)" in lines[1]
    assert "End of Track" in lines[2]

    meta_lines = describe_track_events(meta)
    assert "Tempo 500000 usec/qn (120.00 bpm)" in meta_lines[0]


def test_describe_controllers_and_program():
    track = MidiTrack(index=1, channel=9)
    track.write_event(0, 0xC9, 0)
    track.write_event(5, 0xB9, 0x07, 100)
    track.write_event(0, 0xB9, 0x0A, 64)
    lines = describe_track_events(track)
    assert "ch9  Program 0" in lines[0]
    assert "Volume 100" in lines[1]
    assert "Pan 64" in lines[2]


def test_describe_stops_at_unknown_status():
    track = MidiTrack(index=1, channel=0)
    track.write_event(0, 0xE0, 0, 64)
    lines = describe_track_events(track)
    assert len(lines) == 1
    assert "?? 0xE0" in lines[0]


def test_disassemble_to_text():
    interpreter = BMSInterpreter(SCENARIO)
    interpreter.run()
    text = disassemble_to_text("test.bms", interpreter)

    assert text.startswith("Sequence: test.bms")
    assert "Ticks per quarter note: 120 (default)" in text
    assert "=== Track 0 (meta) - 11 bytes ===" in text
    assert "=== Track 1 channel 0 - 12 bytes ===" in text
    assert "Warnings:" not in text
