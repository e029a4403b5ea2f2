#!/usr/bin/env python3
"""Tests for file conversion, batch configs and the command line."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import pytest

import bms2mid
from extractor import BMSConverter
from format_base import BMSProtocolError, InstrumentListError


# track start -> 9 | tempo 120 | meta end | note on, delay 10, note off, end
SCENARIO = bytes.fromhex("C1 00 00 00 09 FD 00 78 FF 3C 01 64 80 0A 81 FF")

EXPECTED_MIDI = bytes.fromhex(
    "4D 54 68 64 00 00 00 06 00 01 00 02 00 78"
    "4D 54 72 6B 00 00 00 0B 00 FF 51 03 07 A1 20 00 FF 2F 00"
    "4D 54 72 6B 00 00 00 0C 00 90 3C 64 0A 80 3C 00 00 FF 2F 00"
)

# Same song, with instrument 1 selected first
DRUM_SONG = bytes.fromhex("C1 00 00 00 06 FF A4 21 01 3C 01 64 81 FF")


@pytest.fixture
def song(tmp_path):
    path = tmp_path / "song.bms"
    path.write_bytes(SCENARIO)
    return path


def test_convert_writes_midi(song, tmp_path):
    output = tmp_path / "song.mid"
    interpreter = BMSConverter().convert(song, output)
    assert output.read_bytes() == EXPECTED_MIDI
    assert len(interpreter.tracks) == 2
    assert not output.with_suffix('.txt').exists()


def test_convert_with_disasm(song, tmp_path):
    output = tmp_path / "song.mid"
    BMSConverter(write_disasm=True).convert(song, output)
    text = output.with_suffix('.txt').read_text()
    assert "Sequence: song.bms" in text
    assert "TRACK_START" in text


def test_convert_with_instrument_list(tmp_path):
    (tmp_path / "drums.bms").write_bytes(DRUM_SONG)
    (tmp_path / "inst.txt").write_text("Acoustic Grand Piano\nDrum Kit\n")

    converter = BMSConverter(tmp_path / "inst.txt")
    interpreter = converter.convert(tmp_path / "drums.bms", tmp_path / "drums.mid")
    assert interpreter.tracks[1].channel == 9
    assert bytes.fromhex("00 C9 00 00 99 3B 64") in (tmp_path / "drums.mid").read_bytes()


def test_missing_input_fails(tmp_path):
    with pytest.raises(BMSProtocolError, match="failed to open input file"):
        BMSConverter().convert(tmp_path / "nope.bms", tmp_path / "out.mid")


def test_missing_instrument_list_fails(tmp_path):
    with pytest.raises(InstrumentListError):
        BMSConverter(tmp_path / "nope.txt")


def test_batch_conversion(tmp_path, capsys):
    (tmp_path / "good.bms").write_bytes(SCENARIO)
    (tmp_path / "bad.bms").write_bytes(bytes.fromhex("B0 FF"))
    (tmp_path / "drums.bms").write_bytes(DRUM_SONG)
    (tmp_path / "drums.txt").write_text("0\nDrum Kit\n")
    config = tmp_path / "songs.yaml"
    config.write_text(
        "output_dir: out\n"
        "songs:\n"
        "  - input: good.bms\n"
        "    title: Good Song\n"
        "  - input: bad.bms\n"
        "  - input: drums.bms\n"
        "    output: percussion.mid\n"
        "    instruments: drums.txt\n"
    )

    failures = BMSConverter().convert_all(config)

    assert failures == ["bad"]
    assert (tmp_path / "out" / "good.mid").read_bytes() == EXPECTED_MIDI
    assert (tmp_path / "out" / "percussion.mid").exists()
    assert not (tmp_path / "out" / "bad.mid").exists()
    out = capsys.readouterr().out
    assert "Converting: Good Song" in out
    assert "ERROR: Unhandled BMS event" in out


def test_batch_config_requires_input(tmp_path):
    config = tmp_path / "songs.yaml"
    config.write_text("songs:\n  - title: nothing\n")
    with pytest.raises(BMSProtocolError, match="needs an 'input'"):
        BMSConverter().convert_all(config)


def test_main_usage(capsys):
    assert bms2mid.main(["bms2mid.py"]) == 1
    assert "Usage:" in capsys.readouterr().out


def test_main_converts(song, tmp_path):
    output = tmp_path / "cli.mid"
    assert bms2mid.main(["bms2mid.py", str(song), str(output)]) == 0
    assert output.read_bytes() == EXPECTED_MIDI


def test_main_reports_fatal_error(tmp_path, capsys):
    bad = tmp_path / "bad.bms"
    bad.write_bytes(bytes.fromhex("B0 FF"))
    assert bms2mid.main(["bms2mid.py", str(bad), str(tmp_path / "bad.mid")]) == 1
    err = capsys.readouterr().err
    assert err.startswith("ERROR! Unhandled BMS event")
    assert "0xB0 at address 0x0" in err


def test_main_batch(tmp_path):
    (tmp_path / "good.bms").write_bytes(SCENARIO)
    config = tmp_path / "songs.yaml"
    config.write_text("songs:\n  - input: good.bms\n")
    assert bms2mid.main(["bms2mid.py", "--batch", str(config)]) == 0
    assert (tmp_path / "mid" / "good.mid").read_bytes() == EXPECTED_MIDI
