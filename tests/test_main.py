import random

import pytest

from serialframe.checksums import calculate
from serialframe.framing import append_modbus_crc, slip_encode
from serialframe.main import main, parse_corpus_line


class TestParseCorpusLine:
    def test_with_frame_id(self):
        assert parse_corpus_line("1A5: 01 02 ff\n") == (0x1A5, b"\x01\x02\xff")

    def test_without_frame_id(self):
        assert parse_corpus_line("0102FF") == (None, b"\x01\x02\xff")

    def test_blank_and_comment(self):
        assert parse_corpus_line("   \n") is None
        assert parse_corpus_line("# captured on bench 2") is None

    def test_invalid_hex(self):
        with pytest.raises(ValueError):
            parse_corpus_line("10: 0g")


def run_main(argv):
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    return excinfo.value.code


def test_frame_command_slip(tmp_path, capsys):
    capture = tmp_path / "capture.bin"
    capture.write_bytes(slip_encode(b"\x01\x02") + slip_encode(b"\x03") + b"\x04")

    assert run_main(["frame", str(capture), "--mode", "slip"]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 3
    assert lines[0].endswith("01 02")
    assert lines[2].endswith("04")
    assert " I " in lines[2]


def test_frame_command_with_config(tmp_path, capsys):
    capture = tmp_path / "capture.bin"
    capture.write_bytes(b"\xff" + append_modbus_crc(bytes.fromhex("01030000000A")))
    config = tmp_path / "config.yaml"
    config.write_text("framing:\n  mode: modbus_rtu\nframe_id:\n  start_byte: 1\n")

    assert run_main(["frame", str(capture), "-c", str(config)]) == 0

    out = capsys.readouterr().out
    assert "id=3 " in out
    assert "01 03 00 00 00 0a c5 cd" in out


def test_frame_command_bad_delimiter(tmp_path):
    capture = tmp_path / "capture.bin"
    capture.write_bytes(b"abc")
    assert run_main(["frame", str(capture), "--mode", "raw", "--delimiter", "xyz"]) == 1


def test_frame_command_missing_file(tmp_path):
    assert run_main(["frame", str(tmp_path / "missing.bin")]) == 1


def test_discover_command(tmp_path, capsys):
    rng = random.Random(11)
    lines = ["# xor protected status frames"]
    for _ in range(20):
        payload = bytes(rng.randrange(256) for _ in range(6))
        lines.append(f"1A0: {(payload + bytes([calculate('xor', payload)])).hex()}")
    corpus = tmp_path / "corpus.txt"
    corpus.write_text("\n".join(lines) + "\n")

    assert run_main(["discover", str(corpus), "--positions", "-1"]) == 0

    out = capsys.readouterr().out
    assert "0x1A0 pos=-1 len=1 XOR" in out
    assert "20/20 (100.0%)" in out


def test_discover_command_bad_corpus(tmp_path):
    corpus = tmp_path / "corpus.txt"
    corpus.write_text("1A0: 0102\nnot hex\n")
    assert run_main(["discover", str(corpus)]) == 1
