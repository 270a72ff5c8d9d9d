# pylint: disable=missing-module-docstring,missing-function-docstring

import base64
import json

import pytest

from capture.protocol import (
    AudioData,
    FrameProtocolParser,
    HelperCode,
    PermissionStatus,
    ProtocolParseError,
    RecordingStatus,
    StreamFailed,
    StreamStarted,
    parse_helper_line,
)


def line(record: dict) -> bytes:
    return json.dumps(record).encode("utf-8")


def audio_line(pcm: bytes) -> bytes:
    return line({"code": "AUDIO_DATA", "data": base64.b64encode(pcm).decode("ascii")})


# ---------------------------------------------------------------------
# parse_helper_line
# ---------------------------------------------------------------------

def test_parses_each_record_kind():
    assert parse_helper_line(line({"code": "STREAM_STARTED"}), ts_ms=1) == StreamStarted(ts_ms=1)

    failed = parse_helper_line(line({"code": "STREAM_FAILED", "error": "denied"}), ts_ms=2)
    assert failed == StreamFailed(ts_ms=2, error="denied")

    audio = parse_helper_line(audio_line(b"\x01\x02\x03\x04"), ts_ms=3)
    assert isinstance(audio, AudioData)
    assert audio.pcm_bytes == b"\x01\x02\x03\x04"

    rec = parse_helper_line(
        line({"code": "RECORDING_STARTED", "timestamp": "2024-01-01", "path": "/tmp/a.flac"}),
        ts_ms=4,
    )
    assert isinstance(rec, RecordingStatus)
    assert rec.started and rec.path == "/tmp/a.flac"

    perm = parse_helper_line(line({"code": "PERMISSION_DENIED"}), ts_ms=5)
    assert isinstance(perm, PermissionStatus)
    assert perm.code is HelperCode.PERMISSION_DENIED
    assert not perm.granted


def test_accepts_text_lines():
    record = parse_helper_line('{"code": "PERMISSION_GRANTED"}', ts_ms=0)
    assert isinstance(record, PermissionStatus) and record.granted


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[1, 2, 3]",
        b'{"data": "AAAA"}',
        b'{"code": "SOMETHING_ELSE"}',
        b'{"code": "AUDIO_DATA"}',
        b'{"code": "AUDIO_DATA", "data": "***not base64***"}',
        b"\xff\xfe\xfd",
    ],
)
def test_malformed_lines_raise_parse_error(raw: bytes):
    with pytest.raises(ProtocolParseError):
        parse_helper_line(raw, ts_ms=0)


# ---------------------------------------------------------------------
# FrameProtocolParser
# ---------------------------------------------------------------------

def test_reassembles_lines_split_across_chunks():
    parser = FrameProtocolParser()
    payload = audio_line(b"\x00\x01") + b"\n" + line({"code": "STREAM_STARTED"}) + b"\n"

    out = parser.feed(payload[:7]) + parser.feed(payload[7:30]) + parser.feed(payload[30:])

    assert out == [audio_line(b"\x00\x01"), line({"code": "STREAM_STARTED"})]
    assert parser.flush() == []


def test_skips_blank_lines_and_flushes_unterminated_tail():
    parser = FrameProtocolParser()

    assert parser.feed(b"\n\r\n  \n" + b'{"code": "STREAM_STARTED"}') == []
    assert parser.flush() == [b'{"code": "STREAM_STARTED"}']


def test_oversized_line_is_discarded_up_to_next_newline():
    parser = FrameProtocolParser(max_line_bytes=16)

    assert parser.feed(b"x" * 20) == []
    assert parser.feed(b"y" * 20) == []
    out = parser.feed(b"zzz\n" + b'{"code":"X"}\n')

    assert out == [b'{"code":"X"}']
    assert parser.discarded_lines == 1


def test_oversized_line_completed_within_one_chunk_is_discarded():
    parser = FrameProtocolParser(max_line_bytes=16)

    out = parser.feed(b"a" * 40 + b"\n" + b'{"code":"X"}\n')
    assert out == [b'{"code":"X"}']
    assert parser.discarded_lines == 1

    # Held tail that crosses the limit once its newline arrives
    assert parser.feed(b"b" * 10) == []
    assert parser.feed(b"c" * 10 + b"\n") == []
    assert parser.discarded_lines == 2


def test_malformed_line_between_two_audio_lines_leaves_two_frames():
    parser = FrameProtocolParser()
    chunk = audio_line(b"\x01\x00") + b"\ngarbage{\n" + audio_line(b"\x02\x00") + b"\n"

    frames = []
    skipped = 0
    for raw in parser.feed(chunk):
        try:
            record = parse_helper_line(raw, ts_ms=0)
        except ProtocolParseError:
            skipped += 1
            continue
        frames.append(record)

    assert [f.pcm_bytes for f in frames] == [b"\x01\x00", b"\x02\x00"]
    assert skipped == 1
