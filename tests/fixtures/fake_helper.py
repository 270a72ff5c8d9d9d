"""
Stand-in for the native capture helper, driven by a mode argument.

    fake_helper.py <mode> --start-stream
    fake_helper.py <mode> --check-permissions

Modes:
    stream    STREAM_STARTED, AUDIO_DATA, malformed line, AUDIO_DATA, then idle
    silent    never reports readiness
    fail      STREAM_FAILED, then exit 1
    exit      STREAM_STARTED, one AUDIO_DATA, then exit 3
    early     exits 2 without any output
    midfail   STREAM_STARTED, one AUDIO_DATA, STREAM_FAILED, then idle
    stubborn  like stream but ignores SIGTERM
    granted   PERMISSION_GRANTED
    denied    PERMISSION_DENIED
"""

import base64
import json
import signal
import struct
import sys
import time


# One stereo sample frame: left 0.5, right -0.5
FRAME_PCM = struct.pack("<hh", 16384, -16384)


def emit(record):
    sys.stdout.write(json.dumps(record) + "\n")
    sys.stdout.flush()


def emit_audio():
    emit({"code": "AUDIO_DATA", "data": base64.b64encode(FRAME_PCM).decode("ascii")})


def idle():
    while True:
        time.sleep(60)


def main():
    mode = sys.argv[1]
    flags = sys.argv[2:]

    if "--check-permissions" in flags:
        emit({"code": "PERMISSION_GRANTED" if mode == "granted" else "PERMISSION_DENIED"})
        return 0

    if mode == "silent":
        idle()

    if mode == "fail":
        emit({"code": "STREAM_FAILED", "error": "Screen recording permission denied"})
        return 1

    if mode == "early":
        return 2

    if mode == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    emit({"code": "STREAM_STARTED"})
    emit_audio()

    if mode == "exit":
        return 3

    if mode == "midfail":
        emit({"code": "STREAM_FAILED", "error": "Capture device lost"})
        idle()

    sys.stdout.write("this is not json\n")
    sys.stdout.flush()
    emit_audio()
    idle()
    return 0


if __name__ == "__main__":
    sys.exit(main())
