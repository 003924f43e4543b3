"""Demultiplexer for the runtime's framed stdout/stderr stream.

When a container runs without a TTY, the attach endpoint delivers both output
streams over one connection. Each frame is an 8-byte header followed by the
payload:

    [stream type: 1 byte][reserved: 3 bytes][payload length: 4 bytes, big-endian]

Stream type 1 is stdout and 2 is stderr. Type 0 (stdin echo) is written to
stdout, matching the runtime's own convention.

Frames may be split across socket reads at any byte, including inside the
header, so the parser keeps the unconsumed tail between feed() calls.
"""

from __future__ import annotations

import codecs
import logging
import struct
from typing import Any, Callable

from nori_tests.sandbox.errors import DemuxError

logger = logging.getLogger(__name__)

HEADER_SIZE = 8
_HEADER = struct.Struct(">BxxxL")

STDIN = 0
STDOUT = 1
STDERR = 2

Sink = Callable[[str], None]


class FrameDemuxer:
    """Stateful frame parser routing payloads to two independent text sinks.

    Each stream has its own incremental UTF-8 decoder, so a multi-byte
    character split across two frames of the same stream decodes correctly.
    Invalid bytes are replaced rather than raised.
    """

    def __init__(self, on_stdout: Sink, on_stderr: Sink):
        self._sinks = {STDOUT: on_stdout, STDERR: on_stderr}
        self._decoders = {
            STDOUT: codecs.getincrementaldecoder("utf-8")(errors="replace"),
            STDERR: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }
        self._buffer = bytearray()
        self._closed = False
        self.frames = 0

    def feed(self, data: bytes) -> None:
        """Consume a slice of the framed stream, emitting every complete frame."""
        if self._closed:
            raise DemuxError("feed() called after close()")
        self._buffer.extend(data)

        while len(self._buffer) >= HEADER_SIZE:
            stream_type, length = _HEADER.unpack_from(self._buffer)
            if stream_type == STDIN:
                stream_type = STDOUT
            if stream_type not in self._sinks:
                raise DemuxError(f"Unknown stream type {stream_type} in frame header")
            if len(self._buffer) < HEADER_SIZE + length:
                break  # Wait for the rest of the payload

            payload = bytes(self._buffer[HEADER_SIZE:HEADER_SIZE + length])
            del self._buffer[:HEADER_SIZE + length]
            self.frames += 1
            self._emit(stream_type, payload)

    def close(self) -> None:
        """Signal end of stream and flush decoder state.

        Raises:
            DemuxError: If the stream ended inside a frame
        """
        if self._closed:
            return
        self._closed = True

        for stream_type, decoder in self._decoders.items():
            tail = decoder.decode(b"", final=True)
            if tail:
                self._sinks[stream_type](tail)

        if self._buffer:
            leftover = len(self._buffer)
            self._buffer.clear()
            raise DemuxError(f"Stream closed inside a frame ({leftover} trailing bytes)")

    def _emit(self, stream_type: int, payload: bytes) -> None:
        text = self._decoders[stream_type].decode(payload)
        if text:
            self._sinks[stream_type](text)


def read_chunk(source: Any, size: int = 4096) -> bytes:
    """Read up to size bytes from a socket-like or file-like source.

    The docker SDK hands back different objects depending on the transport
    (a raw socket for TCP/TLS, a SocketIO for the unix socket), so accept both.
    """
    if hasattr(source, "recv"):
        return source.recv(size)
    data = source.read(size)
    return data or b""


def pump(source: Any, demuxer: FrameDemuxer, size: int = 4096) -> int:
    """Read source until EOF, feeding the demuxer. Returns bytes read.

    The demuxer is closed only on a clean EOF; a read or framing error
    propagates as-is.
    """
    total = 0
    while True:
        data = read_chunk(source, size)
        if not data:
            break
        total += len(data)
        demuxer.feed(data)
    demuxer.close()
    logger.debug(f"Output stream closed after {total} bytes ({demuxer.frames} frames)")
    return total
