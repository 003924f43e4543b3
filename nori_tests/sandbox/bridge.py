"""Push-to-pull bridge for container output chunks.

The attach reader thread pushes chunks whenever the runtime delivers them;
the caller pulls them one at a time and blocks only while nothing is buffered.
The bridge is a single-producer/single-consumer unbounded channel with an
explicit closed state. Concurrent consumers are not supported.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from typing import Callable, Generator, Iterator, Literal

StreamName = Literal["stdout", "stderr"]


@dataclass(frozen=True)
class OutputChunk:
    """A fragment of container output tagged with its origin stream."""

    stream: StreamName
    text: str


class _Closed:
    """End-of-stream marker, optionally carrying the producer's failure."""

    def __init__(self, error: BaseException | None = None):
        self.error = error


class ChunkBridge:
    """Unbounded FIFO of OutputChunk values with a close signal.

    Iterating yields chunks in arrival order and stops once close() has been
    called and every chunk pushed before it has been consumed. If the producer
    closed the bridge with an error, it is raised after the buffered chunks.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[OutputChunk | _Closed] = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._exhausted = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, chunk: OutputChunk) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("Cannot put a chunk on a closed bridge")
            self._queue.put(chunk)

    def push(self, stream: StreamName, text: str) -> None:
        self.put(OutputChunk(stream=stream, text=text))

    def close(self, error: BaseException | None = None) -> None:
        """Mark the producer side complete. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_Closed(error))

    def get(self) -> OutputChunk | None:
        """Block until the next chunk is available; None once exhausted."""
        if self._exhausted:
            return None
        item = self._queue.get()
        if isinstance(item, _Closed):
            self._exhausted = True
            if item.error is not None:
                raise item.error
            return None
        return item

    def __iter__(self) -> Iterator[OutputChunk]:
        while True:
            chunk = self.get()
            if chunk is None:
                return
            yield chunk


def drain(
    stream: Generator[OutputChunk, None, int],
    on_chunk: Callable[[OutputChunk], None] | None = None,
) -> int:
    """Consume a streaming run, returning its exit code.

    Args:
        stream: Generator from ContainerManager.run_command_streaming
        on_chunk: Called for every chunk in arrival order
    """
    while True:
        try:
            chunk = next(stream)
        except StopIteration as stop:
            return stop.value
        if on_chunk is not None:
            on_chunk(chunk)
