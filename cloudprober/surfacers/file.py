"""File surfacer: writes one line per EventMetrics to a file or stdout,
optionally batching lines into gzip-compressed, base64-encoded blocks."""

from __future__ import annotations

import base64
import gzip
import logging
import queue
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TextIO

from cloudprober.metrics import EventMetrics, Surfacer

logger = logging.getLogger(__name__)

COMPRESSION_BUFFER_FLUSH_INTERVAL = 1.0
COMPRESSION_BUFFER_MAX_LINES = 100
WRITE_QUEUE_SIZE = 1000


@dataclass
class FileConfig:
    """Settings of a file surfacer. An empty file_path means stdout."""

    file_path: str = ""
    prefix: str = "cloudprober"
    compression_enabled: bool = False


def compress_bytes(data: bytes) -> str:
    """Gzip data and return it base64 encoded."""
    return base64.b64encode(gzip.compress(data, mtime=0)).decode("ascii")


class CompressionBuffer:
    """Collects lines and hands them to a sink as one compressed string."""

    def __init__(
        self,
        sink: Callable[[str], None],
        max_lines: int = COMPRESSION_BUFFER_MAX_LINES,
    ) -> None:
        self._sink = sink
        self._max_lines = max_lines
        self._buf = bytearray()
        self._lines = 0
        self._lock = threading.Lock()

    @property
    def lines(self) -> int:
        """Number of lines waiting to be compressed."""
        with self._lock:
            return self._lines

    def __len__(self) -> int:
        with self._lock:
            return len(self._buf)

    def write_line(self, line: str) -> None:
        """Buffer a line; flush once the line limit is reached."""
        with self._lock:
            self._buf += line.encode()
            self._lines += 1
            trigger_flush = self._lines >= self._max_lines
        if trigger_flush:
            self.flush()

    def flush(self) -> None:
        """Compress the buffered data and pass it to the sink."""
        with self._lock:
            data = bytes(self._buf)
            self._buf.clear()
            self._lines = 0
        if not data:
            return
        try:
            compressed = compress_bytes(data)
        except (OSError, ValueError) as err:
            logger.error("Error while compressing bytes: %s, data: %s", err, data.decode(errors="replace"))
            return
        self._sink(compressed)


class FileSurfacer(Surfacer):
    """Writes "<prefix> <id> <EventMetrics>" lines, ids increasing by one."""

    def __init__(
        self,
        config: FileConfig | None = None,
        *,
        background: bool = False,
        id_start: int | None = None,
        flush_interval: float = COMPRESSION_BUFFER_FLUSH_INTERVAL,
    ) -> None:
        self.config = config or FileConfig()
        # Only needs to grow for this instance; a nanosecond clock gives a
        # starting point that is unique across restarts.
        self.next_id = time.time_ns() if id_start is None else id_start
        self._queue: queue.Queue[EventMetrics] = queue.Queue(WRITE_QUEUE_SIZE)
        self._emit_lock = threading.Lock()
        self._out_lock = threading.Lock()
        self._flush_interval = flush_interval
        self._stop = threading.Event()
        self._closed = False

        if self.config.file_path:
            try:
                self._out: TextIO = open(self.config.file_path, "w", encoding="utf-8")
            except OSError as err:
                raise OSError(f"failed to create file for writing: {err}") from err
            self._owns_out = True
        else:
            self._out = sys.stdout
            self._owns_out = False

        self._buffer = (
            CompressionBuffer(lambda s: self._write_text(s + "\n"))
            if self.config.compression_enabled
            else None
        )

        self._thread: threading.Thread | None = None
        if background:
            self._thread = threading.Thread(target=self._run, daemon=True)
            self._thread.start()

    def __enter__(self) -> "FileSurfacer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def write(self, em: EventMetrics) -> None:
        """Queue em for writing; drop it if the queue is full."""
        try:
            self._queue.put_nowait(em)
        except queue.Full:
            logger.error("FileSurfacer's write channel is full, dropping new data.")

    def process_pending(self) -> int:
        """Write out every queued EventMetrics; return how many were written."""
        count = 0
        while True:
            try:
                em = self._queue.get_nowait()
            except queue.Empty:
                return count
            self._emit(em)
            count += 1

    def close(self) -> None:
        """Stop the background worker, write what is left and close the file."""
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
        self.process_pending()
        if self._buffer is not None:
            self._buffer.flush()
        if self._owns_out:
            self._out.close()

    def _emit(self, em: EventMetrics) -> None:
        with self._emit_lock:
            line = f"{self.config.prefix} {self.next_id} {em}\n"
            self.next_id += 1
        if self._buffer is None:
            self._write_text(line)
        else:
            self._buffer.write_line(line)

    def _write_text(self, text: str) -> None:
        with self._out_lock:
            try:
                self._out.write(text)
                self._out.flush()
            except (OSError, ValueError) as err:
                logger.error("Unable to write data to %s. Err: %s", self.config.file_path or "stdout", err)

    def _run(self) -> None:
        next_flush = time.monotonic() + self._flush_interval
        while not self._stop.is_set():
            try:
                em = self._queue.get(timeout=0.05)
            except queue.Empty:
                em = None
            if em is not None:
                self._emit(em)
            if self._buffer is not None and time.monotonic() >= next_flush:
                self._buffer.flush()
                next_flush = time.monotonic() + self._flush_interval