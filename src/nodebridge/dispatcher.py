"""Background readers for companion output and error streams."""

import logging
import queue
import threading
import time
from typing import BinaryIO

from nodebridge.config import STDERR_CAPTURE_LIMIT
from nodebridge.errors import CallTimeoutError
from nodebridge.errors import StreamClosedError

_logger: logging.Logger = logging.getLogger(__name__)
_EOF: object = object()
_STDERR_CHUNK_SIZE: int = 4096


class ResponseDispatcher:
    """Own the companion's output and error streams for the life of the process.

    One thread reads complete lines from the output stream and queues them for
    the single caller blocked in a call. A second thread drains the error
    stream continuously so the companion never stalls on a full pipe; the most
    recent bytes are kept so they can be attached to the next failure.
    """

    _stdout: BinaryIO
    _stderr: BinaryIO
    _pid: int
    _messages: "queue.Queue[object]"
    _stderr_buffer: bytearray
    _stderr_lock: threading.Lock
    _stderr_limit: int
    _reached_eof: bool
    _stdout_thread: threading.Thread | None
    _stderr_thread: threading.Thread | None

    def __init__(
        self,
        stdout: BinaryIO,
        stderr: BinaryIO,
        pid: int,
        stderr_limit: int = STDERR_CAPTURE_LIMIT,
    ) -> None:
        """Initialize a dispatcher.

        :param stdout: Read end of the companion output stream.
        :param stderr: Read end of the companion error stream.
        :param pid: Companion process id, used in thread names and logs.
        :param stderr_limit: Maximum number of error-stream bytes retained.
        """
        self._stdout = stdout
        self._stderr = stderr
        self._pid = pid
        self._messages = queue.Queue()
        self._stderr_buffer = bytearray()
        self._stderr_lock = threading.Lock()
        self._stderr_limit = stderr_limit
        self._reached_eof = False
        self._stdout_thread = None
        self._stderr_thread = None

    def start(self) -> None:
        """Start the reader threads."""
        if self._stdout_thread is not None:
            return
        self._stdout_thread = threading.Thread(
            target=self._read_stdout,
            name=f"nodebridge-stdout-{self._pid}",
            daemon=True,
        )
        self._stderr_thread = threading.Thread(
            target=self._read_stderr,
            name=f"nodebridge-stderr-{self._pid}",
            daemon=True,
        )
        self._stdout_thread.start()
        self._stderr_thread.start()

    def _read_stdout(self) -> None:
        """Queue complete output lines until EOF."""
        try:
            while True:
                line: bytes = self._stdout.readline()
                if len(line) == 0:
                    break
                if line.endswith(b"\n") is False:
                    _logger.debug("companion %d closed stdout mid-message (%d bytes dropped)", self._pid, len(line))
                    break
                self._messages.put(line)
        except (OSError, ValueError):
            _logger.debug("companion %d stdout reader stopped by closed stream", self._pid)
        finally:
            self._messages.put(_EOF)

    def _read_stderr(self) -> None:
        """Drain the error stream into a bounded capture buffer."""
        try:
            while True:
                chunk: bytes = self._stderr.read1(_STDERR_CHUNK_SIZE)
                if len(chunk) == 0:
                    break
                _logger.debug("companion %d stderr: %s", self._pid, chunk.decode("utf-8", errors="replace").rstrip())
                with self._stderr_lock:
                    self._stderr_buffer.extend(chunk)
                    overflow: int = len(self._stderr_buffer) - self._stderr_limit
                    if overflow > 0:
                        del self._stderr_buffer[:overflow]
        except (OSError, ValueError):
            _logger.debug("companion %d stderr reader stopped by closed stream", self._pid)

    def next_message(self, timeout: float | None = None) -> bytes:
        """Block until the next complete output line is available.

        :param timeout: Maximum seconds to wait, ``None`` to wait indefinitely.
        :returns: Raw response line including its terminator.
        :raises StreamClosedError: If the output stream reached EOF.
        :raises CallTimeoutError: If ``timeout`` elapsed first.
        """
        if self._reached_eof is True:
            raise StreamClosedError(
                f"Companion process {self._pid} closed its output stream",
                self.take_stderr(wait_for_eof=0.5),
            )

        try:
            item: object = self._messages.get(timeout=timeout)
        except queue.Empty:
            raise CallTimeoutError(
                f"Companion process {self._pid} did not respond within {timeout} seconds",
                self.take_stderr(),
            ) from None

        if item is _EOF:
            self._reached_eof = True
            raise StreamClosedError(
                f"Companion process {self._pid} closed its output stream",
                self.take_stderr(wait_for_eof=0.5),
            )
        return item

    def take_stderr(self, wait_for_eof: float = 0.0, settle: float = 0.0) -> str:
        """Return and clear captured error-stream text.

        The error stream is a separate pipe, so text written just before a
        response may still be in flight; ``settle`` gives the drainer a moment.

        :param wait_for_eof: Seconds to wait for the error stream to finish first.
        :param settle: Seconds to let the drainer catch up before reading.
        :returns: Captured text, decoded leniently.
        """
        stderr_thread: threading.Thread | None = self._stderr_thread
        if wait_for_eof > 0 and stderr_thread is not None:
            stderr_thread.join(timeout=wait_for_eof)
        elif settle > 0:
            time.sleep(settle)
        with self._stderr_lock:
            captured: bytes = bytes(self._stderr_buffer)
            self._stderr_buffer.clear()
        return captured.decode("utf-8", errors="replace")

    def join(self, timeout: float) -> bool:
        """Wait for both reader threads to finish.

        :param timeout: Maximum seconds to wait per thread.
        :returns: ``True`` when both threads have exited.
        """
        finished: bool = True
        for thread in (self._stdout_thread, self._stderr_thread):
            if thread is None:
                continue
            thread.join(timeout=timeout)
            if thread.is_alive() is True:
                finished = False
        return finished
