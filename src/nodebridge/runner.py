"""Companion process spawning, call round trips and forced teardown."""

import logging
import os
import subprocess
import threading
import time
from collections.abc import Mapping
from typing import BinaryIO

from nodebridge.codec import STARTUP_REQUEST_ID
from nodebridge.codec import Response
from nodebridge.codec import decode_response
from nodebridge.codec import encode_request
from nodebridge.codec import peek_request_id
from nodebridge.config import DEFAULT_STARTUP_TIMEOUT
from nodebridge.config import REAP_TIMEOUT
from nodebridge.dispatcher import ResponseDispatcher
from nodebridge.errors import CallTimeoutError
from nodebridge.errors import CompanionError
from nodebridge.errors import DependencyError
from nodebridge.errors import ProtocolError
from nodebridge.errors import SpawnError
from nodebridge.errors import StreamClosedError

_logger: logging.Logger = logging.getLogger(__name__)
_STREAM_JOIN_TIMEOUT: float = 1.0
_STDERR_SETTLE: float = 0.05


class ProcessHandle:
    """Exclusive ownership record for one spawned companion process."""

    pid: int
    process: subprocess.Popen
    stdin: BinaryIO
    stdout: BinaryIO
    stderr: BinaryIO
    dispatcher: ResponseDispatcher
    _signal_lock: threading.Lock

    def __init__(self, process: subprocess.Popen, dispatcher: ResponseDispatcher) -> None:
        """Initialize a handle around a started process.

        :param process: Process spawned with three pipes.
        :param dispatcher: Dispatcher reading the process output streams.
        """
        self.pid = process.pid
        self.process = process
        self.stdin = process.stdin
        self.stdout = process.stdout
        self.stderr = process.stderr
        self.dispatcher = dispatcher
        self._signal_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"ProcessHandle(pid={self.pid}, returncode={self.process.returncode})"


def terminate_process(handle: ProcessHandle) -> None:
    """Send an unconditional kill signal to the companion.

    Idempotent and safe to call from several threads at once. Once the
    process has been reaped its pid may belong to an unrelated process, so no
    signal is sent at all.

    :param handle: Companion process handle.
    """
    with handle._signal_lock:
        if handle.process.returncode is not None:
            return
        try:
            handle.process.kill()
            _logger.debug("sent kill signal to companion %d", handle.pid)
        except ProcessLookupError:
            _logger.debug("companion %d already exited", handle.pid)


def reap_process(handle: ProcessHandle, timeout: float = REAP_TIMEOUT) -> int | None:
    """Wait for the companion's exit status.

    Must only follow :func:`terminate_process`; a companion is not obliged to
    exit on its own.

    :param handle: Companion process handle.
    :param timeout: Maximum seconds to wait.
    :returns: Exit status, or ``None`` if the process did not exit in time.
    """
    with handle._signal_lock:
        try:
            returncode: int = handle.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            _logger.warning("companion %d did not exit within %.1f seconds of being killed", handle.pid, timeout)
            return None
    _logger.debug("reaped companion %d (status %s)", handle.pid, returncode)
    return returncode


def release_streams(handle: ProcessHandle) -> None:
    """Close the companion pipes once the reader threads are done with them.

    :param handle: Companion process handle.
    """
    try:
        handle.stdin.close()
    except OSError:
        _logger.debug("ignored error closing stdin of companion %d", handle.pid)

    readers_finished: bool = handle.dispatcher.join(timeout=_STREAM_JOIN_TIMEOUT)
    if readers_finished is False:
        _logger.warning("reader threads for companion %d still running; leaving streams open", handle.pid)
        return

    for stream in (handle.stdout, handle.stderr):
        try:
            stream.close()
        except OSError:
            _logger.debug("ignored error closing stream of companion %d", handle.pid)


def shutdown_process(handle: ProcessHandle, reap_timeout: float = REAP_TIMEOUT) -> None:
    """Kill, reap and release one companion in the mandatory order.

    Never raises; failures are logged.

    :param handle: Companion process handle.
    :param reap_timeout: Maximum seconds to wait for the exit status.
    """
    try:
        terminate_process(handle)
        reap_process(handle, timeout=reap_timeout)
        release_streams(handle)
    except Exception:
        _logger.warning("failed to shut down companion %d", handle.pid, exc_info=True)


class CompanionRunner:
    """Spawn companions for one command line and run call round trips on them."""

    command: list[str]
    call_timeout: float | None
    startup_timeout: float

    def __init__(
        self,
        command: list[str],
        call_timeout: float | None = None,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
    ) -> None:
        """Initialize a runner.

        :param command: Argument vector that starts the companion.
        :param call_timeout: Default per-call timeout in seconds, ``None`` for none.
        :param startup_timeout: Seconds to wait for the startup handshake.
        :raises ValueError: If ``command`` is empty.
        """
        if len(command) == 0:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.call_timeout = call_timeout
        self.startup_timeout = startup_timeout

    def start(self, cwd: str, env: Mapping[str, str]) -> ProcessHandle:
        """Spawn the companion and wait until it reports ready.

        :param cwd: Working directory of the companion.
        :param env: Complete environment of the companion.
        :returns: Handle of the running companion.
        :raises SpawnError: If the process cannot be created or never becomes ready.
        :raises DependencyError: If the companion fails to load a dependency.
        :raises ProtocolError: If the handshake is malformed.
        """
        if os.path.isdir(cwd) is False:
            raise SpawnError(f"Companion working directory does not exist: {cwd}")

        try:
            process: subprocess.Popen = subprocess.Popen(
                self.command,
                cwd=cwd,
                env=dict(env),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                close_fds=True,
            )
        except FileNotFoundError as exc:
            raise SpawnError(f"Companion executable not found: {self.command[0]}") from exc
        except OSError as exc:
            raise SpawnError(f"Failed to spawn companion {self.command[0]}: {exc}") from exc

        dispatcher: ResponseDispatcher = ResponseDispatcher(process.stdout, process.stderr, process.pid)
        handle: ProcessHandle = ProcessHandle(process, dispatcher)
        dispatcher.start()
        _logger.debug("spawned companion %d in %s", handle.pid, cwd)

        try:
            self._wait_until_ready(handle)
        except BaseException:
            shutdown_process(handle)
            raise
        return handle

    def _wait_until_ready(self, handle: ProcessHandle) -> None:
        """Consume the startup handshake.

        :param handle: Freshly spawned companion.
        :raises SpawnError: If the companion exits or stalls before the handshake.
        :raises DependencyError: If a dependency failed to load.
        :raises ProtocolError: If the handshake is malformed.
        """
        try:
            response: Response = self._next_response(handle, STARTUP_REQUEST_ID, self.startup_timeout)
        except StreamClosedError as exc:
            raise SpawnError(f"Companion process {handle.pid} exited during startup", exc.stderr) from exc
        except CallTimeoutError as exc:
            raise SpawnError(
                f"Companion process {handle.pid} did not become ready within {self.startup_timeout} seconds",
                exc.stderr,
            ) from exc

        if response.is_error is True:
            stderr: str = handle.dispatcher.take_stderr(settle=_STDERR_SETTLE)
            if response.dependency is not None:
                raise DependencyError(response.dependency, response.error_message, stderr)
            raise SpawnError(
                f"Companion failed to start: {response.error_type}: {response.error_message}",
                stderr,
            )

        payload: object = response.value
        if isinstance(payload, dict) is False or payload.get("ready") is not True:
            raise ProtocolError("Startup payload missing ready marker")

    def _next_response(self, handle: ProcessHandle, request_id: int, timeout: float | None) -> Response:
        """Wait for the response to ``request_id``.

        Output lines that are not protocol messages (text a remote function
        printed) and responses to earlier, abandoned requests are skipped.
        The deadline covers the whole wait, skipped lines included.

        :param handle: Running companion.
        :param request_id: Identifier the response must carry.
        :param timeout: Maximum seconds to wait, ``None`` to wait indefinitely.
        :returns: Decoded response.
        :raises ProtocolError: If a response for an unknown request arrives, or
            the matching response is malformed.
        :raises StreamClosedError: If the output stream reached EOF.
        :raises CallTimeoutError: If ``timeout`` elapsed first.
        """
        deadline: float | None = None
        if timeout is not None:
            deadline = time.monotonic() + timeout

        while True:
            remaining: float | None = None
            if deadline is not None:
                remaining = max(deadline - time.monotonic(), 0.0)
            try:
                line: bytes = handle.dispatcher.next_message(timeout=remaining)
            except CallTimeoutError as exc:
                raise CallTimeoutError(
                    f"Companion process {handle.pid} did not respond within {timeout} seconds",
                    exc.stderr,
                ) from None

            received_id: int | None = peek_request_id(line)
            if received_id is None:
                _logger.debug("skipping non-protocol output line from companion %d (%d bytes)", handle.pid, len(line))
                continue
            if received_id < request_id:
                _logger.debug("discarding stale response %d from companion %d", received_id, handle.pid)
                continue
            if received_id != request_id:
                raise ProtocolError(f"Unexpected response request_id {received_id}; expected {request_id}")
            return decode_response(line)

    def call(
        self,
        handle: ProcessHandle,
        request_id: int,
        function_path: str,
        args: list[object] | tuple[object, ...],
        timeout: float | None = None,
    ) -> object:
        """Run one request/response round trip.

        :param handle: Running companion.
        :param request_id: Identifier the response must echo.
        :param function_path: Remote function name.
        :param args: JSON-representable positional arguments.
        :param timeout: Per-call timeout overriding the runner default.
        :returns: Decoded result value.
        :raises CompanionError: If the remote function raised.
        :raises StreamClosedError: If the companion pipes closed mid-call.
        :raises CallTimeoutError: If the timeout elapsed.
        :raises ProtocolError: If the request or response is malformed.
        """
        data: bytes = encode_request(request_id, function_path, args)
        effective_timeout: float | None = timeout
        if effective_timeout is None:
            effective_timeout = self.call_timeout

        try:
            handle.stdin.write(data)
            handle.stdin.flush()
        except (OSError, ValueError) as exc:
            raise StreamClosedError(
                f"Failed to send request to companion process {handle.pid}",
                handle.dispatcher.take_stderr(wait_for_eof=0.5),
            ) from exc

        response: Response = self._next_response(handle, request_id, effective_timeout)
        if response.is_error is True:
            raise CompanionError(
                response.error_type,
                response.error_message,
                response.stacktrace,
                handle.dispatcher.take_stderr(settle=_STDERR_SETTLE),
            )
        return response.value
