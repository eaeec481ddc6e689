"""Lazy start, serialized calls and leak-free teardown for one companion."""

import logging
import os
import threading
import weakref
from collections.abc import Mapping
from typing import Literal

from nodebridge.errors import CallTimeoutError
from nodebridge.errors import ClosedBridgeError
from nodebridge.errors import StreamClosedError
from nodebridge.runner import CompanionRunner
from nodebridge.runner import ProcessHandle
from nodebridge.runner import shutdown_process

_logger: logging.Logger = logging.getLogger(__name__)
LifecycleState = Literal["unstarted", "running", "closed"]


def finalize_companion(owner_pid: int, handle: ProcessHandle) -> None:
    """Kill and reap a companion on behalf of an unreachable guard.

    Runs from garbage collection, interpreter exit or an explicit close. It
    holds only the spawning process id and the process handle. In a process
    forked from the owner it does nothing: a descendant never owns the
    ancestor's child.

    :param owner_pid: OS process id that spawned the companion.
    :param handle: Companion process handle.
    """
    current_pid: int = os.getpid()
    if current_pid != owner_pid:
        _logger.debug("skipping teardown of companion %d in forked process %d", handle.pid, current_pid)
        return
    shutdown_process(handle)


class LifecycleGuard:
    """Track one companion through ``unstarted -> running -> closed``.

    ``closed`` is terminal. Calls are serialized; the companion is spawned on
    the first call or on :meth:`start`.
    """

    _runner: CompanionRunner
    _cwd: str
    _env: dict[str, str]
    _owner_pid: int
    _state: LifecycleState
    _state_lock: threading.Lock
    _call_lock: threading.Lock
    _handle: ProcessHandle | None
    _finalizer: weakref.finalize | None
    _next_request_id: int

    def __init__(self, runner: CompanionRunner, cwd: str, env: Mapping[str, str]) -> None:
        """Initialize an unstarted guard.

        :param runner: Runner used to spawn and call the companion.
        :param cwd: Companion working directory.
        :param env: Complete companion environment.
        """
        self._runner = runner
        self._cwd = cwd
        self._env = dict(env)
        self._owner_pid = os.getpid()
        self._state = "unstarted"
        self._state_lock = threading.Lock()
        self._call_lock = threading.Lock()
        self._handle = None
        self._finalizer = None
        self._next_request_id = 1

    @property
    def state(self) -> LifecycleState:
        """Return the current lifecycle state."""
        with self._state_lock:
            return self._state

    @property
    def is_closed(self) -> bool:
        """Report whether the guard reached its terminal state."""
        return self.state == "closed"

    @property
    def pid(self) -> int | None:
        """Return the companion process id, or ``None`` when not running."""
        with self._state_lock:
            if self._state != "running" or self._handle is None:
                return None
            return self._handle.pid

    @property
    def finalizer(self) -> weakref.finalize | None:
        """Return the teardown finalizer registered at spawn time, if any."""
        return self._finalizer

    def _check_usable(self) -> None:
        """Reject use after close or from a forked descendant.

        :raises ClosedBridgeError: If the guard cannot start or call.
        """
        current_pid: int = os.getpid()
        if current_pid != self._owner_pid:
            raise ClosedBridgeError(
                f"Bridge was created by process {self._owner_pid} and cannot be used "
                + f"from forked process {current_pid}"
            )
        if self._state == "closed":
            raise ClosedBridgeError("Bridge is closed")

    def start(self) -> None:
        """Spawn the companion unless it is already running.

        :raises ClosedBridgeError: If the guard is closed.
        :raises SpawnError: If the companion cannot be started; the guard closes.
        """
        with self._state_lock:
            self._check_usable()
        with self._call_lock:
            self._ensure_running()

    def _ensure_running(self) -> ProcessHandle:
        """Return the running handle, spawning it first if needed.

        Must be called with the call lock held.

        :returns: Running companion handle.
        """
        with self._state_lock:
            self._check_usable()
            if self._state == "running" and self._handle is not None:
                return self._handle

        try:
            handle: ProcessHandle = self._runner.start(self._cwd, self._env)
        except BaseException:
            with self._state_lock:
                self._state = "closed"
            raise

        closed_while_starting: bool = False
        with self._state_lock:
            if self._state == "closed":
                closed_while_starting = True
            else:
                self._handle = handle
                self._state = "running"
                self._finalizer = weakref.finalize(self, finalize_companion, os.getpid(), handle)

        if closed_while_starting is True:
            shutdown_process(handle)
            raise ClosedBridgeError("Bridge was closed while the companion was starting")

        _logger.debug("companion %d running for %s", handle.pid, self._cwd)
        return handle

    def call(
        self,
        function_path: str,
        args: list[object] | tuple[object, ...],
        timeout: float | None = None,
    ) -> object:
        """Invoke one remote function, starting the companion on first use.

        :param function_path: Remote function name.
        :param args: JSON-representable positional arguments.
        :param timeout: Per-call timeout overriding the runner default.
        :returns: Decoded result.
        :raises ClosedBridgeError: If the guard is closed, or closes during the call.
        :raises StreamClosedError: If the companion exited mid-call; the guard closes.
        :raises CallTimeoutError: If the call timed out; the companion is killed.
        """
        with self._state_lock:
            self._check_usable()

        with self._call_lock:
            handle: ProcessHandle = self._ensure_running()
            request_id: int = self._next_request_id
            self._next_request_id += 1
            try:
                return self._runner.call(handle, request_id, function_path, args, timeout=timeout)
            except (StreamClosedError, CallTimeoutError) as exc:
                closed_by_other: bool = self._mark_closed()
                self._run_finalizer()
                if closed_by_other is True:
                    raise ClosedBridgeError("Bridge was closed during the call") from exc
                raise

    def _mark_closed(self) -> bool:
        """Move to ``closed``.

        :returns: ``True`` when the guard was already closed.
        """
        with self._state_lock:
            was_closed: bool = self._state == "closed"
            self._state = "closed"
            self._handle = None
            return was_closed

    def _run_finalizer(self) -> None:
        finalizer: weakref.finalize | None = self._finalizer
        if finalizer is not None:
            finalizer()

    def close(self) -> None:
        """Close the guard, killing and reaping a running companion.

        Idempotent and never raises. Does not wait for in-flight calls; they
        fail with :class:`ClosedBridgeError` once the companion is gone.
        """
        was_closed: bool = self._mark_closed()
        if was_closed is True:
            return
        self._run_finalizer()
