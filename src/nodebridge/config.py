"""Runtime configuration for nodebridge."""

import os
import shutil
from collections.abc import Mapping

NODE_EXECUTABLE_ENV: str = "NODEBRIDGE_NODE"
CALL_TIMEOUT_ENV: str = "NODEBRIDGE_CALL_TIMEOUT"
STARTUP_TIMEOUT_ENV: str = "NODEBRIDGE_STARTUP_TIMEOUT"
DEFAULT_NODE_EXECUTABLE: str = "node"
DEFAULT_STARTUP_TIMEOUT: float = 30.0
REAP_TIMEOUT: float = 5.0
STDERR_CAPTURE_LIMIT: int = 65536


def resolve_node_executable(node_executable: str | None = None) -> str:
    """Resolve the Node.js executable used to run companions.

    Explicit arguments win over ``NODEBRIDGE_NODE``. When neither is set the
    executable is looked up on ``PATH``; if that fails the bare name is returned
    so that spawning reports the missing executable.

    :param node_executable: Explicit executable path or name.
    :returns: Executable path or name.
    """
    if node_executable is not None:
        return node_executable

    from_env: str = os.environ.get(NODE_EXECUTABLE_ENV, "").strip()
    if len(from_env) > 0:
        return from_env

    located: str | None = shutil.which(DEFAULT_NODE_EXECUTABLE)
    if located is None:
        return DEFAULT_NODE_EXECUTABLE
    return located


def _parse_seconds(raw_value: str, variable_name: str) -> float | None:
    """Parse a positive number of seconds from an environment variable.

    :param raw_value: Raw variable value.
    :param variable_name: Variable name used in error messages.
    :returns: Parsed seconds, or ``None`` when the value is empty.
    :raises ValueError: If the value is not a positive number.
    """
    stripped: str = raw_value.strip()
    if len(stripped) == 0:
        return None
    try:
        seconds: float = float(stripped)
    except ValueError as exc:
        raise ValueError(f"{variable_name} must be a number of seconds, got {raw_value!r}") from exc
    if seconds <= 0:
        raise ValueError(f"{variable_name} must be positive, got {raw_value!r}")
    return seconds


def _validate_timeout(timeout: float | None, parameter_name: str) -> float | None:
    if timeout is None:
        return None
    if timeout <= 0:
        raise ValueError(f"{parameter_name} must be positive")
    return float(timeout)


def resolve_call_timeout(call_timeout: float | None = None) -> float | None:
    """Resolve the default per-call timeout.

    :param call_timeout: Explicit timeout in seconds.
    :returns: Timeout in seconds, or ``None`` for no timeout.
    :raises ValueError: If the explicit or configured timeout is invalid.
    """
    if call_timeout is not None:
        return _validate_timeout(call_timeout, "call_timeout")
    return _parse_seconds(os.environ.get(CALL_TIMEOUT_ENV, ""), CALL_TIMEOUT_ENV)


def resolve_startup_timeout(startup_timeout: float | None = None) -> float:
    """Resolve the startup handshake timeout.

    :param startup_timeout: Explicit timeout in seconds.
    :returns: Timeout in seconds.
    :raises ValueError: If the explicit or configured timeout is invalid.
    """
    if startup_timeout is not None:
        validated: float | None = _validate_timeout(startup_timeout, "startup_timeout")
        if validated is not None:
            return validated
    from_env: float | None = _parse_seconds(os.environ.get(STARTUP_TIMEOUT_ENV, ""), STARTUP_TIMEOUT_ENV)
    if from_env is None:
        return DEFAULT_STARTUP_TIMEOUT
    return from_env


def merge_environment(overrides: Mapping[str, str] | None = None) -> dict[str, str]:
    """Build the companion environment.

    :param overrides: Variables that replace inherited values.
    :returns: Copy of ``os.environ`` updated with ``overrides``.
    """
    merged: dict[str, str] = dict(os.environ)
    if overrides is None:
        return merged
    for key, value in overrides.items():
        merged[str(key)] = str(value)
    return merged
