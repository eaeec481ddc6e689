"""Custom error types for nodebridge."""


class NodeBridgeError(Exception):
    """Base class for all nodebridge errors."""


class SpawnError(NodeBridgeError):
    """Raised when the companion process cannot be created or fails to start."""

    stderr: str

    def __init__(self, message: str, stderr: str = "") -> None:
        """Initialize a spawn failure.

        :param message: Failure description.
        :param stderr: Text the companion wrote to its error stream, if any.
        """
        self.stderr = stderr
        formatted: str = message
        if len(stderr) > 0:
            formatted = f"{message}\nCompanion stderr:\n{stderr}"
        super().__init__(formatted)


class DependencyError(SpawnError):
    """Raised when the companion cannot load one of its declared dependencies."""

    dependency: str

    def __init__(self, dependency: str, message: str, stderr: str = "") -> None:
        """Initialize a dependency load failure.

        :param dependency: Binding name of the dependency that failed to load.
        :param message: Error message reported by the companion.
        :param stderr: Captured companion error-stream text.
        """
        self.dependency = dependency
        super().__init__(f"Failed to load dependency {dependency!r}: {message}", stderr)


class ProtocolError(NodeBridgeError):
    """Raised for malformed or unexpected messages on the companion pipes."""


class CompanionError(NodeBridgeError):
    """Raised when the remote function reports an exception."""

    remote_type_name: str
    remote_message: str
    remote_stacktrace: str
    stderr: str

    def __init__(
        self,
        remote_type_name: str,
        remote_message: str,
        remote_stacktrace: str,
        stderr: str = "",
    ) -> None:
        """Initialize a remote exception wrapper.

        :param remote_type_name: Remote error type name (``TypeError``, ...).
        :param remote_message: Remote error message.
        :param remote_stacktrace: Remote stack trace text, possibly empty.
        :param stderr: Captured companion error-stream text.
        """
        self.remote_type_name = remote_type_name
        self.remote_message = remote_message
        self.remote_stacktrace = remote_stacktrace
        self.stderr = stderr
        formatted: str = f"Companion raised {remote_type_name}: {remote_message}"
        if len(remote_stacktrace) > 0:
            formatted += f"\nRemote stack:\n{remote_stacktrace}"
        if len(stderr) > 0:
            formatted += f"\nCompanion stderr:\n{stderr}"
        super().__init__(formatted)


class StreamClosedError(NodeBridgeError):
    """Raised when the companion closes its pipes before a full response arrives."""

    stderr: str

    def __init__(self, message: str, stderr: str = "") -> None:
        """Initialize a closed-stream failure.

        :param message: Failure description.
        :param stderr: Captured companion error-stream text.
        """
        self.stderr = stderr
        formatted: str = message
        if len(stderr) > 0:
            formatted = f"{message}\nCompanion stderr:\n{stderr}"
        super().__init__(formatted)


class ClosedBridgeError(NodeBridgeError):
    """Raised when a call is attempted on a closed bridge."""


class CallTimeoutError(NodeBridgeError, TimeoutError):
    """Raised when a call or the startup handshake exceeds its deadline."""

    stderr: str

    def __init__(self, message: str, stderr: str = "") -> None:
        """Initialize a timeout failure.

        :param message: Failure description.
        :param stderr: Captured companion error-stream text.
        """
        self.stderr = stderr
        formatted: str = message
        if len(stderr) > 0:
            formatted = f"{message}\nCompanion stderr:\n{stderr}"
        super().__init__(formatted)
