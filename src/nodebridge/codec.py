"""Line-oriented JSON wire codec shared by the host and companions."""

import json

from nodebridge.errors import ProtocolError

STARTUP_REQUEST_ID: int = 0
ACTION_CALL: str = "call"
STATUS_OK: str = "ok"
STATUS_ERROR: str = "error"
MESSAGE_TERMINATOR: bytes = b"\n"


class Response:
    """One decoded companion response."""

    request_id: int
    is_error: bool
    value: object
    error_type: str
    error_message: str
    stacktrace: str
    dependency: str | None

    def __init__(
        self,
        request_id: int,
        is_error: bool,
        value: object = None,
        error_type: str = "Error",
        error_message: str = "",
        stacktrace: str = "",
        dependency: str | None = None,
    ) -> None:
        """Initialize a decoded response.

        :param request_id: Correlated request identifier.
        :param is_error: ``True`` for error payloads.
        :param value: Result value for successful responses.
        :param error_type: Remote error type name for error responses.
        :param error_message: Remote error message for error responses.
        :param stacktrace: Remote stack trace, empty when absent.
        :param dependency: Failing dependency binding for startup errors.
        """
        self.request_id = request_id
        self.is_error = is_error
        self.value = value
        self.error_type = error_type
        self.error_message = error_message
        self.stacktrace = stacktrace
        self.dependency = dependency

    def __repr__(self) -> str:
        if self.is_error is True:
            return f"Response(request_id={self.request_id}, error={self.error_type}: {self.error_message!r})"
        return f"Response(request_id={self.request_id}, value={self.value!r})"


def _reject_constant(name: str) -> object:
    raise ValueError(f"{name} is not valid JSON")


def _dump_line(message: dict[str, object]) -> bytes:
    """Serialize one message to a newline-terminated UTF-8 line.

    :param message: Message dictionary.
    :returns: Encoded line.
    :raises ProtocolError: If the message holds values JSON cannot represent.
    """
    try:
        text: str = json.dumps(message, ensure_ascii=False, allow_nan=False, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Message is not JSON-representable: {exc}") from exc

    try:
        return text.encode("utf-8") + MESSAGE_TERMINATOR
    except UnicodeEncodeError:
        # Lone surrogates only survive as \u escapes.
        escaped: str = json.dumps(message, ensure_ascii=True, allow_nan=False, separators=(",", ":"))
        return escaped.encode("ascii") + MESSAGE_TERMINATOR


def _load_line(line: bytes) -> dict[str, object]:
    """Parse one wire line into a message dictionary.

    :param line: Raw line, with or without its terminator.
    :returns: Message dictionary.
    :raises ProtocolError: If the line is not a JSON object.
    """
    try:
        text: str = line.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProtocolError("Message is not valid UTF-8") from exc

    stripped: str = text.strip()
    if len(stripped) == 0:
        raise ProtocolError("Message is empty")

    try:
        decoded: object = json.loads(stripped, parse_constant=_reject_constant)
    except ValueError as exc:
        preview: str = stripped[:200]
        raise ProtocolError(f"Message is not valid JSON: {preview!r}") from exc

    if isinstance(decoded, dict) is False:
        raise ProtocolError("Message must be a JSON object")
    return decoded


def _require_request_id(message: dict[str, object]) -> int:
    request_id_obj: object = message.get("request_id")
    if isinstance(request_id_obj, bool) is True or isinstance(request_id_obj, int) is False:
        raise ProtocolError("Message request_id must be an int")
    return request_id_obj


def peek_request_id(line: bytes) -> int | None:
    """Return the request id carried by a protocol line.

    Companions may print unrelated text to their output stream; such lines
    have no request id and yield ``None``.

    :param line: Raw output line.
    :returns: Request id, or ``None`` when the line is not a protocol message.
    """
    try:
        return _require_request_id(_load_line(line))
    except ProtocolError:
        return None


def encode_request(request_id: int, function_path: str, args: list[object] | tuple[object, ...]) -> bytes:
    """Encode one call request.

    :param request_id: Request identifier used to correlate the response.
    :param function_path: Name of the remote function.
    :param args: Positional arguments; must be JSON-representable.
    :returns: Newline-terminated message bytes.
    :raises ProtocolError: If any argument cannot be represented in JSON.
    """
    message: dict[str, object] = {
        "request_id": request_id,
        "action": ACTION_CALL,
        "function": function_path,
        "args": list(args),
    }
    return _dump_line(message)


def decode_request(line: bytes) -> tuple[int, str, list[object]]:
    """Decode one call request.

    :param line: Raw request line.
    :returns: Tuple of ``(request_id, function_path, args)``.
    :raises ProtocolError: If the line is not a well-formed call request.
    """
    message: dict[str, object] = _load_line(line)
    request_id: int = _require_request_id(message)

    action: object = message.get("action")
    if action != ACTION_CALL:
        raise ProtocolError(f"Unknown request action: {action!r}")

    function_path: object = message.get("function")
    if isinstance(function_path, str) is False:
        raise ProtocolError("Request function must be a string")

    args: object = message.get("args", [])
    if isinstance(args, list) is False:
        raise ProtocolError("Request args must be a list")
    return request_id, function_path, args


def encode_response(request_id: int, value: object) -> bytes:
    """Encode one successful response.

    :param request_id: Identifier of the request being answered.
    :param value: JSON-representable result.
    :returns: Newline-terminated message bytes.
    """
    message: dict[str, object] = {
        "request_id": request_id,
        "status": STATUS_OK,
        "payload": value,
    }
    return _dump_line(message)


def encode_error(
    request_id: int,
    error_type: str,
    error_message: str,
    stacktrace: str | None = None,
    dependency: str | None = None,
) -> bytes:
    """Encode one error response.

    :param request_id: Identifier of the request being answered.
    :param error_type: Error type name.
    :param error_message: Error message.
    :param stacktrace: Optional stack trace text.
    :param dependency: Failing dependency binding for startup errors.
    :returns: Newline-terminated message bytes.
    """
    payload: dict[str, object] = {
        "error_type": error_type,
        "error_message": error_message,
        "stacktrace": stacktrace,
    }
    if dependency is not None:
        payload["dependency"] = dependency
    message: dict[str, object] = {
        "request_id": request_id,
        "status": STATUS_ERROR,
        "payload": payload,
    }
    return _dump_line(message)


def _optional_text(payload: dict[str, object], key: str, default: str) -> str:
    value: object = payload.get(key)
    if value is None:
        return default
    if isinstance(value, str) is False:
        raise ProtocolError(f"Error payload {key} must be a string")
    return value


def decode_response(line: bytes) -> Response:
    """Decode one response line.

    :param line: Raw response line.
    :returns: Decoded response.
    :raises ProtocolError: If the line is not a well-formed response.
    """
    message: dict[str, object] = _load_line(line)
    request_id: int = _require_request_id(message)

    status: object = message.get("status")
    if status == STATUS_OK:
        return Response(request_id, False, value=message.get("payload"))
    if status != STATUS_ERROR:
        raise ProtocolError(f"Unknown response status: {status!r}")

    payload: object = message.get("payload")
    if isinstance(payload, dict) is False:
        raise ProtocolError("Error response payload must be an object")

    dependency: object = payload.get("dependency")
    if dependency is not None and isinstance(dependency, str) is False:
        raise ProtocolError("Error payload dependency must be a string")

    return Response(
        request_id,
        True,
        error_type=_optional_text(payload, "error_type", "Error"),
        error_message=_optional_text(payload, "error_message", ""),
        stacktrace=_optional_text(payload, "stacktrace", ""),
        dependency=dependency,
    )
