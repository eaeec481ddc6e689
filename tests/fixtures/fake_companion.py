"""Python stand-in for the Node.js companion used by lifecycle tests.

Speaks the newline-delimited JSON protocol on stdin/stdout through
``nodebridge.codec``. Like a Node.js program holding a pending timer, it
ignores SIGTERM and keeps running after its input stream closes, so only a
kill signal ends it.

Behaviour is selected with ``FAKE_COMPANION_MODE``:

- ``ready`` (default): send the startup handshake and serve requests.
- ``missing_dependency``: report that the ``localapp`` dependency failed.
- ``exit_early``: write to stderr and exit before the handshake.
- ``silent``: never send the handshake.
- ``chatty_startup``: print unrelated lines before the handshake.
"""

import os
import signal
import sys
import time

from nodebridge import ProtocolError
from nodebridge.codec import STARTUP_REQUEST_ID
from nodebridge.codec import decode_request
from nodebridge.codec import encode_error
from nodebridge.codec import encode_response

LINGER_SECONDS: float = 60.0
NOISE_LINES: tuple[bytes, ...] = (b"this is not json\n", b'{"unrelated": true}\n', b"[1, 2, 3]\n")


def _write(data: bytes) -> None:
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()


def _ok(request_id: int, payload: object) -> None:
    _write(encode_response(request_id, payload))


def _error(request_id: int, error_type: str, message: str) -> None:
    _write(encode_error(request_id, error_type, message, f"{error_type}: {message}\n    at fake_companion.py"))


def _handle(request_id: int, function: str, args: list[object]) -> None:
    """Serve one request.

    :param request_id: Request identifier.
    :param function: Method name.
    :param args: Positional arguments.
    """
    if function == "echo":
        _ok(request_id, args[0])
    elif function == "answer":
        _ok(request_id, 456)
    elif function == "pid":
        _ok(request_id, os.getpid())
    elif function == "cwd":
        _ok(request_id, os.getcwd())
    elif function == "env":
        _ok(request_id, os.environ.get(str(args[0])))
    elif function == "fail":
        _error(request_id, "TypeError", str(args[0]))
    elif function == "noisy_fail":
        sys.stderr.write(f"about to fail: {args[0]}\n")
        sys.stderr.flush()
        _error(request_id, "Error", str(args[0]))
    elif function == "flood_stderr":
        size: int = int(args[0])
        sys.stderr.write("x" * size)
        sys.stderr.flush()
        _ok(request_id, size)
    elif function == "hang":
        time.sleep(3600)
    elif function == "crash":
        sys.stderr.write("companion dying\n")
        sys.stderr.flush()
        os._exit(3)
    elif function == "noisy_stdout":
        for line in NOISE_LINES:
            _write(line)
        _ok(request_id, args[0])
    elif function == "double_reply":
        _ok(request_id, args[0])
        _ok(request_id, "duplicate")
    elif function == "malformed":
        _write(b'{"request_id": %d, "status": "maybe"}\n' % request_id)
    elif function == "wrong_id":
        _ok(request_id + 100, None)
    else:
        _error(request_id, "ReferenceError", f"Unknown method: {function}")


def main() -> None:
    """Run the fake companion."""
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    mode: str = os.environ.get("FAKE_COMPANION_MODE", "ready")

    if mode == "exit_early":
        sys.stderr.write("boot failure\n")
        sys.stderr.flush()
        sys.exit(2)
    if mode == "silent":
        time.sleep(LINGER_SECONDS)
        return
    if mode == "missing_dependency":
        _write(encode_error(STARTUP_REQUEST_ID, "Error", "Cannot find module './localapp'", None, dependency="localapp"))
        return
    if mode == "chatty_startup":
        for line in NOISE_LINES:
            _write(line)

    _ok(STARTUP_REQUEST_ID, {"ready": True})
    while True:
        line: bytes = sys.stdin.buffer.readline()
        if len(line) == 0:
            break
        try:
            request_id, function, args = decode_request(line)
        except ProtocolError as exc:
            _error(-1, "SyntaxError", str(exc))
            continue
        _handle(request_id, function, args)

    time.sleep(LINGER_SECONDS)


if __name__ == "__main__":
    main()
