"""Node.js companion program generator."""

import json
import re
from collections.abc import Mapping

_IDENTIFIER_PATTERN: re.Pattern[str] = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")
_RESERVED_IDENTIFIERS: frozenset[str] = frozenset(
    {
        "arguments", "await", "break", "case", "catch", "class", "const", "continue",
        "debugger", "default", "delete", "do", "else", "enum", "eval", "export",
        "extends", "false", "finally", "for", "function", "if", "implements",
        "import", "in", "instanceof", "interface", "let", "new", "null", "package",
        "private", "protected", "public", "return", "static", "super", "switch",
        "this", "throw", "true", "try", "typeof", "var", "void", "while", "with",
        "yield", "require", "module", "exports", "process", "console", "JSON",
        "Promise", "Object", "Array", "String", "TypeError", "ReferenceError",
    }
)

_PRELUDE: str = """\
(function () {
  var __nodebridge_write__ = function (message) {
    process.stdout.write(JSON.stringify(message) + "\\n");
  };
  var __nodebridge_error_payload__ = function (error) {
    var isObject = error !== null && typeof error === "object";
    return {
      error_type: isObject && typeof error.name === "string" ? error.name : "Error",
      error_message: isObject && error.message !== undefined ? String(error.message) : String(error),
      stacktrace: isObject && typeof error.stack === "string" ? error.stack : null
    };
  };
  var __nodebridge_fail__ = function (requestId, error) {
    __nodebridge_write__({request_id: requestId, status: "error", payload: __nodebridge_error_payload__(error)});
  };
  // stdout carries protocol messages only.
  console.log = console.error;
  console.info = console.error;
  console.debug = console.error;
"""

_DEPENDENCY_TEMPLATE: str = """\
  try {
    var %(name)s = require(%(specifier)s);
  } catch (error) {
    var __nodebridge_failure__ = __nodebridge_error_payload__(error);
    __nodebridge_failure__.dependency = %(name_literal)s;
    __nodebridge_write__({request_id: 0, status: "error", payload: __nodebridge_failure__});
    process.exitCode = 1;
    return;
  }
"""

_LOOP: str = """\
  __nodebridge_write__({request_id: 0, status: "ok", payload: {ready: true}});
  var __nodebridge_lines__ = require("readline").createInterface({input: process.stdin, terminal: false});
  __nodebridge_lines__.on("line", function (line) {
    var request;
    try {
      request = JSON.parse(line);
    } catch (error) {
      __nodebridge_fail__(-1, error);
      return;
    }
    if (request === null || typeof request !== "object") {
      __nodebridge_fail__(-1, new TypeError("Request must be a JSON object"));
      return;
    }
    var requestId = typeof request.request_id === "number" ? request.request_id : -1;
    var method = Object.prototype.hasOwnProperty.call(__nodebridge_methods__, request.function)
      ? __nodebridge_methods__[request.function]
      : undefined;
    if (typeof method !== "function") {
      __nodebridge_fail__(requestId, new ReferenceError("Unknown method: " + request.function));
      return;
    }
    try {
      Promise.resolve(method.apply(null, Array.isArray(request.args) ? request.args : []))
        .then(function (result) {
          __nodebridge_write__({request_id: requestId, status: "ok", payload: result === undefined ? null : result});
        })
        .catch(function (error) {
          __nodebridge_fail__(requestId, error);
        });
    } catch (error) {
      __nodebridge_fail__(requestId, error);
    }
  });
})();
"""


def validate_identifier(name: str, kind: str) -> str:
    """Ensure ``name`` can be used as a JavaScript binding.

    :param name: Candidate identifier.
    :param kind: Description used in error messages.
    :returns: The validated identifier.
    :raises ValueError: If ``name`` is not a usable identifier.
    """
    if _IDENTIFIER_PATTERN.match(name) is None:
        raise ValueError(f"{kind} name {name!r} is not a valid JavaScript identifier")
    if name in _RESERVED_IDENTIFIERS:
        raise ValueError(f"{kind} name {name!r} is reserved")
    if name.startswith("__nodebridge_") is True:
        raise ValueError(f"{kind} name {name!r} uses the reserved __nodebridge_ prefix")
    return name


def build_companion_script(dependencies: Mapping[str, str], methods: Mapping[str, str]) -> str:
    """Build the program run by ``node -e``.

    The program requires every dependency into a local binding, reports the
    startup handshake, then answers one request per input line by applying
    the named function to the argument list. Promise results are awaited.

    :param dependencies: Ordered ``binding -> require specifier`` mapping.
    :param methods: Ordered ``method name -> function expression`` mapping.
    :returns: JavaScript source text.
    :raises ValueError: If a dependency binding is not a valid identifier.
    """
    parts: list[str] = [_PRELUDE]
    for name, specifier in dependencies.items():
        validate_identifier(name, "Dependency")
        parts.append(
            _DEPENDENCY_TEMPLATE
            % {
                "name": name,
                "specifier": json.dumps(specifier),
                "name_literal": json.dumps(name),
            }
        )

    parts.append("  var __nodebridge_methods__ = Object.create(null);\n")
    for method_name, expression in methods.items():
        parts.append(f"  __nodebridge_methods__[{json.dumps(method_name)}] = ({expression});\n")

    parts.append(_LOOP)
    return "".join(parts)
