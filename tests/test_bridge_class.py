"""Declarative bridge class and companion program tests."""

import os
from pathlib import Path

import pytest

from nodebridge import NodeBridge
from nodebridge import RemoteMethod
from nodebridge import create_bridge_class
from nodebridge import remote_method
from nodebridge.config import NODE_EXECUTABLE_ENV
from nodebridge.script import build_companion_script
from nodebridge.script import validate_identifier
from tests.fixtures.bridges import LocalScriptBridge


class BaseBridge(NodeBridge):
    dependencies = {"util": "util"}

    first = remote_method("function () { return 1; }")
    second = remote_method("function () { return 2; }")


class DerivedBridge(BaseBridge):
    dependencies = {"path": "path"}

    second = remote_method("function () { return 'two'; }")
    third = remote_method("function () { return 3; }")


def test_remote_methods_are_collected_in_definition_order() -> None:
    """Registries merge along the MRO with subclass overrides."""
    assert list(DerivedBridge.remote_methods) == ["first", "second", "third"]
    assert DerivedBridge.remote_methods["second"] == "function () { return 'two'; }"
    assert DerivedBridge.remote_dependencies == {"util": "util", "path": "path"}
    assert BaseBridge.remote_methods["second"] == "function () { return 2; }"


def test_class_access_returns_descriptor() -> None:
    """Accessing a remote method on the class yields its declaration."""
    declared: object = DerivedBridge.third
    assert isinstance(declared, RemoteMethod) is True
    assert declared.name == "third"


def test_instance_access_returns_bound_callable(tmp_path: Path) -> None:
    """Accessing a remote method on an instance yields a callable without spawning."""
    bridge = DerivedBridge(tmp_path, node_executable="node")
    method: object = bridge.third
    assert callable(method) is True
    assert "third" in repr(method)
    assert bridge.pid is None


def test_reserved_method_names_are_rejected() -> None:
    """Remote methods cannot shadow the bridge API."""
    with pytest.raises(ValueError, match="clashes"):

        class ClashingBridge(NodeBridge):
            close = remote_method("function () {}")


def test_invalid_dependency_binding_is_rejected() -> None:
    """Dependency bindings must be usable JavaScript identifiers."""
    with pytest.raises(ValueError, match="not a valid JavaScript identifier"):

        class BadDependencyBridge(NodeBridge):
            dependencies = {"left-pad": "left-pad"}


def test_empty_expression_is_rejected() -> None:
    """A remote method needs a function expression."""
    with pytest.raises(ValueError, match="cannot be empty"):
        remote_method("   ")


def test_create_bridge_class_builds_subclass() -> None:
    """Bridge classes can be created from plain mappings."""
    bridge_cls: type[NodeBridge] = create_bridge_class(
        "Calculator",
        {"add": "function (a, b) { return a + b; }"},
        dependencies={"localapp": "./localapp"},
    )
    assert issubclass(bridge_cls, NodeBridge) is True
    assert bridge_cls.__name__ == "Calculator"
    assert bridge_cls.remote_methods == {"add": "function (a, b) { return a + b; }"}
    assert bridge_cls.remote_dependencies == {"localapp": "./localapp"}

    with pytest.raises(ValueError, match="not a valid identifier"):
        create_bridge_class("Broken", {"not valid": "function () {}"})


def test_build_command_embeds_program(tmp_path: Path) -> None:
    """The companion runs the generated program with ``node -e``."""
    bridge = LocalScriptBridge(tmp_path, node_executable="/opt/node/bin/node")
    command: list[str] = bridge.build_command()
    assert command[:2] == ["/opt/node/bin/node", "-e"]
    assert 'require("./localapp")' in command[2]
    assert '__nodebridge_methods__["test"] = (localapp.test);' in command[2]


def test_node_executable_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """``NODEBRIDGE_NODE`` selects the executable when none is passed."""
    monkeypatch.setenv(NODE_EXECUTABLE_ENV, "/custom/node")
    bridge = LocalScriptBridge(tmp_path)
    assert bridge.build_command()[0] == "/custom/node"


def test_root_is_made_absolute(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Relative roots resolve against the current directory at construction."""
    monkeypatch.chdir(tmp_path)
    bridge = LocalScriptBridge("subdir", node_executable="node")
    assert bridge.root == os.path.join(os.getcwd(), "subdir")
    assert "unstarted" in repr(bridge)


def test_script_orders_dependencies_before_methods() -> None:
    """Dependencies load before methods reference them, and the handshake follows."""
    program: str = build_companion_script(
        {"first": "./first", "second": "second-pkg"},
        {"run": "first.run"},
    )
    first_index: int = program.index('var first = require("./first");')
    second_index: int = program.index('var second = require("second-pkg");')
    method_index: int = program.index("(first.run)")
    ready_index: int = program.index("ready: true")
    assert first_index < second_index < method_index < ready_index
    assert '__nodebridge_failure__.dependency = "second";' in program


def test_script_quotes_specifiers() -> None:
    """Require specifiers are embedded as JSON string literals."""
    program: str = build_companion_script({"odd": './dir "with" quotes'}, {})
    assert 'require("./dir \\"with\\" quotes")' in program


@pytest.mark.parametrize(
    "name",
    ["1abc", "with space", "a-b", "", "return", "process", "console", "JSON", "__nodebridge_methods__"],
)
def test_validate_identifier_rejects_unusable_names(name: str) -> None:
    """Bindings that would break or shadow the program are refused."""
    with pytest.raises(ValueError):
        validate_identifier(name, "Dependency")


@pytest.mark.parametrize("name", ["lodash", "_", "$", "camelCase2"])
def test_validate_identifier_accepts_identifiers(name: str) -> None:
    """Ordinary JavaScript identifiers are accepted."""
    assert validate_identifier(name, "Dependency") == name


def test_program_internals_do_not_collide_with_dependencies() -> None:
    """Names the program binds for itself stay out of the dependency namespace."""
    program: str = build_companion_script(
        {"lines": "path", "failure": "util"},
        {"sep": "function () { return lines.sep; }"},
    )
    assert "var lines = require(\"path\");" in program
    assert program.count("var lines") == 1
    assert program.count("var failure") == 1
    assert "var __nodebridge_lines__ = require(\"readline\")" in program


def test_console_output_is_sent_to_stderr() -> None:
    program: str = build_companion_script({}, {})
    assert "console.log = console.error;" in program
    assert program.index("console.log = console.error;") < program.index("ready: true")
