"""Declarative bridge classes exposing Node.js functions as Python methods."""

import os
from collections.abc import Mapping
from typing import Any

from nodebridge.config import merge_environment
from nodebridge.config import resolve_call_timeout
from nodebridge.config import resolve_node_executable
from nodebridge.config import resolve_startup_timeout
from nodebridge.lifecycle import LifecycleGuard
from nodebridge.lifecycle import LifecycleState
from nodebridge.runner import CompanionRunner
from nodebridge.script import build_companion_script
from nodebridge.script import validate_identifier

_RESERVED_METHOD_NAMES: frozenset[str] = frozenset(
    {"build_command", "call", "close", "closed", "dependencies", "pid", "root", "start", "state"}
)


class RemoteMethod:
    """Class attribute declaring one remote JavaScript function.

    ``expression`` must evaluate to a function inside the companion, for
    example ``"function(a, b) { return a + b; }"`` or ``"lodash.chunk"`` when
    ``lodash`` is a declared dependency.
    """

    expression: str
    name: str | None

    def __init__(self, expression: str) -> None:
        """Initialize a remote method declaration.

        :param expression: JavaScript expression evaluating to a function.
        :raises ValueError: If the expression is empty.
        """
        if len(expression.strip()) == 0:
            raise ValueError("Remote method expression cannot be empty")
        self.expression = expression
        self.name = None

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name

    def __get__(self, instance: object, owner: type | None = None) -> Any:
        if instance is None:
            return self
        return _BoundRemoteMethod(instance, self.name)

    def __repr__(self) -> str:
        return f"RemoteMethod({self.expression!r})"


def remote_method(expression: str) -> RemoteMethod:
    """Declare a remote function on a :class:`NodeBridge` subclass.

    :param expression: JavaScript expression evaluating to a function.
    :returns: Remote method descriptor.
    """
    return RemoteMethod(expression)


class _BoundRemoteMethod:
    """Callable bound to one bridge instance and one remote function."""

    _bridge: "NodeBridge"
    _name: str

    def __init__(self, bridge: "NodeBridge", name: str) -> None:
        self._bridge = bridge
        self._name = name

    def __call__(self, *args: object) -> object:
        """Invoke the remote function with positional arguments.

        :param args: JSON-representable arguments.
        :returns: Decoded result.
        """
        return self._bridge.call(self._name, *args)

    def __repr__(self) -> str:
        return f"<remote method {self._name} of {self._bridge!r}>"


class BridgeMeta(type):
    """Metaclass collecting dependencies and remote methods along the MRO."""

    _bridge_dependencies: dict[str, str]
    _bridge_methods: dict[str, str]

    def __new__(mcs, name: str, bases: tuple[type, ...], namespace: dict[str, Any]) -> "BridgeMeta":
        dependencies: dict[str, str] = {}
        methods: dict[str, str] = {}
        for base in reversed(bases):
            dependencies.update(getattr(base, "_bridge_dependencies", {}))
            methods.update(getattr(base, "_bridge_methods", {}))

        declared_dependencies: object = namespace.get("dependencies", {})
        if isinstance(declared_dependencies, Mapping) is False:
            raise TypeError(f"{name}.dependencies must be a mapping of binding name to module")
        for binding, specifier in declared_dependencies.items():
            validate_identifier(binding, "Dependency")
            if isinstance(specifier, str) is False:
                raise TypeError(f"Dependency {binding!r} must name a module as a string")
            dependencies[binding] = specifier

        for attr_name, value in namespace.items():
            if isinstance(value, RemoteMethod) is False:
                continue
            if attr_name in _RESERVED_METHOD_NAMES:
                raise ValueError(f"Remote method name {attr_name!r} clashes with the bridge API")
            methods[attr_name] = value.expression

        cls = super().__new__(mcs, name, bases, namespace)
        cls._bridge_dependencies = dependencies
        cls._bridge_methods = methods
        return cls

    @property
    def remote_methods(cls) -> dict[str, str]:
        """Return a copy of the ``name -> expression`` registry."""
        return dict(cls._bridge_methods)

    @property
    def remote_dependencies(cls) -> dict[str, str]:
        """Return a copy of the ``binding -> module`` registry."""
        return dict(cls._bridge_dependencies)


class NodeBridge(metaclass=BridgeMeta):
    """One connection to a Node.js companion process.

    Subclasses declare ``dependencies`` and :func:`remote_method` attributes::

        class Calculator(NodeBridge):
            dependencies = {"localapp": "./localapp"}
            add = remote_method("function(a, b) { return a + b; }")
            test = remote_method("localapp.test")

    The companion is spawned lazily on the first call, runs with ``root`` as
    its working directory, and is killed by :meth:`close`, by the context
    manager exit, or when the bridge is garbage collected.
    """

    dependencies: Mapping[str, str] = {}
    _root: str
    _node_executable: str
    _guard: LifecycleGuard

    def __init__(
        self,
        root: str | os.PathLike[str],
        env: Mapping[str, str] | None = None,
        *,
        call_timeout: float | None = None,
        startup_timeout: float | None = None,
        node_executable: str | None = None,
    ) -> None:
        """Initialize an unstarted bridge.

        :param root: Companion working directory; relative requires resolve here.
        :param env: Environment variables overriding the inherited environment.
        :param call_timeout: Default per-call timeout in seconds.
        :param startup_timeout: Seconds to wait for dependencies to load.
        :param node_executable: Node.js executable; defaults to ``NODEBRIDGE_NODE`` or ``node``.
        """
        self._root = os.path.abspath(os.fspath(root))
        self._node_executable = resolve_node_executable(node_executable)
        runner: CompanionRunner = CompanionRunner(
            self.build_command(),
            call_timeout=resolve_call_timeout(call_timeout),
            startup_timeout=resolve_startup_timeout(startup_timeout),
        )
        self._guard = LifecycleGuard(runner, self._root, merge_environment(env))

    def build_command(self) -> list[str]:
        """Return the argument vector that starts the companion.

        :returns: ``[node, "-e", program]``.
        """
        cls: BridgeMeta = type(self)
        program: str = build_companion_script(cls._bridge_dependencies, cls._bridge_methods)
        return [self._node_executable, "-e", program]

    @property
    def root(self) -> str:
        """Return the companion working directory."""
        return self._root

    @property
    def pid(self) -> int | None:
        """Return the companion process id, or ``None`` when unstarted or closed."""
        return self._guard.pid

    @property
    def state(self) -> LifecycleState:
        """Return ``"unstarted"``, ``"running"`` or ``"closed"``."""
        return self._guard.state

    @property
    def closed(self) -> bool:
        """Report whether the bridge is closed."""
        return self._guard.is_closed

    def start(self) -> None:
        """Spawn the companion eagerly instead of on the first call."""
        self._guard.start()

    def call(self, name: str, *args: object, timeout: float | None = None) -> object:
        """Invoke a registered remote function by name.

        :param name: Registered method name.
        :param args: JSON-representable arguments.
        :param timeout: Per-call timeout overriding the bridge default.
        :returns: Decoded result.
        :raises AttributeError: If ``name`` is not a registered remote method.
        """
        methods: dict[str, str] = type(self)._bridge_methods
        if name not in methods:
            raise AttributeError(f"{type(self).__name__} has no remote method {name!r}")
        return self._guard.call(name, args, timeout=timeout)

    def close(self) -> None:
        """Kill and reap the companion; further calls raise ``ClosedBridgeError``."""
        self._guard.close()

    def __enter__(self) -> "NodeBridge":
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} root={self._root!r} state={self._guard.state} pid={self._guard.pid}>"


def create_bridge_class(
    name: str,
    methods: Mapping[str, str],
    dependencies: Mapping[str, str] | None = None,
    base: type[NodeBridge] = NodeBridge,
) -> type[NodeBridge]:
    """Build a bridge class from plain mappings.

    :param name: Class name.
    :param methods: ``method name -> function expression`` mapping.
    :param dependencies: Optional ``binding -> module`` mapping.
    :param base: Bridge base class.
    :returns: New :class:`NodeBridge` subclass.
    """
    namespace: dict[str, object] = {
        "__module__": __name__,
        "__doc__": f"Bridge class {name} with remote methods {', '.join(methods)}.",
    }
    if dependencies is not None:
        namespace["dependencies"] = dict(dependencies)
    for method_name, expression in methods.items():
        if method_name.isidentifier() is False:
            raise ValueError(f"Remote method name {method_name!r} is not a valid identifier")
        namespace[method_name] = RemoteMethod(expression)
    return BridgeMeta(name, (base,), namespace)
