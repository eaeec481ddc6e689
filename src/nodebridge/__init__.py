"""Public package API for nodebridge."""

from nodebridge.bridge import BridgeMeta
from nodebridge.bridge import NodeBridge
from nodebridge.bridge import RemoteMethod
from nodebridge.bridge import create_bridge_class
from nodebridge.bridge import remote_method
from nodebridge.errors import CallTimeoutError
from nodebridge.errors import ClosedBridgeError
from nodebridge.errors import CompanionError
from nodebridge.errors import DependencyError
from nodebridge.errors import NodeBridgeError
from nodebridge.errors import ProtocolError
from nodebridge.errors import SpawnError
from nodebridge.errors import StreamClosedError

__all__: list[str] = [
    "BridgeMeta",
    "NodeBridge",
    "RemoteMethod",
    "create_bridge_class",
    "remote_method",
    "CallTimeoutError",
    "ClosedBridgeError",
    "CompanionError",
    "DependencyError",
    "NodeBridgeError",
    "ProtocolError",
    "SpawnError",
    "StreamClosedError",
]
