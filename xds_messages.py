# xds_messages.py
"""Typed Envoy v3 messages for the discovery path.

Listener and cluster dicts are parsed into the real Envoy protos before they
are packed, so the Any type URL on every resource matches the response's
type_url. The filter extension modules are imported for their descriptors:
json_format resolves the nested `@type` values through the default pool.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Type

from google.protobuf import any_pb2, json_format
from google.protobuf import wrappers_pb2  # noqa: F401
from google.protobuf.message import Message

from envoy.config.cluster.v3 import cluster_pb2
from envoy.config.core.v3 import base_pb2
from envoy.config.listener.v3 import listener_pb2
from envoy.extensions.filters.network.tcp_proxy.v3 import tcp_proxy_pb2  # noqa: F401
from envoy.extensions.filters.network.wasm.v3 import wasm_pb2  # noqa: F401
from envoy.service.discovery.v3 import discovery_pb2

Node = base_pb2.Node
DiscoveryRequest = discovery_pb2.DiscoveryRequest
DiscoveryResponse = discovery_pb2.DiscoveryResponse
Listener = listener_pb2.Listener
Cluster = cluster_pb2.Cluster


def to_message(doc: Dict[str, Any], message_type: Type[Message]) -> Message:
    """Parse one resource dict. Unknown fields or bad values raise json_format.ParseError."""
    return json_format.ParseDict(doc, message_type())


def pack_resources(resources: Iterable[Dict[str, Any]], message_type: Type[Message]) -> List[any_pb2.Any]:
    out = []
    for doc in resources:
        packed = any_pb2.Any()
        packed.Pack(to_message(doc, message_type), deterministic=True)
        out.append(packed)
    return out


def unpack_resources(resp, message_type: Type[Message]) -> List[Dict[str, Any]]:
    """Resources of a DiscoveryResponse as dicts with proto field names."""
    out = []
    for item in resp.resources:
        msg = message_type()
        if not item.Unpack(msg):
            raise ValueError(f"resource is {item.type_url}, expected {msg.DESCRIPTOR.full_name}")
        out.append(json_format.MessageToDict(msg, preserving_proto_field_name=True))
    return out
