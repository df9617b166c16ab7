# bootstrap.py
"""Typed Envoy bootstrap pieces, serialized to plain dicts only at the edge.

The rendered document is consumed by the sidecar at startup from a mounted
file. Listener and cluster dicts produced here are also what the discovery
service hands out.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

import yaml

from config import SidecarConfig
from errors import RenderError
from policy_store import Policy

WASM_FILTER = "envoy.filters.network.wasm"
TCP_PROXY_FILTER = "envoy.filters.network.tcp_proxy"
WASM_TYPE = "type.googleapis.com/envoy.extensions.filters.network.wasm.v3.Wasm"
TCP_PROXY_TYPE = "type.googleapis.com/envoy.extensions.filters.network.tcp_proxy.v3.TcpProxy"
STRING_VALUE_TYPE = "type.googleapis.com/google.protobuf.StringValue"

INGRESS_LISTENER = "hermit_ingress"
UPSTREAM_CLUSTER = "hermit_upstream"


@dataclass(frozen=True)
class SocketAddress:
    address: str
    port_value: int

    def to_dict(self) -> Dict[str, Any]:
        return {"socket_address": {"address": self.address, "port_value": self.port_value}}


@dataclass(frozen=True)
class WasmFilter:
    plugin_name: str
    configuration: str
    wasm_path: str
    runtime: str = "envoy.wasm.runtime.v8"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": WASM_FILTER,
            "typed_config": {
                "@type": WASM_TYPE,
                "config": {
                    "name": self.plugin_name,
                    "root_id": self.plugin_name,
                    "configuration": {"@type": STRING_VALUE_TYPE, "value": self.configuration},
                    "vm_config": {
                        "runtime": self.runtime,
                        "code": {"local": {"filename": self.wasm_path}},
                        "allow_precompiled": True,
                    },
                },
            },
        }


@dataclass(frozen=True)
class TcpProxyFilter:
    cluster: str
    stat_prefix: str = "ingress_tcp"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": TCP_PROXY_FILTER,
            "typed_config": {
                "@type": TCP_PROXY_TYPE,
                "stat_prefix": self.stat_prefix,
                "cluster": self.cluster,
            },
        }


@dataclass(frozen=True)
class Listener:
    name: str
    address: SocketAddress
    filters: Tuple[Any, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address.to_dict(),
            "filter_chains": [{"filters": [f.to_dict() for f in self.filters]}],
        }


@dataclass(frozen=True)
class Cluster:
    name: str
    endpoint: SocketAddress
    connect_timeout: str = "0.25s"
    discovery_type: str = "STRICT_DNS"
    lb_policy: str = "ROUND_ROBIN"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "connect_timeout": self.connect_timeout,
            "type": self.discovery_type,
            "lb_policy": self.lb_policy,
            "load_assignment": {
                "cluster_name": self.name,
                "endpoints": [{"lb_endpoints": [{"endpoint": {"address": self.endpoint.to_dict()}}]}],
            },
        }


@dataclass(frozen=True)
class Bootstrap:
    node_id: str
    node_cluster: str
    admin: SocketAddress
    listeners: Tuple[Listener, ...] = field(default_factory=tuple)
    clusters: Tuple[Cluster, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node": {"id": self.node_id, "cluster": self.node_cluster},
            "static_resources": {
                "listeners": [lis.to_dict() for lis in self.listeners],
                "clusters": [c.to_dict() for c in self.clusters],
            },
            "admin": {"access_log_path": "/dev/null", "address": self.admin.to_dict()},
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False)


def _check_port(name: str, port: int) -> None:
    if not isinstance(port, int) or not 0 < port < 65536:
        raise RenderError(f"{name} must be a TCP port, got {port!r}")


def render_bootstrap(policy: Policy, namespace: str, sidecar: SidecarConfig) -> Bootstrap:
    """Bootstrap for one namespace: one ingress listener enforcing `policy`, one upstream cluster."""
    if not namespace:
        raise RenderError("namespace is required to render a bootstrap")
    _check_port("ingress port", sidecar.ingress_port)
    _check_port("upstream port", sidecar.upstream_port)
    _check_port("admin port", sidecar.admin_port)

    filter_config = json.dumps(policy.to_config(), separators=(",", ":"))

    listener = Listener(
        name=INGRESS_LISTENER,
        address=SocketAddress("0.0.0.0", sidecar.ingress_port),
        filters=(
            WasmFilter(plugin_name=sidecar.name, configuration=filter_config, wasm_path=sidecar.wasm_path),
            TcpProxyFilter(cluster=UPSTREAM_CLUSTER),
        ),
    )
    upstream = Cluster(
        name=UPSTREAM_CLUSTER,
        endpoint=SocketAddress(sidecar.upstream_address, sidecar.upstream_port),
    )
    return Bootstrap(
        node_id=sidecar.name,
        node_cluster=namespace,
        admin=SocketAddress("0.0.0.0", sidecar.admin_port),
        listeners=(listener,),
        clusters=(upstream,),
    )


def default_seed() -> Dict[str, List[Dict[str, Any]]]:
    """Built-in seed resources, used when no seed bootstrap file is configured."""
    listener = Listener(
        name="main",
        address=SocketAddress("0.0.0.0", 10000),
        filters=(TcpProxyFilter(cluster="web_service"),),
    )
    cluster = Cluster(name="web_service", endpoint=SocketAddress("web_service", 5678))
    return {"listeners": [listener.to_dict()], "clusters": [cluster.to_dict()]}


def static_resources(doc: Any) -> Dict[str, List[Dict[str, Any]]]:
    """Pull listeners/clusters out of a parsed bootstrap document.

    Raises ValueError when the document does not have the bootstrap shape.
    """
    if not isinstance(doc, dict):
        raise ValueError("bootstrap must be a mapping")
    static = doc.get("static_resources") or {}
    if not isinstance(static, dict):
        raise ValueError("static_resources must be a mapping")
    out: Dict[str, List[Dict[str, Any]]] = {}
    for kind in ("listeners", "clusters"):
        items = static.get(kind) or []
        if not isinstance(items, list) or not all(isinstance(i, dict) and i.get("name") for i in items):
            raise ValueError(f"static_resources.{kind} must be a list of named mappings")
        out[kind] = items
    return out
