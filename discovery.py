# discovery.py
"""Pull-only Listener/Cluster discovery for the injected sidecars.

Every Fetch rebuilds the snapshot from the seed resources plus whatever is
currently provisioned for the caller's namespace (the `node.cluster` the
rendered bootstrap sets). Stream and Delta variants are refused with
UNIMPLEMENTED, driven by CAPABILITIES so every resource kind behaves the same.
"""

from __future__ import annotations

import copy
import enum
import hashlib
import json
import logging
import time
from concurrent import futures
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Type

import grpc
import yaml
from google.protobuf import json_format
from google.protobuf.message import Message

from bootstrap import default_seed, static_resources
from errors import RenderError, StoreRejected, StoreTransportError
from provision import ConfigProvisioner
from xds_messages import Cluster, DiscoveryRequest, DiscoveryResponse, Listener, pack_resources, to_message

LOG = logging.getLogger(__name__)

Seed = Dict[str, List[Dict[str, Any]]]


@dataclass(frozen=True)
class ResourceKind:
    name: str
    plural: str
    service: str
    type_url: str
    message: Type[Message]

    @property
    def key(self) -> str:
        return self.plural.lower()


LISTENER = ResourceKind(
    "Listener",
    "Listeners",
    "envoy.service.listener.v3.ListenerDiscoveryService",
    "type.googleapis.com/envoy.config.listener.v3.Listener",
    Listener,
)
CLUSTER = ResourceKind(
    "Cluster",
    "Clusters",
    "envoy.service.cluster.v3.ClusterDiscoveryService",
    "type.googleapis.com/envoy.config.cluster.v3.Cluster",
    Cluster,
)
RESOURCE_KINDS = (LISTENER, CLUSTER)


class Mode(enum.Enum):
    FETCH = "Fetch"
    STREAM = "Stream"
    DELTA = "Delta"


CAPABILITIES = {
    Mode.FETCH: True,
    Mode.STREAM: False,
    Mode.DELTA: False,
}


def method_path(kind: ResourceKind, mode: Mode) -> str:
    return f"/{kind.service}/{mode.value}{kind.plural}"


@dataclass(frozen=True)
class DiscoverySnapshot:
    version: str
    listeners: Tuple[Dict[str, Any], ...]
    clusters: Tuple[Dict[str, Any], ...]

    def resources(self, kind: ResourceKind) -> Tuple[Dict[str, Any], ...]:
        return getattr(self, kind.key)


def load_seed(path: Optional[Path]) -> Seed:
    """Seed resources from a bootstrap YAML file, or the built-in default.

    Raises ValueError when a seed resource is not a valid Envoy message, so a
    bad seed fails at startup instead of on every Fetch.
    """
    if path is None:
        return default_seed()
    seed = static_resources(yaml.safe_load(Path(path).read_text()))
    for kind in RESOURCE_KINDS:
        for doc in seed[kind.key]:
            try:
                to_message(doc, kind.message)
            except json_format.ParseError as e:
                raise ValueError(f"seed {kind.name.lower()} {doc.get('name')!r}: {e}") from e
    return seed


def parse_artifact(text: str) -> Seed:
    try:
        return static_resources(yaml.safe_load(text))
    except (yaml.YAMLError, ValueError) as e:
        raise RenderError(f"stored bootstrap is unreadable: {e}") from e


def build_snapshot(seed: Seed, artifact_text: Optional[str] = None) -> DiscoverySnapshot:
    """Seed resources first, then provisioned ones whose names the seed does not already use."""
    provisioned = parse_artifact(artifact_text) if artifact_text else {}

    merged: Dict[str, List[Dict[str, Any]]] = {}
    for kind in RESOURCE_KINDS:
        items = [copy.deepcopy(r) for r in seed.get(kind.key, [])]
        names = {r.get("name") for r in items}
        for r in provisioned.get(kind.key, []):
            if r.get("name") not in names:
                items.append(copy.deepcopy(r))
                names.add(r.get("name"))
        merged[kind.key] = items

    digest = hashlib.sha1(json.dumps(merged, sort_keys=True, default=str).encode()).hexdigest()
    return DiscoverySnapshot(
        version=digest[:16],
        listeners=tuple(merged["listeners"]),
        clusters=tuple(merged["clusters"]),
    )


class DiscoveryService:
    def __init__(
        self,
        provisioner: ConfigProvisioner,
        seed: Seed,
        attempts: int = 3,
        backoff: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provisioner = provisioner
        self.seed = seed
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self._sleep = sleep

    def _read_artifact(self, namespace: str) -> Optional[str]:
        delay = self.backoff
        attempt = 1
        while True:
            try:
                return self.provisioner.current(namespace)
            except StoreTransportError as e:
                if attempt >= self.attempts:
                    raise
                LOG.warning("artifact read for %s failed (attempt %d/%d): %s", namespace, attempt, self.attempts, e)
                self._sleep(delay)
                delay = min(delay * 2, 5.0)
                attempt += 1

    def snapshot(self, namespace: str = "") -> DiscoverySnapshot:
        text = self._read_artifact(namespace) if namespace else None
        return build_snapshot(self.seed, text)

    def fetch(self, kind: ResourceKind, request, context):
        node = request.node
        try:
            snap = self.snapshot(node.cluster)
        except StoreTransportError as e:
            context.abort(grpc.StatusCode.UNAVAILABLE, str(e))
        except StoreRejected as e:
            code = grpc.StatusCode.PERMISSION_DENIED if e.status in (401, 403) else grpc.StatusCode.FAILED_PRECONDITION
            context.abort(code, str(e))
        except RenderError as e:
            context.abort(grpc.StatusCode.INTERNAL, str(e))

        try:
            resources = pack_resources(snap.resources(kind), kind.message)
        except json_format.ParseError as e:
            context.abort(grpc.StatusCode.INTERNAL, f"{kind.name.lower()} is not a valid Envoy resource: {e}")

        LOG.debug(
            "fetch %s node=%s cluster=%s version_info=%r -> %s",
            kind.plural,
            node.id,
            node.cluster,
            request.version_info,
            snap.version,
        )
        return DiscoveryResponse(
            version_info=snap.version,
            resources=resources,
            type_url=kind.type_url,
            nonce=snap.version,
        )

    def unsupported(self, kind: ResourceKind, mode: Mode, request_iterator, context):
        LOG.info("refused %s%s call", mode.value, kind.plural)
        context.abort(
            grpc.StatusCode.UNIMPLEMENTED,
            f"{mode.value.lower()} {kind.plural.lower()} is not supported, use Fetch{kind.plural}",
        )

    def handlers(self) -> Iterator[grpc.GenericRpcHandler]:
        for kind in RESOURCE_KINDS:
            methods = {}
            for mode, supported in CAPABILITIES.items():
                if supported:
                    handler = grpc.unary_unary_rpc_method_handler(
                        partial(self.fetch, kind),
                        request_deserializer=DiscoveryRequest.FromString,
                        response_serializer=DiscoveryResponse.SerializeToString,
                    )
                else:
                    handler = grpc.stream_stream_rpc_method_handler(partial(self.unsupported, kind, mode))
                methods[f"{mode.value}{kind.plural}"] = handler
            yield grpc.method_handlers_generic_handler(kind.service, methods)


def serve_discovery(service: DiscoveryService, address: str, workers: int = 10) -> Tuple[grpc.Server, int]:
    """Start the discovery gRPC server; returns it with the bound port."""
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=workers))
    server.add_generic_rpc_handlers(tuple(service.handlers()))
    port = server.add_insecure_port(address)
    if port == 0:
        raise RuntimeError(f"could not bind discovery server to {address}")
    server.start()
    LOG.info("discovery server listening on %s", address)
    return server, port


def fetch_stub(channel: grpc.Channel, kind: ResourceKind) -> Callable:
    """Client callable for Fetch<kind>, as a polling sidecar would use it."""
    return channel.unary_unary(
        method_path(kind, Mode.FETCH),
        request_serializer=DiscoveryRequest.SerializeToString,
        response_deserializer=DiscoveryResponse.FromString,
    )
