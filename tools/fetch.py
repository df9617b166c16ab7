#!/usr/bin/env python3
"""Poll the discovery server once, the way an injected sidecar does.

Usage:
  DISCOVERY=localhost:18000 NAMESPACE=ns1 python3 tools/fetch.py
  KIND=clusters DISCOVERY=localhost:18000 python3 tools/fetch.py

Prints the snapshot version and the resources as YAML.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import grpc
import yaml

# Ensure project root is on sys.path when running as a script
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from discovery import CLUSTER, LISTENER, fetch_stub  # noqa: E402
from xds_messages import DiscoveryRequest, Node, unpack_resources  # noqa: E402


def main() -> int:
    target = os.environ.get("DISCOVERY", "localhost:18000")
    namespace = os.environ.get("NAMESPACE", "")
    kind = CLUSTER if os.environ.get("KIND", "listeners") == "clusters" else LISTENER

    with grpc.insecure_channel(target) as channel:
        fetch = fetch_stub(channel, kind)
        try:
            resp = fetch(DiscoveryRequest(node=Node(id="fetch-tool", cluster=namespace)), timeout=10)
        except grpc.RpcError as e:
            print(f"[fetch] {e.code().name}: {e.details()}", file=sys.stderr)
            return 1

    print(f"[fetch] {kind.plural} version={resp.version_info}", file=sys.stderr)
    yaml.safe_dump(unpack_resources(resp, kind.message), sys.stdout, sort_keys=False)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
